"""Turn raw agent text into a typed :class:`Decision`.

``interpret`` never raises: anything it cannot make sense of comes back as
``action="ERROR"`` with a human-readable ``error``.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple, Union

from arena.models.schemas import BetInstruction, Decision, SellInstruction

logger = logging.getLogger(__name__)

RAW_SNIPPET_CHARS = 500
DEFAULT_REASONING = "No reasoning provided"

_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_OBJECT_SPAN = re.compile(r"\{[\s\S]*\}")
_DOUBLE_COLON = re.compile(r'":"\s*:')
_STRAY_COLON = re.compile(r'":\s*:')
_MISSING_COMMA = re.compile(r'"\s*\n\s*"')

_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


def extract_json(text: str) -> str:
    """Pick the JSON payload out of a chatty response."""
    block = _CODE_BLOCK.search(text)
    if block:
        return block.group(1).strip()
    span = _OBJECT_SPAN.search(text)
    if span:
        return span.group(0)
    return text.strip()


def sanitize_json_string(text: str) -> str:
    """Escape raw newlines, carriage returns and tabs that sit inside JSON strings."""
    out: List[str] = []
    in_string = False
    escaped = False
    for char in text:
        if escaped:
            out.append(char)
            escaped = False
        elif char == "\\":
            out.append(char)
            escaped = True
        elif char == '"':
            in_string = not in_string
            out.append(char)
        elif in_string and char in _ESCAPES:
            out.append(_ESCAPES[char])
        else:
            out.append(char)
    return "".join(out)


def repair_json_typos(text: str) -> str:
    repaired = _DOUBLE_COLON.sub('":', text)
    repaired = _STRAY_COLON.sub('":', repaired)
    return _MISSING_COMMA.sub('",\n"', repaired)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def _first_present(entry: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = entry.get(key)
        if value is not None:
            return value
    return None


def _reasoning(payload: Dict[str, Any]) -> str:
    for key in ("reasoning", "reason", "explanation"):
        value = payload.get(key)
        if value:
            return value if isinstance(value, str) else str(value)
    return DEFAULT_REASONING


def _parse_bet(entry: Any) -> Union[BetInstruction, str]:
    if not isinstance(entry, dict):
        return f"Invalid bet entry: {entry!r}"

    market_id = entry.get("market_id") or entry.get("marketId")
    if not market_id or not isinstance(market_id, (str, int)) or isinstance(market_id, bool):
        return "Bet missing market_id"

    raw_side = entry.get("side")
    if raw_side is None:
        side = "YES"
    elif isinstance(raw_side, str) and raw_side.strip().upper() in ("YES", "NO"):
        side = raw_side.strip().upper()
    else:
        return f"Invalid bet side: {raw_side}"

    amount = entry.get("amount")
    if not _is_number(amount) or amount <= 0:
        return f"Invalid bet amount: {amount}"

    reasoning = entry.get("reasoning")
    return BetInstruction(
        market_id=str(market_id),
        side=side,
        amount=float(amount),
        reasoning=str(reasoning) if reasoning is not None else None,
    )


def _parse_sell(entry: Any) -> Union[SellInstruction, str]:
    if not isinstance(entry, dict):
        return f"Invalid sell entry: {entry!r}"

    position_id = entry.get("position_id") or entry.get("positionId")
    if not position_id or not isinstance(position_id, (str, int)) or isinstance(position_id, bool):
        return "Sell missing position_id"

    percentage = _first_present(entry, "percentage", "percent")
    if percentage is None:
        percentage = 100
    if not _is_number(percentage) or percentage <= 0 or percentage > 100:
        return f"Invalid sell percentage: {percentage}"

    return SellInstruction(position_id=str(position_id), percentage=float(percentage))


def _parse_all(entries: Any, label: str, parse) -> Tuple[Optional[list], Optional[str]]:
    if not isinstance(entries, list) or not entries:
        return None, f"{label.upper()} action requires non-empty {label}s array"
    parsed = []
    for entry in entries:
        item = parse(entry)
        if isinstance(item, str):
            # One bad entry rejects the whole decision.
            return None, item
        parsed.append(item)
    return parsed, None


def _fallback(raw: str, err: Exception) -> Decision:
    upper = raw.upper()
    if "HOLD" in upper and "BET" not in upper and "SELL" not in upper:
        return Decision(
            action="HOLD",
            reasoning="Parsed HOLD from non-JSON response",
            warning="Response was not valid JSON",
        )
    return Decision.failure(error=f"Failed to parse JSON: {err}", reasoning=raw[:RAW_SNIPPET_CHARS])


def interpret(raw: Optional[str]) -> Decision:
    """Parse one agent response into a Decision."""
    if raw is None or not raw.strip():
        return Decision.failure(error="Empty response", reasoning="Empty response from LLM")

    payload_text = sanitize_json_string(repair_json_typos(extract_json(raw)))
    try:
        payload = json.loads(payload_text)
    except (ValueError, RecursionError) as err:
        logger.debug("Response is not valid JSON: %s", err)
        return _fallback(raw, err)

    if not isinstance(payload, dict):
        return Decision.failure(error=f"Expected a JSON object, got {type(payload).__name__}")

    action = str(payload.get("action") or "").strip().upper()
    reasoning = _reasoning(payload)

    if action == "HOLD":
        return Decision(action="HOLD", reasoning=reasoning)

    if action == "BET":
        bets, error = _parse_all(payload.get("bets"), "bet", _parse_bet)
        if error:
            return Decision.failure(error=error, reasoning=reasoning)
        return Decision(action="BET", bets=bets, reasoning=reasoning)

    if action == "SELL":
        sells, error = _parse_all(payload.get("sells"), "sell", _parse_sell)
        if error:
            return Decision.failure(error=error, reasoning=reasoning)
        return Decision(action="SELL", sells=sells, reasoning=reasoning)

    return Decision.failure(error=f"Unknown action: {action}", reasoning=reasoning)
