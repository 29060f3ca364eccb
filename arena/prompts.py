from __future__ import annotations

from typing import Mapping, Sequence

from arena.decision.validator import money
from arena.models.schemas import Market, Position

RETRY_SNIPPET_CHARS = 500


def build_system_prompt(min_bet: float, max_bet_percent: float) -> str:
    return f"""You are a trader in a paper-money prediction market competition.
Each day you see your portfolio and a list of open markets and decide what to do.

Respond with a single JSON object and nothing else:
- {{"action": "BET", "bets": [{{"market_id": "...", "side": "YES" | "NO", "amount": 100, "reasoning": "..."}}], "reasoning": "..."}}
- {{"action": "SELL", "sells": [{{"position_id": "...", "percentage": 50}}], "reasoning": "..."}}
- {{"action": "HOLD", "reasoning": "..."}}

Rules:
- Minimum bet is {money(min_bet)}.
- No single bet may exceed {max_bet_percent * 100:g}% of your cash balance.
- The sum of your bets may not exceed your cash balance.
- At most one bet per topic (for example one bitcoin market, one election market).
- Use market_id and position_id values exactly as listed."""


def build_user_prompt(
    cash_balance: float,
    total_invested: float,
    positions: Sequence[Position],
    markets: Sequence[Market],
    questions: Mapping[str, str],
) -> str:
    lines = [
        "PORTFOLIO",
        f"Cash balance: ${cash_balance:.2f}",
        f"Total invested: ${total_invested:.2f}",
        "",
        "OPEN POSITIONS",
    ]
    if positions:
        for p in positions:
            question = questions.get(p.market_id, p.market_id)
            lines.append(
                f"- position_id={p.id} | {question} | {p.side} | {p.shares:.2f} shares @ {p.avg_entry_price:.3f}"
                f" | cost ${p.total_cost:.2f}"
            )
    else:
        lines.append("(none)")

    lines += ["", "MARKETS"]
    for m in markets:
        price = f"{m.current_price:.3f}" if m.current_price is not None else "n/a"
        closes = m.close_time.date().isoformat() if m.close_time else "unknown"
        lines.append(f"- market_id={m.id} | {m.question} | YES price {price} | closes {closes}")
    return "\n".join(lines)


def build_retry_prompt(original_prompt: str, previous_response: str, errors: Sequence[str]) -> str:
    """Re-ask with every violation listed and the prior answer echoed (truncated)."""
    snippet = previous_response[:RETRY_SNIPPET_CHARS]
    if len(previous_response) > RETRY_SNIPPET_CHARS:
        snippet += "..."
    problems = "\n".join(f"- {e}" for e in errors)
    return (
        f"{original_prompt}\n\n---\nPREVIOUS RESPONSE WAS INVALID:\n{problems}\n\n"
        f"Your response (truncated): {snippet}\n\n"
        "Please respond with VALID JSON only. Make sure all market_id and position_id values "
        "exactly match the IDs provided above."
    )
