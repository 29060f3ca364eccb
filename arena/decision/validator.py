from __future__ import annotations

from typing import AbstractSet, Dict, List, Mapping, Optional

from arena.decision.topics import DEFAULT_CLASSIFIER, TopicClassifier
from arena.models.schemas import Decision, ValidationResult

MAX_BETS_PER_TOPIC = 1


def money(value: float) -> str:
    """Whole dollars print without cents: 50 -> '$50', 12.5 -> '$12.50'."""
    if float(value).is_integer():
        return f"${int(value)}"
    return f"${value:.2f}"


def validate(
    decision: Decision,
    cash_balance: float,
    max_bet_percent: float,
    min_bet: float,
    valid_market_ids: AbstractSet[str],
    valid_position_ids: AbstractSet[str],
    market_questions: Optional[Mapping[str, str]] = None,
    classifier: Optional[TopicClassifier] = None,
) -> ValidationResult:
    """Check a decision against the agent's cash and the diversification rules.

    Every violation is collected so a retry prompt can list them all at once.
    """
    if decision.action == "ERROR":
        return ValidationResult(valid=False, errors=[decision.error or "Unknown error"])
    if decision.action == "HOLD":
        return ValidationResult(valid=True)

    classifier = classifier or DEFAULT_CLASSIFIER
    errors: List[str] = []
    max_bet = cash_balance * max_bet_percent

    if decision.action == "BET":
        total = 0.0
        topic_counts: Dict[str, int] = {}

        for bet in decision.bets:
            if bet.market_id not in valid_market_ids:
                errors.append(f"Invalid market_id: {bet.market_id}")
                continue

            if bet.amount < min_bet:
                errors.append(f"Bet of {money(bet.amount)} on {bet.market_id} is too small. Minimum bet is {money(min_bet)}")
            if bet.amount > max_bet:
                errors.append(
                    f"Bet of {money(bet.amount)} on {bet.market_id} exceeds the per-market maximum "
                    f"${max_bet:.2f} ({max_bet_percent * 100:g}% of balance)"
                )
            total += bet.amount

            if market_questions is None:
                continue
            conflict = None
            for tag in classifier.tags_in_order(market_questions.get(bet.market_id, "")):
                topic_counts[tag] = topic_counts.get(tag, 0) + 1
                if conflict is None and topic_counts[tag] > MAX_BETS_PER_TOPIC:
                    conflict = tag
            if conflict is not None:
                errors.append(
                    f'Too many correlated bets on topic "{conflict}": {topic_counts[conflict]} bets '
                    f"(max {MAX_BETS_PER_TOPIC}). Diversify into independent topics."
                )

        if total > cash_balance:
            errors.append(f"Total bets ${total:.2f} exceed cash balance ${cash_balance:.2f}")

    elif decision.action == "SELL":
        for sell in decision.sells:
            if sell.position_id not in valid_position_ids:
                errors.append(f"Invalid position_id: {sell.position_id}")

    return ValidationResult(valid=not errors, errors=errors)
