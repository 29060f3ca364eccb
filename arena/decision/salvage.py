from __future__ import annotations

from math import floor
from typing import AbstractSet, List, Mapping, Optional, Sequence, Set

from arena.decision.topics import DEFAULT_CLASSIFIER, TopicClassifier
from arena.decision.validator import money
from arena.models.schemas import BetInstruction, SalvageResult


def salvage(
    bets: Sequence[BetInstruction],
    cash_balance: float,
    max_bet_percent: float,
    min_bet: float,
    valid_market_ids: AbstractSet[str],
    market_questions: Mapping[str, str],
    classifier: Optional[TopicClassifier] = None,
) -> SalvageResult:
    """Narrow a rejected bet list to a subset that satisfies the constraints.

    Bets are only ever dropped or shrunk; the earliest listed bet wins a
    topic conflict. The input bets are left untouched.
    """
    classifier = classifier or DEFAULT_CLASSIFIER
    max_bet = cash_balance * max_bet_percent
    kept: List[BetInstruction] = []
    reasons: List[str] = []
    used_topics: Set[str] = set()

    for bet in bets:
        if bet.market_id not in valid_market_ids:
            reasons.append(f"Skipped bet: invalid market_id {bet.market_id}")
            continue

        if bet.amount < min_bet:
            reasons.append(f"Skipped bet on {bet.market_id}: amount {money(bet.amount)} below minimum {money(min_bet)}")
            continue

        amount = bet.amount
        if amount > max_bet:
            reasons.append(f"Capped bet on {bet.market_id} from {money(amount)} to ${max_bet:.2f}")
            amount = max_bet

        topics = classifier.tags_in_order(market_questions.get(bet.market_id, ""))
        conflict = next((t for t in topics if t in used_topics), None)
        if conflict is not None:
            reasons.append(f'Skipped correlated bet on {bet.market_id}: "{conflict}" topic already has a bet')
            continue
        used_topics.update(topics)

        kept.append(bet.model_copy(update={"amount": amount}))

    total = sum(b.amount for b in kept)
    if kept and total > cash_balance:
        scale = cash_balance / total
        kept = [b.model_copy(update={"amount": float(floor(b.amount * scale))}) for b in kept]
        reasons.append(f"Scaled all bets by {scale:.4f} to fit cash balance ${cash_balance:.2f}")

    final: List[BetInstruction] = []
    for bet in kept:
        if bet.amount < min_bet or bet.amount <= 0:
            reasons.append(f"Dropped bet on {bet.market_id}: {money(bet.amount)} below minimum after scaling")
            continue
        final.append(bet)

    return SalvageResult(valid_bets=final, removed_count=len(bets) - len(final), reasons=reasons)
