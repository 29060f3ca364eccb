from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional, Sequence, Tuple

from arena.data.sqlite_store import SQLiteStore
from arena.decision.validator import money
from arena.models.schemas import (
    BetInstruction,
    Market,
    SellInstruction,
    SellResult,
    SettlementResult,
    TradeResult,
)

logger = logging.getLogger(__name__)

# Remaining shares below this close the position; absorbs division residue.
CLOSE_EPSILON_SHARES = 1e-3


class PriceError(ValueError):
    """Raised when a market has no tradable price for a side."""


def resolve_price(market: Market, side: str) -> float:
    """Current execution price for ``side``, strictly inside (0, 1)."""
    if market.market_type == "binary":
        if market.current_price is None:
            raise PriceError(f"No price available for market {market.id}")
        price = market.current_price if side == "YES" else 1 - market.current_price
    else:
        price = (market.current_prices or {}).get(side)
        if price is None:
            raise PriceError(f"No price available for side {side} on market {market.id}")
    if price <= 0 or price >= 1:
        raise PriceError(f"Invalid price for side {side}: {price}")
    return price


class TradeEngine:
    """Apply buy, sell and settlement instructions to the paper ledger.

    This is the only writer of positions, trades and cash balances. Each
    instruction runs in one store transaction; a failed write rolls back and
    is reported, never retried.
    """

    def __init__(self, store: SQLiteStore, min_bet: float = 50.0, max_bet_percent: float = 0.10) -> None:
        if min_bet < 0:
            raise ValueError("min_bet must be non-negative")
        if not 0 < max_bet_percent <= 1:
            raise ValueError("max_bet_percent must be in (0, 1]")
        self.store = store
        self.min_bet = min_bet
        self.max_bet_percent = max_bet_percent

    def size_bet(self, amount: float, cash_balance: float) -> Tuple[Optional[float], Optional[str]]:
        """Return the amount to spend (capped at the per-market maximum) or an error."""
        if amount < self.min_bet:
            return None, f"Minimum bet is {money(self.min_bet)}"
        max_bet = cash_balance * self.max_bet_percent
        if amount > max_bet:
            logger.info("Capping bet of %.2f to maximum %.2f", amount, max_bet)
            amount = max_bet
        if amount > cash_balance or amount <= 0:
            return None, "Insufficient balance"
        return amount, None

    def buy(
        self,
        agent_id: str,
        bet: BetInstruction,
        cash_balance: float,
        decision_id: Optional[int] = None,
    ) -> TradeResult:
        amount, error = self.size_bet(bet.amount, cash_balance)
        if error:
            return TradeResult(success=False, error=error)

        market = self.store.get_market(bet.market_id)
        if market is None:
            return TradeResult(success=False, error=f"Market not found: {bet.market_id}")
        if market.status != "active":
            return TradeResult(success=False, error=f"Market is not active: {market.status}")

        try:
            price = resolve_price(market, bet.side)
        except PriceError as err:
            return TradeResult(success=False, error=str(err))

        shares = amount / price

        try:
            with self.store.transaction():
                existing = self.store.find_open_position(agent_id, market.id, bet.side)
                if existing:
                    new_shares = existing.shares + shares
                    new_cost = existing.total_cost + amount
                    self.store.update_position(existing.id, new_shares, new_cost, new_cost / new_shares)
                    position_id = existing.id
                else:
                    position_id = self.store.insert_position(agent_id, market.id, bet.side, shares, price, amount)

                trade_id = self.store.insert_trade(
                    agent_id,
                    market.id,
                    position_id,
                    "BUY",
                    bet.side,
                    shares,
                    price,
                    amount,
                    decision_id=decision_id,
                    implied_confidence=price,
                )
                self.store.adjust_cash(agent_id, -amount)
                self.store.recompute_invested(agent_id)
        except sqlite3.Error as err:
            logger.exception("Ledger write failed for %s buy on %s", agent_id, bet.market_id)
            return TradeResult(success=False, error=f"Ledger write failed: {err}")

        logger.info(
            "BUY %s %s %.2f shares @ %.4f for %s (agent %s)",
            market.id,
            bet.side,
            shares,
            price,
            money(amount),
            agent_id,
        )
        return TradeResult(success=True, trade_id=trade_id, position_id=position_id, shares=shares, amount=amount)

    def sell(self, agent_id: str, sell: SellInstruction, decision_id: Optional[int] = None) -> SellResult:
        position = self.store.get_open_position(sell.position_id, agent_id)
        if position is None:
            return SellResult(success=False, error=f"Position not found: {sell.position_id}")

        market = self.store.get_market(position.market_id)
        if market is None:
            return SellResult(success=False, error=f"Market not found: {position.market_id}")
        try:
            price = resolve_price(market, position.side)
        except PriceError as err:
            return SellResult(success=False, error=str(err))

        full_exit = sell.percentage >= 100
        shares_to_sell = position.shares if full_exit else position.shares * sell.percentage / 100
        proceeds = shares_to_sell * price
        cost_basis = position.total_cost / position.shares * shares_to_sell
        realized_pnl = proceeds - cost_basis
        remaining = position.shares - shares_to_sell

        try:
            with self.store.transaction():
                if full_exit or remaining < CLOSE_EPSILON_SHARES:
                    self.store.close_position(position.id)
                else:
                    self.store.update_position(
                        position.id,
                        remaining,
                        position.total_cost - cost_basis,
                        position.avg_entry_price,
                    )
                trade_id = self.store.insert_trade(
                    agent_id,
                    market.id,
                    position.id,
                    "SELL",
                    position.side,
                    shares_to_sell,
                    price,
                    proceeds,
                    decision_id=decision_id,
                    cost_basis=cost_basis,
                    realized_pnl=realized_pnl,
                )
                self.store.adjust_cash(agent_id, proceeds)
                self.store.recompute_invested(agent_id)
        except sqlite3.Error as err:
            logger.exception("Ledger write failed for %s sell of %s", agent_id, position.id)
            return SellResult(success=False, error=f"Ledger write failed: {err}")

        logger.info(
            "SELL %s %s %.2f shares @ %.4f proceeds %.2f pnl %.2f (agent %s)",
            market.id,
            position.side,
            shares_to_sell,
            price,
            proceeds,
            realized_pnl,
            agent_id,
        )
        return SellResult(
            success=True,
            trade_id=trade_id,
            proceeds=proceeds,
            shares_sold=shares_to_sell,
            realized_pnl=realized_pnl,
        )

    def execute_buys(
        self,
        agent_id: str,
        bets: Sequence[BetInstruction],
        cash_balance: float,
        decision_id: Optional[int] = None,
    ) -> Tuple[List[TradeResult], float]:
        """Buy in order, sizing each bet against the cash left by the ones before it."""
        results: List[TradeResult] = []
        remaining = cash_balance
        for bet in bets:
            try:
                result = self.buy(agent_id, bet, remaining, decision_id)
            except Exception as err:  # earlier buys are already committed
                logger.exception("Buy on %s failed for agent %s", bet.market_id, agent_id)
                result = TradeResult(success=False, error=f"Unexpected error: {err}")
            results.append(result)
            if result.success:
                remaining -= result.amount
        return results, cash_balance - remaining

    def execute_sells(
        self,
        agent_id: str,
        sells: Sequence[SellInstruction],
        decision_id: Optional[int] = None,
    ) -> Tuple[List[SellResult], float]:
        results: List[SellResult] = []
        proceeds = 0.0
        for sell in sells:
            try:
                result = self.sell(agent_id, sell, decision_id)
            except Exception as err:
                logger.exception("Sell of %s failed for agent %s", sell.position_id, agent_id)
                result = SellResult(success=False, error=f"Unexpected error: {err}")
            results.append(result)
            if result.success:
                proceeds += result.proceeds
        return results, proceeds

    def settle_market(self, market_id: str, outcome: str) -> List[SettlementResult]:
        """Pay out every open position on a resolved market and close it.

        Winning shares pay 1 each, losing shares pay nothing.
        """
        outcome = outcome.strip().upper()
        settled: List[SettlementResult] = []
        with self.store.transaction():
            for position in self.store.list_open_positions(market_id=market_id):
                payout = position.shares if position.side == outcome else 0.0
                pnl = payout - position.total_cost
                self.store.close_position(position.id)
                trade_id = self.store.insert_trade(
                    position.agent_id,
                    market_id,
                    position.id,
                    "SETTLEMENT",
                    position.side,
                    position.shares,
                    1.0 if position.side == outcome else 0.0,
                    payout,
                    cost_basis=position.total_cost,
                    realized_pnl=pnl,
                )
                if payout:
                    self.store.adjust_cash(position.agent_id, payout)
                self.store.recompute_invested(position.agent_id)
                settled.append(
                    SettlementResult(
                        position_id=position.id,
                        agent_id=position.agent_id,
                        side=position.side,
                        shares=position.shares,
                        cost_basis=position.total_cost,
                        payout=payout,
                        realized_pnl=pnl,
                        trade_id=trade_id,
                    )
                )
            self.store.set_market_status(market_id, "resolved")
        logger.info("Settled %d positions on %s (outcome %s)", len(settled), market_id, outcome)
        return settled
