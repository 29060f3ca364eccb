"""One agent's decision cycle: ask, interpret, validate, retry, salvage, execute."""

from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional, Sequence, Tuple

from arena.api.openrouter_client import ModelInvocationError
from arena.data.sqlite_store import SQLiteStore
from arena.decision.interpreter import interpret
from arena.decision.salvage import salvage
from arena.decision.topics import TopicClassifier
from arena.decision.validator import validate
from arena.execution.trade_engine import TradeEngine
from arena.models.schemas import Agent, CycleRecord, Decision, Market, ValidationResult
from arena.prompts import build_retry_prompt, build_system_prompt, build_user_prompt

logger = logging.getLogger(__name__)


class DecisionOrchestrator:
    """Runs bounded retry/validate cycles and hands the result to the engine.

    ``client`` is anything with ``chat(model_id, messages) -> ModelResponse``
    that raises ``ModelInvocationError`` on failure.
    """

    def __init__(
        self,
        store: SQLiteStore,
        client,
        engine: TradeEngine,
        max_retries: int = 2,
        classifier: Optional[TopicClassifier] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.engine = engine
        self.max_retries = max_retries
        self.classifier = classifier

    @property
    def min_bet(self) -> float:
        return self.engine.min_bet

    @property
    def max_bet_percent(self) -> float:
        return self.engine.max_bet_percent

    def run_cycle(self, agent: Agent, markets: Sequence[Market]) -> CycleRecord:
        try:
            return self._run(agent, markets)
        except Exception as err:  # one agent's failure must not stop the roster
            logger.exception("Decision cycle failed for agent %s", agent.id)
            return CycleRecord(agent_id=agent.id, status="error", error=str(err))

    def _ask(self, agent: Agent, system_prompt: str, user_prompt: str, record: CycleRecord) -> Tuple[str, Decision]:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        try:
            response = self.client.chat(agent.model_id, messages)
        except ModelInvocationError as err:
            logger.warning("Model call failed for agent %s: %s", agent.id, err)
            return "", Decision.failure(error=f"Model call failed: {err}")

        record.prompt_tokens += response.prompt_tokens
        record.completion_tokens += response.completion_tokens
        record.response_time_ms += response.response_time_ms
        return response.content, interpret(response.content)

    def _run(self, agent: Agent, markets: Sequence[Market]) -> CycleRecord:
        cash = self.store.get_cash_balance(agent.id)
        positions = self.store.list_open_positions(agent_id=agent.id)

        if cash < self.min_bet and not positions:
            logger.warning("Agent %s is bankrupt (cash %.2f), skipping", agent.id, cash)
            self.store.set_agent_status(agent.id, "bankrupt")
            return CycleRecord(agent_id=agent.id, status="bankrupt", error="Agent has insufficient funds")

        tradable = [m for m in markets if m.status == "active"]
        questions = {m.id: m.question for m in markets}
        valid_market_ids = {m.id for m in tradable}
        valid_position_ids = {p.id for p in positions}

        system_prompt = build_system_prompt(self.min_bet, self.max_bet_percent)
        user_prompt = build_user_prompt(
            cash,
            sum(p.total_cost for p in positions),
            positions,
            tradable,
            questions,
        )

        record = CycleRecord(agent_id=agent.id, status="error")
        prompt = user_prompt
        retries = 0
        while True:
            raw, decision = self._ask(agent, system_prompt, prompt, record)
            validation = validate(
                decision,
                cash,
                self.max_bet_percent,
                self.min_bet,
                valid_market_ids,
                valid_position_ids,
                questions,
                self.classifier,
            )
            if validation.valid or retries >= self.max_retries:
                break
            retries += 1
            logger.warning(
                "Agent %s: validation failed (%s), retry %d/%d",
                agent.id,
                "; ".join(validation.errors),
                retries,
                self.max_retries,
            )
            prompt = build_retry_prompt(user_prompt, raw, validation.errors)

        record.decision = decision
        record.validation = validation
        record.retry_count = retries
        record.raw_response = raw
        record.decision_id = self._record_decision(agent, record, system_prompt, prompt)

        if decision.action == "HOLD":
            record.status = "hold"
        elif decision.action == "BET":
            self._execute_bets(record, cash, validation, tradable, questions)
        elif decision.action == "SELL":
            self._execute_sells(record, validation)
        else:
            record.status = "error"
            record.error = decision.error

        logger.info(
            "Agent %s: action=%s status=%s trades=%d retries=%d",
            agent.id,
            decision.action,
            record.status,
            record.trades_executed,
            record.retry_count,
        )
        return record

    def _record_decision(
        self, agent: Agent, record: CycleRecord, system_prompt: str, user_prompt: str
    ) -> Optional[int]:
        try:
            return self.store.record_decision(
                agent.id,
                record.decision,
                record.raw_response,
                record.retry_count,
                error_message=None if record.validation.valid else "; ".join(record.validation.errors),
                tokens_input=record.prompt_tokens,
                tokens_output=record.completion_tokens,
                response_time_ms=record.response_time_ms,
                prompt_system=system_prompt,
                prompt_user=user_prompt,
            )
        except sqlite3.Error:
            logger.exception("Failed to record decision for agent %s", agent.id)
            return None

    def _execute_bets(
        self,
        record: CycleRecord,
        cash: float,
        validation: ValidationResult,
        tradable: List[Market],
        questions,
    ) -> None:
        bets = record.decision.bets
        if not validation.valid:
            record.salvage = salvage(
                bets,
                cash,
                self.max_bet_percent,
                self.min_bet,
                {m.id for m in tradable},
                questions,
                self.classifier,
            )
            if not record.salvage.valid_bets:
                record.status = "no_trades"
                record.error = "; ".join(validation.errors)
                logger.warning("Agent %s: all bets invalid: %s", record.agent_id, record.error)
                return
            logger.warning(
                "Agent %s: salvaged %d bets, removed %d (%s)",
                record.agent_id,
                len(record.salvage.valid_bets),
                record.salvage.removed_count,
                "; ".join(record.salvage.reasons[:3]),
            )
            bets = record.salvage.valid_bets

        record.buy_results, _ = self.engine.execute_buys(record.agent_id, bets, cash, record.decision_id)
        self._finish(record, [r.error for r in record.buy_results if not r.success])

    def _execute_sells(self, record: CycleRecord, validation: ValidationResult) -> None:
        if not validation.valid:
            record.status = "no_trades"
            record.error = "; ".join(validation.errors)
            logger.warning("Agent %s: sells rejected: %s", record.agent_id, record.error)
            return
        record.sell_results, _ = self.engine.execute_sells(record.agent_id, record.decision.sells, record.decision_id)
        self._finish(record, [r.error for r in record.sell_results if not r.success])

    def _finish(self, record: CycleRecord, failures: List[Optional[str]]) -> None:
        record.status = "executed" if record.trades_executed else "no_trades"
        if failures:
            record.error = "; ".join(f for f in failures if f)
