from __future__ import annotations

import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from typing import List

import schedule

from arena.api.openrouter_client import OpenRouterClient
from arena.config import Settings
from arena.data.sqlite_store import SQLiteStore
from arena.execution.trade_engine import TradeEngine
from arena.orchestrator import DecisionOrchestrator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    agents_processed: int = 0
    total_trades: int = 0
    positions_settled: int = 0
    errors: List[str] = field(default_factory=list)


def ensure_roster(store: SQLiteStore, model_ids: List[str], initial_balance: float) -> int:
    """Create an agent with a fresh balance for every configured model that lacks one."""
    created = 0
    for model_id in model_ids:
        if store.get_agent(model_id) is None:
            store.create_agent(model_id, model_id, initial_balance)
            logger.info("Created agent %s with $%.2f", model_id, initial_balance)
            created += 1
    return created


def settle_resolved_markets(store: SQLiteStore, engine: TradeEngine, summary: RunSummary) -> None:
    """Settle open positions on markets the sync job marked as resolved."""
    for market in store.list_markets(status="closed"):
        if not market.resolution_outcome:
            continue
        try:
            settled = engine.settle_market(market.id, market.resolution_outcome)
        except sqlite3.Error as exc:
            logger.exception("Settlement failed for %s", market.id)
            summary.errors.append(f"settle {market.id}: {exc}")
            continue
        summary.positions_settled += len(settled)


def run_decisions(store: SQLiteStore, orchestrator: DecisionOrchestrator, summary: RunSummary) -> None:
    """Run one decision cycle per active agent, one agent at a time."""
    agents = store.list_active_agents()
    markets = store.list_markets(status="active")
    if not agents:
        logger.warning("No active agents; nothing to do")
        return
    if not markets:
        logger.warning("No active markets; run the market sync first")
        return

    for index, agent in enumerate(agents, start=1):
        logger.info("[%d/%d] %s", index, len(agents), agent.display_name or agent.id)
        record = orchestrator.run_cycle(agent, markets)
        summary.agents_processed += 1
        summary.total_trades += record.trades_executed
        if record.status == "error":
            summary.errors.append(f"{agent.display_name or agent.id}: {record.error}")


def run_one_cycle(store: SQLiteStore, orchestrator: DecisionOrchestrator, kill_switch_path: str) -> RunSummary:
    summary = RunSummary()
    if os.path.exists(kill_switch_path):
        logger.warning("Kill switch engaged; stopping run")
        return summary

    settle_resolved_markets(store, orchestrator.engine, summary)
    run_decisions(store, orchestrator, summary)
    logger.info(
        "Run complete: %d agents, %d trades, %d settlements, %d errors",
        summary.agents_processed,
        summary.total_trades,
        summary.positions_settled,
        len(summary.errors),
    )
    for error in summary.errors:
        logger.warning("  - %s", error)
    return summary


def build_orchestrator(settings: Settings) -> DecisionOrchestrator:
    store = SQLiteStore(settings.db_path)
    client = OpenRouterClient(
        api_key=settings.openrouter_api_key,
        url=settings.openrouter_url,
        timeout=settings.llm_timeout_s,
        retries=settings.llm_max_retries,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
    )
    engine = TradeEngine(store, min_bet=settings.min_bet, max_bet_percent=settings.max_bet_percent)
    return DecisionOrchestrator(store, client, engine, max_retries=settings.max_validation_retries)


def main() -> None:
    settings = Settings.from_env()
    orchestrator = build_orchestrator(settings)
    store = orchestrator.store
    ensure_roster(store, settings.models, settings.initial_balance)
    run_loop = os.getenv("ARENA_RUN_LOOP", "0") == "1"

    if run_loop:
        logger.info("Starting scheduled run (daily at %s)", settings.decision_time)
        schedule.every().day.at(settings.decision_time).do(
            run_one_cycle, store=store, orchestrator=orchestrator, kill_switch_path=settings.kill_switch_path
        )
        while True:  # pragma: no cover - runtime path
            schedule.run_pending()
            time.sleep(1)
    else:
        run_one_cycle(store, orchestrator, settings.kill_switch_path)


if __name__ == "__main__":
    main()
