from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from arena.models.schemas import Agent, Decision, Market, Position, Trade

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def _to_ms(dt: datetime) -> int:
    # naive datetimes are UTC throughout the ledger
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _from_ms(ts: Optional[int]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc).replace(tzinfo=None)


class SQLiteStore:
    """SQLite ledger for markets, agents, positions, trades and decisions.

    Writes commit immediately unless they run inside ``transaction()``, in
    which case the whole block commits or rolls back together.
    """

    def __init__(self, db_path: str = "data/arena.db") -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            Path(os.path.dirname(self.db_path) or ".").mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._tx_depth = 0
        self._create_tables()

    def _create_tables(self) -> None:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS markets (
                id TEXT PRIMARY KEY,
                question TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                market_type TEXT NOT NULL DEFAULT 'binary',
                current_price REAL,
                current_prices TEXT,
                close_time INTEGER,
                resolution_outcome TEXT,
                updated_at INTEGER NOT NULL
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                model_id TEXT NOT NULL,
                display_name TEXT NOT NULL DEFAULT '',
                cash_balance REAL NOT NULL,
                total_invested REAL NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'active'
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS positions (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                market_id TEXT NOT NULL,
                side TEXT NOT NULL,
                shares REAL NOT NULL,
                avg_entry_price REAL NOT NULL,
                total_cost REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'open',
                opened_at INTEGER NOT NULL,
                closed_at INTEGER,
                FOREIGN KEY(agent_id) REFERENCES agents(id),
                FOREIGN KEY(market_id) REFERENCES markets(id)
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS decisions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                ts INTEGER NOT NULL,
                action TEXT NOT NULL,
                reasoning TEXT,
                raw_response TEXT,
                parsed_response TEXT,
                prompt_system TEXT,
                prompt_user TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                tokens_input INTEGER,
                tokens_output INTEGER,
                response_time_ms INTEGER,
                FOREIGN KEY(agent_id) REFERENCES agents(id)
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                market_id TEXT NOT NULL,
                position_id TEXT,
                decision_id INTEGER,
                trade_type TEXT NOT NULL,
                side TEXT NOT NULL,
                shares REAL NOT NULL,
                price REAL NOT NULL,
                total_amount REAL NOT NULL,
                implied_confidence REAL,
                cost_basis REAL,
                realized_pnl REAL,
                executed_at INTEGER NOT NULL,
                FOREIGN KEY(agent_id) REFERENCES agents(id),
                FOREIGN KEY(position_id) REFERENCES positions(id)
            )
            """
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_positions_open ON positions (agent_id, market_id, side, status)"
        )
        self.conn.commit()

    # -- transactions -----------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes so they commit together or not at all."""
        self._tx_depth += 1
        try:
            yield
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                logger.warning("Rolling back ledger transaction on %s", self.db_path)
                self.conn.rollback()
            raise
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self.conn.commit()

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self.conn.commit()

    # -- markets ----------------------------------------------------------

    _MARKET_COLUMNS = (
        "id, question, status, market_type, current_price, current_prices, close_time, resolution_outcome"
    )

    def upsert_market(self, market: Market) -> None:
        market = Market.model_validate(market)
        self.conn.execute(
            """
            INSERT INTO markets (id, question, status, market_type, current_price, current_prices,
                                 close_time, resolution_outcome, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                question=excluded.question,
                status=excluded.status,
                market_type=excluded.market_type,
                current_price=excluded.current_price,
                current_prices=excluded.current_prices,
                close_time=excluded.close_time,
                resolution_outcome=excluded.resolution_outcome,
                updated_at=excluded.updated_at
            """,
            (
                market.id,
                market.question,
                market.status,
                market.market_type,
                market.current_price,
                json.dumps(market.current_prices) if market.current_prices is not None else None,
                _to_ms(market.close_time) if market.close_time else None,
                market.resolution_outcome,
                _now_ms(),
            ),
        )
        self._commit()

    def get_market(self, market_id: str) -> Optional[Market]:
        row = self.conn.execute(
            f"SELECT {self._MARKET_COLUMNS} FROM markets WHERE id = ?", (market_id,)
        ).fetchone()
        return self._row_to_market(row) if row else None

    def list_markets(self, status: str = "active") -> List[Market]:
        rows = self.conn.execute(
            f"SELECT {self._MARKET_COLUMNS} FROM markets WHERE status = ? ORDER BY id", (status,)
        ).fetchall()
        return [self._row_to_market(row) for row in rows]

    def set_market_status(self, market_id: str, status: str) -> None:
        self.conn.execute(
            "UPDATE markets SET status = ?, updated_at = ? WHERE id = ?", (status, _now_ms(), market_id)
        )
        self._commit()

    def _row_to_market(self, row: Tuple) -> Market:
        market_id, question, status, market_type, price, prices, close_time, outcome = row
        return Market(
            id=market_id,
            question=question,
            status=status,
            market_type=market_type,
            current_price=price,
            current_prices=json.loads(prices) if prices else None,
            close_time=_from_ms(close_time),
            resolution_outcome=outcome,
        )

    # -- agents -----------------------------------------------------------

    def create_agent(self, agent_id: str, model_id: str, cash_balance: float, display_name: str = "") -> Agent:
        self.conn.execute(
            "INSERT INTO agents (id, model_id, display_name, cash_balance) VALUES (?, ?, ?, ?)",
            (agent_id, model_id, display_name or model_id, cash_balance),
        )
        self._commit()
        return self.get_agent(agent_id)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        row = self.conn.execute(
            "SELECT id, model_id, display_name, cash_balance, total_invested, status FROM agents WHERE id = ?",
            (agent_id,),
        ).fetchone()
        return self._row_to_agent(row) if row else None

    def list_active_agents(self) -> List[Agent]:
        rows = self.conn.execute(
            "SELECT id, model_id, display_name, cash_balance, total_invested, status "
            "FROM agents WHERE status = 'active' ORDER BY id"
        ).fetchall()
        return [self._row_to_agent(row) for row in rows]

    def _row_to_agent(self, row: Tuple) -> Agent:
        agent_id, model_id, display_name, cash, invested, status = row
        return Agent(
            id=agent_id,
            model_id=model_id,
            display_name=display_name,
            cash_balance=cash,
            total_invested=invested,
            status=status,
        )

    def get_cash_balance(self, agent_id: str) -> float:
        row = self.conn.execute("SELECT cash_balance FROM agents WHERE id = ?", (agent_id,)).fetchone()
        if row is None:
            raise KeyError(f"Unknown agent {agent_id}")
        (cash,) = row
        return float(cash)

    def adjust_cash(self, agent_id: str, delta: float) -> None:
        """Apply a relative change to the cash balance in a single UPDATE."""
        cursor = self.conn.execute(
            "UPDATE agents SET cash_balance = cash_balance + ? WHERE id = ?", (delta, agent_id)
        )
        if cursor.rowcount != 1:
            raise sqlite3.IntegrityError(f"Unknown agent {agent_id}")
        self._commit()

    def recompute_invested(self, agent_id: str) -> float:
        self.conn.execute(
            """
            UPDATE agents SET total_invested = (
                SELECT COALESCE(SUM(total_cost), 0) FROM positions
                WHERE agent_id = ? AND status = 'open'
            ) WHERE id = ?
            """,
            (agent_id, agent_id),
        )
        self._commit()
        (invested,) = self.conn.execute(
            "SELECT total_invested FROM agents WHERE id = ?", (agent_id,)
        ).fetchone()
        return float(invested)

    def set_agent_status(self, agent_id: str, status: str) -> None:
        self.conn.execute("UPDATE agents SET status = ? WHERE id = ?", (status, agent_id))
        self._commit()

    # -- positions --------------------------------------------------------

    _POSITION_COLUMNS = (
        "id, agent_id, market_id, side, shares, avg_entry_price, total_cost, status, opened_at, closed_at"
    )

    def find_open_position(self, agent_id: str, market_id: str, side: str) -> Optional[Position]:
        row = self.conn.execute(
            f"""
            SELECT {self._POSITION_COLUMNS} FROM positions
            WHERE agent_id = ? AND market_id = ? AND side = ? AND status = 'open'
            """,
            (agent_id, market_id, side),
        ).fetchone()
        return self._row_to_position(row) if row else None

    def get_open_position(self, position_id: str, agent_id: str) -> Optional[Position]:
        row = self.conn.execute(
            f"SELECT {self._POSITION_COLUMNS} FROM positions WHERE id = ? AND agent_id = ? AND status = 'open'",
            (position_id, agent_id),
        ).fetchone()
        return self._row_to_position(row) if row else None

    def get_position(self, position_id: str) -> Optional[Position]:
        row = self.conn.execute(
            f"SELECT {self._POSITION_COLUMNS} FROM positions WHERE id = ?", (position_id,)
        ).fetchone()
        return self._row_to_position(row) if row else None

    def list_open_positions(self, agent_id: Optional[str] = None, market_id: Optional[str] = None) -> List[Position]:
        query = f"SELECT {self._POSITION_COLUMNS} FROM positions WHERE status = 'open'"
        params: List[Any] = []
        if agent_id is not None:
            query += " AND agent_id = ?"
            params.append(agent_id)
        if market_id is not None:
            query += " AND market_id = ?"
            params.append(market_id)
        rows = self.conn.execute(query + " ORDER BY opened_at, id", params).fetchall()
        return [self._row_to_position(row) for row in rows]

    def insert_position(self, agent_id: str, market_id: str, side: str, shares: float, price: float, total_cost: float) -> str:
        position_id = uuid.uuid4().hex
        self.conn.execute(
            """
            INSERT INTO positions (id, agent_id, market_id, side, shares, avg_entry_price, total_cost, status, opened_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 'open', ?)
            """,
            (position_id, agent_id, market_id, side, shares, price, total_cost, _now_ms()),
        )
        self._commit()
        return position_id

    def update_position(self, position_id: str, shares: float, total_cost: float, avg_entry_price: float) -> None:
        self.conn.execute(
            "UPDATE positions SET shares = ?, total_cost = ?, avg_entry_price = ? WHERE id = ? AND status = 'open'",
            (shares, total_cost, avg_entry_price, position_id),
        )
        self._commit()

    def close_position(self, position_id: str) -> None:
        cursor = self.conn.execute(
            "UPDATE positions SET status = 'closed', shares = 0, closed_at = ? WHERE id = ? AND status = 'open'",
            (_now_ms(), position_id),
        )
        if cursor.rowcount != 1:
            raise sqlite3.IntegrityError(f"Position {position_id} is not open")
        self._commit()

    def _row_to_position(self, row: Tuple) -> Position:
        position_id, agent_id, market_id, side, shares, avg, cost, status, opened_at, closed_at = row
        return Position(
            id=position_id,
            agent_id=agent_id,
            market_id=market_id,
            side=side,
            shares=shares,
            avg_entry_price=avg,
            total_cost=cost,
            status=status,
            opened_at=_from_ms(opened_at),
            closed_at=_from_ms(closed_at),
        )

    # -- trades -----------------------------------------------------------

    def insert_trade(
        self,
        agent_id: str,
        market_id: str,
        position_id: Optional[str],
        trade_type: str,
        side: str,
        shares: float,
        price: float,
        total_amount: float,
        decision_id: Optional[int] = None,
        implied_confidence: Optional[float] = None,
        cost_basis: Optional[float] = None,
        realized_pnl: Optional[float] = None,
    ) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO trades (agent_id, market_id, position_id, decision_id, trade_type, side, shares, price,
                                total_amount, implied_confidence, cost_basis, realized_pnl, executed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                agent_id,
                market_id,
                position_id,
                decision_id,
                trade_type,
                side,
                shares,
                price,
                total_amount,
                implied_confidence,
                cost_basis,
                realized_pnl,
                _now_ms(),
            ),
        )
        self._commit()
        return int(cursor.lastrowid)

    def fetch_trades(self, agent_id: Optional[str] = None) -> List[Trade]:
        query = (
            "SELECT id, agent_id, market_id, position_id, decision_id, trade_type, side, shares, price, "
            "total_amount, implied_confidence, cost_basis, realized_pnl, executed_at FROM trades"
        )
        params: Tuple = ()
        if agent_id is not None:
            query += " WHERE agent_id = ?"
            params = (agent_id,)
        rows = self.conn.execute(query + " ORDER BY id", params).fetchall()
        return [self._row_to_trade(row) for row in rows]

    def _row_to_trade(self, row: Tuple) -> Trade:
        keys = (
            "id", "agent_id", "market_id", "position_id", "decision_id", "trade_type", "side", "shares",
            "price", "total_amount", "implied_confidence", "cost_basis", "realized_pnl", "executed_at",
        )
        data: Dict[str, Any] = dict(zip(keys, row))
        data["executed_at"] = _from_ms(data["executed_at"])
        return Trade(**data)

    # -- decisions --------------------------------------------------------

    def record_decision(
        self,
        agent_id: str,
        decision: Decision,
        raw_response: str,
        retry_count: int,
        error_message: Optional[str] = None,
        tokens_input: int = 0,
        tokens_output: int = 0,
        response_time_ms: int = 0,
        prompt_system: Optional[str] = None,
        prompt_user: Optional[str] = None,
    ) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO decisions (agent_id, ts, action, reasoning, raw_response, parsed_response, prompt_system,
                                   prompt_user, retry_count, error_message, tokens_input, tokens_output,
                                   response_time_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                agent_id,
                _now_ms(),
                decision.action,
                decision.reasoning,
                raw_response,
                decision.model_dump_json(),
                prompt_system,
                prompt_user,
                retry_count,
                error_message,
                tokens_input,
                tokens_output,
                response_time_ms,
            ),
        )
        self._commit()
        return int(cursor.lastrowid)

    def fetch_decisions(self, agent_id: str) -> List[Tuple]:
        return self.conn.execute(
            "SELECT id, action, reasoning, retry_count, error_message FROM decisions WHERE agent_id = ? ORDER BY id",
            (agent_id,),
        ).fetchall()

    def fetch_decision_prompts(self, decision_id: int) -> Optional[Tuple[str, str]]:
        """System and final user prompt sent for a decision."""
        row = self.conn.execute(
            "SELECT prompt_system, prompt_user FROM decisions WHERE id = ?", (decision_id,)
        ).fetchone()
        return (row[0], row[1]) if row else None

    def close(self) -> None:
        self.conn.close()
