from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

Action = Literal["BET", "SELL", "HOLD", "ERROR"]
Side = Literal["YES", "NO"]


class Market(BaseModel):
    id: str
    question: str
    status: Literal["active", "closed", "resolved", "cancelled"] = "active"
    market_type: Literal["binary", "multi_outcome"] = "binary"
    current_price: Optional[float] = Field(default=None, ge=0, le=1)
    current_prices: Optional[Dict[str, float]] = None
    close_time: Optional[datetime] = None
    resolution_outcome: Optional[str] = None


class Agent(BaseModel):
    id: str
    model_id: str
    display_name: str = ""
    cash_balance: float
    total_invested: float = 0.0
    status: Literal["active", "bankrupt"] = "active"


class Position(BaseModel):
    id: str
    agent_id: str
    market_id: str
    side: str
    shares: float = Field(ge=0)
    avg_entry_price: float
    total_cost: float
    status: Literal["open", "closed"] = "open"
    opened_at: datetime
    closed_at: Optional[datetime] = None


class Trade(BaseModel):
    id: int
    agent_id: str
    market_id: str
    position_id: Optional[str] = None
    decision_id: Optional[int] = None
    trade_type: Literal["BUY", "SELL", "SETTLEMENT"]
    side: str
    shares: float
    price: float
    total_amount: float
    implied_confidence: Optional[float] = None
    cost_basis: Optional[float] = None
    realized_pnl: Optional[float] = None
    executed_at: datetime


class BetInstruction(BaseModel):
    market_id: str
    side: Side = "YES"
    amount: float = Field(gt=0)
    reasoning: Optional[str] = None

    @field_validator("side", mode="before")
    @classmethod
    def side_upper(cls, v: str):
        if isinstance(v, str):
            return v.strip().upper()
        return v


class SellInstruction(BaseModel):
    position_id: str
    percentage: float = Field(default=100.0, gt=0, le=100)


class Decision(BaseModel):
    """One parsed agent response. The payload must match the action tag."""

    action: Action
    reasoning: str = "No reasoning provided"
    bets: List[BetInstruction] = Field(default_factory=list)
    sells: List[SellInstruction] = Field(default_factory=list)
    error: Optional[str] = None
    warning: Optional[str] = None

    @model_validator(mode="after")
    def payload_matches_action(self) -> "Decision":
        if self.action == "BET" and (not self.bets or self.sells):
            raise ValueError("BET decisions carry bets only")
        if self.action == "SELL" and (not self.sells or self.bets):
            raise ValueError("SELL decisions carry sells only")
        if self.action in ("HOLD", "ERROR") and (self.bets or self.sells):
            raise ValueError(f"{self.action} decisions carry no instructions")
        if (self.action == "ERROR") != (self.error is not None):
            raise ValueError("error is set exactly when action is ERROR")
        return self

    @classmethod
    def failure(cls, error: str, reasoning: str = "No reasoning provided") -> "Decision":
        return cls(action="ERROR", reasoning=reasoning, error=error)


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class SalvageResult(BaseModel):
    valid_bets: List[BetInstruction] = Field(default_factory=list)
    removed_count: int = 0
    reasons: List[str] = Field(default_factory=list)


class TradeResult(BaseModel):
    success: bool
    trade_id: Optional[int] = None
    position_id: Optional[str] = None
    shares: Optional[float] = None
    amount: Optional[float] = None
    error: Optional[str] = None


class SellResult(BaseModel):
    success: bool
    trade_id: Optional[int] = None
    proceeds: Optional[float] = None
    shares_sold: Optional[float] = None
    realized_pnl: Optional[float] = None
    error: Optional[str] = None


class SettlementResult(BaseModel):
    position_id: str
    agent_id: str
    side: str
    shares: float
    cost_basis: float
    payout: float
    realized_pnl: float
    trade_id: Optional[int] = None


class ModelResponse(BaseModel):
    content: str
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: Optional[str] = None
    response_time_ms: int = 0


class CycleRecord(BaseModel):
    """Terminal record of one agent decision cycle."""

    agent_id: str
    status: Literal["executed", "hold", "no_trades", "error", "bankrupt"]
    decision: Optional[Decision] = None
    validation: Optional[ValidationResult] = None
    retry_count: int = 0
    salvage: Optional[SalvageResult] = None
    buy_results: List[TradeResult] = Field(default_factory=list)
    sell_results: List[SellResult] = Field(default_factory=list)
    decision_id: Optional[int] = None
    raw_response: str = ""
    error: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    response_time_ms: int = 0

    @property
    def trades_executed(self) -> int:
        return sum(1 for r in self.buy_results if r.success) + sum(1 for r in self.sell_results if r.success)
