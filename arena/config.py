from __future__ import annotations

import os
from typing import List, Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Runtime configuration for the decision runner."""

    db_path: str = "data/arena.db"
    initial_balance: float = Field(default=10000.0, gt=0)
    min_bet: float = Field(default=50.0, ge=0)
    max_bet_percent: float = Field(default=0.10, gt=0, le=1)
    max_validation_retries: int = Field(default=2, ge=0)
    llm_temperature: float = 0.0
    llm_max_tokens: int = Field(default=16000, gt=0)
    llm_timeout_s: float = Field(default=600.0, gt=0)
    llm_max_retries: int = Field(default=1, ge=0)
    openrouter_api_key: Optional[str] = None
    openrouter_url: str = "https://openrouter.ai/api/v1/chat/completions"
    kill_switch_path: str = "data/stop.trading"
    decision_time: str = "00:00"
    models: List[str] = Field(default_factory=list)

    @classmethod
    def from_env(cls) -> "Settings":
        values = {
            "db_path": os.getenv("ARENA_DB_PATH"),
            "initial_balance": os.getenv("ARENA_INITIAL_BALANCE"),
            "min_bet": os.getenv("ARENA_MIN_BET"),
            "max_bet_percent": os.getenv("ARENA_MAX_BET_PERCENT"),
            "max_validation_retries": os.getenv("ARENA_MAX_VALIDATION_RETRIES"),
            "llm_timeout_s": os.getenv("ARENA_LLM_TIMEOUT_S"),
            "llm_max_retries": os.getenv("ARENA_LLM_MAX_RETRIES"),
            "openrouter_api_key": os.getenv("OPENROUTER_API_KEY"),
            "openrouter_url": os.getenv("OPENROUTER_URL"),
            "kill_switch_path": os.getenv("ARENA_KILL_SWITCH"),
            "decision_time": os.getenv("ARENA_DECISION_TIME"),
        }
        models = os.getenv("ARENA_MODELS")
        if models:
            values["models"] = [m.strip() for m in models.split(",") if m.strip()]
        return cls.model_validate({k: v for k, v in values.items() if v is not None})
