# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Backtest request and contestant configuration.

Defines:
- Bar and Action, the values exchanged inside a tick
- BacktestRequest, the validated run request (camelCase on the wire)
- ContestantConfig, a closed union of contestant kinds tagged by `type`
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from crypto_arena.errors import ConfigValidationError


@dataclass(frozen=True)
class Bar:
    """One OHLCV bar. Timestamps are tz-aware UTC."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


class ActionKind(str, Enum):
    """What a contestant wants to do this tick."""

    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"
    REDUCE = "reduce"


class SizeUnit(str, Enum):
    """How Action.size is interpreted."""

    NOTIONAL = "notional"  # quote currency amount
    QUANTITY = "quantity"  # base asset units
    PERCENT = "percent"  # fraction 0-1 of balance (buy) or position (sell/reduce)


@dataclass(frozen=True)
class Action:
    """
    A single decision emitted by a contestant.

    `error` is only set on the implicit hold produced when a decision
    could not be made (oracle failure, timeout, contestant crash).
    """

    kind: ActionKind
    size: float = 0.0
    unit: SizeUnit = SizeUnit.NOTIONAL
    confidence: Optional[float] = None
    reasoning: str = ""
    error: Optional[str] = None

    @classmethod
    def hold(cls, reasoning: str = "", error: Optional[str] = None) -> "Action":
        return cls(kind=ActionKind.HOLD, reasoning=reasoning, error=error)

    @property
    def is_hold(self) -> bool:
        return self.kind == ActionKind.HOLD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "size": self.size,
            "unit": self.unit.value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "error": self.error,
        }


# ----------------------------------------------------------------------
# Wire models
# ----------------------------------------------------------------------


class WireModel(BaseModel):
    """camelCase aliases, snake_case accepted, unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


IntelligenceLevel = Literal["lite", "indicator", "strategy", "scalper"]


class AccumulatorSettings(WireModel):
    """
    Fixed-interval accumulation.

    Exactly one sizing applies: `percentage` of balance when set, else
    `invest_amount` notional (defaults to initialCapital / 20 at build).
    """

    invest_amount: Optional[float] = Field(default=None, gt=0)
    percentage: Optional[float] = Field(default=None, gt=0, le=1)
    interval_minutes: int = Field(default=7 * 24 * 60, gt=0)


class ModelAgentSettings(WireModel):
    """Language-model agent settings."""

    intelligence_level: Optional[IntelligenceLevel] = None
    system_prompt: Optional[str] = None  # legacy free-form prompt
    include_daily: bool = False
    min_notional: float = Field(default=10.0, ge=0)
    lookback_minutes: int = Field(default=24 * 60, gt=0)

    @property
    def level(self) -> str:
        """Effective level; legacy prompts run with lite data."""
        return self.intelligence_level or "lite"

    @property
    def is_legacy(self) -> bool:
        return bool(self.system_prompt) and self.intelligence_level is None


class GridSettings(WireModel):
    """Pivot grid settings."""

    grid_levels: int = Field(default=3, ge=1)
    pivot_n: int = Field(default=3, ge=1)
    window_days: float = Field(default=7, gt=0)
    volatility_min: float = Field(default=3.0, ge=0)
    volatility_max: float = Field(default=5.0, ge=0)
    stop_loss_percent: float = Field(default=2.0, ge=0)
    take_profit_percent: float = Field(default=4.0, gt=0)
    buy_cooldown_ticks: int = Field(default=3, ge=0)
    level_spacing: float = Field(default=0.015, gt=0, lt=1)
    min_notional: float = Field(default=10.0, ge=0)


class AccumulatorConfig(WireModel):
    id: str = Field(min_length=1)
    type: Literal["accumulator"] = "accumulator"
    name: Optional[str] = None
    settings: AccumulatorSettings = Field(default_factory=AccumulatorSettings)

    @property
    def display_name(self) -> str:
        return self.name or "Benchmark DCA"


class ModelAgentConfig(WireModel):
    id: str = Field(min_length=1)
    type: Literal["model-agent"] = "model-agent"
    name: Optional[str] = None
    settings: ModelAgentSettings = Field(default_factory=ModelAgentSettings)

    @property
    def display_name(self) -> str:
        return self.name or f"LLM-{self.settings.level}"


class GridConfig(WireModel):
    id: str = Field(min_length=1)
    type: Literal["grid"] = "grid"
    name: Optional[str] = None
    settings: GridSettings = Field(default_factory=GridSettings)

    @property
    def display_name(self) -> str:
        return self.name or "Pivot Grid"


ContestantConfig = Annotated[
    Union[AccumulatorConfig, ModelAgentConfig, GridConfig],
    Field(discriminator="type"),
]

# Type names accepted from older clients
TYPE_ALIASES = {
    "dca": "accumulator",
    "llm-solo": "model-agent",
    "llm": "model-agent",
}


def resolve_contestant_entry(entry: Any) -> Any:
    """
    Turn a bare id string into a full config dict and map legacy type names.

    Bare ids:
        dca-bot              accumulator with defaults
        grid-bot             grid with defaults
        llm-<level>          model agent at that level (llm-solo = lite)
    """
    if isinstance(entry, str):
        if entry == "dca-bot":
            return {"id": entry, "type": "accumulator", "name": "Benchmark DCA"}
        if entry == "grid-bot":
            return {"id": entry, "type": "grid", "name": "Pivot Grid"}
        if entry.startswith("llm-"):
            level = entry[len("llm-"):]
            if level not in ("lite", "indicator", "strategy", "scalper"):
                level = "lite"
            return {
                "id": entry,
                "type": "model-agent",
                "name": f"LLM-{level}",
                "settings": {"intelligenceLevel": level},
            }
        raise ValueError(f"Unknown contestant id: {entry!r}")

    if isinstance(entry, dict):
        raw_type = entry.get("type")
        if raw_type in TYPE_ALIASES:
            entry = {**entry, "type": TYPE_ALIASES[raw_type]}
        return entry

    return entry


class BacktestRequest(WireModel):
    """
    A validated backtest run request.

    Usage:
        request = BacktestRequest.from_dict({
            "start": "2024-01-01T00:00:00Z",
            "end": "2024-01-08T00:00:00Z",
            "symbol": "BTCUSDT",
            "stepMinutes": 60,
            "contestants": ["dca-bot", {"id": "g1", "type": "grid"}],
        })
    """

    start: datetime
    end: datetime
    symbol: str = Field(min_length=1)
    interval: str = "1m"
    step_minutes: int = Field(default=15, gt=0)
    initial_capital: float = Field(default=10_000.0, gt=0)
    fee_rate: float = Field(default=0.001, ge=0, lt=1)
    warmup_minutes: int = Field(default=24 * 60, ge=0)
    decision_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    contestants: List[ContestantConfig] = Field(
        default_factory=lambda: ["dca-bot", "llm-solo"],
        validate_default=True,
        min_length=1,
    )

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("symbol")
    @classmethod
    def _upper_symbol(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("contestants", mode="before")
    @classmethod
    def _resolve_entries(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [resolve_contestant_entry(entry) for entry in value]
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> "BacktestRequest":
        if self.end <= self.start:
            raise ValueError("end must be after start")
        if timedelta(minutes=self.step_minutes) > self.end - self.start:
            raise ValueError(
                f"stepMinutes ({self.step_minutes}) exceeds the requested range"
            )
        ids = [c.id for c in self.contestants]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate contestant ids: {', '.join(duplicates)}")
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BacktestRequest":
        """Validate a wire request; raises ConfigValidationError."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigValidationError(
                f"Invalid backtest request: {e.error_count()} error(s)",
                errors=e.errors(
                    include_url=False, include_context=False, include_input=False
                ),
            ) from e

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
