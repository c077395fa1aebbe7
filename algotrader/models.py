"""Records owned by the key-value store and passed through the engine.

Every collection is stored as a JSON list of these models and loaded back
wholesale at the start of a tick. Timestamps are timezone-aware UTC.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from algotrader.config import (
    RISK_MAX_DAILY_LOSS,
    RISK_MAX_POSITION_PER_MARKET,
    RISK_MAX_TOTAL_EXPOSURE,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class AlgoOrderType(str, Enum):
    TRAILING_STOP = "TRAILING_STOP"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    TWAP = "TWAP"


class AlgoOrderStatus(str, Enum):
    """Lifecycle of an algorithmic order."""

    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


TERMINAL_ALGO_STATUSES = frozenset(
    {AlgoOrderStatus.COMPLETED, AlgoOrderStatus.CANCELLED, AlgoOrderStatus.FAILED}
)

# Allowed user/engine transitions; anything else is rejected
ALGO_TRANSITIONS: dict[AlgoOrderStatus, frozenset[AlgoOrderStatus]] = {
    AlgoOrderStatus.ACTIVE: frozenset({
        AlgoOrderStatus.PAUSED,
        AlgoOrderStatus.CANCELLED,
        AlgoOrderStatus.COMPLETED,
        AlgoOrderStatus.FAILED,
    }),
    AlgoOrderStatus.PAUSED: frozenset({AlgoOrderStatus.ACTIVE, AlgoOrderStatus.CANCELLED}),
    AlgoOrderStatus.COMPLETED: frozenset(),
    AlgoOrderStatus.CANCELLED: frozenset(),
    AlgoOrderStatus.FAILED: frozenset(),
}


class RestingOrderStatus(str, Enum):
    PENDING = "PENDING"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class AlertCondition(str, Enum):
    ABOVE = "ABOVE"
    BELOW = "BELOW"


class AlertStatus(str, Enum):
    ACTIVE = "ACTIVE"
    TRIGGERED = "TRIGGERED"
    SNOOZED = "SNOOZED"
    DISMISSED = "DISMISSED"


class HistoryOrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    ALGO = "ALGO"


class HistoryStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------


class MarketPrice(BaseModel):
    """Best bid/ask and mid for one token at fetch time."""

    token_id: str
    price: float = Field(..., description="Mid price used for evaluation.")
    best_bid: float = 0.0
    best_ask: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)


class Position(BaseModel):
    """A holding as reported by the Polymarket Data API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    proxy_wallet: str = Field(default="", alias="proxyWallet")
    asset: str = Field(default="", description="Token ID of the outcome held.")
    condition_id: str = Field(default="", alias="conditionId")
    size: float = 0.0
    avg_price: float = Field(default=0.0, alias="avgPrice")
    initial_value: float = Field(default=0.0, alias="initialValue")
    current_value: float = Field(default=0.0, alias="currentValue")
    cash_pnl: float = Field(default=0.0, alias="cashPnl")
    realized_pnl: float = Field(default=0.0, alias="realizedPnl")
    cur_price: float = Field(default=0.0, alias="curPrice")
    title: str = ""
    outcome: str = ""


# ---------------------------------------------------------------------------
# Algorithmic orders
# ---------------------------------------------------------------------------


class TrailingStopParams(BaseModel):
    kind: Literal["trailing_stop"] = "trailing_stop"
    trail_percent: float = Field(..., gt=0, lt=100)
    activation_price: Optional[float] = Field(default=None, gt=0)


class StopLossParams(BaseModel):
    kind: Literal["stop_loss"] = "stop_loss"
    stop_loss_price: Optional[float] = Field(default=None, gt=0)
    take_profit_price: Optional[float] = Field(default=None, gt=0)


class TWAPParams(BaseModel):
    kind: Literal["twap"] = "twap"
    duration_minutes: float = Field(..., gt=0)
    interval_minutes: float = Field(..., gt=0)
    start_time: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _interval_within_duration(self) -> "TWAPParams":
        if self.interval_minutes > self.duration_minutes:
            raise ValueError("interval_minutes cannot exceed duration_minutes")
        return self


AlgoOrderParams = Annotated[
    Union[TrailingStopParams, StopLossParams, TWAPParams],
    Field(discriminator="kind"),
]

_PARAMS_KIND_FOR_TYPE = {
    AlgoOrderType.TRAILING_STOP: "trailing_stop",
    AlgoOrderType.STOP_LOSS: "stop_loss",
    AlgoOrderType.TAKE_PROFIT: "stop_loss",
    AlgoOrderType.TWAP: "twap",
}


class ExecutionRecord(BaseModel):
    """One submission attempt made on behalf of an algo order."""

    price: float
    size: float
    timestamp: datetime = Field(default_factory=utcnow)
    reason: str = ""
    exchange_order_id: str = ""
    success: bool = True
    error: str = ""


class AlgoOrder(BaseModel):
    id: str = Field(default_factory=lambda: new_id("order"))
    type: AlgoOrderType
    status: AlgoOrderStatus = AlgoOrderStatus.ACTIVE
    token_id: str
    side: OrderSide
    size: float = Field(..., gt=0)
    params: AlgoOrderParams
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    # Runtime state
    highest_price: Optional[float] = None
    lowest_price: Optional[float] = None
    is_activated: bool = False
    executed_size: float = 0.0
    execution_history: list[ExecutionRecord] = Field(default_factory=list)

    # Audit
    error: str = ""
    exchange_order_id: str = ""
    market_question: str = ""
    outcome: str = ""

    @model_validator(mode="after")
    def _params_match_type(self) -> "AlgoOrder":
        expected = _PARAMS_KIND_FOR_TYPE[self.type]
        if self.params.kind != expected:
            raise ValueError(
                f"{self.type.value} orders require '{expected}' params, got '{self.params.kind}'"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ALGO_STATUSES

    @property
    def remaining_size(self) -> float:
        return max(self.size - self.executed_size, 0.0)


# ---------------------------------------------------------------------------
# Resting (limit) orders
# ---------------------------------------------------------------------------


class RestingOrder(BaseModel):
    id: str = Field(default_factory=lambda: new_id("limit"))
    token_id: str
    side: OrderSide
    size: float = Field(..., gt=0)
    limit_price: float = Field(..., gt=0, lt=1)
    status: RestingOrderStatus = RestingOrderStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    exchange_order_id: str = ""
    filled_price: Optional[float] = None
    filled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    # Fill inferred from disappearance from the open-order set, not observed
    fill_unconfirmed: bool = False
    error: str = ""
    market_question: str = ""
    outcome: str = ""


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------


class RiskSettings(BaseModel):
    max_position_size_per_market: float = Field(default=RISK_MAX_POSITION_PER_MARKET, ge=0)
    max_daily_loss: float = Field(default=RISK_MAX_DAILY_LOSS, ge=0)
    max_total_exposure: float = Field(default=RISK_MAX_TOTAL_EXPOSURE, ge=0)
    enable_risk_checks: bool = True
    updated_at: datetime = Field(default_factory=utcnow)


class LossEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    pnl: float
    order_id: str = ""


class DailyLossLedger(BaseModel):
    """Realized loss for one UTC calendar day; a positive total is a loss."""

    date: str
    total_loss: float = 0.0
    trades: list[LossEntry] = Field(default_factory=list)


class PositionsCacheEntry(BaseModel):
    owner: str
    positions: list[Position] = Field(default_factory=list)
    fetched_at: float = Field(..., description="Epoch seconds of the fetch.")


# ---------------------------------------------------------------------------
# Price alerts
# ---------------------------------------------------------------------------


class PriceAlert(BaseModel):
    id: str = Field(default_factory=lambda: new_id("alert"))
    token_id: str
    condition: AlertCondition
    target_price: float = Field(..., gt=0, lt=1)
    status: AlertStatus = AlertStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    triggered_at: Optional[datetime] = None
    snoozed_until: Optional[datetime] = None
    notification_id: str = ""
    market_question: str = ""
    outcome: str = ""

    def is_due(self, now: datetime) -> bool:
        """True if the alert should be evaluated at *now*."""
        if self.status == AlertStatus.ACTIVE:
            return True
        if self.status == AlertStatus.SNOOZED:
            return self.snoozed_until is None or now >= self.snoozed_until
        return False

    def is_crossed(self, price: float) -> bool:
        if self.condition == AlertCondition.ABOVE:
            return price >= self.target_price
        return price <= self.target_price


class AlertTrigger(BaseModel):
    alert: PriceAlert
    current_price: float
    timestamp: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Order history (audit trail)
# ---------------------------------------------------------------------------


class OrderHistoryEntry(BaseModel):
    id: str = Field(default_factory=lambda: new_id("hist"))
    timestamp: datetime = Field(default_factory=utcnow)
    order_type: HistoryOrderType
    algo_type: Optional[AlgoOrderType] = None
    token_id: str
    side: OrderSide
    size: float
    price: float
    executed_price: Optional[float] = None
    status: HistoryStatus
    algo_order_id: str = ""
    resting_order_id: str = ""
    exchange_order_id: str = ""
    error: str = ""
    market_question: str = ""
    outcome: str = ""


# ---------------------------------------------------------------------------
# Command surface
# ---------------------------------------------------------------------------


class CommandResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "CommandResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "CommandResult":
        return cls(success=False, error=error)


class CreateAlgoOrderRequest(BaseModel):
    """Flat create request as sent by callers; params are derived from type."""

    type: AlgoOrderType
    token_id: str = Field(..., min_length=1)
    side: OrderSide
    size: float = Field(..., gt=0)
    trail_percent: Optional[float] = None
    activation_price: Optional[float] = None
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    duration_minutes: Optional[float] = None
    interval_minutes: Optional[float] = None
    market_question: str = ""
    outcome: str = ""

    @field_validator("token_id")
    @classmethod
    def _strip_token(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("token_id is required")
        return v

    def build_params(self, now: datetime) -> Union[TrailingStopParams, StopLossParams, TWAPParams]:
        if self.type == AlgoOrderType.TRAILING_STOP:
            if self.trail_percent is None:
                raise ValueError("trail_percent is required for TRAILING_STOP orders")
            return TrailingStopParams(
                trail_percent=self.trail_percent,
                activation_price=self.activation_price,
            )
        if self.type in (AlgoOrderType.STOP_LOSS, AlgoOrderType.TAKE_PROFIT):
            return StopLossParams(
                stop_loss_price=self.stop_loss_price,
                take_profit_price=self.take_profit_price,
            )
        if self.duration_minutes is None or self.interval_minutes is None:
            raise ValueError("duration_minutes and interval_minutes are required for TWAP orders")
        return TWAPParams(
            duration_minutes=self.duration_minutes,
            interval_minutes=self.interval_minutes,
            start_time=now,
        )
