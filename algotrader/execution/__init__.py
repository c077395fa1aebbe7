"""Execution layer for the algorithmic order engine.

Everything that touches the exchange or commits capital lives here: the
trading session and its exchange client, parameter and balance validation,
risk limits, the positions snapshot cache and the execution gateway that ties
them together.

Modules:
    session     -- Trading session and py-clob-client exchange wrapper
    validation  -- Order parameter and balance checks
    risk        -- Per-market, daily loss and exposure limits
    positions   -- Cached wallet positions from the Data API
    gateway     -- Validate, submit, record and notify
"""

from algotrader.execution.gateway import ExecutionGateway
from algotrader.execution.positions import PositionsCache
from algotrader.execution.risk import RiskCheckResult, RiskValidator
from algotrader.execution.session import (
    ExchangeClient,
    ExchangeResponse,
    PolymarketExchangeClient,
    SessionManager,
    SubmitResult,
    TradingSession,
)

__all__ = [
    "ExchangeClient",
    "ExchangeResponse",
    "ExecutionGateway",
    "PolymarketExchangeClient",
    "PositionsCache",
    "RiskCheckResult",
    "RiskValidator",
    "SessionManager",
    "SubmitResult",
    "TradingSession",
]
