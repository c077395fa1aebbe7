"""Strategy evaluators for algorithmic orders.

Each evaluator is a pure function of (order, price) returning a frozen
decision; the engine applies the decision and performs any execution.

Modules:
    trailing_stop -- Retracement from the running best price
    stop_loss     -- Fixed stop-loss / take-profit levels
    twap          -- Time-sliced execution over a fixed duration
"""

from algotrader.strategies.stop_loss import StopLossDecision
from algotrader.strategies.trailing_stop import TrailingStopDecision
from algotrader.strategies.twap import TWAPDecision

__all__ = [
    "StopLossDecision",
    "TrailingStopDecision",
    "TWAPDecision",
]
