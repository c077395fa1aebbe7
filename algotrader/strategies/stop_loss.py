"""Stop-loss / take-profit: trigger when price crosses a fixed level."""

from __future__ import annotations

from dataclasses import dataclass

from algotrader.models import AlgoOrder, OrderSide, StopLossParams


@dataclass(frozen=True)
class StopLossDecision:
    should_execute: bool
    reason: str = ""


def evaluate(order: AlgoOrder, price: float) -> StopLossDecision:
    """Stop-loss is checked before take-profit; the first hit wins.

    BUY: stop at price <= stop level, profit at price >= target.
    SELL: the comparisons are inverted.
    """
    params = order.params
    assert isinstance(params, StopLossParams)
    buy = order.side == OrderSide.BUY

    stop = params.stop_loss_price
    if stop is not None and (price <= stop if buy else price >= stop):
        return StopLossDecision(True, f"Stop-loss at {stop}")

    target = params.take_profit_price
    if target is not None and (price >= target if buy else price <= target):
        return StopLossDecision(True, f"Take-profit at {target}")

    return StopLossDecision(False)
