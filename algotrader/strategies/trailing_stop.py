"""Trailing stop: follow the best price and trigger on a fixed retracement.

- BUY orders trail up from the lowest price seen
- SELL orders trail down from the highest price seen

An optional activation price holds the order dormant until the market first
reaches it (at or below for BUY, at or above for SELL).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from algotrader.models import AlgoOrder, OrderSide, TrailingStopParams

# Absorbs float noise in the threshold product (e.g. 0.45 * 1.05)
_EPS = 1e-12


@dataclass(frozen=True)
class TrailingStopDecision:
    should_execute: bool
    highest_price: Optional[float]
    lowest_price: Optional[float]
    is_activated: bool


def evaluate(order: AlgoOrder, price: float) -> TrailingStopDecision:
    """Evaluate *order* at *price*; the returned state is always applied."""
    params = order.params
    assert isinstance(params, TrailingStopParams)

    highest = order.highest_price
    lowest = order.lowest_price
    activated = order.is_activated

    if params.activation_price is not None and not activated:
        if order.side == OrderSide.BUY:
            reached = price <= params.activation_price
        else:
            reached = price >= params.activation_price
        if not reached:
            return TrailingStopDecision(False, highest, lowest, activated)
        activated = True

    pct = params.trail_percent / 100

    if order.side == OrderSide.BUY:
        prev_low = lowest if lowest is not None else price
        new_low = min(prev_low, price)
        stop = new_low * (1 + pct)
        triggered = price >= stop - _EPS and prev_low < price
        return TrailingStopDecision(triggered, highest, new_low, activated)

    prev_high = highest if highest is not None else price
    new_high = max(prev_high, price)
    stop = new_high * (1 - pct)
    triggered = price <= stop + _EPS and prev_high > price
    return TrailingStopDecision(triggered, new_high, lowest, activated)
