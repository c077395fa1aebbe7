"""TWAP: split an order into equal slices executed at fixed intervals.

Slices are scheduled on interval boundaries measured from the order's start
time. Every slice attempt, whether it fails at the exchange or is rejected
before submission, consumes one boundary, so a failed slice is not retried;
its size is picked up by the sweep once the duration has elapsed.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from algotrader.config import TWAP_MIN_SLICE
from algotrader.models import AlgoOrder, TWAPParams

_EPS = 1e-9


@dataclass(frozen=True)
class TWAPDecision:
    should_execute: bool
    execute_size: float = 0.0
    is_complete: bool = False


def slice_count(params: TWAPParams) -> int:
    return max(1, math.ceil(params.duration_minutes / params.interval_minutes - _EPS))


def nominal_slice(order: AlgoOrder) -> float:
    assert isinstance(order.params, TWAPParams)
    return order.size / slice_count(order.params)


def evaluate(order: AlgoOrder, price: float, now: Optional[datetime] = None) -> TWAPDecision:
    """Decide whether a slice is due at *now*.

    *price* is only the price the caller will record against the slice.
    """
    params = order.params
    assert isinstance(params, TWAPParams)
    now = now or datetime.now(timezone.utc)

    remaining = order.size - order.executed_size
    if remaining <= _EPS:
        return TWAPDecision(False, is_complete=True)

    elapsed = (now - params.start_time).total_seconds() / 60

    # Past the schedule: sweep whatever is left in one final slice
    if elapsed > params.duration_minutes:
        if remaining >= TWAP_MIN_SLICE:
            return TWAPDecision(True, execute_size=remaining, is_complete=True)
        return TWAPDecision(False, is_complete=True)

    slices = slice_count(params)
    expected = min(math.floor(elapsed / params.interval_minutes + _EPS), slices)
    attempts = len(order.execution_history)
    if attempts >= expected:
        return TWAPDecision(False)

    nominal = order.size / slices
    # Fold rounding residue into the last slice
    size = remaining if remaining <= nominal + _EPS else nominal
    if size < TWAP_MIN_SLICE:
        return TWAPDecision(False)
    return TWAPDecision(True, execute_size=size, is_complete=False)
