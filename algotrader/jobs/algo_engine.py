"""Job: the algo engine tick.

On each tick it:

1. Collects the tokens referenced by live algo orders and pending resting orders
2. Fetches current prices for those tokens
3. Reconciles resting orders against the exchange's open orders
4. Evaluates every ACTIVE algo order against its strategy, executing on trigger
5. Writes the algo order collection back once

Orders are evaluated on a working copy and committed by index only when
their evaluation finishes, so a failure in one order never leaves it half
updated or affects its siblings.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from algotrader.execution.gateway import ExecutionGateway
from algotrader.jobs.price_source import PriceSource
from algotrader.jobs.reconciler import LimitOrderReconciler
from algotrader.models import (
    AlgoOrder,
    AlgoOrderStatus,
    AlgoOrderType,
    MarketPrice,
    OrderSide,
    RestingOrderStatus,
    TrailingStopParams,
)
from algotrader.notifications import NotificationKind, Notifier
from algotrader.repository import Repository
from algotrader.strategies import stop_loss, trailing_stop, twap

logger = logging.getLogger(__name__)

_EPS = 1e-9

_LIVE_ALGO_STATUSES = (AlgoOrderStatus.ACTIVE, AlgoOrderStatus.PAUSED)


@dataclass
class TickSummary:
    started_at: str = ""
    duration_ms: float = 0.0
    tokens: int = 0
    priced: int = 0
    evaluated: int = 0
    errors: int = 0
    reconciled: int = 0
    skipped: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class AlgoEngine:
    """Runs one evaluation pass over all algo and resting orders.

    Attributes:
        lock: Shared with the command service so user mutations are applied
            between ticks, never in the middle of one.
        last_tick: Summary of the most recent completed tick.
    """

    def __init__(
        self,
        repo: Repository,
        prices: PriceSource,
        reconciler: LimitOrderReconciler,
        gateway: ExecutionGateway,
        notifier: Notifier,
        lock: Optional[asyncio.Lock] = None,
    ) -> None:
        self.repo = repo
        self.prices = prices
        self.reconciler = reconciler
        self.gateway = gateway
        self.notifier = notifier
        self.lock = lock or asyncio.Lock()
        self.last_tick: Optional[TickSummary] = None
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def run_tick(self, now: Optional[datetime] = None) -> TickSummary:
        """Run one tick. Never raises; overlapping calls are refused."""
        if self._in_flight:
            logger.warning("tick_skipped", extra={"reason": "tick_in_flight"})
            return TickSummary(skipped=True)

        self._in_flight = True
        summary = TickSummary(started_at=(now or datetime.now(timezone.utc)).isoformat())
        start = asyncio.get_running_loop().time()
        try:
            async with self.lock:
                await self._tick(summary, now)
        except Exception:
            summary.errors += 1
            logger.error("tick_error", exc_info=True)
        finally:
            self._in_flight = False
            summary.duration_ms = (asyncio.get_running_loop().time() - start) * 1000

        self.last_tick = summary
        if summary.tokens:
            logger.info("tick_complete", extra=summary.to_dict())
        return summary

    async def _tick(self, summary: TickSummary, now: Optional[datetime]) -> None:
        orders = await self.repo.load_algo_orders()
        resting = await self.repo.load_resting_orders()

        token_ids = _unique(
            [o.token_id for o in orders if o.status in _LIVE_ALGO_STATUSES]
            + [r.token_id for r in resting if r.status == RestingOrderStatus.PENDING]
        )
        summary.tokens = len(token_ids)
        if not token_ids:
            return

        prices = await self.prices.fetch_prices(token_ids)
        summary.priced = len(prices)

        changed = await self.reconciler.reconcile(resting, now)
        if changed:
            summary.reconciled = len(changed)
            await self.repo.save_resting_orders(resting)

        for i, order in enumerate(orders):
            if order.status != AlgoOrderStatus.ACTIVE:
                continue
            market = prices.get(order.token_id)
            if market is None:
                continue

            working = order.model_copy(deep=True)
            try:
                await self._evaluate(working, market, now or datetime.now(timezone.utc))
            except Exception:
                summary.errors += 1
                logger.error(
                    "order_evaluation_error",
                    extra={"order_id": order.id, "type": order.type.value},
                    exc_info=True,
                )
                continue
            orders[i] = working
            summary.evaluated += 1

        await self.repo.save_algo_orders(orders)

    # ------------------------------------------------------------------
    # Per-order evaluation
    # ------------------------------------------------------------------

    async def _evaluate(self, order: AlgoOrder, market: MarketPrice, now: datetime) -> None:
        if order.type == AlgoOrderType.TRAILING_STOP:
            await self._evaluate_trailing_stop(order, market, now)
        elif order.type in (AlgoOrderType.STOP_LOSS, AlgoOrderType.TAKE_PROFIT):
            await self._evaluate_stop_loss(order, market, now)
        elif order.type == AlgoOrderType.TWAP:
            await self._evaluate_twap(order, market, now)
        else:
            logger.warning("unknown_order_type", extra={"order_id": order.id, "type": str(order.type)})

    async def _evaluate_trailing_stop(self, order: AlgoOrder, market: MarketPrice, now: datetime) -> None:
        decision = trailing_stop.evaluate(order, market.price)
        order.highest_price = decision.highest_price
        order.lowest_price = decision.lowest_price
        order.is_activated = decision.is_activated
        order.updated_at = now

        if decision.should_execute:
            params = order.params
            assert isinstance(params, TrailingStopParams)
            anchor = decision.lowest_price if order.side == OrderSide.BUY else decision.highest_price
            reason = f"Trailing stop {params.trail_percent:g}% from {anchor}"
            await self.gateway.execute_full(order, market, reason, now)

    async def _evaluate_stop_loss(self, order: AlgoOrder, market: MarketPrice, now: datetime) -> None:
        decision = stop_loss.evaluate(order, market.price)
        if decision.should_execute:
            await self.gateway.execute_full(order, market, decision.reason, now)

    async def _evaluate_twap(self, order: AlgoOrder, market: MarketPrice, now: datetime) -> None:
        decision = twap.evaluate(order, market.price, now)
        if decision.should_execute:
            await self.gateway.execute_slice(order, market, decision.execute_size, now)

        if order.status != AlgoOrderStatus.ACTIVE:
            return
        if decision.is_complete or order.executed_size >= order.size - _EPS:
            order.status = AlgoOrderStatus.COMPLETED
            order.completed_at = now
            order.updated_at = now
            logger.info(
                "twap_completed",
                extra={
                    "order_id": order.id,
                    "executed_size": order.executed_size,
                    "total_size": order.size,
                    "slices": len(order.execution_history),
                },
            )
            await self.notifier.notify(
                NotificationKind.TWAP_COMPLETED,
                "TWAP Order Complete",
                f"TWAP {order.side.value} order completed: {order.executed_size:g} / {order.size:g} shares",
            )


def _unique(items: list[str]) -> list[str]:
    """Deduplicate preserving first-seen order."""
    return list(dict.fromkeys(items))
