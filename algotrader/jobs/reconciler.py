"""Job: reconcile locally tracked resting orders against the exchange.

A PENDING resting order whose exchange id is no longer in the open-order set
has left the book. The exchange does not say whether it filled or was
cancelled elsewhere, so it is recorded as FILLED at its limit price with
``fill_unconfirmed`` set, and the log event and notification say so.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from algotrader.execution.session import SessionManager
from algotrader.models import RestingOrder, RestingOrderStatus
from algotrader.notifications import NotificationKind, Notifier
from algotrader.repository import Repository

logger = logging.getLogger(__name__)


class LimitOrderReconciler:
    def __init__(self, repo: Repository, sessions: SessionManager, notifier: Notifier) -> None:
        self.repo = repo
        self.sessions = sessions
        self.notifier = notifier

    async def reconcile(
        self, orders: list[RestingOrder], now: Optional[datetime] = None
    ) -> list[RestingOrder]:
        """Mutate *orders* in place and return the ones that transitioned."""
        pending = [
            o for o in orders
            if o.status == RestingOrderStatus.PENDING and o.exchange_order_id
        ]
        if not pending:
            return []

        session = self.sessions.current()
        if session is None:
            logger.debug("reconcile_skip", extra={"reason": "no_session"})
            return []

        try:
            response = await session.client.get_open_orders()
        except Exception:
            logger.warning("reconcile_skip", extra={"reason": "open_orders_error"}, exc_info=True)
            return []
        if not response.success:
            logger.info("reconcile_skip", extra={"reason": response.error or "open_orders_unavailable"})
            return []

        open_ids = {str(o.get("id")) for o in (response.data or []) if isinstance(o, dict) and o.get("id")}
        now = now or datetime.now(timezone.utc)
        changed: list[RestingOrder] = []

        for order in pending:
            if order.exchange_order_id in open_ids:
                continue

            order.status = RestingOrderStatus.FILLED
            order.filled_at = now
            order.filled_price = order.limit_price
            order.fill_unconfirmed = True
            changed.append(order)

            logger.info(
                "resting_order_fill_inferred",
                extra={
                    "order_id": order.id,
                    "exchange_order_id": order.exchange_order_id,
                    "limit_price": order.limit_price,
                    "fill_unconfirmed": True,
                },
            )
            try:
                await self.repo.mark_resting_history_executed(order.id, order.limit_price)
            except Exception:
                logger.error("order_history_write_failed", extra={"order_id": order.id}, exc_info=True)
            await self.notifier.notify(
                NotificationKind.LIMIT_ORDER_FILLED,
                "Limit Order Filled",
                f"{order.side.value} {order.size:g} @ ${order.limit_price:.4f}\n"
                f"{order.market_question or order.token_id}\n"
                "Fill inferred: the order left the book (it may have been cancelled externally).",
            )

        return changed
