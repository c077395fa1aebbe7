"""Job: check price alerts and notify when a threshold is crossed."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional

from algotrader.config import DEFAULT_SNOOZE_MINUTES
from algotrader.errors import OrderNotFoundError
from algotrader.jobs.price_source import PriceSource
from algotrader.models import AlertCondition, AlertStatus, AlertTrigger, PriceAlert
from algotrader.notifications import ACTION_DISMISS, ACTION_SNOOZE, NotificationKind, Notifier
from algotrader.repository import Repository

logger = logging.getLogger(__name__)


class AlertMonitor:
    """Evaluates due alerts once per tick and maps notification clicks back.

    Attributes:
        lock: Shared with the engine and commands to serialize alert writes.
    """

    def __init__(
        self,
        repo: Repository,
        prices: PriceSource,
        notifier: Notifier,
        lock: Optional[asyncio.Lock] = None,
    ) -> None:
        self.repo = repo
        self.prices = prices
        self.notifier = notifier
        self.lock = lock or asyncio.Lock()

    async def check(self, now: Optional[datetime] = None) -> list[AlertTrigger]:
        """Trigger every due alert whose condition holds at the current price."""
        now = now or datetime.now(timezone.utc)
        async with self.lock:
            alerts = await self.repo.load_alerts()
            due = [a for a in alerts if a.is_due(now)]
            if not due:
                return []

            by_token: dict[str, list[PriceAlert]] = defaultdict(list)
            for alert in due:
                by_token[alert.token_id].append(alert)

            tokens = list(by_token)
            fetched = await asyncio.gather(
                *(self.prices.fetch_price(tid) for tid in tokens),
                return_exceptions=True,
            )

            triggers: list[AlertTrigger] = []
            for token_id, market in zip(tokens, fetched):
                if isinstance(market, BaseException):
                    logger.warning(
                        "alert_price_fetch_failed",
                        extra={"token_id": token_id},
                        exc_info=market,
                    )
                    continue
                if market is None or market.price <= 0:
                    continue
                for alert in by_token[token_id]:
                    if not alert.is_crossed(market.price):
                        continue
                    triggers.append(await self._trigger(alert, market.price, now))

            if triggers:
                await self.repo.save_alerts(alerts)
                await self.repo.prepend_alert_history(triggers)
                logger.info("price_alerts_triggered", extra={"count": len(triggers)})
            return triggers

    async def _trigger(self, alert: PriceAlert, price: float, now: datetime) -> AlertTrigger:
        alert.status = AlertStatus.TRIGGERED
        alert.triggered_at = now
        alert.snoozed_until = None

        direction = "above" if alert.condition == AlertCondition.ABOVE else "below"
        alert.notification_id = await self.notifier.notify(
            NotificationKind.PRICE_ALERT,
            "Price Alert Triggered",
            f"{alert.market_question or 'Market'} - {alert.outcome or 'Unknown'}\n"
            f"Price is now {direction} ${alert.target_price:.4f}\n"
            f"Current: ${price:.4f} | Target: ${alert.target_price:.4f}",
            actions=(ACTION_SNOOZE, ACTION_DISMISS),
        )
        logger.info(
            "price_alert_triggered",
            extra={
                "alert_id": alert.id,
                "token_id": alert.token_id,
                "condition": alert.condition.value,
                "target_price": alert.target_price,
                "price": price,
                "notification_id": alert.notification_id,
            },
        )
        return AlertTrigger(alert=alert.model_copy(), current_price=price, timestamp=now)

    # ------------------------------------------------------------------
    # Notification actions
    # ------------------------------------------------------------------

    async def handle_notification_action(
        self,
        notification_id: str,
        action: str,
        now: Optional[datetime] = None,
        snooze_minutes: float = DEFAULT_SNOOZE_MINUTES,
    ) -> PriceAlert:
        """Apply a snooze/dismiss click to the alert that raised the notification."""
        now = now or datetime.now(timezone.utc)
        if action not in (ACTION_SNOOZE, ACTION_DISMISS):
            raise ValueError(f"Unknown notification action: {action}")

        async with self.lock:
            alerts = await self.repo.load_alerts()
            for alert in alerts:
                if notification_id and alert.notification_id == notification_id:
                    break
            else:
                raise OrderNotFoundError("Alert for notification", notification_id)

            if action == ACTION_SNOOZE:
                alert.status = AlertStatus.SNOOZED
                alert.snoozed_until = now + timedelta(minutes=snooze_minutes)
            else:
                alert.status = AlertStatus.DISMISSED
                alert.snoozed_until = None
            await self.repo.save_alerts(alerts)

        logger.info(
            "price_alert_action",
            extra={"alert_id": alert.id, "notification_id": notification_id, "action": action},
        )
        return alert
