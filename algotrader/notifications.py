"""User notifications for executions, fills and price alerts."""

from __future__ import annotations

import abc
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Sequence

import aiohttp

from algotrader.config import NOTIFY_WEBHOOK_URL

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    ORDER_EXECUTED = "ORDER_EXECUTED"
    ORDER_FAILED = "ORDER_FAILED"
    TWAP_COMPLETED = "TWAP_COMPLETED"
    LIMIT_ORDER_FILLED = "LIMIT_ORDER_FILLED"
    PRICE_ALERT = "PRICE_ALERT"


# Actions offered on price alert notifications
ACTION_SNOOZE = "snooze"
ACTION_DISMISS = "dismiss"


class Notifier(abc.ABC):
    """Notification sink. Delivery failures are logged, never raised."""

    @abc.abstractmethod
    async def notify(
        self,
        kind: NotificationKind,
        title: str,
        message: str,
        actions: Sequence[str] = (),
    ) -> str:
        """Send a notification and return its id."""

    async def close(self) -> None:
        return None


class LogNotifier(Notifier):
    """Writes notifications to the structured log."""

    async def notify(self, kind, title, message, actions=()) -> str:
        notification_id = uuid.uuid4().hex
        logger.info(
            "notification",
            extra={
                "notification_id": notification_id,
                "kind": kind.value,
                "title": title,
                "body": message,
                "actions": list(actions),
            },
        )
        return notification_id


class WebhookNotifier(Notifier):
    """POSTs notifications as JSON to a webhook URL."""

    def __init__(self, url: str = NOTIFY_WEBHOOK_URL, timeout: float = 5.0) -> None:
        self.url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    async def notify(self, kind, title, message, actions=()) -> str:
        notification_id = uuid.uuid4().hex
        payload = {
            "id": notification_id,
            "kind": kind.value,
            "title": title,
            "message": message,
            "actions": list(actions),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self._timeout)
            async with self._session.post(self.url, json=payload) as response:
                if response.status >= 300:
                    logger.error(
                        "webhook_failed",
                        extra={"status": response.status, "notification_id": notification_id},
                    )
        except Exception:
            logger.error("webhook_error", extra={"notification_id": notification_id}, exc_info=True)
        return notification_id

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


def build_notifier(webhook_url: str = NOTIFY_WEBHOOK_URL) -> Notifier:
    if webhook_url:
        return WebhookNotifier(webhook_url)
    return LogNotifier()
