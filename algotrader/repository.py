"""Typed access to the collections held in the key-value store."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, TypeVar

from pydantic import BaseModel

from algotrader import store as keys
from algotrader.config import ALERT_HISTORY_MAX, ORDER_HISTORY_MAX
from algotrader.models import (
    AlertTrigger,
    AlgoOrder,
    DailyLossLedger,
    HistoryOrderType,
    HistoryStatus,
    LossEntry,
    OrderHistoryEntry,
    OrderSide,
    PositionsCacheEntry,
    PriceAlert,
    RestingOrder,
    RiskSettings,
)
from algotrader.store import KeyValueStore

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def today_utc(now: datetime | None = None) -> str:
    return (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")


class Repository:
    """Load and save whole collections as lists of pydantic models."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    async def _load_list(self, key: str, model: type[M]) -> list[M]:
        raw = await self.store.get(key)
        if not raw:
            return []
        return [model.model_validate(item) for item in raw]

    async def _save_list(self, key: str, items: list[BaseModel]) -> None:
        await self.store.set(key, [item.model_dump(mode="json") for item in items])

    # ------------------------------------------------------------------
    # Algo orders
    # ------------------------------------------------------------------

    async def load_algo_orders(self) -> list[AlgoOrder]:
        return await self._load_list(keys.ALGO_ORDERS, AlgoOrder)

    async def save_algo_orders(self, orders: list[AlgoOrder]) -> None:
        await self._save_list(keys.ALGO_ORDERS, orders)

    # ------------------------------------------------------------------
    # Resting orders
    # ------------------------------------------------------------------

    async def load_resting_orders(self) -> list[RestingOrder]:
        return await self._load_list(keys.LIMIT_ORDERS, RestingOrder)

    async def save_resting_orders(self, orders: list[RestingOrder]) -> None:
        await self._save_list(keys.LIMIT_ORDERS, orders)

    # ------------------------------------------------------------------
    # Price alerts
    # ------------------------------------------------------------------

    async def load_alerts(self) -> list[PriceAlert]:
        return await self._load_list(keys.PRICE_ALERTS, PriceAlert)

    async def save_alerts(self, alerts: list[PriceAlert]) -> None:
        await self._save_list(keys.PRICE_ALERTS, alerts)

    async def load_alert_history(self) -> list[AlertTrigger]:
        return await self._load_list(keys.PRICE_ALERT_HISTORY, AlertTrigger)

    async def prepend_alert_history(self, triggers: list[AlertTrigger]) -> None:
        """Add triggers newest first, keeping at most ALERT_HISTORY_MAX."""
        if not triggers:
            return
        history = await self.load_alert_history()
        history = list(reversed(triggers)) + history
        await self._save_list(keys.PRICE_ALERT_HISTORY, history[:ALERT_HISTORY_MAX])

    async def clear_alert_history(self) -> None:
        await self.store.delete(keys.PRICE_ALERT_HISTORY)

    # ------------------------------------------------------------------
    # Risk settings / daily loss
    # ------------------------------------------------------------------

    async def load_risk_settings(self) -> RiskSettings:
        raw = await self.store.get(keys.RISK_SETTINGS)
        if not raw:
            return RiskSettings()
        return RiskSettings.model_validate(raw)

    async def save_risk_settings(self, settings: RiskSettings) -> None:
        await self.store.set(keys.RISK_SETTINGS, settings.model_dump(mode="json"))

    async def load_daily_loss(self, now: datetime | None = None) -> DailyLossLedger:
        """Today's ledger; a stored ledger for another date reads as empty."""
        today = today_utc(now)
        raw = await self.store.get(keys.DAILY_LOSS_TRACKING)
        if raw:
            ledger = DailyLossLedger.model_validate(raw)
            if ledger.date == today:
                return ledger
        return DailyLossLedger(date=today)

    async def record_trade_pnl(
        self, pnl: float, order_id: str, now: datetime | None = None
    ) -> DailyLossLedger:
        """Append a realized PnL entry; negative PnL adds to today's loss."""
        now = now or datetime.now(timezone.utc)
        ledger = await self.load_daily_loss(now)
        ledger.trades.append(LossEntry(timestamp=now, pnl=pnl, order_id=order_id))
        if pnl < 0:
            ledger.total_loss += -pnl
        await self.store.set(keys.DAILY_LOSS_TRACKING, ledger.model_dump(mode="json"))
        logger.info(
            "daily_pnl_recorded",
            extra={"order_id": order_id, "pnl": pnl, "total_loss": ledger.total_loss},
        )
        return ledger

    # ------------------------------------------------------------------
    # Positions cache
    # ------------------------------------------------------------------

    async def load_positions_cache(self) -> dict[str, PositionsCacheEntry]:
        raw = await self.store.get(keys.POSITIONS_CACHE)
        if not raw:
            return {}
        return {owner: PositionsCacheEntry.model_validate(entry) for owner, entry in raw.items()}

    async def save_positions_cache(self, entries: dict[str, PositionsCacheEntry]) -> None:
        await self.store.set(
            keys.POSITIONS_CACHE,
            {owner: entry.model_dump(mode="json") for owner, entry in entries.items()},
        )

    # ------------------------------------------------------------------
    # Order history
    # ------------------------------------------------------------------

    async def load_order_history(self) -> list[OrderHistoryEntry]:
        return await self._load_list(keys.ORDER_HISTORY, OrderHistoryEntry)

    async def add_order_history(self, entry: OrderHistoryEntry) -> None:
        history = await self.load_order_history()
        history.insert(0, entry)
        await self._save_list(keys.ORDER_HISTORY, history[:ORDER_HISTORY_MAX])

    async def update_order_history(self, entry_id: str, **updates) -> bool:
        history = await self.load_order_history()
        for i, entry in enumerate(history):
            if entry.id == entry_id:
                history[i] = entry.model_copy(update=updates)
                await self._save_list(keys.ORDER_HISTORY, history)
                return True
        return False

    async def mark_resting_history_executed(
        self, resting_order_id: str, executed_price: float
    ) -> bool:
        """Flip the PENDING history entry of a resting order to EXECUTED."""
        history = await self.load_order_history()
        for i, entry in enumerate(history):
            if (
                entry.resting_order_id == resting_order_id
                and entry.status == HistoryStatus.PENDING
            ):
                history[i] = entry.model_copy(
                    update={"status": HistoryStatus.EXECUTED, "executed_price": executed_price}
                )
                await self._save_list(keys.ORDER_HISTORY, history)
                return True
        return False

    async def filter_order_history(
        self,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        order_type: Optional[HistoryOrderType] = None,
        token_id: Optional[str] = None,
        side: Optional[OrderSide] = None,
        status: Optional[HistoryStatus] = None,
    ) -> list[OrderHistoryEntry]:
        history = await self.load_order_history()
        return [
            e for e in history
            if (start is None or e.timestamp >= start)
            and (end is None or e.timestamp <= end)
            and (order_type is None or e.order_type == order_type)
            and (token_id is None or e.token_id == token_id)
            and (side is None or e.side == side)
            and (status is None or e.status == status)
        ]

    async def clear_order_history(self) -> None:
        await self.store.delete(keys.ORDER_HISTORY)
