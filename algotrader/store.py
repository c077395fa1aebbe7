"""Key-value persistence for engine collections.

Each collection (algo orders, resting orders, alerts, ...) lives under one key
as a JSON document and is read and written wholesale. ``MemoryStore`` keeps
everything in-process; ``ClickHouseStore`` persists to a ReplacingMergeTree
table so the latest write per key wins.
"""

from __future__ import annotations

import abc
import asyncio
import copy
import json
import logging
from datetime import datetime, timezone
from typing import Any

import clickhouse_connect
from clickhouse_connect.driver.client import Client

from algotrader.config import (
    CLICKHOUSE_DATABASE,
    CLICKHOUSE_HOST,
    CLICKHOUSE_PASSWORD,
    CLICKHOUSE_PORT,
    CLICKHOUSE_SECURE,
    CLICKHOUSE_USER,
    WRITER_BASE_BACKOFF,
    WRITER_MAX_RETRIES,
)
from algotrader.errors import StoreError

logger = logging.getLogger(__name__)

KV_TABLE = "kv_store"

# Store keys
ALGO_ORDERS = "algo_orders"
LIMIT_ORDERS = "limit_orders"
PRICE_ALERTS = "price_alerts"
PRICE_ALERT_HISTORY = "price_alert_history"
RISK_SETTINGS = "risk_settings"
DAILY_LOSS_TRACKING = "daily_loss_tracking"
POSITIONS_CACHE = "positions_cache"
ORDER_HISTORY = "order_history"


class KeyValueStore(abc.ABC):
    """Async get/set of JSON-compatible values by key."""

    @abc.abstractmethod
    async def get(self, key: str) -> Any:
        """Return the stored value, or None if the key was never written."""

    @abc.abstractmethod
    async def set(self, key: str, value: Any) -> None:
        ...

    async def delete(self, key: str) -> None:
        await self.set(key, None)

    async def close(self) -> None:
        return None


class MemoryStore(KeyValueStore):
    """In-process store; values are deep-copied so callers never share state."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})

    async def get(self, key: str) -> Any:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = copy.deepcopy(value)

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)


class ClickHouseStore(KeyValueStore):
    """ClickHouse-backed store over the ``kv_store`` table."""

    def __init__(self) -> None:
        self._client: Client | None = None
        self._lock = asyncio.Lock()

    def _get_client(self) -> Client:
        if self._client is None:
            self._client = clickhouse_connect.get_client(
                host=CLICKHOUSE_HOST,
                port=CLICKHOUSE_PORT,
                username=CLICKHOUSE_USER,
                password=CLICKHOUSE_PASSWORD,
                database=CLICKHOUSE_DATABASE,
                secure=CLICKHOUSE_SECURE,
                compress="lz4",
                connect_timeout=30,
                send_receive_timeout=300,
            )
        return self._client

    async def get(self, key: str) -> Any:
        client = self._get_client()
        try:
            result = await asyncio.to_thread(
                client.query,
                f"SELECT value FROM {KV_TABLE} FINAL WHERE key = %(key)s",
                parameters={"key": key},
            )
        except Exception as exc:
            logger.error("kv_read_failed", extra={"key": key}, exc_info=True)
            self._client = None
            raise StoreError(f"Failed to read {key}") from exc

        rows = result.result_rows
        if not rows or not rows[0][0]:
            return None
        return json.loads(rows[0][0])

    async def set(self, key: str, value: Any) -> None:
        payload = "" if value is None else json.dumps(value)
        row = [key, payload, datetime.now(timezone.utc)]
        async with self._lock:
            await self._insert_with_retry(key, row)

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None

    async def _insert_with_retry(self, key: str, row: list[Any]) -> None:
        backoff = WRITER_BASE_BACKOFF

        for attempt in range(1, WRITER_MAX_RETRIES + 1):
            try:
                client = self._get_client()
                await asyncio.to_thread(
                    client.insert,
                    KV_TABLE,
                    [row],
                    column_names=["key", "value", "updated_at"],
                )
                logger.debug("kv_write_ok", extra={"key": key})
                return
            except Exception as exc:
                logger.warning(
                    "kv_write_retry",
                    extra={"key": key, "attempt": attempt, "backoff": backoff},
                    exc_info=True,
                )
                if attempt == WRITER_MAX_RETRIES:
                    logger.error("kv_write_failed", extra={"key": key}, exc_info=True)
                    raise StoreError(f"Failed to write {key}") from exc
                await asyncio.sleep(backoff)
                backoff *= 2
                # Reconnect on next attempt
                self._client = None

    def run_migration(self, sql: str) -> None:
        """Execute raw SQL (for schema migration)."""
        client = self._get_client()
        for statement in sql.split(";"):
            statement = statement.strip()
            if statement:
                client.command(statement)
        logger.info("migration_complete")


def build_store(backend: str) -> KeyValueStore:
    if backend == "clickhouse":
        return ClickHouseStore()
    if backend == "memory":
        return MemoryStore()
    raise ValueError(f"Unknown store backend: {backend}")
