"""Per-wallet positions snapshot cache with a short freshness window.

Snapshots are kept in the store under ``positions_cache`` so that a restart
still has a stale fallback when the Data API is down.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from algotrader.api.data_client import DataClient
from algotrader.config import POSITIONS_CACHE_TTL, POSITIONS_DUST_THRESHOLD
from algotrader.models import Position, PositionsCacheEntry
from algotrader.repository import Repository

logger = logging.getLogger(__name__)


class PositionsCache:
    """Fresh-or-fetch access to a wallet's positions.

    Attributes:
        ttl: Seconds a snapshot is served without refetching.
        _locks: Per-owner locks so concurrent callers share one fetch;
            kept only while a caller holds or waits on them.
    """

    def __init__(
        self,
        repo: Repository,
        data_client: DataClient,
        ttl: float = POSITIONS_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repo = repo
        self.data_client = data_client
        self.ttl = ttl
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    async def get(self, owner: str) -> list[Position]:
        """Return positions for *owner*, refetching when older than ``ttl``.

        On fetch failure the last snapshot is returned regardless of age;
        the error propagates only when there is no snapshot at all.
        """
        lock = self._locks.setdefault(owner, asyncio.Lock())
        self._users[owner] = self._users.get(owner, 0) + 1
        try:
            async with lock:
                return await self._load_or_fetch(owner)
        finally:
            # Drop the lock once nobody holds or waits on it
            self._users[owner] -= 1
            if not self._users[owner]:
                del self._users[owner]
                del self._locks[owner]

    async def _load_or_fetch(self, owner: str) -> list[Position]:
        entries = await self.repo.load_positions_cache()
        cached = entries.get(owner)
        now = self._clock()
        if cached is not None and now - cached.fetched_at < self.ttl:
            return cached.positions

        try:
            fetched = await self.data_client.fetch_all_positions(owner)
        except Exception:
            if cached is not None:
                logger.warning(
                    "positions_stale_fallback",
                    extra={"owner": owner, "age_s": round(now - cached.fetched_at, 1)},
                    exc_info=True,
                )
                return cached.positions
            logger.error("positions_fetch_failed", extra={"owner": owner}, exc_info=True)
            raise

        positions = [p for p in fetched if p.current_value >= POSITIONS_DUST_THRESHOLD]
        # Reload so entries written for other owners meanwhile are kept
        entries = await self.repo.load_positions_cache()
        entries[owner] = PositionsCacheEntry(owner=owner, positions=positions, fetched_at=now)
        await self.repo.save_positions_cache(entries)
        logger.debug(
            "positions_cached",
            extra={"owner": owner, "count": len(positions), "dropped": len(fetched) - len(positions)},
        )
        return positions

    async def invalidate(self, owner: str) -> None:
        entries = await self.repo.load_positions_cache()
        if entries.pop(owner, None) is not None:
            await self.repo.save_positions_cache(entries)
            logger.debug("positions_invalidated", extra={"owner": owner})

    async def refresh(self, owner: str) -> list[Position]:
        await self.invalidate(owner)
        return await self.get(owner)

    async def find(self, owner: str, token_id: str) -> Optional[Position]:
        for position in await self.get(owner):
            if position.asset == token_id:
                return position
        return None

    async def total_value(self, owner: str) -> float:
        return sum(p.current_value for p in await self.get(owner))
