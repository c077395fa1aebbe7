"""Client for the Polymarket Data API (wallet positions)."""

from __future__ import annotations

import logging

import httpx

from algotrader.config import DATA_API_URL, HTTP_TIMEOUT, POSITIONS_DUST_THRESHOLD, POSITIONS_PAGE_LIMIT
from algotrader.models import Position

logger = logging.getLogger(__name__)


class DataClient:
    """Fetch wallet positions from the Data API."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=DATA_API_URL,
            timeout=HTTP_TIMEOUT,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_positions(
        self,
        wallet: str,
        *,
        limit: int = POSITIONS_PAGE_LIMIT,
        offset: int = 0,
        size_threshold: float = POSITIONS_DUST_THRESHOLD,
    ) -> list[dict]:
        """GET /positions for a wallet.

        Errors propagate so callers can fall back to cached data.
        """
        params: dict = {
            "user": wallet,
            "limit": limit,
            "offset": offset,
            "sizeThreshold": size_threshold,
            "sortBy": "CURRENT",
            "sortDirection": "DESC",
        }
        resp = await self._client.get("/positions", params=params)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, list):
            raise ValueError(f"Unexpected positions payload: {type(data).__name__}")
        return data

    async def fetch_all_positions(
        self,
        wallet: str,
        *,
        max_pages: int = 5,
    ) -> list[Position]:
        """Paginate through all positions for a wallet."""
        all_positions: list[Position] = []
        offset = 0

        for _ in range(max_pages):
            raw = await self.fetch_positions(
                wallet, limit=POSITIONS_PAGE_LIMIT, offset=offset,
            )
            if not raw:
                break
            all_positions.extend(self.parse_position(p) for p in raw)
            if len(raw) < POSITIONS_PAGE_LIMIT:
                break
            offset += POSITIONS_PAGE_LIMIT

        logger.debug("positions_fetched", extra={"wallet": wallet, "count": len(all_positions)})
        return all_positions

    @staticmethod
    def parse_position(raw: dict) -> Position:
        """Convert a raw position object into a Position."""
        return Position(
            proxy_wallet=raw.get("proxyWallet", ""),
            asset=raw.get("asset", ""),
            condition_id=raw.get("conditionId", ""),
            size=float(raw.get("size") or 0),
            avg_price=float(raw.get("avgPrice") or 0),
            initial_value=float(raw.get("initialValue") or 0),
            current_value=float(raw.get("currentValue") or 0),
            cash_pnl=float(raw.get("cashPnl") or 0),
            realized_pnl=float(raw.get("realizedPnl") or 0),
            cur_price=float(raw.get("curPrice") or 0),
            title=raw.get("title", ""),
            outcome=raw.get("outcome", ""),
        )
