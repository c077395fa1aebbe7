"""Client for the public Polymarket CLOB API (order books)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from algotrader.config import CLOB_API_URL, HTTP_TIMEOUT

logger = logging.getLogger(__name__)


class ClobClient:
    """Async client for CLOB API price and orderbook endpoints (L0 / public)."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=CLOB_API_URL,
            timeout=HTTP_TIMEOUT,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Orderbook
    # ------------------------------------------------------------------

    async def fetch_orderbook(self, token_id: str) -> dict[str, Any] | None:
        """GET /book for a single token. Returns None for unknown tokens."""
        try:
            resp = await self._client.get("/book", params={"token_id": token_id})
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            logger.warning("fetch_orderbook_error", extra={"token_id": token_id}, exc_info=True)
            return None
        except Exception:
            logger.warning("fetch_orderbook_error", extra={"token_id": token_id}, exc_info=True)
            return None

    async def fetch_best_quote(self, token_id: str) -> tuple[float, float] | None:
        """Return (best_bid, best_ask) from the token's order book.

        A missing side is reported as 0.0.
        """
        book = await self.fetch_orderbook(token_id)
        if book is None:
            return None
        return parse_best_quote(book)


def parse_best_quote(book: dict[str, Any]) -> tuple[float, float]:
    """Best bid is the highest bid, best ask the lowest ask."""
    bids = [float(level["price"]) for level in book.get("bids") or [] if level.get("price")]
    asks = [float(level["price"]) for level in book.get("asks") or [] if level.get("price")]
    return (max(bids) if bids else 0.0, min(asks) if asks else 0.0)
