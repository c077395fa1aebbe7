"""Price source: current bid/ask/mid for a set of tokens.

With an active trading session, quotes come from the session's exchange
client (best BUY, best SELL and midpoint, fetched concurrently). Without
one, the public CLOB order book is used instead.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from algotrader.api.clob_client import ClobClient
from algotrader.execution.session import ExchangeClient, SessionManager
from algotrader.models import MarketPrice, OrderSide

logger = logging.getLogger(__name__)


class PriceSource:
    """Concurrent per-token price fetch; failed tokens are left out."""

    def __init__(self, sessions: SessionManager, clob: ClobClient) -> None:
        self.sessions = sessions
        self.clob = clob

    async def fetch_prices(self, token_ids: list[str]) -> dict[str, MarketPrice]:
        """Return {token_id: MarketPrice} for every token with a positive price."""
        if not token_ids:
            return {}

        session = self.sessions.current()
        if session is not None:
            client = session.client
            results = await asyncio.gather(*(self._from_exchange(client, tid) for tid in token_ids))
        else:
            results = await asyncio.gather(*(self._from_book(tid) for tid in token_ids))
        prices = {p.token_id: p for p in results if p is not None and p.price > 0}
        logger.debug(
            "prices_fetched",
            extra={"requested": len(token_ids), "priced": len(prices), "source": "session" if session else "book"},
        )
        return prices

    async def fetch_price(self, token_id: str) -> Optional[MarketPrice]:
        prices = await self.fetch_prices([token_id])
        return prices.get(token_id)

    async def _from_exchange(self, client: ExchangeClient, token_id: str) -> Optional[MarketPrice]:
        try:
            ask, bid, mid = await asyncio.gather(
                client.get_best_price(token_id, OrderSide.BUY),
                client.get_best_price(token_id, OrderSide.SELL),
                client.get_midpoint(token_id),
            )
        except Exception:
            logger.warning("price_fetch_failed", extra={"token_id": token_id}, exc_info=True)
            return None
        return _quote(token_id, bid, ask, mid)

    async def _from_book(self, token_id: str) -> Optional[MarketPrice]:
        try:
            quote = await self.clob.fetch_best_quote(token_id)
        except Exception:
            logger.warning("price_fetch_failed", extra={"token_id": token_id}, exc_info=True)
            return None
        if quote is None:
            return None
        bid, ask = quote
        return _quote(token_id, bid, ask)


def _quote(token_id: str, bid: float, ask: float, mid: float = 0.0) -> MarketPrice:
    """Prefer the exchange midpoint; else average a two-sided book, else take the one side quoted."""
    if mid > 0:
        price = mid
    elif bid > 0 and ask > 0:
        price = (bid + ask) / 2
    else:
        price = max(bid, ask)
    return MarketPrice(
        token_id=token_id,
        price=price,
        best_bid=bid,
        best_ask=ask,
        timestamp=datetime.now(timezone.utc),
    )
