"""Trading session and exchange client wrapping py-clob-client.

A ``TradingSession`` holds an authenticated exchange client together with the
wallet addresses it trades for. The ``SessionManager`` owns the single active
session and expires it after ``SESSION_TIMEOUT`` seconds of inactivity; every
execution path asks it for ``current()`` before touching the exchange.

The Polymarket client operates in two modes:
- DRY_RUN: quotes are read from the public CLOB, orders are logged but not
  submitted and balances are a fixed paper amount
- LIVE: orders are signed and posted to the CLOB
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel

from algotrader.config import (
    CLOB_API_URL,
    DRY_RUN_BALANCE,
    EXECUTION_CHAIN_ID,
    EXECUTION_DRY_RUN,
    EXECUTION_SIGNATURE_TYPE,
    SESSION_TIMEOUT,
    USDC_DECIMALS,
)
from algotrader.errors import NoTradingSessionError
from algotrader.models import OrderSide

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ExchangeResponse(BaseModel):
    """Envelope for exchange reads that may fail without raising."""

    success: bool
    data: Any = None
    error: str = ""


class SubmitResult(BaseModel):
    """Outcome of an order submission."""

    success: bool
    order_id: str = ""
    error: str = ""


# ---------------------------------------------------------------------------
# Exchange client interface
# ---------------------------------------------------------------------------


class ExchangeClient(abc.ABC):
    """Authenticated exchange operations used by the engine."""

    address: str = ""

    async def initialize(self) -> None:
        return None

    @abc.abstractmethod
    async def get_best_price(self, token_id: str, side: OrderSide) -> float:
        """Best price a *side* order would trade at (BUY = ask, SELL = bid)."""

    @abc.abstractmethod
    async def get_midpoint(self, token_id: str) -> float:
        ...

    @abc.abstractmethod
    async def get_open_orders(self) -> ExchangeResponse:
        """Open orders for the session wallet; ``data`` is a list of dicts with ``id``."""

    @abc.abstractmethod
    async def submit_order(
        self,
        token_id: str,
        side: OrderSide,
        size: float,
        price: float,
        order_type: str = "FOK",
    ) -> SubmitResult:
        ...

    @abc.abstractmethod
    async def cancel_order(self, order_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def get_balance(self, token_id: Optional[str] = None) -> float:
        """USDC balance, or the share balance of *token_id* when given."""


class PolymarketExchangeClient(ExchangeClient):
    """ExchangeClient backed by py-clob-client.

    Attributes:
        dry_run: If True, orders are logged but not submitted.
        _client: py-clob-client ClobClient instance (lazy-initialized).
    """

    def __init__(
        self,
        private_key: str = "",
        funder_address: str = "",
        dry_run: bool = EXECUTION_DRY_RUN,
    ) -> None:
        self.dry_run = dry_run
        self._private_key = private_key
        self._funder_address = funder_address
        self._client: Any = None
        self._initialized = False
        self.address = ""

    async def initialize(self) -> None:
        """Lazy-initialize the CLOB client and API credentials.

        Separated from __init__ so that the client can be constructed
        without blocking and without requiring credentials in dry-run mode.
        """
        if self._initialized:
            return

        try:
            from py_clob_client.client import ClobClient

            if self.dry_run and not self._private_key:
                # Level 0 client: public quotes only
                self._client = ClobClient(host=CLOB_API_URL, chain_id=EXECUTION_CHAIN_ID)
                self.address = self._funder_address
            else:
                self._client = ClobClient(
                    host=CLOB_API_URL,
                    key=self._private_key,
                    chain_id=EXECUTION_CHAIN_ID,
                    signature_type=EXECUTION_SIGNATURE_TYPE,
                    funder=self._funder_address or None,
                )
                # Derive or create API credentials
                creds = await asyncio.to_thread(self._client.create_or_derive_api_creds)
                self._client.set_api_creds(creds)
                self.address = self._client.get_address() or ""

            self._initialized = True
            logger.info(
                "exchange_client_init",
                extra={"mode": "DRY_RUN" if self.dry_run else "LIVE", "address": self.address},
            )

        except ImportError:
            logger.error(
                "py-clob-client not installed. Install with: "
                "pip install py-clob-client"
            )
            raise
        except Exception:
            logger.error("exchange_client_init_failed", exc_info=True)
            raise

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def get_best_price(self, token_id: str, side: OrderSide) -> float:
        await self.initialize()
        resp = await asyncio.to_thread(self._client.get_price, token_id, side.value)
        return float((resp or {}).get("price") or 0)

    async def get_midpoint(self, token_id: str) -> float:
        await self.initialize()
        resp = await asyncio.to_thread(self._client.get_midpoint, token_id)
        return float((resp or {}).get("mid") or 0)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def get_open_orders(self) -> ExchangeResponse:
        if self.dry_run:
            # Paper orders never rest on the book, so there is nothing to reconcile
            return ExchangeResponse(success=False, error="Open orders unavailable in dry-run mode")

        await self.initialize()
        try:
            resp = await asyncio.to_thread(self._client.get_orders)
        except Exception as e:
            logger.warning("get_orders_failed", exc_info=True)
            return ExchangeResponse(success=False, error=str(e))
        if not isinstance(resp, list):
            return ExchangeResponse(success=False, error=f"Unexpected response type: {type(resp)}")
        return ExchangeResponse(success=True, data=resp)

    async def submit_order(
        self,
        token_id: str,
        side: OrderSide,
        size: float,
        price: float,
        order_type: str = "FOK",
    ) -> SubmitResult:
        """Sign and post a limit order.

        Args:
            token_id: Token to trade.
            side: BUY or SELL.
            size: Size in outcome tokens.
            price: Limit price; a marketable price for FOK market orders.
            order_type: "FOK" for immediate execution, "GTC" to rest on the book.

        Returns:
            SubmitResult with the exchange order id on success.
        """
        await self.initialize()

        if self.dry_run:
            order_id = f"dry_{int(time.time() * 1000)}"
            logger.info(
                "order_dry_run",
                extra={
                    "order_id": order_id,
                    "token_id": token_id,
                    "side": side.value,
                    "price": price,
                    "size": size,
                    "order_type": order_type,
                },
            )
            return SubmitResult(success=True, order_id=order_id)

        from py_clob_client.clob_types import OrderArgs, OrderType, PartialCreateOrderOptions

        start = time.monotonic()
        tick_size, neg_risk = await asyncio.gather(
            asyncio.to_thread(self._client.get_tick_size, token_id),
            asyncio.to_thread(self._client.get_neg_risk, token_id),
        )
        order_args = OrderArgs(
            token_id=token_id,
            price=price,
            size=size,
            side=side.value,
        )
        signed_order = await asyncio.to_thread(
            self._client.create_order,
            order_args,
            PartialCreateOrderOptions(tick_size=tick_size, neg_risk=neg_risk),
        )
        resp = await asyncio.to_thread(
            self._client.post_order,
            signed_order,
            getattr(OrderType, order_type),
        )
        latency_ms = (time.monotonic() - start) * 1000

        if not isinstance(resp, dict):
            return SubmitResult(success=False, error=f"Unexpected response type: {type(resp)}")

        result = SubmitResult(
            success=bool(resp.get("success")) and bool(resp.get("orderID")),
            order_id=resp.get("orderID", "") or "",
            error=resp.get("errorMsg", "") or resp.get("error", "") or "",
        )
        if not result.success and not result.error:
            result.error = "Unknown error"

        logger.info(
            "order_placed",
            extra={
                "order_id": result.order_id,
                "success": result.success,
                "token_id": token_id,
                "side": side.value,
                "price": price,
                "size": size,
                "order_type": order_type,
                "latency_ms": latency_ms,
            },
        )
        return result

    async def cancel_order(self, order_id: str) -> bool:
        if self.dry_run:
            logger.info("cancel_dry_run", extra={"order_id": order_id})
            return True

        await self.initialize()
        resp = await asyncio.to_thread(self._client.cancel, order_id)
        canceled = resp.get("canceled", []) if isinstance(resp, dict) else []
        success = order_id in canceled if isinstance(canceled, list) else bool(canceled)
        logger.info("order_cancelled", extra={"order_id": order_id, "success": success})
        return success

    async def get_balance(self, token_id: Optional[str] = None) -> float:
        if self.dry_run:
            return DRY_RUN_BALANCE

        await self.initialize()
        from py_clob_client.clob_types import AssetType, BalanceAllowanceParams

        if token_id is None:
            params = BalanceAllowanceParams(asset_type=AssetType.COLLATERAL)
        else:
            params = BalanceAllowanceParams(asset_type=AssetType.CONDITIONAL, token_id=token_id)
        resp = await asyncio.to_thread(self._client.get_balance_allowance, params)
        raw = float((resp or {}).get("balance") or 0)
        return raw / 10 ** USDC_DECIMALS


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class TradingSession:
    client: ExchangeClient
    eoa_address: str
    proxy_address: str
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)


class SessionManager:
    """Holds the one active trading session and enforces inactivity expiry."""

    def __init__(
        self,
        timeout: float = SESSION_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.timeout = timeout
        self._clock = clock
        self._session: Optional[TradingSession] = None

    async def open(
        self,
        private_key: str = "",
        proxy_address: str = "",
        dry_run: bool = EXECUTION_DRY_RUN,
    ) -> TradingSession:
        """Build and authenticate a Polymarket client, then activate it."""
        client = PolymarketExchangeClient(
            private_key=private_key,
            funder_address=proxy_address,
            dry_run=dry_run,
        )
        await client.initialize()
        eoa = client.address
        return self.activate(client, eoa_address=eoa, proxy_address=proxy_address or eoa)

    def activate(
        self, client: ExchangeClient, eoa_address: str, proxy_address: str = ""
    ) -> TradingSession:
        now = self._clock()
        self._session = TradingSession(
            client=client,
            eoa_address=eoa_address,
            proxy_address=proxy_address or eoa_address,
            created_at=now,
            last_activity=now,
        )
        logger.info(
            "trading_session_started",
            extra={"eoa_address": eoa_address, "proxy_address": self._session.proxy_address},
        )
        return self._session

    def current(self) -> Optional[TradingSession]:
        """Active session, or None if absent or expired. Touches activity."""
        if self._session is None:
            return None
        now = self._clock()
        if now - self._session.last_activity > self.timeout:
            logger.info("trading_session_expired", extra={"eoa_address": self._session.eoa_address})
            self._session = None
            return None
        self._session.last_activity = now
        return self._session

    def require(self) -> TradingSession:
        session = self.current()
        if session is None:
            raise NoTradingSessionError()
        return session

    def clear(self) -> None:
        if self._session is not None:
            logger.info("trading_session_cleared", extra={"eoa_address": self._session.eoa_address})
        self._session = None

    def wallet_addresses(self) -> Optional[dict[str, str]]:
        session = self.current()
        if session is None or not session.proxy_address:
            return None
        return {"eoa_address": session.eoa_address, "proxy_address": session.proxy_address}
