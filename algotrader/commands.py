"""Command surface: user operations on orders, alerts, risk and the session.

Every command returns a ``CommandResult``; domain errors and validation
failures become ``success=False`` with the error message. Commands that
change order or alert collections take the engine lock, so they land between
ticks and never race a tick's batched write.

``dispatch`` routes a message of the form ``{"type": "PAUSE_ALGO_ORDER",
"payload": {"order_id": "..."}}`` to the matching method; the control server
exposes it at ``POST /command``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from algotrader.config import DEFAULT_SNOOZE_MINUTES
from algotrader.errors import (
    AlgoTraderError,
    InvalidTransitionError,
    NoTradingSessionError,
    OrderNotFoundError,
    OrderValidationError,
)
from algotrader.execution.gateway import ExecutionGateway
from algotrader.execution.positions import PositionsCache
from algotrader.execution.session import SessionManager
from algotrader.execution.validation import marketable_price, validate_order
from algotrader.jobs.alert_monitor import AlertMonitor
from algotrader.jobs.price_source import PriceSource
from algotrader.models import (
    ALGO_TRANSITIONS,
    AlertCondition,
    AlertStatus,
    AlgoOrder,
    AlgoOrderStatus,
    AlgoOrderType,
    CommandResult,
    CreateAlgoOrderRequest,
    HistoryOrderType,
    HistoryStatus,
    OrderHistoryEntry,
    OrderSide,
    PriceAlert,
    RestingOrder,
    RestingOrderStatus,
    RiskSettings,
)
from algotrader.repository import Repository
from algotrader.strategies import twap

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CreateRestingOrderRequest(BaseModel):
    token_id: str = Field(..., min_length=1)
    side: OrderSide
    size: float = Field(..., gt=0)
    limit_price: float = Field(..., gt=0, lt=1)
    override_risk: bool = False
    market_question: str = ""
    outcome: str = ""


class MarketOrderRequest(BaseModel):
    token_id: str = Field(..., min_length=1)
    side: OrderSide
    size: float = Field(..., gt=0)
    override_risk: bool = False
    market_question: str = ""
    outcome: str = ""


class CreatePriceAlertRequest(BaseModel):
    token_id: str = Field(..., min_length=1)
    condition: AlertCondition
    target_price: float = Field(..., gt=0, lt=1)
    market_question: str = ""
    outcome: str = ""


class OrderHistoryFilters(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    order_type: Optional[HistoryOrderType] = None
    token_id: Optional[str] = None
    side: Optional[OrderSide] = None
    status: Optional[HistoryStatus] = None


_ALERT_UPDATABLE = {"condition", "target_price", "market_question", "outcome"}
_RISK_UPDATABLE = {
    "max_position_size_per_market",
    "max_daily_loss",
    "max_total_exposure",
    "enable_risk_checks",
}


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def command(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[CommandResult]]:
    """Wrap a command so it always returns a CommandResult."""

    @functools.wraps(fn)
    async def wrapper(self: "CommandService", *args, **kwargs) -> CommandResult:
        try:
            return CommandResult.ok(_dump(await fn(self, *args, **kwargs)))
        except (AlgoTraderError, ValidationError, ValueError) as e:
            logger.info("command_rejected", extra={"command": fn.__name__, "error": str(e)})
            return CommandResult.fail(str(e))
        except Exception as e:
            logger.error("command_error", extra={"command": fn.__name__}, exc_info=True)
            return CommandResult.fail(f"{fn.__name__} failed: {e}")

    return wrapper


class CommandService:
    """User-facing operations; all state goes through the repository."""

    def __init__(
        self,
        repo: Repository,
        sessions: SessionManager,
        gateway: ExecutionGateway,
        positions: PositionsCache,
        prices: PriceSource,
        alerts: AlertMonitor,
        lock: asyncio.Lock,
    ) -> None:
        self.repo = repo
        self.sessions = sessions
        self.gateway = gateway
        self.positions = positions
        self.prices = prices
        self.alerts = alerts
        self.lock = lock

    # ------------------------------------------------------------------
    # Algo orders
    # ------------------------------------------------------------------

    @command
    async def create_algo_order(self, **payload) -> AlgoOrder:
        request = CreateAlgoOrderRequest.model_validate(payload)
        now = datetime.now(timezone.utc)
        order = AlgoOrder(
            type=request.type,
            token_id=request.token_id,
            side=request.side,
            size=request.size,
            params=request.build_params(now),
            created_at=now,
            updated_at=now,
            market_question=request.market_question,
            outcome=request.outcome,
        )
        if order.type == AlgoOrderType.TWAP:
            await self._check_twap_slice(order)
        async with self.lock:
            orders = await self.repo.load_algo_orders()
            orders.append(order)
            await self.repo.save_algo_orders(orders)
        logger.info(
            "algo_order_created",
            extra={"order_id": order.id, "type": order.type.value, "token_id": order.token_id, "size": order.size},
        )
        return order

    @command
    async def pause_algo_order(self, order_id: str) -> AlgoOrder:
        return await self._transition(order_id, AlgoOrderStatus.PAUSED, {AlgoOrderStatus.ACTIVE})

    @command
    async def resume_algo_order(self, order_id: str) -> AlgoOrder:
        return await self._transition(order_id, AlgoOrderStatus.ACTIVE, {AlgoOrderStatus.PAUSED})

    @command
    async def cancel_algo_order(self, order_id: str) -> AlgoOrder:
        return await self._transition(
            order_id, AlgoOrderStatus.CANCELLED, {AlgoOrderStatus.ACTIVE, AlgoOrderStatus.PAUSED}
        )

    @command
    async def get_algo_orders(self) -> list[AlgoOrder]:
        return await self.repo.load_algo_orders()

    async def _check_twap_slice(self, order: AlgoOrder) -> None:
        """Reject a TWAP whose slices would each fail the order checks.

        Skipped when no price is available; the tick rejects such slices then.
        """
        market = await self.prices.fetch_price(order.token_id)
        if market is None:
            return
        size = twap.nominal_slice(order)
        checked = validate_order(order.token_id, order.side, size, marketable_price(order.side, market.price))
        if not checked.is_valid:
            raise OrderValidationError([f"TWAP slice of {size:g} shares: {e}" for e in checked.errors])

    async def _transition(
        self, order_id: str, target: AlgoOrderStatus, allowed_from: set[AlgoOrderStatus]
    ) -> AlgoOrder:
        async with self.lock:
            orders = await self.repo.load_algo_orders()
            for i, order in enumerate(orders):
                if order.id == order_id:
                    break
            else:
                raise OrderNotFoundError("Algo order", order_id)

            if order.status not in allowed_from or target not in ALGO_TRANSITIONS[order.status]:
                raise InvalidTransitionError(order_id, order.status.value, target.value)

            orders[i] = order.model_copy(
                update={"status": target, "updated_at": datetime.now(timezone.utc)}
            )
            await self.repo.save_algo_orders(orders)

        logger.info(
            "algo_order_status_changed",
            extra={"order_id": order_id, "from": order.status.value, "to": target.value},
        )
        return orders[i]

    # ------------------------------------------------------------------
    # Resting (limit) orders
    # ------------------------------------------------------------------

    @command
    async def create_limit_order(self, **payload) -> RestingOrder:
        request = CreateRestingOrderRequest.model_validate(payload)
        result, warnings = await self.gateway.place_order(
            request.token_id,
            request.side,
            request.size,
            request.limit_price,
            "GTC",
            override_risk=request.override_risk,
        )
        if not result.success:
            raise OrderValidationError([result.error or "Failed to create limit order"], warnings)

        order = RestingOrder(
            token_id=request.token_id,
            side=request.side,
            size=request.size,
            limit_price=request.limit_price,
            exchange_order_id=result.order_id,
            market_question=request.market_question,
            outcome=request.outcome,
        )
        async with self.lock:
            orders = await self.repo.load_resting_orders()
            orders.append(order)
            await self.repo.save_resting_orders(orders)
            await self.repo.add_order_history(
                OrderHistoryEntry(
                    order_type=HistoryOrderType.LIMIT,
                    token_id=order.token_id,
                    side=order.side,
                    size=order.size,
                    price=order.limit_price,
                    status=HistoryStatus.PENDING,
                    resting_order_id=order.id,
                    exchange_order_id=order.exchange_order_id,
                    market_question=order.market_question,
                    outcome=order.outcome,
                )
            )
        logger.info(
            "resting_order_created",
            extra={"order_id": order.id, "exchange_order_id": order.exchange_order_id, "warnings": warnings},
        )
        return order

    @command
    async def cancel_limit_order(self, order_id: str) -> RestingOrder:
        async with self.lock:
            orders = await self.repo.load_resting_orders()
            order = _find(orders, order_id, "Limit order")
            if order.status != RestingOrderStatus.PENDING:
                raise InvalidTransitionError(order_id, order.status.value, RestingOrderStatus.CANCELLED.value)

            if order.exchange_order_id and self.sessions.current() is not None:
                try:
                    await self.gateway.cancel(order.exchange_order_id)
                except Exception:
                    logger.warning(
                        "exchange_cancel_failed",
                        extra={"order_id": order_id, "exchange_order_id": order.exchange_order_id},
                        exc_info=True,
                    )

            order.status = RestingOrderStatus.CANCELLED
            order.cancelled_at = datetime.now(timezone.utc)
            await self.repo.save_resting_orders(orders)
            await self._set_resting_history_status(order.id, HistoryStatus.CANCELLED)
        logger.info("resting_order_cancelled", extra={"order_id": order_id})
        return order

    @command
    async def delete_limit_order(self, order_id: str) -> None:
        async with self.lock:
            orders = await self.repo.load_resting_orders()
            _find(orders, order_id, "Limit order")
            await self.repo.save_resting_orders([o for o in orders if o.id != order_id])
        logger.info("resting_order_deleted", extra={"order_id": order_id})

    @command
    async def get_limit_orders(self) -> list[RestingOrder]:
        return await self.repo.load_resting_orders()

    @command
    async def get_pending_limit_orders(self) -> list[RestingOrder]:
        return [o for o in await self.repo.load_resting_orders() if o.status == RestingOrderStatus.PENDING]

    @command
    async def get_open_orders(self) -> list[dict]:
        session = self.sessions.require()
        response = await session.client.get_open_orders()
        if not response.success:
            raise AlgoTraderError(response.error or "Failed to fetch open orders")
        return response.data or []

    async def _set_resting_history_status(self, resting_order_id: str, status: HistoryStatus) -> None:
        history = await self.repo.load_order_history()
        for entry in history:
            if entry.resting_order_id == resting_order_id and entry.status == HistoryStatus.PENDING:
                await self.repo.update_order_history(entry.id, status=status)
                return

    # ------------------------------------------------------------------
    # Market orders
    # ------------------------------------------------------------------

    @command
    async def execute_market_order(self, **payload) -> dict:
        return await self._market_order(MarketOrderRequest.model_validate(payload))

    @command
    async def quick_sell_position(self, token_id: str, override_risk: bool = False) -> dict:
        """Sell the whole cached position in *token_id* at a marketable price."""
        owner = self.sessions.require().proxy_address
        position = await self.positions.find(owner, token_id)
        if position is None or position.size <= 0:
            raise OrderNotFoundError("Position", token_id)
        request = MarketOrderRequest(
            token_id=token_id,
            side=OrderSide.SELL,
            size=position.size,
            override_risk=override_risk,
            market_question=position.title,
            outcome=position.outcome,
        )
        return await self._market_order(request)

    async def _market_order(self, request: MarketOrderRequest) -> dict:
        market = await self.prices.fetch_price(request.token_id)
        if market is None:
            raise AlgoTraderError("Unable to fetch current price")

        result, warnings, limit = await self.gateway.place_market_order(
            request.token_id, request.side, request.size, market.price, request.override_risk
        )
        await self.repo.add_order_history(
            OrderHistoryEntry(
                order_type=HistoryOrderType.MARKET,
                token_id=request.token_id,
                side=request.side,
                size=request.size,
                price=limit,
                executed_price=market.price if result.success else None,
                status=HistoryStatus.EXECUTED if result.success else HistoryStatus.FAILED,
                exchange_order_id=result.order_id,
                error=result.error,
                market_question=request.market_question,
                outcome=request.outcome,
            )
        )
        if not result.success:
            raise AlgoTraderError(result.error or "Failed to execute market order")
        return {"order_id": result.order_id, "price": limit, "warnings": warnings}

    # ------------------------------------------------------------------
    # Price alerts
    # ------------------------------------------------------------------

    @command
    async def create_price_alert(self, **payload) -> PriceAlert:
        request = CreatePriceAlertRequest.model_validate(payload)
        alert = PriceAlert(**request.model_dump())
        async with self.lock:
            alerts = await self.repo.load_alerts()
            alerts.append(alert)
            await self.repo.save_alerts(alerts)
        logger.info("price_alert_created", extra={"alert_id": alert.id, "token_id": alert.token_id})
        return alert

    @command
    async def update_price_alert(self, alert_id: str, updates: dict) -> PriceAlert:
        unknown = set(updates) - _ALERT_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update alert fields: {', '.join(sorted(unknown))}")
        return await self._update_alert(alert_id, updates)

    @command
    async def delete_price_alert(self, alert_id: str) -> None:
        async with self.lock:
            alerts = await self.repo.load_alerts()
            _find(alerts, alert_id, "Price alert")
            await self.repo.save_alerts([a for a in alerts if a.id != alert_id])

    @command
    async def snooze_price_alert(
        self, alert_id: str, duration_minutes: float = DEFAULT_SNOOZE_MINUTES
    ) -> PriceAlert:
        until = datetime.now(timezone.utc) + timedelta(minutes=duration_minutes)
        return await self._update_alert(alert_id, {"status": AlertStatus.SNOOZED, "snoozed_until": until})

    @command
    async def dismiss_price_alert(self, alert_id: str) -> PriceAlert:
        return await self._update_alert(alert_id, {"status": AlertStatus.DISMISSED, "snoozed_until": None})

    @command
    async def rearm_price_alert(self, alert_id: str) -> PriceAlert:
        return await self._update_alert(
            alert_id,
            {"status": AlertStatus.ACTIVE, "triggered_at": None, "snoozed_until": None, "notification_id": ""},
        )

    @command
    async def get_price_alerts(self) -> list[PriceAlert]:
        return await self.repo.load_alerts()

    @command
    async def get_alert_history(self) -> list:
        return await self.repo.load_alert_history()

    @command
    async def handle_notification_action(self, notification_id: str, action: str) -> PriceAlert:
        return await self.alerts.handle_notification_action(notification_id, action)

    async def _update_alert(self, alert_id: str, updates: dict) -> PriceAlert:
        async with self.lock:
            alerts = await self.repo.load_alerts()
            i = _index(alerts, alert_id, "Price alert")
            alert = alerts[i]
            alerts[i] = PriceAlert.model_validate({**alert.model_dump(), **updates})
            await self.repo.save_alerts(alerts)
        return alerts[i]

    # ------------------------------------------------------------------
    # Risk settings
    # ------------------------------------------------------------------

    @command
    async def get_risk_settings(self) -> RiskSettings:
        return await self.repo.load_risk_settings()

    @command
    async def update_risk_settings(self, **updates) -> RiskSettings:
        unknown = set(updates) - _RISK_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update risk fields: {', '.join(sorted(unknown))}")
        current = await self.repo.load_risk_settings()
        updated = RiskSettings.model_validate(
            {**current.model_dump(), **updates, "updated_at": datetime.now(timezone.utc)}
        )
        await self.repo.save_risk_settings(updated)
        logger.info("risk_settings_updated", extra={"updates": list(updates)})
        return updated

    @command
    async def reset_risk_settings(self) -> RiskSettings:
        defaults = RiskSettings()
        await self.repo.save_risk_settings(defaults)
        logger.info("risk_settings_reset")
        return defaults

    @command
    async def get_daily_loss(self):
        return await self.repo.load_daily_loss()

    @command
    async def record_realized_pnl(self, pnl: float, order_id: str = ""):
        return await self.repo.record_trade_pnl(float(pnl), order_id)

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    @command
    async def get_positions(self, proxy_address: str = "") -> list:
        return await self.positions.get(self._owner(proxy_address))

    @command
    async def refresh_positions(self, proxy_address: str = "") -> list:
        return await self.positions.refresh(self._owner(proxy_address))

    def _owner(self, proxy_address: str) -> str:
        if proxy_address:
            return proxy_address
        return self.sessions.require().proxy_address

    # ------------------------------------------------------------------
    # Trading session
    # ------------------------------------------------------------------

    @command
    async def initialize_trading_session(self, private_key: str = "", proxy_address: str = "") -> dict:
        session = await self.sessions.open(private_key=private_key, proxy_address=proxy_address)
        return {"eoa_address": session.eoa_address, "proxy_address": session.proxy_address}

    @command
    async def clear_trading_session(self) -> None:
        self.sessions.clear()

    @command
    async def get_wallet_addresses(self) -> dict:
        addresses = self.sessions.wallet_addresses()
        if addresses is None:
            raise NoTradingSessionError()
        return addresses

    # ------------------------------------------------------------------
    # Order history
    # ------------------------------------------------------------------

    @command
    async def get_order_history(self, **filters) -> list[OrderHistoryEntry]:
        f = OrderHistoryFilters.model_validate(filters)
        return await self.repo.filter_order_history(**f.model_dump())

    @command
    async def clear_order_history(self) -> None:
        await self.repo.clear_order_history()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, message: dict) -> CommandResult:
        """Route ``{"type": ..., "payload": {...}}`` to the matching command."""
        msg_type = message.get("type", "")
        name = COMMANDS.get(msg_type)
        if name is None:
            return CommandResult.fail(f"Unknown command type: {msg_type}")
        args = message.get("payload") or {}
        if not isinstance(args, dict):
            return CommandResult.fail("payload must be an object")
        return await getattr(self, name)(**args)


def _index(items: list, item_id: str, kind: str) -> int:
    for i, item in enumerate(items):
        if item.id == item_id:
            return i
    raise OrderNotFoundError(kind, item_id)


def _find(items: list, item_id: str, kind: str):
    return items[_index(items, item_id, kind)]


# Message type -> CommandService method
COMMANDS: dict[str, str] = {
    "INITIALIZE_TRADING_SESSION": "initialize_trading_session",
    "CLEAR_TRADING_SESSION": "clear_trading_session",
    "GET_WALLET_ADDRESSES": "get_wallet_addresses",
    "CREATE_ALGO_ORDER": "create_algo_order",
    "PAUSE_ALGO_ORDER": "pause_algo_order",
    "RESUME_ALGO_ORDER": "resume_algo_order",
    "CANCEL_ALGO_ORDER": "cancel_algo_order",
    "GET_ALGO_ORDERS": "get_algo_orders",
    "GET_CLOB_ORDERS": "get_open_orders",
    "EXECUTE_MARKET_ORDER": "execute_market_order",
    "QUICK_SELL_POSITION": "quick_sell_position",
    "GET_LIMIT_ORDERS": "get_limit_orders",
    "GET_PENDING_LIMIT_ORDERS": "get_pending_limit_orders",
    "CREATE_LIMIT_ORDER": "create_limit_order",
    "CANCEL_LIMIT_ORDER": "cancel_limit_order",
    "DELETE_LIMIT_ORDER": "delete_limit_order",
    "GET_PRICE_ALERTS": "get_price_alerts",
    "CREATE_PRICE_ALERT": "create_price_alert",
    "UPDATE_PRICE_ALERT": "update_price_alert",
    "DELETE_PRICE_ALERT": "delete_price_alert",
    "SNOOZE_PRICE_ALERT": "snooze_price_alert",
    "DISMISS_PRICE_ALERT": "dismiss_price_alert",
    "REARM_PRICE_ALERT": "rearm_price_alert",
    "GET_ALERT_HISTORY": "get_alert_history",
    "NOTIFICATION_ACTION": "handle_notification_action",
    "GET_RISK_SETTINGS": "get_risk_settings",
    "UPDATE_RISK_SETTINGS": "update_risk_settings",
    "RESET_RISK_SETTINGS": "reset_risk_settings",
    "GET_DAILY_LOSS": "get_daily_loss",
    "RECORD_REALIZED_PNL": "record_realized_pnl",
    "GET_POSITIONS": "get_positions",
    "REFRESH_POSITIONS": "refresh_positions",
    "GET_ORDER_HISTORY": "get_order_history",
    "CLEAR_ORDER_HISTORY": "clear_order_history",
}
