"""Execution gateway: the single path from a decision to the exchange.

Every submission goes through parameter validation, a balance check and the
risk validator before it reaches the session's exchange client. Outcomes are
written to the order history and reported through the notifier, exactly one
notification per outcome.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from algotrader.errors import NoTradingSessionError, OrderValidationError
from algotrader.execution.positions import PositionsCache
from algotrader.execution.risk import RiskValidator
from algotrader.execution.session import SessionManager, SubmitResult, TradingSession
from algotrader.execution.validation import marketable_price, validate_balance, validate_order
from algotrader.models import (
    AlgoOrder,
    AlgoOrderStatus,
    ExecutionRecord,
    HistoryOrderType,
    HistoryStatus,
    MarketPrice,
    OrderHistoryEntry,
    OrderSide,
)
from algotrader.notifications import NotificationKind, Notifier
from algotrader.repository import Repository

logger = logging.getLogger(__name__)

NO_SESSION_ERROR = "No active trading session"
SLICE_REJECTED_REASON = "TWAP slice rejected"

_EPS = 1e-9


class ExecutionGateway:
    """Validates, submits and records orders for the engine and commands.

    Attributes:
        repo: Order history and daily loss ledger.
        sessions: Source of the exchange client.
        risk: Pre-trade risk validator.
        positions: Positions cache, used for realized PnL on sells.
        notifier: Outcome notifications.
    """

    def __init__(
        self,
        repo: Repository,
        sessions: SessionManager,
        risk: RiskValidator,
        positions: PositionsCache,
        notifier: Notifier,
    ) -> None:
        self.repo = repo
        self.sessions = sessions
        self.risk = risk
        self.positions = positions
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Pre-submission checks
    # ------------------------------------------------------------------

    async def preflight(
        self,
        session: TradingSession,
        token_id: str,
        side: OrderSide,
        size: float,
        price: float,
        override_risk: bool = False,
    ) -> tuple[list[str], list[str]]:
        """Return (errors, warnings) for a proposed order; no errors means go."""
        checked = validate_order(token_id, side, size, price)
        if not checked.is_valid:
            return checked.errors, []

        balance = await session.client.get_balance(None if side == OrderSide.BUY else token_id)
        funded = validate_balance(side, size, price, balance)
        if not funded.is_valid:
            return funded.errors, []

        risk = await self.risk.validate(token_id, side, size, price, override=override_risk)
        return risk.errors, risk.warnings

    # ------------------------------------------------------------------
    # Algo executions (called from the tick)
    # ------------------------------------------------------------------

    async def execute_full(
        self,
        order: AlgoOrder,
        market: MarketPrice,
        reason: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Execute the whole order as a marketable FOK order.

        Mutates *order* in place: COMPLETED on success, FAILED on an exchange
        rejection or a missing session. A validation or risk rejection leaves
        the order untouched and ACTIVE; an exception from the exchange client
        is treated as transient and retried on the next tick.
        """
        now = now or datetime.now(timezone.utc)
        session = self.sessions.current()
        if session is None:
            order.status = AlgoOrderStatus.FAILED
            order.error = NO_SESSION_ERROR
            order.updated_at = now
            logger.warning("execution_no_session", extra={"order_id": order.id, "type": order.type.value})
            await self.notifier.notify(
                NotificationKind.ORDER_FAILED,
                "Algo Order Failed",
                f"{order.type.value} order failed: {NO_SESSION_ERROR}. Please unlock your wallet.",
            )
            return

        limit = marketable_price(order.side, market.price)
        errors, warnings = await self.preflight(session, order.token_id, order.side, order.size, limit)
        if errors:
            logger.warning(
                "execution_rejected",
                extra={"order_id": order.id, "errors": errors, "warnings": warnings},
            )
            return

        try:
            result = await session.client.submit_order(order.token_id, order.side, order.size, limit, "FOK")
        except Exception:
            logger.error("execution_error", extra={"order_id": order.id}, exc_info=True)
            return

        record = ExecutionRecord(
            price=market.price,
            size=order.size,
            timestamp=now,
            reason=reason or "Algo condition met",
            exchange_order_id=result.order_id,
            success=result.success,
            error=result.error,
        )
        order.execution_history.append(record)
        order.updated_at = now

        if result.success:
            order.status = AlgoOrderStatus.COMPLETED
            order.executed_size = order.size
            order.completed_at = now
            order.exchange_order_id = result.order_id
            logger.info(
                "algo_order_executed",
                extra={
                    "order_id": order.id,
                    "type": order.type.value,
                    "side": order.side.value,
                    "size": order.size,
                    "price": market.price,
                    "exchange_order_id": result.order_id,
                    "reason": record.reason,
                },
            )
            await self._record_history(order, market.price, order.size, HistoryStatus.EXECUTED, result, now)
            await self.notifier.notify(
                NotificationKind.ORDER_EXECUTED,
                "Algo Order Executed",
                f"{order.type.value} {order.side.value} order executed: {order.size:g} shares "
                f"@ ${market.price:.4f}\nOrder ID: {result.order_id}",
            )
            if order.side == OrderSide.SELL:
                await self._after_sell(session, order.token_id, market.price, order.size, order.id, now)
        else:
            order.status = AlgoOrderStatus.FAILED
            order.error = result.error or "Unknown error"
            logger.error(
                "algo_order_failed",
                extra={"order_id": order.id, "type": order.type.value, "error": order.error},
            )
            await self._record_history(order, market.price, order.size, HistoryStatus.FAILED, result, now)
            await self.notifier.notify(
                NotificationKind.ORDER_FAILED,
                "Algo Order Failed",
                f"{order.type.value} order failed: {order.error}",
            )

    async def execute_slice(
        self,
        order: AlgoOrder,
        market: MarketPrice,
        size: float,
        now: Optional[datetime] = None,
    ) -> Optional[ExecutionRecord]:
        """Execute one TWAP slice of *size*.

        Returns the recorded attempt, or None when nothing was attempted
        (no session or a transient error). A slice rejected before
        submission is recorded as a failed attempt, notified only the first
        time. A failed attempt leaves the order ACTIVE.
        """
        now = now or datetime.now(timezone.utc)
        session = self.sessions.current()
        if session is None:
            logger.info("twap_slice_skipped", extra={"order_id": order.id, "reason": NO_SESSION_ERROR})
            return None

        limit = marketable_price(order.side, market.price)
        errors, warnings = await self.preflight(session, order.token_id, order.side, size, limit)
        if errors:
            logger.warning(
                "execution_rejected",
                extra={"order_id": order.id, "slice_size": size, "errors": errors, "warnings": warnings},
            )
            return await self._reject_slice(order, market, size, errors, now)

        try:
            result = await session.client.submit_order(order.token_id, order.side, size, limit, "FOK")
        except Exception:
            logger.error("twap_slice_error", extra={"order_id": order.id}, exc_info=True)
            return None

        record = ExecutionRecord(
            price=market.price,
            size=size,
            timestamp=now,
            reason="TWAP slice",
            exchange_order_id=result.order_id,
            success=result.success,
            error=result.error,
        )
        order.execution_history.append(record)
        order.updated_at = now

        if result.success:
            executed = order.executed_size + size
            order.executed_size = order.size if executed >= order.size - _EPS else executed
            order.exchange_order_id = result.order_id
            logger.info(
                "twap_slice_executed",
                extra={
                    "order_id": order.id,
                    "slice_size": size,
                    "executed_size": order.executed_size,
                    "total_size": order.size,
                    "price": market.price,
                },
            )
            await self._record_history(order, market.price, size, HistoryStatus.EXECUTED, result, now)
            await self.notifier.notify(
                NotificationKind.ORDER_EXECUTED,
                "TWAP Slice Executed",
                f"TWAP {order.side.value} slice: {size:g} shares @ ${market.price:.4f} "
                f"({order.executed_size:g} / {order.size:g})",
            )
            if order.side == OrderSide.SELL:
                await self._after_sell(session, order.token_id, market.price, size, order.id, now)
        else:
            logger.warning(
                "twap_slice_failed",
                extra={"order_id": order.id, "slice_size": size, "error": result.error},
            )
            await self._record_history(order, market.price, size, HistoryStatus.FAILED, result, now)
            await self.notifier.notify(
                NotificationKind.ORDER_FAILED,
                "TWAP Slice Failed",
                f"TWAP {order.side.value} slice of {size:g} failed: {result.error or 'Unknown error'}",
            )
        return record

    async def _reject_slice(
        self,
        order: AlgoOrder,
        market: MarketPrice,
        size: float,
        errors: list[str],
        now: datetime,
    ) -> ExecutionRecord:
        first = not any(r.reason == SLICE_REJECTED_REASON for r in order.execution_history)
        record = ExecutionRecord(
            price=market.price,
            size=size,
            timestamp=now,
            reason=SLICE_REJECTED_REASON,
            success=False,
            error="; ".join(errors),
        )
        order.execution_history.append(record)
        order.updated_at = now
        if first:
            await self.notifier.notify(
                NotificationKind.ORDER_FAILED,
                "TWAP Slice Rejected",
                f"TWAP {order.side.value} slice of {size:g} rejected: {record.error}. "
                f"Unfilled size is swept when the schedule ends.",
            )
        return record

    # ------------------------------------------------------------------
    # Direct orders (called from commands)
    # ------------------------------------------------------------------

    async def place_order(
        self,
        token_id: str,
        side: OrderSide,
        size: float,
        price: float,
        order_type: str,
        override_risk: bool = False,
    ) -> tuple[SubmitResult, list[str]]:
        """Submit a user order after all pre-submission checks.

        Raises:
            NoTradingSessionError: No active session.
            OrderValidationError: Parameters, balance or risk limits rejected it.

        Returns:
            (SubmitResult, risk warnings).
        """
        session = self.sessions.current()
        if session is None:
            raise NoTradingSessionError()

        errors, warnings = await self.preflight(session, token_id, side, size, price, override_risk)
        if errors:
            raise OrderValidationError(errors, warnings)

        result = await session.client.submit_order(token_id, side, size, price, order_type)
        if result.success and side == OrderSide.SELL and order_type == "FOK":
            await self._after_sell(session, token_id, price, size, result.order_id, datetime.now(timezone.utc))
        return result, warnings

    async def place_market_order(
        self,
        token_id: str,
        side: OrderSide,
        size: float,
        current_price: float,
        override_risk: bool = False,
    ) -> tuple[SubmitResult, list[str], float]:
        limit = marketable_price(side, current_price)
        result, warnings = await self.place_order(token_id, side, size, limit, "FOK", override_risk)
        return result, warnings, limit

    async def cancel(self, exchange_order_id: str) -> bool:
        session = self.sessions.current()
        if session is None:
            raise NoTradingSessionError()
        return await session.client.cancel_order(exchange_order_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _record_history(
        self,
        order: AlgoOrder,
        price: float,
        size: float,
        status: HistoryStatus,
        result: SubmitResult,
        now: datetime,
    ) -> None:
        entry = OrderHistoryEntry(
            timestamp=now,
            order_type=HistoryOrderType.ALGO,
            algo_type=order.type,
            token_id=order.token_id,
            side=order.side,
            size=size,
            price=price,
            executed_price=price if status == HistoryStatus.EXECUTED else None,
            status=status,
            algo_order_id=order.id,
            exchange_order_id=result.order_id,
            error=result.error,
            market_question=order.market_question,
            outcome=order.outcome,
        )
        try:
            await self.repo.add_order_history(entry)
        except Exception:
            logger.error("order_history_write_failed", extra={"order_id": order.id}, exc_info=True)

    async def _after_sell(
        self,
        session: TradingSession,
        token_id: str,
        exit_price: float,
        size: float,
        order_id: str,
        now: datetime,
    ) -> None:
        """Book realized PnL against the cached entry price, then drop the snapshot."""
        owner = session.proxy_address
        if not owner:
            return
        try:
            position = await self.positions.find(owner, token_id)
            if position is not None and position.avg_price > 0:
                pnl = (exit_price - position.avg_price) * size
                await self.repo.record_trade_pnl(pnl, order_id, now)
        except Exception:
            logger.warning("realized_pnl_skipped", extra={"order_id": order_id}, exc_info=True)
        try:
            await self.positions.invalidate(owner)
        except Exception:
            logger.warning("positions_invalidate_failed", extra={"owner": owner}, exc_info=True)
