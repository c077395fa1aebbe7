"""Risk validator: pre-trade limit checks against the user's risk profile.

Every capital-committing order passes through ``RiskValidator.validate``
before reaching the exchange. The validator enforces:

1. Per-market order value cap
2. Daily realized loss limit (warning from 80% of the cap)
3. Total portfolio exposure (warning from 90% of the cap)

SELL orders reduce exposure and always pass. A check whose inputs cannot be
read is skipped with a warning rather than failing the order.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from algotrader.config import RISK_DAILY_LOSS_WARN_PCT, RISK_EXPOSURE_WARN_PCT
from algotrader.execution.positions import PositionsCache
from algotrader.execution.session import SessionManager
from algotrader.models import OrderSide, RiskSettings
from algotrader.repository import Repository

logger = logging.getLogger(__name__)

OVERRIDE_WARNING = "Risk checks overridden by user"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RiskCheckResult(BaseModel):
    """Result of a pre-trade risk check."""

    allowed: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def reject(self, message: str) -> None:
        self.allowed = False
        self.errors.append(message)


# ---------------------------------------------------------------------------
# Risk Validator
# ---------------------------------------------------------------------------


class RiskValidator:
    """Pre-trade risk controls.

    Attributes:
        repo: Source of the risk profile and the daily loss ledger.
        positions: Positions cache used for the exposure check.
        sessions: Supplies the wallet whose exposure is measured.
    """

    def __init__(
        self,
        repo: Repository,
        positions: PositionsCache,
        sessions: SessionManager,
    ) -> None:
        self.repo = repo
        self.positions = positions
        self.sessions = sessions

    async def validate(
        self,
        token_id: str,
        side: OrderSide,
        size: float,
        price: float,
        override: bool = False,
        now: Optional[datetime] = None,
    ) -> RiskCheckResult:
        """Run pre-trade risk checks on a proposed order.

        Args:
            token_id: Token being traded.
            side: BUY or SELL.
            size: Order size in shares.
            price: Expected execution price.
            override: Skip every check, leaving an audit warning.
            now: Evaluation time for the daily ledger (defaults to now, UTC).

        Returns:
            RiskCheckResult with any errors and warnings.
        """
        result = RiskCheckResult()

        if override:
            result.warnings.append(OVERRIDE_WARNING)
            logger.warning("risk_override", extra={"token_id": token_id, "side": side.value, "size": size})
            return result

        settings = await self._load_settings()
        if not settings.enable_risk_checks:
            return result

        # SELL orders reduce exposure
        if side == OrderSide.SELL:
            return result

        order_value = size * price

        # 1. Per-market cap
        if order_value > settings.max_position_size_per_market:
            result.reject(
                f"Order size (${order_value:.2f}) exceeds max position size per market "
                f"(${settings.max_position_size_per_market:.2f})"
            )

        # 2. Daily loss limit
        await self._check_daily_loss(result, settings, now)

        # 3. Total exposure
        await self._check_exposure(result, settings, order_value)

        if not result.allowed:
            logger.info(
                "risk_rejected",
                extra={"token_id": token_id, "order_value": order_value, "errors": result.errors},
            )
        return result

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def _load_settings(self) -> RiskSettings:
        try:
            return await self.repo.load_risk_settings()
        except Exception:
            logger.warning("risk_settings_unavailable", exc_info=True)
            return RiskSettings()

    async def _check_daily_loss(
        self, result: RiskCheckResult, settings: RiskSettings, now: Optional[datetime]
    ) -> None:
        try:
            ledger = await self.repo.load_daily_loss(now or datetime.now(timezone.utc))
        except Exception:
            logger.warning("risk_daily_loss_check_skipped", exc_info=True)
            return

        loss = ledger.total_loss
        cap = settings.max_daily_loss
        if loss >= cap:
            result.reject(
                f"Daily loss limit reached (${loss:.2f} / ${cap:.2f}). Trading suspended for today."
            )
        elif loss > cap * RISK_DAILY_LOSS_WARN_PCT:
            result.warnings.append(f"Approaching daily loss limit: ${loss:.2f} / ${cap:.2f}")

    async def _check_exposure(
        self, result: RiskCheckResult, settings: RiskSettings, order_value: float
    ) -> None:
        session = self.sessions.current()
        if session is None or not session.proxy_address:
            logger.warning("risk_exposure_check_skipped", extra={"reason": "no session address"})
            return

        try:
            holdings = await self.positions.total_value(session.proxy_address)
        except Exception:
            logger.warning("risk_exposure_check_skipped", extra={"reason": "positions unavailable"}, exc_info=True)
            return

        exposure = holdings + order_value
        cap = settings.max_total_exposure
        if exposure > cap:
            result.reject(
                f"Order would exceed max total portfolio exposure (${exposure:.2f} > ${cap:.2f})"
            )
        elif exposure > cap * RISK_EXPOSURE_WARN_PCT:
            result.warnings.append(f"Approaching max portfolio exposure: ${exposure:.2f} / ${cap:.2f}")
