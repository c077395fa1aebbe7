"""Tests for the positions cache, the risk validator and pre-submission validation."""

import asyncio

import pytest

from conftest import PROXY, run

from algotrader.execution.risk import OVERRIDE_WARNING
from algotrader.execution.validation import marketable_price, validate_balance, validate_order
from algotrader.models import OrderSide, Position, RiskSettings


def _position(asset="tok", size=100.0, value=50.0, avg_price=0.4):
    return Position(asset=asset, size=size, current_value=value, avg_price=avg_price)


# ------------------------------------------------------------------
# Positions cache
# ------------------------------------------------------------------

class TestPositionsCache:

    def test_fresh_snapshot_is_served(self, positions, data_client, clock):
        data_client.positions = [_position()]
        assert len(run(positions.get(PROXY))) == 1
        clock.advance(4)
        run(positions.get(PROXY))
        assert data_client.calls == 1

    def test_refetch_after_ttl(self, positions, data_client, clock):
        run(positions.get(PROXY))
        clock.advance(6)
        run(positions.get(PROXY))
        assert data_client.calls == 2

    def test_stale_fallback_on_fetch_failure(self, positions, data_client, clock):
        data_client.positions = [_position()]
        run(positions.get(PROXY))
        clock.advance(600)
        data_client.fail = True
        cached = run(positions.get(PROXY))
        assert [p.asset for p in cached] == ["tok"]

    def test_failure_without_snapshot_raises(self, positions, data_client):
        data_client.fail = True
        with pytest.raises(RuntimeError):
            run(positions.get(PROXY))

    def test_dust_is_dropped(self, positions, data_client):
        data_client.positions = [_position("a", value=0.05), _position("b", value=0.10)]
        assert [p.asset for p in run(positions.get(PROXY))] == ["b"]

    def test_owners_are_cached_separately(self, positions, data_client, repo):
        run(positions.get(PROXY))
        run(positions.get("0xother"))
        assert set(run(repo.load_positions_cache())) == {PROXY, "0xother"}

    def test_refresh_bypasses_ttl(self, positions, data_client):
        run(positions.get(PROXY))
        run(positions.refresh(PROXY))
        assert data_client.calls == 2

    def test_owner_locks_released_after_use(self, positions, data_client):
        async def both():
            return await asyncio.gather(positions.get(PROXY), positions.get(PROXY))

        run(both())
        run(positions.get("0xother"))
        assert data_client.calls == 2
        assert positions._locks == {}
        assert positions._users == {}

    def test_owner_lock_released_on_failure(self, positions, data_client):
        data_client.fail = True
        with pytest.raises(RuntimeError):
            run(positions.get(PROXY))
        assert positions._locks == {}


# ------------------------------------------------------------------
# Risk validator
# ------------------------------------------------------------------

class TestRiskValidator:

    def test_daily_loss_warning_then_block(self, risk, repo):
        run(repo.record_trade_pnl(-480.0, "o1"))
        result = run(risk.validate("tok", OrderSide.BUY, 10, 0.5))
        assert result.allowed
        assert any("Approaching daily loss limit" in w for w in result.warnings)

        run(repo.record_trade_pnl(-20.0, "o2"))
        result = run(risk.validate("tok", OrderSide.BUY, 10, 0.5))
        assert not result.allowed
        assert "Daily loss limit reached" in result.errors[0]

    def test_gains_do_not_count_as_loss(self, risk, repo):
        run(repo.record_trade_pnl(900.0, "o1"))
        ledger = run(repo.load_daily_loss())
        assert ledger.total_loss == 0
        assert run(risk.validate("tok", OrderSide.BUY, 10, 0.5)).allowed

    def test_disabled_checks_allow_everything(self, risk, repo):
        run(repo.save_risk_settings(RiskSettings(enable_risk_checks=False)))
        run(repo.record_trade_pnl(-1000.0, "o1"))
        result = run(risk.validate("tok", OrderSide.BUY, 3000, 0.5))
        assert result.allowed
        assert result.warnings == []

    def test_override_skips_checks_with_audit_warning(self, risk, repo):
        run(repo.record_trade_pnl(-1000.0, "o1"))
        result = run(risk.validate("tok", OrderSide.BUY, 10, 0.5, override=True))
        assert result.allowed
        assert result.warnings == [OVERRIDE_WARNING]

    def test_sell_always_passes(self, risk, repo):
        run(repo.record_trade_pnl(-1000.0, "o1"))
        assert run(risk.validate("tok", OrderSide.SELL, 3000, 0.5)).allowed

    def test_per_market_cap(self, risk):
        result = run(risk.validate("tok", OrderSide.BUY, 3000, 0.5))
        assert not result.allowed
        assert "max position size per market" in result.errors[0]

    def test_exposure_cap(self, risk, data_client):
        data_client.positions = [_position(value=4600.0)]
        result = run(risk.validate("tok", OrderSide.BUY, 1000, 0.5))
        assert not result.allowed
        assert "max total portfolio exposure" in result.errors[0]

    def test_exposure_warning(self, risk, data_client):
        data_client.positions = [_position(value=4100.0)]
        result = run(risk.validate("tok", OrderSide.BUY, 1000, 0.5))
        assert result.allowed
        assert any("Approaching max portfolio exposure" in w for w in result.warnings)

    def test_exposure_at_warning_line_is_silent(self, risk, data_client):
        data_client.positions = [_position(value=4000.0)]
        result = run(risk.validate("tok", OrderSide.BUY, 1000, 0.5))
        assert result.allowed
        assert result.warnings == []

    def test_exposure_skipped_without_session(self, risk, sessions, data_client):
        data_client.positions = [_position(value=10_000.0)]
        sessions.clear()
        assert run(risk.validate("tok", OrderSide.BUY, 10, 0.5)).allowed

    def test_exposure_skipped_when_positions_unavailable(self, risk, data_client):
        data_client.fail = True
        assert run(risk.validate("tok", OrderSide.BUY, 10, 0.5)).allowed


# ------------------------------------------------------------------
# Order validation
# ------------------------------------------------------------------

class TestValidation:

    def test_minimum_order_value(self):
        result = validate_order("tok", OrderSide.BUY, 1, 0.5)
        assert not result.is_valid
        assert result.errors[0].startswith("size: Order value must be at least")

    def test_field_errors_reported_together(self):
        result = validate_order("", OrderSide.BUY, -1, 2.0)
        assert len(result.errors) == 3

    def test_balance(self):
        assert not validate_balance(OrderSide.BUY, 100, 0.5, 49.0).is_valid
        assert validate_balance(OrderSide.BUY, 100, 0.5, 50.0).is_valid
        assert not validate_balance(OrderSide.SELL, 100, 0.5, 99.0).is_valid

    def test_marketable_price(self):
        assert marketable_price(OrderSide.BUY, 0.5) == pytest.approx(0.525)
        assert marketable_price(OrderSide.SELL, 0.5) == pytest.approx(0.475)
        assert marketable_price(OrderSide.BUY, 0.98) == 0.99
        assert marketable_price(OrderSide.SELL, 0.01) == 0.01
