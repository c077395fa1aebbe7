"""Tests for the pure strategy evaluators (trailing stop, stop-loss/take-profit, TWAP)."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from conftest import T0

from algotrader.models import (
    AlgoOrder,
    AlgoOrderType,
    ExecutionRecord,
    OrderSide,
    StopLossParams,
    TrailingStopParams,
    TWAPParams,
)
from algotrader.strategies import stop_loss, trailing_stop, twap


def _trailing(side, pct, activation=None):
    return AlgoOrder(
        type=AlgoOrderType.TRAILING_STOP,
        token_id="tok",
        side=side,
        size=10,
        params=TrailingStopParams(trail_percent=pct, activation_price=activation),
    )


def _step(order, price):
    """Evaluate and apply the returned state the way the engine does."""
    decision = trailing_stop.evaluate(order, price)
    order.highest_price = decision.highest_price
    order.lowest_price = decision.lowest_price
    order.is_activated = decision.is_activated
    return decision


# ------------------------------------------------------------------
# Trailing stop
# ------------------------------------------------------------------

class TestTrailingStop:

    def test_buy_triggers_on_retracement_from_low(self):
        order = _trailing(OrderSide.BUY, 5)
        assert not _step(order, 0.50).should_execute
        assert not _step(order, 0.45).should_execute
        assert order.lowest_price == 0.45
        assert _step(order, 0.4725).should_execute

    def test_buy_below_threshold_does_not_trigger(self):
        order = _trailing(OrderSide.BUY, 5)
        _step(order, 0.50)
        _step(order, 0.45)
        assert not _step(order, 0.47).should_execute
        assert order.lowest_price == 0.45

    def test_sell_triggers_on_drop_from_high(self):
        order = _trailing(OrderSide.SELL, 10)
        assert not _step(order, 0.60).should_execute
        assert not _step(order, 0.70).should_execute
        assert order.highest_price == 0.70
        assert _step(order, 0.63).should_execute

    def test_first_observation_never_triggers(self):
        order = _trailing(OrderSide.BUY, 1)
        decision = _step(order, 0.30)
        assert not decision.should_execute
        assert decision.lowest_price == 0.30

    def test_activation_holds_order_dormant(self):
        order = _trailing(OrderSide.BUY, 5, activation=0.40)
        decision = _step(order, 0.45)
        assert not decision.should_execute
        assert not decision.is_activated
        assert decision.lowest_price is None

        decision = _step(order, 0.40)
        assert decision.is_activated
        assert decision.lowest_price == 0.40

        # Once activated it stays activated above the activation price
        assert _step(order, 0.43).should_execute

    def test_sell_activation_at_or_above(self):
        order = _trailing(OrderSide.SELL, 5, activation=0.60)
        assert not _step(order, 0.55).is_activated
        assert _step(order, 0.60).is_activated


# ------------------------------------------------------------------
# Stop-loss / take-profit
# ------------------------------------------------------------------

def _stop(side, stop=None, target=None):
    return AlgoOrder(
        type=AlgoOrderType.STOP_LOSS,
        token_id="tok",
        side=side,
        size=10,
        params=StopLossParams(stop_loss_price=stop, take_profit_price=target),
    )


class TestStopLoss:

    def test_buy_stop_and_target(self):
        order = _stop(OrderSide.BUY, stop=0.40, target=0.60)
        assert not stop_loss.evaluate(order, 0.50).should_execute
        assert stop_loss.evaluate(order, 0.40).reason == "Stop-loss at 0.4"
        assert stop_loss.evaluate(order, 0.61).reason == "Take-profit at 0.6"

    def test_sell_comparisons_inverted(self):
        order = _stop(OrderSide.SELL, stop=0.60, target=0.40)
        assert not stop_loss.evaluate(order, 0.50).should_execute
        assert stop_loss.evaluate(order, 0.65).reason.startswith("Stop-loss")
        assert stop_loss.evaluate(order, 0.35).reason.startswith("Take-profit")

    def test_stop_loss_checked_first(self):
        order = _stop(OrderSide.BUY, stop=0.50, target=0.50)
        assert stop_loss.evaluate(order, 0.50).reason == "Stop-loss at 0.5"

    def test_take_profit_only(self):
        order = AlgoOrder(
            type=AlgoOrderType.TAKE_PROFIT,
            token_id="tok",
            side=OrderSide.BUY,
            size=10,
            params=StopLossParams(take_profit_price=0.7),
        )
        assert not stop_loss.evaluate(order, 0.1).should_execute
        assert stop_loss.evaluate(order, 0.7).should_execute

    def test_params_must_match_type(self):
        with pytest.raises(ValidationError):
            AlgoOrder(
                type=AlgoOrderType.STOP_LOSS,
                token_id="tok",
                side=OrderSide.BUY,
                size=10,
                params=TrailingStopParams(trail_percent=5),
            )


# ------------------------------------------------------------------
# TWAP
# ------------------------------------------------------------------

def _twap(size=10.0, duration=60, interval=5):
    return AlgoOrder(
        type=AlgoOrderType.TWAP,
        token_id="tok",
        side=OrderSide.BUY,
        size=size,
        params=TWAPParams(duration_minutes=duration, interval_minutes=interval, start_time=T0),
    )


def _apply(order, decision, now, success=True):
    order.execution_history.append(
        ExecutionRecord(price=0.5, size=decision.execute_size, timestamp=now, success=success)
    )
    if success:
        order.executed_size += decision.execute_size


class TestTWAP:

    def test_slice_count(self):
        assert twap.slice_count(TWAPParams(duration_minutes=60, interval_minutes=5)) == 12
        assert twap.slice_count(TWAPParams(duration_minutes=10, interval_minutes=3)) == 4
        assert twap.slice_count(TWAPParams(duration_minutes=5, interval_minutes=5)) == 1

    def test_nothing_due_at_start(self):
        assert not twap.evaluate(_twap(), 0.5, T0).should_execute

    def test_full_schedule_sums_to_total(self):
        order = _twap()
        for k in range(1, 13):
            now = T0 + timedelta(minutes=5 * k)
            decision = twap.evaluate(order, 0.5, now)
            assert decision.should_execute
            _apply(order, decision, now)
        assert order.executed_size == pytest.approx(10.0)
        assert twap.evaluate(order, 0.5, T0 + timedelta(minutes=61)).is_complete

    def test_failed_slice_is_not_retried(self):
        order = _twap()
        for k in range(1, 13):
            now = T0 + timedelta(minutes=5 * k)
            decision = twap.evaluate(order, 0.5, now)
            assert decision.should_execute
            assert decision.execute_size == pytest.approx(10 / 12)
            _apply(order, decision, now, success=(k != 7))

        assert len(order.execution_history) == 12
        assert order.executed_size == pytest.approx(9.1667, abs=1e-4)
        # Still inside the window: no extra slice
        assert not twap.evaluate(order, 0.5, T0 + timedelta(minutes=60)).should_execute

    def test_sweep_after_duration(self):
        order = _twap()
        order.executed_size = 10 * 11 / 12
        decision = twap.evaluate(order, 0.5, T0 + timedelta(minutes=61))
        assert decision.should_execute
        assert decision.is_complete
        assert decision.execute_size == pytest.approx(10 / 12)

    def test_sweep_skipped_below_minimum(self):
        order = _twap()
        order.executed_size = 9.995
        decision = twap.evaluate(order, 0.5, T0 + timedelta(minutes=61))
        assert not decision.should_execute
        assert decision.is_complete

    def test_one_slice_per_evaluation_when_behind(self):
        order = _twap()
        now = T0 + timedelta(minutes=12)
        first = twap.evaluate(order, 0.5, now)
        assert first.should_execute
        _apply(order, first, now)
        # Second boundary is also due; caught up on the next evaluation
        assert twap.evaluate(order, 0.5, now).should_execute
        _apply(order, first, now)
        assert not twap.evaluate(order, 0.5, now).should_execute

    def test_interval_cannot_exceed_duration(self):
        with pytest.raises(ValidationError):
            TWAPParams(duration_minutes=5, interval_minutes=10)
