"""Tests for the command surface and its dispatch table."""

import pytest

from conftest import PROXY, run

from algotrader.commands import COMMANDS, CommandService
from algotrader.models import (
    AlgoOrderStatus,
    HistoryOrderType,
    HistoryStatus,
    Position,
    RestingOrderStatus,
)


def _create_trailing(commands, **overrides):
    payload = {
        "type": "TRAILING_STOP",
        "token_id": "tok",
        "side": "SELL",
        "size": 10,
        "trail_percent": 5,
    }
    payload.update(overrides)
    return run(commands.dispatch({"type": "CREATE_ALGO_ORDER", "payload": payload}))


# ------------------------------------------------------------------
# Algo orders
# ------------------------------------------------------------------

class TestAlgoOrderCommands:

    def test_create_returns_active_order(self, commands):
        result = _create_trailing(commands)
        assert result.success
        assert result.data["status"] == "ACTIVE"
        assert result.data["params"]["trail_percent"] == 5

    def test_create_validates_params(self, commands):
        result = _create_trailing(commands, trail_percent=None)
        assert not result.success
        assert "trail_percent" in result.error

        result = _create_trailing(commands, size=-1)
        assert not result.success

    def test_pause_resume_cancel(self, commands, repo):
        order_id = _create_trailing(commands).data["id"]

        assert run(commands.pause_algo_order(order_id)).data["status"] == "PAUSED"
        assert not run(commands.pause_algo_order(order_id)).success
        assert run(commands.resume_algo_order(order_id)).data["status"] == "ACTIVE"
        assert run(commands.cancel_algo_order(order_id)).data["status"] == "CANCELLED"

        result = run(commands.resume_algo_order(order_id))
        assert not result.success
        assert "Cannot move order" in result.error
        assert run(repo.load_algo_orders())[0].status == AlgoOrderStatus.CANCELLED

    def test_unknown_order(self, commands):
        result = run(commands.cancel_algo_order("order_missing"))
        assert not result.success
        assert "not found" in result.error

    def test_create_twap(self, commands):
        result = _create_trailing(
            commands, type="TWAP", trail_percent=None, duration_minutes=60, interval_minutes=5
        )
        assert result.success
        assert result.data["params"]["kind"] == "twap"

    def test_create_twap_rejects_slices_below_minimum_value(self, commands, exchange, repo):
        exchange.mids["tok"] = 0.50
        result = _create_trailing(
            commands, type="TWAP", trail_percent=None, duration_minutes=60, interval_minutes=5
        )
        assert not result.success
        assert result.error.startswith("TWAP slice of")
        assert "Order value must be at least" in result.error
        assert run(repo.load_algo_orders()) == []

        result = _create_trailing(
            commands, type="TWAP", trail_percent=None, size=100, duration_minutes=60, interval_minutes=5
        )
        assert result.success


# ------------------------------------------------------------------
# Resting orders
# ------------------------------------------------------------------

class TestLimitOrderCommands:

    def _create(self, commands, **overrides):
        payload = {"token_id": "tok", "side": "BUY", "size": 10, "limit_price": 0.42}
        payload.update(overrides)
        return run(commands.create_limit_order(**payload))

    def test_create_submits_gtc_and_records_history(self, commands, exchange, repo):
        result = self._create(commands)
        assert result.success
        assert exchange.submissions[0]["order_type"] == "GTC"
        assert result.data["exchange_order_id"] == "ex_1"

        history = run(repo.load_order_history())
        assert history[0].order_type == HistoryOrderType.LIMIT
        assert history[0].status == HistoryStatus.PENDING
        assert history[0].resting_order_id == result.data["id"]

    def test_cancel_pending_only(self, commands, exchange, repo):
        order_id = self._create(commands).data["id"]

        result = run(commands.cancel_limit_order(order_id))
        assert result.success
        assert result.data["status"] == "CANCELLED"
        assert exchange.cancelled == ["ex_1"]
        assert run(repo.load_order_history())[0].status == HistoryStatus.CANCELLED

        assert not run(commands.cancel_limit_order(order_id)).success

    def test_create_without_session(self, commands, sessions, exchange):
        sessions.clear()
        result = self._create(commands)
        assert not result.success
        assert result.error == "No active trading session"
        assert exchange.submissions == []

    def test_create_rejected_by_validation(self, commands, exchange):
        result = self._create(commands, size=1)
        assert not result.success
        assert "Order value must be at least" in result.error
        assert exchange.submissions == []

    def test_delete_and_pending_filter(self, commands, repo):
        first = self._create(commands).data["id"]
        second = self._create(commands).data["id"]
        run(commands.cancel_limit_order(first))

        pending = run(commands.get_pending_limit_orders()).data
        assert [o["id"] for o in pending] == [second]

        assert run(commands.delete_limit_order(first)).success
        assert [o.id for o in run(repo.load_resting_orders())] == [second]
        assert run(repo.load_resting_orders())[0].status == RestingOrderStatus.PENDING


# ------------------------------------------------------------------
# Market orders / positions
# ------------------------------------------------------------------

class TestMarketCommands:

    def test_market_order_records_history(self, commands, exchange, repo):
        exchange.mids["tok"] = 0.50
        result = run(commands.execute_market_order(token_id="tok", side="BUY", size=10))
        assert result.success
        assert result.data["price"] == pytest.approx(0.525)

        entry = run(repo.load_order_history())[0]
        assert entry.order_type == HistoryOrderType.MARKET
        assert entry.status == HistoryStatus.EXECUTED

    def test_market_order_without_price(self, commands):
        result = run(commands.execute_market_order(token_id="tok", side="BUY", size=10))
        assert not result.success

    def test_quick_sell_whole_position(self, commands, exchange, data_client):
        exchange.mids["tok"] = 0.50
        data_client.positions = [Position(asset="tok", size=20, avg_price=0.4, current_value=10, title="Q")]

        result = run(commands.quick_sell_position(token_id="tok"))
        assert result.success
        assert exchange.submissions[0]["side"].value == "SELL"
        assert exchange.submissions[0]["size"] == 20

    def test_quick_sell_without_position(self, commands):
        assert not run(commands.quick_sell_position(token_id="tok")).success

    def test_positions_default_to_session_wallet(self, commands, data_client):
        data_client.positions = [Position(asset="tok", size=20, current_value=10)]
        result = run(commands.get_positions())
        assert result.success
        assert result.data[0]["asset"] == "tok"
        assert run(commands.refresh_positions(proxy_address=PROXY)).success
        assert data_client.calls == 2


# ------------------------------------------------------------------
# Alerts / risk / session
# ------------------------------------------------------------------

class TestOtherCommands:

    def test_alert_lifecycle(self, commands):
        created = run(commands.create_price_alert(token_id="tok", condition="ABOVE", target_price=0.6))
        alert_id = created.data["id"]

        updated = run(commands.update_price_alert(alert_id, {"target_price": 0.7}))
        assert updated.data["target_price"] == 0.7
        assert not run(commands.update_price_alert(alert_id, {"status": "TRIGGERED"})).success

        assert run(commands.dismiss_price_alert(alert_id)).data["status"] == "DISMISSED"
        assert run(commands.rearm_price_alert(alert_id)).data["status"] == "ACTIVE"
        snoozed = run(commands.snooze_price_alert(alert_id, duration_minutes=15))
        assert snoozed.data["status"] == "SNOOZED"

        assert run(commands.delete_price_alert(alert_id)).success
        assert run(commands.get_price_alerts()).data == []

    def test_risk_settings_update_and_reset(self, commands):
        result = run(commands.update_risk_settings(max_daily_loss=100))
        assert result.data["max_daily_loss"] == 100
        assert not run(commands.update_risk_settings(max_daily_loss=-1)).success
        assert not run(commands.update_risk_settings(leverage=3)).success
        assert run(commands.reset_risk_settings()).data["max_daily_loss"] == 500

    def test_daily_loss(self, commands):
        run(commands.record_realized_pnl(pnl=-12.5, order_id="o1"))
        assert run(commands.get_daily_loss()).data["total_loss"] == 12.5

    def test_wallet_addresses(self, commands, sessions):
        assert run(commands.get_wallet_addresses()).data["proxy_address"] == PROXY
        run(commands.clear_trading_session())
        assert not run(commands.get_wallet_addresses()).success

    def test_order_history_filters(self, commands, exchange):
        exchange.mids["tok"] = 0.50
        run(commands.execute_market_order(token_id="tok", side="BUY", size=10))
        run(commands.create_limit_order(token_id="tok", side="BUY", size=10, limit_price=0.42))

        result = run(commands.get_order_history(order_type="LIMIT"))
        assert [e["order_type"] for e in result.data] == ["LIMIT"]


# ------------------------------------------------------------------
# Dispatch
# ------------------------------------------------------------------

class TestDispatch:

    def test_every_command_maps_to_a_method(self):
        for name in COMMANDS.values():
            assert callable(getattr(CommandService, name))

    def test_unknown_type(self, commands):
        result = run(commands.dispatch({"type": "LAUNCH_ROCKET"}))
        assert not result.success
        assert "Unknown command type" in result.error

    def test_bad_arguments(self, commands):
        result = run(commands.dispatch({"type": "PAUSE_ALGO_ORDER", "payload": {"nope": 1}}))
        assert not result.success
        assert result.error.startswith("pause_algo_order failed:")
        assert "nope" in result.error

    def test_routes_payload(self, commands):
        order_id = _create_trailing(commands).data["id"]
        result = run(commands.dispatch({"type": "PAUSE_ALGO_ORDER", "payload": {"order_id": order_id}}))
        assert result.success
        assert result.data["status"] == "PAUSED"
