"""Tests for the key-value store, the repository and trading session expiry."""

from datetime import timedelta

from conftest import EOA, T0, FakeExchangeClient, run

from algotrader import repository
from algotrader.execution.session import SessionManager
from algotrader.models import (
    AlertCondition,
    AlertTrigger,
    HistoryOrderType,
    HistoryStatus,
    OrderHistoryEntry,
    OrderSide,
    PriceAlert,
)
from algotrader.store import ALGO_ORDERS, MemoryStore


def _entry(i, order_type=HistoryOrderType.MARKET, side=OrderSide.BUY, status=HistoryStatus.EXECUTED):
    return OrderHistoryEntry(
        timestamp=T0 + timedelta(minutes=i),
        order_type=order_type,
        token_id=f"tok{i % 2}",
        side=side,
        size=10,
        price=0.5,
        status=status,
    )


class TestMemoryStore:

    def test_values_are_copied(self):
        store = MemoryStore()
        value = [{"id": "a"}]
        run(store.set(ALGO_ORDERS, value))
        value.append({"id": "b"})
        loaded = run(store.get(ALGO_ORDERS))
        loaded.append({"id": "c"})
        assert run(store.get(ALGO_ORDERS)) == [{"id": "a"}]

    def test_delete(self):
        store = MemoryStore({ALGO_ORDERS: []})
        run(store.delete(ALGO_ORDERS))
        assert run(store.get(ALGO_ORDERS)) is None
        assert store.snapshot() == {}


class TestDailyLoss:

    def test_ledger_resets_on_new_utc_day(self, repo):
        run(repo.record_trade_pnl(-50.0, "o1", now=T0))
        assert run(repo.load_daily_loss(T0)).total_loss == 50.0

        tomorrow = T0 + timedelta(days=1)
        ledger = run(repo.load_daily_loss(tomorrow))
        assert ledger.total_loss == 0
        assert ledger.date == "2024-03-02"

        run(repo.record_trade_pnl(-5.0, "o2", now=tomorrow))
        assert run(repo.load_daily_loss(tomorrow)).total_loss == 5.0

    def test_all_trades_are_logged(self, repo):
        run(repo.record_trade_pnl(-5.0, "o1", now=T0))
        ledger = run(repo.record_trade_pnl(3.0, "o2", now=T0))
        assert [t.order_id for t in ledger.trades] == ["o1", "o2"]
        assert ledger.total_loss == 5.0


class TestOrderHistory:

    def test_newest_first_and_capped(self, repo, monkeypatch):
        monkeypatch.setattr(repository, "ORDER_HISTORY_MAX", 5)
        for i in range(7):
            run(repo.add_order_history(_entry(i)))
        history = run(repo.load_order_history())
        assert len(history) == 5
        assert history[0].timestamp == T0 + timedelta(minutes=6)

    def test_filters(self, repo):
        run(repo.add_order_history(_entry(0)))
        run(repo.add_order_history(_entry(1, HistoryOrderType.LIMIT, status=HistoryStatus.PENDING)))
        run(repo.add_order_history(_entry(2, side=OrderSide.SELL)))

        assert len(run(repo.filter_order_history(order_type=HistoryOrderType.MARKET))) == 2
        assert len(run(repo.filter_order_history(side=OrderSide.SELL))) == 1
        assert len(run(repo.filter_order_history(token_id="tok1"))) == 1
        assert len(run(repo.filter_order_history(start=T0 + timedelta(minutes=1)))) == 2
        assert len(run(repo.filter_order_history(status=HistoryStatus.PENDING))) == 1

    def test_clear(self, repo):
        run(repo.add_order_history(_entry(0)))
        run(repo.clear_order_history())
        assert run(repo.load_order_history()) == []


class TestAlertHistory:

    def test_prepend_newest_first_and_capped(self, repo, monkeypatch):
        monkeypatch.setattr(repository, "ALERT_HISTORY_MAX", 3)
        alert = PriceAlert(token_id="tok", condition=AlertCondition.ABOVE, target_price=0.5)
        for i in range(4):
            trigger = AlertTrigger(alert=alert, current_price=0.5 + i / 100, timestamp=T0)
            run(repo.prepend_alert_history([trigger]))

        history = run(repo.load_alert_history())
        assert [round(t.current_price, 2) for t in history] == [0.53, 0.52, 0.51]


class TestSessionManager:

    def test_expires_after_inactivity(self, clock):
        manager = SessionManager(timeout=60, clock=clock)
        manager.activate(FakeExchangeClient(), eoa_address=EOA)
        clock.advance(59)
        assert manager.current() is not None
        clock.advance(59)
        assert manager.current() is not None
        clock.advance(61)
        assert manager.current() is None

    def test_proxy_defaults_to_eoa(self, clock):
        manager = SessionManager(clock=clock)
        session = manager.activate(FakeExchangeClient(), eoa_address=EOA)
        assert session.proxy_address == EOA
        assert manager.wallet_addresses() == {"eoa_address": EOA, "proxy_address": EOA}
