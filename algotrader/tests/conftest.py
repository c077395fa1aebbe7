"""Shared fakes and fixtures for the algo engine tests.

The fakes stand in for the network edges only (exchange, Data API, public
order book, notification sink); everything else is the real implementation
running over a MemoryStore.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

import pytest

from algotrader.commands import CommandService
from algotrader.execution.gateway import ExecutionGateway
from algotrader.execution.positions import PositionsCache
from algotrader.execution.risk import RiskValidator
from algotrader.execution.session import ExchangeClient, ExchangeResponse, SessionManager, SubmitResult
from algotrader.jobs.alert_monitor import AlertMonitor
from algotrader.jobs.algo_engine import AlgoEngine
from algotrader.jobs.price_source import PriceSource
from algotrader.jobs.reconciler import LimitOrderReconciler
from algotrader.models import OrderSide, Position
from algotrader.notifications import Notifier
from algotrader.repository import Repository
from algotrader.store import MemoryStore

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

EOA = "0xeoa"
PROXY = "0xproxy"


# ------------------------------------------------------------------
# Fakes
# ------------------------------------------------------------------

class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeExchangeClient(ExchangeClient):
    """Quotes from a dict of mids (bid/ask = mid -/+ 0.01), scripted submissions."""

    def __init__(self) -> None:
        self.address = EOA
        self.mids: dict[str, float] = {}
        # (bid, ask) overrides with no midpoint, for one-sided books
        self.books: dict[str, tuple[float, float]] = {}
        self.balance = 1_000_000.0
        self.open_orders: list[dict] = []
        self.open_orders_ok = True
        # Consumed per submission; True = accepted, False = rejected, Exception = raised
        self.outcomes: list = []
        self.submissions: list[dict] = []
        self.cancelled: list[str] = []

    async def get_best_price(self, token_id: str, side: OrderSide) -> float:
        if token_id in self.books:
            bid, ask = self.books[token_id]
            return ask if side == OrderSide.BUY else bid
        mid = self.mids.get(token_id, 0.0)
        if not mid:
            return 0.0
        return mid + 0.01 if side == OrderSide.BUY else mid - 0.01

    async def get_midpoint(self, token_id: str) -> float:
        return self.mids.get(token_id, 0.0)

    async def get_open_orders(self) -> ExchangeResponse:
        if not self.open_orders_ok:
            return ExchangeResponse(success=False, error="unavailable")
        return ExchangeResponse(success=True, data=list(self.open_orders))

    async def submit_order(self, token_id, side, size, price, order_type="FOK") -> SubmitResult:
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        self.submissions.append(
            {"token_id": token_id, "side": side, "size": size, "price": price, "order_type": order_type}
        )
        if outcome:
            return SubmitResult(success=True, order_id=f"ex_{len(self.submissions)}")
        return SubmitResult(success=False, error="not enough liquidity")

    async def cancel_order(self, order_id: str) -> bool:
        self.cancelled.append(order_id)
        return True

    async def get_balance(self, token_id: Optional[str] = None) -> float:
        return self.balance


class FakeDataClient:
    def __init__(self) -> None:
        self.positions: list[Position] = []
        self.fail = False
        self.calls = 0

    async def fetch_all_positions(self, user: str) -> list[Position]:
        self.calls += 1
        if self.fail:
            raise RuntimeError("data api down")
        return [p.model_copy() for p in self.positions]

    async def close(self) -> None:
        return None


class FakeClob:
    """Public order book quotes used when there is no trading session."""

    def __init__(self) -> None:
        self.quotes: dict[str, tuple[float, float]] = {}

    async def fetch_best_quote(self, token_id: str):
        return self.quotes.get(token_id)

    async def close(self) -> None:
        return None


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def notify(self, kind, title, message, actions=()) -> str:
        notification_id = f"n{len(self.sent) + 1}"
        self.sent.append(
            {"id": notification_id, "kind": kind, "title": title, "message": message, "actions": tuple(actions)}
        )
        return notification_id

    def kinds(self) -> list:
        return [n["kind"] for n in self.sent]


def run(coro):
    return asyncio.run(coro)


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def repo(store):
    return Repository(store)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def exchange():
    return FakeExchangeClient()


@pytest.fixture
def sessions(clock, exchange):
    manager = SessionManager(timeout=3600, clock=clock)
    manager.activate(exchange, eoa_address=EOA, proxy_address=PROXY)
    return manager


@pytest.fixture
def data_client():
    return FakeDataClient()


@pytest.fixture
def clob():
    return FakeClob()


@pytest.fixture
def positions(repo, data_client, clock):
    return PositionsCache(repo, data_client, ttl=5.0, clock=clock)


@pytest.fixture
def risk(repo, positions, sessions):
    return RiskValidator(repo, positions, sessions)


@pytest.fixture
def gateway(repo, sessions, risk, positions, notifier):
    return ExecutionGateway(repo, sessions, risk, positions, notifier)


@pytest.fixture
def prices(sessions, clob):
    return PriceSource(sessions, clob)


@pytest.fixture
def lock():
    return asyncio.Lock()


@pytest.fixture
def reconciler(repo, sessions, notifier):
    return LimitOrderReconciler(repo, sessions, notifier)


@pytest.fixture
def engine(repo, prices, reconciler, gateway, notifier, lock):
    return AlgoEngine(repo, prices, reconciler, gateway, notifier, lock=lock)


@pytest.fixture
def alert_monitor(repo, prices, notifier, lock):
    return AlertMonitor(repo, prices, notifier, lock=lock)


@pytest.fixture
def commands(repo, sessions, gateway, positions, prices, alert_monitor, lock):
    return CommandService(repo, sessions, gateway, positions, prices, alert_monitor, lock)
