"""APScheduler-based tick driver and control server for the algo engine."""

from __future__ import annotations

import asyncio
import json
import logging
import signal

from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from algotrader.api.clob_client import ClobClient
from algotrader.api.data_client import DataClient
from algotrader.commands import CommandService
from algotrader.config import (
    CONTROL_HOST,
    CONTROL_PORT,
    EXECUTION_DRY_RUN,
    NOTIFY_WEBHOOK_URL,
    POLYMARKET_PRIVATE_KEY,
    POLYMARKET_PROXY_ADDRESS,
    STORE_BACKEND,
    TICK_INTERVAL,
)
from algotrader.execution.gateway import ExecutionGateway
from algotrader.execution.positions import PositionsCache
from algotrader.execution.risk import RiskValidator
from algotrader.execution.session import SessionManager
from algotrader.jobs.alert_monitor import AlertMonitor
from algotrader.jobs.algo_engine import AlgoEngine
from algotrader.jobs.price_source import PriceSource
from algotrader.jobs.reconciler import LimitOrderReconciler
from algotrader.notifications import Notifier, build_notifier
from algotrader.repository import Repository
from algotrader.store import KeyValueStore, build_store

logger = logging.getLogger(__name__)


class EngineScheduler:
    """Wires the engine together, ticks it on an interval and serves commands."""

    def __init__(
        self,
        store: KeyValueStore | None = None,
        notifier: Notifier | None = None,
        clob: ClobClient | None = None,
        data_client: DataClient | None = None,
        sessions: SessionManager | None = None,
    ) -> None:
        self.store = store or build_store(STORE_BACKEND)
        self.notifier = notifier or build_notifier(NOTIFY_WEBHOOK_URL)
        self.clob = clob or ClobClient()
        self.data_client = data_client or DataClient()
        self.sessions = sessions or SessionManager()

        # One lock for ticks, alert checks and command mutations
        self.lock = asyncio.Lock()

        self.repo = Repository(self.store)
        self.positions = PositionsCache(self.repo, self.data_client)
        self.risk = RiskValidator(self.repo, self.positions, self.sessions)
        self.gateway = ExecutionGateway(self.repo, self.sessions, self.risk, self.positions, self.notifier)
        self.prices = PriceSource(self.sessions, self.clob)
        self.reconciler = LimitOrderReconciler(self.repo, self.sessions, self.notifier)
        self.engine = AlgoEngine(
            self.repo, self.prices, self.reconciler, self.gateway, self.notifier, lock=self.lock
        )
        self.alerts = AlertMonitor(self.repo, self.prices, self.notifier, lock=self.lock)
        self.commands = CommandService(
            self.repo, self.sessions, self.gateway, self.positions, self.prices, self.alerts, self.lock
        )

        self._scheduler = AsyncIOScheduler()
        self._shutdown_event = asyncio.Event()
        self._control_app: web.Application | None = None
        self._control_runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Open the startup session, register the tick, and block until shutdown."""
        if POLYMARKET_PRIVATE_KEY:
            logger.info("initial_trading_session")
            try:
                await self.sessions.open(
                    private_key=POLYMARKET_PRIVATE_KEY,
                    proxy_address=POLYMARKET_PROXY_ADDRESS,
                )
            except Exception:
                logger.error("initial_trading_session_failed", exc_info=True)

        self._scheduler.add_job(
            self._job_tick,
            "interval",
            seconds=TICK_INTERVAL,
            id="algo_tick",
            name="Algo Engine Tick",
            max_instances=1,
            coalesce=True,
        )

        self._scheduler.start()
        logger.info(
            "scheduler_started",
            extra={
                "tick_interval": TICK_INTERVAL,
                "mode": "DRY_RUN" if EXECUTION_DRY_RUN else "LIVE",
                "store": STORE_BACKEND,
            },
        )

        await self._start_control_server()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler)

        await self._shutdown_event.wait()
        await self._stop()

    async def _stop(self) -> None:
        logger.info("scheduler_stopping")
        self._scheduler.shutdown(wait=False)

        # Let an in-flight tick finish its batched write
        async with self.lock:
            pass

        if self._control_runner:
            await self._control_runner.cleanup()

        await self.clob.close()
        await self.data_client.close()
        await self.notifier.close()
        await self.store.close()
        logger.info("scheduler_stopped")

    def _signal_handler(self) -> None:
        logger.info("shutdown_signal_received")
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Job wrappers (catch exceptions so scheduler keeps running)
    # ------------------------------------------------------------------

    async def _job_tick(self) -> None:
        # Sequential: both take the shared lock, which is not re-entrant
        await self.engine.run_tick()
        try:
            await self.alerts.check()
        except Exception:
            logger.error("alert_check_error", exc_info=True)

    # ------------------------------------------------------------------
    # Control server
    # ------------------------------------------------------------------

    async def _start_control_server(self) -> None:
        self._control_app = web.Application()
        self._control_app.router.add_get("/health", self._health_handler)
        self._control_app.router.add_post("/command", self._command_handler)

        self._control_runner = web.AppRunner(self._control_app)
        await self._control_runner.setup()
        site = web.TCPSite(self._control_runner, CONTROL_HOST, CONTROL_PORT)
        await site.start()
        logger.info("control_server_started", extra={"host": CONTROL_HOST, "port": CONTROL_PORT})

    async def _health_handler(self, request: web.Request) -> web.Response:
        last_tick = self.engine.last_tick
        return web.json_response({
            "status": "ok",
            "scheduler_running": self._scheduler.running,
            "mode": "DRY_RUN" if EXECUTION_DRY_RUN else "LIVE",
            "session_active": self.sessions.current() is not None,
            "tick_in_flight": self.engine.in_flight,
            "last_tick": last_tick.to_dict() if last_tick else None,
        })

    async def _command_handler(self, request: web.Request) -> web.Response:
        try:
            message = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"success": False, "error": "Invalid JSON body"}, status=400)
        if not isinstance(message, dict):
            return web.json_response({"success": False, "error": "Expected a JSON object"}, status=400)

        result = await self.commands.dispatch(message)
        return web.json_response(result.model_dump(mode="json"))
