"""Entry point for the algo order engine."""

from __future__ import annotations

import asyncio
import logging

from algotrader.config import STORE_BACKEND, setup_logging
from algotrader.migrate import run_migration
from algotrader.scheduler import EngineScheduler

logger = logging.getLogger(__name__)


async def _main() -> None:
    setup_logging()
    logger.info("algotrader_starting", extra={"store": STORE_BACKEND})

    scheduler = EngineScheduler()

    # Create kv_store before the first tick reads from it
    if STORE_BACKEND == "clickhouse":
        try:
            run_migration(scheduler.store)
        except Exception:
            logger.error("migration_failed", exc_info=True)
            raise

    await scheduler.start()


def main() -> None:
    asyncio.run(_main())


if __name__ == "__main__":
    main()
