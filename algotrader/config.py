"""Engine configuration loaded from environment variables."""

import logging
import os
import sys

from pythonjsonlogger import jsonlogger

# ---------------------------------------------------------------------------
# ClickHouse connection (key-value store backend)
# ---------------------------------------------------------------------------
CLICKHOUSE_HOST = os.environ.get("CLICKHOUSE_HOST", "localhost")
CLICKHOUSE_PORT = int(os.environ.get("CLICKHOUSE_PORT", "8443"))
CLICKHOUSE_USER = os.environ.get("CLICKHOUSE_USER", "default")
CLICKHOUSE_PASSWORD = os.environ.get("CLICKHOUSE_PASSWORD", "")
CLICKHOUSE_DATABASE = os.environ.get("CLICKHOUSE_DATABASE", "algotrader")
CLICKHOUSE_SECURE = os.environ.get("CLICKHOUSE_SECURE", "true").lower() == "true"

# "memory" keeps state in-process, "clickhouse" persists to kv_store
STORE_BACKEND = os.environ.get("STORE_BACKEND", "memory").lower()

# ---------------------------------------------------------------------------
# Polymarket API base URLs
# ---------------------------------------------------------------------------
CLOB_API_URL = "https://clob.polymarket.com"
DATA_API_URL = "https://data-api.polymarket.com"

# ---------------------------------------------------------------------------
# Tick / polling intervals (seconds)
# ---------------------------------------------------------------------------
TICK_INTERVAL = int(os.environ.get("TICK_INTERVAL", "10"))
POSITIONS_CACHE_TTL = 5.0        # Positions snapshot freshness window
SESSION_TIMEOUT = 60 * 60        # Trading session inactivity expiry

# ---------------------------------------------------------------------------
# Writer settings
# ---------------------------------------------------------------------------
WRITER_MAX_RETRIES = 3
WRITER_BASE_BACKOFF = 1.0        # Seconds, doubles per retry

# ---------------------------------------------------------------------------
# API client settings
# ---------------------------------------------------------------------------
HTTP_TIMEOUT = 30.0              # httpx timeout in seconds
POSITIONS_PAGE_LIMIT = 500
POSITIONS_DUST_THRESHOLD = 0.10  # Drop positions worth less than this (USD)

# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------
EXECUTION_DRY_RUN = os.environ.get("EXECUTION_DRY_RUN", "true").lower() == "true"
EXECUTION_CHAIN_ID = int(os.environ.get("EXECUTION_CHAIN_ID", "137"))
EXECUTION_SIGNATURE_TYPE = int(os.environ.get("EXECUTION_SIGNATURE_TYPE", "1"))
MARKET_ORDER_SLIPPAGE = 0.05     # Marketable limit price = mid +/- 5%
MARKET_PRICE_CEILING = 0.99
MARKET_PRICE_FLOOR = 0.01
USDC_DECIMALS = 6
DRY_RUN_BALANCE = float(os.environ.get("DRY_RUN_BALANCE", "10000"))  # Paper balance (USDC and shares)

# Opens a trading session at startup when set; otherwise wait for INITIALIZE_TRADING_SESSION
POLYMARKET_PRIVATE_KEY = os.environ.get("POLYMARKET_PRIVATE_KEY", "")
POLYMARKET_PROXY_ADDRESS = os.environ.get("POLYMARKET_PROXY_ADDRESS", "")

# Order parameter bounds enforced before submission
MIN_ORDER_SIZE = 0.01
MAX_ORDER_SIZE = 1_000_000
MIN_PRICE = 0.0001
MAX_PRICE = 0.9999
MIN_ORDER_VALUE = 1.0

# TWAP
TWAP_MIN_SLICE = 0.01

# ---------------------------------------------------------------------------
# Risk defaults (USD)
# ---------------------------------------------------------------------------
RISK_MAX_POSITION_PER_MARKET = 1000.0
RISK_MAX_DAILY_LOSS = 500.0
RISK_MAX_TOTAL_EXPOSURE = 5000.0
RISK_DAILY_LOSS_WARN_PCT = 0.8
RISK_EXPOSURE_WARN_PCT = 0.9

# ---------------------------------------------------------------------------
# Alerts / history
# ---------------------------------------------------------------------------
ALERT_HISTORY_MAX = 100
ORDER_HISTORY_MAX = 1000
DEFAULT_SNOOZE_MINUTES = 60
NOTIFY_WEBHOOK_URL = os.environ.get("NOTIFY_WEBHOOK_URL", "")

# ---------------------------------------------------------------------------
# Control / health server
# ---------------------------------------------------------------------------
CONTROL_HOST = os.environ.get("CONTROL_HOST", "127.0.0.1")
CONTROL_PORT = int(os.environ.get("CONTROL_PORT", "8080"))

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def setup_logging() -> None:
    """Configure structured JSON logging."""
    handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(LOG_LEVEL)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("clickhouse_connect").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
