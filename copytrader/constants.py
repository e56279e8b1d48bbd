"""
System-wide constants for the copy trading system.

Defaults for execution pacing and retry, venue endpoints, and the
fallback-metadata fingerprint. Runtime values come from config; these are
the values config falls back to.
"""
from decimal import Decimal

# ============ EXECUTION PACING ============

# Minimum spacing between two outbound calls for the same follower
MIN_API_INTERVAL_MS = 2000

# Total attempts (not re-tries) per order
MAX_RETRIES = 3

# Backoff before attempt n+1 is RETRY_BASE_DELAY_MS * 2**(n-1)
RETRY_BASE_DELAY_MS = 1000

# Required balance is margin * MARGIN_BUFFER (10% headroom for fees)
MARGIN_BUFFER = Decimal("1.10")

# Dry-run outcome weighting
DRY_RUN_SUCCESS_RATE = 0.9
DRY_RUN_MIN_DELAY_SECONDS = 1.0
DRY_RUN_MAX_DELAY_SECONDS = 3.0
DRY_RUN_PRICE_JITTER = Decimal("0.001")
DRY_RUN_FAILURE_REASONS = (
    "Insufficient balance",
    "Market volatility too high",
    "Order rejected by exchange",
    "API rate limit exceeded",
    "Network timeout",
)

# ============ VENUE ============

VENUE_BASE_URL = "https://api.coindcx.com"
ORDER_CREATE_PATH = "/exchange/v1/derivatives/futures/orders/create"
TRANSACTIONS_PATH = "/exchange/v1/derivatives/futures/positions/transactions"
WALLETS_PATH = "/exchange/v1/derivatives/futures/wallets"
INSTRUMENT_PATH = "/exchange/v1/derivatives/futures/data/instrument"

ORDER_TIMEOUT_SECONDS = 15.0
REQUEST_TIMEOUT_SECONDS = 10.0

# Venue pair prefix for futures instruments
FUTURES_PAIR_PREFIX = "B-"

# Order ids the venue hands back when it did not actually assign one
PLACEHOLDER_ORDER_IDS = frozenset({"", "unknown", "none", "null"})

# ============ INSTRUMENT METADATA ============

INSTRUMENT_CACHE_TTL_SECONDS = 12 * 3600

# Fallback-default fingerprint: USDT quote, step >= 1, min qty == 1, max leverage == 1
FALLBACK_QUOTE = "USDT"
FALLBACK_MIN_QTY = Decimal("1")
FALLBACK_MAX_LEVERAGE = Decimal("1")

# ============ RECONCILIATION ============

RECONCILE_BATCH_LIMIT = 100
RECONCILE_INTERVAL_SECONDS = 300
