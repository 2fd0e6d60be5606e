"""
System-wide constants for the escrow ledger and the relayer.

Centralizes magic numbers shared between the ledger model and the executor.
"""

# Task status codes (as stored on the ledger object)
STATUS_PENDING = 0
STATUS_EXECUTED = 1
STATUS_CANCELLED = 2
STATUS_FAILED = 3

# Ledger
NATIVE_ASSET = "0x2::sui::SUI"
CLOCK_OBJECT_ID = "0x6"
ESCROW_MODULE = "autopay"
CLOCK_DRIFT_THRESHOLD_MS = 5000

# Gas budget safety window (anti-drain). Configured values are clamped into it.
MIN_GAS_BUDGET = 5_000_000
MAX_ALLOWED_GAS_BUDGET = 50_000_000
DEFAULT_GAS_BUDGET = 20_000_000

# Local ledger gas schedule
GAS_BASE_COST = 1_000_000
GAS_PER_COMMAND = 250_000

# Swaps
BPS_DENOMINATOR = 10_000
DEFAULT_SLIPPAGE_BPS = 100

# Discovery
DEFAULT_EVENT_PAGE_LIMIT = 50
DEFAULT_SCAN_INTERVAL_SECONDS = 15

# Retry backoff (milliseconds)
RETRY_BASE_DELAY_MS = 1000
RETRY_MAX_DELAY_MS = 30_000
RETRY_PAUSED_BACKOFF_MS = 300_000
