"""Common constants shared across the execution core."""

from __future__ import annotations

from decimal import Decimal

# Quantities at or below this are treated as flat / dust.
EPS = Decimal("1e-5")
# Entry prices smaller than this in magnitude are treated as unknown.
ENTRY_PRICE_EPS = Decimal("1e-8")

DEFAULT_LOCK_TIMEOUT_MS = 3000
DEFAULT_REFRESH_INTERVAL_MS = 500
DEFAULT_INSUFFICIENT_BALANCE_COOLDOWN_MS = 15_000
DEFAULT_RATE_LIMIT_BACKOFF_MS = 2_000
DEFAULT_RATE_LIMIT_MAX_BACKOFF_MS = 60_000
DEFAULT_MAX_LOG_ENTRIES = 200

# Fee rebate rate used to estimate maker rebates on traded notional.
SESSION_REBATE_RATE = Decimal("0.00005")
