"""
Centralized constants for the Valora enrichment runtime.

Usage:
    from valora_enrichment.constants import SettingKeys, RetryDefaults

Values are grouped into namespaces using classes.
"""
from __future__ import annotations

import re
from typing import Final

# =============================================================================
# Currencies
# =============================================================================

CURRENCY_CODE_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Z]{3}$")

# Base currencies the valuation views can be expressed in.
ALLOWED_BASE_CURRENCIES: Final[tuple[str, ...]] = (
    "USD",
    "CAD",
    "EUR",
    "GBP",
    "JPY",
    "CNY",
    "HKD",
    "AUD",
)


# =============================================================================
# Settings keys
# =============================================================================

class SettingKeys:
    """Fixed keys in the generic settings store."""

    BASE_CURRENCY: Final[str] = "baseCurrency"
    RECONCILIATION_STATE: Final[str] = "baseCurrencyReconciliationState"
    CATEGORY_FRESHNESS: Final[str] = "enrichmentCategoryFreshness"


# =============================================================================
# Retry defaults for provider calls
# =============================================================================

class RetryDefaults:
    """Transient-failure retry policy for provider fetches."""

    MAX_RETRIES: Final[int] = 2
    BASE_DELAY: Final[float] = 0.2
    MAX_DELAY: Final[float] = 5.0
    EXPONENTIAL_BASE: Final[float] = 2.0

    TRANSIENT_HTTP_STATUSES: Final[frozenset[int]] = frozenset({429, 500, 502, 503, 504})
    TRANSIENT_MESSAGE_MARKERS: Final[tuple[str, ...]] = (
        "timeout",
        "timed out",
        "rate limit",
        "too many requests",
        "network",
    )


# =============================================================================
# Scheduling
# =============================================================================

class Schedules:
    """Background freshness check defaults."""

    FRESHNESS_CHECK_INTERVAL_SECONDS: Final[int] = 15 * 60
    FRESHNESS_MAX_AGE_HOURS: Final[int] = 24
    FRESHNESS_JOB_ID: Final[str] = "enrichment_freshness_refresh"


# =============================================================================
# Messages
# =============================================================================

DEFAULT_FAILURE_REASON: Final[str] = "Unable to fetch data from provider"
ENUMERATION_FAILURE_IDENTIFIER: Final[str] = "*"
MEMORY_DSN: Final[str] = "memory://"
SQLITE_DSN_PREFIX: Final[str] = "sqlite:///"
