"""
Transient-failure retry with exponential backoff for provider calls.

Usage:
    from valora_enrichment.retry import RetryConfig, retry_async

    points = await retry_async(
        provider.fetch_fx_daily_rates,
        "CAD", "USD", start, end,
        config=RetryConfig(max_retries=2, base_delay=0.2),
    )

Only transient failures are retried: HTTP 429/5xx, httpx timeouts and
transport errors, or errors whose message mentions a timeout, rate limit or
network problem. Everything else is raised on the first attempt.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, ParamSpec, TypeVar

import httpx

from .constants import RetryDefaults

logger = logging.getLogger("valora.retry")

P = ParamSpec("P")
T = TypeVar("T")


def _status_of(error: BaseException) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status", None)
    if status is None:
        status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def is_transient_error(error: BaseException) -> bool:
    """Whether a provider failure is worth another attempt."""
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True

    if _status_of(error) in RetryDefaults.TRANSIENT_HTTP_STATUSES:
        return True

    message = str(error).lower()
    return any(marker in message for marker in RetryDefaults.TRANSIENT_MESSAGE_MARKERS)


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        retry_condition: Decides whether an exception should be retried
    """

    max_retries: int = RetryDefaults.MAX_RETRIES
    base_delay: float = RetryDefaults.BASE_DELAY
    max_delay: float = RetryDefaults.MAX_DELAY
    exponential_base: float = RetryDefaults.EXPONENTIAL_BASE
    retry_condition: Callable[[BaseException], bool] = is_transient_error

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is 0-based)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return max(0.0, min(delay, self.max_delay))


@dataclass
class RetryStats:
    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    last_exception: Optional[BaseException] = None


class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        stats: Statistics about the retry attempts
        original_exception: The last exception that was raised
    """

    def __init__(
        self,
        message: str,
        stats: RetryStats,
        original_exception: BaseException,
    ) -> None:
        super().__init__(message)
        self.stats = stats
        self.original_exception = original_exception


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with the transient retry policy.

    Raises:
        RetryExhausted: If every attempt failed with a transient error
        Exception: The first non-transient error, unchanged
    """
    if config is None:
        config = RetryConfig()

    stats = RetryStats()
    last_exception: Optional[Exception] = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        stats.attempts = attempt + 1
        try:
            result = await func(*args, **kwargs)
            stats.success = True
            return result
        except Exception as e:
            last_exception = e
            stats.last_exception = e

            if not config.retry_condition(e):
                raise

            if attempt >= config.max_retries:
                break

            delay = config.calculate_delay(attempt)
            stats.total_delay += delay
            logger.warning(
                "Retry %d/%d for %s after %s: %s. Waiting %.2fs",
                attempt + 1,
                config.max_retries,
                name,
                type(e).__name__,
                e,
                delay,
            )
            await asyncio.sleep(delay)

    raise RetryExhausted(
        f"All {config.max_retries + 1} attempts failed for {name}",
        stats=stats,
        original_exception=last_exception,
    ) from last_exception
