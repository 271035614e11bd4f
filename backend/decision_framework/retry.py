"""Retry with exponential backoff and jitter for external calls.

Only transient error classes (AI service, database, rate limit) are
retried.  Validation and parsing errors propagate on the first attempt.
After the final attempt the error is reported to the ``ErrorMonitor``
(when one is supplied) and re-raised.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

from decision_framework.errors import ErrorMonitor, is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 0.3  # seconds
DEFAULT_MAX_DELAY = 8.0  # seconds


def backoff_delay(attempt: int, base_delay: float, max_delay: float = DEFAULT_MAX_DELAY) -> float:
    """Exponential delay for *attempt* (0-based) with up to 20% jitter, capped."""
    exponential = base_delay * (2 ** attempt)
    jitter = random.random() * 0.2 * exponential
    return min(exponential + jitter, max_delay)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    should_retry: Callable[[BaseException], bool] = is_transient,
    source: str = "unknown",
    function_name: str = "unknown",
    monitor: ErrorMonitor | None = None,
    context: dict[str, Any] | None = None,
) -> T:
    """Await ``fn()`` up to *max_retries* times.

    ``max_retries`` is the total attempt count.  Non-retryable errors are
    logged and re-raised immediately.
    """
    attempts = max(1, max_retries)
    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as exc:
            last_attempt = attempt == attempts - 1
            if not should_retry(exc) or last_attempt:
                if monitor is not None:
                    await monitor.log_error(
                        exc,
                        source,
                        function_name,
                        {
                            **(context or {}),
                            "retry_attempt": attempt + 1,
                            "retry_exhausted": last_attempt and should_retry(exc),
                        },
                    )
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.info(
                "Retry attempt %d/%d for %s:%s after %.2fs (%s)",
                attempt + 1,
                attempts,
                source,
                function_name,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
