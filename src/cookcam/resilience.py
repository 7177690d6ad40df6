"""Retry logic with exponential backoff and jitter for persistence calls.

Only transient storage failures (timeouts, dropped connections, pool
exhaustion) are retried. Everything else propagates on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 3
BASE_DELAY = 0.1  # seconds
MAX_DELAY = 2.0  # seconds
JITTER = 0.1  # 10% random jitter


def is_transient_db_error(exc: BaseException) -> bool:
    """Return True for storage errors worth retrying."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, PoolTimeoutError, ConnectionError)):
        return True
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError):
        return bool(exc.connection_invalidated)
    return False


def calculate_backoff(attempt: int, base_delay: float = BASE_DELAY, max_delay: float = MAX_DELAY) -> float:
    """Exponential backoff with +/-10% jitter.

    Attempt 0 -> ~base, attempt 1 -> ~2x base, capped at max_delay.
    """
    delay = min(base_delay * (2**attempt), max_delay)
    jitter_amount = random.uniform(-JITTER * delay, JITTER * delay)  # noqa: S311
    return max(delay + jitter_amount, 0.0)


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    max_delay: float = MAX_DELAY,
    is_retryable: Callable[[BaseException], bool] = is_transient_db_error,
    **kwargs: Any,
) -> T:
    """Call ``func`` and retry transient failures with exponential backoff.

    Raises the last exception once retries are exhausted or on the first
    non-retryable error.
    """
    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            if attempt == max_retries or not is_retryable(exc):
                if attempt == max_retries and max_retries > 0:
                    logger.error("All %d retries exhausted for %s", max_retries, func.__name__)
                raise

            backoff = calculate_backoff(attempt, base_delay, max_delay)
            logger.info(
                "Retry %d/%d for %s after %.2fs (error: %s)",
                attempt + 1, max_retries, func.__name__, backoff, type(exc).__name__,
            )
            await asyncio.sleep(backoff)

    msg = "retry loop exited without a result"
    raise RuntimeError(msg)
