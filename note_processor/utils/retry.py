"""Retry utility with exponential backoff.

Provides the retry_with_backoff decorator for in-process retries and
backoff_delay(), the delay schedule shared with the work scheduler.
Supports transient vs permanent failure classification via retryable_exceptions.
"""

import asyncio
import logging
from collections.abc import Callable
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 5 * 60 * 60


def backoff_delay(
    base_delay: float, attempt: int, max_delay: float = MAX_BACKOFF_SECONDS
) -> float:
    """Return the exponential delay before the retry following ``attempt``.

    Delay follows the formula: base_delay * 2^(attempt - 1), capped at max_delay.

    Args:
        base_delay: Delay in seconds after the first failed attempt.
        attempt: 1-based number of the attempt that just failed.
        max_delay: Upper bound for the delay.

    Returns:
        Delay in seconds.
    """
    if attempt < 1:
        attempt = 1
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
) -> Callable:
    """Decorator for retrying async functions with exponential backoff.

    Delay follows the formula: base_delay * 2^attempt

    Args:
        max_retries: Maximum number of retry attempts (default 3).
        base_delay: Base delay in seconds before first retry (default 1.0).
        retryable_exceptions: Tuple of exception types eligible for retry.
            If None, all exceptions are retried.
            Non-retryable exceptions are re-raised immediately with
            _retry_count attached.

    Returns:
        Decorator that wraps an async function with retry logic.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_error: Exception | None = None
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    last_error = exc
                    # Permanent failure: re-raise immediately
                    if retryable_exceptions is not None and not isinstance(
                        exc, retryable_exceptions
                    ):
                        exc._retry_count = attempt  # type: ignore[attr-defined]
                        raise
                    if attempt < max_retries:
                        delay = backoff_delay(base_delay, attempt + 1)
                        logger.warning(
                            "Retry %d/%d for %s after %.1fs: %s",
                            attempt + 1,
                            max_retries,
                            func.__name__,
                            delay,
                            exc,
                        )
                        await asyncio.sleep(delay)
            last_error._retry_count = max_retries  # type: ignore[union-attr]
            raise last_error  # type: ignore[misc]

        return wrapper

    return decorator
