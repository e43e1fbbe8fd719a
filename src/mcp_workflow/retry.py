# retry.py
# Bounded retry with exponential backoff. Retry decisions are made on the
# exception type and its `retryable` flag, never on message substrings.

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff: float = 0.0,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """
    Await `operation()` up to `attempts` times.

    Sleeps backoff * 2**(n-1) between attempts. Non-retryable exceptions and
    the final failure propagate unchanged. Cancellation is never retried.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    attempt = 1
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt >= attempts or not should_retry(exc):
                raise
            if on_retry is not None:
                on_retry(attempt, exc)
            delay = backoff * (2 ** (attempt - 1))
            logger.debug("Attempt %d/%d failed (%s); retrying in %.2fs", attempt, attempts, exc, delay)
            if delay > 0:
                await asyncio.sleep(delay)
        attempt += 1
