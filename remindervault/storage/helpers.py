"""Async helpers for callers of the storage contract.

The contract itself never retries; callers wrap calls with these helpers
when they want bounded waits, retries or batching.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

from ..exceptions import StorageTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 15.0


async def with_timeout(
    awaitable: Awaitable[T], timeout: float = DEFAULT_TIMEOUT, operation: str = "storage"
) -> T:
    """Wait for ``awaitable`` at most ``timeout`` seconds.

    For tiers whose work is synchronous this bounds the caller's wait only;
    it cannot interrupt work already running.

    Raises:
        StorageTimeoutError: if the limit is exceeded.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise StorageTimeoutError(operation, timeout) from e


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    delay: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Call ``operation`` until it succeeds, backing off linearly.

    The wait before attempt ``n + 1`` is ``delay * n`` seconds. The last
    error is re-raised once attempts are exhausted.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt == max_attempts:
                raise
            logger.debug(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt,
                max_attempts,
                e,
                delay * attempt,
            )
            await asyncio.sleep(delay * attempt)

    raise AssertionError("unreachable")


async def run_batched(
    items: Iterable[Any],
    operation: Callable[[Any], Awaitable[T]],
    batch_size: int = 50,
) -> list[T | BaseException]:
    """Run ``operation`` over items, ``batch_size`` at a time.

    Results keep input order; failures are returned as exception objects
    instead of aborting the remaining batches.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    pending = list(items)
    results: list[T | BaseException] = []
    for start in range(0, len(pending), batch_size):
        batch = pending[start : start + batch_size]
        results.extend(
            await asyncio.gather(*(operation(item) for item in batch), return_exceptions=True)
        )
    return results
