"""Exponential backoff helper for transient store and stream failures."""

import asyncio
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from common.exceptions import StoreUnavailableError, StreamUnavailableError
from common.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (StoreUnavailableError, StreamUnavailableError)


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """
    Delay before retry number `attempt` (0-based).

    Args:
        attempt: Attempt that just failed
        base: Delay of the first retry
        maximum: Upper bound for any delay

    Returns:
        min(base * 2 ** attempt, maximum)
    """
    return min(base * (2 ** attempt), maximum)


async def retry_with_backoff(
    operation: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = 3,
    base_delay: float = 0.2,
    max_delay: float = 5.0,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
    description: str = "operation",
    **kwargs
) -> T:
    """
    Retry operation with exponential backoff for transient failures.

    Args:
        operation: Async function to retry
        max_retries: Maximum number of attempts
        retry_on: Exception types considered transient
        description: Label used in log lines
        *args, **kwargs: Arguments to pass to operation

    Returns:
        Result from successful operation

    Raises:
        Last exception if all retries exhausted, or any non-transient exception
    """
    last_exception = None
    max_retries = max(1, max_retries)

    for attempt in range(max_retries):
        try:
            return await operation(*args, **kwargs)
        except retry_on as e:
            last_exception = e
            if attempt < max_retries - 1:
                delay = backoff_delay(attempt, base_delay, max_delay)
                logger.warning(
                    f"Transient failure in {description}, retrying in {delay:.2f}s "
                    f"(attempt {attempt + 1}/{max_retries}): {e}"
                )
                await asyncio.sleep(delay)

    raise last_exception
