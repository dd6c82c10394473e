"""
Retry Handler - retry and timeout helpers for provider calls.

Provider calls are the only suspension points in the engine. Each one runs
under with_timeout(); the remote vision client additionally wraps its HTTP
request in retry_async() with a small, bounded retry budget.
"""

import asyncio
from typing import Callable, TypeVar, Optional, Type, Tuple, Awaitable

from stepheal.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryError(Exception):
    """Raised when all retry attempts have failed."""

    def __init__(self, message: str, last_exception: Optional[Exception] = None):
        super().__init__(message)
        self.last_exception = last_exception


async def retry_async(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 2,
    delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 30.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> T:
    """
    Retry an async function with exponential backoff.

    Args:
        func: Zero-argument coroutine function to call
        max_attempts: Maximum number of attempts (first call included)
        delay: Initial delay between attempts in seconds
        backoff: Multiplier for delay after each attempt
        max_delay: Maximum delay between attempts
        exceptions: Tuple of exceptions to catch and retry
        should_retry: Predicate deciding whether a caught exception is transient
        on_retry: Optional callback when a retry occurs

    Returns:
        Result of the function

    Raises:
        RetryError: If all attempts fail or a non-transient error occurs
    """
    last_exception = None
    current_delay = delay

    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except exceptions as e:
            last_exception = e

            if should_retry is not None and not should_retry(e):
                raise RetryError(f"Non-retryable failure: {e}", e)

            if attempt == max_attempts:
                logger.error(f"All {max_attempts} attempts failed")
                raise RetryError(
                    f"Failed after {max_attempts} attempts: {str(e)}",
                    last_exception
                )

            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {str(e)}. "
                f"Retrying in {current_delay:.1f}s..."
            )

            if on_retry:
                on_retry(attempt, e)

            await asyncio.sleep(current_delay)
            current_delay = min(current_delay * backoff, max_delay)

    raise RetryError("Unexpected error in retry logic", last_exception)


async def with_timeout(
    func: Callable[..., Awaitable[T]],
    timeout: float,
    *args,
    label: Optional[str] = None,
    **kwargs
) -> T:
    """
    Await ``func(*args, **kwargs)`` for at most ``timeout`` seconds.

    Provider calls are the engine's only suspension points, so this is where
    a tier attempt or a healing provider gets cut off.

    Args:
        func: Coroutine function to call
        timeout: Seconds allowed
        *args: Positional arguments for func
        label: What is being waited on, for the timeout log line
            (e.g. ``"native_query"``); defaults to the function name
        **kwargs: Keyword arguments for func

    Returns:
        Result of the function

    Raises:
        asyncio.TimeoutError: the call did not finish in time; it has been
            cancelled
    """
    try:
        return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug(f"{label or getattr(func, '__name__', 'call')} cut off after {timeout:.2f}s")
        raise
