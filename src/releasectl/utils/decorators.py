"""Decorators for timing and retrying release operations."""
import asyncio
import functools
import logging
import time
from typing import Any, Callable, Iterator, Optional, Type, TypeVar, cast

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])


def log_execution_time(func: F) -> F:
    """Log how long a blocking call (docker build, registry push) took."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        started = time.monotonic()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.error(f"{func.__qualname__} failed after {time.monotonic() - started:.2f}s: {e}")
            raise
        logger.info(f"{func.__qualname__} completed in {time.monotonic() - started:.2f}s")
        return result
    return cast(F, wrapper)


def backoff_delays(max_attempts: int, delay: float, backoff: float,
                   max_delay: Optional[float] = None) -> Iterator[float]:
    """Yield the sleep before each retry (max_attempts - 1 values)."""
    current = delay
    for _ in range(max_attempts - 1):
        yield min(current, max_delay) if max_delay else current
        current *= backoff


def async_retry(max_attempts: int = 3, delay: float = 1.0, backoff: float = 2.0,
                exceptions: tuple = (Exception,), max_delay: Optional[float] = None,
                escalate_to: Optional[Type[Exception]] = None,
                logger_name: Optional[str] = None, deadline: Optional[float] = None):
    """Retry a coroutine function with bounded exponential backoff.

    Args:
        max_attempts: Total attempts, including the first call
        delay: Sleep before the first retry, in seconds
        backoff: Multiplier applied to the delay after every retry
        exceptions: Exception types worth retrying; anything else propagates at once
        max_delay: Optional cap on a single sleep
        escalate_to: Exception type raised (chained) once attempts run out;
            the last error is re-raised when unset
        logger_name: Logger for retry messages (defaults to this module's)
        deadline: Optional time.monotonic() value; sleeps are cut to end by it
            and no retry starts after it
    """
    retry_logger = logging.getLogger(logger_name) if logger_name else logger

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            delays = backoff_delays(max_attempts, delay, backoff, max_delay)
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    pause = next(delays, None)
                    if pause is not None and deadline is not None:
                        left = deadline - time.monotonic()
                        pause = min(pause, left) if left > 0 else None
                    if pause is None:
                        retry_logger.error(f"Giving up on {func.__name__} after {attempt} attempts: {e}")
                        if escalate_to is None:
                            raise
                        raise escalate_to(f"{func.__name__} failed after {attempt} attempts: {e}") from e
                    retry_logger.warning(f"⚠️ {func.__name__} attempt {attempt}/{max_attempts} failed: {e}; "
                                         f"retrying in {pause:.2f}s")
                    await asyncio.sleep(pause)

        return cast(F, wrapper)

    return decorator
