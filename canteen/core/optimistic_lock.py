"""
Canteen Core — Conditional-update retry decorator

Inventory and balance rows are only ever changed through conditional
updates ("decrement only if quantity >= n"). When such an update matches no
row, a concurrent writer moved the record between our read and our write;
the caller raises StaleDataError and this decorator re-runs the read/write
with exponential backoff + jitter.
"""
import asyncio
import functools
import logging
import random

from canteen.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class StaleDataError(Exception):
    """A conditional update lost the race against a concurrent writer."""


def with_optimistic_retry(max_retries: int | None = None):
    """
    Decorator for async functions that perform one read + conditional write.
    On StaleDataError, retries with exponential backoff + jitter; the last
    StaleDataError propagates once the retries run out.

    Usage:
        @with_optimistic_retry()
        async def take_from_record(uow, ...):
            ...
    """
    _max = max_retries or settings.OPT_LOCK_MAX_RETRIES

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, _max + 1):
                try:
                    return await func(*args, **kwargs)
                except StaleDataError:
                    if attempt == _max:
                        logger.error(
                            "Conditional update still contended after %d attempts in %s",
                            _max, func.__name__,
                        )
                        raise
                    base_delay = settings.OPT_LOCK_BASE_DELAY_MS / 1000.0
                    max_delay = settings.OPT_LOCK_MAX_DELAY_MS / 1000.0
                    jitter = random.uniform(0, settings.OPT_LOCK_JITTER_MS / 1000.0)
                    delay = min(base_delay * (2 ** attempt), max_delay) + jitter
                    logger.warning(
                        "Stale read in %s on attempt %d/%d, retrying in %.3fs",
                        func.__name__, attempt, _max, delay,
                    )
                    await asyncio.sleep(delay)
        return wrapper
    return decorator
