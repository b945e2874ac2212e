"""Short in-call retries with exponential backoff.

Wraps individual object store calls made by a stage handler so a single
dropped connection does not burn a whole stage attempt. Stage-level
retries are owned by the job store and are unaffected by this module.
"""

import asyncio
import logging
from collections.abc import Callable
from functools import wraps
from typing import Any

from media_pipeline.utils.errors import ObjectNotFoundError, StorageError

logger = logging.getLogger(__name__)

# Backend statuses that will not change on a second attempt
PERMANENT_STORAGE_STATUSES = frozenset({400, 401, 403, 404, 405, 409, 411, 412})


def is_transient_storage_error(exc: Exception) -> bool:
    """Return True when a storage failure is worth retrying in-call."""
    if not isinstance(exc, StorageError) or isinstance(exc, ObjectNotFoundError):
        return False
    return exc.status not in PERMANENT_STORAGE_STATUSES


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    should_retry: Callable[[Exception], bool] = is_transient_storage_error,
) -> Callable:
    """Decorator for retrying async functions with exponential backoff.

    Delay follows ``min(base_delay * 2^attempt, max_delay)``.

    Args:
        max_retries: Retry attempts after the first call (default 3).
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound on a single delay.
        should_retry: Predicate deciding whether an exception is transient.
            Anything it rejects is re-raised immediately.

    Returns:
        Decorator that wraps an async function with retry logic.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if attempt >= max_retries or not should_retry(exc):
                        raise
                    delay = min(base_delay * (2**attempt), max_delay)
                    attempt += 1
                    logger.warning(
                        "Retry %d/%d for %s after %.1fs: %s",
                        attempt,
                        max_retries,
                        func.__name__,
                        delay,
                        exc,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
