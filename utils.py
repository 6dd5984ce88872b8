"""
Shared helpers: transient-error detection, async retry, and text cleanup
for values headed into the database.
"""
import asyncio
import functools
import logging
import random
from typing import Any, Callable, Optional, Tuple, Type

from sqlalchemy.exc import (
    DisconnectionError,
    InterfaceError,
    OperationalError,
    TimeoutError as SQLAlchemyTimeoutError,
)

logger = logging.getLogger(__name__)

TRANSIENT_DB_ERRORS: Tuple[Type[Exception], ...] = (
    OperationalError,
    InterfaceError,
    SQLAlchemyTimeoutError,
    DisconnectionError,
    ConnectionError,
    TimeoutError,
)

TRANSIENT_MESSAGES = (
    "connection refused",
    "connection reset",
    "connection timed out",
    "timeout",
    "too many connections",
    "server closed the connection",
    "could not connect",
    "temporarily unavailable",
    "deadlock detected",
    "40001",  # serialization failure
    "40p01",  # deadlock
)


def is_transient_error(exc: BaseException) -> bool:
    """True for connection drops, pool timeouts, deadlocks and serialization failures."""
    if isinstance(exc, TRANSIENT_DB_ERRORS):
        return True
    message = str(exc).lower()
    return any(pattern in message for pattern in TRANSIENT_MESSAGES)


def retry_async(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Retry an async callable on transient failures with jittered exponential backoff.

    Only wrap operations that are safe to repeat as a whole (a read, or a
    self-contained transaction); anything else is raised on first failure.
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    retryable = isinstance(e, retry_on) if retry_on else is_transient_error(e)
                    if not retryable or attempt >= max_retries:
                        raise
                    delay = min(base_delay * (2 ** attempt), max_delay) * (0.5 + random.random())
                    logger.warning(
                        f"Retry {attempt + 1}/{max_retries} for {func.__name__} "
                        f"in {delay:.2f}s after {type(e).__name__}: {str(e)[:100]}"
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator


def sanitize_string(value: Any, max_length: int = 1000, default: str = "") -> str:
    """Drop NUL bytes (Postgres rejects them in text columns), strip and truncate."""
    if value is None:
        return default
    cleaned = str(value).replace("\x00", "").strip()
    return cleaned[:max_length]
