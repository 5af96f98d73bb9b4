"""
Database Retry Logic with Exponential Backoff
==============================================

Retry decorator for persistence operations with:
- Exponential backoff with jitter
- Transient error detection (connection loss, deadlocks, busy/locked stores)
- Logging of every retry and of the final failure

Usage:
    from genstack.database.retry import with_retry, RetryConfig

    @with_retry()
    async def save():
        async with store.acquire() as conn:
            await conn.execute(...)

    # Short, tight retries for live message persistence
    @with_retry(RetryConfig(max_retries=3, base_delay=0.05, jitter=False))
    async def persist_message():
        ...
"""

import asyncio
import random
from dataclasses import dataclass
from functools import wraps
from typing import Optional, Callable, Any, TypeVar, cast

import asyncpg

from genstack.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar('F', bound=Callable[..., Any])


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    """Maximum number of retry attempts (default: 3)"""

    base_delay: float = 1.0
    """Base delay in seconds between retries (default: 1.0)"""

    max_delay: float = 30.0
    """Maximum delay in seconds (caps exponential backoff, default: 30.0)"""

    exponential_base: float = 2.0
    """Exponential backoff multiplier (default: 2.0)"""

    jitter: bool = True
    """Add random jitter to delays to prevent thundering herd (default: True)"""

    jitter_range: float = 0.1
    """Jitter range as fraction of delay (default: 0.1 = ±10%)"""


# PostgreSQL SQLSTATE codes worth retrying
# See: https://www.postgresql.org/docs/current/errcodes-appendix.html
TRANSIENT_ERROR_CODES = {
    '08000',  # connection_exception
    '08003',  # connection_does_not_exist
    '08006',  # connection_failure
    '08001',  # sqlclient_unable_to_establish_sqlconnection
    '08004',  # sqlserver_rejected_establishment_of_sqlconnection
    '53300',  # too_many_connections
    '40001',  # serialization_failure
    '40P01',  # deadlock_detected
    '55P03',  # lock_not_available
    '57P03',  # cannot_connect_now
}

TRANSIENT_PATTERNS = (
    'database is locked',
    'sqlite_busy',
    'busy',
    'connection refused',
    'connection reset',
    'connection closed',
    'too many connections',
    'deadlock',
    'serialization failure',
    'could not obtain lock',
)


def is_transient_error(error: BaseException) -> bool:
    """
    Determine if an error is transient and worth retrying.

    Args:
        error: Exception to check

    Returns:
        True if error is transient and should be retried
    """
    if isinstance(error, asyncpg.PostgresError):
        if getattr(error, 'sqlstate', None) in TRANSIENT_ERROR_CODES:
            return True

    if isinstance(error, (
        asyncpg.ConnectionDoesNotExistError,
        asyncpg.InterfaceError,
        asyncpg.CannotConnectNowError,
        asyncpg.TooManyConnectionsError,
        ConnectionError,
    )):
        return True

    error_msg = _error_message(error).lower()
    return any(pattern in error_msg for pattern in TRANSIENT_PATTERNS)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate retry delay with exponential backoff and optional jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds before next retry
    """
    delay = min(config.base_delay * (config.exponential_base ** attempt), config.max_delay)

    if config.jitter:
        jitter_amount = delay * config.jitter_range
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


def _error_message(error: BaseException) -> str:
    try:
        return str(error) or type(error).__name__
    except Exception:
        return type(error).__name__


def with_retry(config: Optional[RetryConfig] = None) -> Callable[[F], F]:
    """
    Decorator to add retry logic with exponential backoff to async functions.

    Only transient errors are retried; anything else is re-raised at once.

    Args:
        config: Optional retry configuration (uses defaults if None)
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(config.max_retries + 1):
                try:
                    result = await func(*args, **kwargs)
                    if attempt > 0:
                        logger.info(
                            f"Database operation '{func.__name__}' succeeded after {attempt} retries"
                        )
                    return result

                except Exception as error:
                    if attempt >= config.max_retries:
                        logger.error(
                            f"Database operation '{func.__name__}' failed after "
                            f"{config.max_retries} retries: {_error_message(error)}"
                        )
                        raise

                    if not is_transient_error(error):
                        logger.error(
                            f"Database operation '{func.__name__}' failed with "
                            f"non-transient error: {_error_message(error)}"
                        )
                        raise

                    delay = calculate_delay(attempt, config)
                    logger.warning(
                        f"Database operation '{func.__name__}' failed "
                        f"(attempt {attempt + 1}/{config.max_retries + 1}), "
                        f"retrying in {delay:.2f}s: {_error_message(error)}"
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError(f"Retry logic failed for {func.__name__}")

        return cast(F, wrapper)

    return decorator
