"""
Conflict retry for container runtime calls.

The Docker API answers 409 while a container is still being removed or a name
is still reserved. Those calls are retried with exponential backoff; every
other failure is re-raised unchanged on the first attempt.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from genstack.utils.config import ConflictRetryConfig
from genstack.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

CONFLICT_STATUS = 409


def is_conflict_error(error: BaseException) -> bool:
    """True for 409 responses (docker.errors.APIError exposes ``status_code``)."""
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status == CONFLICT_STATUS


def conflict_delay(attempt: int, config: ConflictRetryConfig) -> float:
    """Backoff before retrying after failed ``attempt`` (1-indexed)."""
    return config.delay * (config.backoff_multiplier ** (attempt - 1))


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    config: Optional[ConflictRetryConfig] = None,
    description: str = "container operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation``, retrying only on 409 conflicts.

    Args:
        operation: Zero-argument coroutine factory, invoked once per attempt
        config: Attempts and backoff (delay, delay*m, delay*m^2, ...)
        description: Used in log messages
        sleep: Injected for tests

    Raises:
        The operation's own exception, unmodified, on a non-conflict failure
        or once attempts are exhausted
    """
    config = config or ConflictRetryConfig()

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await operation()
        except Exception as error:
            if not is_conflict_error(error) or attempt >= config.max_attempts:
                raise

            delay = conflict_delay(attempt, config)
            logger.warning(
                f"{description} hit a conflict (attempt {attempt}/{config.max_attempts}), "
                f"retrying in {delay:.2f}s",
                extra={"attempt": attempt, "delay": delay},
            )
            await sleep(delay)

    raise RuntimeError(f"Conflict retry for {description} made no attempts")
