"""
Circuit breaker for the container runtime.

After ``threshold`` consecutive failures the circuit opens and every call is
short-circuited with CircuitOpen. The circuit closes on the next recorded
success, or by itself once ``reset_seconds`` have passed.

All state transitions, including scheduling and cancelling the reset timer,
happen under one lock.
"""

import asyncio
import threading
import time
from typing import Optional

from genstack.utils.config import CircuitBreakerConfig
from genstack.utils.errors import CircuitOpen
from genstack.utils.logging import get_logger

logger = get_logger(__name__)


class CircuitBreaker:
    """Consecutive-failure gate shared by every session."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig()
        # Guards counter, flag and reset handle; usable from sync code
        self._lock = threading.Lock()
        self._failures = 0
        self._open = False
        self._opened_at: Optional[float] = None
        self._reset_handle: Optional[asyncio.TimerHandle] = None

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failures

    @property
    def is_open(self) -> bool:
        with self._lock:
            self._expire_locked()
            return self._open

    @property
    def has_pending_reset(self) -> bool:
        with self._lock:
            return self._reset_handle is not None

    def check(self) -> None:
        """Raise CircuitOpen while the circuit is open."""
        with self._lock:
            self._expire_locked()
            if self._open:
                raise CircuitOpen()

    def record_success(self) -> None:
        with self._lock:
            if self._open:
                logger.info("Circuit breaker closed after successful operation")
            self._failures = 0
            self._close_locked()

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._failures < self.config.threshold or self._open:
                return

            self._open = True
            self._opened_at = time.monotonic()
            self._schedule_reset_locked()
            logger.error(
                "Circuit breaker opened after repeated container runtime failures",
                extra={
                    "failure_count": self._failures,
                    "reset_seconds": self.config.reset_seconds,
                },
            )

    def cleanup(self) -> None:
        """Cancel any pending auto-reset. Safe to call at any time, repeatedly."""
        with self._lock:
            self._cancel_reset_locked()

    # =========================================================================
    # Internal helpers (caller holds self._lock)
    # =========================================================================

    def _schedule_reset_locked(self) -> None:
        self._cancel_reset_locked()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop in this thread; the lazy expiry in check() still closes it
            return
        self._reset_handle = loop.call_later(self.config.reset_seconds, self._auto_reset)

    def _cancel_reset_locked(self) -> None:
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

    def _close_locked(self) -> None:
        self._open = False
        self._opened_at = None
        self._cancel_reset_locked()

    def _expire_locked(self) -> None:
        if (
            self._open
            and self._opened_at is not None
            and time.monotonic() - self._opened_at >= self.config.reset_seconds
        ):
            self._failures = 0
            self._close_locked()
            logger.info("Circuit breaker reset after cooldown")

    def _auto_reset(self) -> None:
        with self._lock:
            self._reset_handle = None
            if not self._open:
                return
            self._failures = 0
            self._open = False
            self._opened_at = None
        logger.info("Circuit breaker reset after cooldown")
