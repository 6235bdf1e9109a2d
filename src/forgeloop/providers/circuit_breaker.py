"""Per-adapter circuit breaker.

States: CLOSED -> OPEN -> HALF_OPEN -> CLOSED

A breaker opens after ``failure_threshold`` consecutive failures, or at
once when tripped (expired credentials, exhausted quota). After
``reset_timeout`` seconds it lets trial requests through in HALF_OPEN;
``success_threshold`` successes close it again and any failure reopens it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Configuration for a circuit breaker."""

    failure_threshold: int = 5  # Failures before opening
    reset_timeout: float = 60.0  # Seconds before trying half-open
    success_threshold: int = 2  # Successes to close from half-open


class CircuitBreaker:
    """Thread-safe breaker for one backend."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = 0.0
        self._reason: str | None = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def reason(self) -> str | None:
        with self._lock:
            return self._reason

    def can_execute(self) -> bool:
        """Check if a call is allowed."""
        return self.state is not CircuitState.OPEN

    def seconds_until_retry(self) -> float:
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return 0.0
            return max(self._opened_at + self.config.reset_timeout - self._clock(), 0.0)

    def record_success(self) -> None:
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._close("recovered")
            elif self._state is CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, reason: str = "failure") -> None:
        with self._lock:
            self._maybe_half_open()
            self._failure_count += 1
            if self._state is CircuitState.HALF_OPEN:
                self._open(f"{reason} during recovery")
            elif (
                self._state is CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                self._open(f"{self._failure_count} consecutive failures ({reason})")

    def trip(self, reason: str) -> None:
        """Open immediately, regardless of the failure count."""
        with self._lock:
            self._open(reason)

    def reset(self) -> None:
        """Reset the circuit breaker to closed state."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._reason = None

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            return {
                "state": str(self._state),
                "failures": self._failure_count,
                "reason": self._reason,
            }

    # Caller holds _lock.

    def _maybe_half_open(self) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self.config.reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._success_count = 0
            logger.info("Circuit for %s half-open after %.0fs", self.name, self.config.reset_timeout)

    def _open(self, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._success_count = 0
        self._reason = reason
        logger.warning("Circuit for %s opened: %s", self.name, reason)

    def _close(self, reason: str) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._reason = None
        logger.info("Circuit for %s closed: %s", self.name, reason)
