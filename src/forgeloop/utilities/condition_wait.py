"""Monotonic-clock condition polling and stuck detection.

These helpers never spin: they sleep ``poll_interval`` between checks and
measure elapsed time with :func:`time.monotonic`, so wall-clock jumps do
not shorten or stretch a wait.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_STUCK_TIMEOUT = 120.0

Predicate = Callable[[], bool | Awaitable[bool]]


async def wait_for(
    predicate: Predicate,
    timeout: float,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    *,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` seconds elapse.

    The predicate may be sync or async. It is always evaluated at least
    once, and once more right at the deadline.
    """
    deadline = clock() + max(timeout, 0.0)
    while True:
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        await sleep(min(poll_interval, remaining))


def wait_for_sync(
    predicate: Callable[[], bool],
    timeout: float,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    *,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Blocking counterpart of :func:`wait_for`."""
    deadline = clock() + max(timeout, 0.0)
    while True:
        if predicate():
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(poll_interval, remaining))


async def wait_for_file(
    path: Path,
    timeout: float,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    *,
    non_empty: bool = True,
) -> bool:
    """Wait until ``path`` exists (and, by default, has content)."""

    def _ready() -> bool:
        try:
            return path.exists() and (not non_empty or path.stat().st_size > 0)
        except OSError:
            return False

    return await wait_for(_ready, timeout, poll_interval)


class ActivityState(StrEnum):
    """Liveness of a backend as seen from its output."""

    IDLE = "idle"
    WORKING = "working"
    STUCK = "stuck"
    COMPLETED = "completed"
    FAILED = "failed"


class StuckDetector:
    """Tracks the last observed activity of a running backend.

    A detector in ``WORKING`` state that has seen no activity for
    ``stuck_timeout`` seconds reports ``STUCK``. Being stuck is advisory;
    callers decide whether to cancel.
    """

    def __init__(
        self,
        stuck_timeout: float = DEFAULT_STUCK_TIMEOUT,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stuck_timeout = stuck_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = ActivityState.IDLE
        self._last_activity = clock()
        self._started_at: float | None = None

    def start(self) -> None:
        with self._lock:
            now = self._clock()
            self._state = ActivityState.WORKING
            self._started_at = now
            self._last_activity = now

    def record_activity(self) -> None:
        with self._lock:
            self._last_activity = self._clock()
            if self._state is ActivityState.STUCK:
                self._state = ActivityState.WORKING

    def mark_completed(self) -> None:
        with self._lock:
            self._state = ActivityState.COMPLETED

    def mark_failed(self) -> None:
        with self._lock:
            self._state = ActivityState.FAILED

    def reset(self) -> None:
        with self._lock:
            self._state = ActivityState.IDLE
            self._started_at = None
            self._last_activity = self._clock()

    @property
    def seconds_since_activity(self) -> float:
        with self._lock:
            return self._clock() - self._last_activity

    @property
    def elapsed(self) -> float:
        with self._lock:
            if self._started_at is None:
                return 0.0
            return self._clock() - self._started_at

    @property
    def state(self) -> ActivityState:
        with self._lock:
            if (
                self._state is ActivityState.WORKING
                and self._clock() - self._last_activity >= self.stuck_timeout
            ):
                self._state = ActivityState.STUCK
                logger.warning(
                    "No backend activity for %.0fs; marking stuck", self.stuck_timeout,
                )
            return self._state

    @property
    def is_stuck(self) -> bool:
        return self.state is ActivityState.STUCK

    async def wait_until_stuck(self, timeout: float, poll_interval: float = 1.0) -> bool:
        """Block until the detector reports stuck or ``timeout`` elapses."""
        return await wait_for(lambda: self.is_stuck, timeout, poll_interval)
