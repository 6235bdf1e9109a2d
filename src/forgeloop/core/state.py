"""Work loop phases and the lock-guarded mutable state of one loop.

``WorkLoopState`` is the only mutable object shared between a running
engine and its controller. Every field is read and written under
``_lock``, which is held only for short copies and never across an await.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 500


class WorkLoopPhase(StrEnum):
    """Phases of the fix-forward loop."""

    READY = "ready"
    APPLY_PATCH = "apply_patch"
    TEST = "test"
    DIAGNOSE = "diagnose"
    DONE = "done"
    FAILED = "failed"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset({
    WorkLoopPhase.DONE,
    WorkLoopPhase.FAILED,
    WorkLoopPhase.MAX_ITERATIONS,
    WorkLoopPhase.CANCELLED,
})

_ACTIVE_PHASES = (
    WorkLoopPhase.READY,
    WorkLoopPhase.APPLY_PATCH,
    WorkLoopPhase.TEST,
    WorkLoopPhase.DIAGNOSE,
)

# Valid transitions: (from_phase, to_phase)
VALID_TRANSITIONS: set[tuple[WorkLoopPhase, WorkLoopPhase]] = {
    (WorkLoopPhase.READY, WorkLoopPhase.APPLY_PATCH),
    (WorkLoopPhase.READY, WorkLoopPhase.MAX_ITERATIONS),
    (WorkLoopPhase.APPLY_PATCH, WorkLoopPhase.TEST),
    (WorkLoopPhase.APPLY_PATCH, WorkLoopPhase.DIAGNOSE),
    (WorkLoopPhase.TEST, WorkLoopPhase.DONE),
    (WorkLoopPhase.TEST, WorkLoopPhase.DIAGNOSE),
    (WorkLoopPhase.TEST, WorkLoopPhase.READY),
    (WorkLoopPhase.DIAGNOSE, WorkLoopPhase.READY),
    # Any active phase can fail or be cancelled
    *((phase, WorkLoopPhase.FAILED) for phase in _ACTIVE_PHASES),
    *((phase, WorkLoopPhase.CANCELLED) for phase in _ACTIVE_PHASES),
}


TransitionListener = Callable[[WorkLoopPhase, WorkLoopPhase, int], None]


class InvalidTransitionError(Exception):
    """Raised when a phase transition is not allowed."""

    def __init__(self, from_phase: WorkLoopPhase, to_phase: WorkLoopPhase) -> None:
        super().__init__(f"Invalid transition: {from_phase} -> {to_phase}")
        self.from_phase = from_phase
        self.to_phase = to_phase


@dataclass(frozen=True, slots=True)
class PhaseTransition:
    from_phase: WorkLoopPhase
    to_phase: WorkLoopPhase
    iteration: int
    timestamp: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "from": str(self.from_phase),
            "to": str(self.to_phase),
            "iteration": self.iteration,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class IterationRecord:
    """Metrics for one completed iteration."""

    iteration: int
    passed: bool
    duration: float
    checks: dict[str, bool] = field(default_factory=dict)
    completion_signalled: bool = False
    error_kind: str | None = None
    provider: str | None = None
    tokens: int = 0
    cost: float = 0.0


@dataclass(frozen=True, slots=True)
class StateSnapshot:
    iteration: int
    max_iterations: int
    phase: WorkLoopPhase
    paused: bool
    cancelled: bool
    pending_instructions: int
    consecutive_failures: int


class WorkLoopState:
    """Iteration counter, phase, control flags and instruction queue."""

    def __init__(self, max_iterations: int = 50, *, start_iteration: int = 0) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.max_iterations = max_iterations
        self._lock = threading.Lock()
        self._iteration = min(max(start_iteration, 0), max_iterations)
        self._phase = WorkLoopPhase.READY
        self._paused = False
        self._cancelled = False
        self._instructions: deque[str] = deque()
        self._records: list[IterationRecord] = []
        self._history: deque[PhaseTransition] = deque(maxlen=HISTORY_LIMIT)
        self._consecutive_failures = 0
        self._listeners: list[TransitionListener] = []
        # Set while the loop may run; cleared by pause().
        self._resume_event = asyncio.Event()
        self._resume_event.set()

    # Reads

    @property
    def iteration(self) -> int:
        with self._lock:
            return self._iteration

    @property
    def phase(self) -> WorkLoopPhase:
        with self._lock:
            return self._phase

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def has_iterations_left(self) -> bool:
        with self._lock:
            return self._iteration < self.max_iterations

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def records(self) -> list[IterationRecord]:
        with self._lock:
            return list(self._records)

    @property
    def history(self) -> list[PhaseTransition]:
        with self._lock:
            return list(self._history)

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            return StateSnapshot(
                iteration=self._iteration,
                max_iterations=self.max_iterations,
                phase=self._phase,
                paused=self._paused,
                cancelled=self._cancelled,
                pending_instructions=len(self._instructions),
                consecutive_failures=self._consecutive_failures,
            )

    # Transitions

    def can_transition(self, to_phase: WorkLoopPhase) -> bool:
        with self._lock:
            return (self._phase, to_phase) in VALID_TRANSITIONS

    def transition(self, to_phase: WorkLoopPhase) -> None:
        """Move to ``to_phase``; raises InvalidTransitionError if not allowed."""
        with self._lock:
            from_phase = self._phase
            if (from_phase, to_phase) not in VALID_TRANSITIONS:
                raise InvalidTransitionError(from_phase, to_phase)
            self._phase = to_phase
            iteration = self._iteration
            self._history.append(
                PhaseTransition(
                    from_phase=from_phase,
                    to_phase=to_phase,
                    iteration=iteration,
                    timestamp=datetime.now(UTC).isoformat(),
                )
            )
            listeners = list(self._listeners)

        logger.debug("Iteration %d: %s -> %s", iteration, from_phase, to_phase)
        for listener in listeners:
            try:
                listener(from_phase, to_phase, iteration)
            except Exception:
                logger.exception("Transition listener failed")

    def on_transition(self, listener: TransitionListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def begin_iteration(self) -> int:
        """Advance the counter for a new iteration and return it."""
        with self._lock:
            if self._iteration >= self.max_iterations:
                raise RuntimeError(
                    f"iteration limit {self.max_iterations} already reached"
                )
            self._iteration += 1
            return self._iteration

    def record_iteration(self, record: IterationRecord) -> None:
        with self._lock:
            self._records.append(record)
            if record.passed:
                self._consecutive_failures = 0
            else:
                self._consecutive_failures += 1

    # Control flags

    def pause(self) -> None:
        with self._lock:
            self._paused = True
        self._resume_event.clear()

    def resume(self) -> None:
        with self._lock:
            self._paused = False
        self._resume_event.set()

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
        # Wake a paused loop so it can observe the flag.
        self._resume_event.set()

    async def wait_until_runnable(self) -> None:
        """Block while paused; returns on resume or cancel."""
        while True:
            with self._lock:
                if not self._paused or self._cancelled:
                    return
            await self._resume_event.wait()

    # Instructions

    def enqueue_instruction(self, text: str) -> int:
        """Queue an instruction for the next prompt; returns queue length."""
        with self._lock:
            self._instructions.append(text)
            return len(self._instructions)

    def drain_instructions(self) -> list[str]:
        with self._lock:
            drained = list(self._instructions)
            self._instructions.clear()
            return drained

    @property
    def pending_instructions(self) -> int:
        with self._lock:
            return len(self._instructions)
