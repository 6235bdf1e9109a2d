"""Cooperative session control over a running work loop.

The controller runs one :class:`WorkLoopEngine` on its own asyncio task.
Pause and cancel are flags the engine checks at the top of each iteration;
an in-flight backend call or verification run is never interrupted by
them. If a cancel is not honoured within ``wait_timeout`` the controller
kills the backend processes, cancels the task and reports a forced
cancellation instead of waiting forever.

Control methods are meant to be called from the event loop thread;
:meth:`AsyncSessionController.status` is safe from any thread.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from forgeloop.config import SessionConfig, VerificationConfig, WorkLoopConfig
from forgeloop.core.checkpoint import CheckpointStore
from forgeloop.core.state import WorkLoopPhase, WorkLoopState
from forgeloop.core.verification import Verifier
from forgeloop.core.work_loop import WorkLoopEngine, WorkLoopResult, WorkLoopSpec
from forgeloop.errors import SessionStateError
from forgeloop.providers.manager import ProviderManager

logger = logging.getLogger(__name__)

# Extra time allowed for killing the backend after a cancel times out.
FORCE_CANCEL_GRACE = 2.0


@dataclass(frozen=True, slots=True)
class SessionStatus:
    session_id: str
    iteration: int
    max_iterations: int
    phase: WorkLoopPhase
    paused: bool
    cancelled: bool
    pending_instructions: int
    running: bool
    stuck: bool = False
    provider: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "phase": str(self.phase),
            "paused": self.paused,
            "cancelled": self.cancelled,
            "pending_instructions": self.pending_instructions,
            "running": self.running,
            "stuck": self.stuck,
            "provider": self.provider,
        }


@dataclass(slots=True)
class SessionHandle:
    session_id: str
    step_name: str
    started_at: str
    resumed_from: int = 0
    task: asyncio.Task[WorkLoopResult] | None = field(default=None, repr=False)


class AsyncSessionController:
    """pause / resume / cancel / inject-instruction control for one session."""

    def __init__(
        self,
        manager: ProviderManager,
        verifier: Verifier,
        *,
        work_loop: WorkLoopConfig | None = None,
        verification: VerificationConfig | None = None,
        session: SessionConfig | None = None,
        checkpoint_store: CheckpointStore | None = None,
        session_id: str | None = None,
        resume: bool = True,
        force_grace: float = FORCE_CANCEL_GRACE,
    ) -> None:
        self.manager = manager
        self.verifier = verifier
        self.work_loop = work_loop or WorkLoopConfig()
        self.verification = verification or VerificationConfig()
        self.session_config = session or SessionConfig()
        self.checkpoint_store = checkpoint_store
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.resume_enabled = resume
        self.force_grace = force_grace
        self._engine: WorkLoopEngine | None = None
        self._task: asyncio.Task[WorkLoopResult] | None = None
        self._handle: SessionHandle | None = None
        self._result: WorkLoopResult | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._finished = asyncio.Event()

    # Lifecycle

    @property
    def engine(self) -> WorkLoopEngine | None:
        return self._engine

    @property
    def state(self) -> WorkLoopState | None:
        return self._engine.state if self._engine else None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def result(self) -> WorkLoopResult | None:
        return self._result

    def start(self, spec: WorkLoopSpec) -> SessionHandle:
        """Start the work loop on a new task. Must be called inside a running loop."""
        if self.is_running:
            raise SessionStateError(f"Session {self.session_id} is already running")
        if self._task is not None:
            raise SessionStateError(f"Session {self.session_id} has already finished")

        start_iteration = self._resume_point(spec)
        state = WorkLoopState(self.work_loop.max_iterations, start_iteration=start_iteration)
        self._engine = WorkLoopEngine(
            spec,
            self.manager,
            self.verifier,
            config=self.work_loop,
            verification=self.verification,
            checkpoint_store=self.checkpoint_store,
            state=state,
            stuck_timeout=self.session_config.stuck_timeout,
        )
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=f"forgeloop-session-{self.session_id}")
        self._handle = SessionHandle(
            session_id=self.session_id,
            step_name=spec.step_name,
            started_at=datetime.now(UTC).isoformat(),
            resumed_from=start_iteration,
            task=self._task,
        )
        logger.info("Session %s started for %r", self.session_id, spec.step_name)
        return self._handle

    def _resume_point(self, spec: WorkLoopSpec) -> int:
        if not self.resume_enabled or self.checkpoint_store is None:
            return 0
        latest = self.checkpoint_store.read_latest()
        if latest is None or latest.step_name != spec.step_name or latest.is_terminal:
            return 0
        logger.info(
            "Resuming %r from checkpoint at iteration %d", spec.step_name, latest.iteration,
        )
        return latest.iteration

    async def _run(self) -> WorkLoopResult:
        assert self._engine is not None
        result = await self._engine.run()
        self._result = result
        self._finished.set()
        return result

    async def wait(self) -> WorkLoopResult:
        """Wait for the terminal result."""
        if self._task is None:
            raise SessionStateError(f"Session {self.session_id} was never started")
        if self._result is not None and self._result.forced:
            return self._result
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # The worker was force-cancelled; cancel() publishes the result.
            await self._finished.wait()
            assert self._result is not None
            return self._result

    # Control

    def pause(self) -> None:
        self._require_engine().state.pause()
        logger.info("Session %s: pause requested", self.session_id)

    def resume(self) -> None:
        self._require_engine().state.resume()
        logger.info("Session %s: resumed", self.session_id)

    def inject_instruction(self, text: str) -> int:
        """Queue ``text`` for the next prompt. Returns the queue length."""
        if not text or not text.strip():
            raise ValueError("instruction text must not be empty")
        engine = self._require_engine()
        if engine.state.is_terminal:
            raise SessionStateError(f"Session {self.session_id} has already finished")
        return engine.state.enqueue_instruction(text)

    async def cancel(self, wait_timeout: float | None = None) -> WorkLoopResult:
        """Cancel cooperatively, forcing termination after ``wait_timeout`` seconds."""
        engine = self._require_engine()
        assert self._task is not None
        if self._task.done():
            return await self.wait()

        timeout = self.session_config.cancel_timeout if wait_timeout is None else wait_timeout
        engine.state.cancel()
        logger.info("Session %s: cancel requested (timeout %.1fs)", self.session_id, timeout)
        try:
            return await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except TimeoutError:
            pass

        logger.warning(
            "Session %s did not reach a safe point within %.1fs; terminating backend",
            self.session_id, timeout,
        )
        self._task.cancel()
        terminator = asyncio.ensure_future(self.manager.terminate())
        pending = {self._task, terminator}
        _, still_pending = await asyncio.wait(pending, timeout=self.force_grace)
        for task in still_pending:
            # Let the kill finish in the background; the result is reported now.
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        if terminator.done() and not terminator.cancelled() and terminator.exception():
            logger.error(
                "Session %s: terminating backend failed: %s",
                self.session_id, terminator.exception(),
            )

        if self._task.done() and not self._task.cancelled() and self._task.exception() is None:
            self._result = self._task.result()
        else:
            self._result = engine.force_cancel(
                f"Forced cancellation after {timeout}s without reaching a safe point"
            )
        self._finished.set()
        return self._result

    def status(self) -> SessionStatus:
        engine = self._require_engine()
        snap = engine.state.snapshot()
        return SessionStatus(
            session_id=self.session_id,
            iteration=snap.iteration,
            max_iterations=snap.max_iterations,
            phase=snap.phase,
            paused=snap.paused,
            cancelled=snap.cancelled,
            pending_instructions=snap.pending_instructions,
            running=self.is_running,
            stuck=self._is_stuck(engine),
            provider=self.manager.active_name,
        )

    def _is_stuck(self, engine: WorkLoopEngine) -> bool:
        if not engine.activity.is_stuck:
            return False
        backend_activity = getattr(self.manager.active_adapter, "activity", None)
        if backend_activity is None:
            return True
        return backend_activity.seconds_since_activity >= self.session_config.stuck_timeout

    def _require_engine(self) -> WorkLoopEngine:
        if self._engine is None:
            raise SessionStateError(f"Session {self.session_id} has not been started")
        return self._engine
