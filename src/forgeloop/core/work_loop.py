"""Fix-forward work loop.

One iteration builds a prompt, asks the provider manager for a patch,
runs verification and decides:

- checks pass and the backend signalled completion: DONE
- checks fail: DIAGNOSE, feed the failures into the next prompt, READY
- checks pass without a completion signal: READY for another pass

The loop only moves forward. It never reverts a patch and never re-issues
a backend call itself; backend retries belong to the provider manager.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from forgeloop.config import VerificationConfig, WorkLoopConfig
from forgeloop.core.checkpoint import Checkpoint, CheckpointStore, save_checkpoint
from forgeloop.core.prompt import (
    build_diagnostic,
    build_error_diagnostic,
    build_prompt,
    build_unfinished_note,
    load_style_guide,
    style_reminder_due,
    truncate,
)
from forgeloop.core.state import IterationRecord, WorkLoopPhase, WorkLoopState
from forgeloop.core.verification import VerificationReport, Verifier
from forgeloop.errors import (
    CancellationError,
    ConfigurationError,
    ErrorKind,
    NoProviderAvailableError,
    ProviderError,
    VerificationError,
)
from forgeloop.providers.base import AdapterResponse, SendOptions
from forgeloop.providers.manager import ProviderManager
from forgeloop.utilities.condition_wait import StuckDetector
from forgeloop.utilities.redaction import redact_secrets

logger = logging.getLogger(__name__)

# Kinds that end the loop at once instead of costing one iteration.
FATAL_KINDS = frozenset({
    ErrorKind.PERMANENT,
    ErrorKind.AUTH_EXPIRED,
    ErrorKind.QUOTA_EXCEEDED,
})


class WorkLoopOutcome(StrEnum):
    DONE = "done"
    FAILED = "failed"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"


_OUTCOME_PHASE = {
    WorkLoopOutcome.DONE: WorkLoopPhase.DONE,
    WorkLoopOutcome.FAILED: WorkLoopPhase.FAILED,
    WorkLoopOutcome.MAX_ITERATIONS: WorkLoopPhase.MAX_ITERATIONS,
    WorkLoopOutcome.CANCELLED: WorkLoopPhase.CANCELLED,
}


@dataclass(slots=True)
class WorkLoopSpec:
    """What one loop should accomplish, and where."""

    task: str
    step_name: str = "implementation"
    workspace: str | Path = "."
    style_guide: str | None = None
    context: str | None = None
    required_capabilities: tuple[str, ...] = ()

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace)


@dataclass(slots=True)
class WorkLoopResult:
    """Terminal outcome of a work loop."""

    status: WorkLoopOutcome
    iterations: int
    message: str
    metrics: dict[str, Any] = field(default_factory=dict)
    error_kind: ErrorKind | None = None
    forced: bool = False
    output: str = ""

    @property
    def success(self) -> bool:
        return self.status is WorkLoopOutcome.DONE

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "iterations": self.iterations,
            "message": self.message,
            "metrics": self.metrics,
            "error_kind": str(self.error_kind) if self.error_kind else None,
            "forced": self.forced,
        }


class WorkLoopEngine:
    """Runs one :class:`WorkLoopSpec` to a terminal outcome."""

    def __init__(
        self,
        spec: WorkLoopSpec,
        manager: ProviderManager,
        verifier: Verifier,
        *,
        config: WorkLoopConfig | None = None,
        verification: VerificationConfig | None = None,
        checkpoint_store: CheckpointStore | None = None,
        state: WorkLoopState | None = None,
        stuck_timeout: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.spec = spec
        self.manager = manager
        self.verifier = verifier
        self.config = config or WorkLoopConfig()
        self.verification = verification or VerificationConfig()
        self.checkpoint_store = checkpoint_store
        self.state = state or WorkLoopState(self.config.max_iterations)
        self.activity = StuckDetector(stuck_timeout, clock=clock)
        self._clock = clock
        self._diagnostic: str | None = None
        self._style_guide = spec.style_guide
        self._last_output = ""
        self._last_report: VerificationReport | None = None
        self._started_at: float | None = None
        self._result: WorkLoopResult | None = None
        self.state.on_transition(lambda *_: self.activity.record_activity())

    @property
    def result(self) -> WorkLoopResult | None:
        return self._result

    # Main loop

    async def run(self) -> WorkLoopResult:
        if self._result is not None:
            return self._result
        self._started_at = self._clock()
        self.activity.start()
        if self._style_guide is None:
            self._style_guide = load_style_guide(
                self.config.style_guide_path, self.spec.workspace_path,
            )
        logger.info(
            "Starting work loop %r (max %d iterations, from iteration %d)",
            self.spec.step_name, self.state.max_iterations, self.state.iteration,
        )

        while True:
            await self.state.wait_until_runnable()
            if self.state.cancelled:
                return self._finish(WorkLoopOutcome.CANCELLED, "Cancelled by request")

            if not self.state.has_iterations_left:
                return self._finish(
                    WorkLoopOutcome.MAX_ITERATIONS,
                    f"Maximum iterations reached ({self.state.max_iterations})",
                )

            result = await self._iterate(self.state.begin_iteration())
            if result is not None:
                return result

    async def _iterate(self, iteration: int) -> WorkLoopResult | None:
        started = self._clock()
        prompt = self._build_prompt(iteration)
        self.state.transition(WorkLoopPhase.APPLY_PATCH)

        try:
            response = await self.manager.send(
                prompt,
                self._send_options(),
                required_capabilities=self.spec.required_capabilities,
                should_stop=lambda: self.state.cancelled,
            )
        except CancellationError as exc:
            return self._finish(WorkLoopOutcome.CANCELLED, str(exc), forced=exc.forced)
        except NoProviderAvailableError as exc:
            return self._finish(WorkLoopOutcome.FAILED, redact_secrets(str(exc)), error_kind=exc.kind)
        except ProviderError as exc:
            if exc.kind in FATAL_KINDS:
                return self._finish(
                    WorkLoopOutcome.FAILED, redact_secrets(str(exc)), error_kind=exc.kind,
                )
            self._record_backend_failure(iteration, started, str(exc), exc.kind)
            return None
        except ConfigurationError:
            raise
        except Exception as exc:
            # Fix forward: the error becomes context for the next attempt.
            message = redact_secrets(f"{type(exc).__name__}: {exc}")
            logger.warning("Iteration %d: backend call raised %s", iteration, message)
            self._record_backend_failure(iteration, started, message, None)
            return None

        self._last_output = response.output
        self.state.transition(WorkLoopPhase.TEST)
        try:
            report = await self.verifier.run(self.spec.workspace_path, self.verification)
        except ConfigurationError:
            raise
        except VerificationError as exc:
            logger.error("Iteration %d: %s", iteration, exc)
            return self._finish(WorkLoopOutcome.FAILED, str(exc))
        except Exception as exc:
            logger.error("Iteration %d: verification could not run: %s", iteration, exc)
            return self._finish(WorkLoopOutcome.FAILED, f"Verification could not run: {exc}")
        self._last_report = report

        self._record(iteration, started, response, report)
        if report.success and response.completed:
            logger.info("Iteration %d: checks pass and backend signalled completion", iteration)
            return self._finish(
                WorkLoopOutcome.DONE,
                f"Task completed in {iteration} iteration(s)",
            )

        if not report.success:
            logger.info("Iteration %d: %s", iteration, report.summary())
            self.state.transition(WorkLoopPhase.DIAGNOSE)
            self._diagnostic = build_diagnostic(report, iteration)
            self.state.transition(WorkLoopPhase.READY)
        else:
            logger.info("Iteration %d: checks pass, completion not signalled", iteration)
            self._diagnostic = build_unfinished_note(iteration)
            self.state.transition(WorkLoopPhase.READY)

        self._maybe_checkpoint(iteration)
        return None

    # Prompt / options

    def _build_prompt(self, iteration: int) -> str:
        instructions = self.state.drain_instructions()
        style = None
        if self._style_guide and style_reminder_due(iteration, self.config.style_guide_interval):
            style = truncate(self._style_guide, self.config.style_guide_max_chars)
        return build_prompt(
            task=self.spec.task,
            step_name=self.spec.step_name,
            iteration=iteration,
            max_iterations=self.state.max_iterations,
            instructions=instructions,
            diagnostic=self._diagnostic,
            style_guide=style,
            extra_context=self.spec.context,
        )

    def _send_options(self) -> SendOptions:
        return SendOptions(
            model=self.config.model,
            tier=self.config.tier,
            task_type=self.config.task_type,
            cwd=str(self.spec.workspace_path),
        )

    # Bookkeeping

    def _record_backend_failure(
        self,
        iteration: int,
        started: float,
        message: str,
        kind: ErrorKind | None,
    ) -> None:
        self.state.transition(WorkLoopPhase.DIAGNOSE)
        self._diagnostic = build_error_diagnostic(redact_secrets(message), iteration)
        self.state.record_iteration(
            IterationRecord(
                iteration=iteration,
                passed=False,
                duration=self._clock() - started,
                error_kind=str(kind) if kind else "error",
            )
        )
        self.state.transition(WorkLoopPhase.READY)
        self._maybe_checkpoint(iteration)

    def _record(
        self,
        iteration: int,
        started: float,
        response: AdapterResponse,
        report: VerificationReport,
    ) -> None:
        self.state.record_iteration(
            IterationRecord(
                iteration=iteration,
                passed=report.success,
                duration=self._clock() - started,
                checks={r.kind: r.success for r in report.results},
                completion_signalled=response.completed,
                provider=response.provider or None,
                tokens=response.tokens,
                cost=response.cost,
            )
        )

    def metrics(self) -> dict[str, Any]:
        records = self.state.records
        report = self._last_report
        metrics: dict[str, Any] = {
            "iterations_run": len(records),
            "passed_iterations": sum(1 for r in records if r.passed),
            "consecutive_failures": self.state.consecutive_failures,
            "total_duration": round(
                self._clock() - self._started_at if self._started_at is not None else 0.0, 3,
            ),
            "last_duration": round(records[-1].duration, 3) if records else 0.0,
            "tokens": sum(r.tokens for r in records),
            "cost": round(sum(r.cost for r in records), 6),
            "checks_total": len(report.results) if report else 0,
            "checks_passed": report.passed_count if report else 0,
            "failed_checks": sorted({r.kind for r in report.failures}) if report else [],
        }
        if records and records[-1].provider:
            metrics["provider"] = records[-1].provider
        return metrics

    def _maybe_checkpoint(self, iteration: int) -> None:
        interval = max(self.config.checkpoint_interval, 1)
        if iteration == 1 or iteration % interval == 0:
            self._checkpoint(None)

    def _checkpoint(self, status: str | None) -> None:
        if self.checkpoint_store is None:
            return
        checkpoint = Checkpoint.create(
            self.spec.step_name,
            self.state.iteration,
            self.metrics(),
            status,
        )
        try:
            save_checkpoint(self.checkpoint_store, checkpoint)
        except OSError as exc:
            logger.error("Failed to write checkpoint for %r: %s", self.spec.step_name, exc)

    def _finish(
        self,
        outcome: WorkLoopOutcome,
        message: str,
        *,
        error_kind: ErrorKind | None = None,
        forced: bool = False,
    ) -> WorkLoopResult:
        if self._result is not None:
            return self._result
        self.state.transition(_OUTCOME_PHASE[outcome])
        if outcome is WorkLoopOutcome.DONE:
            self.activity.mark_completed()
        else:
            self.activity.mark_failed()
        self._checkpoint(str(outcome))
        self._result = WorkLoopResult(
            status=outcome,
            iterations=self.state.iteration,
            message=message,
            metrics=self.metrics(),
            error_kind=error_kind,
            forced=forced,
            output=self._last_output,
        )
        log = logger.info if outcome is WorkLoopOutcome.DONE else logger.warning
        log("Work loop %r finished: %s after %d iteration(s): %s",
            self.spec.step_name, outcome, self._result.iterations, message)
        return self._result

    def force_cancel(self, reason: str = "Forced cancellation") -> WorkLoopResult:
        """Terminal CANCELLED result for a loop whose task was killed mid-call."""
        if self._result is not None:
            return self._result
        self.state.cancel()
        return self._finish(WorkLoopOutcome.CANCELLED, reason, forced=True)
