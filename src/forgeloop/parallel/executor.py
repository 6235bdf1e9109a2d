"""Fan out independent work loops into isolated workspaces.

Every work item gets its own workspace and its own session. Sessions run
concurrently up to ``max_concurrency``; a failure in one never affects
the others. Results come back in dispatch order, and a workspace is torn
down only once its result has been written to the run directory.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from forgeloop.core.session import AsyncSessionController
from forgeloop.core.work_loop import WorkLoopOutcome, WorkLoopSpec
from forgeloop.errors import ConfigurationError, ForgeloopError
from forgeloop.parallel.workspace import WorkspaceProvisioner, slugify
from forgeloop.utilities.io import append_jsonl, write_json_atomic
from forgeloop.utilities.logger import get_logger
from forgeloop.utilities.redaction import redact_secrets

logger = logging.getLogger(__name__)

RESULTS_FILE = "results.jsonl"
SUMMARY_FILE = "summary.json"


class WorkstreamStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class WorkItem:
    slug: str
    task: str
    step_name: str = "implementation"
    context: str | None = None
    base_ref: str | None = None
    required_capabilities: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WorkItem:
        if not raw.get("task"):
            raise ConfigurationError(f"Work item is missing 'task': {raw!r}")
        slug = raw.get("slug") or raw.get("id") or raw["task"][:40]
        return cls(
            slug=slugify(str(slug)),
            task=str(raw["task"]),
            step_name=str(raw.get("step_name", "implementation")),
            context=raw.get("context"),
            base_ref=raw.get("base_ref"),
            required_capabilities=tuple(raw.get("required_capabilities", ())),
        )


@dataclass(slots=True)
class Workstream:
    item: WorkItem
    status: WorkstreamStatus = WorkstreamStatus.PENDING
    workspace: Path | None = None
    branch: str | None = None
    session: AsyncSessionController | None = field(default=None, repr=False)

    @property
    def slug(self) -> str:
        return self.item.slug


@dataclass(slots=True)
class WorkstreamResult:
    slug: str
    status: WorkstreamStatus
    outcome: str | None = None
    iterations: int = 0
    message: str = ""
    error_kind: str | None = None
    started_at: str = ""
    completed_at: str = ""
    duration: float = 0.0
    workspace: str | None = None
    branch: str | None = None
    error: str | None = None

    @property
    def completed(self) -> bool:
        return self.status is WorkstreamStatus.COMPLETED

    def as_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "status": str(self.status),
            "outcome": self.outcome,
            "iterations": self.iterations,
            "message": self.message,
            "error_kind": self.error_kind,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration": round(self.duration, 3),
            "workspace": self.workspace,
            "branch": self.branch,
            "error": self.error,
        }


class ResultRecorder:
    """Durable per-workstream results under ``<run_dir>/<run_id>/``."""

    def __init__(self, run_dir: Path, run_id: str) -> None:
        self.root = Path(run_dir) / run_id
        self.run_id = run_id

    def path_for(self, slug: str) -> Path:
        return self.root / "workstreams" / f"{slug}.json"

    def record(self, result: WorkstreamResult) -> Path:
        payload = result.as_dict()
        path = self.path_for(result.slug)
        write_json_atomic(path, payload)
        append_jsonl(self.root / RESULTS_FILE, payload)
        return path

    def write_summary(self, summary: dict[str, Any]) -> Path:
        path = self.root / SUMMARY_FILE
        write_json_atomic(path, summary)
        return path


SessionFactory = Callable[[Workstream], AsyncSessionController]


def _now() -> str:
    return datetime.now(UTC).isoformat()


class ParallelExecutor:
    """Runs work items concurrently, each in a workspace of its own."""

    def __init__(
        self,
        *,
        provisioner: WorkspaceProvisioner,
        session_factory: SessionFactory,
        run_dir: Path,
        max_concurrency: int = 3,
        keep_workspaces: bool = False,
        run_id: str | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be >= 1")
        self.provisioner = provisioner
        self.session_factory = session_factory
        self.max_concurrency = max_concurrency
        self.keep_workspaces = keep_workspaces
        self.run_id = run_id or datetime.now(UTC).strftime("%Y%m%dT%H%M%S") + "-" + uuid.uuid4().hex[:6]
        self.recorder = ResultRecorder(run_dir, self.run_id)
        self.workstreams: list[Workstream] = []

    async def run_all(
        self,
        items: Sequence[WorkItem],
        max_concurrency: int | None = None,
    ) -> list[WorkstreamResult]:
        """Run every item to a terminal result. Results are in dispatch order."""
        slugs = [item.slug for item in items]
        duplicates = sorted({s for s in slugs if slugs.count(s) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate work item slugs: {', '.join(duplicates)}")
        if not items:
            return []

        limit = max_concurrency or self.max_concurrency
        semaphore = asyncio.Semaphore(limit)
        self.workstreams = [Workstream(item=item) for item in items]
        started = time.monotonic()
        logger.info("Run %s: dispatching %d workstreams (max %d concurrent)",
                    self.run_id, len(items), limit)

        async def _bounded(ws: Workstream) -> WorkstreamResult:
            async with semaphore:
                return await self._run_one(ws)

        results = list(await asyncio.gather(*[_bounded(ws) for ws in self.workstreams]))
        summary = self._summarize(results, time.monotonic() - started)
        self.recorder.write_summary(summary)
        get_logger("forgeloop.parallel").info("parallel_run_complete", **summary)
        return results

    async def _run_one(self, ws: Workstream) -> WorkstreamResult:
        started_at = _now()
        t0 = time.monotonic()
        ws.status = WorkstreamStatus.RUNNING
        try:
            result = await self._execute(ws)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            message = redact_secrets(str(exc))
            logger.error("Workstream %s failed: %s", ws.slug, message)
            result = WorkstreamResult(
                slug=ws.slug,
                status=WorkstreamStatus.FAILED,
                message=message,
                error_kind=str(getattr(exc, "kind", "")) or None,
                error=type(exc).__name__,
            )
        ws.status = result.status
        result.started_at = started_at
        result.completed_at = _now()
        result.duration = time.monotonic() - t0
        result.workspace = str(ws.workspace) if ws.workspace else None
        result.branch = ws.branch

        try:
            self.recorder.record(result)
        except OSError as exc:
            # Without a durable record the workspace is the only evidence; keep it.
            logger.error("Could not record result for %s, keeping workspace: %s", ws.slug, exc)
            result.error = result.error or "RecordError"
            return result

        if ws.workspace is not None and not self.keep_workspaces:
            await self._destroy(ws)
        return result

    async def _execute(self, ws: Workstream) -> WorkstreamResult:
        item = ws.item
        ws.workspace = await asyncio.to_thread(self.provisioner.create, item.slug, item.base_ref)
        branch_for = getattr(self.provisioner, "branch_for", None)
        ws.branch = branch_for(ws.workspace) if callable(branch_for) else None

        session = self.session_factory(ws)
        ws.session = session
        session.start(WorkLoopSpec(
            task=item.task,
            step_name=item.step_name,
            workspace=ws.workspace,
            context=item.context,
            required_capabilities=item.required_capabilities,
        ))
        outcome = await session.wait()
        status = (
            WorkstreamStatus.COMPLETED
            if outcome.status is WorkLoopOutcome.DONE
            else WorkstreamStatus.FAILED
        )
        return WorkstreamResult(
            slug=ws.slug,
            status=status,
            outcome=str(outcome.status),
            iterations=outcome.iterations,
            message=outcome.message,
            error_kind=str(outcome.error_kind) if outcome.error_kind else None,
        )

    async def _destroy(self, ws: Workstream) -> None:
        assert ws.workspace is not None
        try:
            await asyncio.to_thread(self.provisioner.destroy, ws.workspace)
        except (OSError, ForgeloopError) as exc:
            logger.warning("Failed to remove workspace %s: %s", ws.workspace, exc)

    def _summarize(self, results: list[WorkstreamResult], duration: float) -> dict[str, Any]:
        completed = sum(1 for r in results if r.completed)
        return {
            "run_id": self.run_id,
            "total": len(results),
            "completed": completed,
            "failed": len(results) - completed,
            "duration": round(duration, 3),
            "failed_slugs": [r.slug for r in results if not r.completed],
        }
