"""Checkpoint snapshots and stores.

A checkpoint is an immutable record of where a work loop stood. The
latest one is kept as a single YAML document and every checkpoint is also
appended to a JSONL history. Checkpoints feed observability and
resume-on-restart only; nothing reads them to steer a running loop.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from forgeloop.config import PROJECT_DIR
from forgeloop.utilities.io import append_jsonl, read_jsonl, read_yaml, write_yaml_atomic

CHECKPOINT_FILE = "checkpoint.yml"
HISTORY_FILE = "checkpoint_history.jsonl"

# Weights used when the backend reports these metrics explicitly.
QUALITY_WEIGHTS: dict[str, float] = {
    "test_coverage": 0.3,
    "code_quality": 0.4,
    "prd_task_progress": 0.3,
}


class CheckpointStatus(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    NEEDS_ATTENTION = "needs_attention"
    DONE = "done"
    FAILED = "failed"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    CheckpointStatus.DONE,
    CheckpointStatus.FAILED,
    CheckpointStatus.MAX_ITERATIONS,
    CheckpointStatus.CANCELLED,
})


def quality_score(metrics: Mapping[str, Any]) -> float:
    """0-100 quality estimate.

    Uses the weighted coverage / quality / progress metrics when any are
    present, otherwise the share of verification checks that passed.
    """
    weighted = [
        (float(metrics[key]), weight)
        for key, weight in QUALITY_WEIGHTS.items()
        if isinstance(metrics.get(key), (int, float))
    ]
    if weighted:
        total_weight = sum(weight for _, weight in weighted)
        return sum(value * weight for value, weight in weighted) / total_weight
    total = metrics.get("checks_total") or 0
    if not total:
        return 100.0
    return 100.0 * float(metrics.get("checks_passed", 0)) / float(total)


def status_for(score: float) -> CheckpointStatus:
    if score >= 80:
        return CheckpointStatus.HEALTHY
    if score >= 60:
        return CheckpointStatus.WARNING
    return CheckpointStatus.NEEDS_ATTENTION


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Immutable snapshot of a work loop."""

    step_name: str
    iteration: int
    status: str
    metrics: Mapping[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def __post_init__(self) -> None:
        # Detach from the caller's dict so later mutation cannot leak in.
        object.__setattr__(self, "metrics", copy.deepcopy(dict(self.metrics)))
        object.__setattr__(self, "status", str(self.status))

    @classmethod
    def create(
        cls,
        step_name: str,
        iteration: int,
        metrics: Mapping[str, Any],
        status: str | None = None,
    ) -> Checkpoint:
        if status is None:
            status = status_for(quality_score(metrics))
        return cls(step_name=step_name, iteration=iteration, status=str(status), metrics=metrics)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_name": self.step_name,
            "iteration": self.iteration,
            "timestamp": self.timestamp,
            "metrics": copy.deepcopy(dict(self.metrics)),
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Checkpoint:
        return cls(
            step_name=str(data.get("step_name", "")),
            iteration=int(data.get("iteration", 0)),
            status=str(data.get("status", CheckpointStatus.HEALTHY)),
            metrics=dict(data.get("metrics") or {}),
            timestamp=str(data.get("timestamp") or datetime.now(UTC).isoformat()),
        )


@runtime_checkable
class CheckpointStore(Protocol):
    def write(self, checkpoint: Checkpoint) -> None: ...

    def read_latest(self) -> Checkpoint | None: ...

    def append_history(self, checkpoint: Checkpoint) -> None: ...

    def history(self, limit: int | None = None) -> list[Checkpoint]: ...

    def clear(self) -> None: ...


class FileCheckpointStore:
    """``<root>/.forgeloop/checkpoint.yml`` plus a JSONL history beside it."""

    def __init__(self, root: str | Path, *, state_dir: str = PROJECT_DIR) -> None:
        self.directory = Path(root) / state_dir
        self.checkpoint_path = self.directory / CHECKPOINT_FILE
        self.history_path = self.directory / HISTORY_FILE
        self._lock = threading.Lock()

    def write(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            write_yaml_atomic(self.checkpoint_path, checkpoint.to_dict())

    def read_latest(self) -> Checkpoint | None:
        data = read_yaml(self.checkpoint_path, None)
        if not isinstance(data, dict):
            return None
        return Checkpoint.from_dict(data)

    def append_history(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            append_jsonl(self.history_path, checkpoint.to_dict())

    def history(self, limit: int | None = None) -> list[Checkpoint]:
        rows = read_jsonl(self.history_path, limit=limit)
        return [Checkpoint.from_dict(row) for row in rows if isinstance(row, dict)]

    def clear(self) -> None:
        with self._lock:
            for path in (self.checkpoint_path, self.history_path):
                path.unlink(missing_ok=True)


class MemoryCheckpointStore:
    """In-process store, mainly for tests."""

    def __init__(self) -> None:
        self._latest: Checkpoint | None = None
        self._history: list[Checkpoint] = []
        self._lock = threading.Lock()

    def write(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            self._latest = checkpoint

    def read_latest(self) -> Checkpoint | None:
        with self._lock:
            return self._latest

    def append_history(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            self._history.append(checkpoint)

    def history(self, limit: int | None = None) -> list[Checkpoint]:
        with self._lock:
            items = list(self._history)
        return items[-limit:] if limit else items

    def clear(self) -> None:
        with self._lock:
            self._latest = None
            self._history.clear()


def save_checkpoint(store: CheckpointStore, checkpoint: Checkpoint) -> None:
    """Write the latest snapshot, then append it to the history."""
    store.write(checkpoint)
    store.append_history(checkpoint)


def metric_trends(
    previous: Mapping[str, Any],
    current: Mapping[str, Any],
) -> dict[str, dict[str, Any]]:
    """Direction and size of change for every numeric metric in both snapshots."""
    trends: dict[str, dict[str, Any]] = {}
    for key, value in current.items():
        before = previous.get(key)
        if isinstance(value, bool) or isinstance(before, bool):
            continue
        if not isinstance(value, (int, float)) or not isinstance(before, (int, float)):
            continue
        change = value - before
        if change > 0:
            direction = "up"
        elif change < 0:
            direction = "down"
        else:
            direction = "stable"
        percent = round(change / before * 100, 1) if before else 0.0
        trends[key] = {"direction": direction, "change": change, "change_percent": percent}
    return trends


def progress_summary(store: CheckpointStore) -> dict[str, Any] | None:
    """Latest checkpoint, the one before it, quality score and metric trends."""
    current = store.read_latest()
    if current is None:
        return None
    history = store.history(limit=2)
    previous = history[0] if len(history) == 2 else None
    return {
        "current": current.to_dict(),
        "previous": previous.to_dict() if previous else None,
        "quality_score": round(quality_score(current.metrics), 1),
        "trends": metric_trends(previous.metrics, current.metrics) if previous else {},
    }
