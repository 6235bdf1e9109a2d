"""Parallel workstreams in isolated workspaces."""

from forgeloop.parallel.executor import (
    ParallelExecutor,
    ResultRecorder,
    WorkItem,
    Workstream,
    WorkstreamResult,
    WorkstreamStatus,
)
from forgeloop.parallel.workspace import (
    CopyProvisioner,
    GitWorktreeProvisioner,
    WorkspaceProvisioner,
    provisioner_for,
    slugify,
)

__all__ = [
    "CopyProvisioner",
    "GitWorktreeProvisioner",
    "ParallelExecutor",
    "ResultRecorder",
    "WorkItem",
    "Workstream",
    "WorkstreamResult",
    "WorkstreamStatus",
    "WorkspaceProvisioner",
    "provisioner_for",
    "slugify",
]
