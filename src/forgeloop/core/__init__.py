"""Work loop engine, session control, checkpoints and verification."""

from forgeloop.core.checkpoint import (
    Checkpoint,
    CheckpointStatus,
    CheckpointStore,
    FileCheckpointStore,
    MemoryCheckpointStore,
    progress_summary,
)
from forgeloop.core.session import AsyncSessionController, SessionHandle, SessionStatus
from forgeloop.core.state import (
    InvalidTransitionError,
    WorkLoopPhase,
    WorkLoopState,
)
from forgeloop.core.verification import (
    CheckResult,
    CommandVerifier,
    VerificationReport,
    Verifier,
)
from forgeloop.core.work_loop import (
    WorkLoopEngine,
    WorkLoopOutcome,
    WorkLoopResult,
    WorkLoopSpec,
)

__all__ = [
    "AsyncSessionController",
    "CheckResult",
    "Checkpoint",
    "CheckpointStatus",
    "CheckpointStore",
    "CommandVerifier",
    "FileCheckpointStore",
    "InvalidTransitionError",
    "MemoryCheckpointStore",
    "SessionHandle",
    "SessionStatus",
    "VerificationReport",
    "Verifier",
    "WorkLoopEngine",
    "WorkLoopOutcome",
    "WorkLoopPhase",
    "WorkLoopResult",
    "WorkLoopSpec",
    "WorkLoopState",
    "progress_summary",
]
