"""Shared utilities: logging, retry backoff, condition waits and file IO."""

from forgeloop.utilities.backoff import (
    BackoffStrategy,
    RetryPolicy,
    default_policy_for,
    next_delay,
    retry,
    retry_sync,
)
from forgeloop.utilities.condition_wait import (
    ActivityState,
    StuckDetector,
    wait_for,
    wait_for_file,
    wait_for_sync,
)
from forgeloop.utilities.logger import get_logger, setup_logging

__all__ = [
    "ActivityState",
    "BackoffStrategy",
    "RetryPolicy",
    "StuckDetector",
    "default_policy_for",
    "get_logger",
    "next_delay",
    "retry",
    "retry_sync",
    "setup_logging",
    "wait_for",
    "wait_for_file",
    "wait_for_sync",
]
