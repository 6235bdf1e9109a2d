"""Retry policies, delay calculation and the retry driver.

``next_delay`` is pure apart from the optional jitter draw. The drivers
(``retry`` / ``retry_sync``) are built on tenacity: the stop condition is
the policy's attempt budget, the wait is ``next_delay`` and the retry
predicate is the policy's set of retryable error kinds.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from forgeloop.errors import ErrorKind, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException, float], None]


class BackoffStrategy(StrEnum):
    """How the delay grows with the attempt number."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    CONSTANT = "constant"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Immutable retry configuration.

    ``max_attempts`` counts the first call, so ``max_attempts=1`` never
    retries.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    coefficient: float = 2.0
    retry_on: frozenset[ErrorKind] = frozenset({ErrorKind.TRANSIENT})

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be within [0, 1]")

    def applies_to(self, exc: BaseException) -> bool:
        kind = error_kind_of(exc)
        return kind is not None and kind in self.retry_on

    def replace(self, **changes: Any) -> RetryPolicy:
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryPolicy:
        """Build a policy from a config mapping, ignoring unknown keys."""
        kwargs: dict[str, Any] = {}
        for key in ("max_attempts", "base_delay", "max_delay", "jitter", "coefficient"):
            if key in data and data[key] is not None:
                kwargs[key] = data[key]
        if "strategy" in data and data["strategy"]:
            kwargs["strategy"] = BackoffStrategy(str(data["strategy"]))
        if "retry_on" in data and data["retry_on"] is not None:
            kwargs["retry_on"] = frozenset(ErrorKind(str(k)) for k in data["retry_on"])
        return cls(**kwargs)


NO_RETRY = RetryPolicy(
    max_attempts=1,
    base_delay=0.0,
    max_delay=0.0,
    jitter=0.0,
    strategy=BackoffStrategy.NONE,
    retry_on=frozenset(),
)

# Same-backend retry defaults per kind. Kinds that switch backend never
# retry in place; the manager fails over instead.
DEFAULT_POLICIES: dict[ErrorKind, RetryPolicy] = {
    ErrorKind.TRANSIENT: RetryPolicy(
        max_attempts=4,
        base_delay=1.0,
        max_delay=30.0,
        jitter=0.1,
        strategy=BackoffStrategy.EXPONENTIAL,
    ),
    ErrorKind.RATE_LIMITED: NO_RETRY,
    ErrorKind.AUTH_EXPIRED: NO_RETRY,
    ErrorKind.QUOTA_EXCEEDED: NO_RETRY,
    ErrorKind.PERMANENT: NO_RETRY,
}


def default_policy_for(kind: ErrorKind) -> RetryPolicy:
    return DEFAULT_POLICIES.get(kind, NO_RETRY)


def error_kind_of(exc: BaseException) -> ErrorKind | None:
    """Map an exception onto the error taxonomy, or None if unclassified."""
    if isinstance(exc, ProviderError):
        return exc.kind
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TRANSIENT
    return None


def base_delay(attempt: int, policy: RetryPolicy) -> float:
    """Delay before retry number ``attempt`` (1-based), without jitter."""
    attempt = max(attempt, 1)
    if policy.strategy is BackoffStrategy.NONE:
        return 0.0
    if policy.strategy is BackoffStrategy.CONSTANT:
        raw = policy.base_delay
    elif policy.strategy is BackoffStrategy.LINEAR:
        raw = policy.base_delay * attempt
    else:
        try:
            raw = policy.base_delay * (policy.coefficient ** (attempt - 1))
        except OverflowError:
            raw = policy.max_delay
    return min(raw, policy.max_delay)


def next_delay(
    attempt: int,
    policy: RetryPolicy,
    *,
    rng: random.Random | None = None,
) -> float:
    """Delay in seconds before retry number ``attempt``, jittered and capped."""
    delay = base_delay(attempt, policy)
    if delay <= 0 or policy.jitter <= 0:
        return delay
    uniform = rng.uniform if rng is not None else random.uniform
    factor = uniform(1.0 - policy.jitter, 1.0 + policy.jitter)
    return max(0.0, min(delay * factor, policy.max_delay))


class wait_policy(wait_base):
    """tenacity wait strategy delegating to :func:`next_delay`."""

    def __init__(self, policy: RetryPolicy, rng: random.Random | None = None) -> None:
        self.policy = policy
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        return next_delay(retry_state.attempt_number, self.policy, rng=self.rng)


def _retrying_kwargs(
    policy: RetryPolicy,
    on_retry: RetryCallback | None,
    rng: random.Random | None,
) -> dict[str, Any]:
    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        logger.warning(
            "Attempt %d/%d failed (%s); retrying in %.2fs",
            state.attempt_number,
            policy.max_attempts,
            exc,
            delay,
        )
        if on_retry is not None and exc is not None:
            on_retry(state.attempt_number, exc, delay)

    return {
        "stop": stop_after_attempt(policy.max_attempts),
        "wait": wait_policy(policy, rng),
        "retry": retry_if_exception(policy.applies_to),
        "before_sleep": _before_sleep,
        "reraise": True,
    }


async def retry(
    policy: RetryPolicy,
    operation: Callable[[], Awaitable[T]],
    *,
    on_retry: RetryCallback | None = None,
    rng: random.Random | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Call ``operation`` until it succeeds or the policy gives up.

    Errors outside ``policy.retry_on``, and the error of the last allowed
    attempt, propagate unchanged. Only use with operations that are safe
    to repeat.
    """
    retrying = AsyncRetrying(sleep=sleep, **_retrying_kwargs(policy, on_retry, rng))
    async for attempt in retrying:
        with attempt:
            result = await operation()
    return result


def retry_sync(
    policy: RetryPolicy,
    operation: Callable[[], T],
    *,
    on_retry: RetryCallback | None = None,
    rng: random.Random | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Blocking counterpart of :func:`retry`."""
    retrying = Retrying(sleep=sleep, **_retrying_kwargs(policy, on_retry, rng))
    for attempt in retrying:
        with attempt:
            result = operation()
    return result
