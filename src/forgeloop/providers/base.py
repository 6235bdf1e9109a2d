"""Provider adapter protocol, capability and health records.

An adapter is a thin capability-polymorphic wrapper over one backend.
Shared behaviour (error taxonomy, secret redaction, reset-time parsing,
activity tracking) is composed into :class:`BaseProviderAdapter` from
standalone helpers rather than inherited from a deep hierarchy.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from forgeloop.errors import ErrorKind
from forgeloop.providers.reset_time import (
    DEFAULT_PARSERS,
    DEFAULT_RESET_SECONDS,
    ResetTimeParser,
    reset_delay,
)
from forgeloop.providers.taxonomy import ErrorClassifier, PatternSpec
from forgeloop.utilities.condition_wait import (
    DEFAULT_STUCK_TIMEOUT,
    ActivityState,
    StuckDetector,
)
from forgeloop.utilities.redaction import DEFAULT_REDACTOR, SecretRedactor

COMPLETION_MARKER = "STATUS: COMPLETE"

VALID_BILLING_TYPES = frozenset({"usage_based", "subscription", "passthrough"})


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True, slots=True)
class ProviderCapabilities:
    """Static feature set of one backend."""

    reasoning_tiers: tuple[str, ...] = ("standard",)
    context_window: int = 200_000
    supports_mcp: bool = False
    supports_dangerous_mode: bool = False
    supports_streaming: bool = False
    supports_sessions: bool = False
    supports_tool_use: bool = True
    supports_vision: bool = False

    def supports(self, capability: str) -> bool:
        if capability.startswith("tier:"):
            return capability[5:] in self.reasoning_tiers
        return bool(getattr(self, f"supports_{capability}", False))

    def satisfies(self, required: Iterable[str]) -> bool:
        return all(self.supports(cap) for cap in required)

    def as_dict(self) -> dict[str, Any]:
        return {
            "reasoning_tiers": list(self.reasoning_tiers),
            "context_window": self.context_window,
            "supports_mcp": self.supports_mcp,
            "supports_dangerous_mode": self.supports_dangerous_mode,
            "supports_streaming": self.supports_streaming,
            "supports_sessions": self.supports_sessions,
            "supports_tool_use": self.supports_tool_use,
            "supports_vision": self.supports_vision,
        }


@dataclass(slots=True)
class SendOptions:
    """Per-call options for :meth:`ProviderAdapter.send`."""

    timeout: float | None = None
    model: str | None = None
    tier: str | None = None
    task_type: str | None = None
    session: str | None = None
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AdapterResponse:
    """Structured result of one backend invocation."""

    output: str
    completed: bool = False
    tokens: int = 0
    cost: float = 0.0
    duration: float = 0.0
    exit_code: int | None = 0
    provider: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProviderHealth:
    """Rolling request counters for one adapter.

    Counters only grow until :meth:`reset`. All mutation happens under the
    instance lock so one manager can be shared by several sessions.
    """

    provider: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rate_limited_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    total_response_time: float = 0.0
    last_request_time: float | None = None
    rate_limited_until: float | None = None
    last_error_kind: ErrorKind | None = None
    last_error: str | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_success(self, duration: float, *, tokens: int = 0, cost: float = 0.0) -> None:
        with self._lock:
            self.total_requests += 1
            self.successful_requests += 1
            self.total_tokens += max(tokens, 0)
            self.total_cost += max(cost, 0.0)
            self.total_response_time += max(duration, 0.0)
            self.last_request_time = time.time()

    def record_failure(
        self,
        duration: float,
        kind: ErrorKind,
        *,
        message: str | None = None,
        rate_limited_until: float | None = None,
    ) -> None:
        with self._lock:
            self.total_requests += 1
            self.failed_requests += 1
            self.total_response_time += max(duration, 0.0)
            self.last_request_time = time.time()
            self.last_error_kind = kind
            self.last_error = message
            if kind is ErrorKind.RATE_LIMITED:
                self.rate_limited_requests += 1
                if rate_limited_until is not None:
                    self.rate_limited_until = rate_limited_until

    def mark_rate_limited(self, until: float) -> None:
        with self._lock:
            self.rate_limited_until = until

    def clear_rate_limit(self) -> None:
        with self._lock:
            self.rate_limited_until = None

    def is_rate_limited(self, now: float | None = None) -> bool:
        with self._lock:
            until = self.rate_limited_until
        return until is not None and until > (time.time() if now is None else now)

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 1.0
        return self.successful_requests / self.total_requests

    @property
    def rate_limit_ratio(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.rate_limited_requests / self.total_requests

    @property
    def average_response_time(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_response_time / self.total_requests

    @property
    def health_score(self) -> float:
        """0-100: success rate (50), inverse rate-limit ratio (30), speed (20)."""
        with self._lock:
            if self.total_requests == 0:
                return 100.0
            response_score = max(100.0 - self.average_response_time * 10.0, 0.0)
            score = (
                self.success_rate * 50.0
                + (1.0 - self.rate_limit_ratio) * 30.0
                + response_score * 0.2
            )
        return max(0.0, min(100.0, score))

    def reset(self) -> None:
        with self._lock:
            self.total_requests = 0
            self.successful_requests = 0
            self.failed_requests = 0
            self.rate_limited_requests = 0
            self.total_tokens = 0
            self.total_cost = 0.0
            self.total_response_time = 0.0
            self.last_request_time = None
            self.rate_limited_until = None
            self.last_error_kind = None
            self.last_error = None

    def snapshot(self) -> dict[str, Any]:
        score = self.health_score
        with self._lock:
            return {
                "provider": self.provider,
                "total_requests": self.total_requests,
                "successful_requests": self.successful_requests,
                "failed_requests": self.failed_requests,
                "rate_limited_requests": self.rate_limited_requests,
                "total_tokens": self.total_tokens,
                "total_cost": round(self.total_cost, 6),
                "average_response_time": round(self.average_response_time, 3),
                "last_request_time": self.last_request_time,
                "rate_limited_until": self.rate_limited_until,
                "last_error_kind": str(self.last_error_kind) if self.last_error_kind else None,
                "health_score": round(score, 2),
            }


@runtime_checkable
class ProviderAdapter(Protocol):
    """Contract every backend adapter satisfies."""

    @property
    def name(self) -> str: ...

    def available(self) -> bool: ...

    def capabilities(self) -> ProviderCapabilities: ...

    async def send(self, prompt: str, options: SendOptions | None = None) -> AdapterResponse: ...

    def classify_error(self, error: BaseException | str) -> ErrorKind: ...

    def redact_secrets(self, text: str) -> str: ...

    def health_status(self) -> dict[str, Any]: ...

    async def terminate(self) -> None: ...

    def parse_reset_time(self, text: str) -> float: ...


class BaseProviderAdapter:
    """Default adapter behaviour shared by concrete backends.

    Subclasses implement :meth:`send` and usually set ``error_patterns``
    to provider-specific ``(kind, regex)`` pairs.
    """

    provider_name = "base"
    display_name = "Base"
    error_patterns: tuple[PatternSpec, ...] = ()
    reset_time_parsers: tuple[ResetTimeParser, ...] = DEFAULT_PARSERS
    default_capabilities = ProviderCapabilities()

    def __init__(
        self,
        *,
        name: str | None = None,
        capabilities: ProviderCapabilities | None = None,
        extra_error_patterns: Iterable[PatternSpec] = (),
        redactor: SecretRedactor | None = None,
        stuck_timeout: float = DEFAULT_STUCK_TIMEOUT,
    ) -> None:
        self._name = name or self.provider_name
        self._capabilities = capabilities or self.default_capabilities
        # Configured patterns go before the built-in ones.
        self._classifier = ErrorClassifier.with_patterns(
            (*tuple(extra_error_patterns), *self.error_patterns)
        )
        self._redactor = redactor or DEFAULT_REDACTOR
        self.activity = StuckDetector(stuck_timeout)

    @property
    def name(self) -> str:
        return self._name

    def available(self) -> bool:
        return True

    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    async def send(self, prompt: str, options: SendOptions | None = None) -> AdapterResponse:
        raise NotImplementedError

    async def terminate(self) -> None:
        return None

    # Errors

    def classify_error(self, error: BaseException | str) -> ErrorKind:
        return self._classifier.classify(error)

    def retryable_error(self, error: BaseException | str) -> bool:
        return self.classify_error(error).retryable

    def error_metadata(self, error: BaseException) -> dict[str, Any]:
        kind = self.classify_error(error)
        return {
            "provider": self.name,
            "error_kind": str(kind),
            "error_class": type(error).__name__,
            "message": self.redact_secrets(str(error)),
            "timestamp": now_iso(),
            "retryable": kind.retryable,
        }

    def redact_secrets(self, text: str) -> str:
        return self._redactor.redact(text)

    def parse_reset_time(self, text: str) -> float:
        """Epoch seconds at which a rate limit described in ``text`` lifts."""
        delay = reset_delay(text, default=DEFAULT_RESET_SECONDS, parsers=self.reset_time_parsers)
        return time.time() + delay

    @staticmethod
    def detect_completion(output: str) -> bool:
        return any(line.strip() == COMPLETION_MARKER for line in output.splitlines())

    # Config / health

    @classmethod
    def validate_config(cls, config: dict[str, Any]) -> list[str]:
        """Return a list of problems with an adapter config mapping."""
        problems: list[str] = []
        billing = config.get("type")
        if billing is not None and billing not in VALID_BILLING_TYPES:
            problems.append(
                f"type must be one of {sorted(VALID_BILLING_TYPES)}, got {billing!r}"
            )
        timeout = config.get("timeout")
        if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
            problems.append("timeout must be a positive number")
        patterns = config.get("error_patterns") or {}
        if not isinstance(patterns, dict):
            problems.append("error_patterns must map an error kind to a list of regexes")
        else:
            for kind in patterns:
                if kind not in {k.value for k in ErrorKind}:
                    problems.append(f"unknown error kind in error_patterns: {kind!r}")
        return problems

    def health_status(self) -> dict[str, Any]:
        available = self.available()
        state = self.activity.state
        return {
            "provider": self.name,
            "available": available,
            "activity": str(state),
            "seconds_since_activity": round(self.activity.seconds_since_activity, 1),
            "healthy": available and state is not ActivityState.STUCK,
        }

    def logging_metadata(self) -> dict[str, Any]:
        caps = self.capabilities()
        return {
            "provider": self.name,
            "display_name": self.display_name,
            "supports_mcp": caps.supports_mcp,
            "available": self.available(),
        }
