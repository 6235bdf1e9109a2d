"""Forgeloop error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    PROVIDER = "provider"
    VERIFICATION = "verification"
    WORKSPACE = "workspace"
    SESSION = "session"
    CANCELLATION = "cancellation"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class ErrorKind(StrEnum):
    """Classified backend failure, in retry-priority order."""

    RATE_LIMITED = "rate_limited"
    AUTH_EXPIRED = "auth_expired"
    QUOTA_EXCEEDED = "quota_exceeded"
    TRANSIENT = "transient"
    PERMANENT = "permanent"

    @property
    def retryable(self) -> bool:
        """Only transient failures are retried against the same backend."""
        return self is ErrorKind.TRANSIENT

    @property
    def switches_provider(self) -> bool:
        return self in (
            ErrorKind.RATE_LIMITED,
            ErrorKind.AUTH_EXPIRED,
            ErrorKind.QUOTA_EXCEEDED,
        )


class ForgeloopError(Exception):
    """Base error for all forgeloop exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class ProviderError(ForgeloopError):
    """Classified failure from a backend adapter."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        provider: str | None = None,
        exit_code: int | None = None,
        reset_at: float | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            category=ErrorCategory.PROVIDER,
            retryable=kind.retryable,
            **kwargs,
        )
        self.kind = kind
        self.provider = provider
        self.exit_code = exit_code
        # Wall-clock epoch seconds after which a rate-limited backend may be used again.
        self.reset_at = reset_at

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({str(self)!r}, kind={self.kind!r}, "
            f"provider={self.provider!r})"
        )


class ProviderTimeoutError(ProviderError):
    """Backend did not finish within its start-to-close timeout."""

    def __init__(self, provider: str, timeout: float) -> None:
        super().__init__(
            f"Provider '{provider}' timed out after {timeout}s",
            kind=ErrorKind.TRANSIENT,
            provider=provider,
        )
        self.timeout = timeout


class NoProviderAvailableError(ProviderError):
    """Every configured backend is rate-limited, unhealthy, or unavailable."""

    def __init__(
        self,
        message: str = "No provider available",
        *,
        kind: ErrorKind = ErrorKind.PERMANENT,
    ) -> None:
        super().__init__(message, kind=kind)


class VerificationError(ForgeloopError):
    """A verification command could not be executed at all."""

    def __init__(self, message: str, *, check: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.VERIFICATION, retryable=False)
        self.check = check


class WorkspaceError(ForgeloopError):
    """An isolated workspace could not be provisioned or destroyed."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.WORKSPACE, retryable=False)
        self.path = path


class SessionStateError(ForgeloopError):
    """Session control called in a state that does not allow it."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.SESSION, retryable=False)


class CancellationError(ForgeloopError):
    """Operation was cancelled by user or system.

    ``forced`` is False when the work stopped at a safe point on request.
    """

    def __init__(self, message: str = "Operation cancelled", *, forced: bool = True) -> None:
        super().__init__(message, category=ErrorCategory.CANCELLATION, retryable=False)
        self.forced = forced


class ConfigurationError(ForgeloopError):
    """Invalid or missing configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, retryable=False)


__all__ = [
    "CancellationError",
    "ConfigurationError",
    "ErrorCategory",
    "ErrorKind",
    "ForgeloopError",
    "NoProviderAvailableError",
    "ProviderError",
    "ProviderTimeoutError",
    "SessionStateError",
    "VerificationError",
    "WorkspaceError",
]
