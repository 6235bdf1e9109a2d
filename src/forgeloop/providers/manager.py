"""Provider selection, retry and failover.

The manager owns one :class:`ProviderHealth` and one :class:`CircuitBreaker`
per adapter. Each request goes to the active adapter unless it is rate
limited, its circuit is open or its health score has dropped below
``health_threshold``; failures are handled by kind:

- transient: retried on the same adapter with backoff, then failed over
- rate_limited: fail over; with nothing left, wait for the earliest reset
- auth_expired / quota_exceeded: open the circuit and fail over; fatal if
  nothing else is usable
- permanent: raised to the caller untouched
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from forgeloop.errors import (
    CancellationError,
    ConfigurationError,
    ErrorKind,
    NoProviderAvailableError,
    ProviderError,
)
from forgeloop.providers.base import AdapterResponse, ProviderAdapter, ProviderHealth, SendOptions
from forgeloop.providers.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from forgeloop.providers.reset_time import DEFAULT_RESET_SECONDS
from forgeloop.utilities.backoff import DEFAULT_POLICIES, RetryPolicy, retry
from forgeloop.utilities.condition_wait import wait_for

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_THRESHOLD = 50.0
DEFAULT_WAIT_POLL_INTERVAL = 1.0

# Fatal when nothing else is usable; the circuit is opened at once.
DISABLING_KINDS = frozenset({ErrorKind.AUTH_EXPIRED, ErrorKind.QUOTA_EXCEEDED})


@dataclass(slots=True)
class ProviderSwitch:
    """One failover decision, kept for observability."""

    from_provider: str
    to_provider: str
    reason: str
    kind: ErrorKind | None
    timestamp: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_provider,
            "to": self.to_provider,
            "reason": self.reason,
            "kind": str(self.kind) if self.kind else None,
            "timestamp": self.timestamp,
        }


class ProviderManager:
    """Routes prompts across adapters using health, circuit and rate-limit state.

    Safe to share between sessions: health records and breakers carry their
    own locks and the manager's routing state is guarded by ``_lock``. The
    lock is never held across an ``await``.

    ``max_rate_limit_wait`` caps how long :meth:`send` waits for a backend
    to come back when none is usable; ``None`` waits for the earliest reset.
    """

    def __init__(
        self,
        adapters: Sequence[ProviderAdapter],
        *,
        health_threshold: float = DEFAULT_HEALTH_THRESHOLD,
        retry_policies: Mapping[ErrorKind, RetryPolicy] | None = None,
        default_reset_seconds: float = DEFAULT_RESET_SECONDS,
        max_rate_limit_wait: float | None = None,
        circuit_breaker: CircuitBreakerConfig | None = None,
        wait_poll_interval: float = DEFAULT_WAIT_POLL_INTERVAL,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not adapters:
            raise ConfigurationError("ProviderManager needs at least one adapter")
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters:
            if adapter.name in self._adapters:
                raise ConfigurationError(f"Duplicate provider name: {adapter.name}")
            self._adapters[adapter.name] = adapter
        self._health = {name: ProviderHealth(provider=name) for name in self._adapters}
        self._breakers = {
            name: CircuitBreaker(name, circuit_breaker, clock=clock) for name in self._adapters
        }
        self.health_threshold = health_threshold
        self.retry_policies: dict[ErrorKind, RetryPolicy] = dict(DEFAULT_POLICIES)
        if retry_policies:
            self.retry_policies.update(retry_policies)
        self.default_reset_seconds = default_reset_seconds
        self.max_rate_limit_wait = max_rate_limit_wait
        self.wait_poll_interval = wait_poll_interval
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._active = next(iter(self._adapters))
        self._disabled: dict[str, ErrorKind] = {}
        self._switches: list[ProviderSwitch] = []

    # Introspection

    @property
    def adapters(self) -> list[ProviderAdapter]:
        return list(self._adapters.values())

    @property
    def active_name(self) -> str:
        with self._lock:
            return self._active

    @property
    def active_adapter(self) -> ProviderAdapter:
        return self._adapters[self.active_name]

    def health(self, name: str) -> ProviderHealth:
        return self._health[name]

    def health_score(self, name: str) -> float:
        return self._health[name].health_score

    def circuit(self, name: str) -> CircuitBreaker:
        return self._breakers[name]

    @property
    def switch_history(self) -> list[ProviderSwitch]:
        with self._lock:
            return list(self._switches)

    def health_report(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            disabled = dict(self._disabled)
        report: dict[str, dict[str, Any]] = {}
        for name, health in self._health.items():
            entry = health.snapshot()
            entry["disabled"] = str(disabled[name]) if name in disabled else None
            entry["circuit"] = self._breakers[name].snapshot()
            entry["active"] = name == self.active_name
            report[name] = entry
        return report

    def reset_health(self, name: str | None = None) -> None:
        """Reset counters, close the circuit and re-enable one adapter, or all of them."""
        names = [name] if name else list(self._health)
        with self._lock:
            for item in names:
                self._health[item].reset()
                self._breakers[item].reset()
                self._disabled.pop(item, None)

    # Selection

    def is_usable(
        self,
        name: str,
        *,
        required_capabilities: Iterable[str] = (),
        now: float | None = None,
    ) -> bool:
        adapter = self._adapters[name]
        if not self._breakers[name].can_execute():
            return False
        if self._health[name].is_rate_limited(self._clock() if now is None else now):
            return False
        if not adapter.capabilities().satisfies(required_capabilities):
            return False
        return adapter.available()

    def _candidates(
        self,
        *,
        exclude: Iterable[str] = (),
        required_capabilities: Iterable[str] = (),
    ) -> list[str]:
        excluded = set(exclude)
        required = tuple(required_capabilities)
        now = self._clock()
        usable = [
            name
            for name in self._adapters
            if name not in excluded
            and self.is_usable(name, required_capabilities=required, now=now)
        ]
        # sorted() is stable: ties keep configuration order.
        return sorted(usable, key=lambda name: self._health[name].health_score, reverse=True)

    def select(self, required_capabilities: Iterable[str] = ()) -> ProviderAdapter:
        """Pick the adapter for the next request."""
        required = tuple(required_capabilities)
        active = self.active_name
        active_usable = self.is_usable(active, required_capabilities=required)
        if active_usable and self._health[active].health_score >= self.health_threshold:
            return self._adapters[active]

        candidates = self._candidates(exclude=[active], required_capabilities=required)
        healthy = [n for n in candidates if self._health[n].health_score >= self.health_threshold]
        if healthy:
            reason = "active provider unhealthy" if active_usable else "active provider unusable"
            return self._switch_to(healthy[0], reason, None)
        if active_usable:
            return self._adapters[active]
        if candidates:
            return self._switch_to(candidates[0], "active provider unusable", None)
        raise NoProviderAvailableError(
            "No provider available: every backend is rate limited, disabled or unavailable"
        )

    def _switch_to(self, name: str, reason: str, kind: ErrorKind | None) -> ProviderAdapter:
        with self._lock:
            previous = self._active
            if previous != name:
                self._active = name
                self._switches.append(
                    ProviderSwitch(
                        from_provider=previous,
                        to_provider=name,
                        reason=reason,
                        kind=kind,
                        timestamp=datetime.now(UTC).isoformat(),
                    )
                )
        if previous != name:
            logger.warning("Switching provider %s -> %s: %s", previous, name, reason)
        return self._adapters[name]

    # Requests

    async def send(
        self,
        prompt: str,
        options: SendOptions | None = None,
        *,
        required_capabilities: Iterable[str] = (),
        should_stop: Callable[[], bool] | None = None,
    ) -> AdapterResponse:
        """Send ``prompt`` to the best adapter, failing over as needed.

        When nothing is usable but some adapter will be again (rate limit
        reset, circuit half-open), waits for it while polling
        ``should_stop``; a true result raises :class:`CancellationError`.

        Raises the original :class:`ProviderError` for permanent failures
        and for transient failures once every adapter has been tried;
        raises :class:`NoProviderAvailableError` when failover runs out.
        """
        required = tuple(required_capabilities)
        tried: set[str] = set()
        while True:
            try:
                adapter = self.select(required)
            except NoProviderAvailableError as exc:
                await self._wait_until_ready(required, should_stop, exc)
                tried.clear()
                continue
            try:
                return await self._send_with_retry(adapter, prompt, options)
            except ProviderError as exc:
                tried.add(adapter.name)
                self._handle_failure(adapter, exc, tried, required)

    def _handle_failure(
        self,
        adapter: ProviderAdapter,
        exc: ProviderError,
        tried: set[str],
        required: tuple[str, ...],
    ) -> None:
        """Prepare the next attempt, or raise when there is none."""
        kind = exc.kind
        if kind is ErrorKind.PERMANENT:
            logger.error("Permanent failure from %s: %s", adapter.name, adapter.redact_secrets(str(exc)))
            raise exc

        if kind is ErrorKind.RATE_LIMITED:
            now = self._clock()
            until = exc.reset_at if exc.reset_at and exc.reset_at > now else None
            until = until or now + self.default_reset_seconds
            self._health[adapter.name].mark_rate_limited(until)
        elif kind in DISABLING_KINDS:
            with self._lock:
                self._disabled[adapter.name] = kind
            self._breakers[adapter.name].trip(str(kind))

        fallback = self._candidates(exclude=tried, required_capabilities=required)
        if fallback:
            self._switch_to(fallback[0], f"{kind} on {adapter.name}", kind)
            return

        if kind is ErrorKind.RATE_LIMITED:
            # The next select() fails and send() waits for the reset.
            return
        if kind is ErrorKind.TRANSIENT:
            raise exc
        raise NoProviderAvailableError(
            f"No provider available after {kind} on {adapter.name}: {exc}",
            kind=kind,
        ) from exc

    def _seconds_until_ready(self, required: tuple[str, ...]) -> tuple[float, ErrorKind] | None:
        """Shortest wait until some adapter is usable again, and what blocks it.

        Adapters disabled for auth or quota, unavailable binaries and
        missing capabilities never lift on their own and are skipped.
        """
        now = self._clock()
        with self._lock:
            disabled = set(self._disabled)
        best: tuple[float, ErrorKind] | None = None
        for name, adapter in self._adapters.items():
            if name in disabled:
                continue
            if not adapter.capabilities().satisfies(required) or not adapter.available():
                continue
            until = self._health[name].rate_limited_until
            rate_wait = max(until - now, 0.0) if until is not None else 0.0
            circuit_wait = self._breakers[name].seconds_until_retry()
            wait = max(rate_wait, circuit_wait)
            kind = ErrorKind.RATE_LIMITED if rate_wait >= circuit_wait else ErrorKind.TRANSIENT
            if best is None or wait < best[0]:
                best = (wait, kind)
        return best

    async def _wait_until_ready(
        self,
        required: tuple[str, ...],
        should_stop: Callable[[], bool] | None,
        exc: NoProviderAvailableError,
    ) -> None:
        ready = self._seconds_until_ready(required)
        if ready is None:
            raise exc
        wait, kind = ready
        if self.max_rate_limit_wait is not None and wait > self.max_rate_limit_wait:
            raise NoProviderAvailableError(
                f"No provider available for {wait:.0f}s "
                f"(wait limit {self.max_rate_limit_wait:.0f}s, blocked by {kind})",
                kind=kind,
            ) from exc

        logger.warning("No provider usable; waiting %.0fs for %s to lift", wait, kind)
        stopped = await wait_for(
            should_stop or (lambda: False),
            max(wait, self.wait_poll_interval),
            self.wait_poll_interval,
            clock=self._clock,
            sleep=self._sleep,
        )
        if stopped:
            raise CancellationError("Cancelled while waiting for a provider", forced=False)

    async def _send_with_retry(
        self,
        adapter: ProviderAdapter,
        prompt: str,
        options: SendOptions | None,
    ) -> AdapterResponse:
        health = self._health[adapter.name]
        breaker = self._breakers[adapter.name]

        async def _attempt() -> AdapterResponse:
            started = time.monotonic()
            try:
                response = await adapter.send(prompt, options)
            except ProviderError as exc:
                health.record_failure(
                    time.monotonic() - started,
                    exc.kind,
                    message=adapter.redact_secrets(str(exc)),
                    rate_limited_until=exc.reset_at,
                )
                if exc.kind in (ErrorKind.TRANSIENT, ErrorKind.PERMANENT):
                    breaker.record_failure(str(exc.kind))
                raise
            except (OSError, TimeoutError) as exc:
                kind = adapter.classify_error(exc)
                message = adapter.redact_secrets(str(exc) or type(exc).__name__)
                health.record_failure(time.monotonic() - started, kind, message=message)
                breaker.record_failure(str(kind))
                raise ProviderError(message, kind=kind, provider=adapter.name) from exc
            except Exception as exc:
                health.record_failure(
                    time.monotonic() - started,
                    ErrorKind.TRANSIENT,
                    message=adapter.redact_secrets(str(exc)),
                )
                breaker.record_failure(type(exc).__name__)
                raise
            health.record_success(
                time.monotonic() - started,
                tokens=response.tokens,
                cost=response.cost,
            )
            breaker.record_success()
            if breaker.state is CircuitState.CLOSED:
                with self._lock:
                    self._disabled.pop(adapter.name, None)
            if not response.provider:
                response.provider = adapter.name
            return response

        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            logger.info(
                "Retrying %s after transient failure (attempt %d, %.1fs): %s",
                adapter.name, attempt, delay, adapter.redact_secrets(str(exc)),
            )

        policy = self.retry_policies.get(ErrorKind.TRANSIENT, DEFAULT_POLICIES[ErrorKind.TRANSIENT])
        return await retry(policy, _attempt, on_retry=_on_retry, sleep=self._sleep)

    async def terminate(self) -> None:
        """Kill in-flight backend processes on every adapter."""
        await asyncio.gather(*(adapter.terminate() for adapter in self._adapters.values()))
