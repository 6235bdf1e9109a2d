"""Tests for the per-adapter circuit breaker."""

from __future__ import annotations

import pytest

from forgeloop.providers.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState


class Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def breaker(clock: Clock) -> CircuitBreaker:
    config = CircuitBreakerConfig(failure_threshold=3, reset_timeout=10.0, success_threshold=2)
    return CircuitBreaker("claude", config, clock=clock)


def test_starts_closed(breaker: CircuitBreaker) -> None:
    assert breaker.state is CircuitState.CLOSED
    assert breaker.can_execute()
    assert breaker.seconds_until_retry() == 0.0


def test_opens_after_threshold(breaker: CircuitBreaker) -> None:
    breaker.record_failure("transient")
    breaker.record_failure("transient")
    assert breaker.can_execute()
    breaker.record_failure("transient")
    assert breaker.state is CircuitState.OPEN
    assert not breaker.can_execute()
    assert breaker.reason == "3 consecutive failures (transient)"


def test_success_resets_consecutive_count(breaker: CircuitBreaker) -> None:
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    breaker.record_failure()
    assert breaker.state is CircuitState.CLOSED


def test_open_half_open_closed(breaker: CircuitBreaker, clock: Clock) -> None:
    breaker.trip("auth_expired")
    clock.now += 4
    assert breaker.seconds_until_retry() == pytest.approx(6.0)
    assert not breaker.can_execute()

    clock.now += 6
    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.can_execute()

    breaker.record_success()
    assert breaker.state is CircuitState.HALF_OPEN
    breaker.record_success()
    assert breaker.state is CircuitState.CLOSED
    assert breaker.reason is None


def test_failure_while_half_open_reopens(breaker: CircuitBreaker, clock: Clock) -> None:
    breaker.trip("quota_exceeded")
    clock.now += 10
    assert breaker.state is CircuitState.HALF_OPEN

    breaker.record_failure("transient")
    assert breaker.state is CircuitState.OPEN
    assert breaker.reason == "transient during recovery"
    assert breaker.seconds_until_retry() == pytest.approx(10.0)


def test_reset_and_snapshot(breaker: CircuitBreaker) -> None:
    breaker.trip("manual")
    assert breaker.snapshot() == {"state": "open", "failures": 0, "reason": "manual"}
    breaker.reset()
    assert breaker.snapshot() == {"state": "closed", "failures": 0, "reason": None}
