"""Tests for provider health, capabilities and base adapter behaviour."""

from __future__ import annotations

import time

import pytest

from forgeloop.errors import ErrorKind
from forgeloop.providers.base import (
    COMPLETION_MARKER,
    BaseProviderAdapter,
    ProviderAdapter,
    ProviderCapabilities,
    ProviderHealth,
)
from forgeloop.providers.mock import MockProviderAdapter


class TestProviderHealth:
    def test_fresh_health_is_perfect(self) -> None:
        health = ProviderHealth(provider="p")
        assert health.health_score == 100.0
        assert health.success_rate == 1.0

    def test_success_and_failure_counters(self) -> None:
        health = ProviderHealth(provider="p")
        health.record_success(1.0, tokens=100, cost=0.5)
        health.record_failure(2.0, ErrorKind.TRANSIENT, message="boom")
        assert health.total_requests == 2
        assert health.successful_requests == 1
        assert health.failed_requests == 1
        assert health.total_tokens == 100
        assert health.average_response_time == 1.5
        assert health.last_error_kind is ErrorKind.TRANSIENT

    def test_score_formula(self) -> None:
        health = ProviderHealth(provider="p")
        health.record_success(1.0)
        health.record_failure(1.0, ErrorKind.RATE_LIMITED)
        # success 0.5*50 + (1-0.5)*30 + (100-10)*0.2
        assert health.health_score == pytest.approx(25 + 15 + 18)

    def test_rate_limit_window(self) -> None:
        health = ProviderHealth(provider="p")
        now = time.time()
        health.record_failure(0.1, ErrorKind.RATE_LIMITED, rate_limited_until=now + 60)
        assert health.rate_limited_requests == 1
        assert health.is_rate_limited(now)
        assert not health.is_rate_limited(now + 61)
        health.clear_rate_limit()
        assert not health.is_rate_limited(now)

    def test_counters_only_reset_explicitly(self) -> None:
        health = ProviderHealth(provider="p")
        for _ in range(3):
            health.record_failure(0.0, ErrorKind.TRANSIENT)
        assert health.failed_requests == 3
        health.reset()
        assert health.total_requests == 0
        assert health.health_score == 100.0

    def test_snapshot(self) -> None:
        health = ProviderHealth(provider="p")
        health.record_failure(0.0, ErrorKind.AUTH_EXPIRED)
        snap = health.snapshot()
        assert snap["provider"] == "p"
        assert snap["last_error_kind"] == "auth_expired"
        assert 0 <= snap["health_score"] <= 100


class TestCapabilities:
    def test_supports(self) -> None:
        caps = ProviderCapabilities(reasoning_tiers=("mini", "pro"), supports_mcp=True)
        assert caps.supports("mcp")
        assert not caps.supports("vision")
        assert caps.supports("tier:pro")
        assert not caps.supports("tier:max")
        assert caps.satisfies(["mcp", "tier:mini"])
        assert not caps.satisfies(["mcp", "sessions"])


class TestBaseAdapter:
    def test_mock_satisfies_protocol(self) -> None:
        assert isinstance(MockProviderAdapter(), ProviderAdapter)

    def test_detect_completion_needs_own_line(self) -> None:
        assert BaseProviderAdapter.detect_completion(f"done\n{COMPLETION_MARKER}\n")
        assert not BaseProviderAdapter.detect_completion(f"I will print {COMPLETION_MARKER} later")

    def test_parse_reset_time_defaults_to_a_minute(self) -> None:
        adapter = BaseProviderAdapter()
        before = time.time()
        reset = adapter.parse_reset_time("rate limited")
        assert before + 59 <= reset <= time.time() + 61

    def test_error_metadata_is_redacted(self) -> None:
        adapter = BaseProviderAdapter(name="x")
        meta = adapter.error_metadata(RuntimeError("auth failed for api_key=supersecret"))
        assert "supersecret" not in meta["message"]
        assert meta["provider"] == "x"
        assert meta["error_class"] == "RuntimeError"

    def test_validate_config(self) -> None:
        problems = BaseProviderAdapter.validate_config({
            "type": "free",
            "timeout": -1,
            "error_patterns": {"flaky": ["x"]},
        })
        assert len(problems) == 3
        assert BaseProviderAdapter.validate_config({"type": "subscription", "timeout": 30}) == []

    def test_health_status(self) -> None:
        status = MockProviderAdapter(name="m").health_status()
        assert status["provider"] == "m"
        assert status["available"] is True
        assert status["healthy"] is True
