"""Tests for data-driven error classification."""

from __future__ import annotations

import pytest

from forgeloop.errors import ErrorKind
from forgeloop.providers.backends import ClaudeAdapter, CodexAdapter
from forgeloop.providers.taxonomy import (
    ErrorClassifier,
    classify_message,
    patterns_from_mapping,
)


class TestSharedTaxonomy:
    @pytest.mark.parametrize(
        ("message", "kind"),
        [
            ("Error: 429 Too Many Requests", ErrorKind.RATE_LIMITED),
            ("rate limit exceeded, slow down", ErrorKind.RATE_LIMITED),
            ("Your OAuth token has expired", ErrorKind.AUTH_EXPIRED),
            ("HTTP 401 Unauthorized", ErrorKind.AUTH_EXPIRED),
            ("insufficient_quota: you exceeded your plan", ErrorKind.QUOTA_EXCEEDED),
            ("429: insufficient_quota", ErrorKind.QUOTA_EXCEEDED),
            ("invalid model name 'gpt-99'", ErrorKind.PERMANENT),
            ("bash: claude: command not found", ErrorKind.PERMANENT),
            ("connection reset by peer", ErrorKind.TRANSIENT),
            ("503 Service Unavailable", ErrorKind.TRANSIENT),
            ("something odd happened", ErrorKind.TRANSIENT),
        ],
    )
    def test_classifies(self, message: str, kind: ErrorKind) -> None:
        assert classify_message(message) is kind

    def test_exception_types(self) -> None:
        classifier = ErrorClassifier()
        assert classifier.classify(TimeoutError()) is ErrorKind.TRANSIENT
        assert classifier.classify(ConnectionRefusedError("refused")) is ErrorKind.TRANSIENT

    def test_is_pure(self) -> None:
        classifier = ErrorClassifier()
        message = "usage limit reached, resets 4am"
        results = {classifier.classify(message) for _ in range(10)}
        assert results == {ErrorKind.RATE_LIMITED}


class TestAdapterPatterns:
    def test_adapter_patterns_take_precedence(self) -> None:
        # The shared table calls a 400 permanent; the adapter says transient.
        classifier = ErrorClassifier.with_patterns([(ErrorKind.TRANSIENT, r"status 400 from proxy")])
        assert classifier.classify("status 400 from proxy") is ErrorKind.TRANSIENT
        assert ErrorClassifier().classify("status 400 from proxy") is ErrorKind.PERMANENT

    def test_adapter_patterns_beat_exception_type(self) -> None:
        classifier = ErrorClassifier.with_patterns([(ErrorKind.PERMANENT, r"tls handshake")])
        assert classifier.classify(ConnectionError("tls handshake failed")) is ErrorKind.PERMANENT

    def test_claude_specific(self) -> None:
        adapter = ClaudeAdapter()
        assert adapter.classify_error("API Error: overloaded_error") is ErrorKind.TRANSIENT
        assert adapter.classify_error("5-hour limit reached") is ErrorKind.RATE_LIMITED

    def test_codex_specific(self) -> None:
        assert CodexAdapter().classify_error("stream disconnected before completion") is ErrorKind.TRANSIENT

    def test_configured_patterns_before_builtin(self) -> None:
        adapter = ClaudeAdapter(extra_error_patterns=[(ErrorKind.PERMANENT, r"overloaded_error")])
        assert adapter.classify_error("overloaded_error") is ErrorKind.PERMANENT

    def test_patterns_from_mapping(self) -> None:
        pairs = patterns_from_mapping({"rate_limited": "slow down", "permanent": ["a", "b"]})
        assert pairs == [
            (ErrorKind.RATE_LIMITED, "slow down"),
            (ErrorKind.PERMANENT, "a"),
            (ErrorKind.PERMANENT, "b"),
        ]

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValueError):
            patterns_from_mapping({"flaky": ["x"]})
