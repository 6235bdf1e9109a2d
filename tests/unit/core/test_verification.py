"""Tests for verification reports."""

from __future__ import annotations

from forgeloop.config import VerificationConfig
from forgeloop.core.verification import CheckResult, CommandVerifier, VerificationReport, Verifier


def _report(*results: CheckResult) -> VerificationReport:
    return VerificationReport(results=list(results))


def test_empty_report_passes() -> None:
    report = _report()
    assert report.success
    assert report.summary() == "no checks configured"


def test_optional_failures_do_not_fail_report() -> None:
    report = _report(
        CheckResult(kind="test", success=True),
        CheckResult(kind="docs", success=False, required=False),
    )
    assert report.success
    assert [r.kind for r in report.failures] == ["docs"]
    assert report.required_failures == []


def test_required_failure() -> None:
    report = _report(
        CheckResult(kind="test", success=False, output="boom", command="pytest"),
        CheckResult(kind="lint", success=True, command="ruff check ."),
    )
    assert not report.success
    assert report.passed_count == 1
    assert report.summary() == "1/2 checks passed (failed: test)"
    assert set(report.by_kind()) == {"test", "lint"}
    assert "[test] pytest\nboom" in report.output


def test_command_verifier_is_a_verifier() -> None:
    assert isinstance(CommandVerifier(), Verifier)


def test_required_defaults() -> None:
    config = VerificationConfig(required={"docs": False})
    assert config.is_required("test")
    assert not config.is_required("docs")
