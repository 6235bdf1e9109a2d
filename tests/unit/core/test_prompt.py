"""Tests for prompt assembly."""

from __future__ import annotations

from pathlib import Path

from forgeloop.core.prompt import (
    build_diagnostic,
    build_error_diagnostic,
    build_prompt,
    load_style_guide,
    style_reminder_due,
    truncate,
)
from forgeloop.core.verification import CheckResult, VerificationReport
from forgeloop.providers.base import COMPLETION_MARKER


def test_style_reminder_cadence() -> None:
    due = [i for i in range(1, 21) if style_reminder_due(i, 5)]
    assert due == [5, 10, 15, 20]
    assert not style_reminder_due(1, 1)
    assert not style_reminder_due(10, 0)


def test_truncate() -> None:
    assert truncate("short", 10) == "short"
    assert truncate("x" * 1200, 1000) == "x" * 1000 + "\n...(truncated)"


def test_load_style_guide(tmp_path: Path) -> None:
    (tmp_path / "STYLE.md").write_text("Use snake_case.\n", encoding="utf-8")
    assert load_style_guide("STYLE.md", tmp_path) == "Use snake_case."
    assert load_style_guide("missing.md", tmp_path) is None
    assert load_style_guide(None, tmp_path) is None


def test_build_prompt_sections_in_order() -> None:
    prompt = build_prompt(
        task="Add a login form.",
        step_name="implementation",
        iteration=2,
        max_iterations=10,
        instructions=["Use the existing Button component", "Keep it accessible"],
        diagnostic="## Fix-Forward Iteration 1",
        style_guide="Prefer small functions.",
        extra_context="React app",
    )
    order = [
        "# Task: implementation",
        "Iteration 2 of 10.",
        "Add a login form.",
        "## Context",
        "## Additional Instructions",
        "1. Use the existing Button component",
        "2. Keep it accessible",
        "## Fix-Forward Iteration 1",
        "## Style Guide Reminder",
        COMPLETION_MARKER,
    ]
    positions = [prompt.index(marker) for marker in order]
    assert positions == sorted(positions)


def test_build_prompt_omits_empty_sections() -> None:
    prompt = build_prompt(task="t", step_name="s", iteration=1, max_iterations=1)
    assert "## Additional Instructions" not in prompt
    assert "## Style Guide Reminder" not in prompt
    assert "## Context" not in prompt


def test_build_diagnostic() -> None:
    report = VerificationReport(results=[
        CheckResult(kind="test", success=False, output="assert 1 == 2", exit_code=1, command="pytest"),
        CheckResult(kind="lint", success=False, output="E501", exit_code=1, command="ruff check"),
        CheckResult(kind="build", success=True, command="make"),
    ])
    text = build_diagnostic(report, 3)
    assert text.startswith("## Fix-Forward Iteration 3")
    assert "test (1), lint (1)" in text
    assert "assert 1 == 2" in text
    assert "`ruff check` (exit code 1)" in text
    assert "Do not delete, skip or weaken tests." in text
    assert "Do not roll back changes." in text
    assert "make" not in text


def test_build_error_diagnostic() -> None:
    text = build_error_diagnostic("ProviderTimeoutError: timed out", 4)
    assert "## Fix-Forward Iteration 4" in text
    assert "timed out" in text
