"""Prompt assembly for each work loop iteration."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from forgeloop.core.verification import VerificationReport
from forgeloop.providers.base import COMPLETION_MARKER

TRUNCATION_SUFFIX = "\n...(truncated)"
MAX_FAILURE_OUTPUT = 4000

RECOVERY_STRATEGIES: dict[str, str] = {
    "build": "Fix the build errors first; nothing else can be verified until the project builds.",
    "test": "Fix the failing tests or the code under test. Do not delete, skip or weaken tests.",
    "lint": "Fix the reported lint violations in the code. Do not disable rules.",
    "format": "Run the project formatter over the files you changed.",
    "docs": "Update the documentation so it matches the code.",
    "backend": "The previous attempt did not finish. Continue from the current state of the workspace.",
}


def load_style_guide(path: str | None, workspace: Path) -> str | None:
    if not path:
        return None
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = workspace / candidate
    try:
        text = candidate.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return text or None


def style_reminder_due(iteration: int, interval: int) -> bool:
    """Every ``interval``-th iteration, never the first."""
    return interval > 0 and iteration > 1 and iteration % interval == 0


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_SUFFIX


def build_diagnostic(report: VerificationReport, iteration: int) -> str:
    """Failure context fed into the next iteration's prompt."""
    failures = report.required_failures or report.failures
    counts: dict[str, int] = {}
    for failure in failures:
        counts[failure.kind] = counts.get(failure.kind, 0) + 1

    lines = [
        f"## Fix-Forward Iteration {iteration}",
        "",
        "The following checks failed after your last change: "
        + ", ".join(f"{kind} ({count})" for kind, count in counts.items()),
        "",
    ]
    for failure in failures:
        lines.append(f"### {failure.kind}: `{failure.command}` (exit code {failure.exit_code})")
        lines.append("```")
        lines.append(failure.output.strip()[-MAX_FAILURE_OUTPUT:])
        lines.append("```")
        lines.append("")

    lines.append("### Recovery strategy")
    for kind in counts:
        lines.append(f"- {RECOVERY_STRATEGIES.get(kind, RECOVERY_STRATEGIES['test'])}")
    lines.append("")
    lines.append("Do not roll back changes. Fix forward from the current state.")
    return "\n".join(lines)


def build_error_diagnostic(error: str, iteration: int) -> str:
    return "\n".join([
        f"## Fix-Forward Iteration {iteration}",
        "",
        "The previous attempt ended with an error:",
        "```",
        error.strip()[-MAX_FAILURE_OUTPUT:],
        "```",
        "",
        f"- {RECOVERY_STRATEGIES['backend']}",
        "",
        "Do not roll back changes. Fix forward from the current state.",
    ])


def build_unfinished_note(iteration: int) -> str:
    return "\n".join([
        f"## Iteration {iteration} Review",
        "",
        "All checks pass, but the task was not marked complete. Finish any remaining "
        "work, or confirm completion if nothing is left.",
    ])


def build_prompt(
    *,
    task: str,
    step_name: str,
    iteration: int,
    max_iterations: int,
    instructions: Sequence[str] = (),
    diagnostic: str | None = None,
    style_guide: str | None = None,
    extra_context: str | None = None,
) -> str:
    sections = [
        f"# Task: {step_name}",
        f"Iteration {iteration} of {max_iterations}.",
        task.strip(),
    ]
    if extra_context:
        sections.append(f"## Context\n\n{extra_context.strip()}")
    if instructions:
        numbered = "\n".join(f"{i}. {text.strip()}" for i, text in enumerate(instructions, 1))
        sections.append(f"## Additional Instructions\n\n{numbered}")
    if diagnostic:
        sections.append(diagnostic)
    if style_guide:
        sections.append(f"## Style Guide Reminder\n\n{style_guide}")
    sections.append(
        "## Completion\n\n"
        "When the task is fully implemented and every check passes, end your reply "
        f"with a line containing exactly:\n{COMPLETION_MARKER}"
    )
    return "\n\n".join(sections) + "\n"
