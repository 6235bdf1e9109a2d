"""Verification collaborator: runs the project's checks in a workspace.

Each check kind (test, lint, ...) maps to zero or more shell commands. A
kind with no commands is skipped, not failed. The work loop only counts
a pass when every required check succeeds.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from forgeloop.config import CHECK_KINDS, VerificationConfig
from forgeloop.errors import VerificationError

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = -1


@dataclass(slots=True)
class CheckResult:
    """Outcome of a single verification command."""

    kind: str
    success: bool
    output: str = ""
    exit_code: int | None = 0
    command: str = ""
    duration: float = 0.0
    required: bool = True

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "success": self.success,
            "exit_code": self.exit_code,
            "command": self.command,
            "duration": round(self.duration, 3),
            "required": self.required,
        }


@dataclass(slots=True)
class VerificationReport:
    """All check results for one iteration."""

    results: list[CheckResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results if r.required)

    @property
    def failures(self) -> list[CheckResult]:
        return [r for r in self.results if not r.success]

    @property
    def required_failures(self) -> list[CheckResult]:
        return [r for r in self.results if not r.success and r.required]

    @property
    def passed_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def output(self) -> str:
        return "\n".join(
            f"[{r.kind}] {r.command}\n{r.output}".rstrip() for r in self.results
        )

    def by_kind(self) -> dict[str, list[CheckResult]]:
        grouped: dict[str, list[CheckResult]] = {}
        for result in self.results:
            grouped.setdefault(result.kind, []).append(result)
        return grouped

    def summary(self) -> str:
        if not self.results:
            return "no checks configured"
        failed = ", ".join(sorted({r.kind for r in self.required_failures}))
        status = "all passed" if self.success else f"failed: {failed}"
        return f"{self.passed_count}/{len(self.results)} checks passed ({status})"


@runtime_checkable
class Verifier(Protocol):
    async def run(self, workspace: Path, config: VerificationConfig) -> VerificationReport: ...


class CommandVerifier:
    """Runs configured shell commands, one process group per command."""

    def __init__(self, *, env: dict[str, str] | None = None) -> None:
        self.env = env

    async def run(self, workspace: Path, config: VerificationConfig) -> VerificationReport:
        report = VerificationReport()
        for kind in CHECK_KINDS:
            for command in config.commands_by_kind()[kind]:
                result = await self.run_command(
                    kind,
                    command,
                    workspace,
                    timeout=config.timeout,
                    max_output_chars=config.max_output_chars,
                )
                result.required = config.is_required(kind)
                report.results.append(result)
        logger.info("Verification in %s: %s", workspace, report.summary())
        return report

    async def run_command(
        self,
        kind: str,
        command: str,
        workspace: Path,
        *,
        timeout: float,
        max_output_chars: int = 8000,
    ) -> CheckResult:
        started = time.monotonic()
        env = {**os.environ, **self.env} if self.env else None
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(workspace),
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            raise VerificationError(
                f"Cannot run {kind} command {command!r} in {workspace}: {exc}", check=kind,
            ) from exc
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            await _kill_group(proc)
            return CheckResult(
                kind=kind,
                success=False,
                output=f"Command timed out after {timeout}s",
                exit_code=TIMEOUT_EXIT_CODE,
                command=command,
                duration=time.monotonic() - started,
            )
        except BaseException:
            await _kill_group(proc)
            raise

        output = (stdout or b"").decode("utf-8", errors="replace")
        if len(output) > max_output_chars:
            # The end of a test run carries the failure summary.
            output = "... (truncated)\n" + output[-max_output_chars:]
        return CheckResult(
            kind=kind,
            success=proc.returncode == 0,
            output=output,
            exit_code=proc.returncode,
            command=command,
            duration=time.monotonic() - started,
        )


async def _kill_group(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        os.killpg(proc.pid, signal.SIGKILL)
    await proc.wait()
