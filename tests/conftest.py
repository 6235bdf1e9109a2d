"""Global test fixtures for forgeloop."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterable
from pathlib import Path

import pytest

from forgeloop.config import VerificationConfig
from forgeloop.core.verification import CheckResult, VerificationReport


class ScriptedVerifier:
    """Verifier that replays pass/fail outcomes, repeating the last one."""

    def __init__(self, outcomes: Iterable[bool] = (True,), *, kind: str = "test") -> None:
        self.outcomes = list(outcomes) or [True]
        self.kind = kind
        self.calls: list[Path] = []

    async def run(self, workspace: Path, config: VerificationConfig) -> VerificationReport:
        index = min(len(self.calls), len(self.outcomes) - 1)
        self.calls.append(Path(workspace))
        passed = self.outcomes[index]
        return VerificationReport(results=[
            CheckResult(
                kind=self.kind,
                success=passed,
                output="1 passed" if passed else "FAILED tests/test_app.py::test_add",
                exit_code=0 if passed else 1,
                command="pytest -q",
            )
        ])


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def tmp_workdir(tmp_path: Path) -> Path:
    """Provide a temporary working directory for file operation tests."""
    return tmp_path


@pytest.fixture
def make_verifier() -> Callable[..., ScriptedVerifier]:
    return ScriptedVerifier


@pytest.fixture
def no_sleep() -> Callable[[float], object]:
    """Async sleep replacement so retry backoff does not slow tests down."""
    return _no_sleep


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in [key for key in os.environ if key.startswith("FORGELOOP_")]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
