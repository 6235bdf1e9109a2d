"""Integration tests for worktree provisioning against a real git repository."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from forgeloop.errors import WorkspaceError
from forgeloop.parallel.workspace import GitWorktreeProvisioner

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]


def _git(repo: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=repo, check=True, capture_output=True, text=True,
    ).stdout.strip()


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    _git(root, "init", "-q")
    _git(root, "config", "user.email", "dev@example.com")
    _git(root, "config", "user.name", "Dev")
    (root / "app.py").write_text("VALUE = 1\n")
    _git(root, "add", "app.py")
    _git(root, "commit", "-q", "-m", "initial")
    return root


def test_create_and_destroy(repo: Path, tmp_path: Path) -> None:
    prov = GitWorktreeProvisioner(repo, tmp_path / "worktrees")

    path = prov.create("feature one")

    assert (path / "app.py").read_text() == "VALUE = 1\n"
    assert _git(path, "rev-parse", "--abbrev-ref", "HEAD") == "forgeloop/feature-one"

    prov.destroy(path)

    assert not path.exists()
    assert "forgeloop/feature-one" not in _git(repo, "branch", "--list")
    assert str(path) not in _git(repo, "worktree", "list")


def test_workspaces_are_isolated(repo: Path, tmp_path: Path) -> None:
    prov = GitWorktreeProvisioner(repo, tmp_path / "worktrees")
    first = prov.create("a")
    second = prov.create("b")

    (first / "app.py").write_text("VALUE = 2\n")

    assert (second / "app.py").read_text() == "VALUE = 1\n"
    assert (repo / "app.py").read_text() == "VALUE = 1\n"
    prov.destroy(first)
    prov.destroy(second)


def test_stale_branch_is_replaced(repo: Path, tmp_path: Path) -> None:
    _git(repo, "branch", "forgeloop/again")
    prov = GitWorktreeProvisioner(repo, tmp_path / "worktrees")

    path = prov.create("again")

    assert _git(path, "rev-parse", "--abbrev-ref", "HEAD") == "forgeloop/again"
    prov.destroy(path)


def test_keeps_branch_when_asked(repo: Path, tmp_path: Path) -> None:
    prov = GitWorktreeProvisioner(repo, tmp_path / "worktrees", delete_branches=False)
    path = prov.create("keep")
    (path / "new.txt").write_text("work")
    _git(path, "add", "new.txt")
    _git(path, "commit", "-q", "-m", "work")

    prov.destroy(path)

    assert "forgeloop/keep" in _git(repo, "branch", "--list")


def test_unknown_base_ref(repo: Path, tmp_path: Path) -> None:
    prov = GitWorktreeProvisioner(repo, tmp_path / "worktrees")
    with pytest.raises(WorkspaceError):
        prov.create("bad", base_ref="does-not-exist")
    assert prov.active == {}
