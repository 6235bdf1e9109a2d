"""Isolated workspaces for parallel workstreams.

A provisioner hands out one directory per workstream and guarantees no
two live workstreams share it. Git repositories get a worktree on a
``forgeloop/<slug>`` branch; anything else gets a plain directory copy.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from forgeloop.errors import WorkspaceError

log = logging.getLogger(__name__)

BRANCH_PREFIX = "forgeloop"
COPY_IGNORE = (".git", ".forgeloop", "__pycache__", ".venv", "node_modules")

_SLUG_RE = re.compile(r"[^a-z0-9._-]+")


def slugify(value: str) -> str:
    slug = _SLUG_RE.sub("-", value.strip().lower()).strip("-.")
    if not slug:
        raise WorkspaceError(f"Cannot derive a workspace slug from {value!r}")
    return slug


@runtime_checkable
class WorkspaceProvisioner(Protocol):
    def create(self, workstream_id: str, base_ref: str | None = None) -> Path: ...

    def destroy(self, path: Path) -> None: ...


def _git(repo_root: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=repo_root,
        check=True,
        capture_output=True,
        text=True,
    )


class GitWorktreeProvisioner:
    """One ``git worktree`` per workstream under ``worktrees_root``."""

    def __init__(
        self,
        repo_root: Path,
        worktrees_root: Path,
        *,
        branch_prefix: str = BRANCH_PREFIX,
        delete_branches: bool = True,
    ) -> None:
        self.repo_root = Path(repo_root)
        self.worktrees_root = Path(worktrees_root)
        self.branch_prefix = branch_prefix
        self.delete_branches = delete_branches
        self._branches: dict[Path, str] = {}
        self._lock = threading.Lock()

    def branch_for(self, path: Path) -> str | None:
        with self._lock:
            return self._branches.get(Path(path))

    @property
    def active(self) -> dict[Path, str]:
        with self._lock:
            return dict(self._branches)

    def create(self, workstream_id: str, base_ref: str | None = None) -> Path:
        slug = slugify(workstream_id)
        path = self.worktrees_root / slug
        branch = f"{self.branch_prefix}/{slug}"
        with self._lock:
            if path in self._branches or path.exists():
                raise WorkspaceError(f"Workspace already in use: {path}", path=str(path))
            # Reserve before releasing the lock so a concurrent create fails.
            self._branches[path] = branch

        try:
            self._add_worktree(path, branch, base_ref or "HEAD")
        except WorkspaceError:
            with self._lock:
                self._branches.pop(path, None)
            raise
        log.info("Created worktree %s on branch %s", path, branch)
        return path

    def _add_worktree(self, path: Path, branch: str, base_ref: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._prune()
        try:
            _git(self.repo_root, "worktree", "add", str(path), "-b", branch, base_ref)
            return
        except subprocess.CalledProcessError:
            # Branch may exist from a previous run; delete it and retry once.
            self._delete_branch(branch)
        try:
            _git(self.repo_root, "worktree", "add", str(path), "-b", branch, base_ref)
        except subprocess.CalledProcessError as exc:
            raise WorkspaceError(
                f"git worktree add failed for {path}: {(exc.stderr or '').strip()}", path=str(path),
            ) from exc

    def destroy(self, path: Path) -> None:
        path = Path(path)
        with self._lock:
            branch = self._branches.pop(path, None)
        try:
            _git(self.repo_root, "worktree", "remove", "--force", str(path))
        except subprocess.CalledProcessError as exc:
            log.warning("git worktree remove %s failed: %s", path, (exc.stderr or "").strip())
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
        if branch and self.delete_branches:
            self._delete_branch(branch)
        self._prune()
        log.info("Removed worktree %s", path)

    def _prune(self) -> None:
        try:
            _git(self.repo_root, "worktree", "prune")
        except subprocess.CalledProcessError as exc:
            log.warning("git worktree prune failed: %s", exc.stderr)

    def _delete_branch(self, branch: str) -> None:
        try:
            _git(self.repo_root, "branch", "-D", branch)
        except subprocess.CalledProcessError:
            log.debug("Branch %s not deleted (may not exist)", branch)


class CopyProvisioner:
    """Copies the source tree for each workstream. ``base_ref`` is ignored."""

    def __init__(
        self,
        source: Path,
        workspaces_root: Path,
        *,
        ignore: tuple[str, ...] = COPY_IGNORE,
    ) -> None:
        self.source = Path(source)
        self.workspaces_root = Path(workspaces_root)
        self.ignore = ignore
        self._active: set[Path] = set()
        self._lock = threading.Lock()

    def create(self, workstream_id: str, base_ref: str | None = None) -> Path:
        path = self.workspaces_root / slugify(workstream_id)
        with self._lock:
            if path in self._active or path.exists():
                raise WorkspaceError(f"Workspace already in use: {path}", path=str(path))
            self._active.add(path)
        root = self.workspaces_root.resolve()
        ignore_names = set(self.ignore)

        def _ignore(directory: str, names: list[str]) -> set[str]:
            skipped = {name for name in names if name in ignore_names}
            # Never copy the workspaces root into itself.
            skipped.update(
                name for name in names if (Path(directory) / name).resolve() == root
            )
            return skipped

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(self.source, path, ignore=_ignore, symlinks=True)
        except OSError as exc:
            with self._lock:
                self._active.discard(path)
            raise WorkspaceError(f"Copying workspace to {path} failed: {exc}", path=str(path)) from exc
        log.info("Created workspace copy %s", path)
        return path

    def destroy(self, path: Path) -> None:
        path = Path(path)
        with self._lock:
            self._active.discard(path)
        shutil.rmtree(path, ignore_errors=True)
        log.info("Removed workspace copy %s", path)


def provisioner_for(
    mode: str,
    repo_root: Path,
    workspaces_root: Path,
    *,
    delete_branches: bool = True,
) -> WorkspaceProvisioner:
    """``worktree``, ``copy``, or ``auto`` (worktree when ``repo_root`` is a git repo)."""
    if mode == "auto":
        mode = "worktree" if (Path(repo_root) / ".git").exists() else "copy"
    if mode == "worktree":
        if not (Path(repo_root) / ".git").exists():
            raise WorkspaceError(f"Worktree mode needs a git repository: {repo_root}")
        return GitWorktreeProvisioner(repo_root, workspaces_root, delete_branches=delete_branches)
    if mode == "copy":
        return CopyProvisioner(repo_root, workspaces_root)
    raise WorkspaceError(f"Unknown workspace mode: {mode!r}")
