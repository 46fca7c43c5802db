"""Ephemeral git checkouts used to materialise and publish a proposed change.

A :class:`Workspace` is bound to one remote and branch.  Its lifecycle is
``UNINITIALIZED -> ACQUIRED -> (DIRTY <-> COMMITTED) -> PUSHED``; removing the
directory is left to the caller through :meth:`WorkspaceManager.dispose`.

Version-control failures are reported as sentinel results (``False``,
:data:`COMMIT_FAILED`, or an unsuccessful :class:`AcquireResult`) rather than
exceptions, so callers detect them by the absence of a valid result.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Sequence
from urllib.parse import urlsplit, urlunsplit

from ..config import GitSettings
from ..telemetry import emit_event, redact_url
from .diff_parser import ParsedDiff, ParsedFileDiff
from .hunks import HunkApplyError, apply_file_hunks, render_new_file

LOGGER = logging.getLogger(__name__)

COMMIT_FAILED = "fatal: no changes to commit"

_REVISION_RE = re.compile(r"^[0-9a-f]{7,40}$")
_COMMIT_SUMMARY_RE = re.compile(
    r"^\[(?P<branch>.+?) (?:\(root-commit\) )?(?P<sha>[0-9a-f]{7,40})\]",
    re.MULTILINE,
)
_SLUG_RE = re.compile(r"[^A-Za-z0-9]+")


class GitError(RuntimeError):
    """Raised when a git command fails or the checkout cannot be used."""


class WorkspaceBusyError(RuntimeError):
    """Raised when a second mutation starts while one is still in flight."""


class WorkspaceState(str, Enum):
    """Lifecycle states of an ephemeral checkout."""

    UNINITIALIZED = "uninitialized"
    ACQUIRED = "acquired"
    DIRTY = "dirty"
    COMMITTED = "committed"
    PUSHED = "pushed"
    DISPOSED = "disposed"


def is_revision_id(value: str | None) -> bool:
    """Return ``True`` when ``value`` looks like an abbreviated or full SHA."""
    return bool(value) and bool(_REVISION_RE.match(value or ""))


@dataclass(slots=True)
class Credentials:
    """Short-lived token injected into HTTP(S) remote URLs."""

    token: str | None = None
    username: str = "x-access-token"

    def inject(self, url: str) -> str:
        if not self.token:
            return url
        parts = urlsplit(url)
        if parts.scheme not in {"http", "https"}:
            return url
        host = parts.netloc.rsplit("@", 1)[-1]
        netloc = f"{self.username}:{self.token}@{host}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))

    def __repr__(self) -> str:
        masked = "***" if self.token else None
        return f"Credentials(username={self.username!r}, token={masked!r})"


@dataclass(slots=True)
class Workspace:
    """Handle to one checkout on disk."""

    root: Path
    remote: str
    branch: str
    state: WorkspaceState = WorkspaceState.UNINITIALIZED
    revision: str | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


@dataclass(slots=True)
class AcquireResult:
    """Explicit success/failure of :meth:`WorkspaceManager.acquire`."""

    ok: bool
    workspace: Workspace | None = None
    error: str | None = None


@dataclass(slots=True)
class ApplyReport:
    """Per-file outcome of writing a parsed diff into a workspace."""

    written: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()
    failed_paths: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failed_paths


def _validate_relative_path(raw: str) -> Path:
    """Enforce path safety rules for diff entries."""
    path = Path(raw)
    if path.is_absolute():
        raise ValueError(f"Absolute paths are not permitted in patches: {raw}")
    parts = path.parts
    if any(part == ".." for part in parts):
        raise ValueError(f"Path escaping detected in patch: {raw}")
    if parts and parts[0] == ".git":
        raise ValueError("Patches may not target the .git directory.")
    return path


class WorkspaceManager:
    """Create ephemeral checkouts and run primitive git operations on them."""

    def __init__(self, settings: GitSettings | None = None, *, git_executable: str = "git") -> None:
        self._settings = settings or GitSettings()
        self._git = git_executable

    # ------------------------------------------------------------------ git IO
    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self._git, *args]
        try:
            process = subprocess.run(
                command,
                cwd=cwd,
                capture_output=True,
                text=False,
                check=False,
            )
        except OSError as error:
            raise GitError(f"git {args[0] if args else ''} could not start: {error}") from error
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(redact_url(f"git {' '.join(args[:2])} failed: {message}"))
        return result

    @contextmanager
    def _mutation(self, workspace: Workspace) -> Iterator[None]:
        if not workspace._lock.acquire(blocking=False):
            raise WorkspaceBusyError(f"Workspace {workspace.root} already has a mutation in flight.")
        try:
            yield
        finally:
            workspace._lock.release()

    # --------------------------------------------------------------- lifecycle
    def _make_directory(self, remote: str, branch: str) -> Path:
        base = Path(self._settings.workspace_root)
        base.mkdir(parents=True, exist_ok=True)
        name = Path(urlsplit(remote).path).stem or "repo"
        slug = _SLUG_RE.sub("-", f"{name}-{branch}").strip("-")[:60] or "workspace"
        return Path(tempfile.mkdtemp(prefix=f"autopatch-{slug}-", dir=base)).resolve()

    def _clone(self, url: str, branch: str, root: Path) -> subprocess.CompletedProcess[str]:
        return self._run_git(
            ["clone", "--depth", "1", "--single-branch", "--branch", branch, url, "."],
            cwd=root,
            check=False,
        )

    @staticmethod
    def _reset_directory(root: Path) -> None:
        shutil.rmtree(root, ignore_errors=True)
        root.mkdir(parents=True, exist_ok=True)

    def acquire(
        self,
        remote: str,
        branch: str,
        credentials: Credentials | None = None,
        *,
        base_branch: str | None = None,
    ) -> AcquireResult:
        """Shallow-clone ``branch`` of ``remote`` into a fresh temporary directory.

        When ``branch`` does not exist yet and ``base_branch`` is given, the
        base is cloned instead and ``branch`` is created locally.  On failure
        the directory is removed and an unsuccessful result is returned.
        """
        url = credentials.inject(remote) if credentials else remote
        try:
            root = self._make_directory(remote, branch)
        except OSError as error:
            emit_event("workspace.acquire_failed", remote=remote, branch=branch, error=str(error))
            return AcquireResult(ok=False, error=f"Unable to create workspace directory: {error}")

        workspace = Workspace(root=root, remote=redact_url(remote), branch=branch)
        try:
            clone = self._clone(url, branch, root)
            if clone.returncode != 0 and base_branch and base_branch != branch:
                LOGGER.info("Branch %s not found on remote; starting from %s", branch, base_branch)
                self._reset_directory(root)
                clone = self._clone(url, base_branch, root)
                if clone.returncode == 0:
                    self._run_git(["checkout", "-b", branch], cwd=root)
            if clone.returncode != 0:
                message = clone.stderr.strip() or clone.stdout.strip() or "unknown git error"
                raise GitError(f"git clone failed: {message}")
            self._run_git(["config", "user.name", self._settings.commit_author_name], cwd=root)
            self._run_git(["config", "user.email", self._settings.commit_author_email], cwd=root)
        except GitError as error:
            shutil.rmtree(root, ignore_errors=True)
            message = redact_url(str(error))
            LOGGER.warning("Failed to acquire workspace for %s@%s: %s", redact_url(remote), branch, message)
            emit_event("workspace.acquire_failed", remote=remote, branch=branch, error=message)
            return AcquireResult(ok=False, error=message)

        workspace.state = WorkspaceState.ACQUIRED
        emit_event("workspace.acquired", remote=remote, branch=branch, root=root)
        return AcquireResult(ok=True, workspace=workspace)

    def dispose(self, workspace: Workspace) -> None:
        """Delete the checkout directory."""
        with self._mutation(workspace):
            shutil.rmtree(workspace.root, ignore_errors=True)
            workspace.state = WorkspaceState.DISPOSED

    # ----------------------------------------------------------- file changes
    def _resolve(self, workspace: Workspace, relative: str) -> Path:
        return workspace.root / _validate_relative_path(relative)

    def _apply_file(self, workspace: Workspace, entry: ParsedFileDiff) -> str:
        """Apply one file entry; returns ``"written"`` or ``"deleted"``."""
        if entry.is_deleted:
            target = self._resolve(workspace, entry.old_path or entry.path or "")
            if not target.is_file():
                raise FileNotFoundError(f"Cannot delete missing file {entry.old_path}")
            target.unlink()
            return "deleted"

        if entry.is_new:
            target = self._resolve(workspace, entry.new_path or entry.path or "")
            if target.exists():
                LOGGER.warning("New file %s already exists; overwriting", entry.new_path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(render_new_file(entry), encoding="utf-8", newline="")
            return "written"

        source = self._resolve(workspace, entry.old_path or entry.path or "")
        target = self._resolve(workspace, entry.new_path or entry.path or "")
        if entry.is_rename and source != target:
            if not source.is_file():
                raise FileNotFoundError(f"Cannot rename missing file {entry.old_path}")
            target.parent.mkdir(parents=True, exist_ok=True)
            source.replace(target)
        if entry.hunks:
            original = ""
            if target.exists():
                with target.open("r", encoding="utf-8", newline="") as handle:
                    original = handle.read()
            target.write_text(apply_file_hunks(original, entry), encoding="utf-8", newline="")
        return "written"

    def apply_change(self, workspace: Workspace, parsed: ParsedDiff) -> ApplyReport:
        """Write every file entry of ``parsed`` into ``workspace``.

        Failures are collected per file and processing continues; files that
        were already written are not rolled back.
        """
        written: List[str] = []
        deleted: List[str] = []
        failed: List[str] = []
        with self._mutation(workspace):
            for entry in parsed.files:
                label = entry.path or "<unknown>"
                try:
                    outcome = self._apply_file(workspace, entry)
                except (HunkApplyError, OSError, ValueError) as error:
                    LOGGER.warning("Failed to apply change to %s: %s", label, error)
                    failed.append(label)
                    continue
                (deleted if outcome == "deleted" else written).append(label)
            if written or deleted:
                workspace.state = WorkspaceState.DIRTY

        report = ApplyReport(written=tuple(written), deleted=tuple(deleted), failed_paths=tuple(failed))
        emit_event(
            "workspace.applied",
            root=workspace.root,
            written=report.written,
            deleted=report.deleted,
            failed=report.failed_paths,
        )
        return report

    def read_file(self, workspace: Workspace, relative: str) -> str:
        return self._resolve(workspace, relative).read_text(encoding="utf-8")

    def write_file(self, workspace: Workspace, relative: str, content: str) -> None:
        """Write ``content`` to ``relative``, creating parent directories."""
        with self._mutation(workspace):
            target = self._resolve(workspace, relative)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            workspace.state = WorkspaceState.DIRTY

    def restore_file(self, workspace: Workspace, relative: str) -> bool:
        """Check ``relative`` out from the index; returns ``False`` on failure."""
        with self._mutation(workspace):
            try:
                _validate_relative_path(relative)
                self._run_git(["checkout", "--", relative], cwd=workspace.root)
            except (GitError, ValueError) as error:
                LOGGER.warning("Failed to restore %s: %s", relative, error)
                return False
        return True

    # ------------------------------------------------------- publish changes
    def stage(self, workspace: Workspace) -> bool:
        with self._mutation(workspace):
            try:
                self._run_git(["add", "--all"], cwd=workspace.root)
            except GitError as error:
                LOGGER.warning("git add failed in %s: %s", workspace.root, error)
                return False
        return True

    def commit(self, workspace: Workspace, message: str) -> str:
        """Commit staged changes and return the new revision id.

        Returns :data:`COMMIT_FAILED` when there is nothing to commit or git
        rejects the commit.
        """
        with self._mutation(workspace):
            try:
                result = self._run_git(["commit", "-m", message], cwd=workspace.root, check=False)
            except GitError as error:
                LOGGER.warning("git commit could not run in %s: %s", workspace.root, error)
                return COMMIT_FAILED
            if result.returncode != 0:
                output = result.stderr.strip() or result.stdout.strip()
                LOGGER.info("git commit produced no revision: %s", output.splitlines()[:1])
                return COMMIT_FAILED

            match = _COMMIT_SUMMARY_RE.search(result.stdout)
            revision = match.group("sha") if match else None
            if revision is None:
                probe = self._run_git(["rev-parse", "--short", "HEAD"], cwd=workspace.root, check=False)
                candidate = probe.stdout.strip()
                revision = candidate if is_revision_id(candidate) else None
            if revision is None:
                return COMMIT_FAILED

            workspace.revision = revision
            workspace.state = WorkspaceState.COMMITTED
        emit_event("workspace.committed", root=workspace.root, revision=revision)
        return revision

    def push(self, workspace: Workspace, *, remote: str = "origin") -> bool:
        """Push the current ``HEAD`` to the workspace branch on ``remote``."""
        with self._mutation(workspace):
            try:
                self._run_git(
                    ["push", remote, f"HEAD:refs/heads/{workspace.branch}"],
                    cwd=workspace.root,
                )
            except GitError as error:
                LOGGER.warning("git push of %s failed: %s", workspace.branch, error)
                return False
            workspace.state = WorkspaceState.PUSHED
        emit_event("workspace.pushed", remote=workspace.remote, branch=workspace.branch)
        return True


__all__ = [
    "AcquireResult",
    "ApplyReport",
    "COMMIT_FAILED",
    "Credentials",
    "GitError",
    "Workspace",
    "WorkspaceBusyError",
    "WorkspaceManager",
    "WorkspaceState",
    "is_revision_id",
]
