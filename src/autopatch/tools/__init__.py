"""Diff parsing, validation and workspace tooling used by the agent runtime."""

from .diff_parser import Hunk, ParsedDiff, ParsedFileDiff, extract_unified_diff, parse_unified_diff
from .heuristics import DiffLimits, FileChangeAggregate, ValidationResult, summarize_diff, validate_patch
from .hunks import HunkApplyError, apply_file_hunks, render_new_file
from .workspace import (
    COMMIT_FAILED,
    AcquireResult,
    ApplyReport,
    Credentials,
    GitError,
    Workspace,
    WorkspaceBusyError,
    WorkspaceManager,
    WorkspaceState,
    is_revision_id,
)

__all__ = [
    "AcquireResult",
    "ApplyReport",
    "COMMIT_FAILED",
    "Credentials",
    "DiffLimits",
    "FileChangeAggregate",
    "GitError",
    "Hunk",
    "HunkApplyError",
    "ParsedDiff",
    "ParsedFileDiff",
    "ValidationResult",
    "Workspace",
    "WorkspaceBusyError",
    "WorkspaceManager",
    "WorkspaceState",
    "apply_file_hunks",
    "extract_unified_diff",
    "is_revision_id",
    "parse_unified_diff",
    "render_new_file",
    "summarize_diff",
    "validate_patch",
]
