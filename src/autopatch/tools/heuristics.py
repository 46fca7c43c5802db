"""Change statistics and pass/fail heuristics for parsed diffs."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..config import DiffSettings
from ..telemetry import emit_event
from .diff_parser import ParsedDiff

REASON_TOO_LARGE = "too_large_estimate"
REASON_DELETION_RATIO = "deletion_ratio_suspicious"
REASON_FILE_CHURN = "too_many_file_creations_or_deletions"
REASON_LARGE_FILES = "too_many_large_file_touches"
REASON_HUNK_EXTENTS = "hunk_extent_mismatch"


@dataclass(frozen=True, slots=True)
class DiffLimits:
    """Thresholds used by :func:`summarize_diff` and :func:`validate_patch`."""

    max_bytes: int = 64_000
    large_file_line_threshold: int = 800
    max_deletion_ratio: float = 4.0
    deletion_min_total: int = 50
    max_created_or_deleted_files: int = 20
    max_large_file_touches: int = 5
    strict_hunk_extents: bool = True

    @classmethod
    def from_settings(cls, settings: DiffSettings) -> "DiffLimits":
        return cls(
            max_bytes=settings.max_bytes,
            large_file_line_threshold=settings.large_file_line_threshold,
            max_deletion_ratio=settings.max_deletion_ratio,
            deletion_min_total=settings.deletion_min_total,
            max_created_or_deleted_files=settings.max_created_or_deleted_files,
            max_large_file_touches=settings.max_large_file_touches,
            strict_hunk_extents=settings.strict_hunk_extents,
        )


@dataclass(frozen=True, slots=True)
class FileChangeAggregate:
    """Per-diff counts of line and file operations."""

    added: int = 0
    deleted: int = 0
    created: int = 0
    deleted_files: int = 0
    renamed: int = 0
    modified: int = 0
    large_file_touches: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "added": self.added,
            "deleted": self.deleted,
            "created": self.created,
            "deleted_files": self.deleted_files,
            "renamed": self.renamed,
            "modified": self.modified,
            "large_file_touches": list(self.large_file_touches),
        }


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of the heuristic gates; ``reasons`` keeps firing order."""

    ok: bool
    reasons: tuple[str, ...] = ()
    stats: FileChangeAggregate = field(default_factory=FileChangeAggregate)

    def with_reason(self, reason: str) -> "ValidationResult":
        """Return a failed copy that carries ``reason`` in addition."""
        reasons = self.reasons if reason in self.reasons else (*self.reasons, reason)
        return ValidationResult(ok=False, reasons=reasons, stats=self.stats)


def summarize_diff(parsed: ParsedDiff, limits: DiffLimits | None = None) -> FileChangeAggregate:
    """Count created/deleted/renamed/modified files and flag large touches."""
    limits = limits or DiffLimits()
    created = deleted_files = renamed = modified = 0
    large: list[str] = []
    for item in parsed.files:
        if item.is_new:
            created += 1
        if item.is_deleted:
            deleted_files += 1
        if item.is_rename:
            renamed += 1
        if not item.is_new and not item.is_deleted:
            modified += 1
        if item.added + item.deleted > limits.large_file_line_threshold:
            large.append(item.path or "")
    return FileChangeAggregate(
        added=parsed.total_added,
        deleted=parsed.total_deleted,
        created=created,
        deleted_files=deleted_files,
        renamed=renamed,
        modified=modified,
        large_file_touches=tuple(large),
    )


def _has_extent_mismatch(parsed: ParsedDiff) -> bool:
    for item in parsed.files:
        for hunk in item.hunks:
            if (hunk.old_length, hunk.new_length) != hunk.actual_lengths():
                return True
    return False


def validate_patch(parsed: ParsedDiff, limits: DiffLimits | None = None) -> ValidationResult:
    """Run the independent heuristic gates over ``parsed``.

    Each failing gate contributes one stable reason code; the function is
    pure apart from a telemetry event and never raises.
    """
    limits = limits or DiffLimits()
    stats = summarize_diff(parsed, limits)
    total = parsed.total_changed
    reasons: list[str] = []

    if total > limits.max_bytes / 4:
        reasons.append(REASON_TOO_LARGE)
    if (
        parsed.total_deleted > parsed.total_added * limits.max_deletion_ratio
        and total > limits.deletion_min_total
    ):
        reasons.append(REASON_DELETION_RATIO)
    if stats.created + stats.deleted_files > limits.max_created_or_deleted_files:
        reasons.append(REASON_FILE_CHURN)
    if len(stats.large_file_touches) > limits.max_large_file_touches:
        reasons.append(REASON_LARGE_FILES)
    if limits.strict_hunk_extents and _has_extent_mismatch(parsed):
        reasons.append(REASON_HUNK_EXTENTS)

    result = ValidationResult(ok=not reasons, reasons=tuple(reasons), stats=stats)
    emit_event(
        "diff.validated",
        ok=result.ok,
        reasons=result.reasons,
        files=len(parsed.files),
        added=stats.added,
        deleted=stats.deleted,
    )
    return result


__all__ = [
    "DiffLimits",
    "FileChangeAggregate",
    "REASON_DELETION_RATIO",
    "REASON_FILE_CHURN",
    "REASON_HUNK_EXTENTS",
    "REASON_LARGE_FILES",
    "REASON_TOO_LARGE",
    "ValidationResult",
    "summarize_diff",
    "validate_patch",
]
