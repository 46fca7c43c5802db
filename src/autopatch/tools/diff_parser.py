"""Tolerant unified diff parser.

The parser makes a single pass over the text and never raises: malformed
input yields whatever partial structure could be recovered.  Hunk header
extents are recorded as declared and are not checked against the hunk body
here; :func:`autopatch.tools.heuristics.validate_patch` owns that gate.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_FILE_HEADER = re.compile(r"^diff --git a/(\S+) b/(\S+)")
_HUNK_HEADER = re.compile(r"^@@ .*@@")
_HUNK_EXTENTS = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)
_RENAME_FROM = re.compile(r"^rename from (.+)")
_RENAME_TO = re.compile(r"^rename to (.+)")
_FENCE = re.compile(r"^```[A-Za-z0-9_-]*\s*$", re.MULTILINE)

NO_NEWLINE_MARKER = "\\ No newline at end of file"


@dataclass(slots=True)
class Hunk:
    """Contiguous block of changed lines with its declared ranges."""

    header: str
    old_start: int = 0
    old_length: int = 0
    new_start: int = 0
    new_length: int = 0
    lines: list[str] = field(default_factory=list)

    def actual_lengths(self) -> tuple[int, int]:
        """Return ``(old, new)`` line counts observed in the hunk body."""
        old = new = 0
        for line in self.lines:
            if line.startswith("\\"):
                continue
            prefix = line[:1]
            if prefix == "+":
                new += 1
            elif prefix == "-":
                old += 1
            else:
                old += 1
                new += 1
        return old, new


@dataclass(slots=True)
class ParsedFileDiff:
    """Per-file section of a unified diff."""

    old_path: str | None = None
    new_path: str | None = None
    is_new: bool = False
    is_deleted: bool = False
    is_rename: bool = False
    added: int = 0
    deleted: int = 0
    hunks: list[Hunk] = field(default_factory=list)

    @property
    def path(self) -> str | None:
        """Return the most relevant path (new side first)."""
        return self.new_path or self.old_path


@dataclass(slots=True)
class ParsedDiff:
    """Structured view of a whole diff; totals are always derived."""

    files: list[ParsedFileDiff] = field(default_factory=list)
    raw: str = ""

    @property
    def total_added(self) -> int:
        return sum(item.added for item in self.files)

    @property
    def total_deleted(self) -> int:
        return sum(item.deleted for item in self.files)

    @property
    def total_changed(self) -> int:
        return self.total_added + self.total_deleted


def _parse_extents(header: str) -> tuple[int, int, int, int]:
    match = _HUNK_EXTENTS.match(header)
    if not match:
        return 0, 0, 0, 0

    def _count(value: str | None) -> int:
        return int(value) if value is not None else 1

    return (
        int(match.group("old_start")),
        _count(match.group("old_count")),
        int(match.group("new_start")),
        _count(match.group("new_count")),
    )


def _plain_header_path(line: str) -> str | None:
    """Return the path operand of a ``---``/``+++`` header, ``None`` for /dev/null."""
    operand = line[4:].split("\t", 1)[0].strip()
    if not operand or operand == "/dev/null":
        return None
    if operand.startswith("a/") or operand.startswith("b/"):
        operand = operand[2:]
    return operand or None


def _is_plain_header(lines: list[str], index: int) -> bool:
    return (
        lines[index].startswith("--- ")
        and index + 1 < len(lines)
        and lines[index + 1].startswith("+++ ")
    )


def _split_lines(text: str) -> list[str]:
    """Split on ``\\n`` only; form feeds and Unicode separators stay inside a line."""
    lines = [line[:-1] if line.endswith("\r") else line for line in text.split("\n")]
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def parse_unified_diff(text: str) -> ParsedDiff:
    """Parse ``text`` into a :class:`ParsedDiff` without ever failing."""
    lines = _split_lines(text)
    files: list[ParsedFileDiff] = []
    current: ParsedFileDiff | None = None
    hunk: Hunk | None = None

    index = 0
    while index < len(lines):
        line = lines[index]
        index += 1

        header = _FILE_HEADER.match(line)
        if header:
            if current is not None:
                files.append(current)
            current = ParsedFileDiff(old_path=header.group(1), new_path=header.group(2))
            hunk = None
            continue

        # Bare ``---``/``+++`` pairs open a file unless a ``diff --git`` header
        # already did so for the current entry.
        if (current is None or current.hunks) and _is_plain_header(lines, index - 1):
            if current is not None:
                files.append(current)
            old_path = _plain_header_path(line)
            new_path = _plain_header_path(lines[index])
            current = ParsedFileDiff(
                old_path=old_path,
                new_path=new_path,
                is_new=old_path is None,
                is_deleted=new_path is None,
            )
            hunk = None
            index += 1
            continue

        if current is None:
            continue

        if line.startswith("new file mode"):
            current.is_new = True
            continue
        if line.startswith("deleted file mode"):
            current.is_deleted = True
            continue
        rename_from = _RENAME_FROM.match(line)
        if rename_from:
            current.is_rename = True
            current.old_path = rename_from.group(1).strip()
            continue
        rename_to = _RENAME_TO.match(line)
        if rename_to:
            current.is_rename = True
            current.new_path = rename_to.group(1).strip()
            continue
        if _HUNK_HEADER.match(line):
            old_start, old_length, new_start, new_length = _parse_extents(line)
            hunk = Hunk(
                header=line,
                old_start=old_start,
                old_length=old_length,
                new_start=new_start,
                new_length=new_length,
            )
            current.hunks.append(hunk)
            continue

        if line.startswith("+") and not line.startswith("+++"):
            current.added += 1
        elif line.startswith("-") and not line.startswith("---"):
            current.deleted += 1
        if hunk is not None:
            hunk.lines.append(line)

    if current is not None:
        files.append(current)
    return ParsedDiff(files=files, raw=text)


def extract_unified_diff(text: str) -> str | None:
    """Slice a diff out of a model response that may wrap it in prose or fences.

    Returns ``None`` when no ``diff --git`` marker exists so callers can fall
    back to the whole response.
    """
    if not text:
        return None
    if text.startswith("diff --git "):
        start = 0
    else:
        position = text.find("\ndiff --git ")
        if position < 0:
            return None
        start = position + 1
    payload = text[start:]
    fence = _FENCE.search(payload)
    if fence:
        payload = payload[: fence.start()]
    payload = payload.rstrip()
    return f"{payload}\n" if payload else None


__all__ = [
    "Hunk",
    "NO_NEWLINE_MARKER",
    "ParsedDiff",
    "ParsedFileDiff",
    "extract_unified_diff",
    "parse_unified_diff",
]
