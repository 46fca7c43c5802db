"""Line-based application of parsed hunks to file contents."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from .diff_parser import Hunk, ParsedFileDiff


class HunkApplyError(RuntimeError):
    """Raised when a hunk's old side cannot be located in the target text."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


def _split_hunk(hunk: Hunk) -> tuple[list[str], list[str]]:
    old: list[str] = []
    new: list[str] = []
    for line in hunk.lines:
        if line.startswith("\\"):
            continue
        prefix, body = line[:1], line[1:]
        if prefix == "+":
            new.append(body)
        elif prefix == "-":
            old.append(body)
        else:
            # Models often drop the leading space on blank context lines.
            old.append(body)
            new.append(body)
    return old, new


def _eof_markers(hunks: Sequence[Hunk]) -> tuple[bool, bool]:
    """Return ``(old_missing_newline, new_missing_newline)`` from ``\\`` markers."""
    old_missing = new_missing = False
    for hunk in hunks:
        previous = ""
        for line in hunk.lines:
            if line.startswith("\\"):
                if previous in {"-", " ", ""}:
                    old_missing = True
                if previous in {"+", " ", ""}:
                    new_missing = True
                continue
            previous = line[:1]
    return old_missing, new_missing


def _matches(lines: list[str], position: int, expected: list[str], *, loose: bool) -> bool:
    if position < 0 or position + len(expected) > len(lines):
        return False
    window = lines[position : position + len(expected)]
    if loose:
        return all(a.rstrip() == b.rstrip() for a, b in zip(window, expected))
    return window == expected


def _locate(lines: list[str], expected: list[str], start: int, floor: int) -> int | None:
    """Find ``expected`` nearest to ``start`` without moving above ``floor``."""
    limit = len(lines) - len(expected)
    for loose in (False, True):
        for distance in range(0, max(limit, 0) + len(lines) + 1):
            for candidate in (start - distance, start + distance):
                if candidate < floor or candidate > limit:
                    continue
                if _matches(lines, candidate, expected, loose=loose):
                    return candidate
            if start - distance < floor and start + distance > limit:
                break
    return None


def _split_text(text: str) -> tuple[list[str], bool, bool]:
    crlf = "\r\n" in text
    normalised = text.replace("\r\n", "\n")
    trailing = normalised.endswith("\n")
    if trailing:
        normalised = normalised[:-1]
    lines = normalised.split("\n") if normalised else []
    return lines, trailing, crlf


def _join_text(lines: list[str], *, trailing: bool, crlf: bool) -> str:
    if not lines:
        return ""
    text = "\n".join(lines)
    if trailing:
        text += "\n"
    if crlf:
        text = text.replace("\n", "\r\n")
    return text


def apply_file_hunks(original: str, file_diff: ParsedFileDiff) -> str:
    """Apply every hunk of ``file_diff`` to ``original`` and return the result.

    Each hunk is tried at its declared position (adjusted by the net growth of
    earlier hunks) and then at the nearest offset in either direction, exactly
    first and ignoring trailing whitespace second.  Hunks never move above the
    end of the previously applied hunk.
    """
    lines, trailing, crlf = _split_text(original)
    delta = 0
    floor = 0
    for index, hunk in enumerate(file_diff.hunks, start=1):
        old, new = _split_hunk(hunk)
        if old:
            expected = max(hunk.old_start - 1, 0) + delta
            position = _locate(lines, old, expected, floor)
        else:
            position = min(max(hunk.old_start + delta, floor), len(lines))
        if position is None:
            raise HunkApplyError(
                f"Hunk #{index} does not apply to {file_diff.path}",
                details={"path": file_diff.path, "hunk": index, "header": hunk.header},
            )
        lines[position : position + len(old)] = new
        delta += len(new) - len(old)
        floor = position + len(new)

    old_missing, new_missing = _eof_markers(file_diff.hunks)
    if new_missing:
        trailing = False
    elif old_missing:
        trailing = True
    return _join_text(lines, trailing=trailing, crlf=crlf)


def render_new_file(file_diff: ParsedFileDiff) -> str:
    """Synthesize the content of a newly created file from its added lines."""
    body: list[str] = []
    for hunk in file_diff.hunks:
        _, new = _split_hunk(hunk)
        body.extend(new)
    _, new_missing = _eof_markers(file_diff.hunks)
    return _join_text(body, trailing=not new_missing, crlf=False)


__all__ = ["HunkApplyError", "apply_file_hunks", "render_new_file"]
