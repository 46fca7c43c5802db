"""Character-budgeted selection of repository context for patch prompts."""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Iterable, Sequence

from .config import ContextSettings
from .memory.schema import Task

_MIN_PARTIAL_CHARS = 200
_TRUNCATION_NOTE = "\n... [truncated]\n"


@dataclass(frozen=True, slots=True)
class RepoFile:
    """File candidate offered to the generative provider."""

    path: str
    content: str


class ContextBudget:
    """Rank and trim file context so a prompt fits its character budget."""

    def __init__(self, settings: ContextSettings | None = None, *, safety_margin: float = 0.0) -> None:
        self._settings = settings or ContextSettings()
        self._margin = min(max(safety_margin, 0.0), 0.9)

    @property
    def max_chars(self) -> int:
        return int(self._settings.max_chars * (1 - self._margin))

    @staticmethod
    def estimate_tokens(text: str) -> int:
        return math.ceil(len(text) / 4)

    @staticmethod
    def score(file: RepoFile, tasks: Sequence[Task]) -> float:
        """Relevance of ``file`` to ``tasks``: direct path hits dominate, size costs a little."""
        path = PurePosixPath(file.path)
        score = 0.0
        for task in tasks:
            for raw in task.paths:
                cleaned = raw.strip().removeprefix("./")
                if not cleaned:
                    continue
                target = PurePosixPath(cleaned)
                if path == target:
                    score += 100
                elif path.parent == target.parent and target.parent != PurePosixPath("."):
                    score += 20
                elif path.stem == target.stem:
                    score += 10
        return score - len(file.content) / 2000

    def trim_files(self, files: Iterable[RepoFile], tasks: Sequence[Task]) -> list[RepoFile]:
        """Keep the highest ranked files whose combined size fits the budget."""
        ranked = sorted(
            enumerate(files),
            key=lambda pair: (-self.score(pair[1], tasks), pair[0]),
        )
        remaining = self.max_chars
        selected: list[RepoFile] = []
        for _, candidate in ranked:
            if remaining <= 0:
                break
            size = len(candidate.content)
            if size <= remaining:
                selected.append(candidate)
                remaining -= size
                continue
            if remaining >= _MIN_PARTIAL_CHARS:
                keep = max(0, remaining - len(_TRUNCATION_NOTE))
                selected.append(RepoFile(candidate.path, candidate.content[:keep] + _TRUNCATION_NOTE))
                remaining = 0
        return selected

    def pack_reasoning(self, parts: Sequence[str]) -> str:
        """Join reasoning snippets, keeping the most recent tail within budget."""
        text = "\n\n".join(part.strip() for part in parts if part and part.strip())
        limit = self._settings.reasoning_chars
        if len(text) <= limit:
            return text
        return text[len(text) - limit :]

    def trim_to_fit(self, prefix: str, body: str, suffix: str = "") -> tuple[str, bool]:
        """Return ``(text, truncated)`` where only ``body`` is shortened."""
        total = prefix + body + suffix
        if len(total) <= self.max_chars:
            return total, False
        allowed = max(0, self.max_chars - len(prefix) - len(suffix))
        return prefix + body[:allowed] + suffix, True


__all__ = ["ContextBudget", "RepoFile"]
