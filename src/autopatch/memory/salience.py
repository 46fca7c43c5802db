"""Salience-ranked strategic and technical memory with compression and decay."""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Dict, List

from ..config import MemorySettings
from .schema import MemoryItem, MemoryKind

LOGGER = logging.getLogger(__name__)

_SUMMARY_LIMIT = 600


class StrategicMemory:
    """In-process memory bundle per agent.

    Items are ranked by salience (newest first on ties).  ``compress`` folds
    the lowest-ranked strategic items into a single summary once the per-agent
    cap is exceeded and ``decay`` ages every item, forgetting those that fall
    below the retention floor.
    """

    def __init__(self, settings: MemorySettings | None = None) -> None:
        self._settings = settings or MemorySettings()
        self._items: Dict[str, List[MemoryItem]] = {}
        self._lock = threading.Lock()

    def record(
        self,
        agent_id: str,
        kind: MemoryKind | str,
        content: str,
        salience: float = 0.5,
        **metadata: object,
    ) -> MemoryItem:
        item = MemoryItem(
            id=f"{MemoryKind(kind).value}-{uuid.uuid4().hex[:12]}",
            agent_id=agent_id,
            kind=MemoryKind(kind),
            content=content,
            salience=min(1.0, max(0.0, salience)),
            metadata=dict(metadata),
        )
        with self._lock:
            self._items.setdefault(agent_id, []).append(item)
        return item

    def items(self, agent_id: str, kind: MemoryKind | str | None = None) -> List[MemoryItem]:
        with self._lock:
            entries = list(self._items.get(agent_id, ()))
        if kind is not None:
            wanted = MemoryKind(kind)
            entries = [item for item in entries if item.kind == wanted]
        return self._ranked(entries)

    def fetch_bundle(self, agent_id: str, limit: int | None = None) -> List[str]:
        """Return item contents in salience order, strategic items first."""
        ranked = self.items(agent_id, MemoryKind.STRATEGIC) + self.items(agent_id, MemoryKind.TECHNICAL)
        if limit is not None:
            ranked = ranked[: max(0, limit)]
        return [item.content for item in ranked]

    def compress(self, agent_id: str) -> int:
        """Merge strategic items beyond the cap into one summary; returns items removed."""
        cap = max(1, self._settings.max_strategic)
        with self._lock:
            entries = self._items.get(agent_id, [])
            strategic = self._ranked([item for item in entries if item.kind == MemoryKind.STRATEGIC])
            if len(strategic) <= cap:
                return 0
            keep = strategic[: cap - 1]
            evicted = strategic[cap - 1 :]
            summary_text = " | ".join(item.content for item in evicted)
            if len(summary_text) > _SUMMARY_LIMIT:
                summary_text = f"{summary_text[: _SUMMARY_LIMIT - 3]}..."
            summary = MemoryItem(
                id=f"strategic-summary-{uuid.uuid4().hex[:12]}",
                agent_id=agent_id,
                kind=MemoryKind.STRATEGIC,
                content=summary_text,
                salience=sum(item.salience for item in evicted) / len(evicted),
                metadata={"compressed": len(evicted)},
            )
            technical = [item for item in entries if item.kind != MemoryKind.STRATEGIC]
            self._items[agent_id] = [*keep, summary, *technical]
        LOGGER.debug("Compressed %d strategic memories for %s", len(evicted), agent_id)
        return len(evicted) - 1

    def decay(self, agent_id: str) -> int:
        """Scale salience by the decay factor and drop forgotten items; returns items dropped."""
        factor = min(1.0, max(0.0, self._settings.decay_factor))
        floor = self._settings.min_salience_for_retention
        with self._lock:
            retained: List[MemoryItem] = []
            dropped = 0
            for item in self._items.get(agent_id, []):
                aged = item.salience * factor
                if aged < floor:
                    dropped += 1
                    continue
                retained.append(item.model_copy(update={"salience": aged}))
            self._items[agent_id] = retained
        return dropped

    @staticmethod
    def _ranked(entries: List[MemoryItem]) -> List[MemoryItem]:
        return sorted(entries, key=lambda item: (item.salience, item.created_at), reverse=True)


__all__ = ["StrategicMemory"]
