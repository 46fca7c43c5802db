"""Pure functions that size work from an agent's historical success."""

from __future__ import annotations

import math

from .config import AdaptiveSettings, TerminationSettings
from .memory.schema import AgentState


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def decide_batch_size(confidence: float, pending_count: int, min_batch: int, max_batch: int) -> int:
    """Return how many pending tasks to attempt this iteration.

    The base is ``min(pending_count, max_batch)`` scaled by ``0.5 + confidence``.
    The result never exceeds the base and never drops below ``min_batch``
    unless fewer tasks are pending.
    """
    if pending_count <= 0:
        return 0
    confidence = min(max(confidence, 0.0), 1.0)
    base = min(pending_count, max_batch)
    scaled = _round_half_up(base * (0.5 + confidence))
    size = max(min_batch, min(scaled, base))
    return max(0, min(size, pending_count))


def update_confidence(previous: float, success: bool, settings: AdaptiveSettings | None = None) -> float:
    settings = settings or AdaptiveSettings()
    if success:
        updated = previous + settings.confidence_increase_per_success
    else:
        updated = previous - settings.confidence_decrease_on_fail
    return min(1.0, max(0.0, updated))


def termination_reached(agent: AgentState, settings: TerminationSettings | None = None) -> bool:
    """Return ``True`` when the agent is complete or has finished a non-empty backlog."""
    settings = settings or TerminationSettings()
    if agent.completed:
        return True
    return (
        agent.confidence >= settings.required_confidence
        and agent.total_tasks > 0
        and agent.done_tasks == agent.total_tasks
    )


__all__ = ["decide_batch_size", "termination_reached", "update_confidence"]
