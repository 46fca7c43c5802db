"""Bounded repair loop for diffs that fail the heuristic gates."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from .telemetry import emit_event
from .tools.diff_parser import extract_unified_diff, parse_unified_diff
from .tools.heuristics import DiffLimits, FileChangeAggregate, validate_patch

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 3

RepairFn = Callable[[str, Sequence[str]], Optional[str]]


@dataclass(frozen=True, slots=True)
class RefinementResult:
    """Terminal state of :func:`refine_patch`."""

    ok: bool
    iterations: int
    reasons: tuple[str, ...] = ()
    original: str = ""
    refined: str = ""
    stats: FileChangeAggregate = field(default_factory=FileChangeAggregate)


def refine_patch(
    raw_diff: str,
    repair: RepairFn,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    *,
    limits: DiffLimits | None = None,
) -> RefinementResult:
    """Validate ``raw_diff`` and ask ``repair`` to fix it until it passes.

    Every round parses and validates the current text.  A passing round ends
    the loop; otherwise ``repair(current, reasons)`` is asked for a new
    candidate, except after the last round so ``refined`` is always a text
    that was validated.  An empty answer stops early.  Failures inside the loop end it
    in the failed state with the best-effort diff retained.
    """
    max_iterations = max(1, max_iterations)
    current = raw_diff
    reasons: tuple[str, ...] = ()
    stats = FileChangeAggregate()
    rounds = 0

    try:
        while rounds < max_iterations:
            rounds += 1
            validation = validate_patch(parse_unified_diff(current), limits)
            reasons, stats = validation.reasons, validation.stats
            emit_event("refine.round", round=rounds, ok=validation.ok, reasons=reasons)
            if validation.ok:
                emit_event("refine.finished", ok=True, rounds=rounds)
                return RefinementResult(
                    ok=True,
                    iterations=rounds,
                    original=raw_diff,
                    refined=current,
                    stats=stats,
                )

            if rounds == max_iterations:
                break
            candidate = repair(current, list(reasons))
            if not candidate or not candidate.strip():
                LOGGER.info("Repair returned nothing usable after round %d; stopping", rounds)
                break
            current = extract_unified_diff(candidate) or candidate
    except Exception:
        LOGGER.exception("Patch refinement aborted in round %d", rounds)

    emit_event("refine.finished", ok=False, rounds=rounds, reasons=reasons)
    return RefinementResult(
        ok=False,
        iterations=rounds,
        reasons=reasons,
        original=raw_diff,
        refined=current,
        stats=stats,
    )


__all__ = ["DEFAULT_MAX_ITERATIONS", "RefinementResult", "RepairFn", "refine_patch"]
