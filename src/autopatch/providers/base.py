"""Interfaces for the generative collaborator that proposes and repairs diffs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence

from ..context_budget import RepoFile
from ..memory.schema import Task


class ProviderError(RuntimeError):
    """Raised when the generative provider cannot produce a response."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True)
class PatchGuidance:
    """Steering hints sent alongside a patch request."""

    iteration: int
    confidence: float
    max_tasks_allowed: int
    strategic_hints: tuple[str, ...] = ()


@dataclass(slots=True)
class PatchRequest:
    tasks: Sequence[Task]
    files: Sequence[RepoFile]
    guidance: PatchGuidance
    reasoning: str = ""


@dataclass(slots=True)
class PatchProposal:
    """Candidate change returned by the provider."""

    diff: str = ""
    no_changes: bool = False
    summary: str = ""


@dataclass(slots=True)
class RepairProposal:
    diff: str = ""
    notes: str = ""


class PatchProvider(Protocol):
    """Generative collaborator consumed by the orchestrator and refinement loop."""

    def generate_patch(self, request: PatchRequest) -> PatchProposal: ...

    def repair_patch(self, diff: str, reasons: Sequence[str]) -> Optional[str]: ...


__all__ = [
    "PatchGuidance",
    "PatchProposal",
    "PatchProvider",
    "PatchRequest",
    "ProviderError",
    "RepairProposal",
]
