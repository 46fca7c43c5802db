"""Typed records exchanged with the task store and memory subsystem."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..tools.heuristics import ValidationResult


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class TaskStatus(str, Enum):
    """Lifecycle states for a generated task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class MemoryKind(str, Enum):
    STRATEGIC = "strategic"
    TECHNICAL = "technical"


class Task(RecordModel):
    """Single backlog item; batches are drawn in ascending ``risk_score`` order."""

    id: str
    title: str = ""
    status: TaskStatus = TaskStatus.PENDING
    risk_score: float = 0.3
    paths: List[str] = Field(default_factory=list)
    acceptance: str = ""
    order_index: int = 0


class AgentState(RecordModel):
    """Per-issue agent record as seen by one iteration."""

    id: str
    owner: str = ""
    repo: str = ""
    remote_url: str = ""
    issue_number: int = 0
    issue_title: str = ""
    branch_name: Optional[str] = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    iterations: int = 0
    total_tasks: int = 0
    done_tasks: int = 0
    completed: bool = False
    pr_number: Optional[int] = None
    last_iteration_at: Optional[datetime] = None
    tasks: List[Task] = Field(default_factory=list)

    def pending_tasks(self) -> List[Task]:
        return [task for task in self.tasks if task.status == TaskStatus.PENDING]


class ValidationRecord(RecordModel):
    """Serialisable copy of a :class:`ValidationResult`."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    ok: bool = True
    reasons: List[str] = Field(default_factory=list)
    stats: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: ValidationResult) -> "ValidationRecord":
        return cls(ok=result.ok, reasons=list(result.reasons), stats=result.stats.to_dict())


class IterationOutcome(RecordModel):
    """Append-only log entry describing what one iteration attempted."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    agent_id: str
    iteration: int
    task_ids: List[str] = Field(default_factory=list)
    diff: str = ""
    diff_hash: str = ""
    validation: ValidationRecord = Field(default_factory=ValidationRecord)
    refinement_rounds: int = 0
    applied: bool = False
    pushed: bool = False
    revision: Optional[str] = None
    failed_paths: List[str] = Field(default_factory=list)
    no_changes: bool = False
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    @staticmethod
    def hash_diff(diff: str) -> str:
        return hashlib.sha256(diff.encode("utf-8")).hexdigest()


class MemoryItem(RecordModel):
    """Salience-weighted context item remembered for an agent."""

    id: str
    agent_id: str
    kind: MemoryKind = MemoryKind.TECHNICAL
    content: str
    salience: float = Field(default=0.5, ge=0.0, le=1.0)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


__all__ = [
    "AgentState",
    "IterationOutcome",
    "MemoryItem",
    "MemoryKind",
    "RecordModel",
    "Task",
    "TaskStatus",
    "ValidationRecord",
    "utc_now",
]
