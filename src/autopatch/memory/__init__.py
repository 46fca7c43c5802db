"""Records, task storage and salience memory for the agent runtime."""

from .salience import StrategicMemory
from .schema import AgentState, IterationOutcome, MemoryItem, MemoryKind, Task, TaskStatus, ValidationRecord
from .store import InMemoryTaskStore, TaskStore

__all__ = [
    "AgentState",
    "InMemoryTaskStore",
    "IterationOutcome",
    "MemoryItem",
    "MemoryKind",
    "StrategicMemory",
    "Task",
    "TaskStatus",
    "TaskStore",
    "ValidationRecord",
]
