"""Task/agent store interface plus an in-process implementation."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .schema import AgentState, IterationOutcome, Task, TaskStatus, utc_now

LOGGER = logging.getLogger(__name__)


class TaskStore(Protocol):
    """Persistence operations the orchestrator relies on.

    Implementations own consistency; every update call is treated as
    last-writer-wins.
    """

    def load_agent(self, agent_id: str) -> Optional[AgentState]: ...

    def update_agent(self, agent_id: str, **fields: Any) -> None: ...

    def update_task_status(self, agent_id: str, task_ids: Iterable[str], status: TaskStatus) -> None: ...

    def record_outcome(self, outcome: IterationOutcome) -> None: ...


class InMemoryTaskStore:
    """Dictionary-backed store that hands out copies of its records."""

    def __init__(self, agents: Iterable[AgentState] = ()) -> None:
        self._lock = threading.Lock()
        self._agents: Dict[str, AgentState] = {}
        self._outcomes: List[IterationOutcome] = []
        for agent in agents:
            self.save_agent(agent)

    def save_agent(self, agent: AgentState) -> None:
        with self._lock:
            record = agent.model_copy(deep=True)
            if not record.total_tasks and record.tasks:
                record.total_tasks = len(record.tasks)
            self._agents[record.id] = record

    def add_tasks(self, agent_id: str, tasks: Iterable[Task]) -> None:
        with self._lock:
            agent = self._require(agent_id)
            existing = {task.id for task in agent.tasks}
            for task in tasks:
                if task.id in existing:
                    continue
                agent.tasks.append(task.model_copy(deep=True))
            agent.total_tasks = len(agent.tasks)

    def load_agent(self, agent_id: str) -> Optional[AgentState]:
        with self._lock:
            agent = self._agents.get(agent_id)
            return agent.model_copy(deep=True) if agent is not None else None

    def update_agent(self, agent_id: str, **fields: Any) -> None:
        with self._lock:
            agent = self._require(agent_id)
            for name, value in fields.items():
                if name not in AgentState.model_fields or name == "tasks":
                    raise KeyError(f"Unknown agent field: {name}")
                setattr(agent, name, value)

    def update_task_status(self, agent_id: str, task_ids: Iterable[str], status: TaskStatus) -> None:
        wanted = set(task_ids)
        with self._lock:
            agent = self._require(agent_id)
            for task in agent.tasks:
                if task.id in wanted:
                    task.status = status
            agent.done_tasks = sum(1 for task in agent.tasks if task.status == TaskStatus.DONE)

    def record_outcome(self, outcome: IterationOutcome) -> None:
        with self._lock:
            self._outcomes.append(outcome)
            agent = self._agents.get(outcome.agent_id)
            if agent is not None:
                agent.last_iteration_at = utc_now()

    def list_outcomes(self, agent_id: str | None = None) -> List[IterationOutcome]:
        with self._lock:
            return [item for item in self._outcomes if agent_id is None or item.agent_id == agent_id]

    def _require(self, agent_id: str) -> AgentState:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise KeyError(f"Unknown agent: {agent_id}")
        return agent


__all__ = ["InMemoryTaskStore", "TaskStore"]
