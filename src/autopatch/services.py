"""Collaborator interfaces the orchestrator consumes besides the store and provider."""

from __future__ import annotations

import threading
from typing import Iterable, Optional, Protocol, Sequence

from .context_budget import RepoFile
from .memory.schema import AgentState, Task


class PullRequestError(RuntimeError):
    """Raised by :class:`PullRequestService` implementations when a PR cannot be ensured."""


class PullRequestService(Protocol):
    """Opens, or reuses, the pull request for an agent branch."""

    def ensure_pull_request(self, agent: AgentState, branch: str) -> Optional[int]: ...


class ContextSource(Protocol):
    """Supplies candidate repository files for a batch of tasks."""

    def collect_files(self, agent: AgentState, tasks: Sequence[Task]) -> Iterable[RepoFile]: ...


class AgentLease(Protocol):
    """Mutual exclusion for iterations of the same agent."""

    def try_acquire(self, agent_id: str) -> bool: ...

    def release(self, agent_id: str) -> None: ...


class InMemoryLease:
    """Process-local lease; suitable when a single worker runs every agent."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._held: set[str] = set()

    def try_acquire(self, agent_id: str) -> bool:
        with self._lock:
            if agent_id in self._held:
                return False
            self._held.add(agent_id)
            return True

    def release(self, agent_id: str) -> None:
        with self._lock:
            self._held.discard(agent_id)

    def held(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._held


__all__ = [
    "AgentLease",
    "ContextSource",
    "InMemoryLease",
    "PullRequestError",
    "PullRequestService",
]
