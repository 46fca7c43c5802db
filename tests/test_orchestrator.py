from __future__ import annotations

import threading
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from autopatch.config import AgentSettings, GitSettings, MemorySettings
from autopatch.context_budget import RepoFile
from autopatch.memory.salience import StrategicMemory
from autopatch.memory.schema import AgentState, MemoryKind, Task, TaskStatus
from autopatch.memory.store import InMemoryTaskStore
from autopatch.orchestrator import IterationOrchestrator, IterationStatus, truncate_utf8
from autopatch.providers.base import PatchProposal, PatchRequest, ProviderError
from autopatch.services import InMemoryLease, PullRequestError

README_DIFF = """\
diff --git a/README.md b/README.md
--- a/README.md
+++ b/README.md
@@ -1,2 +1,3 @@
 # Demo
-old line
+new line
+another line
"""

DESTRUCTIVE_DIFF = "diff --git a/big.py b/big.py\n--- a/big.py\n+++ b/big.py\n@@ -1,60 +1,5 @@\n" + "".join(
    f"-line {index}\n" for index in range(60)
) + "".join(f"+kept {index}\n" for index in range(5))


class _FakeProvider:
    def __init__(self, diff: str = README_DIFF, *, no_changes: bool = False, error: Exception | None = None):
        self.diff = diff
        self.no_changes = no_changes
        self.error = error
        self.requests: List[PatchRequest] = []
        self.repairs: List[Sequence[str]] = []

    def generate_patch(self, request: PatchRequest) -> PatchProposal:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return PatchProposal(diff=self.diff, no_changes=self.no_changes, summary="fake")

    def repair_patch(self, diff: str, reasons: Sequence[str]) -> Optional[str]:
        self.repairs.append(list(reasons))
        return diff


class _FakePullRequests:
    def __init__(self, number: int = 42, *, fail: bool = False) -> None:
        self.number = number
        self.fail = fail
        self.calls: List[tuple[str, str]] = []

    def ensure_pull_request(self, agent: AgentState, branch: str) -> Optional[int]:
        self.calls.append((agent.id, branch))
        if self.fail:
            raise PullRequestError("api down")
        return self.number


class _StaticFiles:
    def collect_files(self, agent: AgentState, tasks: Sequence[Task]) -> List[RepoFile]:
        return [RepoFile("README.md", "# Demo\nold line\n"), RepoFile("docs/other.md", "x" * 50)]


def _agent(remote_url: str, *, tasks: int = 3, **overrides) -> AgentState:
    backlog = [
        Task(id=f"t{index}", title=f"Task {index}", risk_score=risk, paths=["README.md"])
        for index, risk in zip(range(1, tasks + 1), (0.9, 0.1, 0.5, 0.3, 0.7))
    ]
    fields = {"id": "agent-1", "remote_url": remote_url, "issue_number": 7, "tasks": backlog}
    fields.update(overrides)
    return AgentState(**fields)


def _settings(work_root: Path, **git) -> AgentSettings:
    settings = AgentSettings()
    settings.git = GitSettings(workspace_root=work_root, **git)
    settings.adaptive.max_batch = 2
    return settings


def test_successful_iteration_commits_pushes_and_opens_pr(remote_repo, work_root: Path) -> None:
    store = InMemoryTaskStore([_agent(remote_repo.url)])
    provider = _FakeProvider()
    prs = _FakePullRequests()
    orchestrator = IterationOrchestrator(
        store,
        provider,
        settings=_settings(work_root),
        pr_service=prs,
        context_source=_StaticFiles(),
    )

    report = orchestrator.run_iteration("agent-1")

    assert report.status is IterationStatus.SUCCEEDED
    outcome = report.outcome
    assert outcome is not None
    assert outcome.applied and outcome.pushed
    assert outcome.revision and len(outcome.revision) >= 7
    assert outcome.validation.ok
    assert outcome.refinement_rounds == 1
    # batch of two, lowest risk first
    assert outcome.task_ids == ["t2", "t3"]
    assert [task.id for task in provider.requests[0].tasks] == ["t2", "t3"]
    assert provider.requests[0].files[0].path == "README.md"

    assert remote_repo.show("ai/issue-7-agent", "README.md") == "# Demo\nnew line\nanother line\n"
    assert prs.calls == [("agent-1", "ai/issue-7-agent")]

    agent = store.load_agent("agent-1")
    assert agent is not None
    assert agent.branch_name == "ai/issue-7-agent"
    assert agent.iterations == 1
    assert agent.confidence == pytest.approx(0.57)
    assert agent.done_tasks == 2
    assert agent.pr_number == 42
    assert {task.id for task in agent.tasks if task.status == TaskStatus.DONE} == {"t2", "t3"}
    assert store.list_outcomes("agent-1") == [outcome]
    assert list(work_root.iterdir()) == []


def test_provider_error_penalises_confidence_and_keeps_tasks_pending(remote_repo, work_root: Path) -> None:
    store = InMemoryTaskStore([_agent(remote_repo.url)])
    provider = _FakeProvider(error=ProviderError("rate limited"))
    orchestrator = IterationOrchestrator(store, provider, settings=_settings(work_root))

    report = orchestrator.run_iteration("agent-1")

    assert report.status is IterationStatus.FAILED
    assert report.outcome is not None
    assert report.outcome.error == "rate limited"
    assert not report.outcome.applied
    agent = store.load_agent("agent-1")
    assert agent is not None
    assert agent.confidence == pytest.approx(0.4)
    assert agent.iterations == 1
    assert len(agent.pending_tasks()) == 3


def test_invalid_diff_is_refined_then_rejected_without_workspace(remote_repo, work_root: Path) -> None:
    store = InMemoryTaskStore([_agent(remote_repo.url)])
    provider = _FakeProvider(DESTRUCTIVE_DIFF)
    settings = _settings(work_root)
    orchestrator = IterationOrchestrator(store, provider, settings=settings)

    report = orchestrator.run_iteration("agent-1")

    assert report.status is IterationStatus.FAILED
    outcome = report.outcome
    assert outcome is not None
    assert "deletion_ratio_suspicious" in outcome.validation.reasons
    assert outcome.refinement_rounds == settings.diff.refine_max_iterations
    assert len(provider.repairs) == settings.diff.refine_max_iterations - 1
    assert not outcome.applied
    assert list(work_root.iterdir()) == []
    assert "ai/issue-7-agent" not in remote_repo.branches()


def test_apply_failure_is_recorded_as_failed_outcome(remote_repo, work_root: Path) -> None:
    diff = README_DIFF.replace(" # Demo", " # Something else")
    store = InMemoryTaskStore([_agent(remote_repo.url)])
    orchestrator = IterationOrchestrator(store, _FakeProvider(diff), settings=_settings(work_root))

    report = orchestrator.run_iteration("agent-1")

    assert report.status is IterationStatus.FAILED
    assert report.outcome is not None
    assert report.outcome.failed_paths == ["README.md"]
    assert "apply_failed:README.md" in report.outcome.validation.reasons
    assert not report.outcome.validation.ok


def test_no_changes_is_not_a_success(remote_repo, work_root: Path) -> None:
    store = InMemoryTaskStore([_agent(remote_repo.url)])
    orchestrator = IterationOrchestrator(
        store, _FakeProvider("", no_changes=True), settings=_settings(work_root)
    )

    report = orchestrator.run_iteration("agent-1")

    assert report.status is IterationStatus.FAILED
    assert report.outcome is not None
    assert report.outcome.no_changes
    assert report.outcome.diff == ""
    assert report.confidence == pytest.approx(0.4)


def test_unreachable_remote_is_a_failed_iteration(tmp_path: Path, work_root: Path) -> None:
    store = InMemoryTaskStore([_agent((tmp_path / "missing.git").as_uri())])
    orchestrator = IterationOrchestrator(store, _FakeProvider(), settings=_settings(work_root))

    report = orchestrator.run_iteration("agent-1")

    assert report.status is IterationStatus.FAILED
    assert report.outcome is not None
    assert "workspace_unavailable" in report.outcome.validation.reasons
    assert report.outcome.error


def test_pull_request_failure_does_not_fail_iteration(remote_repo, work_root: Path) -> None:
    store = InMemoryTaskStore([_agent(remote_repo.url)])
    orchestrator = IterationOrchestrator(
        store,
        _FakeProvider(),
        settings=_settings(work_root),
        pr_service=_FakePullRequests(fail=True),
    )

    report = orchestrator.run_iteration("agent-1")

    assert report.status is IterationStatus.SUCCEEDED
    agent = store.load_agent("agent-1")
    assert agent is not None and agent.pr_number is None


def test_pull_request_skipped_when_disabled(remote_repo, work_root: Path) -> None:
    store = InMemoryTaskStore([_agent(remote_repo.url)])
    prs = _FakePullRequests()
    orchestrator = IterationOrchestrator(
        store,
        _FakeProvider(),
        settings=_settings(work_root, auto_pr_create=False),
        pr_service=prs,
    )

    assert orchestrator.run_iteration("agent-1").status is IterationStatus.SUCCEEDED
    assert prs.calls == []


def test_terminal_agent_is_marked_completed(work_root: Path) -> None:
    agent = _agent("file:///unused", tasks=2, confidence=0.95, total_tasks=2, done_tasks=2)
    for task in agent.tasks:
        task.status = TaskStatus.DONE
    store = InMemoryTaskStore([agent])
    provider = _FakeProvider()
    orchestrator = IterationOrchestrator(store, provider, settings=_settings(work_root))

    report = orchestrator.run_iteration("agent-1")

    assert report.status is IterationStatus.COMPLETED
    assert provider.requests == []
    loaded = store.load_agent("agent-1")
    assert loaded is not None and loaded.completed


def test_empty_backlog_is_idle(work_root: Path) -> None:
    store = InMemoryTaskStore([_agent("file:///unused", tasks=0, confidence=1.0)])
    provider = _FakeProvider()
    orchestrator = IterationOrchestrator(store, provider, settings=_settings(work_root))

    report = orchestrator.run_iteration("agent-1")

    assert report.status is IterationStatus.IDLE
    assert provider.requests == []
    loaded = store.load_agent("agent-1")
    assert loaded is not None and not loaded.completed


def test_unknown_agent_is_missing(work_root: Path) -> None:
    orchestrator = IterationOrchestrator(InMemoryTaskStore(), _FakeProvider(), settings=_settings(work_root))

    assert orchestrator.run_iteration("ghost").status is IterationStatus.MISSING


def test_overlapping_iteration_reports_busy(work_root: Path) -> None:
    lease = InMemoryLease()
    store = InMemoryTaskStore([_agent("file:///unused")])
    provider = _FakeProvider()
    orchestrator = IterationOrchestrator(store, provider, settings=_settings(work_root), lease=lease)

    assert lease.try_acquire("agent-1")
    report = orchestrator.run_iteration("agent-1")

    assert report.status is IterationStatus.BUSY
    assert provider.requests == []
    loaded = store.load_agent("agent-1")
    assert loaded is not None and loaded.iterations == 0
    lease.release("agent-1")
    assert not lease.held("agent-1")


def test_lease_is_released_after_iteration(work_root: Path) -> None:
    lease = InMemoryLease()
    store = InMemoryTaskStore([_agent("file:///unused", tasks=0)])
    orchestrator = IterationOrchestrator(store, _FakeProvider(), settings=_settings(work_root), lease=lease)

    orchestrator.run_iteration("agent-1")

    assert not lease.held("agent-1")


def test_memory_feeds_hints_and_records_outcomes(work_root: Path) -> None:
    memory = StrategicMemory()
    memory.record("agent-1", MemoryKind.STRATEGIC, "keep diffs small", salience=0.9)
    store = InMemoryTaskStore([_agent("file:///unused")])
    provider = _FakeProvider(error=ProviderError("offline"))
    orchestrator = IterationOrchestrator(store, provider, settings=_settings(work_root), memory=memory)

    orchestrator.run_iteration("agent-1")
    orchestrator.run_iteration("agent-1")

    assert provider.requests[0].guidance.strategic_hints == ("keep diffs small",)
    assert provider.requests[0].guidance.iteration == 0
    assert provider.requests[1].guidance.iteration == 1
    assert "offline" in provider.requests[1].reasoning
    technical = memory.items("agent-1", MemoryKind.TECHNICAL)
    assert len(technical) == 2


def test_memory_is_compressed_periodically_and_decayed_every_iteration(work_root: Path) -> None:
    settings = _settings(work_root)
    settings.memory = MemorySettings(compression_every=2, max_strategic=2, decay_factor=0.9)
    memory = StrategicMemory(settings.memory)
    for index, salience in enumerate([0.9, 0.8, 0.7, 0.6]):
        memory.record("agent-1", MemoryKind.STRATEGIC, f"s{index}", salience=salience)
    store = InMemoryTaskStore([_agent("file:///unused")])
    provider = _FakeProvider(error=ProviderError("offline"))
    orchestrator = IterationOrchestrator(store, provider, settings=settings, memory=memory)

    orchestrator.run_iteration("agent-1")
    strategic = memory.items("agent-1", MemoryKind.STRATEGIC)
    assert [item.content for item in strategic] == ["s0", "s1", "s2", "s3"]
    assert strategic[0].salience == pytest.approx(0.81)

    orchestrator.run_iteration("agent-1")
    strategic = memory.items("agent-1", MemoryKind.STRATEGIC)
    assert [item.content for item in strategic] == ["s0", "s1 | s2 | s3"]
    assert strategic[1].metadata == {"compressed": 3}
    assert strategic[0].salience == pytest.approx(0.729)
    assert strategic[1].salience == pytest.approx(0.567)
    assert provider.requests[0].guidance.strategic_hints == ("s0", "s1", "s2")


def test_rejected_push_keeps_tasks_pending(remote_repo, work_root: Path) -> None:
    hook = remote_repo.bare / "hooks" / "pre-receive"
    hook.parent.mkdir(exist_ok=True)
    hook.write_text("#!/bin/sh\nexit 1\n", encoding="utf-8")
    hook.chmod(0o755)
    store = InMemoryTaskStore([_agent(remote_repo.url)])
    prs = _FakePullRequests()
    orchestrator = IterationOrchestrator(store, _FakeProvider(), settings=_settings(work_root), pr_service=prs)

    report = orchestrator.run_iteration("agent-1")

    outcome = report.outcome
    assert outcome is not None
    assert outcome.applied and not outcome.pushed
    assert outcome.revision
    assert prs.calls == []
    assert "ai/issue-7-agent" not in remote_repo.branches()
    agent = store.load_agent("agent-1")
    assert agent is not None
    assert agent.done_tasks == 0
    assert len(agent.pending_tasks()) == 3
    assert agent.iterations == 1
    assert list(work_root.iterdir()) == []


def test_oversized_diff_is_truncated_then_rejected(remote_repo, work_root: Path) -> None:
    settings = _settings(work_root)
    settings.diff.max_bytes = 105
    store = InMemoryTaskStore([_agent(remote_repo.url)])
    provider = _FakeProvider()
    orchestrator = IterationOrchestrator(store, provider, settings=settings)

    report = orchestrator.run_iteration("agent-1")

    assert report.status is IterationStatus.FAILED
    outcome = report.outcome
    assert outcome is not None
    assert outcome.diff.startswith(README_DIFF[:105])
    assert "another line" not in outcome.diff
    assert outcome.diff.rstrip("\n").endswith("+new")
    assert "hunk_extent_mismatch" in outcome.validation.reasons
    assert outcome.refinement_rounds == settings.diff.refine_max_iterations
    assert not outcome.applied
    assert "ai/issue-7-agent" not in remote_repo.branches()
    assert len(store.load_agent("agent-1").pending_tasks()) == 3


def test_concurrent_runs_never_overlap(work_root: Path) -> None:
    entered = threading.Event()
    release = threading.Event()

    class _BlockingProvider(_FakeProvider):
        def generate_patch(self, request: PatchRequest) -> PatchProposal:
            entered.set()
            release.wait(timeout=5)
            return super().generate_patch(request)

    store = InMemoryTaskStore([_agent("file:///unused")])
    orchestrator = IterationOrchestrator(
        store, _BlockingProvider("", no_changes=True), settings=_settings(work_root)
    )
    results = []
    worker = threading.Thread(target=lambda: results.append(orchestrator.run_iteration("agent-1")))
    worker.start()
    assert entered.wait(timeout=5)

    second = orchestrator.run_iteration("agent-1")
    release.set()
    worker.join(timeout=5)

    assert second.status is IterationStatus.BUSY
    assert results and results[0].status is IterationStatus.FAILED


def test_truncate_utf8_never_splits_characters() -> None:
    assert truncate_utf8("abc", 10) == "abc"
    assert truncate_utf8("héllo", 2) == "h"
    assert truncate_utf8("héllo", 3) == "hé"
