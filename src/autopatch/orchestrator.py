"""Per-agent iteration loop composing the diff, workspace and adaptive tooling.

One call to :meth:`IterationOrchestrator.run_iteration` performs a single
scheduling tick for an agent: pick a low-risk batch of pending tasks, ask the
provider for a diff, refine and validate it, apply it in a fresh checkout,
publish the commit and record an immutable :class:`IterationOutcome`.
Failures are recorded and penalise confidence; the next tick is the retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Sequence

from .adaptive import decide_batch_size, termination_reached, update_confidence
from .config import AgentSettings
from .context_budget import ContextBudget, RepoFile
from .memory.salience import StrategicMemory
from .memory.schema import AgentState, IterationOutcome, MemoryKind, Task, TaskStatus, ValidationRecord
from .memory.store import TaskStore
from .providers.base import PatchGuidance, PatchProvider, PatchRequest, ProviderError
from .refinement import refine_patch
from .services import AgentLease, ContextSource, InMemoryLease, PullRequestError, PullRequestService
from .telemetry import emit_event
from .tools.diff_parser import ParsedDiff, parse_unified_diff
from .tools.heuristics import DiffLimits, ValidationResult, validate_patch
from .tools.workspace import Credentials, WorkspaceManager, is_revision_id

LOGGER = logging.getLogger(__name__)

REASON_EMPTY_DIFF = "empty_diff"
REASON_WORKSPACE_UNAVAILABLE = "workspace_unavailable"
REASON_APPLY_FAILED = "apply_failed"
REASON_STAGE_FAILED = "stage_failed"
REASON_COMMIT_FAILED = "commit_failed"


class IterationStatus(str, Enum):
    """How a call to :meth:`IterationOrchestrator.run_iteration` ended."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    COMPLETED = "completed"
    IDLE = "idle"
    BUSY = "busy"
    MISSING = "missing"


@dataclass(slots=True)
class IterationReport:
    status: IterationStatus
    outcome: IterationOutcome | None = None
    confidence: float | None = None
    message: str = ""


@dataclass(slots=True)
class _PublishResult:
    validation: ValidationResult
    revision: str | None = None
    pushed: bool = False
    failed_paths: tuple[str, ...] = ()
    error: str | None = None


@dataclass(slots=True)
class _Attempt:
    """Mutable scratch state for one iteration before it is frozen into an outcome."""

    tasks: List[Task] = field(default_factory=list)
    diff: str = ""
    no_changes: bool = False
    refinement_rounds: int = 0
    validation: ValidationResult = field(default_factory=lambda: ValidationResult(ok=True))
    publish: _PublishResult | None = None
    error: str | None = None


def truncate_utf8(text: str, max_bytes: int) -> str:
    """Cut ``text`` to at most ``max_bytes`` UTF-8 bytes without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[: max(0, max_bytes)].decode("utf-8", errors="ignore")


class IterationOrchestrator:
    """Run one adaptive iteration for an agent.

    Collaborators are passed in once at construction.  Only the store, the
    provider and the settings are required; the remaining collaborators fall
    back to in-process defaults.
    """

    def __init__(
        self,
        store: TaskStore,
        provider: PatchProvider,
        *,
        settings: AgentSettings | None = None,
        workspace_manager: WorkspaceManager | None = None,
        memory: StrategicMemory | None = None,
        context_budget: ContextBudget | None = None,
        context_source: ContextSource | None = None,
        pr_service: PullRequestService | None = None,
        lease: AgentLease | None = None,
        credentials: Credentials | None = None,
    ) -> None:
        self.settings = settings or AgentSettings()
        self.store = store
        self.provider = provider
        self.workspaces = workspace_manager or WorkspaceManager(self.settings.git)
        self.memory = memory or StrategicMemory(self.settings.memory)
        self.context_budget = context_budget or ContextBudget(self.settings.context)
        self.context_source = context_source
        self.pr_service = pr_service
        self.lease = lease or InMemoryLease()
        self.credentials = credentials
        self.limits = DiffLimits.from_settings(self.settings.diff)

    # ------------------------------------------------------------------ entry
    def run_iteration(self, agent_id: str) -> IterationReport:
        """Run a single tick for ``agent_id``; overlapping calls report ``BUSY``."""
        if not self.lease.try_acquire(agent_id):
            LOGGER.info("Agent %s already has an iteration in flight", agent_id)
            return IterationReport(status=IterationStatus.BUSY, message="iteration already running")
        try:
            return self._run_leased(agent_id)
        finally:
            self.lease.release(agent_id)

    def _run_leased(self, agent_id: str) -> IterationReport:
        agent = self.store.load_agent(agent_id)
        if agent is None:
            LOGGER.warning("Agent %s not found", agent_id)
            return IterationReport(status=IterationStatus.MISSING, message=f"unknown agent {agent_id}")

        if termination_reached(agent, self.settings.termination):
            if not agent.completed:
                self.store.update_agent(agent.id, completed=True)
                LOGGER.info("Agent %s reached termination at confidence %.2f", agent.id, agent.confidence)
            return IterationReport(status=IterationStatus.COMPLETED, confidence=agent.confidence)

        branch = self._ensure_branch(agent)
        batch = self.select_batch(agent)
        if not batch:
            return IterationReport(status=IterationStatus.IDLE, confidence=agent.confidence, message="no pending tasks")

        attempt = _Attempt(tasks=batch)
        try:
            proposal = self.provider.generate_patch(self._build_request(agent, batch))
        except ProviderError as error:
            LOGGER.warning("Provider failed for agent %s: %s", agent.id, error)
            attempt.error = str(error)
        else:
            attempt.no_changes = proposal.no_changes
            attempt.diff = truncate_utf8(proposal.diff or "", self.settings.diff.max_bytes)
            self._process_diff(agent, branch, attempt)

        return self._finish(agent, attempt)

    # ------------------------------------------------------------ selection
    def select_batch(self, agent: AgentState) -> List[Task]:
        """Return the lowest-risk pending tasks, sized by the adaptive controller."""
        pending = sorted(agent.pending_tasks(), key=lambda task: (task.risk_score, task.order_index))
        size = decide_batch_size(
            agent.confidence,
            len(pending),
            self.settings.adaptive.min_batch,
            self.settings.adaptive.max_batch,
        )
        return pending[:size]

    def _ensure_branch(self, agent: AgentState) -> str:
        if agent.branch_name:
            return agent.branch_name
        branch = self.settings.git.branch_template.format(issue=agent.issue_number, agent=agent.id)
        self.store.update_agent(agent.id, branch_name=branch)
        agent.branch_name = branch
        return branch

    def _build_request(self, agent: AgentState, batch: Sequence[Task]) -> PatchRequest:
        hint_limit = max(0, self.settings.memory.strategic_hints)
        hints = tuple(self.memory.fetch_bundle(agent.id, limit=hint_limit))
        technical = sorted(self.memory.items(agent.id, MemoryKind.TECHNICAL), key=lambda item: item.created_at)
        reasoning = self.context_budget.pack_reasoning([item.content for item in technical])

        files: List[RepoFile] = []
        if self.context_source is not None:
            files = self.context_budget.trim_files(self.context_source.collect_files(agent, batch), batch)

        guidance = PatchGuidance(
            iteration=agent.iterations,
            confidence=agent.confidence,
            max_tasks_allowed=len(batch),
            strategic_hints=hints,
        )
        return PatchRequest(tasks=list(batch), files=files, guidance=guidance, reasoning=reasoning)

    # ------------------------------------------------------------- diff flow
    def _process_diff(self, agent: AgentState, branch: str, attempt: _Attempt) -> None:
        if not attempt.diff.strip():
            if not attempt.no_changes:
                attempt.validation = attempt.validation.with_reason(REASON_EMPTY_DIFF)
            return

        refinement = refine_patch(
            attempt.diff,
            self.provider.repair_patch,
            self.settings.diff.refine_max_iterations,
            limits=self.limits,
        )
        attempt.refinement_rounds = refinement.iterations
        attempt.diff = refinement.refined
        if not attempt.diff.strip():
            attempt.validation = attempt.validation.with_reason(REASON_EMPTY_DIFF)
            return

        parsed = parse_unified_diff(attempt.diff)
        attempt.validation = validate_patch(parsed, self.limits)
        if not attempt.validation.ok:
            LOGGER.info("Diff for agent %s rejected: %s", agent.id, ", ".join(attempt.validation.reasons))
            return

        attempt.publish = self._publish(agent, branch, parsed, attempt.validation, attempt.tasks)
        attempt.validation = attempt.publish.validation
        attempt.error = attempt.publish.error

    def _publish(
        self,
        agent: AgentState,
        branch: str,
        parsed: ParsedDiff,
        validation: ValidationResult,
        tasks: Sequence[Task],
    ) -> _PublishResult:
        """Apply ``parsed`` in a fresh checkout, then commit, push and ensure a PR."""
        acquired = self.workspaces.acquire(
            agent.remote_url,
            branch,
            self.credentials,
            base_branch=self.settings.git.default_base,
        )
        if not acquired.ok or acquired.workspace is None:
            return _PublishResult(
                validation=validation.with_reason(REASON_WORKSPACE_UNAVAILABLE),
                error=acquired.error,
            )

        workspace = acquired.workspace
        try:
            report = self.workspaces.apply_change(workspace, parsed)
            if not report.ok:
                reason = f"{REASON_APPLY_FAILED}:{','.join(report.failed_paths)}"
                return _PublishResult(validation=validation.with_reason(reason), failed_paths=report.failed_paths)

            if not self.workspaces.stage(workspace):
                return _PublishResult(validation=validation.with_reason(REASON_STAGE_FAILED))

            message = f"agent: tasks {', '.join(task.id for task in tasks)}"
            revision = self.workspaces.commit(workspace, message)
            if not is_revision_id(revision):
                return _PublishResult(validation=validation.with_reason(REASON_COMMIT_FAILED), error=revision)

            pushed = self.workspaces.push(workspace)
            if pushed and self.settings.git.auto_pr_create and self.pr_service is not None:
                self._ensure_pull_request(self.pr_service, agent, branch)
            return _PublishResult(validation=validation, revision=revision, pushed=pushed)
        finally:
            self.workspaces.dispose(workspace)

    def _ensure_pull_request(self, service: PullRequestService, agent: AgentState, branch: str) -> None:
        try:
            number = service.ensure_pull_request(agent, branch)
        except PullRequestError as error:
            LOGGER.warning("Unable to ensure pull request for %s: %s", branch, error)
            return
        if number and number != agent.pr_number:
            self.store.update_agent(agent.id, pr_number=number)
            agent.pr_number = number

    # ----------------------------------------------------------- bookkeeping
    def _finish(self, agent: AgentState, attempt: _Attempt) -> IterationReport:
        publish = attempt.publish
        revision = publish.revision if publish else None
        applied = is_revision_id(revision)
        outcome = IterationOutcome(
            agent_id=agent.id,
            iteration=agent.iterations,
            task_ids=[task.id for task in attempt.tasks],
            diff=attempt.diff,
            diff_hash=IterationOutcome.hash_diff(attempt.diff) if attempt.diff else "",
            validation=ValidationRecord.from_result(attempt.validation),
            refinement_rounds=attempt.refinement_rounds,
            applied=applied,
            pushed=bool(publish and publish.pushed),
            revision=revision,
            failed_paths=list(publish.failed_paths) if publish else [],
            no_changes=attempt.no_changes,
            error=attempt.error,
        )
        self.store.record_outcome(outcome)

        success = applied and not attempt.no_changes
        confidence = update_confidence(agent.confidence, success, self.settings.adaptive)
        # The checkout is disposed either way; only a pushed commit survives it.
        if success and outcome.pushed:
            self.store.update_task_status(agent.id, outcome.task_ids, TaskStatus.DONE)
        elif success:
            LOGGER.warning("Push rejected for agent %s; tasks %s stay pending", agent.id, outcome.task_ids)
        self.store.update_agent(agent.id, confidence=confidence, iterations=agent.iterations + 1)

        self._remember(agent, outcome, success)

        emit_event(
            "iteration.finished",
            agent_id=agent.id,
            iteration=outcome.iteration,
            tasks=outcome.task_ids,
            success=success,
            applied=applied,
            pushed=outcome.pushed,
            revision=revision,
            reasons=outcome.validation.reasons,
            confidence=confidence,
        )
        status = IterationStatus.SUCCEEDED if success else IterationStatus.FAILED
        return IterationReport(status=status, outcome=outcome, confidence=confidence)

    def _remember(self, agent: AgentState, outcome: IterationOutcome, success: bool) -> None:
        tasks = ", ".join(outcome.task_ids)
        if success:
            note = f"Iteration {outcome.iteration}: committed {outcome.revision} for tasks {tasks}."
        elif outcome.error:
            note = f"Iteration {outcome.iteration}: tasks {tasks} failed: {outcome.error}"
        elif outcome.no_changes:
            note = f"Iteration {outcome.iteration}: provider reported no changes for tasks {tasks}."
        else:
            reasons = ", ".join(outcome.validation.reasons) or "not applied"
            note = f"Iteration {outcome.iteration}: tasks {tasks} rejected ({reasons})."
        self.memory.record(
            agent.id,
            MemoryKind.TECHNICAL,
            note,
            salience=0.7 if success else 0.55,
            iteration=outcome.iteration,
        )

        every = self.settings.memory.compression_every
        if every > 0 and (agent.iterations + 1) % every == 0:
            self.memory.compress(agent.id)
        self.memory.decay(agent.id)


__all__ = [
    "IterationOrchestrator",
    "IterationReport",
    "IterationStatus",
    "truncate_utf8",
]
