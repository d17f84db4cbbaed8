"""
aop-control - restart -> re-execute -> re-validate

File: src/aop_control/control_plane/restart_apply.py

Purpose
- After a restart, re-run every restarted Tier 2 (domain leader) task through the execution
  runner, persist what it proposes, and push each candidate mutation through the pipeline
  with Tier 1 approval.

Functional requirements
- Executions run concurrently and are settled together; a failing task never
  aborts the rest and is never left ``executing``.
- Candidate polling is bounded by ``candidate_poll_attempts``.
- Pipeline runs are sequential so two candidates for one file never race on the target.
- Nothing here raises for a partial failure; the outcome is a ``RestartApplySummary``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from aop_control.constants import ACTOR_CONTROL, DOMAIN_LEADER_TIER
from aop_control.control_plane.runtime import ExecutionHandle, ExecutionSupervisor
from aop_control.control_plane.tasks import TaskService
from aop_control.domain.models import (
    AuditAction,
    DiffProposal,
    IntentSummary,
    Mutation,
    Task,
    TaskStatus,
)
from aop_control.integration_plane.conflict_resolution import (
    ConflictResolver,
    ExecutionOutcome,
    summary_status,
)
from aop_control.persistence.repositories import AuditLogRepo
from aop_control.verification_plane.mutations import MutationService

if TYPE_CHECKING:
    from aop_control.persistence.state_db import StateDB
    from aop_control.verification_plane.pipeline import MutationPipeline, PipelineRunResult

DEFAULT_TOP_K: Final[int] = 8
DEFAULT_CANDIDATE_POLL_ATTEMPTS: Final[int] = 8
DEFAULT_CANDIDATE_POLL_INTERVAL_SECONDS: Final[float] = 0.4
BLOCKED_MESSAGE: Final[str] = "Domain execution produced no valid proposals."
CONSENSUS_FAILED_MESSAGE: Final[str] = (
    "Specialist proposals disagree; human conflict resolution is required."
)


@dataclass(frozen=True, slots=True)
class RestartApplySettings:
    top_k: int = DEFAULT_TOP_K
    candidate_poll_attempts: int = DEFAULT_CANDIDATE_POLL_ATTEMPTS
    candidate_poll_interval_seconds: float = DEFAULT_CANDIDATE_POLL_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        if self.top_k < 1:
            raise ValueError("top_k must be >= 1")
        if self.candidate_poll_interval_seconds < 0:
            raise ValueError("candidate_poll_interval_seconds must be >= 0")

    @classmethod
    def from_config(cls, section: Mapping[str, object]) -> RestartApplySettings:
        top_k = section.get("top_k", DEFAULT_TOP_K)
        attempts = section.get("candidate_poll_attempts", DEFAULT_CANDIDATE_POLL_ATTEMPTS)
        interval = section.get(
            "candidate_poll_interval_seconds", DEFAULT_CANDIDATE_POLL_INTERVAL_SECONDS
        )
        return cls(
            top_k=top_k if isinstance(top_k, int) else DEFAULT_TOP_K,
            candidate_poll_attempts=(
                attempts if isinstance(attempts, int) else DEFAULT_CANDIDATE_POLL_ATTEMPTS
            ),
            candidate_poll_interval_seconds=(
                float(interval)
                if isinstance(interval, (int, float))
                else DEFAULT_CANDIDATE_POLL_INTERVAL_SECONDS
            ),
        )


@dataclass(frozen=True, slots=True)
class RestartApplySummary:
    """Counts and first errors from one restart-apply round."""

    tier2_tasks: int = 0
    successful_tier2_tasks: int = 0
    failed_executions: int = 0
    first_execution_error: str | None = None
    tasks_without_candidates: int = 0
    tasks_awaiting_review: int = 0
    attempted_mutations: int = 0
    applied_mutations: int = 0
    rejected_mutations: int = 0
    pipeline_errors: int = 0
    first_rejected_reason: str | None = None
    first_pipeline_error: str | None = None

    def format_issue(self) -> str | None:
        """One operator-facing sentence describing what went wrong, or ``None``."""

        issues: list[str] = []
        if self.tier2_tasks == 0:
            issues.append("Tasks were restarted, but no Tier 2 tasks were available to execute.")
        if self.failed_executions > 0:
            issues.append(
                f"{self.failed_executions} Tier 2 execution(s) failed. "
                f"First error: {self.first_execution_error or 'unknown error'}"
            )
        if self.tasks_awaiting_review > 0:
            issues.append(
                f"{self.tasks_awaiting_review} Tier 2 task(s) reported conflicting proposals "
                "that need human review."
            )
        if self.tasks_without_candidates > 0:
            issues.append(
                f"{self.tasks_without_candidates} Tier 2 task(s) did not produce mutation "
                "candidates."
            )
        if self.tier2_tasks > 0 and self.attempted_mutations == 0:
            issues.append("No mutation candidates were available to apply.")
        if self.rejected_mutations > 0:
            issues.append(
                f"{self.rejected_mutations} mutation pipeline run(s) were rejected. "
                f"First rejection: {self.first_rejected_reason or 'unknown reason'}"
            )
        if self.pipeline_errors > 0:
            issues.append(
                f"{self.pipeline_errors} mutation pipeline run(s) crashed before completion. "
                f"First error: {self.first_pipeline_error or 'unknown error'}"
            )
        if not issues:
            return None
        prefix = (
            f"Applied {self.applied_mutations} mutation(s), but "
            if self.applied_mutations > 0
            else "No mutation was applied. "
        )
        return prefix + " ".join(issues)

    def to_dict(self) -> dict[str, object]:
        return dataclasses.asdict(self)


@dataclass(slots=True)
class _Tally:
    tier2_tasks: int = 0
    successful_tier2_tasks: int = 0
    failed_executions: int = 0
    first_execution_error: str | None = None
    tasks_without_candidates: int = 0
    tasks_awaiting_review: int = 0
    attempted_mutations: int = 0
    applied_mutations: int = 0
    rejected_mutations: int = 0
    pipeline_errors: int = 0
    first_rejected_reason: str | None = None
    first_pipeline_error: str | None = None

    def execution_failed(self, message: str) -> None:
        self.failed_executions += 1
        if self.first_execution_error is None:
            self.first_execution_error = message

    def pipeline_failed(self, message: str) -> None:
        self.pipeline_errors += 1
        if self.first_pipeline_error is None:
            self.first_pipeline_error = message

    def freeze(self) -> RestartApplySummary:
        return RestartApplySummary(
            **{item.name: getattr(self, item.name) for item in dataclasses.fields(self)}
        )


class RestartApplier:
    """Re-executes restarted domain tasks and applies what they propose."""

    def __init__(
        self,
        db: StateDB,
        *,
        supervisor: ExecutionSupervisor,
        pipeline: MutationPipeline,
        task_service: TaskService | None = None,
        mutation_service: MutationService | None = None,
        conflicts: ConflictResolver | None = None,
        settings: RestartApplySettings | None = None,
        logger: Any | None = None,
    ) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._supervisor = supervisor
        self._pipeline = pipeline
        self._tasks = task_service if task_service is not None else TaskService(db)
        self._mutations = (
            mutation_service if mutation_service is not None else MutationService(db)
        )
        self._conflicts = conflicts
        self._settings = settings if settings is not None else RestartApplySettings()
        self._audit = AuditLogRepo(db)

    async def run(
        self,
        root_task_id: str,
        restarted: Sequence[Task],
        target_project: str | os.PathLike[str],
        *,
        ci_command: str | Sequence[str] | None = None,
        actor: str = ACTOR_CONTROL,
    ) -> RestartApplySummary:
        project_root = Path(target_project)
        tally = _Tally()
        domain_tasks = [task for task in restarted if task.tier == DOMAIN_LEADER_TIER]
        tally.tier2_tasks = len(domain_tasks)

        handles: list[ExecutionHandle] = []
        for task in domain_tasks:
            try:
                started = self._tasks.begin_execution(task, actor=actor)
            except Exception as exc:  # noqa: BLE001
                message = f"Failed to start execution of task '{task.id}': {_error_text(exc)}"
                tally.execution_failed(message)
                self._logger.warning("restart_apply_start_error", task_id=task.id, error=message)
                continue
            if started is None:
                tally.execution_failed(
                    f"Task '{task.id}' changed status before execution started."
                )
                continue
            handles.append(
                self._supervisor.submit(started, project_root, top_k=self._settings.top_k)
            )

        outcomes = await asyncio.gather(
            *(handle.result() for handle in handles), return_exceptions=True
        )
        for handle, outcome in zip(handles, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                self._record_failed_execution(handle, outcome, tally, actor)
                continue
            try:
                settled = self._settle_execution(handle.task_id, outcome, actor)
            except Exception as exc:  # noqa: BLE001
                self._record_settle_failure(handle.task_id, exc, tally, actor)
                continue
            if settled is None:
                tally.execution_failed(
                    f"Task '{handle.task_id}' changed status before its outcome was recorded."
                )
                continue
            tally.successful_tier2_tasks += 1
            if settled is ExecutionOutcome.CONSENSUS_FAILED:
                tally.tasks_awaiting_review += 1
                continue
            try:
                candidates = await self._poll_candidates(handle.task_id)
                if not candidates:
                    tally.tasks_without_candidates += 1
                    continue
                for mutation in candidates:
                    await self._apply_candidate(mutation, project_root, ci_command, tally)
            except Exception as exc:  # noqa: BLE001
                message = _error_text(exc)
                tally.pipeline_failed(message)
                self._logger.warning(
                    "restart_apply_task_error", task_id=handle.task_id, error=message
                )

        summary = tally.freeze()
        self._audit.append(
            actor=actor,
            action=AuditAction.RESTART_APPLY_COMPLETED,
            target_id=root_task_id,
            details={**summary.to_dict(), "issue": summary.format_issue()},
        )
        self._logger.info("restart_apply_completed", root_task_id=root_task_id, **summary.to_dict())
        return summary

    def _record_failed_execution(
        self, handle: ExecutionHandle, error: BaseException, tally: _Tally, actor: str
    ) -> None:
        if handle.token.is_cancelled:
            # A stop already failed the task with its own reason.
            message = f"execution cancelled: {handle.token.reason or 'cancelled'}"
        else:
            message = _error_text(error)
            self._fail_task(handle.task_id, message, actor)
        tally.execution_failed(message)

    def _record_settle_failure(
        self, task_id: str, error: Exception, tally: _Tally, actor: str
    ) -> None:
        message = f"Failed to record execution outcome: {_error_text(error)}"
        tally.execution_failed(message)
        self._fail_task(task_id, message, actor)

    def _fail_task(self, task_id: str, message: str, actor: str) -> None:
        try:
            self._tasks.record_execution_failure(
                task_id, message, actor=actor, expected=TaskStatus.EXECUTING
            )
        except Exception as exc:  # noqa: BLE001
            self._logger.error(
                "restart_apply_fail_task_error", task_id=task_id, error=_error_text(exc)
            )

    def _settle_execution(
        self, task_id: str, summary: IntentSummary, actor: str
    ) -> ExecutionOutcome | None:
        """Persist proposals and settle the task.

        Returns ``None`` when a control action moved the task first; its proposals stay
        unapplied.
        """

        persisted: list[DiffProposal] = []
        for proposal in summary.proposals:
            mutation = self._mutations.propose(task_id, proposal)
            persisted.append(dataclasses.replace(proposal, mutation_id=mutation.id))
        if summary.tokens_spent:
            self._tasks.repo.add_usage(task_id, summary.tokens_spent)

        reports = list(summary.conflicts)
        if not reports and self._conflicts is not None:
            reports = self._conflicts.detect(task_id, persisted)

        outcome = summary_status(persisted, reports)
        if outcome is ExecutionOutcome.READY_FOR_REVIEW:
            status, message = TaskStatus.COMPLETED, None
        elif outcome is ExecutionOutcome.BLOCKED:
            status, message = TaskStatus.FAILED, BLOCKED_MESSAGE
        else:
            status, message = TaskStatus.PAUSED, CONSENSUS_FAILED_MESSAGE
        finished = self._tasks.finish_execution(
            task_id,
            status=status,
            compliance_score=summary.compliance_score,
            error_message=message,
            actor=actor,
        )
        if finished is None:
            self._logger.info("restart_apply_outcome_superseded", task_id=task_id)
            return None
        return outcome

    async def _poll_candidates(self, task_id: str) -> list[Mutation]:
        attempts = max(1, self._settings.candidate_poll_attempts)
        for attempt in range(attempts):
            candidates = self._mutations.candidates(task_id)
            if candidates:
                return candidates
            if attempt + 1 < attempts:
                await asyncio.sleep(self._settings.candidate_poll_interval_seconds)
        return []

    async def _apply_candidate(
        self,
        mutation: Mutation,
        project_root: Path,
        ci_command: str | Sequence[str] | None,
        tally: _Tally,
    ) -> None:
        tally.attempted_mutations += 1
        try:
            result = await self._pipeline.run(
                mutation.id, project_root, tier1_approved=True, ci_command=ci_command
            )
        except Exception as exc:  # noqa: BLE001
            message = _error_text(exc)
            tally.pipeline_failed(message)
            self._logger.warning(
                "restart_apply_pipeline_error", mutation_id=mutation.id, error=message
            )
            return
        if result.applied:
            tally.applied_mutations += 1
            return
        tally.rejected_mutations += 1
        if tally.first_rejected_reason is None:
            tally.first_rejected_reason = _rejection_reason(result)


def _rejection_reason(result: PipelineRunResult) -> str:
    failure = result.first_failure
    if failure is not None and failure.details:
        return failure.details
    if result.mutation.rejection_reason:
        return result.mutation.rejection_reason
    if result.task.error_message:
        return result.task.error_message
    return (
        f"Mutation {result.mutation.id} finished with status '{result.mutation.status.value}'."
    )


def _error_text(error: BaseException) -> str:
    text = str(error).strip()
    return text or type(error).__name__


__all__ = [
    "DEFAULT_TOP_K",
    "RestartApplier",
    "RestartApplySettings",
    "RestartApplySummary",
]
