"""
aop-control - control plane service facade

File: src/aop_control/service.py

Purpose
- One object that wires the state DB, the task store, the budget arbiter, the mutation
  pipeline, the conflict resolver, the scope engine and the activity feed together, and
  exposes the command surface the CLI and embedding applications call.

Functional requirements
- The facade owns state; observers read it back only through ``list_audit_log`` and
  ``list_task_activity``.
- Collaborators that talk to agents (``ExecutionRunner``, ``RevisionGenerator``) are
  optional. Without a runner, restart leaves tasks pending instead of re-executing them;
  without a generator, ``request_mutation_revision`` raises ``ValidationError``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import structlog

from aop_control.config.schema import default_config
from aop_control.constants import ACTOR_OPERATOR
from aop_control.control_plane.budgets import (
    BudgetArbiter,
    BudgetPolicy,
    BudgetSplit,
    complexity_weight,
    split_global_budget,
)
from aop_control.control_plane.control_scope import (
    ControlScopeEngine,
    ControlScopeResult,
    parse_scope,
)
from aop_control.control_plane.restart_apply import RestartApplier, RestartApplySettings
from aop_control.control_plane.runtime import ExecutionRunner, ExecutionSupervisor, TaskRuntime
from aop_control.control_plane.task_graph import TaskGraph
from aop_control.control_plane.tasks import TaskService
from aop_control.domain.models import (
    BudgetDecision,
    BudgetRequest,
    BudgetRequestStatus,
    ConflictReport,
    ControlAction,
    DiffProposal,
    Mutation,
    MutationStatus,
    Task,
    TaskStatus,
)
from aop_control.errors import ValidationError
from aop_control.integration_plane.conflict_resolution import ConflictResolver
from aop_control.integration_plane.content_access import (
    ContentAccess,
    DirectoryListing,
    FileContent,
    SearchResult,
)
from aop_control.observability.activity import ActivityFeed, ActivityPage
from aop_control.persistence.state_db import StateDB
from aop_control.verification_plane.ci import CommandExecutor
from aop_control.verification_plane.compliance import CompliancePolicy
from aop_control.verification_plane.mutations import MutationService
from aop_control.verification_plane.pipeline import (
    MutationPipeline,
    PipelineRunResult,
    PipelineSettings,
)
from aop_control.verification_plane.revision import (
    RevisionGenerator,
    RevisionResult,
    RevisionService,
)
from aop_control.verification_plane.similarity import DistanceScorer, SimilarityScorer

NO_REVISION_GENERATOR_MESSAGE = (
    "no revision generator is configured; mutation revisions are unavailable"
)


class ControlPlane:
    """Command surface of the control plane over one state DB."""

    def __init__(
        self,
        db: StateDB,
        *,
        config: Mapping[str, Any] | None = None,
        runner: ExecutionRunner | None = None,
        executor: CommandExecutor | None = None,
        revision_generator: RevisionGenerator | None = None,
        similarity: SimilarityScorer | None = None,
        distance: DistanceScorer | None = None,
        logger: Any | None = None,
    ) -> None:
        effective: Mapping[str, Any] = config if config is not None else default_config()
        self._config = effective
        self._db = db
        self._db.ensure_migrated()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        pipeline_section = _section(effective, "pipeline")
        policy_path = pipeline_section.get("compliance_policy_path")

        self.tasks = TaskService(db, logger=self._logger)
        self.mutations = MutationService(db, logger=self._logger)
        self.budgets = BudgetArbiter(
            db,
            policy=BudgetPolicy.from_config(_section(effective, "budgets")),
            task_service=self.tasks,
            logger=self._logger,
        )
        self.pipeline = MutationPipeline(
            db,
            executor=executor,
            similarity=similarity,
            compliance=CompliancePolicy.load(
                Path(policy_path) if isinstance(policy_path, str) else None
            ),
            settings=PipelineSettings.from_config(pipeline_section),
            logger=self._logger,
        )
        self.conflicts = ConflictResolver(
            db,
            pipeline=self.pipeline,
            distance=distance,
            threshold=float(_section(effective, "conflicts").get("distance_threshold", 0.3)),
            logger=self._logger,
        )
        self.supervisor = (
            ExecutionSupervisor(runner, logger=self._logger) if runner is not None else None
        )
        self.restart_applier = (
            RestartApplier(
                db,
                supervisor=self.supervisor,
                pipeline=self.pipeline,
                task_service=self.tasks,
                mutation_service=self.mutations,
                conflicts=self.conflicts,
                settings=RestartApplySettings.from_config(_section(effective, "restart")),
                logger=self._logger,
            )
            if self.supervisor is not None
            else None
        )
        self.scopes = ControlScopeEngine(
            db,
            task_service=self.tasks,
            supervisor=self.supervisor,
            restart_applier=self.restart_applier,
            logger=self._logger,
        )
        self.revisions = (
            RevisionService(
                db,
                revision_generator,
                task_service=self.tasks,
                mutation_service=self.mutations,
                logger=self._logger,
            )
            if revision_generator is not None
            else None
        )
        self.runtime = TaskRuntime(db, logger=self._logger)
        self.activity = ActivityFeed(db)

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **collaborators: Any) -> ControlPlane:
        """Open the state DB named by ``paths.state_db`` and build the facade."""

        state_db = _section(config, "paths").get("state_db")
        if not isinstance(state_db, str) or not state_db.strip():
            raise ValidationError("paths.state_db is required")
        return cls(StateDB(state_db), config=config, **collaborators)

    @property
    def db(self) -> StateDB:
        return self._db

    @property
    def workspace_root(self) -> Path:
        raw = _section(self._config, "paths").get("workspace_root", ".")
        return Path(str(raw))

    # Task store ---------------------------------------------------------------

    def create_task(
        self,
        *,
        tier: int,
        domain: str,
        objective: str,
        token_budget: int,
        parent_id: str | None = None,
        risk_factor: float = 0.0,
        agent_uid: str | None = None,
        target_files: Sequence[str] = (),
        actor: str = ACTOR_OPERATOR,
    ) -> Task:
        return self.tasks.create_task(
            tier=tier,
            domain=domain,
            objective=objective,
            token_budget=token_budget,
            parent_id=parent_id,
            risk_factor=risk_factor,
            agent_uid=agent_uid,
            target_files=target_files,
            actor=actor,
        )

    def get_task(self, task_id: str) -> Task:
        return self.tasks.get_task(task_id)

    def task_tree(self, root_task_id: str) -> TaskGraph:
        return self.tasks.task_tree(root_task_id)

    def update_task_status(
        self,
        task_id: str,
        status: TaskStatus | str,
        *,
        error_message: str | None = None,
        compliance_score: int | None = None,
        actor: str = ACTOR_OPERATOR,
    ) -> Task:
        return self.tasks.update_task_status(
            task_id,
            status,
            error_message=error_message,
            compliance_score=compliance_score,
            actor=actor,
        )

    # Control scope ------------------------------------------------------------

    async def control_task(
        self,
        task_id: str,
        action: ControlAction | str,
        *,
        include_descendants: bool = True,
        reason: str | None = None,
        target_project: str | os.PathLike[str] | None = None,
        reexecute: bool = True,
        ci_command: str | Sequence[str] | None = None,
        actor: str = ACTOR_OPERATOR,
    ) -> ControlScopeResult:
        return await self.scopes.control_task(
            task_id,
            action,
            include_descendants=include_descendants,
            reason=reason,
            actor=actor,
            target_project=self._target(target_project),
            reexecute=reexecute,
            ci_command=ci_command,
        )

    async def control_execution_scope(
        self,
        root_task_id: str,
        action: ControlAction | str,
        scope_type: str,
        *,
        tier: int | None = None,
        agent_task_id: str | None = None,
        reason: str | None = None,
        target_project: str | os.PathLike[str] | None = None,
        reexecute: bool = True,
        ci_command: str | Sequence[str] | None = None,
        actor: str = ACTOR_OPERATOR,
    ) -> ControlScopeResult:
        scope = parse_scope(scope_type, tier=tier, agent_task_id=agent_task_id)
        return await self.scopes.control_scope(
            root_task_id,
            action,
            scope,
            reason=reason,
            actor=actor,
            target_project=self._target(target_project),
            reexecute=reexecute,
            ci_command=ci_command,
        )

    # Budgets ------------------------------------------------------------------

    def request_task_budget_increase(
        self,
        task_id: str,
        *,
        requested_by: str,
        reason: str,
        requested_increment: int,
        auto_approve: bool | None = None,
        estimated_stage_cost: int = 0,
    ) -> BudgetRequest:
        return self.budgets.request_increase(
            task_id,
            requested_by=requested_by,
            reason=reason,
            requested_increment=requested_increment,
            auto_approve=auto_approve,
            estimated_stage_cost=estimated_stage_cost,
        )

    def ensure_task_budget_headroom(
        self,
        task_id: str,
        planned_tokens: int,
        *,
        stage: str = "execution",
        pause_on_exhaustion: bool = False,
    ) -> BudgetRequest | None:
        return self.budgets.ensure_headroom(
            task_id, planned_tokens, stage=stage, pause_on_exhaustion=pause_on_exhaustion
        )

    def resolve_task_budget_request(
        self,
        request_id: str,
        decision: BudgetDecision | str,
        *,
        approved_increment: int | None = None,
        resume_task: bool = False,
        decided_by: str | None = None,
        reason: str | None = None,
    ) -> BudgetRequest:
        return self.budgets.resolve_request(
            request_id,
            decision,
            approved_increment=approved_increment,
            resume_task=resume_task,
            decided_by=decided_by,
            reason=reason,
        )

    def list_task_budget_requests(
        self,
        task_id: str,
        *,
        include_descendants: bool = False,
        status: BudgetRequestStatus | str | None = None,
        limit: int = 50,
    ) -> list[BudgetRequest]:
        return self.budgets.list_requests(
            task_id, include_descendants=include_descendants, status=status, limit=limit
        )

    def split_budget(
        self, global_budget: int, assignments: Sequence[tuple[float, float]] = ()
    ) -> BudgetSplit:
        """Split a global budget; each ``(complexity, risk)`` assignment gets a share."""

        weights = [complexity_weight(complexity, risk) for complexity, risk in assignments]
        return split_global_budget(global_budget, weights)

    # Mutations ----------------------------------------------------------------

    def propose_mutation(
        self, task_id: str, proposal: DiffProposal, *, actor: str | None = None
    ) -> Mutation:
        self.tasks.get_task(task_id)
        return self.mutations.propose(task_id, proposal, actor=actor)

    async def run_mutation_pipeline(
        self,
        mutation_id: str,
        *,
        target_project: str | os.PathLike[str] | None = None,
        tier1_approved: bool = False,
        ci_command: str | Sequence[str] | None = None,
        keep_shadow: bool | None = None,
    ) -> PipelineRunResult:
        return await self.pipeline.run(
            mutation_id,
            self._require_target(target_project),
            tier1_approved=tier1_approved,
            ci_command=ci_command,
            keep_shadow=keep_shadow,
        )

    def set_mutation_status(
        self,
        mutation_id: str,
        status: MutationStatus | str,
        *,
        rejection_reason: str | None = None,
        actor: str = ACTOR_OPERATOR,
    ) -> Mutation:
        return self.mutations.set_status(
            mutation_id, status, actor=actor, rejection_reason=rejection_reason
        )

    async def request_mutation_revision(
        self, mutation_id: str, note: str, *, actor: str = ACTOR_OPERATOR
    ) -> RevisionResult:
        if self.revisions is None:
            raise ValidationError(NO_REVISION_GENERATOR_MESSAGE)
        return await self.revisions.request_revision(mutation_id, note, actor=actor)

    def list_task_mutations(
        self,
        task_id: str,
        *,
        include_descendants: bool = False,
        statuses: Sequence[MutationStatus | str] | None = None,
        limit: int = 100,
    ) -> list[Mutation]:
        return self.mutations.list_for_task(
            task_id, include_descendants=include_descendants, statuses=statuses, limit=limit
        )

    # Conflicts ----------------------------------------------------------------

    def detect_conflicts(
        self, task_id: str, proposals: Sequence[DiffProposal]
    ) -> list[ConflictReport]:
        return self.conflicts.detect(task_id, proposals)

    async def accept_conflict_proposal(
        self,
        mutation_id: str,
        *,
        target_project: str | os.PathLike[str] | None = None,
        ci_command: str | Sequence[str] | None = None,
        actor: str = ACTOR_OPERATOR,
    ) -> PipelineRunResult:
        return await self.conflicts.accept(
            mutation_id, self._require_target(target_project), ci_command=ci_command, actor=actor
        )

    def reject_conflicting_proposals(
        self, mutation_a: str, mutation_b: str, reason: str, *, actor: str = ACTOR_OPERATOR
    ) -> tuple[Mutation, Mutation]:
        return self.conflicts.reject_both(mutation_a, mutation_b, reason, actor=actor)

    def manual_merge(self, mutation_id: str, *, actor: str = ACTOR_OPERATOR) -> Mutation:
        return self.conflicts.manual_merge(mutation_id, actor=actor)

    # Activity -----------------------------------------------------------------

    def list_audit_log(self, since_id: int = 0, *, limit: int = 100) -> ActivityPage:
        return self.activity.list_audit_log(since_id, limit=limit)

    def list_task_activity(
        self,
        task_id: str,
        *,
        include_descendants: bool = True,
        since_id: int = 0,
        limit: int = 100,
    ) -> ActivityPage:
        return self.activity.list_task_activity(
            task_id, include_descendants=include_descendants, since_id=since_id, limit=limit
        )

    # Content access -----------------------------------------------------------

    def read_file(
        self, path: str, *, target_project: str | os.PathLike[str] | None = None
    ) -> FileContent:
        return self._content(target_project).read_file(path)

    def list_dir(
        self, path: str | None = None, *, target_project: str | os.PathLike[str] | None = None
    ) -> DirectoryListing:
        return self._content(target_project).list_dir(path)

    def search_files(
        self,
        pattern: str,
        *,
        limit: int = 40,
        target_project: str | os.PathLike[str] | None = None,
    ) -> SearchResult:
        return self._content(target_project).search_files(pattern, limit=limit)

    def _content(self, target_project: str | os.PathLike[str] | None) -> ContentAccess:
        return ContentAccess(self._require_target(target_project), logger=self._logger)

    def _target(self, target_project: str | os.PathLike[str] | None) -> Path | None:
        if target_project is not None:
            return Path(target_project)
        if self.supervisor is None:
            return None
        return self.workspace_root

    def _require_target(self, target_project: str | os.PathLike[str] | None) -> Path:
        if target_project is not None:
            return Path(target_project)
        return self.workspace_root


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, object]:
    section = config.get(name)
    return section if isinstance(section, Mapping) else {}


__all__ = [
    "ControlPlane",
    "NO_REVISION_GENERATOR_MESSAGE",
]
