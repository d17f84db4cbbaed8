"""
aop-control - proposal conflict detection and human resolution

File: src/aop_control/integration_plane/conflict_resolution.py

Purpose
- Detect specialist proposals for the same file whose intents diverge beyond a fixed
  distance threshold, and gate them behind a human decision.
- Carry out the three resolutions: accept one mutation, reject both, or select one for a
  manual merge.

Functional requirements
- No automatic merges and no automatic winner: a conflict only ever produces a report.
- Accepting routes the chosen mutation through the pipeline with Tier 1 approval.
- Rejecting both is atomic: either both mutations become ``rejected`` or neither does.
- Every report and resolution is audited with redacted details.
"""

from __future__ import annotations

import itertools
import os
from collections import defaultdict
from collections.abc import Sequence
from enum import StrEnum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Final

import structlog

from aop_control.constants import ACTOR_CONFLICTS
from aop_control.domain.models import (
    AuditAction,
    ConflictReport,
    DiffProposal,
    Mutation,
    MutationStatus,
)
from aop_control.errors import MutationTerminalError, ValidationError
from aop_control.persistence.repositories import AuditLogRepo, MutationRepo
from aop_control.verification_plane.patching import added_text
from aop_control.verification_plane.similarity import DistanceScorer, TokenDistanceScorer

if TYPE_CHECKING:
    import sqlite3

    from aop_control.persistence.state_db import StateDB
    from aop_control.verification_plane.pipeline import MutationPipeline, PipelineRunResult

DEFAULT_DISTANCE_THRESHOLD: Final[float] = 0.3
CONFLICT_RESOLUTION_STEP: Final[str] = "conflict_resolution"


class ExecutionOutcome(StrEnum):
    """How a domain task's execution round ended."""

    READY_FOR_REVIEW = "ready_for_review"
    CONSENSUS_FAILED = "consensus_failed"
    BLOCKED = "blocked"


class Resolution(StrEnum):
    ACCEPT = "accept"
    REJECT_BOTH = "reject_both"
    MANUAL_MERGE = "manual_merge"


def summary_status(
    proposals: Sequence[DiffProposal], reports: Sequence[ConflictReport] = ()
) -> ExecutionOutcome:
    if not proposals:
        return ExecutionOutcome.BLOCKED
    if any(report.requires_human_review for report in reports):
        return ExecutionOutcome.CONSENSUS_FAILED
    return ExecutionOutcome.READY_FOR_REVIEW


def conflict_description(distance: float) -> str:
    return (
        f"Specialist intent distance is {distance:.3f}; proposals diverge beyond "
        "Tier 2 merge threshold."
    )


class ConflictResolver:
    """Detects divergent proposals and applies human conflict resolutions."""

    def __init__(
        self,
        db: StateDB,
        *,
        pipeline: MutationPipeline | None = None,
        distance: DistanceScorer | None = None,
        threshold: float = DEFAULT_DISTANCE_THRESHOLD,
        logger: Any | None = None,
    ) -> None:
        if threshold < 0:
            raise ValueError("threshold must be >= 0")
        self._db = db
        self._pipeline = pipeline
        self._distance = distance if distance is not None else TokenDistanceScorer()
        self._threshold = threshold
        self._mutations = MutationRepo(db)
        self._audit = AuditLogRepo(db)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def threshold(self) -> float:
        return self._threshold

    def detect(
        self,
        task_id: str,
        proposals: Sequence[DiffProposal],
        *,
        distance: DistanceScorer | None = None,
    ) -> list[ConflictReport]:
        """One report per file whose most distant proposal pair exceeds the threshold."""

        scorer = distance if distance is not None else self._distance
        by_file: dict[str, list[DiffProposal]] = defaultdict(list)
        for proposal in proposals:
            by_file[_file_key(proposal.file_path)].append(proposal)

        reports: list[ConflictReport] = []
        for file_path in sorted(by_file):
            group = by_file[file_path]
            if len(group) < 2:
                continue
            strongest: tuple[DiffProposal, DiffProposal, float] | None = None
            for left, right in itertools.combinations(group, 2):
                value = scorer.distance(_intent_text(left), _intent_text(right))
                if value < 0:
                    raise ValueError(f"distance scorer returned a negative distance: {value}")
                if strongest is None or value > strongest[2]:
                    strongest = (left, right, value)
            if strongest is None or strongest[2] <= self._threshold:
                continue
            left, right, value = strongest
            reports.append(
                ConflictReport(
                    task_id=task_id,
                    agent_a=left.agent_uid,
                    agent_b=right.agent_uid,
                    file_path=file_path,
                    semantic_distance=value,
                    threshold=self._threshold,
                    description=conflict_description(value),
                    requires_human_review=True,
                    mutation_a=left.mutation_id,
                    mutation_b=right.mutation_id,
                )
            )

        for report in reports:
            self._audit.append(
                actor=ACTOR_CONFLICTS,
                action=AuditAction.CONFLICT_DETECTED,
                target_id=task_id,
                details=report.to_dict(),
            )
            self._logger.warning(
                "conflict_detected",
                task_id=task_id,
                file_path=report.file_path,
                semantic_distance=round(report.semantic_distance, 3),
            )
        return reports

    async def accept(
        self,
        mutation_id: str,
        target_project: str | os.PathLike[str],
        *,
        ci_command: str | Sequence[str] | None = None,
        actor: str = ACTOR_CONFLICTS,
    ) -> PipelineRunResult:
        if self._pipeline is None:
            raise ValidationError("accepting a proposal requires a mutation pipeline")
        mutation = self._require_open(mutation_id)
        result = await self._pipeline.run(
            mutation.id, target_project, tier1_approved=True, ci_command=ci_command
        )
        self._record_resolution(
            Resolution.ACCEPT,
            task_id=mutation.task_id,
            actor=actor,
            details={
                "mutation_id": mutation.id,
                "outcome": result.mutation.status.value,
            },
        )
        return result

    def reject_both(
        self,
        mutation_a: str,
        mutation_b: str,
        reason: str,
        *,
        actor: str = ACTOR_CONFLICTS,
    ) -> tuple[Mutation, Mutation]:
        first_id = (mutation_a or "").strip()
        second_id = (mutation_b or "").strip()
        if not first_id or not second_id:
            raise ValidationError("both mutation ids are required")
        if first_id == second_id:
            raise ValidationError("reject_both needs two different mutations")
        shared_reason = " ".join((reason or "").split())
        if not shared_reason:
            raise ValidationError("reason is required")

        with self._db.transaction() as conn:
            rejected = tuple(
                self._mutations.transition(
                    mutation_id,
                    MutationStatus.REJECTED,
                    rejection_reason=shared_reason,
                    rejected_at_step=CONFLICT_RESOLUTION_STEP,
                    conn=conn,
                )
                for mutation_id in (first_id, second_id)
            )
            self._record_resolution(
                Resolution.REJECT_BOTH,
                task_id=rejected[0].task_id,
                actor=actor,
                details={
                    "mutation_a": first_id,
                    "mutation_b": second_id,
                    "reason": shared_reason,
                },
                conn=conn,
            )
        return rejected[0], rejected[1]

    def manual_merge(self, mutation_id: str, *, actor: str = ACTOR_CONFLICTS) -> Mutation:
        """Select ``mutation_id`` for hand editing; its status is left as is."""

        mutation = self._require_open(mutation_id)
        self._record_resolution(
            Resolution.MANUAL_MERGE,
            task_id=mutation.task_id,
            actor=actor,
            details={"mutation_id": mutation.id, "file_path": mutation.file_path},
        )
        return mutation

    def _require_open(self, mutation_id: str) -> Mutation:
        key = (mutation_id or "").strip()
        if not key:
            raise ValidationError("mutation_id is required")
        mutation = self._mutations.require(key)
        if mutation.is_terminal:
            raise MutationTerminalError(
                f"Mutation '{mutation.id}' is already {mutation.status.value}."
            )
        return mutation

    def _record_resolution(
        self,
        resolution: Resolution,
        *,
        task_id: str,
        actor: str,
        details: dict[str, object],
        conn: sqlite3.Connection | None = None,
    ) -> None:
        self._audit.append(
            actor=actor,
            action=AuditAction.CONFLICT_RESOLVED,
            target_id=task_id,
            details={"resolution": resolution.value, **details},
            conn=conn,
        )
        self._logger.info("conflict_resolved", task_id=task_id, resolution=resolution.value)


def _file_key(file_path: str) -> str:
    return PurePosixPath(file_path.strip().replace("\\", "/")).as_posix()


def _intent_text(proposal: DiffProposal) -> str:
    return f"{proposal.intent_description}\n{added_text(proposal.diff_content)}"


__all__ = [
    "CONFLICT_RESOLUTION_STEP",
    "ConflictResolver",
    "DEFAULT_DISTANCE_THRESHOLD",
    "ExecutionOutcome",
    "Resolution",
    "conflict_description",
    "summary_status",
]
