"""Reviewer-requested revisions of a proposed mutation.

A revision spawns a tier-3 child task under the mutation's task, asks a ``RevisionGenerator``
for a fresh proposal that takes the reviewer note into account, and stores that proposal as
a new mutation. The original mutation keeps whatever status it had.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable

import structlog

from aop_control.constants import ACTOR_OPERATOR, SPECIALIST_TIER
from aop_control.control_plane.tasks import TaskService
from aop_control.domain.models import AuditAction, DiffProposal, Mutation, MutationStatus, Task
from aop_control.errors import ExecutionError, InvalidTransitionError, ValidationError
from aop_control.persistence.repositories import AuditLogRepo
from aop_control.verification_plane.mutations import MutationService

if TYPE_CHECKING:
    from aop_control.persistence.state_db import StateDB

REVISION_BUDGET_FRACTION: Final[float] = 0.35
MIN_REVISION_BUDGET: Final[int] = 250
MAX_REVISION_BUDGET: Final[int] = 2_000
MIN_REVISION_CONFIDENCE: Final[float] = 0.10
APPLIED_REVISION_MESSAGE: Final[str] = (
    "Cannot request revision for an already applied mutation. Propose a new mutation instead."
)


@runtime_checkable
class RevisionGenerator(Protocol):
    """Produces a replacement proposal for ``mutation`` guided by a reviewer ``note``."""

    async def generate(self, task: Task, mutation: Mutation, note: str) -> DiffProposal: ...


@dataclass(frozen=True, slots=True)
class RevisionResult:
    original_mutation: Mutation
    revised_task: Task
    revised_mutation: Mutation

    def to_dict(self) -> dict[str, object]:
        return {
            "original_mutation": self.original_mutation.to_dict(),
            "revised_task": self.revised_task.to_dict(),
            "revised_mutation": self.revised_mutation.to_dict(),
        }


def normalize_note(note: str) -> str:
    return " ".join(note.split())


def revision_budget(parent_budget: int) -> int:
    proportional = math.floor(max(parent_budget, 1) * REVISION_BUDGET_FRACTION + 0.5)
    return min(MAX_REVISION_BUDGET, max(MIN_REVISION_BUDGET, proportional))


class RevisionService:
    """Creates revision tasks and the mutations their generator proposes."""

    def __init__(
        self,
        db: StateDB,
        generator: RevisionGenerator,
        *,
        task_service: TaskService | None = None,
        mutation_service: MutationService | None = None,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._generator = generator
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._task_service = (
            task_service if task_service is not None else TaskService(db, logger=self._logger)
        )
        self._mutation_service = (
            mutation_service
            if mutation_service is not None
            else MutationService(db, logger=self._logger)
        )
        self._audit = AuditLogRepo(db)

    async def request_revision(
        self, mutation_id: str, note: str, *, actor: str = ACTOR_OPERATOR
    ) -> RevisionResult:
        mutation_key = (mutation_id or "").strip()
        if not mutation_key:
            raise ValidationError("mutation_id is required")
        revision_note = normalize_note(note or "")
        if not revision_note:
            raise ValidationError("note is required")

        original = self._mutation_service.get(mutation_key)
        if original.status is MutationStatus.APPLIED:
            raise InvalidTransitionError(APPLIED_REVISION_MESSAGE)
        parent = self._task_service.get_task(original.task_id)

        objective = (
            f"Revision requested for mutation {original.id} on {original.file_path}. "
            f"Note: {revision_note}"
        )
        revised_task = self._task_service.create_task(
            tier=SPECIALIST_TIER,
            domain=parent.domain,
            objective=objective,
            token_budget=revision_budget(parent.token_budget),
            parent_id=parent.id,
            risk_factor=parent.risk_factor,
            target_files=(original.file_path,),
            actor=actor,
        )

        try:
            proposal = await self._generator.generate(revised_task, original, revision_note)
        except ExecutionError as exc:
            message = f"Failed to generate revised proposal: {exc}"
            self._task_service.record_execution_failure(revised_task.id, message, actor=actor)
            raise ExecutionError(message) from exc

        revised_mutation = self._mutation_service.propose(
            revised_task.id,
            DiffProposal(
                agent_uid=proposal.agent_uid,
                file_path=original.file_path,
                diff_content=proposal.diff_content,
                intent_description=proposal.intent_description,
                confidence=min(1.0, max(MIN_REVISION_CONFIDENCE, proposal.confidence)),
            ),
            actor=actor,
        )
        self._audit.append(
            actor=actor,
            action=AuditAction.MUTATION_REVISION_REQUESTED,
            target_id=parent.id,
            details={
                "mutation_id": original.id,
                "revised_task_id": revised_task.id,
                "revised_mutation_id": revised_mutation.id,
                "note": revision_note,
            },
        )
        self._logger.info(
            "mutation_revision_requested",
            mutation_id=original.id,
            revised_task_id=revised_task.id,
            revised_mutation_id=revised_mutation.id,
        )
        return RevisionResult(
            original_mutation=self._mutation_service.get(original.id),
            revised_task=self._task_service.get_task(revised_task.id),
            revised_mutation=revised_mutation,
        )


__all__ = [
    "APPLIED_REVISION_MESSAGE",
    "RevisionGenerator",
    "RevisionResult",
    "RevisionService",
    "normalize_note",
    "revision_budget",
]
