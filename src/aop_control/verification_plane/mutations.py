"""Mutation records: proposal intake, direct status changes and task-scoped listings."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from aop_control.control_plane.task_graph import TaskGraph
from aop_control.domain import ids
from aop_control.domain.models import (
    CANDIDATE_MUTATION_STATUSES,
    AuditAction,
    DiffProposal,
    Mutation,
    MutationStatus,
    utc_now,
)
from aop_control.persistence.repositories import UNSET, AuditLogRepo, MutationRepo, TaskRepo
from aop_control.utils.hashing import sha256_text

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Sequence

    from aop_control.persistence.state_db import StateDB


def intent_hash(intent_description: str) -> str:
    normalized = " ".join(intent_description.split()).lower()
    return sha256_text(normalized)[:32]


class MutationService:
    """Persist proposals as mutations and move them through direct status changes."""

    def __init__(self, db: StateDB, *, logger: Any | None = None) -> None:
        self._db = db
        self._tasks = TaskRepo(db)
        self._mutations = MutationRepo(db)
        self._audit = AuditLogRepo(db)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def repo(self) -> MutationRepo:
        return self._mutations

    def propose(
        self,
        task_id: str,
        proposal: DiffProposal,
        *,
        actor: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Mutation:
        intent = " ".join(proposal.intent_description.split())
        mutation = Mutation(
            id=proposal.mutation_id or ids.generate_mutation_id(),
            task_id=task_id,
            agent_uid=proposal.agent_uid,
            file_path=proposal.file_path,
            diff_content=proposal.diff_content,
            intent_description=intent,
            intent_hash=intent_hash(intent),
            confidence=proposal.confidence,
            proposed_at=utc_now(),
        )
        with self._db.transaction(conn=conn) as tx:
            self._mutations.add(mutation, conn=tx)
            self._audit.append(
                actor=actor or proposal.agent_uid,
                action=AuditAction.MUTATION_PROPOSED,
                target_id=task_id,
                details={
                    "mutation_id": mutation.id,
                    "agent_uid": mutation.agent_uid,
                    "file_path": mutation.file_path,
                    "confidence": mutation.confidence,
                },
                conn=tx,
            )
        self._logger.info(
            "mutation_proposed",
            mutation_id=mutation.id,
            task_id=task_id,
            file_path=mutation.file_path,
        )
        return mutation

    def get(self, mutation_id: str) -> Mutation:
        return self._mutations.require(mutation_id)

    def set_status(
        self,
        mutation_id: str,
        status: MutationStatus | str,
        *,
        actor: str,
        test_result: str | None = None,
        test_exit_code: int | None = None,
        rejection_reason: str | None = None,
        rejected_at_step: str | None = None,
    ) -> Mutation:
        """Direct transition; applied and rejected mutations never move again."""

        with self._db.transaction() as conn:
            before = self._mutations.require(mutation_id, conn=conn)
            updated = self._mutations.transition(
                mutation_id,
                status,
                test_result=UNSET if test_result is None else test_result,
                test_exit_code=UNSET if test_exit_code is None else test_exit_code,
                rejection_reason=rejection_reason,
                rejected_at_step=rejected_at_step,
                conn=conn,
            )
            self._audit.append(
                actor=actor,
                action=AuditAction.MUTATION_STATUS_CHANGED,
                target_id=updated.task_id,
                details={
                    "mutation_id": updated.id,
                    "from": before.status.value,
                    "to": updated.status.value,
                    "rejection_reason": updated.rejection_reason,
                },
                conn=conn,
            )
        return updated

    def list_for_task(
        self,
        task_id: str,
        *,
        include_descendants: bool = False,
        statuses: Sequence[MutationStatus | str] | None = None,
        limit: int = 100,
    ) -> list[Mutation]:
        if include_descendants:
            task_ids = TaskGraph.load(self._tasks, task_id).ids()
        else:
            task_ids = [self._tasks.require(task_id).id]
        return self._mutations.list_for_tasks(task_ids, statuses=statuses, limit=limit)

    def candidates(self, task_id: str) -> list[Mutation]:
        """Mutations of ``task_id`` and its descendants that may still be applied."""

        found = self.list_for_task(
            task_id,
            include_descendants=True,
            statuses=sorted(CANDIDATE_MUTATION_STATUSES),
            limit=200,
        )
        # Oldest first so restart-apply replays proposals in the order they arrived.
        return sorted(found, key=lambda item: (item.proposed_at, item.id))


__all__ = ["MutationService", "intent_hash"]
