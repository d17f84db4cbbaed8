"""
aop-control - task store service

File: src/aop_control/control_plane/tasks.py

Purpose
- Create tasks, read trees, and apply single-task status transitions with audit entries.
- Own the control transition table (pause/resume/stop/restart) as one exhaustive ``match``
  so the scope engine and the budget arbiter apply identical rules.

Functional requirements
- Every status write is compare-and-set against the status that was read.
- Execution updates only move forward (pending -> executing -> completed/failed); paused
  tasks change only through control actions.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, assert_never

import structlog

from aop_control.constants import ACTOR_OPERATOR, DEFAULT_STOP_REASON, STOP_REASON_PREFIX
from aop_control.control_plane.task_graph import TaskGraph
from aop_control.domain import ids
from aop_control.domain.models import (
    AuditAction,
    ControlAction,
    Task,
    TaskStatus,
    utc_now,
)
from aop_control.errors import InvalidTransitionError, ValidationError
from aop_control.persistence.repositories import UNSET, AuditLogRepo, TaskRepo

if TYPE_CHECKING:
    import sqlite3

    from aop_control.persistence.state_db import StateDB

EXECUTION_TRANSITIONS: Final[dict[TaskStatus, frozenset[TaskStatus]]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.EXECUTING, TaskStatus.FAILED}),
    TaskStatus.EXECUTING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.PAUSED: frozenset(),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class TaskTransition:
    """One applied status change."""

    task_id: str
    tier: int
    action: str
    from_status: TaskStatus
    to_status: TaskStatus

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "tier": self.tier,
            "action": self.action,
            "from": self.from_status.value,
            "to": self.to_status.value,
        }


@dataclass(frozen=True, slots=True)
class _PlannedTransition:
    target: TaskStatus
    error_message: str | None | object = UNSET
    paused_from: TaskStatus | None | object = UNSET
    checksum: str | None | object = UNSET
    compliance_score: int | None = None
    increment_retry: bool = False


def format_stop_reason(reason: str | None) -> str:
    text = " ".join((reason or "").split()) or DEFAULT_STOP_REASON
    return f"{STOP_REASON_PREFIX}:{text}"


def plan_control_transition(
    action: ControlAction, task: Task, reason: str | None = None
) -> _PlannedTransition | None:
    """Return the transition ``action`` implies for ``task``, or ``None`` when illegal."""

    status = task.status
    match action:
        case ControlAction.PAUSE:
            if status not in (TaskStatus.PENDING, TaskStatus.EXECUTING):
                return None
            return _PlannedTransition(target=TaskStatus.PAUSED, paused_from=status)
        case ControlAction.RESUME:
            if status is not TaskStatus.PAUSED:
                return None
            return _PlannedTransition(
                target=TaskStatus.EXECUTING, paused_from=None, error_message=None
            )
        case ControlAction.STOP:
            if status not in (TaskStatus.PENDING, TaskStatus.EXECUTING, TaskStatus.PAUSED):
                return None
            return _PlannedTransition(
                target=TaskStatus.FAILED,
                error_message=format_stop_reason(reason),
                paused_from=None,
            )
        case ControlAction.RESTART:
            if status not in (TaskStatus.FAILED, TaskStatus.COMPLETED, TaskStatus.PAUSED):
                return None
            return _PlannedTransition(
                target=TaskStatus.PENDING,
                error_message=None,
                paused_from=None,
                checksum=None,
                compliance_score=0,
                increment_retry=True,
            )
        case _:
            assert_never(action)


class TaskService:
    """Task creation, lookup and single-task transitions."""

    def __init__(self, db: StateDB, *, logger: Any | None = None) -> None:
        self._db = db
        self._tasks = TaskRepo(db)
        self._audit = AuditLogRepo(db)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def repo(self) -> TaskRepo:
        return self._tasks

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
        task_id: str | None = None,
        actor: str = ACTOR_OPERATOR,
    ) -> Task:
        now = utc_now()
        task = Task(
            id=task_id if task_id is not None else ids.generate_task_id(),
            parent_id=parent_id,
            tier=tier,
            domain=domain,
            objective=objective,
            token_budget=token_budget,
            risk_factor=risk_factor,
            agent_uid=agent_uid,
            target_files=tuple(target_files),
            created_at=now,
            updated_at=now,
        )
        with self._db.transaction() as conn:
            self._tasks.add(task, conn=conn)
            self._audit.append(
                actor=actor,
                action=AuditAction.TASK_CREATED,
                target_id=task.id,
                details={
                    "parent_id": task.parent_id,
                    "tier": task.tier,
                    "domain": task.domain,
                    "token_budget": task.token_budget,
                },
                conn=conn,
            )
        self._logger.info(
            "task_created", task_id=task.id, tier=task.tier, parent_id=task.parent_id
        )
        return task

    def get_task(self, task_id: str) -> Task:
        return self._tasks.require(task_id)

    def task_tree(self, root_task_id: str) -> TaskGraph:
        return TaskGraph.load(self._tasks, root_task_id)

    def update_task_status(
        self,
        task_id: str,
        status: TaskStatus | str,
        *,
        error_message: str | None = None,
        compliance_score: int | None = None,
        actor: str = ACTOR_OPERATOR,
    ) -> Task:
        """Record an execution outcome; only forward execution moves are legal."""

        target = _as_task_status(status)
        with self._db.transaction() as conn:
            current = self._tasks.require(task_id, conn=conn)
            if target not in EXECUTION_TRANSITIONS[current.status]:
                raise InvalidTransitionError(
                    f"Task '{task_id}' cannot move from '{current.status.value}' to "
                    f"'{target.value}' outside a control action."
                )
            changed = self._tasks.compare_and_set_status(
                task_id,
                expected=current.status,
                status=target,
                error_message=error_message if target is TaskStatus.FAILED else UNSET,
                compliance_score=compliance_score,
                conn=conn,
            )
            if not changed:
                raise InvalidTransitionError(f"Task '{task_id}' changed status concurrently.")
            self._audit.append(
                actor=actor,
                action=AuditAction.TASK_STATUS_CHANGED,
                target_id=task_id,
                details={"from": current.status.value, "to": target.value, "action": "update"},
                conn=conn,
            )
            return self._tasks.require(task_id, conn=conn)

    def apply_control(
        self,
        task: Task,
        action: ControlAction,
        *,
        reason: str | None = None,
        actor: str = ACTOR_OPERATOR,
        conn: sqlite3.Connection | None = None,
    ) -> TaskTransition | None:
        """Apply ``action`` to one snapshot task; ``None`` if illegal or lost a race."""

        planned = plan_control_transition(action, task, reason)
        if planned is None:
            return None
        with self._db.transaction(conn=conn) as tx:
            changed = self._tasks.compare_and_set_status(
                task.id,
                expected=task.status,
                status=planned.target,
                error_message=planned.error_message,  # type: ignore[arg-type]
                paused_from=planned.paused_from,  # type: ignore[arg-type]
                checksum=planned.checksum,  # type: ignore[arg-type]
                compliance_score=planned.compliance_score,
                increment_retry=planned.increment_retry,
                conn=tx,
            )
            if not changed:
                return None
            transition = TaskTransition(
                task_id=task.id,
                tier=task.tier,
                action=action.value,
                from_status=task.status,
                to_status=planned.target,
            )
            self._audit.append(
                actor=actor,
                action=AuditAction.TASK_STATUS_CHANGED,
                target_id=task.id,
                details={**transition.to_dict(), "reason": reason},
                conn=tx,
            )
        return transition

    def record_execution_failure(
        self,
        task_id: str,
        message: str,
        *,
        actor: str,
        expected: TaskStatus | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Task | None:
        """Fail ``task_id`` with ``message``.

        With ``expected`` the write is compare-and-set and ``None`` means the task moved on.
        """

        with self._db.transaction(conn=conn) as tx:
            if expected is not None:
                changed = self._tasks.compare_and_set_status(
                    task_id,
                    expected=expected,
                    status=TaskStatus.FAILED,
                    error_message=message,
                    paused_from=None,
                    conn=tx,
                )
                if not changed:
                    return None
            task = self._tasks.update_outcome(
                task_id, status=TaskStatus.FAILED, error_message=message, conn=tx
            )
            self._audit.append(
                actor=actor,
                action=AuditAction.TASK_EXECUTION_FAILED,
                target_id=task_id,
                details={"error": message},
                conn=tx,
            )
        self._logger.warning("task_execution_failed", task_id=task_id, error=message)
        return task

    def begin_execution(self, task: Task, *, actor: str) -> Task | None:
        """Move a pending snapshot task to ``executing``; ``None`` if it moved on meanwhile."""

        with self._db.transaction() as conn:
            changed = self._tasks.compare_and_set_status(
                task.id, expected=TaskStatus.PENDING, status=TaskStatus.EXECUTING, conn=conn
            )
            if not changed:
                return None
            self._audit.append(
                actor=actor,
                action=AuditAction.TASK_STATUS_CHANGED,
                target_id=task.id,
                details={
                    "from": TaskStatus.PENDING.value,
                    "to": TaskStatus.EXECUTING.value,
                    "action": "execute",
                },
                conn=conn,
            )
            return self._tasks.require(task.id, conn=conn)

    def finish_execution(
        self,
        task_id: str,
        *,
        status: TaskStatus,
        compliance_score: int,
        error_message: str | None = None,
        actor: str,
    ) -> Task | None:
        """Settle an ``executing`` task; ``None`` when a control action got there first.

        ``paused`` is allowed here because a domain round whose proposals disagree parks
        the task for review rather than finishing it.
        """

        if status not in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PAUSED):
            raise InvalidTransitionError(f"Execution cannot finish as '{status.value}'.")
        with self._db.transaction() as conn:
            changed = self._tasks.compare_and_set_status(
                task_id,
                expected=TaskStatus.EXECUTING,
                status=status,
                error_message=error_message,
                paused_from=TaskStatus.EXECUTING if status is TaskStatus.PAUSED else None,
                compliance_score=compliance_score,
                conn=conn,
            )
            if not changed:
                return None
            self._audit.append(
                actor=actor,
                action=AuditAction.TASK_STATUS_CHANGED,
                target_id=task_id,
                details={
                    "from": TaskStatus.EXECUTING.value,
                    "to": status.value,
                    "action": "finish",
                    "error": error_message,
                },
                conn=conn,
            )
            return self._tasks.require(task_id, conn=conn)


def _as_task_status(value: TaskStatus | str) -> TaskStatus:
    if isinstance(value, TaskStatus):
        return value
    try:
        return TaskStatus(value)
    except ValueError as exc:
        allowed = ", ".join(sorted(item.value for item in TaskStatus))
        raise ValidationError(f"status: invalid task status {value!r}; allowed: {allowed}") from exc


__all__ = [
    "EXECUTION_TRANSITIONS",
    "TaskService",
    "TaskTransition",
    "format_stop_reason",
    "plan_control_transition",
]
