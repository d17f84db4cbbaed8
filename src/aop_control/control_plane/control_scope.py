"""
aop-control - control scope engine

File: src/aop_control/control_plane/control_scope.py

Purpose
- Resolve an action (pause/resume/stop/restart) and a scope (tree/tier/agent) into the set
  of affected tasks, apply compare-and-set transitions to them, and report what changed.

Normative behavior
- Scope selection runs over a ``TaskGraph`` snapshot taken at invocation; tasks created
  afterwards are never touched by this call.
- Illegal sources are skipped, never raised: a pause on a completed task is a no-op.
- ``stop`` cancels every in-flight execution handle of the tasks it failed.
- ``restart`` never touches budgets; with an execution supervisor and a target project it
  continues into restart-apply.
"""

from __future__ import annotations

import os
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeAlias

import structlog

from aop_control.constants import ACTOR_CONTROL, ACTOR_OPERATOR, TIERS
from aop_control.control_plane.task_graph import TaskGraph
from aop_control.control_plane.tasks import TaskService, TaskTransition, format_stop_reason
from aop_control.domain.models import AuditAction, ControlAction, Task
from aop_control.errors import ValidationError
from aop_control.persistence.repositories import AuditLogRepo

if TYPE_CHECKING:
    from aop_control.control_plane.restart_apply import RestartApplier, RestartApplySummary
    from aop_control.control_plane.runtime import ExecutionSupervisor
    from aop_control.persistence.state_db import StateDB


@dataclass(frozen=True, slots=True)
class TreeScope:
    """The root task and every descendant."""


@dataclass(frozen=True, slots=True)
class TierScope:
    """Every task in the tree at one tier."""

    tier: int

    def __post_init__(self) -> None:
        if isinstance(self.tier, bool) or self.tier not in TIERS:
            raise ValidationError("tier must be 1, 2, or 3")


@dataclass(frozen=True, slots=True)
class AgentScope:
    """One task of the tree and its own descendants."""

    task_id: str

    def __post_init__(self) -> None:
        if not isinstance(self.task_id, str) or not self.task_id.strip():
            raise ValidationError("agent_task_id is required for agent scope")


ControlScope: TypeAlias = TreeScope | TierScope | AgentScope

SCOPE_TYPES: tuple[str, ...] = ("agent", "tier", "tree")


def parse_scope(
    scope_type: str, *, tier: int | None = None, agent_task_id: str | None = None
) -> ControlScope:
    """Build a scope from its wire form (``scope_type`` plus the matching argument)."""

    match (scope_type or "").strip().lower():
        case "tree":
            return TreeScope()
        case "tier":
            if tier is None:
                raise ValidationError("tier is required for tier scope")
            return TierScope(tier)
        case "agent":
            return AgentScope((agent_task_id or "").strip())
        case other:
            raise ValidationError(
                f"scope_type {other!r} is not supported; expected one of: {', '.join(SCOPE_TYPES)}"
            )


def describe_scope(scope: ControlScope) -> dict[str, object]:
    match scope:
        case TreeScope():
            return {"type": "tree"}
        case TierScope(tier=tier):
            return {"type": "tier", "tier": tier}
        case AgentScope(task_id=task_id):
            return {"type": "agent", "task_id": task_id}
        case _:
            raise TypeError(f"unsupported control scope: {scope!r}")


def select_scope(graph: TaskGraph, scope: ControlScope) -> list[Task]:
    """Tasks of ``graph`` covered by ``scope`` in breadth-first order."""

    match scope:
        case TreeScope():
            return graph.bfs()
        case TierScope(tier=tier):
            return graph.with_tier(tier)
        case AgentScope(task_id=task_id):
            if task_id not in graph:
                raise ValidationError(f"task '{task_id}' is not part of tree '{graph.root.id}'")
            return graph.descendants(task_id, include_self=True)
        case _:
            raise TypeError(f"unsupported control scope: {scope!r}")


@dataclass(frozen=True, slots=True)
class ControlScopeResult:
    root_task_id: str
    action: ControlAction
    scope: dict[str, object]
    affected: tuple[TaskTransition, ...]
    skipped: tuple[str, ...]
    cancelled_executions: int = 0
    restart_apply: RestartApplySummary | None = None

    @property
    def updated_count(self) -> int:
        return len(self.affected)

    @property
    def issue(self) -> str | None:
        return None if self.restart_apply is None else self.restart_apply.format_issue()

    def to_dict(self) -> dict[str, object]:
        return {
            "root_task_id": self.root_task_id,
            "action": self.action.value,
            "scope": dict(self.scope),
            "updated_count": self.updated_count,
            "affected": [item.to_dict() for item in self.affected],
            "skipped": list(self.skipped),
            "cancelled_executions": self.cancelled_executions,
            "restart_apply": (
                None if self.restart_apply is None else self.restart_apply.to_dict()
            ),
            "issue": self.issue,
        }


class ControlScopeEngine:
    """Applies pause/resume/stop/restart over a tree, tier or agent subtree."""

    def __init__(
        self,
        db: StateDB,
        *,
        task_service: TaskService | None = None,
        supervisor: ExecutionSupervisor | None = None,
        restart_applier: RestartApplier | None = None,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._tasks = (
            task_service if task_service is not None else TaskService(db, logger=self._logger)
        )
        self._audit = AuditLogRepo(db)
        self._supervisor = supervisor
        self._restart_applier = restart_applier

    async def control_scope(
        self,
        root_task_id: str,
        action: ControlAction | str,
        scope: ControlScope,
        *,
        reason: str | None = None,
        actor: str = ACTOR_OPERATOR,
        target_project: str | os.PathLike[str] | None = None,
        reexecute: bool = True,
        ci_command: str | Sequence[str] | None = None,
    ) -> ControlScopeResult:
        parsed = _as_action(action)
        graph = TaskGraph.load(self._tasks.repo, root_task_id)
        selected = select_scope(graph, scope)
        return await self._apply(
            graph,
            parsed,
            describe_scope(scope),
            selected,
            reason=reason,
            actor=actor,
            target_project=target_project,
            reexecute=reexecute,
            ci_command=ci_command,
            require_change=False,
        )

    async def control_task(
        self,
        task_id: str,
        action: ControlAction | str,
        *,
        include_descendants: bool = True,
        reason: str | None = None,
        actor: str = ACTOR_OPERATOR,
        target_project: str | os.PathLike[str] | None = None,
        reexecute: bool = True,
        ci_command: str | Sequence[str] | None = None,
    ) -> ControlScopeResult:
        """Single-task form; raises when the action changed nothing."""

        parsed = _as_action(action)
        graph = TaskGraph.load(self._tasks.repo, task_id)
        if include_descendants:
            selected = graph.bfs()
            scope: dict[str, object] = {"type": "agent", "task_id": graph.root.id}
        else:
            selected = [graph.root]
            scope = {"type": "task", "task_id": graph.root.id}
        return await self._apply(
            graph,
            parsed,
            scope,
            selected,
            reason=reason,
            actor=actor,
            target_project=target_project,
            reexecute=reexecute,
            ci_command=ci_command,
            require_change=True,
        )

    async def _apply(
        self,
        graph: TaskGraph,
        action: ControlAction,
        scope: dict[str, object],
        selected: list[Task],
        *,
        reason: str | None,
        actor: str,
        target_project: str | os.PathLike[str] | None,
        reexecute: bool,
        ci_command: str | Sequence[str] | None,
        require_change: bool,
    ) -> ControlScopeResult:
        root_id = graph.root.id
        affected: list[TaskTransition] = []
        skipped: list[str] = []
        with self._db.transaction() as conn:
            for task in selected:
                transition = self._tasks.apply_control(
                    task, action, reason=reason, actor=actor, conn=conn
                )
                if transition is None:
                    skipped.append(task.id)
                else:
                    affected.append(transition)
            if require_change and not affected:
                raise ValidationError(
                    f"No tasks were updated for action '{action.value}' on task tree '{root_id}'."
                )
            self._audit.append(
                actor=actor,
                action=AuditAction.TASK_CONTROL_SCOPE_APPLIED,
                target_id=root_id,
                details={
                    "action": action.value,
                    "scope": scope,
                    "reason": reason,
                    "affected": [item.task_id for item in affected],
                    "skipped": skipped,
                },
                conn=conn,
            )

        cancelled = 0
        if action is ControlAction.STOP and self._supervisor is not None and affected:
            cancelled = self._supervisor.cancel(
                [item.task_id for item in affected], reason=format_stop_reason(reason)
            )

        self._logger.info(
            "control_scope_applied",
            root_task_id=root_id,
            action=action.value,
            scope=scope.get("type"),
            affected=len(affected),
            skipped=len(skipped),
            cancelled_executions=cancelled,
        )

        summary: RestartApplySummary | None = None
        if (
            action is ControlAction.RESTART
            and reexecute
            and affected
            and self._restart_applier is not None
            and target_project is not None
        ):
            restarted = [graph.get(item.task_id) for item in affected]
            summary = await self._restart_applier.run(
                root_id,
                restarted,
                target_project,
                ci_command=ci_command,
                actor=ACTOR_CONTROL,
            )

        return ControlScopeResult(
            root_task_id=root_id,
            action=action,
            scope=scope,
            affected=tuple(affected),
            skipped=tuple(skipped),
            cancelled_executions=cancelled,
            restart_apply=summary,
        )


def _as_action(value: ControlAction | str) -> ControlAction:
    if isinstance(value, ControlAction):
        return value
    if not isinstance(value, str):
        raise TypeError(f"unsupported control action: {value!r}")
    try:
        return ControlAction(value.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ControlAction)
        raise ValidationError(
            f"action {value!r} is not supported; expected one of: {allowed}"
        ) from exc


__all__ = [
    "AgentScope",
    "ControlScope",
    "ControlScopeEngine",
    "ControlScopeResult",
    "SCOPE_TYPES",
    "TierScope",
    "TreeScope",
    "describe_scope",
    "parse_scope",
    "select_scope",
]
