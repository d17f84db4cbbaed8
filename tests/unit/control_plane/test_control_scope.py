from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from aop_control.control_plane.control_scope import (
    AgentScope,
    ControlScopeEngine,
    TierScope,
    TreeScope,
    describe_scope,
    parse_scope,
)
from aop_control.control_plane.tasks import TaskService
from aop_control.domain.models import AuditAction, ControlAction, TaskStatus
from aop_control.errors import ValidationError
from aop_control.persistence.repositories import AuditLogRepo

from .. import TaskTree, make_db, make_tree

if TYPE_CHECKING:
    from pathlib import Path

    from aop_control.persistence.state_db import StateDB


def _setup(tmp_path: Path) -> tuple[StateDB, TaskService, ControlScopeEngine, TaskTree]:
    db = make_db(tmp_path)
    service = TaskService(db)
    tree = make_tree(service)
    return db, service, ControlScopeEngine(db, task_service=service), tree


def _statuses(service: TaskService, tree: TaskTree) -> dict[str, TaskStatus]:
    return {task.id: service.get_task(task.id).status for task in tree.all}


def test_parse_scope_wire_forms() -> None:
    assert parse_scope("tree") == TreeScope()
    assert parse_scope(" Tier ", tier=2) == TierScope(2)
    assert parse_scope("agent", agent_task_id="t-1") == AgentScope("t-1")
    assert describe_scope(TierScope(3)) == {"type": "tier", "tier": 3}

    with pytest.raises(ValidationError, match="tier is required"):
        parse_scope("tier")
    with pytest.raises(ValidationError):
        parse_scope("tier", tier=7)
    with pytest.raises(ValidationError, match="agent_task_id"):
        parse_scope("agent")
    with pytest.raises(ValidationError, match="not supported"):
        parse_scope("galaxy")


@pytest.mark.asyncio
async def test_tree_pause_affects_every_task(tmp_path: Path) -> None:
    _, service, engine, tree = _setup(tmp_path)

    result = await engine.control_scope(tree.root.id, "pause", TreeScope())

    assert result.updated_count == 6
    assert result.skipped == ()
    assert set(_statuses(service, tree).values()) == {TaskStatus.PAUSED}


@pytest.mark.asyncio
async def test_tier_scope_touches_only_that_tier(tmp_path: Path) -> None:
    _, service, engine, tree = _setup(tmp_path)

    result = await engine.control_scope(tree.root.id, ControlAction.PAUSE, TierScope(3))

    assert {item.task_id for item in result.affected} == {
        tree.spec_a1.id,
        tree.spec_a2.id,
        tree.spec_b1.id,
    }
    statuses = _statuses(service, tree)
    assert statuses[tree.root.id] is TaskStatus.PENDING
    assert statuses[tree.leader_a.id] is TaskStatus.PENDING
    assert statuses[tree.spec_b1.id] is TaskStatus.PAUSED


@pytest.mark.asyncio
async def test_agent_scope_covers_subtree(tmp_path: Path) -> None:
    _, service, engine, tree = _setup(tmp_path)

    result = await engine.control_scope(
        tree.root.id, ControlAction.STOP, AgentScope(tree.leader_a.id), reason="scope cut"
    )

    assert result.updated_count == 3
    statuses = _statuses(service, tree)
    assert statuses[tree.leader_a.id] is TaskStatus.FAILED
    assert statuses[tree.spec_a2.id] is TaskStatus.FAILED
    assert statuses[tree.leader_b.id] is TaskStatus.PENDING
    assert service.get_task(tree.spec_a1.id).error_message == "stopped_by_user:scope cut"


@pytest.mark.asyncio
async def test_agent_scope_outside_tree_is_rejected(tmp_path: Path) -> None:
    _, service, engine, tree = _setup(tmp_path)
    other = service.create_task(tier=1, domain="core", objective="Other", token_budget=100)

    with pytest.raises(ValidationError, match="not part of tree"):
        await engine.control_scope(tree.root.id, "pause", AgentScope(other.id))


@pytest.mark.asyncio
async def test_illegal_transitions_are_skipped(tmp_path: Path) -> None:
    _, service, engine, tree = _setup(tmp_path)
    service.update_task_status(tree.spec_b1.id, TaskStatus.EXECUTING)
    service.update_task_status(tree.spec_b1.id, TaskStatus.COMPLETED)

    result = await engine.control_scope(tree.root.id, "pause", TreeScope())

    assert result.skipped == (tree.spec_b1.id,)
    assert service.get_task(tree.spec_b1.id).status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_resume_after_pause_moves_to_executing(tmp_path: Path) -> None:
    _, service, engine, tree = _setup(tmp_path)
    await engine.control_scope(tree.root.id, "pause", TreeScope())

    result = await engine.control_scope(tree.root.id, "resume", TreeScope())

    assert result.updated_count == 6
    assert set(_statuses(service, tree).values()) == {TaskStatus.EXECUTING}


@pytest.mark.asyncio
async def test_restart_without_applier_resets_failed_tasks(tmp_path: Path) -> None:
    _, service, engine, tree = _setup(tmp_path)
    await engine.control_scope(tree.root.id, "stop", TreeScope())

    result = await engine.control_scope(tree.root.id, "restart", TreeScope())

    assert result.updated_count == 6
    assert result.restart_apply is None
    assert result.issue is None
    for task in tree.all:
        stored = service.get_task(task.id)
        assert stored.status is TaskStatus.PENDING
        assert stored.retry_count == 1
        assert stored.token_budget == task.token_budget


@pytest.mark.asyncio
async def test_control_task_requires_a_change(tmp_path: Path) -> None:
    _, _, engine, tree = _setup(tmp_path)

    with pytest.raises(ValidationError, match="No tasks were updated"):
        await engine.control_task(tree.root.id, "resume")

    result = await engine.control_task(tree.root.id, "pause", include_descendants=False)
    assert result.scope == {"type": "task", "task_id": tree.root.id}
    assert result.updated_count == 1


@pytest.mark.asyncio
async def test_control_scope_is_audited(tmp_path: Path) -> None:
    db, _, engine, tree = _setup(tmp_path)

    await engine.control_scope(tree.root.id, "pause", TierScope(2), reason="maintenance")

    entries = [
        entry
        for entry in AuditLogRepo(db).list_since(0, limit=1000)
        if entry.action is AuditAction.TASK_CONTROL_SCOPE_APPLIED
    ]
    assert len(entries) == 1
    assert entries[0].target_id == tree.root.id
    assert entries[0].details["scope"] == {"tier": 2, "type": "tier"}
    assert entries[0].details["reason"] == "maintenance"


@pytest.mark.asyncio
async def test_unknown_action_is_rejected(tmp_path: Path) -> None:
    _, _, engine, tree = _setup(tmp_path)
    with pytest.raises(ValidationError, match="not supported"):
        await engine.control_scope(tree.root.id, "explode", TreeScope())
