from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from aop_control.control_plane.runtime import ExecutionSupervisor, TaskRuntime
from aop_control.control_plane.tasks import TaskService
from aop_control.domain.models import AuditAction, ControlAction, TaskStatus
from aop_control.errors import ExecutionError
from aop_control.persistence.repositories import AuditLogRepo
from aop_control.persistence.state_db import StateDB
from aop_control.utils.concurrency import CancellationToken, run_with_timeout

from .. import BlockingRunner, StubRunner, greeting_proposal, make_db

if TYPE_CHECKING:
    from pathlib import Path


def _audit_actions(db: StateDB) -> list[AuditAction]:
    return [entry.action for entry in AuditLogRepo(db).list_since(0, limit=1000)]


async def _wait_for_action(db: StateDB, action: AuditAction) -> None:
    for _ in range(200):
        if action in _audit_actions(db):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{action.value} was never recorded")


def test_supervisor_requires_a_runner() -> None:
    with pytest.raises(TypeError):
        ExecutionSupervisor(object())  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        ExecutionSupervisor(StubRunner(), timeout_seconds=0)


@pytest.mark.asyncio
async def test_submit_returns_runner_summary(tmp_path: Path) -> None:
    service = TaskService(make_db(tmp_path))
    task = service.create_task(tier=1, domain="core", objective="Go", token_budget=100)
    runner = StubRunner(proposals={task.id: (greeting_proposal(),)})
    supervisor = ExecutionSupervisor(runner)

    handle = supervisor.submit(task, tmp_path, top_k=2)
    summary = await handle.result()

    assert summary.task_id == task.id
    assert len(summary.proposals) == 1
    assert runner.calls == [task.id]
    await asyncio.sleep(0)
    assert supervisor.in_flight() == []


@pytest.mark.asyncio
async def test_cancel_fires_the_handle_token(tmp_path: Path) -> None:
    service = TaskService(make_db(tmp_path))
    task = service.create_task(tier=1, domain="core", objective="Go", token_budget=100)
    supervisor = ExecutionSupervisor(BlockingRunner())

    handle = supervisor.submit(task, tmp_path)
    await asyncio.sleep(0)
    assert supervisor.in_flight(task.id) == [handle]

    assert supervisor.cancel([task.id], reason="stopped_by_user:halt") == 1
    with pytest.raises(asyncio.CancelledError):
        await handle.result()
    assert handle.token.reason == "stopped_by_user:halt"
    # Already-cancelled handles are not counted twice.
    assert supervisor.cancel([task.id]) == 0


@pytest.mark.asyncio
async def test_execution_times_out(tmp_path: Path) -> None:
    service = TaskService(make_db(tmp_path))
    task = service.create_task(tier=1, domain="core", objective="Go", token_budget=100)
    supervisor = ExecutionSupervisor(BlockingRunner(), timeout_seconds=0.05)

    handle = supervisor.submit(task, tmp_path)
    with pytest.raises(TimeoutError):
        await handle.result()


@pytest.mark.asyncio
async def test_run_with_timeout_rejects_pre_cancelled_token() -> None:
    token = CancellationToken()
    token.cancel("early")

    async def work() -> int:
        return 1

    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(work(), 1.0, token)
    assert await run_with_timeout(work(), 1.0) == 1


@pytest.mark.asyncio
async def test_checkpoint_passes_active_task(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    service = TaskService(db)
    task = service.create_task(tier=1, domain="core", objective="Go", token_budget=100)
    runtime = TaskRuntime(db, poll_interval_seconds=0.01)

    observed = await runtime.checkpoint(task.id, stage="plan")

    assert observed.status is TaskStatus.PENDING
    assert AuditAction.TASK_PAUSE_OBSERVED not in _audit_actions(db)


@pytest.mark.asyncio
async def test_checkpoint_blocks_while_paused(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    service = TaskService(db)
    task = service.create_task(tier=1, domain="core", objective="Go", token_budget=100)
    service.apply_control(task, ControlAction.PAUSE)
    runtime = TaskRuntime(db, poll_interval_seconds=0.01)

    waiter = asyncio.create_task(runtime.checkpoint(task.id, stage="edit"))
    await _wait_for_action(db, AuditAction.TASK_PAUSE_OBSERVED)
    await asyncio.sleep(0.05)
    assert not waiter.done()

    service.apply_control(service.get_task(task.id), ControlAction.RESUME)
    resumed = await asyncio.wait_for(waiter, timeout=2.0)

    assert resumed.status is TaskStatus.EXECUTING
    actions = _audit_actions(db)
    assert actions.count(AuditAction.TASK_PAUSE_OBSERVED) == 1
    assert AuditAction.TASK_RESUME_OBSERVED in actions


@pytest.mark.asyncio
async def test_checkpoint_raises_for_stopped_task(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    service = TaskService(db)
    task = service.create_task(tier=1, domain="core", objective="Go", token_budget=100)
    service.apply_control(task, ControlAction.STOP, reason="halt")
    runtime = TaskRuntime(db, poll_interval_seconds=0.01)

    with pytest.raises(ExecutionError, match="stopped: stopped_by_user:halt"):
        await runtime.checkpoint(task.id, stage="edit")
    assert AuditAction.TASK_STOP_OBSERVED in _audit_actions(db)


@pytest.mark.asyncio
async def test_checkpoint_refuses_completed_task(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    service = TaskService(db)
    task = service.create_task(tier=1, domain="core", objective="Go", token_budget=100)
    service.update_task_status(task.id, TaskStatus.EXECUTING)
    service.update_task_status(task.id, TaskStatus.COMPLETED)

    with pytest.raises(ExecutionError, match="already completed"):
        await TaskRuntime(db).checkpoint(task.id, stage="apply")


@pytest.mark.asyncio
async def test_checkpoint_wait_is_cancellable(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    service = TaskService(db)
    task = service.create_task(tier=1, domain="core", objective="Go", token_budget=100)
    service.apply_control(task, ControlAction.PAUSE)
    runtime = TaskRuntime(db, poll_interval_seconds=0.01)
    token = CancellationToken()

    waiter = asyncio.create_task(runtime.checkpoint(task.id, stage="edit", token=token))
    await _wait_for_action(db, AuditAction.TASK_PAUSE_OBSERVED)
    token.cancel("shutdown")

    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(waiter, timeout=2.0)
