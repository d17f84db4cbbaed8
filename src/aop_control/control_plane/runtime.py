"""
aop-control - execution runtime

File: src/aop_control/control_plane/runtime.py

Purpose
- Submit task execution to an ``ExecutionRunner`` as an ``ExecutionHandle`` that carries a
  ``CancellationToken``; ``stop`` cancels the token instead of only flipping a status.
- Provide the cooperative checkpoint agents call between stages: it blocks while the task
  is paused, raises when it was stopped, and records what it observed in the audit log.

Non-functional requirements
- Handles are tracked per task id so a control action can cancel every in-flight run for
  the tasks it affects.
- The checkpoint polls the store; observers never receive pushes.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable

import structlog

from aop_control.constants import ACTOR_RUNTIME
from aop_control.domain.models import AuditAction, IntentSummary, Task, TaskStatus
from aop_control.errors import ExecutionError
from aop_control.persistence.repositories import AuditLogRepo, TaskRepo
from aop_control.utils.concurrency import CancellationToken, run_with_timeout

if TYPE_CHECKING:
    from pathlib import Path

    from aop_control.persistence.state_db import StateDB

DEFAULT_EXECUTION_TIMEOUT_SECONDS: Final[float] = 900.0
DEFAULT_CHECKPOINT_POLL_SECONDS: Final[float] = 0.35


@runtime_checkable
class ExecutionRunner(Protocol):
    """Runs one domain task's agents and returns their proposals."""

    async def execute(
        self,
        task: Task,
        target_project: Path,
        top_k: int,
        token: CancellationToken,
    ) -> IntentSummary: ...


@dataclass(slots=True)
class ExecutionHandle:
    """An in-flight execution bound to one task and one cancellation token."""

    task_id: str
    token: CancellationToken
    future: asyncio.Task[IntentSummary] = field(repr=False)

    @property
    def done(self) -> bool:
        return self.future.done()

    def cancel(self, reason: str | None = None) -> None:
        self.token.cancel(reason)

    async def result(self) -> IntentSummary:
        return await self.future


class ExecutionSupervisor:
    """Owns every in-flight ``ExecutionHandle`` keyed by task id."""

    def __init__(
        self,
        runner: ExecutionRunner,
        *,
        timeout_seconds: float = DEFAULT_EXECUTION_TIMEOUT_SECONDS,
        logger: Any | None = None,
    ) -> None:
        if not isinstance(runner, ExecutionRunner):
            raise TypeError("runner must implement ExecutionRunner.execute()")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._runner = runner
        self._timeout_seconds = timeout_seconds
        self._handles: dict[str, list[ExecutionHandle]] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def submit(self, task: Task, target_project: Path, *, top_k: int = 4) -> ExecutionHandle:
        """Start executing ``task``; must be called from a running event loop."""

        token = CancellationToken()
        future = asyncio.create_task(
            run_with_timeout(
                self._runner.execute(task, target_project, top_k, token),
                self._timeout_seconds,
                token,
            ),
            name=f"aop-execute-{task.id}",
        )
        handle = ExecutionHandle(task_id=task.id, token=token, future=future)
        self._handles.setdefault(task.id, []).append(handle)
        future.add_done_callback(lambda _: self._forget(handle))
        self._logger.info("execution_submitted", task_id=task.id, top_k=top_k)
        return handle

    def cancel(self, task_ids: Iterable[str], reason: str | None = None) -> int:
        """Cancel the tokens of every live handle for ``task_ids``; returns how many."""

        cancelled = 0
        for task_id in task_ids:
            for handle in tuple(self._handles.get(task_id, ())):
                if handle.done or handle.token.is_cancelled:
                    continue
                handle.cancel(reason)
                cancelled += 1
        if cancelled:
            self._logger.info("execution_cancelled", handles=cancelled, reason=reason)
        return cancelled

    def in_flight(self, task_id: str | None = None) -> list[ExecutionHandle]:
        if task_id is not None:
            return [item for item in self._handles.get(task_id, ()) if not item.done]
        return [item for items in self._handles.values() for item in items if not item.done]

    def _forget(self, handle: ExecutionHandle) -> None:
        handles = self._handles.get(handle.task_id)
        if handles is None:
            return
        if handle in handles:
            handles.remove(handle)
        if not handles:
            self._handles.pop(handle.task_id, None)


class TaskRuntime:
    """Cooperative checkpoints and activity records for running agents."""

    def __init__(
        self,
        db: StateDB,
        *,
        poll_interval_seconds: float = DEFAULT_CHECKPOINT_POLL_SECONDS,
        logger: Any | None = None,
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        self._tasks = TaskRepo(db)
        self._audit = AuditLogRepo(db)
        self._poll_interval = poll_interval_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def checkpoint(
        self,
        task_id: str,
        *,
        stage: str,
        actor: str = ACTOR_RUNTIME,
        token: CancellationToken | None = None,
    ) -> Task:
        """Return once ``task_id`` may proceed past ``stage``.

        Raises ``ExecutionError`` when the task was stopped or already completed and
        ``asyncio.CancelledError`` when ``token`` fires while waiting.
        """

        observed_pause = False
        while True:
            if token is not None:
                token.raise_if_cancelled()
            task = self._tasks.require(task_id)
            if task.status is TaskStatus.PAUSED:
                if not observed_pause:
                    self._audit.append(
                        actor=actor,
                        action=AuditAction.TASK_PAUSE_OBSERVED,
                        target_id=task.id,
                        details={"stage": stage, "tier": task.tier},
                    )
                    self._logger.info("task_pause_observed", task_id=task.id, stage=stage)
                    observed_pause = True
                await self._sleep(token)
                continue
            if task.status is TaskStatus.FAILED:
                reason = task.error_message or "task marked as failed"
                self._audit.append(
                    actor=actor,
                    action=AuditAction.TASK_STOP_OBSERVED,
                    target_id=task.id,
                    details={"stage": stage, "reason": reason},
                )
                raise ExecutionError(f"Task '{task.id}' stopped: {reason}")
            if task.status is TaskStatus.COMPLETED:
                raise ExecutionError(
                    f"Task '{task.id}' is already completed; execution checkpoint "
                    f"'{stage}' aborted"
                )
            if observed_pause:
                self._audit.append(
                    actor=actor,
                    action=AuditAction.TASK_RESUME_OBSERVED,
                    target_id=task.id,
                    details={"stage": stage},
                )
                self._logger.info("task_resume_observed", task_id=task.id, stage=stage)
            return task

    async def _sleep(self, token: CancellationToken | None) -> None:
        if token is None:
            await asyncio.sleep(self._poll_interval)
            return
        try:
            await asyncio.wait_for(token.wait(), timeout=self._poll_interval)
        except TimeoutError:
            return


__all__ = [
    "DEFAULT_EXECUTION_TIMEOUT_SECONDS",
    "ExecutionHandle",
    "ExecutionRunner",
    "ExecutionSupervisor",
    "TaskRuntime",
]
