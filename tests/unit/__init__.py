"""Shared deterministic builders and collaborator stubs for unit tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Final

from aop_control.control_plane.tasks import TaskService
from aop_control.domain.models import DiffProposal, IntentSummary, Mutation, Task
from aop_control.errors import ExecutionError
from aop_control.persistence.state_db import StateDB
from aop_control.verification_plane.ci import CommandResult, CommandSpec

if TYPE_CHECKING:
    from pathlib import Path

    from aop_control.utils.concurrency import CancellationToken

BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)

APP_SOURCE: Final[str] = "print('hi')\n"

GREETING_DIFF: Final[str] = (
    "--- a/app.py\n"
    "+++ b/app.py\n"
    "@@ -1,1 +1,3 @@\n"
    " print('hi')\n"
    "+def greeting_helper():\n"
    "+    return 'hello'\n"
)
GREETING_INTENT: Final[str] = "add greeting helper to the app module"


def fixed_now(seed: int) -> datetime:
    return BASE_TS + timedelta(seconds=seed)


def make_db(tmp_path: Path, name: str = "control.sqlite3") -> StateDB:
    db = StateDB(tmp_path / "state" / name)
    db.migrate()
    return db


def make_task(
    seed: int,
    *,
    tier: int = 1,
    parent_id: str | None = None,
    token_budget: int = 5_000,
    domain: str = "core",
) -> Task:
    return Task(
        id=f"task-{seed:04d}",
        tier=tier,
        domain=domain,
        objective=f"Objective {seed}",
        token_budget=token_budget,
        parent_id=parent_id,
        created_at=fixed_now(seed),
        updated_at=fixed_now(seed),
    )


@dataclass(frozen=True, slots=True)
class TaskTree:
    """root -> (leader_a -> (spec_a1, spec_a2), leader_b -> (spec_b1,))"""

    root: Task
    leader_a: Task
    leader_b: Task
    spec_a1: Task
    spec_a2: Task
    spec_b1: Task

    @property
    def all(self) -> tuple[Task, ...]:
        return (
            self.root,
            self.leader_a,
            self.leader_b,
            self.spec_a1,
            self.spec_a2,
            self.spec_b1,
        )


def make_tree(service: TaskService, *, domain: str = "core") -> TaskTree:
    root = service.create_task(
        tier=1, domain=domain, objective="Ship the feature", token_budget=10_000
    )

    def child(parent: Task, tier: int, domain: str, objective: str, budget: int) -> Task:
        return service.create_task(
            tier=tier,
            domain=domain,
            objective=objective,
            token_budget=budget,
            parent_id=parent.id,
        )

    leader_a = child(root, 2, "frontend", "Frontend slice", 4_000)
    leader_b = child(root, 2, "backend", "Backend slice", 4_000)
    spec_a1 = child(leader_a, 3, "frontend", "Form layout", 1_000)
    spec_a2 = child(leader_a, 3, "frontend", "Form validation", 1_000)
    spec_b1 = child(leader_b, 3, "backend", "Endpoint", 1_000)
    return TaskTree(root, leader_a, leader_b, spec_a1, spec_a2, spec_b1)


def write_project(root: Path) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    (root / "app.py").write_text(APP_SOURCE, encoding="utf-8")
    return root


def greeting_proposal(agent_uid: str = "spec-1", *, confidence: float = 0.8) -> DiffProposal:
    return DiffProposal(
        agent_uid=agent_uid,
        file_path="app.py",
        diff_content=GREETING_DIFF,
        intent_description=GREETING_INTENT,
        confidence=confidence,
    )


class StubExecutor:
    """CommandExecutor returning a fixed exit code and recording every spec."""

    def __init__(self, exit_code: int = 0, *, stdout: str = "ok") -> None:
        self.exit_code = exit_code
        self.stdout = stdout
        self.specs: list[CommandSpec] = []

    async def run(self, spec: CommandSpec) -> CommandResult:
        self.specs.append(spec)
        return CommandResult(
            argv=spec.argv,
            exit_code=self.exit_code,
            stdout=self.stdout,
            stderr="",
            duration_ms=1,
        )


class GatedExecutor(StubExecutor):
    """Blocks inside ``run`` until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__(0)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, spec: CommandSpec) -> CommandResult:
        self.started.set()
        await self.release.wait()
        return await super().run(spec)


@dataclass(slots=True)
class StubRunner:
    """ExecutionRunner answering from a per-task proposal table."""

    proposals: dict[str, tuple[DiffProposal, ...]] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    compliance_score: int = 80
    tokens_spent: int = 100
    calls: list[str] = field(default_factory=list)

    async def execute(
        self,
        task: Task,
        target_project: Path,
        top_k: int,
        token: CancellationToken,
    ) -> IntentSummary:
        self.calls.append(task.id)
        if task.id in self.failures:
            raise ExecutionError(self.failures[task.id])
        return IntentSummary(
            task_id=task.id,
            proposals=self.proposals.get(task.id, ()),
            compliance_score=self.compliance_score,
            tokens_spent=self.tokens_spent,
        )


class BlockingRunner:
    """ExecutionRunner that never finishes on its own."""

    async def execute(
        self,
        task: Task,
        target_project: Path,
        top_k: int,
        token: CancellationToken,
    ) -> IntentSummary:
        await asyncio.Event().wait()
        return IntentSummary(task_id=task.id)


class StubRevisionGenerator:
    def __init__(self, *, fail_with: str | None = None) -> None:
        self.fail_with = fail_with
        self.notes: list[str] = []

    async def generate(self, task: Task, mutation: Mutation, note: str) -> DiffProposal:
        self.notes.append(note)
        if self.fail_with is not None:
            raise ExecutionError(self.fail_with)
        return DiffProposal(
            agent_uid="reviser",
            file_path="ignored.py",
            diff_content=mutation.diff_content,
            intent_description=f"{mutation.intent_description} ({note})",
            confidence=0.01,
        )


class FixedDistance:
    """DistanceScorer returning queued values in call order."""

    def __init__(self, *values: float) -> None:
        self._values = list(values)
        self.calls = 0

    def distance(self, text_a: str, text_b: str) -> float:
        value = self._values[min(self.calls, len(self._values) - 1)]
        self.calls += 1
        return value
