from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from aop_control.control_plane.tasks import TaskService
from aop_control.domain.models import MutationStatus, TaskStatus
from aop_control.errors import ExecutionError, InvalidTransitionError, ValidationError
from aop_control.verification_plane.mutations import MutationService
from aop_control.verification_plane.revision import (
    APPLIED_REVISION_MESSAGE,
    RevisionService,
    normalize_note,
    revision_budget,
)

from .. import StubRevisionGenerator, greeting_proposal, make_db

if TYPE_CHECKING:
    from pathlib import Path

    from aop_control.persistence.state_db import StateDB


def _seed(tmp_path: Path, budget: int = 4_000) -> tuple[StateDB, TaskService, str]:
    db = make_db(tmp_path)
    tasks = TaskService(db)
    task = tasks.create_task(tier=1, domain="core", objective="Improve", token_budget=budget)
    mutation = MutationService(db).propose(task.id, greeting_proposal())
    return db, tasks, mutation.id


@pytest.mark.parametrize(
    ("parent", "expected"),
    [(100, 250), (4_000, 1_400), (20_000, 2_000)],
)
def test_revision_budget_is_clamped(parent: int, expected: int) -> None:
    assert revision_budget(parent) == expected


def test_normalize_note_collapses_whitespace() -> None:
    assert normalize_note("  use\n  the   helper ") == "use the helper"


@pytest.mark.asyncio
async def test_revision_creates_child_task_and_mutation(tmp_path: Path) -> None:
    db, tasks, mutation_id = _seed(tmp_path)
    generator = StubRevisionGenerator()
    service = RevisionService(db, generator, task_service=tasks)

    result = await service.request_revision(mutation_id, "  rename   the helper ")

    assert generator.notes == ["rename the helper"]
    revised_task = result.revised_task
    assert revised_task.tier == 3
    assert revised_task.parent_id == result.original_mutation.task_id
    assert revised_task.token_budget == 1_400
    assert revised_task.target_files == ("app.py",)
    assert "rename the helper" in revised_task.objective

    revised = result.revised_mutation
    assert revised.task_id == revised_task.id
    # The generator suggested another path and a tiny confidence; both are overridden.
    assert revised.file_path == "app.py"
    assert revised.confidence == pytest.approx(0.10)
    assert result.original_mutation.status is MutationStatus.PROPOSED


@pytest.mark.asyncio
async def test_generator_failure_fails_the_revision_task(tmp_path: Path) -> None:
    db, tasks, mutation_id = _seed(tmp_path)
    service = RevisionService(db, StubRevisionGenerator(fail_with="model offline"), task_service=tasks)

    with pytest.raises(ExecutionError, match="Failed to generate revised proposal: model offline"):
        await service.request_revision(mutation_id, "try again")

    original = MutationService(db).get(mutation_id)
    children = tasks.repo.list_children(original.task_id)
    assert len(children) == 1
    assert children[0].status is TaskStatus.FAILED


@pytest.mark.asyncio
async def test_applied_mutation_cannot_be_revised(tmp_path: Path) -> None:
    db, tasks, mutation_id = _seed(tmp_path)
    MutationService(db).set_status(mutation_id, MutationStatus.APPLIED, actor="pipeline")
    service = RevisionService(db, StubRevisionGenerator(), task_service=tasks)

    with pytest.raises(InvalidTransitionError, match="already applied"):
        await service.request_revision(mutation_id, "tweak")
    assert APPLIED_REVISION_MESSAGE.startswith("Cannot request revision")


@pytest.mark.asyncio
async def test_revision_requires_id_and_note(tmp_path: Path) -> None:
    db, tasks, mutation_id = _seed(tmp_path)
    service = RevisionService(db, StubRevisionGenerator(), task_service=tasks)

    with pytest.raises(ValidationError, match="mutation_id"):
        await service.request_revision("  ", "note")
    with pytest.raises(ValidationError, match="note"):
        await service.request_revision(mutation_id, " \n ")
