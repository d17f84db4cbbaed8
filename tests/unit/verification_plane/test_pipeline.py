from __future__ import annotations

import asyncio
from pathlib import Path, PurePosixPath

import pytest

from aop_control.constants import TIER1_APPROVAL_WAIT_MESSAGE
from aop_control.control_plane.tasks import TaskService
from aop_control.domain.models import (
    ControlAction,
    DiffProposal,
    MutationStatus,
    PipelineStepResult,
    StepStatus,
    Task,
    TaskStatus,
)
from aop_control.errors import (
    MutationBusyError,
    MutationTerminalError,
    SecurityViolation,
    ValidationError,
)
from aop_control.persistence.repositories import MutationRepo
from aop_control.persistence.state_db import StateDB
from aop_control.verification_plane.mutations import MutationService
from aop_control.verification_plane.pipeline import (
    APPLIED_COMPLIANCE,
    APPLY,
    APPROVAL_PENDING_COMPLIANCE,
    COMPLIANCE_CHECK,
    FORMAT_CHECK,
    PIPELINE_STEPS,
    SHADOW_APPLY,
    SHADOW_TESTS,
    TARGET_PATH_CHECK,
    TIER1_APPROVAL,
    MutationPipeline,
    PipelineSettings,
    resolve_target_file,
)

from .. import (
    APP_SOURCE,
    GatedExecutor,
    StubExecutor,
    greeting_proposal,
    make_db,
    write_project,
)


class _Fixture:
    def __init__(self, tmp_path: Path, *, domain: str = "core") -> None:
        self.db: StateDB = make_db(tmp_path)
        self.tasks = TaskService(self.db)
        self.mutations = MutationService(self.db)
        self.project = write_project(tmp_path / "project")
        self.task: Task = self.tasks.create_task(
            tier=1, domain=domain, objective="Improve app", token_budget=1_000
        )

    def propose(self, proposal: DiffProposal | None = None) -> str:
        return self.mutations.propose(self.task.id, proposal or greeting_proposal()).id

    def pipeline(self, executor: StubExecutor | None = None, **settings: object) -> MutationPipeline:
        return MutationPipeline(
            self.db,
            executor=executor if executor is not None else StubExecutor(),
            settings=PipelineSettings(**settings),  # type: ignore[arg-type]
        )


SHADOW_TESTS_INDEX = PIPELINE_STEPS.index(SHADOW_TESTS)


def _step_names(steps: tuple[PipelineStepResult, ...]) -> list[str]:
    return [step.step for step in steps]


@pytest.mark.asyncio
async def test_unapproved_run_validates_and_waits_for_tier1(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose()

    result = await fx.pipeline().run(mutation_id, fx.project)

    assert _step_names(result.steps) == list(PIPELINE_STEPS[:8])
    assert result.steps[-1].status is StepStatus.PENDING
    assert result.steps[SHADOW_TESTS_INDEX].status is StepStatus.SKIPPED
    assert result.mutation.status is MutationStatus.VALIDATED_NO_TESTS
    assert result.task.status is TaskStatus.PAUSED
    assert result.task.compliance_score == APPROVAL_PENDING_COMPLIANCE
    assert result.task.error_message == TIER1_APPROVAL_WAIT_MESSAGE
    assert (fx.project / "app.py").read_text(encoding="utf-8") == APP_SOURCE
    assert result.shadow_dir is None


@pytest.mark.asyncio
async def test_approved_run_applies_to_target(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose()

    result = await fx.pipeline().run(mutation_id, fx.project, tier1_approved=True)

    assert _step_names(result.steps) == list(PIPELINE_STEPS)
    assert result.applied
    assert result.mutation.applied_at is not None
    assert result.task.status is TaskStatus.COMPLETED
    assert result.task.compliance_score == APPLIED_COMPLIANCE
    assert result.task.checksum is not None and len(result.task.checksum) == 64
    assert "def greeting_helper" in (fx.project / "app.py").read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_configured_ci_command_runs_in_shadow(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose()
    executor = StubExecutor(0, stdout="3 passed")

    result = await fx.pipeline(executor).run(
        mutation_id, fx.project, ci_command="pytest -q"
    )

    assert result.mutation.status is MutationStatus.VALIDATED
    assert result.mutation.test_exit_code == 0
    assert "3 passed" in (result.mutation.test_result or "")
    (spec,) = executor.specs
    assert spec.argv == ("pytest", "-q")
    assert spec.cwd is not None and Path(spec.cwd) != fx.project.resolve()


@pytest.mark.asyncio
async def test_failing_tests_reject_at_shadow_tests(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose()

    result = await fx.pipeline(StubExecutor(1, stdout="1 failed")).run(
        mutation_id, fx.project, tier1_approved=True, ci_command="pytest -q"
    )

    assert len(result.steps) == 7
    assert result.first_failure is not None
    assert result.first_failure.step == SHADOW_TESTS
    assert result.mutation.status is MutationStatus.REJECTED
    assert result.mutation.rejected_at_step == SHADOW_TESTS
    assert result.mutation.test_exit_code == 1
    assert result.task.status is TaskStatus.FAILED
    assert result.task.compliance_score == 0
    assert (fx.project / "app.py").read_text(encoding="utf-8") == APP_SOURCE


@pytest.mark.asyncio
async def test_malformed_diff_is_rejected_at_format_check(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose(
        DiffProposal(
            agent_uid="spec-1",
            file_path="app.py",
            diff_content="not a diff at all",
            intent_description="add greeting helper",
        )
    )

    result = await fx.pipeline().run(mutation_id, fx.project, tier1_approved=True)

    assert _step_names(result.steps) == [FORMAT_CHECK]
    assert result.rejected
    assert result.mutation.rejected_at_step == FORMAT_CHECK
    assert result.task.error_message == result.mutation.rejection_reason


@pytest.mark.asyncio
async def test_unrelated_intent_fails_semantic_check(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose(
        DiffProposal(
            agent_uid="spec-1",
            file_path="app.py",
            diff_content=(
                "--- a/app.py\n+++ b/app.py\n@@ -1,1 +1,2 @@\n print('hi')\n+zzz = 1\n"
            ),
            intent_description="migrate billing invoices",
        )
    )

    result = await fx.pipeline().run(mutation_id, fx.project)

    assert result.first_failure is not None
    assert result.first_failure.step == "semantic_check"
    assert "below threshold" in result.first_failure.details


@pytest.mark.asyncio
async def test_database_domain_blocks_destructive_sql(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path, domain="database")
    mutation_id = fx.propose(
        DiffProposal(
            agent_uid="spec-db",
            file_path="app.py",
            diff_content=(
                "--- a/app.py\n+++ b/app.py\n@@ -1,1 +1,2 @@\n print('hi')\n"
                "+run('DROP TABLE users')\n"
            ),
            intent_description="drop the users table",
        )
    )

    result = await fx.pipeline().run(mutation_id, fx.project, tier1_approved=True)

    assert len(result.steps) == 3
    assert result.mutation.rejected_at_step == COMPLIANCE_CHECK
    assert result.mutation.rejection_reason == "Database mutation contains destructive statements."


@pytest.mark.asyncio
async def test_escaping_target_path_is_rejected(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose(
        DiffProposal(
            agent_uid="spec-1",
            file_path="../outside/app.py",
            diff_content=greeting_proposal().diff_content,
            intent_description="add greeting helper to the app module",
        )
    )

    result = await fx.pipeline().run(mutation_id, fx.project, tier1_approved=True)

    assert result.mutation.rejected_at_step == TARGET_PATH_CHECK
    assert "'..'" in (result.mutation.rejection_reason or "")
    assert not (tmp_path / "outside").exists()


@pytest.mark.asyncio
async def test_stale_context_fails_shadow_apply(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    (fx.project / "app.py").write_text("print('changed')\n", encoding="utf-8")
    mutation_id = fx.propose()

    result = await fx.pipeline().run(mutation_id, fx.project, tier1_approved=True)

    assert result.mutation.rejected_at_step == SHADOW_APPLY
    assert "context mismatch" in (result.mutation.rejection_reason or "")


@pytest.mark.asyncio
async def test_terminal_mutation_cannot_rerun(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose()
    pipeline = fx.pipeline()
    await pipeline.run(mutation_id, fx.project, tier1_approved=True)

    with pytest.raises(MutationTerminalError, match="already applied"):
        await pipeline.run(mutation_id, fx.project, tier1_approved=True)


@pytest.mark.asyncio
async def test_concurrent_run_of_same_mutation_is_busy(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose()
    executor = GatedExecutor()
    pipeline = fx.pipeline(executor)

    first = asyncio.create_task(pipeline.run(mutation_id, fx.project, ci_command="pytest -q"))
    await asyncio.wait_for(executor.started.wait(), timeout=5.0)

    with pytest.raises(MutationBusyError):
        await pipeline.run(mutation_id, fx.project, ci_command="pytest -q")

    executor.release.set()
    result = await first
    assert result.mutation.status is MutationStatus.VALIDATED


@pytest.mark.asyncio
async def test_keep_shadow_returns_the_workspace(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose()

    result = await fx.pipeline(keep_shadow=True).run(mutation_id, fx.project)

    assert result.shadow_dir is not None
    shadow = Path(result.shadow_dir)
    assert "def greeting_helper" in (shadow / "app.py").read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_target_must_be_a_directory(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose()
    with pytest.raises(ValidationError, match="not a directory"):
        await fx.pipeline().run(mutation_id, tmp_path / "missing")


@pytest.mark.parametrize(
    "path",
    ["", "/etc/passwd", "C:/windows/x.py", "a/../../b.py", "bad\x00name.py"],
)
def test_resolve_target_file_rejects_unsafe_paths(tmp_path: Path, path: str) -> None:
    with pytest.raises(SecurityViolation):
        resolve_target_file(tmp_path, path)


def test_resolve_target_file_normalizes_separators(tmp_path: Path) -> None:
    assert resolve_target_file(tmp_path, "./src\\pkg/mod.py") == PurePosixPath("src/pkg/mod.py")


@pytest.mark.asyncio
async def test_lease_held_elsewhere_makes_run_busy(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose()
    leases = MutationRepo(fx.db)
    assert leases.acquire_run_lease(mutation_id, "run-other-process", ttl_seconds=60.0)

    with pytest.raises(MutationBusyError):
        await fx.pipeline().run(mutation_id, fx.project, tier1_approved=True)
    assert fx.mutations.get(mutation_id).status is MutationStatus.PROPOSED

    assert leases.release_run_lease(mutation_id, "run-other-process")
    result = await fx.pipeline().run(mutation_id, fx.project, tier1_approved=True)
    assert result.applied
    assert leases.acquire_run_lease(mutation_id, "run-after", ttl_seconds=60.0)


@pytest.mark.asyncio
async def test_stop_during_shadow_tests_abandons_apply(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose()
    executor = GatedExecutor()
    run = asyncio.create_task(
        fx.pipeline(executor).run(
            mutation_id, fx.project, tier1_approved=True, ci_command="pytest -q"
        )
    )
    await asyncio.wait_for(executor.started.wait(), timeout=5.0)

    stopped = fx.tasks.apply_control(
        fx.tasks.get_task(fx.task.id), ControlAction.STOP, reason="halt"
    )
    assert stopped is not None
    executor.release.set()
    result = await asyncio.wait_for(run, timeout=5.0)

    assert result.rejected
    failure = result.first_failure
    assert failure is not None and failure.step == APPLY
    assert "apply abandoned" in failure.details
    assert result.task.status is TaskStatus.FAILED
    assert result.task.error_message == "stopped_by_user:halt"
    assert result.task.checksum is None
    assert (fx.project / "app.py").read_text(encoding="utf-8") == APP_SOURCE


@pytest.mark.asyncio
async def test_stop_before_approval_wait_keeps_stop_reason(tmp_path: Path) -> None:
    fx = _Fixture(tmp_path)
    mutation_id = fx.propose()
    executor = GatedExecutor()
    run = asyncio.create_task(
        fx.pipeline(executor).run(mutation_id, fx.project, ci_command="pytest -q")
    )
    await asyncio.wait_for(executor.started.wait(), timeout=5.0)

    fx.tasks.apply_control(fx.tasks.get_task(fx.task.id), ControlAction.STOP, reason="halt")
    executor.release.set()
    result = await asyncio.wait_for(run, timeout=5.0)

    assert result.mutation.rejected_at_step == TIER1_APPROVAL
    assert result.task.status is TaskStatus.FAILED
    assert result.task.paused_from is None
    assert result.task.error_message == "stopped_by_user:halt"
