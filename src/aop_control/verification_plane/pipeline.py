"""
aop-control - mutation validation and apply pipeline

File: src/aop_control/verification_plane/pipeline.py

Purpose
- Drive one mutation through an ordered step sequence to ``validated``/``validated_no_tests``
  and, once Tier 1 approval is given, to ``applied``.

Normative behavior
- Step order is authoritative:
  format_check -> semantic_check -> compliance_check -> target_path_check -> shadow_copy
  -> shadow_apply -> shadow_tests -> tier1_approval -> apply.
- Every executed step yields exactly one ``PipelineStepResult``; the first failed step halts
  the run, rejects the mutation at that step and fails the owning task.
- The real target tree is untouched until ``apply``; diffs and tests only ever run inside a
  shadow copy.
- At most one run per mutation id is in flight across processes (a lease row on the
  mutation); a second caller fails fast with ``MutationBusyError``. Applied and rejected
  mutations raise ``MutationTerminalError`` before any side effect.
- Task writes are compare-and-set against the status read at run start; a concurrent stop
  or retry is never overwritten.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Final

import structlog

from aop_control.constants import (
    ACTOR_PIPELINE,
    SHADOW_DIR_PREFIX,
    SHADOW_SKIP_DIRS,
    TIER1_APPROVAL_WAIT_MESSAGE,
)
from aop_control.domain.ids import generate_prefixed_id
from aop_control.domain.models import (
    AuditAction,
    Mutation,
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
from aop_control.persistence.repositories import UNSET, AuditLogRepo, MutationRepo, TaskRepo
from aop_control.utils.fs import atomic_write, copy_tree_filtered, is_within, remove_tree
from aop_control.utils.hashing import sha256_bytes
from aop_control.verification_plane.ci import (
    CommandExecutor,
    CommandSpec,
    LocalSubprocessExecutor,
    detect_ci_command,
    parse_ci_command,
)
from aop_control.verification_plane.compliance import COMPLIANCE_PASSED_MESSAGE, CompliancePolicy
from aop_control.verification_plane.patching import (
    FilePatch,
    PatchError,
    added_text,
    apply_patch,
    normalize_patch,
    parse_unified_diff,
    validate_patch_format,
)
from aop_control.verification_plane.similarity import SimilarityScorer, TokenOverlapScorer

if TYPE_CHECKING:
    import sqlite3

    from aop_control.persistence.state_db import StateDB

FORMAT_CHECK: Final[str] = "format_check"
SEMANTIC_CHECK: Final[str] = "semantic_check"
COMPLIANCE_CHECK: Final[str] = "compliance_check"
TARGET_PATH_CHECK: Final[str] = "target_path_check"
SHADOW_COPY: Final[str] = "shadow_copy"
SHADOW_APPLY: Final[str] = "shadow_apply"
SHADOW_TESTS: Final[str] = "shadow_tests"
TIER1_APPROVAL: Final[str] = "tier1_approval"
APPLY: Final[str] = "apply"

PIPELINE_STEPS: Final[tuple[str, ...]] = (
    FORMAT_CHECK,
    SEMANTIC_CHECK,
    COMPLIANCE_CHECK,
    TARGET_PATH_CHECK,
    SHADOW_COPY,
    SHADOW_APPLY,
    SHADOW_TESTS,
    TIER1_APPROVAL,
    APPLY,
)

DEFAULT_SEMANTIC_THRESHOLD: Final[float] = 0.08
DEFAULT_SHADOW_TIMEOUT_SECONDS: Final[float] = 120.0
RUN_LEASE_GRACE_SECONDS: Final[float] = 300.0
APPROVAL_PENDING_COMPLIANCE: Final[int] = 70
APPLIED_COMPLIANCE: Final[int] = 85
DELETED_CHECKSUM: Final[str] = "deleted"
NO_TESTS_MESSAGE: Final[str] = "No automated tests detected. Marked as validated_no_tests."
APPROVAL_REQUIRED_MESSAGE: Final[str] = "Validation complete. Tier 1 approval required."
APPROVAL_GRANTED_MESSAGE: Final[str] = "Tier 1 approval granted."


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Tunable pipeline behavior, usually built from the ``[pipeline]`` config section."""

    semantic_threshold: float = DEFAULT_SEMANTIC_THRESHOLD
    shadow_timeout_seconds: float = DEFAULT_SHADOW_TIMEOUT_SECONDS
    ci_command: tuple[str, ...] | None = None
    keep_shadow: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.semantic_threshold <= 1.0:
            raise ValueError("semantic_threshold must be between 0 and 1")
        if self.shadow_timeout_seconds <= 0:
            raise ValueError("shadow_timeout_seconds must be > 0")

    @classmethod
    def from_config(cls, section: Mapping[str, object]) -> PipelineSettings:
        raw_command = section.get("ci_command")
        command = (
            parse_ci_command(raw_command)
            if isinstance(raw_command, (str, list, tuple))
            else None
        )
        return cls(
            semantic_threshold=float(
                _number(section.get("semantic_threshold"), DEFAULT_SEMANTIC_THRESHOLD)
            ),
            shadow_timeout_seconds=float(
                _number(section.get("shadow_timeout_seconds"), DEFAULT_SHADOW_TIMEOUT_SECONDS)
            ),
            ci_command=command,
            keep_shadow=bool(section.get("keep_shadow", False)),
        )


@dataclass(frozen=True, slots=True)
class PipelineRunResult:
    """Final state of one pipeline run."""

    mutation: Mutation
    task: Task
    steps: tuple[PipelineStepResult, ...]
    shadow_dir: str | None = None

    @property
    def applied(self) -> bool:
        return self.mutation.status is MutationStatus.APPLIED

    @property
    def rejected(self) -> bool:
        return self.mutation.status is MutationStatus.REJECTED

    @property
    def first_failure(self) -> PipelineStepResult | None:
        return next((step for step in self.steps if step.status is StepStatus.FAILED), None)

    def to_dict(self) -> dict[str, object]:
        return {
            "mutation": self.mutation.to_dict(),
            "task": self.task.to_dict(),
            "steps": [step.to_dict() for step in self.steps],
            "shadow_dir": self.shadow_dir,
        }


@dataclass(slots=True)
class _RunState:
    mutation: Mutation
    task: Task
    project_root: Path
    tier1_approved: bool
    ci_command: tuple[str, ...] | None
    patch_text: str = ""
    patch: FilePatch | None = None
    relative_path: PurePosixPath | None = None
    shadow_dir: Path | None = None
    test_result: str | None = None
    test_exit_code: int | None = None
    validated_status: MutationStatus = MutationStatus.VALIDATED_NO_TESTS

    @property
    def target_file(self) -> Path:
        assert self.relative_path is not None
        return self.project_root.joinpath(*self.relative_path.parts)

    @property
    def shadow_file(self) -> Path:
        assert self.relative_path is not None and self.shadow_dir is not None
        return self.shadow_dir.joinpath(*self.relative_path.parts)


class _StepFailure(Exception):
    """Carries a failed step's details out of a step handler."""


_StepHandler = Callable[[_RunState], Awaitable[PipelineStepResult]]


def resolve_target_file(project_root: Path, file_path: str) -> PurePosixPath:
    """Validate ``file_path`` as a path inside ``project_root``; returns it relative."""

    raw = file_path.strip()
    if not raw:
        raise SecurityViolation("mutation file path is empty")
    if "\x00" in raw:
        raise SecurityViolation("mutation file path contains a null byte")
    normalized = raw.replace("\\", "/")
    relative = PurePosixPath(normalized)
    if relative.is_absolute() or (len(normalized) > 1 and normalized[1] == ":"):
        raise SecurityViolation("mutation file path must be relative to the target project")
    if any(part == ".." for part in relative.parts):
        raise SecurityViolation("mutation file path cannot contain '..'")
    parts = [part for part in relative.parts if part not in ("", ".")]
    if not parts:
        raise SecurityViolation("mutation file path is empty")
    candidate = project_root.joinpath(*parts)
    if not is_within(candidate, project_root):
        raise SecurityViolation("mutation file path escapes target project root")
    return PurePosixPath(*parts)


class MutationPipeline:
    """Runs mutations through validation, shadow testing and the final apply."""

    def __init__(
        self,
        db: StateDB,
        *,
        executor: CommandExecutor | None = None,
        similarity: SimilarityScorer | None = None,
        compliance: CompliancePolicy | None = None,
        settings: PipelineSettings | None = None,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._tasks = TaskRepo(db)
        self._mutations = MutationRepo(db)
        self._audit = AuditLogRepo(db)
        self._settings = settings if settings is not None else PipelineSettings()
        self._executor = (
            executor
            if executor is not None
            else LocalSubprocessExecutor(
                default_timeout_seconds=self._settings.shadow_timeout_seconds
            )
        )
        self._similarity = similarity if similarity is not None else TokenOverlapScorer()
        self._compliance = compliance if compliance is not None else CompliancePolicy.default()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    async def run(
        self,
        mutation_id: str,
        target_project: str | os.PathLike[str],
        *,
        tier1_approved: bool = False,
        ci_command: str | Sequence[str] | None = None,
        keep_shadow: bool | None = None,
    ) -> PipelineRunResult:
        mutation_key = (mutation_id or "").strip()
        if not mutation_key:
            raise ValidationError("mutation_id is required")
        project_root = _resolve_project_root(target_project)

        holder = generate_prefixed_id("run")
        lease_seconds = self._settings.shadow_timeout_seconds + RUN_LEASE_GRACE_SECONDS
        if not self._mutations.acquire_run_lease(
            mutation_key, holder, ttl_seconds=lease_seconds
        ):
            raise MutationBusyError(
                f"Mutation '{mutation_key}' is already running through the pipeline."
            )
        try:
            return await self._run_locked(
                mutation_key,
                project_root,
                tier1_approved=tier1_approved,
                ci_command=parse_ci_command(ci_command),
                keep_shadow=self._settings.keep_shadow if keep_shadow is None else keep_shadow,
            )
        finally:
            self._mutations.release_run_lease(mutation_key, holder)

    async def _run_locked(
        self,
        mutation_id: str,
        project_root: Path,
        *,
        tier1_approved: bool,
        ci_command: tuple[str, ...] | None,
        keep_shadow: bool,
    ) -> PipelineRunResult:
        mutation = self._mutations.require(mutation_id)
        if mutation.is_terminal:
            raise MutationTerminalError(
                f"Mutation '{mutation_id}' is already {mutation.status.value}."
            )
        task = self._tasks.require(mutation.task_id)

        self._audit.append(
            actor=ACTOR_PIPELINE,
            action=AuditAction.PIPELINE_STARTED,
            target_id=task.id,
            details={
                "mutation_id": mutation.id,
                "file_path": mutation.file_path,
                "tier1_approved": tier1_approved,
            },
        )
        log = self._logger.bind(mutation_id=mutation.id, task_id=task.id)
        log.info("pipeline_started", tier1_approved=tier1_approved)

        state = _RunState(
            mutation=mutation,
            task=task,
            project_root=project_root,
            tier1_approved=tier1_approved,
            ci_command=ci_command if ci_command is not None else self._settings.ci_command,
        )
        steps: list[PipelineStepResult] = []
        try:
            for name, handler in self._step_plan():
                result = await self._run_step(name, handler, state, log)
                steps.append(result)
                if result.status is StepStatus.FAILED:
                    self._reject(state, result, log)
                    break
                if result.status is StepStatus.PENDING:
                    break
        finally:
            if state.shadow_dir is not None and not keep_shadow:
                remove_tree(state.shadow_dir, prefix=SHADOW_DIR_PREFIX)

        final_mutation = self._mutations.require(mutation.id)
        final_task = self._tasks.require(task.id)
        log.info(
            "pipeline_finished",
            status=final_mutation.status.value,
            steps=len(steps),
        )
        return PipelineRunResult(
            mutation=final_mutation,
            task=final_task,
            steps=tuple(steps),
            shadow_dir=(
                str(state.shadow_dir) if keep_shadow and state.shadow_dir is not None else None
            ),
        )

    def _step_plan(self) -> tuple[tuple[str, _StepHandler], ...]:
        return (
            (FORMAT_CHECK, self._format_check),
            (SEMANTIC_CHECK, self._semantic_check),
            (COMPLIANCE_CHECK, self._compliance_check),
            (TARGET_PATH_CHECK, self._target_path_check),
            (SHADOW_COPY, self._shadow_copy),
            (SHADOW_APPLY, self._shadow_apply),
            (SHADOW_TESTS, self._shadow_tests),
            (TIER1_APPROVAL, self._tier1_approval),
            (APPLY, self._apply),
        )

    async def _run_step(
        self, name: str, handler: _StepHandler, state: _RunState, log: Any
    ) -> PipelineStepResult:
        started_ns = time.monotonic_ns()
        try:
            result = await handler(state)
        except _StepFailure as exc:
            result = PipelineStepResult(step=name, status=StepStatus.FAILED, details=str(exc))
        except SecurityViolation as exc:
            log.error("pipeline_security_violation", step=name, error=str(exc))
            result = PipelineStepResult(step=name, status=StepStatus.FAILED, details=str(exc))
        except Exception as exc:  # noqa: BLE001
            log.warning("pipeline_step_crashed", step=name, error=str(exc))
            result = PipelineStepResult(
                step=name, status=StepStatus.FAILED, details=_exception_details(exc)
            )

        self._audit.append(
            actor=ACTOR_PIPELINE,
            action=AuditAction.PIPELINE_STEP,
            target_id=state.task.id,
            details={"mutation_id": state.mutation.id, **result.to_dict()},
        )
        log.info(
            "pipeline_step_completed",
            step=name,
            status=result.status.value,
            duration_ms=_duration_ms(started_ns),
        )
        return result

    async def _format_check(self, state: _RunState) -> PipelineStepResult:
        state.patch_text = normalize_patch(state.mutation.diff_content)
        problem = validate_patch_format(state.patch_text)
        if problem is not None:
            raise _StepFailure(problem)
        try:
            state.patch = parse_unified_diff(state.patch_text)
        except PatchError as exc:
            raise _StepFailure(str(exc)) from exc
        return _passed(FORMAT_CHECK, "Patch format is valid.")

    async def _semantic_check(self, state: _RunState) -> PipelineStepResult:
        intent = state.mutation.intent_description.strip()
        reference = intent or state.patch_text
        candidate = f"{state.mutation.file_path}\n{added_text(state.patch_text)}"
        score = self._similarity.score(reference, candidate)
        threshold = self._settings.semantic_threshold
        if score < threshold:
            raise _StepFailure(f"Intent similarity {score:.3f} is below threshold {threshold:.3f}.")
        return _passed(SEMANTIC_CHECK, f"Intent similarity {score:.3f}.")

    async def _compliance_check(self, state: _RunState) -> PipelineStepResult:
        violation = self._compliance.check(
            domain=state.task.domain,
            file_path=state.mutation.file_path,
            diff_content=state.patch_text,
        )
        if violation is not None:
            raise _StepFailure(violation)
        return _passed(COMPLIANCE_CHECK, COMPLIANCE_PASSED_MESSAGE)

    async def _target_path_check(self, state: _RunState) -> PipelineStepResult:
        state.relative_path = resolve_target_file(state.project_root, state.mutation.file_path)
        return _passed(TARGET_PATH_CHECK, f"Target resolved to '{state.relative_path}'.")

    async def _shadow_copy(self, state: _RunState) -> PipelineStepResult:
        shadow = Path(
            tempfile.mkdtemp(prefix=f"{SHADOW_DIR_PREFIX}{_safe_fragment(state.mutation.id)}_")
        )
        state.shadow_dir = shadow
        copied = await asyncio.to_thread(
            copy_tree_filtered, state.project_root, shadow, skip_dirs=SHADOW_SKIP_DIRS
        )
        return _passed(SHADOW_COPY, f"Copied {copied} file(s) into shadow workspace.")

    async def _shadow_apply(self, state: _RunState) -> PipelineStepResult:
        assert state.patch is not None
        shadow_file = state.shadow_file
        original = shadow_file.read_text(encoding="utf-8") if shadow_file.is_file() else None
        try:
            patched = apply_patch(original, state.patch)
        except PatchError as exc:
            raise _StepFailure(f"Patch failed to apply in shadow workspace: {exc}") from exc
        if patched is None:
            shadow_file.unlink(missing_ok=True)
        else:
            atomic_write(shadow_file, patched)
        return _passed(SHADOW_APPLY, f"Patch applied in shadow workspace for '{state.relative_path}'.")

    async def _shadow_tests(self, state: _RunState) -> PipelineStepResult:
        assert state.shadow_dir is not None
        if state.ci_command is not None:
            spec: CommandSpec | None = CommandSpec(argv=state.ci_command)
        else:
            spec = detect_ci_command(state.shadow_dir)
        if spec is None:
            self._mutations.transition(state.mutation.id, MutationStatus.VALIDATED_NO_TESTS)
            state.validated_status = MutationStatus.VALIDATED_NO_TESTS
            return PipelineStepResult(
                step=SHADOW_TESTS, status=StepStatus.SKIPPED, details=NO_TESTS_MESSAGE
            )

        spec.cwd = str(state.shadow_dir)
        if spec.timeout_seconds is None:
            spec.timeout_seconds = self._settings.shadow_timeout_seconds
        result = await self._executor.run(spec)
        state.test_result = result.summary()
        state.test_exit_code = result.exit_code
        if not result.is_success(spec):
            if result.timed_out:
                raise _StepFailure(f"{spec.display} {result.error or 'timed out'}.")
            if result.error is not None:
                raise _StepFailure(f"{spec.display} failed to start: {result.error}")
            raise _StepFailure(f"{spec.display} failed (exit code {result.exit_code}).")

        self._mutations.transition(
            state.mutation.id,
            MutationStatus.VALIDATED,
            test_result=state.test_result,
            test_exit_code=state.test_exit_code,
        )
        state.validated_status = MutationStatus.VALIDATED
        return _passed(SHADOW_TESTS, f"{spec.display} passed (exit code {result.exit_code}).")

    async def _tier1_approval(self, state: _RunState) -> PipelineStepResult:
        if state.tier1_approved:
            return _passed(TIER1_APPROVAL, APPROVAL_GRANTED_MESSAGE)
        expected = state.task.status
        paused = self._tasks.compare_and_set_status(
            state.task.id,
            expected=expected,
            status=TaskStatus.PAUSED,
            error_message=TIER1_APPROVAL_WAIT_MESSAGE,
            paused_from=UNSET if expected is TaskStatus.PAUSED else expected,
            compliance_score=APPROVAL_PENDING_COMPLIANCE,
        )
        if not paused:
            raise _StepFailure(self._moved_message(state, "approval wait"))
        return PipelineStepResult(
            step=TIER1_APPROVAL, status=StepStatus.PENDING, details=APPROVAL_REQUIRED_MESSAGE
        )

    async def _apply(self, state: _RunState) -> PipelineStepResult:
        shadow_file = state.shadow_file
        data = await asyncio.to_thread(_read_shadow_result, shadow_file)
        checksum = DELETED_CHECKSUM if data is None else sha256_bytes(data)
        expected = state.task.status
        # The target write is last in the transaction: a lost race leaves the tree untouched.
        with self._db.transaction() as conn:
            completed = self._tasks.compare_and_set_status(
                state.task.id,
                expected=expected,
                status=TaskStatus.COMPLETED,
                error_message=None,
                paused_from=None,
                checksum=checksum,
                compliance_score=APPLIED_COMPLIANCE,
                conn=conn,
            )
            if not completed:
                raise _StepFailure(self._moved_message(state, "apply", conn=conn))
            self._mutations.transition(state.mutation.id, MutationStatus.APPLIED, conn=conn)
            self._audit.append(
                actor=ACTOR_PIPELINE,
                action=AuditAction.MUTATION_APPLIED,
                target_id=state.task.id,
                details={
                    "mutation_id": state.mutation.id,
                    "file_path": str(state.relative_path),
                    "checksum": checksum,
                    "validated_as": state.validated_status.value,
                },
                conn=conn,
            )
            _write_target(state.target_file, data)
        return _passed(APPLY, f"Patch applied for '{state.mutation.file_path}'.")

    def _reject(self, state: _RunState, failed: PipelineStepResult, log: Any) -> None:
        reason = failed.details
        with self._db.transaction() as conn:
            self._mutations.transition(
                state.mutation.id,
                MutationStatus.REJECTED,
                test_result=UNSET if state.test_result is None else state.test_result,
                test_exit_code=UNSET if state.test_exit_code is None else state.test_exit_code,
                rejection_reason=reason,
                rejected_at_step=failed.step,
                conn=conn,
            )
            task_failed = self._tasks.compare_and_set_status(
                state.task.id,
                expected=state.task.status,
                status=TaskStatus.FAILED,
                error_message=reason,
                paused_from=None,
                compliance_score=0,
                conn=conn,
            )
            self._audit.append(
                actor=ACTOR_PIPELINE,
                action=AuditAction.MUTATION_REJECTED,
                target_id=state.task.id,
                details={
                    "mutation_id": state.mutation.id,
                    "step": failed.step,
                    "reason": reason,
                    "task_failed": task_failed,
                },
                conn=conn,
            )
        log.warning("mutation_rejected", step=failed.step, reason=reason)
        if not task_failed:
            log.info("task_left_unchanged", expected=state.task.status.value)

    def _moved_message(
        self, state: _RunState, stage: str, *, conn: sqlite3.Connection | None = None
    ) -> str:
        current = self._tasks.require(state.task.id, conn=conn)
        detail = f" ({current.error_message})" if current.error_message else ""
        return (
            f"Task '{current.id}' moved from '{state.task.status.value}' to "
            f"'{current.status.value}'{detail}; {stage} abandoned."
        )


def _read_shadow_result(shadow_file: Path) -> bytes | None:
    if not shadow_file.exists():
        return None
    return shadow_file.read_bytes()


def _write_target(target_file: Path, data: bytes | None) -> None:
    if data is None:
        target_file.unlink(missing_ok=True)
    else:
        atomic_write(target_file, data)


def _resolve_project_root(target_project: str | os.PathLike[str]) -> Path:
    raw = os.fspath(target_project) if target_project is not None else ""
    if not str(raw).strip():
        raise ValidationError("target_project is required")
    root = Path(raw).expanduser()
    if not root.is_dir():
        raise ValidationError(f"target project '{raw}' is not a directory")
    return root.resolve()


def _passed(step: str, details: str) -> PipelineStepResult:
    return PipelineStepResult(step=step, status=StepStatus.PASSED, details=details)


def _exception_details(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or type(exc).__name__


def _safe_fragment(value: str) -> str:
    return "".join(char if char.isalnum() or char in "-_" else "_" for char in value)[:48]


def _number(value: object, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def _duration_ms(started_ns: int) -> int:
    return max(0, (time.monotonic_ns() - started_ns) // 1_000_000)


__all__ = [
    "APPLY",
    "APPLIED_COMPLIANCE",
    "APPROVAL_PENDING_COMPLIANCE",
    "COMPLIANCE_CHECK",
    "FORMAT_CHECK",
    "MutationPipeline",
    "PIPELINE_STEPS",
    "PipelineRunResult",
    "PipelineSettings",
    "SEMANTIC_CHECK",
    "SHADOW_APPLY",
    "SHADOW_COPY",
    "SHADOW_TESTS",
    "TARGET_PATH_CHECK",
    "TIER1_APPROVAL",
    "resolve_target_file",
]
