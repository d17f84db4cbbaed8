"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from pathlib import PurePosixPath
from typing import Final, NoReturn, TypeVar, cast

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_DIFF = 512 * 1024
_MAX_TARGET_FILES = 256


class TaskStatus(StrEnum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class MutationStatus(StrEnum):
    PROPOSED = "proposed"
    VALIDATED = "validated"
    VALIDATED_NO_TESTS = "validated_no_tests"
    APPLIED = "applied"
    REJECTED = "rejected"


class BudgetRequestStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BudgetDecision(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"


class StepStatus(StrEnum):
    PASSED = "passed"
    FAILED = "failed"
    PENDING = "pending"
    SKIPPED = "skipped"


class ControlAction(StrEnum):
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    RESTART = "restart"


class AuditAction(StrEnum):
    TASK_CREATED = "task_created"
    TASK_STATUS_CHANGED = "task_status_changed"
    TASK_CONTROL_SCOPE_APPLIED = "task_control_scope_applied"
    TASK_PAUSE_OBSERVED = "task_pause_observed"
    TASK_RESUME_OBSERVED = "task_resume_observed"
    TASK_STOP_OBSERVED = "task_stop_observed"
    TASK_EXECUTION_FAILED = "task_execution_failed"
    TOKEN_BUDGET_INCREASE_REQUESTED = "token_budget_increase_requested"
    TOKEN_BUDGET_AUTO_INCREASE_APPLIED = "token_budget_auto_increase_applied"
    TOKEN_BUDGET_INCREASE_PENDING = "token_budget_increase_pending"
    TASK_BUDGET_REQUEST_RESOLVED = "task_budget_request_resolved"
    MUTATION_PROPOSED = "mutation_proposed"
    MUTATION_STATUS_CHANGED = "mutation_status_changed"
    PIPELINE_STARTED = "pipeline_started"
    PIPELINE_STEP = "pipeline_step"
    MUTATION_REJECTED = "mutation_rejected"
    MUTATION_APPLIED = "mutation_applied"
    MUTATION_REVISION_REQUESTED = "mutation_revision_requested"
    CONFLICT_DETECTED = "conflict_detected"
    CONFLICT_RESOLVED = "conflict_resolved"
    RESTART_APPLY_COMPLETED = "restart_apply_completed"


TERMINAL_TASK_STATUSES: Final[frozenset[TaskStatus]] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED}
)
ABSORBING_MUTATION_STATUSES: Final[frozenset[MutationStatus]] = frozenset(
    {MutationStatus.APPLIED, MutationStatus.REJECTED}
)
CANDIDATE_MUTATION_STATUSES: Final[frozenset[MutationStatus]] = frozenset(
    {MutationStatus.PROPOSED, MutationStatus.VALIDATED, MutationStatus.VALIDATED_NO_TESTS}
)

# Forward order of the mutation lifecycle; rejected is reachable from any non-absorbing rank.
MUTATION_STATUS_RANK: Final[dict[MutationStatus, int]] = {
    MutationStatus.PROPOSED: 0,
    MutationStatus.VALIDATED: 1,
    MutationStatus.VALIDATED_NO_TESTS: 1,
    MutationStatus.APPLIED: 2,
}


def mutation_transition_allowed(current: MutationStatus, target: MutationStatus) -> bool:
    """Return whether ``current -> target`` respects the forward-only mutation lifecycle."""

    if current in ABSORBING_MUTATION_STATUSES:
        return False
    if target is MutationStatus.REJECTED:
        return True
    return MUTATION_STATUS_RANK[target] >= MUTATION_STATUS_RANK[current]


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


@dataclass(slots=True)
class Task(CanonicalModel):
    """One node of an objective's task tree."""

    id: str
    tier: int
    domain: str
    objective: str
    token_budget: int
    created_at: datetime
    updated_at: datetime
    parent_id: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    token_usage: int = 0
    risk_factor: float = 0.0
    compliance_score: int = 0
    retry_count: int = 0
    agent_uid: str | None = None
    target_files: tuple[str, ...] = ()
    error_message: str | None = None
    paused_from: TaskStatus | None = None
    checksum: str | None = None

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "Task.id", max_len=128)
        if isinstance(self.tier, bool) or self.tier not in (1, 2, 3):
            _fail("Task.tier", "tier must be 1, 2, or 3")
        self.domain = _as_required_text(self.domain, "Task.domain", "domain is required")
        self.objective = _as_required_text(
            self.objective, "Task.objective", "objective is required"
        )
        self.token_budget = _as_int(self.token_budget, "Task.token_budget")
        if self.token_budget <= 0:
            _fail("Task.token_budget", "token_budget must be greater than 0")
        self.token_usage = _as_int(self.token_usage, "Task.token_usage", minimum=0)
        self.risk_factor = _as_float(self.risk_factor, "Task.risk_factor")
        if not 0.0 <= self.risk_factor <= 1.0:
            _fail("Task.risk_factor", "risk_factor must be between 0 and 1")
        self.compliance_score = _as_int(self.compliance_score, "Task.compliance_score", minimum=0)
        if self.compliance_score > 100:
            _fail("Task.compliance_score", "must be <= 100")
        self.retry_count = _as_int(self.retry_count, "Task.retry_count", minimum=0)
        self.status = _as_enum(TaskStatus, self.status, "Task.status")
        self.parent_id = _as_optional_str(self.parent_id, "Task.parent_id")
        if self.parent_id is None and self.tier != 1:
            _fail("Task.parent_id", "only tier-1 tasks may be roots")
        if self.parent_id is not None and self.parent_id == self.id:
            _fail("Task.parent_id", "task cannot be its own parent")
        self.agent_uid = _as_optional_str(self.agent_uid, "Task.agent_uid")
        self.target_files = tuple(
            _as_relative_path(item, f"Task.target_files[{index}]")
            for index, item in enumerate(_as_sequence(self.target_files, "Task.target_files"))
        )
        if len(self.target_files) > _MAX_TARGET_FILES:
            _fail("Task.target_files", f"too many items (>{_MAX_TARGET_FILES})")
        self.error_message = _as_optional_str(self.error_message, "Task.error_message")
        if self.paused_from is not None:
            self.paused_from = _as_enum(TaskStatus, self.paused_from, "Task.paused_from")
        self.checksum = _as_optional_str(self.checksum, "Task.checksum", max_len=128)
        self.created_at = _as_datetime(self.created_at, "Task.created_at")
        self.updated_at = _as_datetime(self.updated_at, "Task.updated_at")

    @property
    def remaining_budget(self) -> int:
        return self.token_budget - self.token_usage

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Task:
        parsed = _expect_object(
            data,
            "Task",
            required={"id", "tier", "domain", "objective", "token_budget", "created_at", "updated_at"},
            optional={
                "parent_id",
                "status",
                "token_usage",
                "risk_factor",
                "compliance_score",
                "retry_count",
                "agent_uid",
                "target_files",
                "error_message",
                "paused_from",
                "checksum",
            },
        )
        return cls(
            id=cast("str", parsed["id"]),
            tier=cast("int", parsed["tier"]),
            domain=cast("str", parsed["domain"]),
            objective=cast("str", parsed["objective"]),
            token_budget=cast("int", parsed["token_budget"]),
            created_at=cast("datetime", parsed["created_at"]),
            updated_at=cast("datetime", parsed["updated_at"]),
            parent_id=cast("str | None", parsed.get("parent_id")),
            status=cast("TaskStatus", parsed.get("status", TaskStatus.PENDING)),
            token_usage=cast("int", parsed.get("token_usage", 0)),
            risk_factor=cast("float", parsed.get("risk_factor", 0.0)),
            compliance_score=cast("int", parsed.get("compliance_score", 0)),
            retry_count=cast("int", parsed.get("retry_count", 0)),
            agent_uid=cast("str | None", parsed.get("agent_uid")),
            target_files=tuple(_as_sequence(parsed.get("target_files", ()), "Task.target_files")),
            error_message=cast("str | None", parsed.get("error_message")),
            paused_from=cast("TaskStatus | None", parsed.get("paused_from")),
            checksum=cast("str | None", parsed.get("checksum")),
        )


@dataclass(slots=True)
class BudgetRequest(CanonicalModel):
    """Request to raise one task's token budget; immutable once resolved."""

    id: str
    task_id: str
    requested_by: str
    reason: str
    requested_increment: int
    current_budget: int
    current_usage: int
    created_at: datetime
    updated_at: datetime
    status: BudgetRequestStatus = BudgetRequestStatus.PENDING
    approved_increment: int | None = None
    resolution_note: str | None = None
    resolved_at: datetime | None = None

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "BudgetRequest.id", max_len=128)
        self.task_id = _as_str(self.task_id, "BudgetRequest.task_id", max_len=128)
        self.requested_by = _as_required_text(
            self.requested_by, "BudgetRequest.requested_by", "requested_by is required"
        )
        self.reason = _as_required_text(self.reason, "BudgetRequest.reason", "reason is required")
        self.requested_increment = _as_int(
            self.requested_increment, "BudgetRequest.requested_increment"
        )
        if self.requested_increment <= 0:
            _fail("BudgetRequest.requested_increment", "requested_increment must be greater than 0")
        self.current_budget = _as_int(self.current_budget, "BudgetRequest.current_budget", minimum=0)
        self.current_usage = _as_int(self.current_usage, "BudgetRequest.current_usage", minimum=0)
        self.status = _as_enum(BudgetRequestStatus, self.status, "BudgetRequest.status")
        if self.approved_increment is not None:
            self.approved_increment = _as_int(
                self.approved_increment, "BudgetRequest.approved_increment", minimum=1
            )
        self.resolution_note = _as_optional_str(self.resolution_note, "BudgetRequest.resolution_note")
        self.created_at = _as_datetime(self.created_at, "BudgetRequest.created_at")
        self.updated_at = _as_datetime(self.updated_at, "BudgetRequest.updated_at")
        if self.resolved_at is not None:
            self.resolved_at = _as_datetime(self.resolved_at, "BudgetRequest.resolved_at")

    @property
    def is_resolved(self) -> bool:
        return self.status is not BudgetRequestStatus.PENDING

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BudgetRequest:
        parsed = _expect_object(
            data,
            "BudgetRequest",
            required={
                "id",
                "task_id",
                "requested_by",
                "reason",
                "requested_increment",
                "current_budget",
                "current_usage",
                "created_at",
                "updated_at",
            },
            optional={"status", "approved_increment", "resolution_note", "resolved_at"},
        )
        return cls(
            id=cast("str", parsed["id"]),
            task_id=cast("str", parsed["task_id"]),
            requested_by=cast("str", parsed["requested_by"]),
            reason=cast("str", parsed["reason"]),
            requested_increment=cast("int", parsed["requested_increment"]),
            current_budget=cast("int", parsed["current_budget"]),
            current_usage=cast("int", parsed["current_usage"]),
            created_at=cast("datetime", parsed["created_at"]),
            updated_at=cast("datetime", parsed["updated_at"]),
            status=cast("BudgetRequestStatus", parsed.get("status", BudgetRequestStatus.PENDING)),
            approved_increment=cast("int | None", parsed.get("approved_increment")),
            resolution_note=cast("str | None", parsed.get("resolution_note")),
            resolved_at=cast("datetime | None", parsed.get("resolved_at")),
        )


@dataclass(slots=True)
class Mutation(CanonicalModel):
    """A proposed file-level diff awaiting validation and apply."""

    id: str
    task_id: str
    agent_uid: str
    file_path: str
    diff_content: str
    intent_description: str
    intent_hash: str
    proposed_at: datetime
    confidence: float = 0.5
    status: MutationStatus = MutationStatus.PROPOSED
    test_result: str | None = None
    test_exit_code: int | None = None
    rejection_reason: str | None = None
    rejected_at_step: str | None = None
    applied_at: datetime | None = None

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "Mutation.id", max_len=128)
        self.task_id = _as_required_text(self.task_id, "Mutation.task_id", "task_id is required")
        self.agent_uid = _as_required_text(
            self.agent_uid, "Mutation.agent_uid", "agent_uid is required"
        )
        self.file_path = _as_required_text(
            self.file_path, "Mutation.file_path", "file_path is required"
        )
        if not isinstance(self.diff_content, str) or not self.diff_content.strip():
            _fail("Mutation.diff_content", "diff_content is required")
        if len(self.diff_content) > _MAX_DIFF:
            _fail("Mutation.diff_content", f"must be <= {_MAX_DIFF} characters")
        self.intent_description = _as_str(
            self.intent_description, "Mutation.intent_description", min_len=0
        )
        self.intent_hash = _as_str(self.intent_hash, "Mutation.intent_hash", max_len=128)
        self.confidence = _as_float(self.confidence, "Mutation.confidence")
        if not 0.0 <= self.confidence <= 1.0:
            _fail("Mutation.confidence", "confidence must be between 0 and 1")
        self.status = _as_enum(MutationStatus, self.status, "Mutation.status")
        self.test_result = _as_optional_str(self.test_result, "Mutation.test_result", max_len=_MAX_DIFF)
        if self.test_exit_code is not None:
            self.test_exit_code = _as_int(self.test_exit_code, "Mutation.test_exit_code")
        self.rejection_reason = _as_optional_str(self.rejection_reason, "Mutation.rejection_reason")
        self.rejected_at_step = _as_optional_str(self.rejected_at_step, "Mutation.rejected_at_step")
        self.proposed_at = _as_datetime(self.proposed_at, "Mutation.proposed_at")
        if self.applied_at is not None:
            self.applied_at = _as_datetime(self.applied_at, "Mutation.applied_at")

    @property
    def is_terminal(self) -> bool:
        return self.status in ABSORBING_MUTATION_STATUSES

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Mutation:
        parsed = _expect_object(
            data,
            "Mutation",
            required={
                "id",
                "task_id",
                "agent_uid",
                "file_path",
                "diff_content",
                "intent_description",
                "intent_hash",
                "proposed_at",
            },
            optional={
                "confidence",
                "status",
                "test_result",
                "test_exit_code",
                "rejection_reason",
                "rejected_at_step",
                "applied_at",
            },
        )
        return cls(
            id=cast("str", parsed["id"]),
            task_id=cast("str", parsed["task_id"]),
            agent_uid=cast("str", parsed["agent_uid"]),
            file_path=cast("str", parsed["file_path"]),
            diff_content=cast("str", parsed["diff_content"]),
            intent_description=cast("str", parsed["intent_description"]),
            intent_hash=cast("str", parsed["intent_hash"]),
            proposed_at=cast("datetime", parsed["proposed_at"]),
            confidence=cast("float", parsed.get("confidence", 0.5)),
            status=cast("MutationStatus", parsed.get("status", MutationStatus.PROPOSED)),
            test_result=cast("str | None", parsed.get("test_result")),
            test_exit_code=cast("int | None", parsed.get("test_exit_code")),
            rejection_reason=cast("str | None", parsed.get("rejection_reason")),
            rejected_at_step=cast("str | None", parsed.get("rejected_at_step")),
            applied_at=cast("datetime | None", parsed.get("applied_at")),
        )


@dataclass(slots=True)
class AuditLogEntry(CanonicalModel):
    """Append-only activity record; ``id`` increases strictly."""

    id: int
    timestamp: datetime
    actor: str
    action: AuditAction
    target_id: str | None = None
    details: dict[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.id = _as_int(self.id, "AuditLogEntry.id", minimum=1)
        self.timestamp = _as_datetime(self.timestamp, "AuditLogEntry.timestamp")
        self.actor = _as_str(self.actor, "AuditLogEntry.actor", max_len=128)
        self.action = _as_enum(AuditAction, self.action, "AuditLogEntry.action")
        self.target_id = _as_optional_str(self.target_id, "AuditLogEntry.target_id")
        if not isinstance(self.details, Mapping):
            _fail("AuditLogEntry.details", "expected object")
        self.details = dict(self.details)


@dataclass(frozen=True, slots=True)
class PipelineStepResult:
    step: str
    status: StepStatus
    details: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "step", _as_str(self.step, "PipelineStepResult.step", max_len=64))
        object.__setattr__(
            self, "status", _as_enum(StepStatus, self.status, "PipelineStepResult.status")
        )
        if not isinstance(self.details, str):
            _fail("PipelineStepResult.details", "expected string")

    def to_dict(self) -> dict[str, JSONValue]:
        return {"step": self.step, "status": self.status.value, "details": self.details}


@dataclass(frozen=True, slots=True)
class DiffProposal:
    """One specialist's proposed change to one file."""

    agent_uid: str
    file_path: str
    diff_content: str
    intent_description: str
    confidence: float = 0.5
    mutation_id: str | None = None

    def __post_init__(self) -> None:
        agent_uid = _as_required_text(
            self.agent_uid, "DiffProposal.agent_uid", "agent_uid is required"
        )
        file_path = _as_required_text(
            self.file_path, "DiffProposal.file_path", "file_path is required"
        )
        object.__setattr__(self, "agent_uid", agent_uid)
        object.__setattr__(self, "file_path", file_path)
        confidence = _as_float(self.confidence, "DiffProposal.confidence")
        object.__setattr__(self, "confidence", min(1.0, max(0.0, confidence)))


@dataclass(frozen=True, slots=True)
class ConflictReport:
    """Transient report of two divergent proposals over the same file."""

    task_id: str
    agent_a: str
    agent_b: str
    file_path: str
    semantic_distance: float
    threshold: float
    description: str
    requires_human_review: bool
    mutation_a: str | None = None
    mutation_b: str | None = None

    def __post_init__(self) -> None:
        distance = _as_float(self.semantic_distance, "ConflictReport.semantic_distance", minimum=0.0)
        object.__setattr__(self, "semantic_distance", distance)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "task_id": self.task_id,
            "agent_a": self.agent_a,
            "agent_b": self.agent_b,
            "file_path": self.file_path,
            "semantic_distance": round(self.semantic_distance, 6),
            "threshold": self.threshold,
            "description": self.description,
            "requires_human_review": self.requires_human_review,
            "mutation_a": self.mutation_a,
            "mutation_b": self.mutation_b,
        }


@dataclass(frozen=True, slots=True)
class IntentSummary:
    """Result of one execution-runner call for a task."""

    task_id: str
    proposals: tuple[DiffProposal, ...] = ()
    compliance_score: int = 0
    tokens_spent: int = 0
    conflicts: tuple[ConflictReport, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "proposals", tuple(self.proposals))
        object.__setattr__(self, "conflicts", tuple(self.conflicts))
        _as_int(self.tokens_spent, "IntentSummary.tokens_spent", minimum=0)
        score = _as_int(self.compliance_score, "IntentSummary.compliance_score", minimum=0)
        object.__setattr__(self, "compliance_score", min(100, score))


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_required_text(value: object, path: str, message: str) -> str:
    if not isinstance(value, str) or not value.strip():
        _fail(path, message)
    return _as_str(value, path)


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return _as_str(value, path, max_len=max_len)


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_relative_path(value: object, path: str) -> str:
    parsed = _as_str(value, path, max_len=1024)
    if "\x00" in parsed:
        _fail(path, "must not contain NUL bytes")

    pure = PurePosixPath(parsed.replace("\\", "/"))
    if pure.is_absolute():
        _fail(path, "must be a relative POSIX path")
    if any(part == ".." for part in pure.parts):
        _fail(path, "must not contain '..' traversal")
    return pure.as_posix()


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


def iso8601z(value: datetime) -> str:
    """Render a timezone-aware datetime as ``YYYY-MM-DDTHH:MM:SS.ffffffZ``."""

    return _datetime_to_iso8601z(value)


def utc_now() -> datetime:
    return datetime.now(UTC)


__all__ = [
    "ABSORBING_MUTATION_STATUSES",
    "AuditAction",
    "AuditLogEntry",
    "BudgetDecision",
    "BudgetRequest",
    "BudgetRequestStatus",
    "CANDIDATE_MUTATION_STATUSES",
    "CanonicalModel",
    "ConflictReport",
    "ControlAction",
    "DiffProposal",
    "IntentSummary",
    "JSONValue",
    "MUTATION_STATUS_RANK",
    "Mutation",
    "MutationStatus",
    "PipelineStepResult",
    "StepStatus",
    "TERMINAL_TASK_STATUSES",
    "Task",
    "TaskStatus",
    "iso8601z",
    "mutation_transition_allowed",
    "utc_now",
]
