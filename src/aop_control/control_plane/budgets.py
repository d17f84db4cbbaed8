"""
Token budget arbitration and deterministic auto-approval decisions.

This module owns every write to a task's ``token_budget``:
- per-task increase requests (auto-approved or left pending for an operator)
- explicit approve/reject resolution with a pending-only compare-and-set
- usage accounting as atomic increments
- the one-time split of an objective's global budget across assignments

Eligibility is a pure function of the task snapshot and ``BudgetPolicy``. Each decision
is returned as a frozen ``BudgetEligibility`` and logged through ``structlog`` so the
audit trail and the machine log explain the same outcome.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from fractions import Fraction
from typing import TYPE_CHECKING, Any, Final

import structlog

from aop_control.constants import ACTOR_BUDGET
from aop_control.control_plane.task_graph import TaskGraph
from aop_control.control_plane.tasks import TaskService
from aop_control.domain import ids
from aop_control.domain.models import (
    AuditAction,
    BudgetDecision,
    BudgetRequest,
    BudgetRequestStatus,
    ControlAction,
    Task,
    TaskStatus,
    utc_now,
)
from aop_control.errors import BudgetRequestAlreadyResolvedError, ValidationError
from aop_control.persistence.repositories import AuditLogRepo, BudgetRequestRepo, TaskRepo

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from aop_control.persistence.state_db import StateDB

AUTO_APPROVE_REASON: Final[str] = "auto-approved by runtime"
RESUME_AFTER_APPROVAL_REASON: Final[str] = "resume after budget approval"
BUDGET_EXHAUSTED_MARKER: Final[str] = "budget_exhausted"
MIN_GLOBAL_TOKEN_BUDGET: Final[int] = 100
MIN_REQUIRED_HEADROOM: Final[int] = 80
SUGGESTED_INCREMENT_FRACTION: Final[float] = 0.25
OVERHEAD_FRACTION: Final[float] = 0.10
RESERVE_FRACTION: Final[float] = 0.10
_LIST_LIMIT_MIN: Final[int] = 1
_LIST_LIMIT_MAX: Final[int] = 200


@dataclass(frozen=True, slots=True)
class BudgetPolicy:
    """Auto-approval knobs; defaults match the shipped configuration."""

    headroom_percent: int = 25
    auto_max_percent: int = 40
    min_increment: int = 250
    auto_approve: bool = True

    def __post_init__(self) -> None:
        _require_range("headroom_percent", self.headroom_percent, 1, 95)
        _require_range("auto_max_percent", self.auto_max_percent, 5, 100)
        _require_range("min_increment", self.min_increment, 50, 100_000)
        if not isinstance(self.auto_approve, bool):
            raise ValueError("auto_approve must be a boolean")

    @classmethod
    def from_config(cls, section: Mapping[str, object]) -> BudgetPolicy:
        defaults = cls()
        return cls(
            headroom_percent=_section_int(section, "headroom_percent", defaults.headroom_percent),
            auto_max_percent=_section_int(section, "auto_max_percent", defaults.auto_max_percent),
            min_increment=_section_int(section, "min_increment", defaults.min_increment),
            auto_approve=bool(section.get("auto_approve_requests", defaults.auto_approve)),
        )


@dataclass(frozen=True, slots=True)
class BudgetEligibility:
    """Auto-approval decision for one requested increment against one task snapshot."""

    task_id: str
    token_budget: int
    token_usage: int
    remaining: int
    threshold: int
    max_auto_increment: int
    requested_increment: int
    estimated_stage_cost: int
    eligible: bool
    reason_codes: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "token_budget": self.token_budget,
            "token_usage": self.token_usage,
            "remaining": self.remaining,
            "threshold": self.threshold,
            "max_auto_increment": self.max_auto_increment,
            "requested_increment": self.requested_increment,
            "estimated_stage_cost": self.estimated_stage_cost,
            "eligible": self.eligible,
            "reason_codes": list(self.reason_codes),
        }


@dataclass(frozen=True, slots=True)
class BudgetSplit:
    """One-time division of an objective's global budget."""

    global_budget: int
    overhead: int
    distributed: int
    reserve: int
    allocations: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "global_budget": self.global_budget,
            "overhead": self.overhead,
            "distributed": self.distributed,
            "reserve": self.reserve,
            "allocations": list(self.allocations),
        }


def evaluate_eligibility(
    task: Task,
    requested_increment: int,
    policy: BudgetPolicy,
    *,
    estimated_stage_cost: int = 0,
) -> BudgetEligibility:
    """Pure eligibility check: low headroom AND an increment within the auto cap."""

    remaining = task.token_budget - task.token_usage
    threshold = max(
        math.ceil(task.token_budget * policy.headroom_percent / 100), estimated_stage_cost
    )
    max_auto_increment = task.token_budget * policy.auto_max_percent // 100

    reason_codes: list[str] = []
    low_headroom = remaining < threshold
    _append_reason(
        reason_codes, "headroom_below_threshold" if low_headroom else "headroom_sufficient"
    )
    within_cap = requested_increment <= max_auto_increment
    _append_reason(
        reason_codes,
        "increment_within_auto_max" if within_cap else "increment_exceeds_auto_max",
    )
    return BudgetEligibility(
        task_id=task.id,
        token_budget=task.token_budget,
        token_usage=task.token_usage,
        remaining=remaining,
        threshold=threshold,
        max_auto_increment=max_auto_increment,
        requested_increment=requested_increment,
        estimated_stage_cost=estimated_stage_cost,
        eligible=low_headroom and within_cap,
        reason_codes=tuple(reason_codes),
    )


def build_resolution_note(decided_by: str | None, reason: str | None) -> str:
    actor = (decided_by or "").strip() or "unknown"
    text = (reason or "").strip() or "no reason provided"
    return f"decided_by={actor}; reason={text}"


def suggested_increment(
    current_budget: int, remaining: int, required: int, *, min_increment: int = 250
) -> int:
    deficit = max(required - remaining, 0)
    floor = math.ceil(max(current_budget, 1) * SUGGESTED_INCREMENT_FRACTION)
    return max(deficit, floor, min_increment)


def split_global_budget(global_budget: int, weights: Sequence[float] = ()) -> BudgetSplit:
    """Carve overhead and reserve off ``global_budget``; ``weights`` share out the rest."""

    if isinstance(global_budget, bool) or not isinstance(global_budget, int):
        raise ValidationError("global_token_budget must be an integer")
    if global_budget < MIN_GLOBAL_TOKEN_BUDGET:
        raise ValidationError(f"global_token_budget must be at least {MIN_GLOBAL_TOKEN_BUDGET}")
    overhead = _round_half_up(global_budget * OVERHEAD_FRACTION)
    reserve = _round_half_up(global_budget * RESERVE_FRACTION)
    distributed = max(global_budget - overhead - reserve, 0)
    return BudgetSplit(
        global_budget=global_budget,
        overhead=overhead,
        distributed=distributed,
        reserve=reserve,
        allocations=tuple(allocate_token_budgets(distributed, weights)),
    )


def complexity_weight(complexity: float, risk: float) -> float:
    if not 0.0 <= risk <= 1.0:
        raise ValidationError("risk must be between 0 and 1")
    return max(1.0, float(complexity)) * (1.0 + risk)


def allocate_token_budgets(total: int, weights: Sequence[float]) -> list[int]:
    """Split ``total`` proportionally to ``weights``; shares always sum to ``total``.

    Each share is floored first, then the remainder (fewer tokens than there are weights)
    goes one token each to the largest fractional parts, ties in input order. All-zero
    weights split evenly.
    """

    if total < 0:
        raise ValidationError("total must be >= 0")
    if not weights:
        return []
    if any(not math.isfinite(weight) or weight < 0 for weight in weights):
        raise ValidationError("weights must be finite and non-negative")

    exact = [Fraction(weight) for weight in weights]
    total_weight = sum(exact, Fraction(0))
    if total_weight == 0:
        exact = [Fraction(1)] * len(weights)
        total_weight = Fraction(len(weights))
    quotas = [total * weight / total_weight for weight in exact]
    shares = [math.floor(quota) for quota in quotas]
    remainder = total - sum(shares)
    by_fraction = sorted(
        range(len(quotas)), key=lambda index: (shares[index] - quotas[index], index)
    )
    for index in by_fraction[:remainder]:
        shares[index] += 1
    return shares


class BudgetArbiter:
    """Create, auto-approve and resolve token budget increase requests."""

    def __init__(
        self,
        db: StateDB,
        *,
        policy: BudgetPolicy | None = None,
        task_service: TaskService | None = None,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._policy = policy if policy is not None else BudgetPolicy()
        self._tasks = TaskRepo(db)
        self._requests = BudgetRequestRepo(db)
        self._audit = AuditLogRepo(db)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._task_service = (
            task_service if task_service is not None else TaskService(db, logger=self._logger)
        )

    @property
    def policy(self) -> BudgetPolicy:
        return self._policy

    def evaluate_eligibility(
        self, task_id: str, requested_increment: int, *, estimated_stage_cost: int = 0
    ) -> BudgetEligibility:
        task = self._tasks.require(task_id)
        decision = evaluate_eligibility(
            task,
            _positive_int(requested_increment, "requested_increment"),
            self._policy,
            estimated_stage_cost=_non_negative_int(estimated_stage_cost, "estimated_stage_cost"),
        )
        self._log_decision(decision)
        return decision

    def request_increase(
        self,
        task_id: str,
        *,
        requested_by: str,
        reason: str,
        requested_increment: int,
        auto_approve: bool | None = None,
        estimated_stage_cost: int = 0,
    ) -> BudgetRequest:
        requester = _required_text(requested_by, "requested_by is required")
        why = _required_text(reason, "reason is required")
        increment = _positive_int(requested_increment, "requested_increment")
        stage_cost = _non_negative_int(estimated_stage_cost, "estimated_stage_cost")
        auto = self._policy.auto_approve if auto_approve is None else auto_approve

        with self._db.transaction() as conn:
            task = self._tasks.require(task_id, conn=conn)
            decision = evaluate_eligibility(
                task, increment, self._policy, estimated_stage_cost=stage_cost
            )
            now = utc_now()
            request = self._requests.add(
                BudgetRequest(
                    id=ids.generate_budget_request_id(),
                    task_id=task.id,
                    requested_by=requester,
                    reason=why,
                    requested_increment=increment,
                    current_budget=task.token_budget,
                    current_usage=task.token_usage,
                    created_at=now,
                    updated_at=now,
                ),
                conn=conn,
            )

            if auto and decision.eligible:
                applied = max(increment, self._policy.min_increment)
                self._tasks.increase_budget(task.id, applied, conn=conn)
                self._requests.resolve(
                    request.id,
                    status=BudgetRequestStatus.APPROVED,
                    approved_increment=applied,
                    resolution_note=build_resolution_note(requester, AUTO_APPROVE_REASON),
                    conn=conn,
                )
                resumed = self._resume_if_budget_paused(task, conn=conn)
                self._audit.append(
                    actor=requester,
                    action=AuditAction.TOKEN_BUDGET_AUTO_INCREASE_APPLIED,
                    target_id=task.id,
                    details={
                        "request_id": request.id,
                        "requested_increment": increment,
                        "approved_increment": applied,
                        "resumed": resumed,
                        "decision": decision.to_dict(),
                    },
                    conn=conn,
                )
            else:
                self._audit.append(
                    actor=requester,
                    action=AuditAction.TOKEN_BUDGET_INCREASE_REQUESTED,
                    target_id=task.id,
                    details={
                        "request_id": request.id,
                        "requested_increment": increment,
                        "auto_approve": auto,
                        "decision": decision.to_dict(),
                    },
                    conn=conn,
                )
            stored = self._requests.require(request.id, conn=conn)

        self._log_decision(decision)
        self._logger.info(
            "budget_request_created",
            request_id=stored.id,
            task_id=stored.task_id,
            status=stored.status.value,
            approved_increment=stored.approved_increment,
        )
        return stored

    def resolve_request(
        self,
        request_id: str,
        decision: BudgetDecision | str,
        *,
        approved_increment: int | None = None,
        resume_task: bool = False,
        decided_by: str | None = None,
        reason: str | None = None,
    ) -> BudgetRequest:
        parsed = _as_decision(decision)
        note = build_resolution_note(decided_by, reason)
        actor = (decided_by or "").strip() or "unknown"

        with self._db.transaction() as conn:
            current = self._requests.require(request_id, conn=conn)
            if current.is_resolved:
                raise _already_resolved(current)

            increment: int | None = None
            status = BudgetRequestStatus.REJECTED
            if parsed is BudgetDecision.APPROVE:
                increment = (
                    current.requested_increment
                    if approved_increment is None
                    else approved_increment
                )
                if isinstance(increment, bool) or not isinstance(increment, int) or increment <= 0:
                    raise ValidationError("approved_increment must be greater than 0")
                status = BudgetRequestStatus.APPROVED

            if not self._requests.resolve(
                current.id,
                status=status,
                approved_increment=increment,
                resolution_note=note,
                conn=conn,
            ):
                raise _already_resolved(self._requests.require(current.id, conn=conn))

            resumed = False
            if increment is not None:
                self._tasks.increase_budget(current.task_id, increment, conn=conn)
                if resume_task:
                    task = self._tasks.require(current.task_id, conn=conn)
                    resumed = (
                        self._task_service.apply_control(
                            task,
                            ControlAction.RESUME,
                            reason=RESUME_AFTER_APPROVAL_REASON,
                            actor=actor,
                            conn=conn,
                        )
                        is not None
                    )

            self._audit.append(
                actor=actor,
                action=AuditAction.TASK_BUDGET_REQUEST_RESOLVED,
                target_id=current.task_id,
                details={
                    "request_id": current.id,
                    "decision": parsed.value,
                    "approved_increment": increment,
                    "resumed": resumed,
                    "resolution_note": note,
                },
                conn=conn,
            )
            resolved = self._requests.require(current.id, conn=conn)

        self._logger.info(
            "budget_request_resolved",
            request_id=resolved.id,
            task_id=resolved.task_id,
            status=resolved.status.value,
            approved_increment=resolved.approved_increment,
            resumed=resumed,
        )
        return resolved

    def list_requests(
        self,
        task_id: str,
        *,
        include_descendants: bool = False,
        status: BudgetRequestStatus | str | None = None,
        limit: int = 50,
    ) -> list[BudgetRequest]:
        if include_descendants:
            task_ids = TaskGraph.load(self._tasks, task_id).ids()
        else:
            task_ids = [self._tasks.require(task_id).id]
        parsed_status = None if status is None else _as_request_status(status)
        bounded = max(_LIST_LIMIT_MIN, min(_LIST_LIMIT_MAX, int(limit)))
        return self._requests.list_for_tasks(task_ids, status=parsed_status, limit=bounded)

    def latest_pending(self, task_id: str) -> BudgetRequest | None:
        self._tasks.require(task_id)
        return self._requests.latest_pending(task_id)

    def record_usage(self, task_id: str, tokens: int) -> Task:
        task = self._tasks.add_usage(task_id, _non_negative_int(tokens, "tokens"))
        self._logger.debug(
            "budget_usage_recorded",
            task_id=task_id,
            tokens=tokens,
            token_usage=task.token_usage,
            token_budget=task.token_budget,
        )
        return task

    def ensure_headroom(
        self,
        task_id: str,
        planned_tokens: int,
        *,
        actor: str = ACTOR_BUDGET,
        stage: str = "execution",
        pause_on_exhaustion: bool = False,
    ) -> BudgetRequest | None:
        """Make sure ``task_id`` can afford ``planned_tokens`` before a stage runs.

        Returns the request created for the shortfall, or ``None`` when headroom was
        sufficient or a request is already pending. With ``pause_on_exhaustion`` a task
        whose budget is fully spent and whose request stays pending is paused; the next
        auto-approved increase resumes it.
        """

        planned = _non_negative_int(planned_tokens, "planned_tokens")
        if planned == 0:
            return None
        task = self._tasks.require(task_id)
        remaining = task.token_budget - task.token_usage
        required = max(planned, MIN_REQUIRED_HEADROOM)
        if remaining >= required:
            return None

        if self._requests.latest_pending(task.id) is not None:
            self._audit.append(
                actor=actor,
                action=AuditAction.TOKEN_BUDGET_INCREASE_PENDING,
                target_id=task.id,
                details={
                    "stage": stage,
                    "remaining": remaining,
                    "required": required,
                    "pending_request": True,
                },
            )
            return None

        increment = suggested_increment(
            task.token_budget, remaining, required, min_increment=self._policy.min_increment
        )
        request = self.request_increase(
            task.id,
            requested_by=actor,
            reason=(
                f"stage={stage}; remaining={remaining}; required={required}; "
                f"objective={task.objective}"
            ),
            requested_increment=increment,
            auto_approve=self._policy.auto_approve,
            estimated_stage_cost=required,
        )
        if (
            pause_on_exhaustion
            and request.status is BudgetRequestStatus.PENDING
            and remaining <= 0
            and task.status in (TaskStatus.PENDING, TaskStatus.EXECUTING)
        ):
            paused = self._tasks.compare_and_set_status(
                task.id,
                expected=task.status,
                status=TaskStatus.PAUSED,
                error_message=f"{BUDGET_EXHAUSTED_MARKER}: awaiting budget request {request.id}",
                paused_from=task.status,
            )
            if paused:
                self._logger.warning(
                    "budget_exhausted_task_paused", task_id=task.id, request_id=request.id
                )
        return request

    def _resume_if_budget_paused(self, task: Task, *, conn: Any) -> bool:
        if task.status is not TaskStatus.PAUSED:
            return False
        if not (task.error_message or "").startswith(BUDGET_EXHAUSTED_MARKER):
            return False
        transition = self._task_service.apply_control(
            task,
            ControlAction.RESUME,
            reason=RESUME_AFTER_APPROVAL_REASON,
            actor=ACTOR_BUDGET,
            conn=conn,
        )
        return transition is not None

    def _log_decision(self, decision: BudgetEligibility) -> None:
        self._logger.info(
            "budget_eligibility_decision",
            task_id=decision.task_id,
            eligible=decision.eligible,
            reason_codes=list(decision.reason_codes),
            remaining=decision.remaining,
            threshold=decision.threshold,
            max_auto_increment=decision.max_auto_increment,
            requested_increment=decision.requested_increment,
        )


def _already_resolved(request: BudgetRequest) -> BudgetRequestAlreadyResolvedError:
    return BudgetRequestAlreadyResolvedError(
        f"Budget request '{request.id}' is already resolved with status '{request.status.value}'"
    )


def _append_reason(reason_codes: list[str], reason_code: str) -> None:
    if reason_code not in reason_codes:
        reason_codes.append(reason_code)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _require_range(name: str, value: object, low: int, high: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise ValueError(f"{name} must be an integer in [{low}, {high}]")


def _section_int(section: Mapping[str, object], key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"budgets.{key} must be an integer")
    return value


def _required_text(value: object, message: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(message)
    return value.strip()


def _positive_int(value: object, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be greater than 0")
    return value


def _non_negative_int(value: object, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer")
    return value


def _as_decision(value: BudgetDecision | str) -> BudgetDecision:
    if isinstance(value, BudgetDecision):
        return value
    try:
        return BudgetDecision(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"decision must be one of: approve, reject (got {value!r})") from exc


def _as_request_status(value: BudgetRequestStatus | str) -> BudgetRequestStatus:
    if isinstance(value, BudgetRequestStatus):
        return value
    try:
        return BudgetRequestStatus(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in BudgetRequestStatus)
        raise ValidationError(f"status must be one of: {allowed} (got {value!r})") from exc


__all__ = [
    "AUTO_APPROVE_REASON",
    "BUDGET_EXHAUSTED_MARKER",
    "BudgetArbiter",
    "BudgetEligibility",
    "BudgetPolicy",
    "BudgetSplit",
    "allocate_token_budgets",
    "build_resolution_note",
    "complexity_weight",
    "evaluate_eligibility",
    "split_global_budget",
    "suggested_increment",
]
