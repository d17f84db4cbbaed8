from __future__ import annotations

import math
from fractions import Fraction
from typing import TYPE_CHECKING

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from aop_control.control_plane.budgets import (
    BUDGET_EXHAUSTED_MARKER,
    BudgetArbiter,
    BudgetPolicy,
    allocate_token_budgets,
    build_resolution_note,
    complexity_weight,
    evaluate_eligibility,
    split_global_budget,
    suggested_increment,
)
from aop_control.control_plane.tasks import TaskService
from aop_control.domain.models import AuditAction, BudgetRequestStatus, TaskStatus
from aop_control.errors import BudgetRequestAlreadyResolvedError, ValidationError
from aop_control.persistence.repositories import AuditLogRepo

from .. import make_db, make_task

if TYPE_CHECKING:
    from pathlib import Path

    from aop_control.domain.models import Task


def _task_with_usage(service: TaskService, budget: int, usage: int) -> Task:
    task = service.create_task(tier=1, domain="core", objective="Spend", token_budget=budget)
    if usage:
        service.repo.add_usage(task.id, usage)
    return service.get_task(task.id)


def test_policy_rejects_out_of_range_knobs() -> None:
    with pytest.raises(ValueError, match="headroom_percent"):
        BudgetPolicy(headroom_percent=0)
    with pytest.raises(ValueError, match="auto_max_percent"):
        BudgetPolicy(auto_max_percent=101)
    with pytest.raises(ValueError, match="min_increment"):
        BudgetPolicy(min_increment=10)

    policy = BudgetPolicy.from_config({"headroom_percent": 10, "auto_approve_requests": False})
    assert policy.headroom_percent == 10
    assert policy.auto_max_percent == 40
    assert policy.auto_approve is False


def test_eligibility_requires_low_headroom_and_small_increment() -> None:
    task = make_task(1, token_budget=5_000)
    task.token_usage = 4_200
    policy = BudgetPolicy()

    small = evaluate_eligibility(task, 1_000, policy)
    assert small.eligible
    assert small.threshold == 1_250
    assert small.max_auto_increment == 2_000
    assert small.reason_codes == ("headroom_below_threshold", "increment_within_auto_max")

    large = evaluate_eligibility(task, 2_500, policy)
    assert not large.eligible
    assert "increment_exceeds_auto_max" in large.reason_codes

    task.token_usage = 1_000
    roomy = evaluate_eligibility(task, 500, policy)
    assert not roomy.eligible
    assert roomy.reason_codes[0] == "headroom_sufficient"


def test_stage_cost_raises_the_headroom_threshold() -> None:
    task = make_task(1, token_budget=5_000)
    task.token_usage = 1_000
    decision = evaluate_eligibility(task, 500, BudgetPolicy(), estimated_stage_cost=4_500)
    assert decision.threshold == 4_500
    assert decision.eligible


def test_auto_approved_request_raises_budget(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    service = TaskService(db)
    arbiter = BudgetArbiter(db, task_service=service)
    task = _task_with_usage(service, 5_000, 4_200)

    request = arbiter.request_increase(
        task.id, requested_by="runner", reason="more context", requested_increment=1_000
    )

    assert request.status is BudgetRequestStatus.APPROVED
    assert request.approved_increment == 1_000
    assert request.resolution_note == "decided_by=runner; reason=auto-approved by runtime"
    assert service.get_task(task.id).token_budget == 6_000
    actions = [entry.action for entry in AuditLogRepo(db).list_since(0)]
    assert AuditAction.TOKEN_BUDGET_AUTO_INCREASE_APPLIED in actions


def test_manual_request_stays_pending_until_resolved(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    service = TaskService(db)
    arbiter = BudgetArbiter(db, task_service=service)
    task = _task_with_usage(service, 5_000, 4_200)

    request = arbiter.request_increase(
        task.id,
        requested_by="runner",
        reason="more context",
        requested_increment=100,
        auto_approve=False,
    )
    assert request.status is BudgetRequestStatus.PENDING
    assert service.get_task(task.id).token_budget == 5_000
    assert arbiter.latest_pending(task.id) == request

    resolved = arbiter.resolve_request(
        request.id, "approve", approved_increment=300, decided_by="lead", reason="fine"
    )
    assert resolved.status is BudgetRequestStatus.APPROVED
    assert resolved.approved_increment == 300
    assert service.get_task(task.id).token_budget == 5_300

    with pytest.raises(BudgetRequestAlreadyResolvedError):
        arbiter.resolve_request(request.id, "reject", decided_by="lead")


def test_rejection_leaves_budget_untouched(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    arbiter = BudgetArbiter(db, policy=BudgetPolicy(auto_approve=False))
    task = _task_with_usage(TaskService(db), 1_000, 0)
    request = arbiter.request_increase(
        task.id, requested_by="runner", reason="why not", requested_increment=200
    )

    resolved = arbiter.resolve_request(request.id, "reject", decided_by="lead", reason="no")

    assert resolved.status is BudgetRequestStatus.REJECTED
    assert resolved.approved_increment is None
    assert resolved.resolution_note == "decided_by=lead; reason=no"
    assert TaskService(db).get_task(task.id).token_budget == 1_000
    with pytest.raises(ValidationError, match="decision"):
        arbiter.resolve_request(request.id, "maybe")


def test_exhausted_budget_pauses_and_auto_approval_resumes(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    service = TaskService(db)
    manual = BudgetArbiter(db, policy=BudgetPolicy(auto_approve=False), task_service=service)
    task = _task_with_usage(service, 1_000, 1_000)

    request = manual.ensure_headroom(task.id, 200, pause_on_exhaustion=True)

    assert request is not None
    assert request.status is BudgetRequestStatus.PENDING
    paused = service.get_task(task.id)
    assert paused.status is TaskStatus.PAUSED
    assert (paused.error_message or "").startswith(BUDGET_EXHAUSTED_MARKER)
    # A pending request suppresses duplicates.
    assert manual.ensure_headroom(task.id, 200) is None

    auto = BudgetArbiter(db, task_service=service)
    approved = auto.request_increase(
        task.id, requested_by="runner", reason="retry", requested_increment=300
    )
    assert approved.status is BudgetRequestStatus.APPROVED
    resumed = service.get_task(task.id)
    assert resumed.status is TaskStatus.EXECUTING
    assert resumed.token_budget == 1_300


def test_ensure_headroom_is_silent_when_affordable(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    arbiter = BudgetArbiter(db)
    task = _task_with_usage(TaskService(db), 1_000, 100)
    assert arbiter.ensure_headroom(task.id, 500) is None
    assert arbiter.ensure_headroom(task.id, 0) is None


def test_list_requests_covers_descendants(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    service = TaskService(db)
    arbiter = BudgetArbiter(db, policy=BudgetPolicy(auto_approve=False), task_service=service)
    root = service.create_task(tier=1, domain="core", objective="Root", token_budget=1_000)
    child = service.create_task(
        tier=2, domain="core", objective="Child", token_budget=500, parent_id=root.id
    )
    arbiter.request_increase(root.id, requested_by="a", reason="r", requested_increment=100)
    arbiter.request_increase(child.id, requested_by="a", reason="r", requested_increment=100)

    assert len(arbiter.list_requests(root.id)) == 1
    assert len(arbiter.list_requests(root.id, include_descendants=True)) == 2
    assert arbiter.list_requests(root.id, status="approved") == []


def test_record_usage_rejects_negative_tokens(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    arbiter = BudgetArbiter(db)
    task = _task_with_usage(TaskService(db), 1_000, 0)
    assert arbiter.record_usage(task.id, 40).token_usage == 40
    with pytest.raises(ValidationError):
        arbiter.record_usage(task.id, -1)


def test_split_global_budget() -> None:
    split = split_global_budget(1_000)
    assert (split.overhead, split.reserve, split.distributed) == (100, 100, 800)
    assert split.allocations == ()
    weighted = split_global_budget(
        1_000, [complexity_weight(1.0, 0.0), complexity_weight(3.0, 0.0)]
    )
    assert weighted.allocations == (200, 600)
    assert weighted.to_dict()["allocations"] == [200, 600]
    with pytest.raises(ValidationError):
        split_global_budget(99)
    with pytest.raises(ValidationError):
        split_global_budget(True)  # type: ignore[arg-type]


def test_allocation_helpers() -> None:
    assert allocate_token_budgets(10, [1.0, 1.0, 1.0]) == [4, 3, 3]
    # Small weights are scaled against their real sum, not a floor of 1.
    assert allocate_token_budgets(100, [0.1, 0.3]) == [25, 75]
    assert allocate_token_budgets(5, [0.0, 0.0]) == [3, 2]
    assert allocate_token_budgets(10, [1.0, 2.0]) == [3, 7]
    assert allocate_token_budgets(0, [1.0]) == [0]
    assert allocate_token_budgets(100, []) == []
    assert complexity_weight(0.5, 0.5) == 1.5
    assert suggested_increment(1_000, 50, 80) == 250
    assert suggested_increment(10_000, 0, 80) == 2_500
    assert build_resolution_note(None, "  ") == "decided_by=unknown; reason=no reason provided"
    with pytest.raises(ValidationError):
        allocate_token_budgets(10, [float("nan")])


@settings(max_examples=200, deadline=None)
@given(
    total=st.integers(min_value=0, max_value=1_000_000),
    weights=st.lists(
        st.floats(min_value=0.0, max_value=100.0, allow_nan=False, allow_infinity=False),
        min_size=1,
        max_size=12,
    ),
)
def test_allocation_shares_stay_within_one_of_quota(total: int, weights: list[float]) -> None:
    shares = allocate_token_budgets(total, weights)
    assert sum(shares) == total
    assert len(shares) == len(weights)
    assert all(share >= 0 for share in shares)
    exact = [Fraction(weight) for weight in weights]
    weight_sum = sum(exact, Fraction(0))
    if weight_sum == 0:
        exact = [Fraction(1)] * len(weights)
        weight_sum = Fraction(len(weights))
    for share, weight in zip(shares, exact, strict=True):
        quota = total * weight / weight_sum
        assert math.floor(quota) <= share <= math.ceil(quota)
