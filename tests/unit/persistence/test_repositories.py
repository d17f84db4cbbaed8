"""Repository behavior: tree invariants, status CAS, budget accounting and the audit log."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from aop_control.domain.models import (
    AuditAction,
    BudgetRequest,
    BudgetRequestStatus,
    Mutation,
    MutationStatus,
    TaskStatus,
    iso8601z,
)
from aop_control.errors import InvalidTransitionError, NotFoundError, ValidationError
from aop_control.persistence.repositories import (
    AuditLogRepo,
    BudgetRequestRepo,
    MutationRepo,
    TaskRepo,
)
from aop_control.security.redaction import REDACTED_VALUE

from .. import GREETING_DIFF, fixed_now, make_db, make_task

if TYPE_CHECKING:
    from pathlib import Path


def _mutation(seed: int, task_id: str) -> Mutation:
    return Mutation(
        id=f"mut-{seed:04d}",
        task_id=task_id,
        agent_uid=f"agent-{seed}",
        file_path="app.py",
        diff_content=GREETING_DIFF,
        intent_description="add greeting helper",
        intent_hash="0" * 64,
        proposed_at=fixed_now(seed),
    )


def _request(seed: int, task_id: str) -> BudgetRequest:
    return BudgetRequest(
        id=f"req-{seed:04d}",
        task_id=task_id,
        requested_by="operator",
        reason="more context needed",
        requested_increment=500,
        current_budget=5_000,
        current_usage=4_200,
        created_at=fixed_now(seed),
        updated_at=fixed_now(seed),
    )


def test_task_round_trip_preserves_fields(tmp_path: Path) -> None:
    repo = TaskRepo(make_db(tmp_path))
    root = make_task(1)
    child = make_task(2, tier=2, parent_id=root.id)
    repo.add(root)
    repo.add(child)

    loaded = repo.require(child.id)
    assert loaded.parent_id == root.id
    assert loaded.tier == 2
    assert loaded.status is TaskStatus.PENDING
    assert loaded.created_at == child.created_at
    assert [task.id for task in repo.list_children(root.id)] == [child.id]


def test_child_tier_must_not_be_lower_than_parent(tmp_path: Path) -> None:
    repo = TaskRepo(make_db(tmp_path))
    root = make_task(1)
    leader = make_task(2, tier=2, parent_id=root.id)
    repo.add(root)
    repo.add(leader)

    with pytest.raises(ValidationError, match="child tier must not be lower"):
        repo.add(make_task(3, tier=1, parent_id=leader.id))


def test_unknown_parent_and_duplicate_ids_are_rejected(tmp_path: Path) -> None:
    repo = TaskRepo(make_db(tmp_path))
    with pytest.raises(NotFoundError):
        repo.add(make_task(1, tier=2, parent_id="task-9999"))

    repo.add(make_task(2))
    with pytest.raises(ValidationError, match="already exists"):
        repo.add(make_task(2))


def test_load_subtree_returns_only_descendants(tmp_path: Path) -> None:
    repo = TaskRepo(make_db(tmp_path))
    root = make_task(1)
    other_root = make_task(2)
    leader = make_task(3, tier=2, parent_id=root.id)
    specialist = make_task(4, tier=3, parent_id=leader.id)
    stranger = make_task(5, tier=2, parent_id=other_root.id)
    for task in (root, other_root, leader, specialist, stranger):
        repo.add(task)

    ids = {task.id for task in repo.load_subtree(root.id)}
    assert ids == {root.id, leader.id, specialist.id}


def test_compare_and_set_status_only_moves_from_expected(tmp_path: Path) -> None:
    repo = TaskRepo(make_db(tmp_path))
    task = repo.add(make_task(1))

    assert repo.compare_and_set_status(
        task.id, expected=TaskStatus.PENDING, status=TaskStatus.EXECUTING
    )
    assert not repo.compare_and_set_status(
        task.id, expected=TaskStatus.PENDING, status=TaskStatus.PAUSED
    )
    assert repo.require(task.id).status is TaskStatus.EXECUTING


def test_usage_and_budget_increments_accumulate(tmp_path: Path) -> None:
    repo = TaskRepo(make_db(tmp_path))
    task = repo.add(make_task(1, token_budget=1_000))

    repo.add_usage(task.id, 300)
    repo.add_usage(task.id, 200)
    updated = repo.increase_budget(task.id, 250)

    assert updated.token_usage == 500
    assert updated.token_budget == 1_250
    with pytest.raises(ValidationError):
        repo.increase_budget(task.id, 0)
    with pytest.raises(NotFoundError):
        repo.add_usage("task-missing", 1)


def test_compare_and_set_pause_remembers_prior_status(tmp_path: Path) -> None:
    repo = TaskRepo(make_db(tmp_path))
    task = repo.add(make_task(1))
    repo.compare_and_set_status(task.id, expected=TaskStatus.PENDING, status=TaskStatus.EXECUTING)

    assert repo.compare_and_set_status(
        task.id,
        expected=TaskStatus.EXECUTING,
        status=TaskStatus.PAUSED,
        error_message="waiting",
        paused_from=TaskStatus.EXECUTING,
        compliance_score=70,
    )
    paused = repo.require(task.id)

    assert paused.status is TaskStatus.PAUSED
    assert paused.paused_from is TaskStatus.EXECUTING
    assert paused.compliance_score == 70
    assert paused.error_message == "waiting"


def test_mutation_transitions_are_forward_only(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    tasks = TaskRepo(db)
    repo = MutationRepo(db)
    task = tasks.add(make_task(1))
    mutation = repo.add(_mutation(1, task.id))

    validated = repo.transition(mutation.id, MutationStatus.VALIDATED)
    assert validated.status is MutationStatus.VALIDATED

    with pytest.raises(InvalidTransitionError):
        repo.transition(mutation.id, MutationStatus.PROPOSED)

    applied = repo.transition(mutation.id, MutationStatus.APPLIED)
    assert applied.applied_at is not None
    with pytest.raises(InvalidTransitionError):
        repo.transition(mutation.id, MutationStatus.REJECTED, rejection_reason="late")


def test_run_lease_has_one_holder_until_release_or_expiry(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    tasks = TaskRepo(db)
    repo = MutationRepo(db)
    task = tasks.add(make_task(1))
    mutation = repo.add(_mutation(1, task.id))

    assert repo.acquire_run_lease(mutation.id, "run-a", ttl_seconds=60.0)
    assert not repo.acquire_run_lease(mutation.id, "run-b", ttl_seconds=60.0)
    assert not repo.release_run_lease(mutation.id, "run-b")
    assert repo.release_run_lease(mutation.id, "run-a")
    assert repo.acquire_run_lease(mutation.id, "run-b", ttl_seconds=60.0)

    # A crashed holder's lease can be taken over once it expires.
    db.execute(
        "UPDATE mutations SET run_lease_expires_at = ? WHERE id = ?",
        (iso8601z(fixed_now(0)), mutation.id),
    )
    assert repo.acquire_run_lease(mutation.id, "run-c", ttl_seconds=60.0)
    assert repo.require(mutation.id).status is MutationStatus.PROPOSED

    with pytest.raises(NotFoundError):
        repo.acquire_run_lease("mut-missing", "run-a", ttl_seconds=60.0)
    with pytest.raises(ValueError, match="ttl_seconds"):
        repo.acquire_run_lease(mutation.id, "run-a", ttl_seconds=0)


def test_mutation_for_unknown_task_is_rejected(tmp_path: Path) -> None:
    repo = MutationRepo(make_db(tmp_path))
    with pytest.raises(NotFoundError):
        repo.add(_mutation(1, "task-missing"))


def test_budget_request_resolve_is_pending_only(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    task = TaskRepo(db).add(make_task(1))
    repo = BudgetRequestRepo(db)
    request = repo.add(_request(1, task.id))

    assert repo.latest_pending(task.id) is not None
    assert repo.resolve(
        request.id,
        status=BudgetRequestStatus.APPROVED,
        approved_increment=500,
        resolution_note="decided_by=op; reason=ok",
    )
    assert not repo.resolve(
        request.id,
        status=BudgetRequestStatus.REJECTED,
        approved_increment=None,
        resolution_note="decided_by=op; reason=too late",
    )
    stored = repo.require(request.id)
    assert stored.status is BudgetRequestStatus.APPROVED
    assert stored.resolved_at is not None
    assert repo.latest_pending(task.id) is None


def test_audit_log_since_id_is_strictly_greater_and_ordered(tmp_path: Path) -> None:
    repo = AuditLogRepo(make_db(tmp_path))
    first = repo.append(actor="operator", action=AuditAction.TASK_CREATED, target_id="t1")
    second = repo.append(actor="operator", action=AuditAction.TASK_CREATED, target_id="t2")
    third = repo.append(actor="operator", action=AuditAction.TASK_CREATED, target_id="t1")

    assert [entry.id for entry in repo.list_since(0)] == [first.id, second.id, third.id]
    assert [entry.id for entry in repo.list_since(first.id)] == [second.id, third.id]
    assert repo.list_since(third.id) == []
    assert [entry.id for entry in repo.list_for_targets(["t1"])] == [first.id, third.id]
    assert repo.latest_id() == third.id


def test_audit_log_redacts_details(tmp_path: Path) -> None:
    repo = AuditLogRepo(make_db(tmp_path))
    repo.append(
        actor="operator",
        action=AuditAction.TASK_CREATED,
        target_id="t1",
        details={"api_key": "abc123", "note": "password=hunter2hunter2"},
    )

    (entry,) = repo.list_since(0)
    assert entry.details["api_key"] == REDACTED_VALUE
    assert "hunter2hunter2" not in str(entry.details["note"])


def test_audit_log_rejects_blank_actor_and_bad_page(tmp_path: Path) -> None:
    repo = AuditLogRepo(make_db(tmp_path))
    with pytest.raises(ValidationError):
        repo.append(actor="  ", action=AuditAction.TASK_CREATED)
    with pytest.raises(ValueError, match="limit"):
        repo.list_since(0, limit=0)
