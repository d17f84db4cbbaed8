from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from aop_control.control_plane.tasks import TaskService
from aop_control.domain.models import AuditAction, MutationStatus
from aop_control.errors import InvalidTransitionError, NotFoundError
from aop_control.persistence.repositories import AuditLogRepo
from aop_control.verification_plane.mutations import MutationService, intent_hash

from .. import greeting_proposal, make_db, make_tree

if TYPE_CHECKING:
    from pathlib import Path


def test_intent_hash_ignores_case_and_spacing() -> None:
    assert intent_hash("Add  Greeting\nhelper") == intent_hash("add greeting helper")
    assert len(intent_hash("x")) == 32


def test_propose_persists_and_audits(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    tree = make_tree(TaskService(db))
    service = MutationService(db)

    mutation = service.propose(tree.spec_a1.id, greeting_proposal("spec-a1", confidence=0.9))

    assert service.get(mutation.id) == mutation
    assert mutation.status is MutationStatus.PROPOSED
    assert mutation.confidence == 0.9
    proposed = [
        entry
        for entry in AuditLogRepo(db).list_since(0, limit=1000)
        if entry.action is AuditAction.MUTATION_PROPOSED
    ]
    assert proposed[-1].details["mutation_id"] == mutation.id
    assert proposed[-1].actor == "spec-a1"


def test_propose_for_unknown_task_fails(tmp_path: Path) -> None:
    service = MutationService(make_db(tmp_path))
    with pytest.raises(NotFoundError):
        service.propose("task-missing", greeting_proposal())


def test_set_status_is_forward_only(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    tree = make_tree(TaskService(db))
    service = MutationService(db)
    mutation = service.propose(tree.spec_a1.id, greeting_proposal())

    rejected = service.set_status(
        mutation.id, "rejected", actor="lead", rejection_reason="duplicate work"
    )
    assert rejected.status is MutationStatus.REJECTED
    assert rejected.rejection_reason == "duplicate work"

    with pytest.raises(InvalidTransitionError):
        service.set_status(mutation.id, MutationStatus.VALIDATED, actor="lead")


def test_listing_and_candidates_cover_descendants(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    tree = make_tree(TaskService(db))
    service = MutationService(db)
    first = service.propose(tree.spec_a1.id, greeting_proposal("a1"))
    second = service.propose(tree.spec_a2.id, greeting_proposal("a2"))
    other = service.propose(tree.spec_b1.id, greeting_proposal("b1"))
    service.set_status(second.id, MutationStatus.REJECTED, actor="lead")

    assert service.list_for_task(tree.leader_a.id) == []
    subtree = service.list_for_task(tree.leader_a.id, include_descendants=True)
    assert {item.id for item in subtree} == {first.id, second.id}

    candidates = service.candidates(tree.leader_a.id)
    assert [item.id for item in candidates] == [first.id]
    assert other.id not in {item.id for item in service.candidates(tree.leader_a.id)}
    assert {item.id for item in service.candidates(tree.root.id)} == {first.id, other.id}
