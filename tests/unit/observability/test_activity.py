from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from aop_control.control_plane.tasks import TaskService
from aop_control.domain.models import AuditAction
from aop_control.errors import NotFoundError, ValidationError
from aop_control.observability.activity import MAX_PAGE_LIMIT, ActivityFeed

from .. import make_db, make_tree

if TYPE_CHECKING:
    from pathlib import Path


def test_since_id_paging_never_skips_or_repeats(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    make_tree(TaskService(db))
    feed = ActivityFeed(db)

    seen: list[int] = []
    since = 0
    while True:
        page = feed.list_audit_log(since, limit=4)
        if not page.has_entries:
            assert page.next_since_id == since
            break
        seen.extend(entry.id for entry in page.entries)
        since = page.next_since_id

    assert len(seen) == 6
    assert seen == sorted(set(seen))
    assert feed.latest_id() == seen[-1]


def test_task_activity_covers_descendants(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    tasks = TaskService(db)
    tree = make_tree(tasks)
    tasks.update_task_status(tree.spec_a1.id, "executing")
    feed = ActivityFeed(db)

    subtree = feed.list_task_activity(tree.leader_a.id)
    own = feed.list_task_activity(tree.leader_a.id, include_descendants=False)

    assert {entry.target_id for entry in subtree.entries} == {
        tree.leader_a.id,
        tree.spec_a1.id,
        tree.spec_a2.id,
    }
    assert len(subtree.entries) == 4
    assert [entry.action for entry in own.entries] == [AuditAction.TASK_CREATED]

    later = feed.list_task_activity(tree.leader_a.id, since_id=subtree.entries[2].id)
    assert [entry.id for entry in later.entries] == [subtree.entries[3].id]


def test_page_to_dict(tmp_path: Path) -> None:
    db = make_db(tmp_path)
    TaskService(db).create_task(tier=1, domain="core", objective="Root", token_budget=100)

    payload = ActivityFeed(db).list_audit_log().to_dict()

    assert payload["since_id"] == 0
    assert payload["next_since_id"] == 1
    assert len(payload["entries"]) == 1  # type: ignore[arg-type]


@pytest.mark.parametrize("since_id", [-1, True, "3"])
def test_invalid_since_id(tmp_path: Path, since_id: object) -> None:
    feed = ActivityFeed(make_db(tmp_path))
    with pytest.raises(ValidationError, match="since_id"):
        feed.list_audit_log(since_id)  # type: ignore[arg-type]


@pytest.mark.parametrize("limit", [0, MAX_PAGE_LIMIT + 1])
def test_invalid_limit(tmp_path: Path, limit: int) -> None:
    feed = ActivityFeed(make_db(tmp_path))
    with pytest.raises(ValidationError, match="limit"):
        feed.list_audit_log(limit=limit)


def test_unknown_task_activity(tmp_path: Path) -> None:
    feed = ActivityFeed(make_db(tmp_path))
    with pytest.raises(NotFoundError):
        feed.list_task_activity("task-missing", include_descendants=False)
