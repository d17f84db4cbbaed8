"""
aop-control - activity feed

File: src/aop_control/observability/activity.py

Purpose
- Read side of the audit log for observers that poll by ``since_id``.

Normative behavior
- Pages hold entries with ``id > since_id`` in strictly ascending order; feeding
  ``next_since_id`` back in never skips or repeats an entry.
- Task activity covers the task and, optionally, its current descendants.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from aop_control.control_plane.task_graph import TaskGraph
from aop_control.domain.models import AuditLogEntry
from aop_control.errors import ValidationError
from aop_control.persistence.repositories import AuditLogRepo, TaskRepo

if TYPE_CHECKING:
    from aop_control.persistence.state_db import StateDB

DEFAULT_PAGE_LIMIT: Final[int] = 100
MAX_PAGE_LIMIT: Final[int] = 1_000


@dataclass(frozen=True, slots=True)
class ActivityPage:
    entries: tuple[AuditLogEntry, ...]
    since_id: int
    next_since_id: int

    @property
    def has_entries(self) -> bool:
        return bool(self.entries)

    def to_dict(self) -> dict[str, object]:
        return {
            "since_id": self.since_id,
            "next_since_id": self.next_since_id,
            "entries": [entry.to_dict() for entry in self.entries],
        }


class ActivityFeed:
    """Since-id polling over the audit log."""

    def __init__(self, db: StateDB) -> None:
        self._audit = AuditLogRepo(db)
        self._tasks = TaskRepo(db)

    def list_audit_log(
        self, since_id: int = 0, *, limit: int = DEFAULT_PAGE_LIMIT
    ) -> ActivityPage:
        since = _check_since_id(since_id)
        entries = self._audit.list_since(since, limit=_check_limit(limit))
        return _page(entries, since)

    def list_task_activity(
        self,
        task_id: str,
        *,
        include_descendants: bool = True,
        since_id: int = 0,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> ActivityPage:
        since = _check_since_id(since_id)
        if include_descendants:
            target_ids = TaskGraph.load(self._tasks, task_id).ids()
        else:
            target_ids = [self._tasks.require(task_id).id]
        entries = self._audit.list_for_targets(
            target_ids, since_id=since, limit=_check_limit(limit)
        )
        return _page(entries, since)

    def latest_id(self) -> int:
        return self._audit.latest_id()


def _page(entries: list[AuditLogEntry], since_id: int) -> ActivityPage:
    next_since = entries[-1].id if entries else since_id
    return ActivityPage(entries=tuple(entries), since_id=since_id, next_since_id=next_since)


def _check_since_id(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError("since_id must be a non-negative integer")
    return value


def _check_limit(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= MAX_PAGE_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
    return value


__all__ = ["ActivityFeed", "ActivityPage", "DEFAULT_PAGE_LIMIT", "MAX_PAGE_LIMIT"]
