"""Arena-indexed task tree snapshots with iterative traversal.

Tasks live in a flat mapping keyed by id; edges are parent ids. A ``TaskGraph`` is built
from one read of the store and never observes later writes, so cascading control actions
operate on exactly the tasks that existed when they were invoked.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING

from aop_control.domain.models import Task
from aop_control.errors import NotFoundError, ValidationError

if TYPE_CHECKING:
    import sqlite3

    from aop_control.persistence.repositories import TaskRepo


class TaskGraph:
    """Immutable snapshot of one task tree."""

    __slots__ = ("_children", "_nodes", "_root_id")

    def __init__(self, root_id: str, tasks: Iterable[Task]) -> None:
        nodes: dict[str, Task] = {}
        for task in tasks:
            if task.id in nodes:
                raise ValidationError(f"duplicate task id in snapshot: {task.id}")
            nodes[task.id] = task
        if root_id not in nodes:
            raise NotFoundError("task", root_id)

        children: dict[str, list[str]] = {task_id: [] for task_id in nodes}
        for task in nodes.values():
            if task.id == root_id or task.parent_id is None:
                continue
            if task.parent_id in children:
                children[task.parent_id].append(task.id)
        for child_ids in children.values():
            child_ids.sort(key=lambda item: (nodes[item].created_at, item))

        self._root_id = root_id
        self._nodes = nodes
        self._children = {key: tuple(value) for key, value in children.items()}

    @classmethod
    def load(
        cls,
        repo: TaskRepo,
        root_id: str,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> TaskGraph:
        if not isinstance(root_id, str) or not root_id.strip():
            raise ValidationError("root_task_id is required")
        return cls(root_id, repo.load_subtree(root_id, conn=conn))

    @property
    def root(self) -> Task:
        return self._nodes[self._root_id]

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Task]:
        return iter(self.bfs())

    def get(self, task_id: str) -> Task:
        try:
            return self._nodes[task_id]
        except KeyError:
            raise NotFoundError("task", task_id) from None

    def children(self, task_id: str) -> tuple[Task, ...]:
        self.get(task_id)
        return tuple(self._nodes[child_id] for child_id in self._children[task_id])

    def bfs(self, start_id: str | None = None) -> list[Task]:
        """Breadth-first order from ``start_id`` (root by default), siblings by creation."""

        start = self._root_id if start_id is None else start_id
        self.get(start)
        ordered: list[Task] = []
        seen: set[str] = set()
        queue: deque[str] = deque([start])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            ordered.append(self._nodes[current])
            queue.extend(self._children[current])
        return ordered

    def descendants(self, task_id: str, *, include_self: bool = True) -> list[Task]:
        ordered = self.bfs(task_id)
        return ordered if include_self else ordered[1:]

    def with_tier(self, tier: int) -> list[Task]:
        return [task for task in self.bfs() if task.tier == tier]

    def ids(self) -> list[str]:
        return [task.id for task in self.bfs()]


__all__ = ["TaskGraph"]
