from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from aop_control.control_plane.control_scope import (
    AgentScope,
    TierScope,
    TreeScope,
    select_scope,
)
from aop_control.control_plane.task_graph import TaskGraph
from aop_control.domain.models import Task
from aop_control.errors import NotFoundError, ValidationError

from .. import make_task


@st.composite
def task_trees(draw: st.DrawFn) -> list[Task]:
    size = draw(st.integers(min_value=1, max_value=25))
    tasks = [make_task(0)]
    for seed in range(1, size):
        parent = tasks[draw(st.integers(min_value=0, max_value=seed - 1))]
        tier = max(parent.tier, draw(st.integers(min_value=2, max_value=3)))
        tasks.append(make_task(seed, tier=tier, parent_id=parent.id))
    return tasks


def _subtree_ids(tasks: list[Task], task_id: str) -> set[str]:
    parents = {task.id: task.parent_id for task in tasks}
    found: set[str] = set()
    for task in tasks:
        cursor: str | None = task.id
        while cursor is not None:
            if cursor == task_id:
                found.add(task.id)
                break
            cursor = parents[cursor]
    return found


@given(task_trees())
def test_tier_scopes_partition_the_tree(tasks: list[Task]) -> None:
    graph = TaskGraph(tasks[0].id, tasks)

    everything = [task.id for task in select_scope(graph, TreeScope())]
    by_tier = [
        task.id for tier in (1, 2, 3) for task in select_scope(graph, TierScope(tier))
    ]

    assert everything[0] == tasks[0].id
    assert sorted(everything) == sorted(task.id for task in tasks)
    assert sorted(by_tier) == sorted(everything)


@given(task_trees(), st.data())
def test_agent_scope_is_the_subtree(tasks: list[Task], data: st.DataObject) -> None:
    graph = TaskGraph(tasks[0].id, tasks)
    agent = data.draw(st.sampled_from(tasks))

    selected = select_scope(graph, AgentScope(agent.id))

    assert selected[0].id == agent.id
    assert {task.id for task in selected} == _subtree_ids(tasks, agent.id)


@given(task_trees())
def test_bfs_visits_parents_before_children(tasks: list[Task]) -> None:
    graph = TaskGraph(tasks[0].id, tasks)
    position = {task.id: index for index, task in enumerate(graph.bfs())}
    for task in tasks[1:]:
        assert task.parent_id is not None
        assert position[task.parent_id] < position[task.id]


def test_snapshot_rejects_bad_input() -> None:
    root = make_task(0)
    with pytest.raises(ValidationError, match="duplicate"):
        TaskGraph(root.id, [root, root])
    with pytest.raises(NotFoundError):
        TaskGraph("task-9999", [root])
    with pytest.raises(ValidationError, match="not part of tree"):
        select_scope(TaskGraph(root.id, [root]), AgentScope("task-0042"))
