"""Control-plane public API.

``restart_apply`` is imported from its module directly; it depends on the verification and
integration planes, which themselves import the task graph from here.
"""

from aop_control.control_plane.budgets import (
    BudgetArbiter,
    BudgetEligibility,
    BudgetPolicy,
    BudgetSplit,
    allocate_token_budgets,
    complexity_weight,
    split_global_budget,
)
from aop_control.control_plane.control_scope import (
    AgentScope,
    ControlScope,
    ControlScopeEngine,
    ControlScopeResult,
    TierScope,
    TreeScope,
    parse_scope,
)
from aop_control.control_plane.runtime import (
    ExecutionHandle,
    ExecutionRunner,
    ExecutionSupervisor,
    TaskRuntime,
)
from aop_control.control_plane.task_graph import TaskGraph
from aop_control.control_plane.tasks import TaskService, TaskTransition

__all__ = [
    "AgentScope",
    "BudgetArbiter",
    "BudgetEligibility",
    "BudgetPolicy",
    "BudgetSplit",
    "ControlScope",
    "ControlScopeEngine",
    "ControlScopeResult",
    "ExecutionHandle",
    "ExecutionRunner",
    "ExecutionSupervisor",
    "TaskGraph",
    "TaskRuntime",
    "TaskService",
    "TaskTransition",
    "TierScope",
    "TreeScope",
    "allocate_token_budgets",
    "complexity_weight",
    "parse_scope",
    "split_global_budget",
]
