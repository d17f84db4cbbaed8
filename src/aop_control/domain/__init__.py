"""Domain records, status enums and id helpers for the control core."""

from aop_control.domain.models import (
    AuditAction,
    AuditLogEntry,
    BudgetDecision,
    BudgetRequest,
    BudgetRequestStatus,
    ConflictReport,
    ControlAction,
    DiffProposal,
    IntentSummary,
    Mutation,
    MutationStatus,
    PipelineStepResult,
    StepStatus,
    Task,
    TaskStatus,
)

__all__ = [
    "AuditAction",
    "AuditLogEntry",
    "BudgetDecision",
    "BudgetRequest",
    "BudgetRequestStatus",
    "ConflictReport",
    "ControlAction",
    "DiffProposal",
    "IntentSummary",
    "Mutation",
    "MutationStatus",
    "PipelineStepResult",
    "StepStatus",
    "Task",
    "TaskStatus",
]
