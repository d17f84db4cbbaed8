"""Exception taxonomy shared by every plane of the control core.

Validation errors are raised before any write. Security violations are a separate class
that callers must never downgrade to a warning. ``InvalidTransitionError`` marks requests
for state machine moves that can never be legal, which is a caller bug rather than an
operational condition.
"""

from __future__ import annotations

SECURITY_VIOLATION_PREFIX = "SECURITY_VIOLATION"


class AOPError(RuntimeError):
    """Base class for control-plane errors."""


class ValidationError(AOPError, ValueError):
    """Raised when input is missing or malformed; state is never mutated."""


class NotFoundError(ValidationError):
    """Raised when a referenced task, mutation or request id does not exist."""

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class InvalidTransitionError(AOPError):
    """Raised when a state machine transition is requested from an illegal source."""


class MutationTerminalError(InvalidTransitionError):
    """Raised when a pipeline run targets an ``applied`` or ``rejected`` mutation."""


class MutationBusyError(AOPError):
    """Raised when another pipeline run already holds the mutation lock."""


class BudgetRequestAlreadyResolvedError(InvalidTransitionError):
    """Raised when resolving a budget request that is no longer pending."""


class SecurityViolation(AOPError):
    """Raised when a path would escape the sandboxed project root."""

    def __init__(self, message: str) -> None:
        super().__init__(f"{SECURITY_VIOLATION_PREFIX}: {message}")
        self.detail = message


class ExecutionError(AOPError):
    """Raised by an execution runner when an agent run fails."""


__all__ = [
    "AOPError",
    "BudgetRequestAlreadyResolvedError",
    "ExecutionError",
    "InvalidTransitionError",
    "MutationBusyError",
    "MutationTerminalError",
    "NotFoundError",
    "SECURITY_VIOLATION_PREFIX",
    "SecurityViolation",
    "ValidationError",
]
