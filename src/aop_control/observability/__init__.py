"""Public observability primitives: structured logging and the polled activity feed."""

from aop_control.observability.activity import ActivityFeed, ActivityPage
from aop_control.observability.logging import (
    bind_context,
    configure_logging,
    log_context,
    redact_event,
)

__all__ = [
    "ActivityFeed",
    "ActivityPage",
    "bind_context",
    "configure_logging",
    "log_context",
    "redact_event",
]
