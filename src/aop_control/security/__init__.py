"""Security helpers: secret redaction for audit details and log events."""

from aop_control.security.redaction import (
    REDACTED_VALUE,
    is_sensitive_key,
    redact_structure,
    redact_text,
)

__all__ = [
    "REDACTED_VALUE",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
]
