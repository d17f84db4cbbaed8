"""
aop-control - secret redaction

File: src/aop_control/security/redaction.py

Purpose
- Keep credentials out of the audit log and structured logs. Audit details are polled by
  external observers, so anything secret-like is replaced before it is persisted.

Functional requirements
- Key-based redaction for mappings (denylist, suffixes, prefixes; camelCase aware).
- Pattern-based redaction for free text (bearer headers, assignments, vendor key formats).
- Deterministic and idempotent.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

REDACTED_VALUE: Final[str] = "***REDACTED***"

DEFAULT_SENSITIVE_KEY_DENYLIST: Final[frozenset[str]] = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "auth_token",
        "authorization",
        "bearer_token",
        "client_secret",
        "credential",
        "credentials",
        "id_token",
        "password",
        "passwd",
        "private_key",
        "refresh_token",
        "secret",
        "secret_key",
        "session_token",
        "token",
        "webhook_secret",
    }
)

_SENSITIVE_KEY_SUFFIXES: Final[tuple[str, ...]] = (
    "_api_key",
    "_access_token",
    "_refresh_token",
    "_auth_token",
    "_client_secret",
    "_private_key",
    "_password",
    "_secret",
)

_SENSITIVE_KEY_PREFIXES: Final[tuple[str, ...]] = (
    "api_key_",
    "access_token_",
    "password_",
    "private_key_",
    "secret_",
)

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class _TextRule:
    name: str
    pattern: re.Pattern[str]
    sensitive_group: int | None = None


_TEXT_RULES: Final[tuple[_TextRule, ...]] = (
    _TextRule(
        name="private_key_block",
        pattern=re.compile(
            r"-----BEGIN(?: [A-Z0-9]+)* PRIVATE KEY-----"
            r"[\s\S]+?"
            r"-----END(?: [A-Z0-9]+)* PRIVATE KEY-----"
        ),
    ),
    _TextRule(
        name="authorization_bearer",
        pattern=re.compile(r"(?i)(\bauthorization\s*:\s*bearer\s+)([A-Za-z0-9\-._~+/=]{8,})"),
        sensitive_group=2,
    ),
    _TextRule(
        name="explicit_secret_assignment",
        pattern=re.compile(
            r"(?i)(\b(?:password|passwd|secret|api[_-]?key|client[_-]?secret|"
            r"access[_-]?token|refresh[_-]?token)\b\s*[:=]\s*[\"']?)"
            r"([A-Za-z0-9._~+/=-]{6,})"
        ),
        sensitive_group=2,
    ),
    _TextRule(name="anthropic_api_key", pattern=re.compile(r"\bsk-ant-[A-Za-z0-9_-]{20,255}\b")),
    _TextRule(name="openai_api_key", pattern=re.compile(r"\bsk-[A-Za-z0-9]{20,255}\b")),
    _TextRule(name="aws_access_key", pattern=re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")),
    _TextRule(name="github_token", pattern=re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,255}\b")),
)


def is_sensitive_key(key: str) -> bool:
    """Return whether ``key`` names a credential under the default policy."""

    normalized = _normalize_key(key)
    if not normalized:
        return False
    if normalized in DEFAULT_SENSITIVE_KEY_DENYLIST:
        return True
    if any(normalized.endswith(suffix) for suffix in _SENSITIVE_KEY_SUFFIXES):
        return True
    return any(normalized.startswith(prefix) for prefix in _SENSITIVE_KEY_PREFIXES)


def redact_text(text: str) -> str:
    """Redact secret-like substrings of ``text``."""

    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")
    redacted = text
    for rule in _TEXT_RULES:
        redacted = rule.pattern.sub(lambda match, r=rule: _replace(match, r), redacted)
    return redacted


def redact_structure(value: object) -> object:
    """Return a deep-redacted copy of nested mappings, lists and tuples."""

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, Mapping):
        out: dict[object, object] = {}
        for key in sorted(value, key=str):
            item = value[key]
            if isinstance(key, str) and is_sensitive_key(key):
                out[key] = REDACTED_VALUE
            else:
                out[key] = redact_structure(item)
        return out
    if isinstance(value, list):
        return [redact_structure(item) for item in value]
    if isinstance(value, tuple):
        return tuple(redact_structure(item) for item in value)
    return value


def _replace(match: re.Match[str], rule: _TextRule) -> str:
    if rule.sensitive_group is None:
        return REDACTED_VALUE
    full = match.group(0)
    start, end = match.span(rule.sensitive_group)
    offset_start = start - match.start(0)
    offset_end = end - match.start(0)
    return f"{full[:offset_start]}{REDACTED_VALUE}{full[offset_end:]}"


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


__all__ = [
    "DEFAULT_SENSITIVE_KEY_DENYLIST",
    "REDACTED_VALUE",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
]
