"""Structured logging setup for structlog with JSON or console output and redaction."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from typing import Any, Final, TextIO

import structlog

from aop_control.security.redaction import redact_structure

_CONTEXT_KEYS: Final[tuple[str, ...]] = (
    "root_task_id",
    "task_id",
    "mutation_id",
    "request_id",
    "actor",
)


def configure_logging(
    level: int | str = "INFO",
    *,
    json_output: bool = False,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog process-wide.

    Every event gets the bound context, its level and a UTC ISO-8601 timestamp; values are
    passed through secret redaction before rendering.
    """

    numeric_level = _parse_log_level(level)
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer(sort_keys=True)
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_event,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=False,
    )


def redact_event(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking secret-looking keys and values."""

    redacted = redact_structure(dict(event_dict))
    if isinstance(redacted, dict):
        return redacted
    return event_dict


def bind_context(**fields: str | None) -> None:
    """Bind correlation fields to the current context; ``None`` unbinds a key."""

    _check_keys(fields)
    present = {key: value for key, value in fields.items() if value is not None}
    absent = [key for key, value in fields.items() if value is None]
    if absent:
        structlog.contextvars.unbind_contextvars(*absent)
    if present:
        structlog.contextvars.bind_contextvars(**present)


@contextmanager
def log_context(**fields: str | None) -> Iterator[None]:
    """Temporarily bind correlation fields for log events in scope."""

    _check_keys(fields)
    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def _check_keys(fields: dict[str, str | None]) -> None:
    for key in fields:
        if key not in _CONTEXT_KEYS:
            raise ValueError(f"unsupported log context key: {key!r}")


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {value!r}")
    return resolved


__all__ = ["bind_context", "configure_logging", "log_context", "redact_event"]
