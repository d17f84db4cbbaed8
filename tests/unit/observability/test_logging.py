from __future__ import annotations

import io
import json
from collections.abc import Iterator

import pytest
import structlog

from aop_control.observability.logging import (
    bind_context,
    configure_logging,
    log_context,
    redact_event,
)
from aop_control.security.redaction import REDACTED_VALUE


@pytest.fixture
def stream() -> Iterator[io.StringIO]:
    buffer = io.StringIO()
    configure_logging("DEBUG", json_output=True, stream=buffer)
    structlog.contextvars.clear_contextvars()
    yield buffer
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


def _events(buffer: io.StringIO) -> list[dict[str, object]]:
    return [json.loads(line) for line in buffer.getvalue().splitlines() if line.strip()]


def test_json_events_carry_level_and_timestamp(stream: io.StringIO) -> None:
    structlog.get_logger("test").info("task_created", task_id="task-1")

    (event,) = _events(stream)
    assert event["event"] == "task_created"
    assert event["level"] == "info"
    assert event["task_id"] == "task-1"
    assert str(event["timestamp"]).endswith("Z")


def test_secrets_are_redacted_before_rendering(stream: io.StringIO) -> None:
    structlog.get_logger("test").warning(
        "provider_error", api_key="sk-live", detail="password=hunter22 was rejected"
    )

    (event,) = _events(stream)
    assert event["api_key"] == REDACTED_VALUE
    assert event["detail"] == f"password={REDACTED_VALUE} was rejected"


def test_level_filtering() -> None:
    buffer = io.StringIO()
    configure_logging("warning", json_output=True, stream=buffer)
    try:
        logger = structlog.get_logger("test")
        logger.info("quiet")
        logger.error("loud")
    finally:
        structlog.reset_defaults()
    assert [event["event"] for event in _events(buffer)] == ["loud"]


def test_log_context_binds_temporarily(stream: io.StringIO) -> None:
    logger = structlog.get_logger("test")
    with log_context(root_task_id="root-1", mutation_id=None):
        logger.info("inside")
    logger.info("outside")

    inside, outside = _events(stream)
    assert inside["root_task_id"] == "root-1"
    assert "mutation_id" not in inside
    assert "root_task_id" not in outside


def test_bind_context_none_unbinds(stream: io.StringIO) -> None:
    logger = structlog.get_logger("test")
    bind_context(actor="operator", task_id="task-9")
    logger.info("first")
    bind_context(task_id=None)
    logger.info("second")

    first, second = _events(stream)
    assert first["actor"] == second["actor"] == "operator"
    assert first["task_id"] == "task-9"
    assert "task_id" not in second


def test_unknown_context_keys_are_rejected() -> None:
    with pytest.raises(ValueError, match="unsupported"):
        bind_context(user="x")
    with pytest.raises(ValueError), log_context(color="blue"):
        pass


def test_unknown_level_is_rejected() -> None:
    with pytest.raises(ValueError, match="unknown log level"):
        configure_logging("LOUD")


def test_redact_event_processor() -> None:
    event = redact_event(None, "info", {"event": "x", "clientSecret": "abc"})
    assert event == {"event": "x", "clientSecret": REDACTED_VALUE}
