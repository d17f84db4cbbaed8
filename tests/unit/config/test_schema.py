"""
aop-control - unit tests for config schema validation

File: tests/unit/config/test_schema.py

Purpose
- Validate defaults, structured issues, profile overlays and redacted dumps.
"""

from __future__ import annotations

import pytest

from aop_control.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)
from aop_control.control_plane.budgets import BudgetPolicy
from aop_control.security.redaction import REDACTED_VALUE


def _issue_paths(config: object) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


def test_defaults_are_valid_and_build_a_budget_policy() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config is not None
    assert set(result.config["profiles"]) == set(BUILTIN_PROFILE_NAMES)
    policy = BudgetPolicy.from_config(result.config["budgets"])
    assert policy.headroom_percent == 25


def test_default_config_is_a_copy() -> None:
    first = default_config()
    first["budgets"]["min_increment"] = 999
    assert default_config()["budgets"]["min_increment"] == 250


def test_issues_carry_dotted_paths() -> None:
    config = merge_config(
        default_config(),
        {
            "budgets": {"headroom_percent": 0},
            "pipeline": {"semantic_threshold": "high"},
            "observability": {"log_level": "chatty"},
        },
    )
    assert _issue_paths(config) == [
        "budgets.headroom_percent",
        "observability.log_level",
        "pipeline.semantic_threshold",
    ]


def test_missing_and_unknown_fields() -> None:
    config = dict(default_config())
    del config["restart"]
    config["extra"] = {}
    paths = _issue_paths(config)
    assert "extra" in paths
    assert "restart" in paths


def test_embedded_secrets_are_forbidden() -> None:
    config = merge_config(default_config(), {"pipeline": {"api_key": "sk-abc"}})
    (issue,) = validate_config(config).issues
    assert issue.path == "pipeline.api_key"
    assert "secret" in issue.message


@pytest.mark.parametrize("value", [True, 1.5, "3"])
def test_integers_reject_other_types(value: object) -> None:
    config = merge_config(default_config(), {"restart": {"top_k": value}})
    assert _issue_paths(config) == ["restart.top_k"]


def test_schema_version_must_match() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": 99}})
    with pytest.raises(ConfigValidationError, match="not supported"):
        assert_valid_config(config)


def test_log_level_is_uppercased() -> None:
    config = merge_config(default_config(), {"observability": {"log_level": "debug"}})
    assert assert_valid_config(config)["observability"]["log_level"] == "DEBUG"


def test_ci_command_accepts_string_or_list() -> None:
    as_list = merge_config(default_config(), {"pipeline": {"ci_command": ["pytest", "-q"]}})
    assert assert_valid_config(as_list)["pipeline"]["ci_command"] == ["pytest", "-q"]
    empty = merge_config(default_config(), {"pipeline": {"ci_command": []}})
    assert _issue_paths(empty) == ["pipeline.ci_command"]


def test_profile_overlays() -> None:
    base = assert_valid_config(default_config())

    strict = apply_profile_overlay(base, "strict")
    debug = apply_profile_overlay(base, "debug")

    assert strict["budgets"]["auto_approve_requests"] is False
    assert debug["pipeline"]["keep_shadow"] is True
    assert debug["observability"]["log_level"] == "DEBUG"
    assert apply_profile_overlay(base, None) == base
    with pytest.raises(ConfigValidationError, match="not defined"):
        apply_profile_overlay(base, "turbo")


def test_invalid_profile_name_is_reported() -> None:
    config = merge_config(default_config(), {"profiles": {"Bad Name": {}}})
    assert _issue_paths(config) == ["profiles.Bad Name"]


def test_redact_config_masks_sensitive_keys() -> None:
    redacted = redact_config({"pipeline": {"client_secret": "x", "keep_shadow": True}})
    assert redacted == {"pipeline": {"client_secret": REDACTED_VALUE, "keep_shadow": True}}
    assert redact_config("nope") == {}
