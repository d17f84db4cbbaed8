"""
aop-control - configuration schema and validation.

File: src/aop_control/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Typed sections for budgets, pipeline, conflicts, restart, paths and observability.
- Profile overlay validation and deterministic deep-merge helpers.
- Redacted dumps for logs.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Numeric bounds match the runtime settings objects, so a config that validates here
  always builds a ``BudgetPolicy``, ``PipelineSettings`` and ``RestartApplySettings``.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from aop_control.constants import CONFIG_SCHEMA_VERSION, STATE_DB_FILENAME, STATE_DIR
from aop_control.security.redaction import REDACTED_VALUE, is_sensitive_key

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive", "debug")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "workspace_root"),
    ("pipeline", "compliance_policy_path"),
)


class MetaConfig(TypedDict):
    schema_version: int


class BudgetsConfig(TypedDict):
    headroom_percent: int
    auto_max_percent: int
    min_increment: int
    auto_approve_requests: bool


class PipelineConfig(TypedDict):
    semantic_threshold: float
    shadow_timeout_seconds: float
    ci_command: str | list[str] | None
    compliance_policy_path: str | None
    keep_shadow: bool


class ConflictsConfig(TypedDict):
    distance_threshold: float


class RestartConfig(TypedDict):
    candidate_poll_attempts: int
    candidate_poll_interval_seconds: float
    top_k: int


class PathsConfig(TypedDict):
    state_db: str
    workspace_root: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    json_logs: bool


class ProfileOverlay(TypedDict, total=False):
    budgets: dict[str, object]
    pipeline: dict[str, object]
    conflicts: dict[str, object]
    restart: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class ControlConfig(TypedDict):
    meta: MetaConfig
    budgets: BudgetsConfig
    pipeline: PipelineConfig
    conflicts: ConflictsConfig
    restart: RestartConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[ControlConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "budgets": {
        "headroom_percent": 25,
        "auto_max_percent": 40,
        "min_increment": 250,
        "auto_approve_requests": True,
    },
    "pipeline": {
        "semantic_threshold": 0.08,
        "shadow_timeout_seconds": 120.0,
        "ci_command": None,
        "compliance_policy_path": None,
        "keep_shadow": False,
    },
    "conflicts": {
        "distance_threshold": 0.3,
    },
    "restart": {
        "candidate_poll_attempts": 8,
        "candidate_poll_interval_seconds": 0.4,
        "top_k": 8,
    },
    "paths": {
        "state_db": (STATE_DIR / STATE_DB_FILENAME).as_posix(),
        "workspace_root": ".",
    },
    "observability": {
        "log_level": "INFO",
        "json_logs": False,
    },
    "profiles": {
        "strict": {
            "budgets": {"auto_approve_requests": False},
        },
        "permissive": {
            "budgets": {"headroom_percent": 10, "auto_max_percent": 60},
        },
        "debug": {
            "pipeline": {"keep_shadow": True},
            "observability": {"log_level": "DEBUG"},
        },
    },
}

_SECTION_NAMES: Final[tuple[str, ...]] = (
    "budgets",
    "conflicts",
    "observability",
    "paths",
    "pipeline",
    "restart",
)


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> ControlConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    selected = (profile or "").strip()
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    if not isinstance(profiles_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", "profiles section is required"),)
        )
    overlay_raw = profiles_raw.get(selected)
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay_raw))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a redacted copy for logs; secret-looking keys are masked."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config)
    return redacted if isinstance(redacted, dict) else {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"meta", "profiles", *_SECTION_NAMES}
    _reject_unknown_keys(payload, allowed, "", issues)
    _require_keys(payload, {"meta", *_SECTION_NAMES}, "", issues)

    out: dict[str, Any] = {}
    meta = _section_object(payload, "meta", issues)
    if meta is not None:
        out["meta"] = _validate_meta(meta, "meta", issues)
    for name in _SECTION_NAMES:
        section = _section_object(payload, name, issues)
        if section is not None:
            out[name] = _SECTION_VALIDATORS[name](section, name, issues, partial=False)

    profiles = _section_object(payload, "profiles", issues)
    out["profiles"] = {} if profiles is None else _validate_profiles(profiles, "profiles", issues)
    return out


def _section_object(
    payload: Mapping[str, object], key: str, issues: _IssueCollector
) -> dict[str, object] | None:
    raw = payload.get(key)
    if raw is None:
        return None
    return _as_object(raw, key, issues)


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(
                    _join(path, "schema_version"),
                    f"schema version {parsed} is not supported; expected {ConfigSchemaVersion}",
                )
    return out


def _validate_budgets(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    allowed = {"headroom_percent", "auto_max_percent", "min_increment", "auto_approve_requests"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    bounds = {
        "headroom_percent": (1, 95),
        "auto_max_percent": (5, 100),
        "min_increment": (50, 100_000),
    }
    for key, (low, high) in bounds.items():
        if key in payload:
            parsed = _as_int(payload[key], _join(path, key), issues, minimum=low, maximum=high)
            if parsed is not None:
                out[key] = parsed
    if "auto_approve_requests" in payload:
        flag = _as_bool(
            payload["auto_approve_requests"], _join(path, "auto_approve_requests"), issues
        )
        if flag is not None:
            out["auto_approve_requests"] = flag
    return out


def _validate_pipeline(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    allowed = {
        "semantic_threshold",
        "shadow_timeout_seconds",
        "ci_command",
        "compliance_policy_path",
        "keep_shadow",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(
            payload,
            {"semantic_threshold", "shadow_timeout_seconds"},
            path,
            issues,
        )

    out: dict[str, Any] = {}
    if "semantic_threshold" in payload:
        threshold = _as_float(
            payload["semantic_threshold"],
            _join(path, "semantic_threshold"),
            issues,
            minimum=0.0,
            maximum=1.0,
        )
        if threshold is not None:
            out["semantic_threshold"] = threshold
    if "shadow_timeout_seconds" in payload:
        seconds = _as_float(
            payload["shadow_timeout_seconds"],
            _join(path, "shadow_timeout_seconds"),
            issues,
            exclusive_minimum=0.0,
        )
        if seconds is not None:
            out["shadow_timeout_seconds"] = seconds
    if "ci_command" in payload:
        out["ci_command"] = _as_command(payload["ci_command"], _join(path, "ci_command"), issues)
    if "compliance_policy_path" in payload:
        raw = payload["compliance_policy_path"]
        out["compliance_policy_path"] = (
            None
            if raw is None
            else _as_path_text(raw, _join(path, "compliance_policy_path"), issues)
        )
    if "keep_shadow" in payload:
        flag = _as_bool(payload["keep_shadow"], _join(path, "keep_shadow"), issues)
        if flag is not None:
            out["keep_shadow"] = flag
    return out


def _validate_conflicts(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    allowed = {"distance_threshold"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "distance_threshold" in payload:
        threshold = _as_float(
            payload["distance_threshold"],
            _join(path, "distance_threshold"),
            issues,
            minimum=0.0,
            maximum=1.0,
        )
        if threshold is not None:
            out["distance_threshold"] = threshold
    return out


def _validate_restart(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    allowed = {"candidate_poll_attempts", "candidate_poll_interval_seconds", "top_k"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in ("candidate_poll_attempts", "top_k"):
        if key in payload:
            parsed = _as_int(payload[key], _join(path, key), issues, minimum=1)
            if parsed is not None:
                out[key] = parsed
    if "candidate_poll_interval_seconds" in payload:
        interval = _as_float(
            payload["candidate_poll_interval_seconds"],
            _join(path, "candidate_poll_interval_seconds"),
            issues,
            minimum=0.0,
        )
        if interval is not None:
            out["candidate_poll_interval_seconds"] = interval
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    allowed = {"state_db", "workspace_root"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_path_text(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    allowed = {"log_level", "json_logs"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        raw = payload["log_level"]
        level = _as_enum(
            raw.upper() if isinstance(raw, str) else raw,
            _join(path, "log_level"),
            issues,
            allowed_values=LOG_LEVELS,
        )
        if level is not None:
            out["log_level"] = level
    if "json_logs" in payload:
        flag = _as_bool(payload["json_logs"], _join(path, "json_logs"), issues)
        if flag is not None:
            out["json_logs"] = flag
    return out


_SECTION_VALIDATORS: Final[dict[str, Callable[..., dict[str, Any]]]] = {
    "budgets": _validate_budgets,
    "conflicts": _validate_conflicts,
    "observability": _validate_observability,
    "paths": _validate_paths,
    "pipeline": _validate_pipeline,
    "restart": _validate_restart,
}


def _validate_profiles(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue
        _reject_unknown_keys(profile_obj, set(_SECTION_NAMES), profile_path, issues)
        overlay: dict[str, Any] = {}
        for section in _SECTION_NAMES:
            raw = profile_obj.get(section)
            if raw is None:
                continue
            section_path = _join(profile_path, section)
            section_obj = _as_object(raw, section_path, issues)
            if section_obj is None:
                continue
            overlay[section] = _SECTION_VALIDATORS[section](
                section_obj, section_path, issues, partial=True
            )
        out[profile_name] = overlay
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_command(value: object, path: str, issues: _IssueCollector) -> str | list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return _as_str(value, path, issues)
    if isinstance(value, (list, tuple)):
        if not value:
            issues.add(path, "must not be empty")
            return None
        parts: list[str] = []
        for index, item in enumerate(value):
            parsed = _as_str(item, f"{path}[{index}]", issues)
            if parsed is None:
                return None
            parts.append(parsed)
        return parts
    issues.add(path, f"expected string or list of strings, got {type(value).__name__}")
    return None


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if maximum is not None and value > maximum:
        issues.add(path, f"must be <= {maximum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
    exclusive_minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if exclusive_minimum is not None and parsed <= exclusive_minimum:
        issues.add(path, f"must be > {exclusive_minimum}")
        return None
    if maximum is not None and parsed > maximum:
        issues.add(path, f"must be <= {maximum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if is_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden in config files")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = (
                    _deep_copy_mapping(existing) if isinstance(existing, Mapping) else {}
                )
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, list):
        return [_deep_copy_value(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_deep_copy_value(item) for item in value)
    return copy.deepcopy(value)


def _redact_value(value: object) -> object:
    if isinstance(value, Mapping):
        return {
            key: REDACTED_VALUE if is_sensitive_key(key) else _redact_value(value[key])
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "ControlConfig",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "redact_config",
    "validate_config",
]
