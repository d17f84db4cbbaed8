"""
aop-control config package public API.

File: src/aop_control/config/__init__.py

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``aop.toml`` + ``AOP_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from aop_control.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from aop_control.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    ControlConfig,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "ControlConfig",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "merge_config",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
