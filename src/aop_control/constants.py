"""Stable constants shared across control-core planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 2

# Default runtime paths (relative to workspace root unless overridden by config).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".aop/state")
STATE_DB_FILENAME: Final[str] = "control.sqlite3"

# Task tiers: 1 orchestrator, 2 domain leader, 3 specialist.
TIERS: Final[tuple[int, ...]] = (1, 2, 3)
ORCHESTRATOR_TIER: Final[int] = 1
DOMAIN_LEADER_TIER: Final[int] = 2
SPECIALIST_TIER: Final[int] = 3

# Shadow copies skip dependency and build output directories.
SHADOW_DIR_PREFIX: Final[str] = "aop_shadow_"
SHADOW_SKIP_DIRS: Final[frozenset[str]] = frozenset(
    {".git", "node_modules", "target", "dist", "build", ".next", ".turbo", "__pycache__"}
)

# Actors recorded on audit entries emitted by the core itself.
ACTOR_CONTROL: Final[str] = "control_scope"
ACTOR_BUDGET: Final[str] = "budget_arbiter"
ACTOR_PIPELINE: Final[str] = "mutation_pipeline"
ACTOR_RUNTIME: Final[str] = "task_runtime"
ACTOR_CONFLICTS: Final[str] = "conflict_resolver"
ACTOR_OPERATOR: Final[str] = "operator"

STOP_REASON_PREFIX: Final[str] = "stopped_by_user"
DEFAULT_STOP_REASON: Final[str] = "stopped by user"
TIER1_APPROVAL_WAIT_MESSAGE: Final[str] = "Waiting for Tier 1 approval before apply."

__all__ = [
    "ACTOR_BUDGET",
    "ACTOR_CONFLICTS",
    "ACTOR_CONTROL",
    "ACTOR_OPERATOR",
    "ACTOR_PIPELINE",
    "ACTOR_RUNTIME",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_STOP_REASON",
    "DOMAIN_LEADER_TIER",
    "ORCHESTRATOR_TIER",
    "SHADOW_DIR_PREFIX",
    "SHADOW_SKIP_DIRS",
    "SPECIALIST_TIER",
    "STATE_DB_FILENAME",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "STOP_REASON_PREFIX",
    "TIER1_APPROVAL_WAIT_MESSAGE",
    "TIERS",
]
