"""
Persistence layer: SQLite state DB, migrations and repositories.

SQLite-first; the engine is an implementation detail behind ``StateDB`` and the repository
classes. Services compose repository calls inside ``StateDB.transaction()``.
"""

from aop_control.persistence.repositories import (
    UNSET,
    AuditLogRepo,
    BudgetRequestRepo,
    MutationRepo,
    TaskRepo,
)
from aop_control.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "AuditLogRepo",
    "BudgetRequestRepo",
    "MutationRepo",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "TaskRepo",
    "UNSET",
]
