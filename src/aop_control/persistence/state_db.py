"""
aop-control - SQLite state DB

File: src/aop_control/persistence/state_db.py

Purpose
- SQLite schema management, migrations, and connection lifecycle for the control core.

Functional requirements
- Idempotent migration application with checksum verification.
- ``BEGIN IMMEDIATE`` transactions with savepoint nesting, so repositories can compose
  compare-and-set updates with audit appends atomically.
- Bounded busy retries with actionable errors.

Non-functional requirements
- Short-lived connections; WAL journal so audit-log pollers never block writers.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import time
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from aop_control.constants import STATE_DB_SCHEMA_VERSION, TIERS
from aop_control.domain.models import (
    BudgetRequestStatus,
    MutationStatus,
    TaskStatus,
)

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


def _sql_enum(values: Sequence[str]) -> str:
    return ",".join(f"'{value}'" for value in values)


def _enum_values(
    values: type[TaskStatus] | type[MutationStatus] | type[BudgetRequestStatus],
) -> tuple[str, ...]:
    return tuple(sorted(item.value for item in values))


_TASK_STATUS_VALUES: Final[tuple[str, ...]] = _enum_values(TaskStatus)
_MUTATION_STATUS_VALUES: Final[tuple[str, ...]] = _enum_values(MutationStatus)
_BUDGET_REQUEST_STATUS_VALUES: Final[tuple[str, ...]] = _enum_values(BudgetRequestStatus)
_TIER_VALUES: Final[str] = ",".join(str(tier) for tier in TIERS)

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        parent_id TEXT,
        tier INTEGER NOT NULL CHECK (tier IN ({_TIER_VALUES})),
        domain TEXT NOT NULL,
        objective TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(_TASK_STATUS_VALUES)})),
        token_budget INTEGER NOT NULL CHECK (token_budget > 0),
        token_usage INTEGER NOT NULL DEFAULT 0 CHECK (token_usage >= 0),
        risk_factor REAL NOT NULL DEFAULT 0 CHECK (risk_factor >= 0 AND risk_factor <= 1),
        compliance_score INTEGER NOT NULL DEFAULT 0
            CHECK (compliance_score >= 0 AND compliance_score <= 100),
        retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
        agent_uid TEXT,
        target_files_json TEXT NOT NULL DEFAULT '[]',
        error_message TEXT,
        paused_from TEXT CHECK (paused_from IS NULL OR paused_from IN ({_sql_enum(_TASK_STATUS_VALUES)})),
        checksum TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (parent_id IS NULL OR parent_id <> id),
        FOREIGN KEY(parent_id) REFERENCES tasks(id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tasks_parent_created
    ON tasks(parent_id, created_at ASC, id ASC)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS mutations (
        id TEXT PRIMARY KEY,
        task_id TEXT NOT NULL,
        agent_uid TEXT NOT NULL,
        file_path TEXT NOT NULL,
        diff_content TEXT NOT NULL,
        intent_description TEXT NOT NULL,
        intent_hash TEXT NOT NULL,
        confidence REAL NOT NULL CHECK (confidence >= 0 AND confidence <= 1),
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(_MUTATION_STATUS_VALUES)})),
        test_result TEXT,
        test_exit_code INTEGER,
        rejection_reason TEXT,
        rejected_at_step TEXT,
        proposed_at TEXT NOT NULL,
        applied_at TEXT,
        FOREIGN KEY(task_id) REFERENCES tasks(id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_mutations_task_proposed
    ON mutations(task_id, proposed_at DESC)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS budget_requests (
        id TEXT PRIMARY KEY,
        task_id TEXT NOT NULL,
        requested_by TEXT NOT NULL,
        reason TEXT NOT NULL,
        requested_increment INTEGER NOT NULL CHECK (requested_increment > 0),
        current_budget INTEGER NOT NULL,
        current_usage INTEGER NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(_BUDGET_REQUEST_STATUS_VALUES)})),
        approved_increment INTEGER CHECK (approved_increment IS NULL OR approved_increment > 0),
        resolution_note TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        resolved_at TEXT,
        FOREIGN KEY(task_id) REFERENCES tasks(id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_budget_requests_task_created
    ON budget_requests(task_id, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        actor TEXT NOT NULL,
        action TEXT NOT NULL,
        target_id TEXT,
        details_json TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_audit_log_target
    ON audit_log(target_id, id)
    """,
)

# Cross-process pipeline lease: one holder per mutation until release or expiry.
_MIGRATION_0002_STATEMENTS: Final[tuple[str, ...]] = (
    "ALTER TABLE mutations ADD COLUMN run_lease TEXT",
    "ALTER TABLE mutations ADD COLUMN run_lease_expires_at TEXT",
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="control_core_schema",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "control_core_schema", _MIGRATION_0001_STATEMENTS),
    ),
    _Migration(
        version=2,
        name="mutation_run_lease",
        statements=_MIGRATION_0002_STATEMENTS,
        checksum=_migration_checksum(2, "mutation_run_lease", _MIGRATION_0002_STATEMENTS),
    ),
)

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """Raised when bounded busy retries are exhausted."""


class StateDBMigrationError(StateDBError):
    """Raised when migrations cannot be applied safely."""


class StateDBCorruptionError(StateDBError):
    """Raised when SQLite reports possible corruption."""


class StateDB:
    """SQLite state DB manager with deterministic migrations and safe helpers."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")

        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._savepoint_counter = 0
        self._migrated = False

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """Open a configured SQLite connection for the state DB."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        self._configure_connection(conn)
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Run statements inside an atomic transaction with savepoint support."""

        if conn is None:
            with self.connection() as owned_conn:
                with self.transaction(conn=owned_conn, immediate=immediate) as txn_conn:
                    yield txn_conn
                return

        if conn.in_transaction:
            savepoint = self._next_savepoint_name()
            self._execute_with_retry(conn, f"SAVEPOINT {savepoint}", (), operation="savepoint")
            try:
                yield conn
            except Exception:
                self._execute_with_retry(
                    conn,
                    f"ROLLBACK TO SAVEPOINT {savepoint}",
                    (),
                    operation="rollback to savepoint",
                )
                self._execute_with_retry(
                    conn,
                    f"RELEASE SAVEPOINT {savepoint}",
                    (),
                    operation="release savepoint",
                )
                raise
            else:
                self._execute_with_retry(
                    conn,
                    f"RELEASE SAVEPOINT {savepoint}",
                    (),
                    operation="release savepoint",
                )
            return

        begin_sql = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self._execute_with_retry(conn, begin_sql, (), operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def migrate(self) -> int:
        """Apply migrations idempotently and return current schema version."""

        self._validate_migration_chain(STATE_DB_SCHEMA_VERSION)
        with self.connection() as conn:
            self._execute_with_retry(
                conn,
                _SCHEMA_VERSIONS_TABLE_SQL,
                (),
                operation="create schema_versions table",
            )
            applied = self._load_applied_migrations(conn)
            current_version = max(applied, default=0)
            if current_version > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    "database schema is newer than supported by this binary "
                    f"(db={current_version}, code={STATE_DB_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version > STATE_DB_SCHEMA_VERSION:
                    continue

                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            "migration checksum mismatch for version "
                            f"{migration.version}: db={record.checksum} code={migration.checksum}"
                        )
                    continue

                applied_at = _utc_now_iso()
                with self.transaction(conn=conn, immediate=True) as tx:
                    for statement in migration.statements:
                        self._execute_with_retry(
                            tx,
                            statement,
                            (),
                            operation=f"apply migration {migration.version}",
                        )
                    self._execute_with_retry(
                        tx,
                        """
                        INSERT INTO schema_versions (version, name, checksum, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (migration.version, migration.name, migration.checksum, applied_at),
                        operation=f"record migration {migration.version}",
                    )

                applied[migration.version] = MigrationRecord(
                    version=migration.version,
                    name=migration.name,
                    checksum=migration.checksum,
                    applied_at=applied_at,
                )

            self._migrated = True
            return self.schema_version(conn=conn)

    def ensure_migrated(self) -> None:
        """Run ``migrate`` once per instance; repositories share one ``StateDB``."""

        if not self._migrated:
            self.migrate()

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions",
            conn=conn,
        )
        if row is None:
            return 0
        value = row["version"]
        if not isinstance(value, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return value

    def schema_history(self) -> list[MigrationRecord]:
        with self.connection() as conn:
            return sorted(self._load_applied_migrations(conn).values(), key=lambda r: r.version)

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute a parameterized statement and return affected row count."""

        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="execute statement")
            return cursor.rowcount

        with self.transaction(immediate=True) as tx:
            cursor = self._execute_with_retry(tx, sql, params, operation="execute statement")
            return cursor.rowcount

    def insert(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection,
    ) -> int:
        """Execute an INSERT and return ``lastrowid`` (used for AUTOINCREMENT ids)."""

        cursor = self._execute_with_retry(conn, sql, params, operation="insert row")
        rowid = cursor.lastrowid
        if rowid is None:
            raise StateDBError("insert did not produce a row id")
        return rowid

    def executemany(
        self,
        sql: str,
        params_iter: Iterable[SQLParams],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute a parameterized statement for a sequence of parameter tuples."""

        params_list = [tuple(params) for params in params_iter]
        if conn is not None:
            return self._executemany_with_retry(conn, sql, params_list, operation="execute many")

        with self.transaction(immediate=True) as tx:
            return self._executemany_with_retry(tx, sql, params_list, operation="execute many")

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        """Run a query and return rows as typed dictionaries."""

        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]

        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        """Run a query and return the first row as a typed dictionary."""

        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query one")
            row = cursor.fetchone()
            return None if row is None else _row_to_dict(row)

        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query one")
            row = cursor.fetchone()
            return None if row is None else _row_to_dict(row)

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity-check errors; empty tuple means OK."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        rows = self.query_all(f"PRAGMA integrity_check({max_errors})")
        messages = tuple(str(row.get("integrity_check", "")) for row in rows)
        if messages == ("ok",):
            return ()
        return messages

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if journal_row is None:
            raise StateDBError("failed to configure journal_mode")
        journal_mode = str(journal_row[0]).lower()
        if journal_mode != "wal":
            raise StateDBError(f"journal_mode must be WAL, got {journal_mode!r}")

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        cursor = self._execute_with_retry(
            conn,
            """
            SELECT version, name, checksum, applied_at
            FROM schema_versions
            ORDER BY version ASC
            """,
            (),
            operation="load schema_versions",
        )
        out: dict[int, MigrationRecord] = {}
        for row in cursor.fetchall():
            if not isinstance(row["version"], int):
                raise StateDBMigrationError("schema_versions.version must be integer")
            if not isinstance(row["name"], str):
                raise StateDBMigrationError("schema_versions.name must be text")
            if not isinstance(row["checksum"], str):
                raise StateDBMigrationError("schema_versions.checksum must be text")
            if not isinstance(row["applied_at"], str):
                raise StateDBMigrationError("schema_versions.applied_at must be text")
            out[row["version"]] = MigrationRecord(
                version=row["version"],
                name=row["name"],
                checksum=row["checksum"],
                applied_at=row["applied_at"],
            )
        return out

    def _validate_migration_chain(self, target_version: int) -> None:
        if target_version < 0:
            raise StateDBMigrationError("target schema version must be >= 0")
        migration_versions = {migration.version for migration in _MIGRATIONS}
        if target_version > max(migration_versions, default=0):
            raise StateDBMigrationError(
                "schema target exceeds known migrations "
                f"(target={target_version}, known={max(migration_versions, default=0)})"
            )
        for version in range(1, target_version + 1):
            if version not in migration_versions:
                raise StateDBMigrationError(f"missing migration for schema version {version}")

    def _next_savepoint_name(self) -> str:
        self._savepoint_counter += 1
        return f"sp_{self._savepoint_counter}"

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise StateDBBusyError(f"{operation} exhausted retries unexpectedly")

    def _executemany_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params_list: Sequence[SQLParams],
        *,
        operation: str,
    ) -> int:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                cursor = conn.executemany(sql, params_list)
                return cursor.rowcount
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise StateDBBusyError(f"{operation} exhausted retries unexpectedly")

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _is_corruption_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> None:
        if self._is_corruption_error(exc):
            raise StateDBCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run `StateDB.integrity_check()` and restore the state file from a copy."
            ) from exc
        if self._is_busy_error(exc):
            raise StateDBBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc


def _row_to_dict(row: sqlite3.Row) -> dict[str, RowValue]:
    raw = dict(row)
    return {str(key): raw[key] for key in raw}


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Deterministic JSON for persistence payloads."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MigrationRecord",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
]
