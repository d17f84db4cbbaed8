"""
aop-control - repositories

File: src/aop_control/persistence/repositories.py

Purpose
- Repository/DAO classes for tasks, mutations, budget requests and the audit log.

Functional requirements
- Task status transitions are compare-and-set on the current status.
- Budget and usage changes are atomic ``SET x = x + ?`` increments.
- Mutation transitions enforce the forward-only lifecycle with ``applied``/``rejected``
  absorbing, again as compare-and-set.
- The audit log is append-only with strictly increasing integer ids; readers poll by
  ``since_id``.

Non-functional requirements
- Every method accepts an optional ``conn`` so services can compose several writes and an
  audit append into one ``BEGIN IMMEDIATE`` transaction.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Final, cast

from aop_control.domain.models import (
    AuditAction,
    AuditLogEntry,
    BudgetRequest,
    BudgetRequestStatus,
    JSONValue,
    Mutation,
    MutationStatus,
    Task,
    TaskStatus,
    iso8601z,
    mutation_transition_allowed,
    utc_now,
)
from aop_control.errors import InvalidTransitionError, NotFoundError, ValidationError
from aop_control.persistence.state_db import RowValue, SQLParams, StateDB, canonical_json
from aop_control.security.redaction import redact_structure

if TYPE_CHECKING:
    import sqlite3

_MAX_PAGE_SIZE: Final[int] = 1_000


class _Unset:
    """Sentinel type for optional column updates where ``None`` means "clear"."""

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Final[_Unset] = _Unset()


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.ensure_migrated()

    @property
    def db(self) -> StateDB:
        return self._db

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class TaskRepo(_BaseRepo):
    """Repository for the task tree, status CAS transitions and token accounting."""

    def add(self, task: Task, *, conn: sqlite3.Connection | None = None) -> Task:
        with self._db.transaction(conn=conn) as tx:
            if self.get(task.id, conn=tx) is not None:
                raise ValidationError(f"task already exists: {task.id}")
            if task.parent_id is not None:
                parent = self.get(task.parent_id, conn=tx)
                if parent is None:
                    raise NotFoundError("task", task.parent_id)
                if task.tier < parent.tier:
                    raise ValidationError(
                        f"child tier must not be lower than parent tier "
                        f"(parent={parent.tier}, child={task.tier})"
                    )
            self._db.execute(
                """
                INSERT INTO tasks (
                    id, parent_id, tier, domain, objective, status, token_budget, token_usage,
                    risk_factor, compliance_score, retry_count, agent_uid, target_files_json,
                    error_message, paused_from, checksum, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.parent_id,
                    task.tier,
                    task.domain,
                    task.objective,
                    task.status.value,
                    task.token_budget,
                    task.token_usage,
                    task.risk_factor,
                    task.compliance_score,
                    task.retry_count,
                    task.agent_uid,
                    canonical_json(list(task.target_files)),
                    task.error_message,
                    None if task.paused_from is None else task.paused_from.value,
                    task.checksum,
                    iso8601z(task.created_at),
                    iso8601z(task.updated_at),
                ),
                conn=tx,
            )
        return task

    def get(self, task_id: str, *, conn: sqlite3.Connection | None = None) -> Task | None:
        row = self._db.query_one("SELECT * FROM tasks WHERE id = ?", (task_id,), conn=conn)
        return None if row is None else _task_from_row(row)

    def require(self, task_id: str, *, conn: sqlite3.Connection | None = None) -> Task:
        if not isinstance(task_id, str) or not task_id.strip():
            raise ValidationError("task_id is required")
        task = self.get(task_id, conn=conn)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def list_children(
        self, task_id: str, *, conn: sqlite3.Connection | None = None
    ) -> list[Task]:
        rows = self._db.query_all(
            "SELECT * FROM tasks WHERE parent_id = ? ORDER BY created_at ASC, id ASC",
            (task_id,),
            conn=conn,
        )
        return [_task_from_row(row) for row in rows]

    def list_roots(self, *, limit: int = 100, offset: int = 0) -> list[Task]:
        self._validate_page(limit, offset)
        rows = self._db.query_all(
            """
            SELECT * FROM tasks WHERE parent_id IS NULL
            ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?
            """,
            (limit, offset),
        )
        return [_task_from_row(row) for row in rows]

    def load_subtree(
        self, root_id: str, *, conn: sqlite3.Connection | None = None
    ) -> list[Task]:
        """Read the root and all descendants in one statement (a consistent snapshot)."""

        rows = self._db.query_all(
            """
            WITH RECURSIVE subtree(id) AS (
                SELECT id FROM tasks WHERE id = ?
                UNION
                SELECT child.id FROM tasks AS child
                JOIN subtree ON child.parent_id = subtree.id
            )
            SELECT tasks.* FROM tasks JOIN subtree ON tasks.id = subtree.id
            ORDER BY tasks.created_at ASC, tasks.id ASC
            """,
            (root_id,),
            conn=conn,
        )
        return [_task_from_row(row) for row in rows]

    def compare_and_set_status(
        self,
        task_id: str,
        *,
        expected: TaskStatus,
        status: TaskStatus,
        error_message: str | None | _Unset = UNSET,
        paused_from: TaskStatus | None | _Unset = UNSET,
        checksum: str | None | _Unset = UNSET,
        compliance_score: int | None = None,
        increment_retry: bool = False,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Move ``task_id`` to ``status`` only if it is still ``expected``.

        Returns ``False`` when a concurrent writer changed the status first.
        """

        assignments = ["status = ?", "updated_at = ?"]
        params: list[object] = [status.value, _now_iso()]
        if not isinstance(error_message, _Unset):
            assignments.append("error_message = ?")
            params.append(error_message)
        if not isinstance(paused_from, _Unset):
            assignments.append("paused_from = ?")
            params.append(None if paused_from is None else paused_from.value)
        if not isinstance(checksum, _Unset):
            assignments.append("checksum = ?")
            params.append(checksum)
        if compliance_score is not None:
            assignments.append("compliance_score = ?")
            params.append(_clamp_score(compliance_score))
        if increment_retry:
            assignments.append("retry_count = retry_count + 1")
        params.extend((task_id, expected.value))
        changed = self._db.execute(
            f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            cast("SQLParams", tuple(params)),
            conn=conn,
        )
        return changed == 1

    def update_outcome(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        compliance_score: int | None = None,
        error_message: str | None | _Unset = UNSET,
        checksum: str | None | _Unset = UNSET,
        conn: sqlite3.Connection | None = None,
    ) -> Task:
        """Unconditional partial update used by execution/pipeline completion."""

        assignments = ["updated_at = ?"]
        params: list[object] = [_now_iso()]
        if status is not None:
            assignments.append("status = ?")
            params.append(status.value)
            if status is not TaskStatus.PAUSED:
                assignments.append("paused_from = NULL")
        if compliance_score is not None:
            assignments.append("compliance_score = ?")
            params.append(_clamp_score(compliance_score))
        if not isinstance(error_message, _Unset):
            assignments.append("error_message = ?")
            params.append(error_message)
        if not isinstance(checksum, _Unset):
            assignments.append("checksum = ?")
            params.append(checksum)
        params.append(task_id)
        with self._db.transaction(conn=conn) as tx:
            changed = self._db.execute(
                f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?",
                cast("SQLParams", tuple(params)),
                conn=tx,
            )
            if changed != 1:
                raise NotFoundError("task", task_id)
            return self.require(task_id, conn=tx)

    def add_usage(
        self, task_id: str, tokens: int, *, conn: sqlite3.Connection | None = None
    ) -> Task:
        if isinstance(tokens, bool) or not isinstance(tokens, int) or tokens < 0:
            raise ValidationError("tokens must be a non-negative integer")
        with self._db.transaction(conn=conn) as tx:
            changed = self._db.execute(
                "UPDATE tasks SET token_usage = token_usage + ?, updated_at = ? WHERE id = ?",
                (tokens, _now_iso(), task_id),
                conn=tx,
            )
            if changed != 1:
                raise NotFoundError("task", task_id)
            return self.require(task_id, conn=tx)

    def increase_budget(
        self, task_id: str, increment: int, *, conn: sqlite3.Connection | None = None
    ) -> Task:
        if isinstance(increment, bool) or not isinstance(increment, int) or increment <= 0:
            raise ValidationError("increment must be greater than 0")
        with self._db.transaction(conn=conn) as tx:
            changed = self._db.execute(
                "UPDATE tasks SET token_budget = token_budget + ?, updated_at = ? WHERE id = ?",
                (increment, _now_iso(), task_id),
                conn=tx,
            )
            if changed != 1:
                raise NotFoundError("task", task_id)
            return self.require(task_id, conn=tx)


class MutationRepo(_BaseRepo):
    """Repository for mutations and their forward-only status lifecycle."""

    def add(self, mutation: Mutation, *, conn: sqlite3.Connection | None = None) -> Mutation:
        with self._db.transaction(conn=conn) as tx:
            if self._db.query_one(
                "SELECT 1 AS present FROM tasks WHERE id = ?", (mutation.task_id,), conn=tx
            ) is None:
                raise NotFoundError("task", mutation.task_id)
            self._db.execute(
                """
                INSERT INTO mutations (
                    id, task_id, agent_uid, file_path, diff_content, intent_description,
                    intent_hash, confidence, status, test_result, test_exit_code,
                    rejection_reason, rejected_at_step, proposed_at, applied_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    mutation.id,
                    mutation.task_id,
                    mutation.agent_uid,
                    mutation.file_path,
                    mutation.diff_content,
                    mutation.intent_description,
                    mutation.intent_hash,
                    mutation.confidence,
                    mutation.status.value,
                    mutation.test_result,
                    mutation.test_exit_code,
                    mutation.rejection_reason,
                    mutation.rejected_at_step,
                    iso8601z(mutation.proposed_at),
                    None if mutation.applied_at is None else iso8601z(mutation.applied_at),
                ),
                conn=tx,
            )
        return mutation

    def get(
        self, mutation_id: str, *, conn: sqlite3.Connection | None = None
    ) -> Mutation | None:
        row = self._db.query_one(
            "SELECT * FROM mutations WHERE id = ?", (mutation_id,), conn=conn
        )
        return None if row is None else _mutation_from_row(row)

    def require(
        self, mutation_id: str, *, conn: sqlite3.Connection | None = None
    ) -> Mutation:
        if not isinstance(mutation_id, str) or not mutation_id.strip():
            raise ValidationError("mutation_id is required")
        mutation = self.get(mutation_id, conn=conn)
        if mutation is None:
            raise NotFoundError("mutation", mutation_id)
        return mutation

    def list_for_tasks(
        self,
        task_ids: Sequence[str],
        *,
        statuses: Sequence[MutationStatus | str] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Mutation]:
        self._validate_page(limit, offset)
        if not task_ids:
            return []
        placeholders = ",".join("?" for _ in task_ids)
        sql = f"SELECT * FROM mutations WHERE task_id IN ({placeholders})"
        params: list[object] = list(task_ids)
        if statuses is not None:
            parsed = [_as_mutation_status(item, "statuses[]").value for item in statuses]
            if parsed:
                sql += f" AND status IN ({','.join('?' for _ in parsed)})"
                params.extend(parsed)
        sql += " ORDER BY proposed_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [_mutation_from_row(row) for row in rows]

    def transition(
        self,
        mutation_id: str,
        status: MutationStatus | str,
        *,
        test_result: str | None | _Unset = UNSET,
        test_exit_code: int | None | _Unset = UNSET,
        rejection_reason: str | None = None,
        rejected_at_step: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Mutation:
        """Move a mutation forward; absorbing states and regressions raise."""

        target = _as_mutation_status(status, "status")
        with self._db.transaction(conn=conn) as tx:
            current = self.require(mutation_id, conn=tx)
            if not mutation_transition_allowed(current.status, target):
                raise InvalidTransitionError(
                    f"Mutation '{mutation_id}' cannot move from '{current.status.value}' "
                    f"to '{target.value}'."
                )
            assignments = ["status = ?"]
            params: list[object] = [target.value]
            if not isinstance(test_result, _Unset):
                assignments.append("test_result = ?")
                params.append(test_result)
            if not isinstance(test_exit_code, _Unset):
                assignments.append("test_exit_code = ?")
                params.append(test_exit_code)
            if target is MutationStatus.REJECTED:
                assignments.extend(("rejection_reason = ?", "rejected_at_step = ?"))
                params.extend((rejection_reason, rejected_at_step))
            if target is MutationStatus.APPLIED:
                assignments.append("applied_at = ?")
                params.append(_now_iso())
            params.extend((mutation_id, current.status.value))
            changed = self._db.execute(
                f"UPDATE mutations SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                cast("SQLParams", tuple(params)),
                conn=tx,
            )
            if changed != 1:
                raise InvalidTransitionError(
                    f"Mutation '{mutation_id}' changed status concurrently; retry the request."
                )
            return self.require(mutation_id, conn=tx)

    def acquire_run_lease(
        self,
        mutation_id: str,
        holder: str,
        *,
        ttl_seconds: float,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Claim the pipeline lease for ``mutation_id``; ``False`` if another holder has it.

        An expired lease (its holder crashed) can be taken over.
        """

        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        now = utc_now()
        with self._db.transaction(conn=conn) as tx:
            self.require(mutation_id, conn=tx)
            changed = self._db.execute(
                """
                UPDATE mutations SET run_lease = ?, run_lease_expires_at = ?
                WHERE id = ? AND (run_lease IS NULL OR run_lease_expires_at < ?)
                """,
                (
                    holder,
                    iso8601z(now + timedelta(seconds=ttl_seconds)),
                    mutation_id,
                    iso8601z(now),
                ),
                conn=tx,
            )
        return changed == 1

    def release_run_lease(
        self, mutation_id: str, holder: str, *, conn: sqlite3.Connection | None = None
    ) -> bool:
        changed = self._db.execute(
            """
            UPDATE mutations SET run_lease = NULL, run_lease_expires_at = NULL
            WHERE id = ? AND run_lease = ?
            """,
            (mutation_id, holder),
            conn=conn,
        )
        return changed == 1


class BudgetRequestRepo(_BaseRepo):
    """Repository for budget increase requests; resolution is a pending-only CAS."""

    def add(
        self, request: BudgetRequest, *, conn: sqlite3.Connection | None = None
    ) -> BudgetRequest:
        self._db.execute(
            """
            INSERT INTO budget_requests (
                id, task_id, requested_by, reason, requested_increment, current_budget,
                current_usage, status, approved_increment, resolution_note, created_at,
                updated_at, resolved_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.id,
                request.task_id,
                request.requested_by,
                request.reason,
                request.requested_increment,
                request.current_budget,
                request.current_usage,
                request.status.value,
                request.approved_increment,
                request.resolution_note,
                iso8601z(request.created_at),
                iso8601z(request.updated_at),
                None if request.resolved_at is None else iso8601z(request.resolved_at),
            ),
            conn=conn,
        )
        return request

    def get(
        self, request_id: str, *, conn: sqlite3.Connection | None = None
    ) -> BudgetRequest | None:
        row = self._db.query_one(
            "SELECT * FROM budget_requests WHERE id = ?", (request_id,), conn=conn
        )
        return None if row is None else _budget_request_from_row(row)

    def require(
        self, request_id: str, *, conn: sqlite3.Connection | None = None
    ) -> BudgetRequest:
        if not isinstance(request_id, str) or not request_id.strip():
            raise ValidationError("request_id is required")
        request = self.get(request_id, conn=conn)
        if request is None:
            raise NotFoundError("budget request", request_id)
        return request

    def list_for_tasks(
        self,
        task_ids: Sequence[str],
        *,
        status: BudgetRequestStatus | None = None,
        limit: int = 50,
    ) -> list[BudgetRequest]:
        self._validate_page(limit, 0)
        if not task_ids:
            return []
        placeholders = ",".join("?" for _ in task_ids)
        sql = f"SELECT * FROM budget_requests WHERE task_id IN ({placeholders})"
        params: list[object] = list(task_ids)
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [_budget_request_from_row(row) for row in rows]

    def latest_pending(
        self, task_id: str, *, conn: sqlite3.Connection | None = None
    ) -> BudgetRequest | None:
        row = self._db.query_one(
            """
            SELECT * FROM budget_requests
            WHERE task_id = ? AND status = ?
            ORDER BY created_at DESC, id DESC LIMIT 1
            """,
            (task_id, BudgetRequestStatus.PENDING.value),
            conn=conn,
        )
        return None if row is None else _budget_request_from_row(row)

    def resolve(
        self,
        request_id: str,
        *,
        status: BudgetRequestStatus,
        approved_increment: int | None,
        resolution_note: str,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Resolve a pending request. Returns ``False`` if it was no longer pending."""

        if status is BudgetRequestStatus.PENDING:
            raise InvalidTransitionError("cannot resolve a budget request back to pending")
        now = _now_iso()
        changed = self._db.execute(
            """
            UPDATE budget_requests
            SET status = ?, approved_increment = ?, resolution_note = ?,
                updated_at = ?, resolved_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                status.value,
                approved_increment,
                resolution_note,
                now,
                now,
                request_id,
                BudgetRequestStatus.PENDING.value,
            ),
            conn=conn,
        )
        return changed == 1


class AuditLogRepo(_BaseRepo):
    """Append-only activity log; the only externally polled state surface."""

    def append(
        self,
        *,
        actor: str,
        action: AuditAction | str,
        target_id: str | None = None,
        details: Mapping[str, object] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> AuditLogEntry:
        if not isinstance(actor, str) or not actor.strip():
            raise ValidationError("actor is required")
        parsed_action = _as_audit_action(action)
        payload = redact_structure(dict(details or {}))
        timestamp = utc_now()
        with self._db.transaction(conn=conn) as tx:
            entry_id = self._db.insert(
                """
                INSERT INTO audit_log (timestamp, actor, action, target_id, details_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    iso8601z(timestamp),
                    actor.strip(),
                    parsed_action.value,
                    target_id,
                    canonical_json(payload),
                ),
                conn=tx,
            )
        return AuditLogEntry(
            id=entry_id,
            timestamp=timestamp,
            actor=actor.strip(),
            action=parsed_action,
            target_id=target_id,
            details=cast("dict[str, JSONValue]", payload),
        )

    def list_since(self, since_id: int = 0, *, limit: int = 100) -> list[AuditLogEntry]:
        """Entries with ``id > since_id`` in ascending id order."""

        self._validate_page(limit, 0)
        rows = self._db.query_all(
            "SELECT * FROM audit_log WHERE id > ? ORDER BY id ASC LIMIT ?",
            (_as_since_id(since_id), limit),
        )
        return [_audit_entry_from_row(row) for row in rows]

    def list_for_targets(
        self,
        target_ids: Sequence[str],
        *,
        since_id: int = 0,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        self._validate_page(limit, 0)
        if not target_ids:
            return []
        placeholders = ",".join("?" for _ in target_ids)
        rows = self._db.query_all(
            f"""
            SELECT * FROM audit_log
            WHERE target_id IN ({placeholders}) AND id > ?
            ORDER BY id ASC LIMIT ?
            """,
            cast("SQLParams", (*target_ids, _as_since_id(since_id), limit)),
        )
        return [_audit_entry_from_row(row) for row in rows]

    def latest_id(self) -> int:
        row = self._db.query_one("SELECT COALESCE(MAX(id), 0) AS latest FROM audit_log")
        if row is None:
            return 0
        value = row["latest"]
        return value if isinstance(value, int) else 0


def _task_from_row(row: Mapping[str, RowValue]) -> Task:
    return Task.from_dict(
        {
            "id": row["id"],
            "parent_id": row["parent_id"],
            "tier": row["tier"],
            "domain": row["domain"],
            "objective": row["objective"],
            "status": row["status"],
            "token_budget": row["token_budget"],
            "token_usage": row["token_usage"],
            "risk_factor": row["risk_factor"],
            "compliance_score": row["compliance_score"],
            "retry_count": row["retry_count"],
            "agent_uid": row["agent_uid"],
            "target_files": _load_json_list(
                _row_text(row, "target_files_json", "tasks.target_files_json"),
                "tasks.target_files_json",
            ),
            "error_message": row["error_message"],
            "paused_from": row["paused_from"],
            "checksum": row["checksum"],
            "created_at": _row_text(row, "created_at", "tasks.created_at"),
            "updated_at": _row_text(row, "updated_at", "tasks.updated_at"),
        }
    )


def _mutation_from_row(row: Mapping[str, RowValue]) -> Mutation:
    return Mutation.from_dict(
        {
            key: row[key]
            for key in (
                "id",
                "task_id",
                "agent_uid",
                "file_path",
                "diff_content",
                "intent_description",
                "intent_hash",
                "confidence",
                "status",
                "test_result",
                "test_exit_code",
                "rejection_reason",
                "rejected_at_step",
                "proposed_at",
                "applied_at",
            )
        }
    )


def _budget_request_from_row(row: Mapping[str, RowValue]) -> BudgetRequest:
    return BudgetRequest.from_dict(
        {
            key: row[key]
            for key in (
                "id",
                "task_id",
                "requested_by",
                "reason",
                "requested_increment",
                "current_budget",
                "current_usage",
                "status",
                "approved_increment",
                "resolution_note",
                "created_at",
                "updated_at",
                "resolved_at",
            )
        }
    )


def _audit_entry_from_row(row: Mapping[str, RowValue]) -> AuditLogEntry:
    details_text = _row_text(row, "details_json", "audit_log.details_json")
    try:
        details = json.loads(details_text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"audit_log.details_json: invalid JSON ({exc})") from exc
    if not isinstance(details, dict):
        raise ValueError("audit_log.details_json: JSON root must be object")
    entry_id = row["id"]
    if not isinstance(entry_id, int):
        raise ValueError("audit_log.id: expected integer")
    return AuditLogEntry(
        id=entry_id,
        timestamp=cast("datetime", _row_text(row, "timestamp", "audit_log.timestamp")),
        actor=_row_text(row, "actor", "audit_log.actor"),
        action=cast("AuditAction", _row_text(row, "action", "audit_log.action")),
        target_id=cast("str | None", row["target_id"]),
        details=details,
    )


def _row_text(row: Mapping[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected text value")
    return value


def _load_json_list(payload: str, path: str) -> list[object]:
    try:
        loaded = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{path}: invalid JSON ({exc})") from exc
    if not isinstance(loaded, list):
        raise ValueError(f"{path}: JSON root must be array")
    return loaded


def _as_since_id(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError("since_id must be a non-negative integer")
    return value


def _clamp_score(value: int) -> int:
    return max(0, min(100, int(value)))


def _now_iso() -> str:
    return iso8601z(utc_now())


def _as_mutation_status(value: MutationStatus | str, path: str) -> MutationStatus:
    if isinstance(value, MutationStatus):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{path}: expected mutation status string")
    try:
        return MutationStatus(value)
    except ValueError as exc:
        allowed = ", ".join(sorted(item.value for item in MutationStatus))
        raise ValidationError(
            f"{path}: invalid mutation status {value!r}; allowed: {allowed}"
        ) from exc


def _as_audit_action(value: AuditAction | str) -> AuditAction:
    if isinstance(value, AuditAction):
        return value
    try:
        return AuditAction(value)
    except ValueError as exc:
        allowed = ", ".join(sorted(item.value for item in AuditAction))
        raise ValidationError(f"action: invalid audit action {value!r}; allowed: {allowed}") from exc


__all__ = [
    "AuditLogRepo",
    "BudgetRequestRepo",
    "MutationRepo",
    "TaskRepo",
    "UNSET",
]
