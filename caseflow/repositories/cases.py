from __future__ import annotations

import json
import re
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from caseflow import errors
from caseflow.case_model import (
    CaseRecord,
    Priority,
    QcFormStatus,
    QcStatus,
    Stage,
    SubStatus,
    from_record,
    to_record,
)
from caseflow.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _new_version_token() -> str:
    return f"v_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class VersionedCase:
    case: CaseRecord
    version_token: str


def _awaiting_sampling(row: dict[str, Any]) -> bool:
    # high-priority cases skip sampling and go straight to manual QC
    return (
        row.get("stage") == Stage.QC_TRIAGE.value
        and not row.get("batchId")
        and row.get("priority") != Priority.HIGH.value
    )


@dataclass(frozen=True)
class CaseQuery:
    """Filter over one organization's cases.

    Empty tuples mean "no constraint". ``unassigned`` matches cases with no
    holder, or whose lock is older than ``lock_expired_before`` when given.
    ``sampled_only`` drops QC-triage cases still waiting for a sampling batch.
    """

    stages: tuple[Stage, ...] = ()
    sub_statuses: tuple[SubStatus, ...] = ()
    qc_statuses: tuple[QcStatus, ...] = ()
    qc_form_statuses: tuple[QcFormStatus, ...] = ()
    assigned_to: str | None = None
    unassigned: bool = False
    lock_expired_before: str | None = None
    batch_unset: bool = False
    sampled_only: bool = False
    priorities: tuple[Priority, ...] = ()
    order: str = "priority"
    limit: int | None = None

    def matches(self, row: dict[str, Any]) -> bool:
        if self.stages and row.get("stage") not in {x.value for x in self.stages}:
            return False
        if self.sub_statuses and row.get("subStatus") not in {x.value for x in self.sub_statuses}:
            return False
        if self.qc_statuses and row.get("qcClassificationStatus") not in {x.value for x in self.qc_statuses}:
            return False
        if self.qc_form_statuses and row.get("qcFormStatus") not in {x.value for x in self.qc_form_statuses}:
            return False
        if self.priorities and row.get("priority") not in {x.value for x in self.priorities}:
            return False
        if self.assigned_to is not None and row.get("assignedTo") != self.assigned_to:
            return False
        if self.unassigned and row.get("assignedTo"):
            locked_at = row.get("lockedAt")
            expired = (
                self.lock_expired_before is not None
                and locked_at is not None
                and str(locked_at) < self.lock_expired_before
            )
            if not expired:
                return False
        if self.batch_unset and row.get("batchId"):
            return False
        if self.sampled_only and _awaiting_sampling(row):
            return False
        return True

    def sort_key(self, row: dict[str, Any]) -> tuple[Any, ...]:
        created = (str(row.get("createdAt") or ""), str(row.get("id") or ""))
        if self.order == "created":
            return created
        return (0 if row.get("priority") == Priority.HIGH.value else 1, *created)

    def to_sql(self, placeholder: str) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []

        def _in(column: str, values: tuple[Any, ...]) -> None:
            if not values:
                return
            marks = ", ".join(placeholder for _ in values)
            clauses.append(f"{column} IN ({marks})")
            params.extend(x.value for x in values)

        _in("stage", self.stages)
        _in("sub_status", self.sub_statuses)
        _in("qc_classification_status", self.qc_statuses)
        _in("qc_form_status", self.qc_form_statuses)
        _in("priority", self.priorities)
        if self.assigned_to is not None:
            clauses.append(f"assigned_to = {placeholder}")
            params.append(self.assigned_to)
        if self.unassigned:
            if self.lock_expired_before is not None:
                clauses.append(f"(assigned_to IS NULL OR locked_at < {placeholder})")
                params.append(self.lock_expired_before)
            else:
                clauses.append("assigned_to IS NULL")
        if self.batch_unset:
            clauses.append("batch_id IS NULL")
        if self.sampled_only:
            clauses.append(
                f"(stage <> '{Stage.QC_TRIAGE.value}' OR batch_id IS NOT NULL OR priority = '{Priority.HIGH.value}')"
            )
        where = " AND ".join(clauses)
        if self.order == "created":
            order_by = "created_at ASC, id ASC"
        else:
            order_by = "CASE priority WHEN 'high' THEN 0 ELSE 1 END ASC, created_at ASC, id ASC"
        sql = (f" AND {where}" if where else "") + f" ORDER BY {order_by}"
        if self.limit is not None:
            sql += f" LIMIT {int(self.limit)}"
        return sql, params


class ConditionalStore(Protocol):
    def read(self, *, tenant_id: str, case_id: str) -> VersionedCase | None: ...

    def write_if_match(self, *, case: CaseRecord, expected_token: str) -> str | None: ...

    def insert(self, *, case: CaseRecord) -> str: ...

    def query(self, *, tenant_id: str, query: CaseQuery) -> list[VersionedCase]: ...


def _index_columns(row: dict[str, Any]) -> tuple[Any, ...]:
    return (
        row["stage"],
        row["subStatus"],
        row.get("assignedTo"),
        row.get("lockedAt"),
        row["priority"],
        row.get("qcClassificationStatus"),
        row.get("qcFormStatus"),
        row.get("batchId"),
        row.get("createdAt") or "",
    )


class InMemoryCasesRepository:
    def __init__(self, cases: dict[str, dict[str, Any]]) -> None:
        self._cases = cases
        self._lock = threading.RLock()

    def read(self, *, tenant_id: str, case_id: str) -> VersionedCase | None:
        with self._lock:
            row = self._cases.get(case_id)
            if row is None or row.get("organizationId") != tenant_id:
                return None
            return VersionedCase(case=from_record(row), version_token=str(row["versionToken"]))

    def write_if_match(self, *, case: CaseRecord, expected_token: str) -> str | None:
        with self._lock:
            row = self._cases.get(case.id)
            if row is None or row.get("organizationId") != case.organization_id:
                return None
            if row.get("versionToken") != expected_token:
                return None
            token = _new_version_token()
            self._cases[case.id] = to_record(case, version_token=token)
            return token

    def insert(self, *, case: CaseRecord) -> str:
        with self._lock:
            if case.id in self._cases:
                raise errors.case_exists(case.id)
            token = _new_version_token()
            self._cases[case.id] = to_record(case, version_token=token)
            return token

    def query(self, *, tenant_id: str, query: CaseQuery) -> list[VersionedCase]:
        with self._lock:
            rows = [
                dict(x)
                for x in self._cases.values()
                if x.get("organizationId") == tenant_id and query.matches(x)
            ]
        rows.sort(key=query.sort_key)
        if query.limit is not None:
            rows = rows[: query.limit]
        return [VersionedCase(case=from_record(x), version_token=str(x["versionToken"])) for x in rows]


class SqliteCasesRepository:
    """Cases in one SQLite table; writes are version-guarded UPDATEs."""

    def __init__(self, db_path: str, *, table_name: str = "cases") -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._table_name = _validate_identifier(table_name)
        self._initialize_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path), timeout=30)

    def _initialize_database(self) -> None:
        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table_name} (
                  id TEXT PRIMARY KEY,
                  tenant_id TEXT NOT NULL,
                  stage TEXT NOT NULL,
                  sub_status TEXT NOT NULL,
                  assigned_to TEXT,
                  locked_at TEXT,
                  priority TEXT NOT NULL,
                  qc_classification_status TEXT,
                  qc_form_status TEXT,
                  batch_id TEXT,
                  created_at TEXT NOT NULL,
                  version_token TEXT NOT NULL,
                  payload TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def read(self, *, tenant_id: str, case_id: str) -> VersionedCase | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT payload, version_token FROM {self._table_name} WHERE id = ? AND tenant_id = ?",
                (case_id, tenant_id),
            ).fetchone()
        if row is None:
            return None
        return VersionedCase(case=from_record(json.loads(row[0])), version_token=str(row[1]))

    def write_if_match(self, *, case: CaseRecord, expected_token: str) -> str | None:
        token = _new_version_token()
        row = to_record(case)
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE {self._table_name}
                SET stage = ?, sub_status = ?, assigned_to = ?, locked_at = ?, priority = ?,
                    qc_classification_status = ?, qc_form_status = ?, batch_id = ?, created_at = ?,
                    version_token = ?, payload = ?
                WHERE id = ? AND tenant_id = ? AND version_token = ?
                """,
                (
                    *_index_columns(row),
                    token,
                    json.dumps(row, ensure_ascii=True, sort_keys=True),
                    case.id,
                    case.organization_id,
                    expected_token,
                ),
            )
            conn.commit()
            changed = cur.rowcount
        return token if changed == 1 else None

    def insert(self, *, case: CaseRecord) -> str:
        token = _new_version_token()
        row = to_record(case)
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO {self._table_name} (
                      stage, sub_status, assigned_to, locked_at, priority,
                      qc_classification_status, qc_form_status, batch_id, created_at,
                      version_token, payload, id, tenant_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        *_index_columns(row),
                        token,
                        json.dumps(row, ensure_ascii=True, sort_keys=True),
                        case.id,
                        case.organization_id,
                    ),
                )
                conn.commit()
        except sqlite3.IntegrityError:
            raise errors.case_exists(case.id) from None
        return token

    def query(self, *, tenant_id: str, query: CaseQuery) -> list[VersionedCase]:
        tail, params = query.to_sql("?")
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT payload, version_token FROM {self._table_name} WHERE tenant_id = ?{tail}",
                (tenant_id, *params),
            ).fetchall()
        return [VersionedCase(case=from_record(json.loads(x[0])), version_token=str(x[1])) for x in rows]

    def reset(self) -> None:
        with self._connect() as conn:
            conn.execute(f"DELETE FROM {self._table_name}")
            conn.commit()


class PostgresCasesRepository:
    """Cases repository for postgres backend; every statement runs inside the organization scope."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "cases") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _payload(row: Any) -> dict[str, Any]:
        if isinstance(row, dict):
            return row
        return json.loads(row)

    def read(self, *, tenant_id: str, case_id: str) -> VersionedCase | None:
        sql = f"""
            SELECT payload, version_token
            FROM {self._table_name}
            WHERE tenant_id = %s AND id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> VersionedCase | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, case_id))
                row = cur.fetchone()
            if row is None:
                return None
            return VersionedCase(case=from_record(self._payload(row[0])), version_token=str(row[1]))

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def write_if_match(self, *, case: CaseRecord, expected_token: str) -> str | None:
        token = _new_version_token()
        row = to_record(case)
        sql = f"""
            UPDATE {self._table_name}
            SET stage = %s, sub_status = %s, assigned_to = %s, locked_at = %s, priority = %s,
                qc_classification_status = %s, qc_form_status = %s, batch_id = %s, created_at = %s,
                version_token = %s, payload = %s::jsonb
            WHERE id = %s AND tenant_id = %s AND version_token = %s
        """

        def _op(conn: Any) -> str | None:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        *_index_columns(row),
                        token,
                        json.dumps(row, ensure_ascii=True, sort_keys=True),
                        case.id,
                        case.organization_id,
                        expected_token,
                    ),
                )
                changed = cur.rowcount
            return token if changed == 1 else None

        return self._tx_runner.run_in_tx(tenant_id=case.organization_id, fn=_op)

    def insert(self, *, case: CaseRecord) -> str:
        token = _new_version_token()
        row = to_record(case)
        sql = f"""
            INSERT INTO {self._table_name} (
              stage, sub_status, assigned_to, locked_at, priority,
              qc_classification_status, qc_form_status, batch_id, created_at,
              version_token, payload, id, tenant_id
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s)
            ON CONFLICT (id) DO NOTHING
        """

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        *_index_columns(row),
                        token,
                        json.dumps(row, ensure_ascii=True, sort_keys=True),
                        case.id,
                        case.organization_id,
                    ),
                )
                return cur.rowcount

        inserted = self._tx_runner.run_in_tx(tenant_id=case.organization_id, fn=_op)
        if inserted != 1:
            raise errors.case_exists(case.id)
        return token

    def query(self, *, tenant_id: str, query: CaseQuery) -> list[VersionedCase]:
        tail, params = query.to_sql("%s")
        sql = f"SELECT payload, version_token FROM {self._table_name} WHERE tenant_id = %s{tail}"

        def _op(conn: Any) -> list[VersionedCase]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, *params))
                rows = cur.fetchall() or []
            return [VersionedCase(case=from_record(self._payload(x[0])), version_token=str(x[1])) for x in rows]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
