from __future__ import annotations

import json
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any

from caseflow.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryAuditLogsRepository:
    def __init__(self, audit_logs: list[dict[str, Any]]) -> None:
        self._audit_logs = audit_logs
        self._lock = threading.Lock()

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        with self._lock:
            self._audit_logs.append(item)
        return item

    def list_for_tenant(self, *, tenant_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(x) for x in self._audit_logs if x.get("tenant_id") == tenant_id]

    def list_for_case(self, *, tenant_id: str, case_id: str) -> list[dict[str, Any]]:
        return [x for x in self.list_for_tenant(tenant_id=tenant_id) if x.get("case_id") == case_id]

    def last_for_tenant(self, *, tenant_id: str) -> dict[str, Any] | None:
        rows = self.list_for_tenant(tenant_id=tenant_id)
        return rows[-1] if rows else None


class SqliteAuditLogsRepository:
    def __init__(self, db_path: str, *, table_name: str = "audit_logs") -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._table_name = _validate_identifier(table_name)
        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table_name} (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  audit_id TEXT NOT NULL UNIQUE,
                  tenant_id TEXT NOT NULL,
                  case_id TEXT,
                  action TEXT NOT NULL,
                  occurred_at TEXT,
                  payload TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path), timeout=30)

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO {self._table_name} (audit_id, tenant_id, case_id, action, occurred_at, payload)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    item["audit_id"],
                    item["tenant_id"],
                    item.get("case_id"),
                    item.get("action"),
                    item.get("occurred_at"),
                    json.dumps(item, ensure_ascii=True, sort_keys=True),
                ),
            )
            conn.commit()
        return item

    def _select(self, where: str, params: tuple[Any, ...], *, suffix: str = "") -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT payload FROM {self._table_name} WHERE {where} ORDER BY seq {suffix}",
                params,
            ).fetchall()
        return [json.loads(x[0]) for x in rows]

    def list_for_tenant(self, *, tenant_id: str) -> list[dict[str, Any]]:
        return self._select("tenant_id = ?", (tenant_id,), suffix="ASC")

    def list_for_case(self, *, tenant_id: str, case_id: str) -> list[dict[str, Any]]:
        return self._select("tenant_id = ? AND case_id = ?", (tenant_id, case_id), suffix="ASC")

    def last_for_tenant(self, *, tenant_id: str) -> dict[str, Any] | None:
        rows = self._select("tenant_id = ?", (tenant_id,), suffix="DESC LIMIT 1")
        return rows[0] if rows else None

    def reset(self) -> None:
        with self._connect() as conn:
            conn.execute(f"DELETE FROM {self._table_name}")
            conn.commit()


class PostgresAuditLogsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "audit_logs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        tenant_id = str(item["tenant_id"])
        sql = f"""
            INSERT INTO {self._table_name} (
                audit_id, tenant_id, case_id, action, occurred_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["audit_id"],
                        tenant_id,
                        item.get("case_id"),
                        item.get("action"),
                        item.get("occurred_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def _select(self, *, tenant_id: str, where: str, params: tuple[Any, ...], suffix: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE {where}
            ORDER BY seq {suffix}
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            out: list[dict[str, Any]] = []
            for row in rows:
                payload = row[0]
                if isinstance(payload, str):
                    payload = json.loads(payload)
                if isinstance(payload, dict):
                    out.append(payload)
            return out

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_for_tenant(self, *, tenant_id: str) -> list[dict[str, Any]]:
        return self._select(tenant_id=tenant_id, where="tenant_id = %s", params=(tenant_id,), suffix="ASC")

    def list_for_case(self, *, tenant_id: str, case_id: str) -> list[dict[str, Any]]:
        return self._select(
            tenant_id=tenant_id,
            where="tenant_id = %s AND case_id = %s",
            params=(tenant_id, case_id),
            suffix="ASC",
        )

    def last_for_tenant(self, *, tenant_id: str) -> dict[str, Any] | None:
        rows = self._select(tenant_id=tenant_id, where="tenant_id = %s", params=(tenant_id,), suffix="DESC LIMIT 1")
        return rows[0] if rows else None
