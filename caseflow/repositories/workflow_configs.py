from __future__ import annotations

import json
import re
import sqlite3
from pathlib import Path
from typing import Any

from caseflow.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryWorkflowConfigsRepository:
    def __init__(self, configs: dict[str, dict[str, Any]]) -> None:
        self._configs = configs

    def get(self, *, tenant_id: str) -> dict[str, Any] | None:
        row = self._configs.get(tenant_id)
        return dict(row) if row is not None else None

    def upsert(self, *, tenant_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        self._configs[tenant_id] = dict(payload)
        return dict(payload)


class SqliteWorkflowConfigsRepository:
    def __init__(self, db_path: str, *, table_name: str = "workflow_configs") -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._table_name = _validate_identifier(table_name)
        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table_name} (
                  tenant_id TEXT PRIMARY KEY,
                  payload TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path), timeout=30)

    def get(self, *, tenant_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT payload FROM {self._table_name} WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()
        return json.loads(row[0]) if row is not None else None

    def upsert(self, *, tenant_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO {self._table_name} (tenant_id, payload) VALUES (?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET payload = excluded.payload
                """,
                (tenant_id, json.dumps(payload, ensure_ascii=True, sort_keys=True)),
            )
            conn.commit()
        return dict(payload)

    def reset(self) -> None:
        with self._connect() as conn:
            conn.execute(f"DELETE FROM {self._table_name}")
            conn.commit()


class PostgresWorkflowConfigsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "workflow_configs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def get(self, *, tenant_id: str) -> dict[str, Any] | None:
        sql = f"SELECT payload FROM {self._table_name} WHERE tenant_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                row = cur.fetchone()
            if row is None:
                return None
            payload = row[0]
            return payload if isinstance(payload, dict) else json.loads(payload)

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def upsert(self, *, tenant_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (tenant_id, payload) VALUES (%s, %s::jsonb)
            ON CONFLICT(tenant_id) DO UPDATE
            SET payload = EXCLUDED.payload
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, json.dumps(payload, ensure_ascii=True, sort_keys=True)))
            return dict(payload)

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
