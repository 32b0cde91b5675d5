from __future__ import annotations

import re
from typing import Any

from caseflow.db.postgres import TENANT_SETTING, PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class PostgresRlsManager:
    """Apply per-organization row level security on the case tables."""

    DEFAULT_TABLES: tuple[str, ...] = (
        "cases",
        "audit_logs",
        "workflow_configs",
    )

    def __init__(
        self,
        dsn: str,
        *,
        tables: list[str] | tuple[str, ...] | None = None,
        tx_runner: PostgresTxRunner | None = None,
    ) -> None:
        self._tx_runner = tx_runner or PostgresTxRunner(dsn)
        target_tables = list(self.DEFAULT_TABLES if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        self._tables = [_validate_identifier(name) for name in target_tables]

    def statements_for(self, table: str) -> list[str]:
        policy = f"{table}_org_isolation"
        return [
            f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
            f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
            f"DROP POLICY IF EXISTS {policy} ON {table}",
            f"""
            CREATE POLICY {policy} ON {table}
            USING ({table}.tenant_id = current_setting('{TENANT_SETTING}', true))
            WITH CHECK ({table}.tenant_id = current_setting('{TENANT_SETTING}', true))
            """,
        ]

    def apply(self) -> list[str]:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                for table in self._tables:
                    for statement in self.statements_for(table):
                        cur.execute(statement)

        self._tx_runner.run_unscoped(_op)
        return list(self._tables)
