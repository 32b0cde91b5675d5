from __future__ import annotations

from collections.abc import Callable
from typing import Any

TENANT_SETTING = "caseflow.current_org"

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS cases (
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
      payload JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS cases_queue_idx ON cases (tenant_id, stage, assigned_to)",
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
      audit_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      case_id TEXT,
      action TEXT NOT NULL,
      seq BIGSERIAL,
      occurred_at TEXT,
      payload JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_configs (
      tenant_id TEXT PRIMARY KEY,
      payload JSONB NOT NULL,
      updated_at TEXT
    )
    """,
)


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction scoped to an organization."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(
        self,
        *,
        tenant_id: str,
        fn: Callable[[Any], Any],
    ) -> Any:
        if not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT set_config('{TENANT_SETTING}', %s, true)", (tenant_id,))
            result = fn(conn)
            conn.commit()
            return result

    def run_unscoped(self, fn: Callable[[Any], Any]) -> Any:
        """Administrative work (DDL, policies) that must not carry an organization scope."""
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            result = fn(conn)
            conn.commit()
            return result


def ensure_schema(tx_runner: PostgresTxRunner) -> None:
    def _op(conn: Any) -> None:
        with conn.cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)

    tx_runner.run_unscoped(_op)
