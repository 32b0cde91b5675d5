#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from caseflow.db.postgres import PostgresTxRunner, ensure_schema
from caseflow.db.rls import PostgresRlsManager


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create the case tables and apply per-organization RLS policies")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument(
        "--tables",
        default="",
        help="comma-separated table names; default covers cases, audit_logs and workflow_configs",
    )
    parser.add_argument("--skip-schema", action="store_true", help="do not run CREATE TABLE IF NOT EXISTS first")
    args = parser.parse_args(argv)

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    tables: list[str] | None = None
    if args.tables.strip():
        tables = [x.strip() for x in args.tables.split(",") if x.strip()]

    runner = PostgresTxRunner(dsn)
    if not args.skip_schema:
        ensure_schema(runner)
    applied = PostgresRlsManager(dsn, tables=tables, tx_runner=runner).apply()
    print(json.dumps({"applied_tables": applied, "count": len(applied)}, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
