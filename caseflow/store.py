from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from caseflow import errors
from caseflow.case_model import CaseRecord
from caseflow.db.postgres import PostgresTxRunner, ensure_schema
from caseflow.db.rls import PostgresRlsManager
from caseflow.errors import ApiError
from caseflow.repositories import (
    CaseQuery,
    ConditionalStore,
    InMemoryAuditLogsRepository,
    InMemoryCasesRepository,
    InMemoryWorkflowConfigsRepository,
    PostgresAuditLogsRepository,
    PostgresCasesRepository,
    PostgresWorkflowConfigsRepository,
    SqliteAuditLogsRepository,
    SqliteCasesRepository,
    SqliteWorkflowConfigsRepository,
    VersionedCase,
)
from caseflow.runtime_profile import RuntimeProfile
from caseflow.settings import EngineSettings, PipelineConfig

logger = logging.getLogger(__name__)

# Fields copied into the before/after snapshots of an audit event.
AUDIT_SNAPSHOT_FIELDS: tuple[str, ...] = (
    "stage",
    "sub_status",
    "workflow_track",
    "classification_tag",
    "assigned_to",
    "priority",
    "qc_classification_status",
    "form_status",
    "qc_form_status",
    "medical_review_status",
    "batch_id",
    "is_auto_passed",
)


def audit_snapshot(case: CaseRecord | None) -> dict[str, Any] | None:
    if case is None:
        return None
    out: dict[str, Any] = {}
    for name in AUDIT_SNAPSHOT_FIELDS:
        value = getattr(case, name)
        out[name] = getattr(value, "value", value)
    return out


@dataclass
class IdempotencyRecord:
    fingerprint: str
    data: dict[str, Any]


class InMemoryStore:
    def __init__(self, settings: EngineSettings | None = None) -> None:
        self.settings = settings or EngineSettings.from_env()
        self.pipeline_defaults = PipelineConfig.defaults_from_env()
        self.idempotency_records: dict[tuple[str, str], IdempotencyRecord] = {}
        self.cases: dict[str, dict[str, Any]] = {}
        self.audit_logs: list[dict[str, Any]] = []
        self.workflow_configs: dict[str, dict[str, Any]] = {}
        self._audit_lock = threading.Lock()
        self._idempotency_lock = threading.Lock()
        self.cases_repository: ConditionalStore = InMemoryCasesRepository(self.cases)
        self.audit_repository: Any = InMemoryAuditLogsRepository(self.audit_logs)
        self.workflow_configs_repository: Any = InMemoryWorkflowConfigsRepository(self.workflow_configs)

    def reset(self) -> None:
        self.idempotency_records.clear()
        self.cases.clear()
        self.audit_logs.clear()
        self.workflow_configs.clear()
        self.pipeline_defaults = PipelineConfig.defaults_from_env()

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    def run_idempotent(
        self,
        *,
        endpoint: str,
        tenant_id: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        key = (f"{tenant_id}:{endpoint}", idempotency_key)
        current_fingerprint = self._fingerprint(payload)
        with self._idempotency_lock:
            record = self.idempotency_records.get(key)
        if record is not None:
            if record.fingerprint != current_fingerprint:
                raise ApiError(
                    code="IDEMPOTENCY_CONFLICT",
                    message="same key with different payload",
                    error_class="validation",
                    retryable=False,
                    http_status=409,
                )
            return record.data

        data = execute()
        with self._idempotency_lock:
            self.idempotency_records.setdefault(
                key,
                IdempotencyRecord(fingerprint=current_fingerprint, data=data),
            )
        return data

    # cases

    def read_case(self, *, tenant_id: str, case_id: str) -> VersionedCase:
        found = self.cases_repository.read(tenant_id=tenant_id, case_id=case_id)
        if found is None:
            raise errors.case_not_found(case_id)
        return found

    def insert_case(self, *, case: CaseRecord) -> VersionedCase:
        token = self.cases_repository.insert(case=case)
        return VersionedCase(case=case, version_token=token)

    def write_case(self, *, case: CaseRecord, expected_token: str) -> str | None:
        return self.cases_repository.write_if_match(case=case, expected_token=expected_token)

    def query_cases(self, *, tenant_id: str, query: CaseQuery) -> list[VersionedCase]:
        return self.cases_repository.query(tenant_id=tenant_id, query=query)

    # workflow configuration

    def get_pipeline_config(self, *, tenant_id: str) -> PipelineConfig:
        payload = self.workflow_configs_repository.get(tenant_id=tenant_id)
        if payload is None:
            return PipelineConfig.from_payload({}, base=self.pipeline_defaults)
        return PipelineConfig.from_payload(payload, base=self.pipeline_defaults)

    def put_pipeline_config(self, *, tenant_id: str, payload: Mapping[str, Any]) -> PipelineConfig:
        current = self.get_pipeline_config(tenant_id=tenant_id)
        updated = PipelineConfig.from_payload(payload, base=current)
        self.workflow_configs_repository.upsert(tenant_id=tenant_id, payload=updated.to_payload())
        return updated

    # audit

    @staticmethod
    def _compute_audit_hash(*, log: dict[str, Any], prev_hash: str) -> str:
        material = {
            key: value
            for key, value in log.items()
            if key not in {"audit_hash", "prev_hash"}
        }
        material["prev_hash"] = prev_hash
        blob = json.dumps(material, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    def append_audit_event(
        self,
        *,
        tenant_id: str,
        case_id: str | None,
        action: str,
        actor_id: str,
        before: CaseRecord | None,
        after: CaseRecord | None,
        trace_id: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "audit_id": f"audit_{uuid.uuid4().hex[:12]}",
            "tenant_id": tenant_id,
            "case_id": case_id,
            "action": action,
            "actor_id": actor_id,
            "before": audit_snapshot(before),
            "after": audit_snapshot(after),
            "trace_id": trace_id,
            "occurred_at": self._utcnow_iso(),
        }
        if extra:
            entry["detail"] = dict(extra)
        with self._audit_lock:
            last = self.audit_repository.last_for_tenant(tenant_id=tenant_id)
            prev_hash = str(last.get("audit_hash") or "") if last else ""
            entry["prev_hash"] = prev_hash
            entry["audit_hash"] = self._compute_audit_hash(log=entry, prev_hash=prev_hash)
            return self.audit_repository.append(log=entry)

    def list_case_audit_logs(self, *, tenant_id: str, case_id: str) -> list[dict[str, Any]]:
        return self.audit_repository.list_for_case(tenant_id=tenant_id, case_id=case_id)

    def verify_audit_integrity(self, *, tenant_id: str) -> dict[str, Any]:
        rows = self.audit_repository.list_for_tenant(tenant_id=tenant_id)
        prev_hash = ""
        for idx, row in enumerate(rows):
            stored_prev = str(row.get("prev_hash") or "")
            if stored_prev != prev_hash:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "prev_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            expected = self._compute_audit_hash(log=row, prev_hash=stored_prev)
            actual = str(row.get("audit_hash") or "")
            if actual != expected:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "audit_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            prev_hash = actual
        return {
            "valid": True,
            "checked_count": len(rows),
            "last_hash": prev_hash,
        }


class SqliteBackedStore(InMemoryStore):
    """Case store persisted to a single SQLite file."""

    def __init__(self, db_path: str, settings: EngineSettings | None = None) -> None:
        super().__init__(settings)
        self.db_path = db_path
        self._sqlite_cases = SqliteCasesRepository(db_path)
        self._sqlite_audit = SqliteAuditLogsRepository(db_path)
        self._sqlite_configs = SqliteWorkflowConfigsRepository(db_path)
        self.cases_repository = self._sqlite_cases
        self.audit_repository = self._sqlite_audit
        self.workflow_configs_repository = self._sqlite_configs

    def reset(self) -> None:
        super().reset()
        self._sqlite_cases.reset()
        self._sqlite_audit.reset()
        self._sqlite_configs.reset()


class PostgresBackedStore(InMemoryStore):
    """Case store on PostgreSQL; every statement runs in an organization-scoped transaction."""

    def __init__(
        self,
        *,
        dsn: str,
        apply_rls: bool = False,
        settings: EngineSettings | None = None,
        tx_runner: PostgresTxRunner | None = None,
    ) -> None:
        super().__init__(settings)
        if not dsn.strip() and tx_runner is None:
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._tx_runner = tx_runner or PostgresTxRunner(dsn)
        ensure_schema(self._tx_runner)
        self.cases_repository = PostgresCasesRepository(tx_runner=self._tx_runner)
        self.audit_repository = PostgresAuditLogsRepository(tx_runner=self._tx_runner)
        self.workflow_configs_repository = PostgresWorkflowConfigsRepository(tx_runner=self._tx_runner)
        if apply_rls:
            PostgresRlsManager(dsn, tx_runner=self._tx_runner).apply()

    def reset(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute("TRUNCATE TABLE cases, audit_logs, workflow_configs")

        self._tx_runner.run_unscoped(_op)
        super().reset()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    settings = EngineSettings.from_env(env)
    backend = settings.store_backend
    RuntimeProfile.from_env(env).check_store(backend=backend, apply_rls=settings.postgres_apply_rls)
    if backend == "sqlite":
        return SqliteBackedStore(settings.sqlite_path, settings)
    if backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when CASEFLOW_STORE_BACKEND=postgres")
        return PostgresBackedStore(
            dsn=settings.postgres_dsn,
            apply_rls=settings.postgres_apply_rls,
            settings=settings,
        )
    if backend != "memory":
        logger.warning("unknown CASEFLOW_STORE_BACKEND %r, using in-memory store", backend)
    return InMemoryStore(settings)


store = create_store_from_env()
