from __future__ import annotations

import logging
from pathlib import Path

import pytest

from caseflow.errors import ApiError
from caseflow.runtime_profile import RuntimeProfile
from caseflow.settings import EngineSettings
from caseflow.store import InMemoryStore, PostgresBackedStore, SqliteBackedStore, create_store_from_env


def test_sqlite_store_persists_cases_audit_and_config_across_instances(tmp_path: Path, make_case):
    db_path = str(tmp_path / "store.sqlite3")
    store1 = SqliteBackedStore(db_path, EngineSettings.from_env({}))
    created = store1.insert_case(case=make_case())
    store1.append_audit_event(
        tenant_id="org_default",
        case_id="case_0001",
        action="case_created",
        actor_id="ingestion",
        before=None,
        after=created.case,
    )
    store1.put_pipeline_config(tenant_id="org_default", payload={"qcSamplingPercentage": 15})

    store2 = SqliteBackedStore(db_path, EngineSettings.from_env({}))
    reloaded = store2.read_case(tenant_id="org_default", case_id="case_0001")

    assert reloaded.version_token == created.version_token
    assert reloaded.case == created.case
    assert store2.get_pipeline_config(tenant_id="org_default").qc_sampling_percentage == 15.0
    assert [x["action"] for x in store2.list_case_audit_logs(tenant_id="org_default", case_id="case_0001")] == [
        "case_created"
    ]
    assert store2.verify_audit_integrity(tenant_id="org_default")["valid"] is True

    store2.reset()
    with pytest.raises(ApiError):
        store2.read_case(tenant_id="org_default", case_id="case_0001")


def test_idempotency_replays_and_detects_payload_change():
    store = InMemoryStore(EngineSettings.from_env({}))
    calls: list[int] = []

    def _execute():
        calls.append(1)
        return {"id": "case_1", "n": len(calls)}

    first = store.run_idempotent(
        endpoint="classify:case_1",
        tenant_id="org_a",
        idempotency_key="idem_1",
        payload={"tag": "ICSR"},
        execute=_execute,
    )
    replay = store.run_idempotent(
        endpoint="classify:case_1",
        tenant_id="org_a",
        idempotency_key="idem_1",
        payload={"tag": "ICSR"},
        execute=_execute,
    )
    other_org = store.run_idempotent(
        endpoint="classify:case_1",
        tenant_id="org_b",
        idempotency_key="idem_1",
        payload={"tag": "AOI"},
        execute=_execute,
    )

    assert replay == first
    assert other_org["n"] == 2
    with pytest.raises(ApiError) as exc:
        store.run_idempotent(
            endpoint="classify:case_1",
            tenant_id="org_a",
            idempotency_key="idem_1",
            payload={"tag": "AOI"},
            execute=_execute,
        )
    assert exc.value.code == "IDEMPOTENCY_CONFLICT"
    assert len(calls) == 2


def test_store_factory_defaults_to_in_memory():
    store = create_store_from_env({})
    assert type(store) is InMemoryStore


def test_store_factory_builds_sqlite_store(tmp_path: Path):
    path = str(tmp_path / "factory.sqlite3")
    store = create_store_from_env({"CASEFLOW_STORE_BACKEND": "sqlite", "CASEFLOW_STORE_SQLITE_PATH": path})
    assert isinstance(store, SqliteBackedStore)
    assert store.db_path == path


def test_store_factory_rejects_non_postgres_when_true_stack_required():
    with pytest.raises(RuntimeError, match="postgres"):
        create_store_from_env({"CASEFLOW_REQUIRE_TRUESTACK": "true", "CASEFLOW_STORE_BACKEND": "sqlite"})


def test_store_factory_rejects_postgres_without_rls_when_isolation_required():
    with pytest.raises(RuntimeError, match="POSTGRES_APPLY_RLS"):
        create_store_from_env({"CASEFLOW_REQUIRE_RLS": "true", "CASEFLOW_STORE_BACKEND": "postgres"})


def test_runtime_profile_accepts_isolated_postgres():
    profile = RuntimeProfile.from_env({"CASEFLOW_REQUIRE_TRUESTACK": "yes", "CASEFLOW_REQUIRE_RLS": "1"})
    assert profile == RuntimeProfile(durable_store_required=True, row_level_security_required=True)
    profile.check_store(backend="postgres", apply_rls=True)
    with pytest.raises(RuntimeError):
        profile.check_store(backend="memory", apply_rls=True)
    assert RuntimeProfile.from_env({}) == RuntimeProfile()


def test_store_factory_requires_dsn_for_postgres():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_store_from_env({"CASEFLOW_STORE_BACKEND": "postgres"})


def test_store_factory_warns_on_unknown_backend(caplog: pytest.LogCaptureFixture):
    with caplog.at_level(logging.WARNING, logger="caseflow.store"):
        store = create_store_from_env({"CASEFLOW_STORE_BACKEND": "redis"})
    assert type(store) is InMemoryStore
    assert "redis" in caplog.text


class RecordingRunner:
    def __init__(self):
        self.unscoped: list[str] = []

    def _connection(self):
        runner = self

        class FakeCursor:
            rowcount = 0

            def __enter__(self):
                return self

            def __exit__(self, exc_type, exc, tb):
                return False

            def execute(self, query: str, params=None):
                runner.unscoped.append(" ".join(query.split()))

        class FakeConnection:
            def cursor(self):
                return FakeCursor()

        return FakeConnection()

    def run_unscoped(self, fn):
        return fn(self._connection())

    def run_in_tx(self, *, tenant_id: str, fn):
        raise AssertionError("no organization-scoped statement expected")


def test_postgres_store_creates_schema_and_policies():
    runner = RecordingRunner()

    store = PostgresBackedStore(dsn="", apply_rls=True, settings=EngineSettings.from_env({}), tx_runner=runner)
    store.reset()

    assert any(x.startswith("CREATE TABLE IF NOT EXISTS cases") for x in runner.unscoped)
    assert any(x.startswith("CREATE POLICY workflow_configs_org_isolation") for x in runner.unscoped)
    assert runner.unscoped[-1] == "TRUNCATE TABLE cases, audit_logs, workflow_configs"


def test_postgres_store_requires_dsn_without_runner():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        PostgresBackedStore(dsn=" ")
