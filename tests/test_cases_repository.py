from __future__ import annotations

from datetime import UTC, datetime

import pytest

from caseflow.case_model import Priority, QcStatus, Stage, SubStatus, to_record
from caseflow.errors import ApiError
from caseflow.repositories import (
    CaseQuery,
    InMemoryAuditLogsRepository,
    InMemoryCasesRepository,
    PostgresAuditLogsRepository,
    PostgresCasesRepository,
    SqliteAuditLogsRepository,
    SqliteCasesRepository,
    SqliteWorkflowConfigsRepository,
)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryCasesRepository({})
    return SqliteCasesRepository(str(tmp_path / "cases.sqlite3"))


def test_insert_and_read_are_scoped_by_organization(repo, make_case):
    token = repo.insert(case=make_case(title="Hepatotoxicity report"))

    found = repo.read(tenant_id="org_default", case_id="case_0001")

    assert found is not None
    assert found.version_token == token
    assert found.case.title == "Hepatotoxicity report"
    assert repo.read(tenant_id="org_other", case_id="case_0001") is None


def test_duplicate_insert_is_rejected(repo, make_case):
    case = make_case()
    repo.insert(case=case)
    with pytest.raises(ApiError) as exc:
        repo.insert(case=case)
    assert exc.value.code == "CASE_ALREADY_EXISTS"


def test_write_if_match_rejects_stale_token(repo, make_case):
    case = make_case()
    first = repo.insert(case=case)
    case.assigned_to = "user_a"
    second = repo.write_if_match(case=case, expected_token=first)

    case.assigned_to = "user_b"
    stale = repo.write_if_match(case=case, expected_token=first)

    assert second is not None and second != first
    assert stale is None
    stored = repo.read(tenant_id="org_default", case_id=case.id)
    assert stored.case.assigned_to == "user_a"
    assert stored.version_token == second


def test_write_if_match_never_crosses_organizations(repo, make_case):
    case = make_case()
    token = repo.insert(case=case)
    case.organization_id = "org_other"
    assert repo.write_if_match(case=case, expected_token=token) is None


def test_query_orders_high_priority_first_then_oldest(repo, make_case):
    repo.insert(case=make_case())
    repo.insert(case=make_case(priority=Priority.HIGH))
    repo.insert(case=make_case())

    by_priority = repo.query(tenant_id="org_default", query=CaseQuery())
    by_created = repo.query(tenant_id="org_default", query=CaseQuery(order="created"))

    assert [x.case.id for x in by_priority] == ["case_0002", "case_0001", "case_0003"]
    assert [x.case.id for x in by_created] == ["case_0001", "case_0002", "case_0003"]


def test_query_filters(repo, make_case):
    repo.insert(case=make_case())
    repo.insert(case=make_case(assigned_to="user_a", locked_at="2026-02-01T00:00:00+00:00"))
    repo.insert(
        case=make_case(
            stage=Stage.QC_TRIAGE,
            sub_status=SubStatus.ASSESSMENT,
            qc_classification_status=QcStatus.PENDING,
            batch_id="batch_1",
        )
    )
    repo.insert(
        case=make_case(
            stage=Stage.QC_TRIAGE,
            sub_status=SubStatus.ASSESSMENT,
            qc_classification_status=QcStatus.PENDING,
            priority=Priority.HIGH,
        )
    )

    def ids(**kwargs) -> list[str]:
        return [x.case.id for x in repo.query(tenant_id="org_default", query=CaseQuery(**kwargs))]

    assert ids(stages=(Stage.TRIAGE,)) == ["case_0001", "case_0002"]
    assert ids(stages=(Stage.TRIAGE,), unassigned=True) == ["case_0001"]
    assert ids(assigned_to="user_a") == ["case_0002"]
    assert ids(
        stages=(Stage.TRIAGE,),
        unassigned=True,
        lock_expired_before="2026-03-01T00:00:00+00:00",
    ) == ["case_0001", "case_0002"]
    assert ids(qc_statuses=(QcStatus.PENDING,), batch_unset=True) == ["case_0004"]
    assert ids(stages=(Stage.QC_TRIAGE,), priorities=(Priority.NORMAL,)) == ["case_0003"]
    assert ids(limit=2) == ["case_0004", "case_0001"]
    assert repo.query(tenant_id="org_other", query=CaseQuery()) == []


def test_sqlite_repository_survives_reopen(tmp_path, make_case):
    path = str(tmp_path / "nested" / "cases.sqlite3")
    token = SqliteCasesRepository(path).insert(case=make_case(form_data={"dose": "10mg"}))

    reopened = SqliteCasesRepository(path).read(tenant_id="org_default", case_id="case_0001")

    assert reopened is not None
    assert reopened.version_token == token
    assert reopened.case.form_data == {"dose": "10mg"}


def test_sqlite_repository_rejects_invalid_table_name(tmp_path):
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        SqliteCasesRepository(str(tmp_path / "x.sqlite3"), table_name="cases;drop table cases")


@pytest.mark.parametrize("kind", ["memory", "sqlite"])
def test_audit_repository_keeps_append_order(kind, tmp_path):
    if kind == "memory":
        audit = InMemoryAuditLogsRepository([])
    else:
        audit = SqliteAuditLogsRepository(str(tmp_path / "audit.sqlite3"))
    for idx in range(3):
        audit.append(log={"audit_id": f"audit_{idx}", "tenant_id": "org_a", "case_id": "c1", "action": f"a{idx}"})
    audit.append(log={"audit_id": "audit_x", "tenant_id": "org_b", "case_id": "c1", "action": "other"})

    assert [x["audit_id"] for x in audit.list_for_tenant(tenant_id="org_a")] == ["audit_0", "audit_1", "audit_2"]
    assert audit.last_for_tenant(tenant_id="org_a")["audit_id"] == "audit_2"
    assert [x["action"] for x in audit.list_for_case(tenant_id="org_b", case_id="c1")] == ["other"]
    assert audit.last_for_tenant(tenant_id="org_c") is None


def test_sqlite_workflow_configs_upsert(tmp_path):
    configs = SqliteWorkflowConfigsRepository(str(tmp_path / "cfg.sqlite3"))
    assert configs.get(tenant_id="org_a") is None
    configs.upsert(tenant_id="org_a", payload={"qcSamplingPercentage": 10})
    configs.upsert(tenant_id="org_a", payload={"qcSamplingPercentage": 25})
    assert configs.get(tenant_id="org_a") == {"qcSamplingPercentage": 25}


class FakeCursor:
    def __init__(self, log: list[tuple[str, tuple | None]], *, rowcount: int, rows: list[tuple]):
        self._log = log
        self.rowcount = rowcount
        self._rows = rows

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._log.append((" ".join(query.split()), params))

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeRunner:
    def __init__(self, *, rowcount: int = 1, rows: list[tuple] | None = None):
        self.tenants: list[str] = []
        self.statements: list[tuple[str, tuple | None]] = []
        self.rowcount = rowcount
        self.rows = rows or []

    def run_in_tx(self, *, tenant_id: str, fn):
        self.tenants.append(tenant_id)
        runner = self

        class FakeConnection:
            def cursor(self):
                return FakeCursor(runner.statements, rowcount=runner.rowcount, rows=runner.rows)

        return fn(FakeConnection())


def test_postgres_cases_repository_guards_writes_with_version_token(make_case):
    runner = FakeRunner(rowcount=1)
    repo = PostgresCasesRepository(tx_runner=runner)
    case = make_case()

    token = repo.insert(case=case)
    written = repo.write_if_match(case=case, expected_token=token)

    assert runner.tenants == ["org_default", "org_default"]
    insert_sql, insert_params = runner.statements[0]
    assert "INSERT INTO cases" in insert_sql
    assert "ON CONFLICT (id) DO NOTHING" in insert_sql
    assert insert_params[-2:] == ("case_0001", "org_default")
    update_sql, update_params = runner.statements[1]
    assert "WHERE id = %s AND tenant_id = %s AND version_token = %s" in update_sql
    assert update_params[-3:] == ("case_0001", "org_default", token)
    assert written is not None and written != token

    runner.rowcount = 0
    assert repo.write_if_match(case=case, expected_token=token) is None
    with pytest.raises(ApiError) as exc:
        repo.insert(case=case)
    assert exc.value.code == "CASE_ALREADY_EXISTS"


def test_postgres_cases_repository_reads_and_queries(make_case):
    case = make_case()
    runner = FakeRunner(rows=[(to_record(case), "v_1")])
    repo = PostgresCasesRepository(tx_runner=runner)

    found = repo.read(tenant_id="org_default", case_id="case_0001")
    listed = repo.query(
        tenant_id="org_default",
        query=CaseQuery(stages=(Stage.TRIAGE,), unassigned=True, limit=5),
    )

    assert found is not None and found.version_token == "v_1"
    assert found.case == case
    assert [x.case.id for x in listed] == ["case_0001"]
    query_sql, query_params = runner.statements[-1]
    assert "WHERE tenant_id = %s AND stage IN (%s) AND assigned_to IS NULL" in query_sql
    assert query_sql.endswith("LIMIT 5")
    assert query_params == ("org_default", Stage.TRIAGE.value)


def test_postgres_audit_repository_scopes_every_statement():
    runner = FakeRunner(rows=[('{"audit_id": "audit_1", "tenant_id": "org_a"}',)])
    audit = PostgresAuditLogsRepository(tx_runner=runner)

    audit.append(log={"audit_id": "audit_1", "tenant_id": "org_a", "case_id": "c1", "action": "x"})
    last = audit.last_for_tenant(tenant_id="org_a")

    assert runner.tenants == ["org_a", "org_a"]
    assert last == {"audit_id": "audit_1", "tenant_id": "org_a"}
    assert "ORDER BY seq DESC LIMIT 1" in runner.statements[-1][0]


def test_postgres_repository_rejects_invalid_table_name():
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresCasesRepository(tx_runner=FakeRunner(), table_name="cases;drop table cases")


def test_created_at_order_matches_datetime_order(repo, make_case):
    early = datetime(2026, 1, 1, 8, 0, tzinfo=UTC).isoformat()
    late = datetime(2026, 1, 1, 18, 0, tzinfo=UTC).isoformat()
    repo.insert(case=make_case(id="late", created_at=late))
    repo.insert(case=make_case(id="early", created_at=early))
    assert [x.case.id for x in repo.query(tenant_id="org_default", query=CaseQuery())] == ["early", "late"]


def test_sampled_only_hides_qc_cases_waiting_for_a_batch(repo, make_case):
    qc = {"stage": Stage.QC_TRIAGE, "sub_status": SubStatus.ASSESSMENT, "qc_classification_status": QcStatus.PENDING}
    repo.insert(case=make_case(**qc))
    repo.insert(case=make_case(batch_id="batch_1", **qc))
    repo.insert(case=make_case(priority=Priority.HIGH, **qc))
    repo.insert(case=make_case())

    found = repo.query(tenant_id="org_default", query=CaseQuery(sampled_only=True))

    assert [x.case.id for x in found] == ["case_0003", "case_0002", "case_0004"]
