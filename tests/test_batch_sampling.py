from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from caseflow.case_model import ClassificationTag, Priority, QcStatus, Stage, SubStatus, WorkflowTrack
from caseflow.repositories import CaseQuery
from caseflow.sampling import BatchSamplingRouter, keep_for_qc
from caseflow.settings import EngineSettings
from caseflow.state_machine import Actor
from caseflow.store import InMemoryStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
SYSTEM = Actor(id="system", name="Batch Sampling")


def _awaiting_qc(make_case, **overrides):
    fields = {
        "classification_tag": ClassificationTag.ICSR,
        "workflow_track": WorkflowTrack.ICSR,
        "classified_by": "user_a",
        "stage": Stage.QC_TRIAGE,
        "sub_status": SubStatus.ASSESSMENT,
        "qc_classification_status": QcStatus.PENDING,
    }
    fields.update(overrides)
    return make_case(**fields)


def _seeded_store(make_case, count: int, *, percentage: float | None = None) -> InMemoryStore:
    store = InMemoryStore(EngineSettings.from_env({}))
    for _ in range(count):
        store.insert_case(case=_awaiting_qc(make_case))
    if percentage is not None:
        store.put_pipeline_config(tenant_id="org_default", payload={"qcSamplingPercentage": percentage})
    return store


def _router(store: InMemoryStore) -> BatchSamplingRouter:
    return BatchSamplingRouter(store, clock=lambda: NOW)


@pytest.mark.parametrize(
    ("count", "percentage", "expected_kept"),
    [
        (100, 20, 20),
        (1000, 33.3, 333),
        (7, 50, 3),
        (10, 0, 0),
        (10, 100, 10),
        (3, 12.5, 0),
    ],
)
def test_keep_for_qc_hits_the_exact_quota(count, percentage, expected_kept):
    assert sum(keep_for_qc(i, percentage) for i in range(count)) == expected_kept


def test_keep_for_qc_spreads_selection_evenly():
    assert [keep_for_qc(i, 25) for i in range(8)] == [False, False, False, True] * 2


def test_run_batch_splits_pool_by_percentage(make_case):
    store = _seeded_store(make_case, 100, percentage=20)

    summary = _router(store).run_batch(tenant_id="org_default", actor=SYSTEM, trace_id="trace_batch")

    assert summary["total"] == 100
    assert summary["queuedForQC"] == 20
    assert summary["autoPassed"] == 80
    assert summary["skipped"] == 0
    assert summary["batchId"].startswith("batch_")
    assert len(summary["details"]) == 100

    queued = store.query_cases(tenant_id="org_default", query=CaseQuery(stages=(Stage.QC_TRIAGE,)))
    passed = store.query_cases(tenant_id="org_default", query=CaseQuery(stages=(Stage.DATA_ENTRY,)))
    assert len(queued) == 20
    assert len(passed) == 80
    assert all(x.case.batch_id == summary["batchId"] for x in queued + passed)
    assert all(x.case.is_auto_passed for x in passed)
    assert all(x.case.qc_classification_status == QcStatus.APPROVED for x in passed)
    assert not any(x.case.is_auto_passed for x in queued)

    logs = store.list_case_audit_logs(tenant_id="org_default", case_id=passed[0].case.id)
    assert [x["action"] for x in logs] == ["qc_sampling_auto_passed"]
    assert logs[0]["detail"] == {"batch_id": summary["batchId"]}


def test_run_batch_does_not_resample_processed_cases(make_case):
    store = _seeded_store(make_case, 10, percentage=50)
    router = _router(store)

    router.run_batch(tenant_id="org_default", actor=SYSTEM)
    second = router.run_batch(tenant_id="org_default", actor=SYSTEM)

    assert second["total"] == 0
    assert second["details"] == []


@pytest.mark.parametrize(("percentage", "queued", "auto_passed"), [(0, 0, 5), (100, 5, 0)])
def test_run_batch_extreme_percentages(make_case, percentage, queued, auto_passed):
    store = _seeded_store(make_case, 5, percentage=percentage)
    summary = _router(store).run_batch(tenant_id="org_default", actor=SYSTEM)
    assert summary["queuedForQC"] == queued
    assert summary["autoPassed"] == auto_passed


def test_high_priority_cases_always_wait_for_manual_qc(make_case):
    store = _seeded_store(make_case, 2, percentage=0)
    store.insert_case(case=_awaiting_qc(make_case, id="case_urgent", priority=Priority.HIGH))

    summary = _router(store).run_batch(tenant_id="org_default", actor=SYSTEM)

    assert summary["total"] == 2
    urgent = store.read_case(tenant_id="org_default", case_id="case_urgent")
    assert urgent.case.stage == Stage.QC_TRIAGE
    assert urgent.case.batch_id is None


def test_assigned_cases_are_left_alone(make_case):
    store = _seeded_store(make_case, 1, percentage=0)
    store.insert_case(case=_awaiting_qc(make_case, id="case_held", assigned_to="user_q"))
    summary = _router(store).run_batch(tenant_id="org_default", actor=SYSTEM)
    assert [x["caseId"] for x in summary["details"]] == ["case_0001"]


def test_batch_size_caps_the_pool(make_case):
    store = _seeded_store(make_case, 8)
    store.put_pipeline_config(tenant_id="org_default", payload={"batchMaxSize": 3})

    summary = _router(store).run_batch(tenant_id="org_default", actor=SYSTEM)

    assert summary["total"] == 3
    assert [x["caseId"] for x in summary["details"]] == ["case_0001", "case_0002", "case_0003"]


def test_concurrent_change_is_reported_as_skipped(make_case, monkeypatch: pytest.MonkeyPatch):
    store = _seeded_store(make_case, 3, percentage=0)
    original = store.write_case

    def racing_write(*, case, expected_token):
        if case.id == "case_0002":
            return None
        return original(case=case, expected_token=expected_token)

    monkeypatch.setattr(store, "write_case", racing_write)

    summary = _router(store).run_batch(tenant_id="org_default", actor=SYSTEM)

    assert summary["autoPassed"] == 2
    assert summary["skipped"] == 1
    assert {"caseId": "case_0002", "decision": "skipped", "reason": "conflict"} in summary["details"]
    untouched = store.read_case(tenant_id="org_default", case_id="case_0002")
    assert untouched.case.stage == Stage.QC_TRIAGE


def test_batch_sampling_script_prints_summary(make_case, capsys: pytest.CaptureFixture[str]):
    from caseflow.store import store
    from scripts import run_batch_sampling

    store.put_pipeline_config(tenant_id="org_default", payload={"qcSamplingPercentage": 50})
    for _ in range(4):
        store.insert_case(case=_awaiting_qc(make_case))

    code = run_batch_sampling.main(["--org", "org_default", "--org", "org_empty", "--summary-only"])

    assert code == 0
    out = json.loads(capsys.readouterr().out)
    first, second = out["batches"]
    assert first["organization_id"] == "org_default"
    assert first["queuedForQC"] == 2
    assert first["autoPassed"] == 2
    assert "details" not in first
    assert second["organization_id"] == "org_empty"
    assert second["total"] == 0
