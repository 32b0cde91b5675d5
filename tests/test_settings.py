from __future__ import annotations

import pytest

from caseflow.case_model import WorkflowTrack
from caseflow.errors import ApiError
from caseflow.settings import EngineSettings, PipelineConfig


def test_engine_settings_defaults():
    settings = EngineSettings.from_env({})
    assert settings.store_backend == "memory"
    assert settings.transition_max_attempts == 3
    assert settings.allocation_max_attempts == 3
    assert settings.lock_lease_minutes == 0


def test_engine_settings_clamps_and_ignores_garbage():
    settings = EngineSettings.from_env(
        {
            "CASEFLOW_STORE_BACKEND": " SQLite ",
            "TRANSITION_MAX_ATTEMPTS": "0",
            "ALLOCATION_CANDIDATE_LIMIT": "many",
            "CASE_LOCK_LEASE_MINUTES": "-5",
            "POSTGRES_APPLY_RLS": "yes",
        }
    )
    assert settings.store_backend == "sqlite"
    assert settings.transition_max_attempts == 1
    assert settings.allocation_candidate_limit == 50
    assert settings.lock_lease_minutes == 0
    assert settings.postgres_apply_rls is True


def test_pipeline_defaults_from_env_clamp_percentage():
    cfg = PipelineConfig.defaults_from_env({"PIPELINE_QC_SAMPLING_PERCENTAGE": "250", "PIPELINE_BATCH_MAX_SIZE": "20"})
    assert cfg.qc_sampling_percentage == 100.0
    assert cfg.batch_max_size == 20


def test_pipeline_payload_merges_over_base():
    base = PipelineConfig(qc_sampling_percentage=30.0)
    cfg = PipelineConfig.from_payload({"qcTriageTracks": ["NoCase", "aoi"], "qcDataEntryEnabled": False}, base=base)

    assert cfg.qc_sampling_percentage == 30.0
    assert cfg.qc_triage_tracks == {WorkflowTrack.NO_CASE, WorkflowTrack.AOI}
    assert cfg.qc_data_entry_enabled is False
    assert cfg.qc_triage_applies(WorkflowTrack.AOI) is True
    assert cfg.qc_triage_applies(WorkflowTrack.ICSR) is False
    assert cfg.to_payload()["qcTriageTracks"] == ["AOI", "NoCase"]


def test_disabled_qc_triage_applies_to_no_track():
    cfg = PipelineConfig(qc_triage_enabled=False)
    assert cfg.qc_triage_applies(WorkflowTrack.ICSR) is False


@pytest.mark.parametrize(
    "payload",
    [{"qcSamplingPercentage": -1}, {"batchMaxSize": 0}, {"qcTriageTracks": ["archive"]}],
)
def test_pipeline_payload_validation(payload):
    with pytest.raises(ApiError) as exc:
        PipelineConfig.from_payload(payload)
    assert exc.value.code == "WORKFLOW_CONFIG_INVALID"
