from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from caseflow.case_model import WorkflowTrack, parse_track
from caseflow.errors import ApiError


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float, maximum: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, min(maximum, value))


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass
class EngineSettings:
    store_backend: str
    sqlite_path: str
    postgres_dsn: str
    postgres_apply_rls: bool
    allocation_max_attempts: int
    allocation_candidate_limit: int
    transition_max_attempts: int
    lock_lease_minutes: int

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        return cls(
            store_backend=env.get("CASEFLOW_STORE_BACKEND", "memory").strip().lower() or "memory",
            sqlite_path=env.get("CASEFLOW_STORE_SQLITE_PATH", ".local/caseflow.sqlite3"),
            postgres_dsn=env.get("POSTGRES_DSN", "").strip(),
            postgres_apply_rls=_env_bool(env, "POSTGRES_APPLY_RLS", default=False),
            allocation_max_attempts=_env_int(env, "ALLOCATION_MAX_ATTEMPTS", default=3, minimum=1),
            allocation_candidate_limit=_env_int(env, "ALLOCATION_CANDIDATE_LIMIT", default=50, minimum=1),
            transition_max_attempts=_env_int(env, "TRANSITION_MAX_ATTEMPTS", default=3, minimum=1),
            lock_lease_minutes=_env_int(env, "CASE_LOCK_LEASE_MINUTES", default=0, minimum=0),
        )


def _all_tracks() -> set[WorkflowTrack]:
    return set(WorkflowTrack)


@dataclass
class PipelineConfig:
    """Per-organization switches for the optional review gates."""

    qc_triage_enabled: bool = True
    qc_triage_tracks: set[WorkflowTrack] = field(default_factory=_all_tracks)
    qc_data_entry_enabled: bool = True
    medical_review_enabled: bool = True
    qc_sampling_percentage: float = 100.0
    batch_max_size: int = 500

    def qc_triage_applies(self, track: WorkflowTrack | None) -> bool:
        if not self.qc_triage_enabled:
            return False
        return track is None or track in self.qc_triage_tracks

    @classmethod
    def defaults_from_env(cls, environ: Mapping[str, str] | None = None) -> "PipelineConfig":
        env = os.environ if environ is None else environ
        return cls(
            qc_sampling_percentage=_env_float(
                env,
                "PIPELINE_QC_SAMPLING_PERCENTAGE",
                default=100.0,
                minimum=0.0,
                maximum=100.0,
            ),
            batch_max_size=_env_int(env, "PIPELINE_BATCH_MAX_SIZE", default=500, minimum=1),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "qcTriageEnabled": self.qc_triage_enabled,
            "qcTriageTracks": sorted(x.value for x in self.qc_triage_tracks),
            "qcDataEntryEnabled": self.qc_data_entry_enabled,
            "medicalReviewEnabled": self.medical_review_enabled,
            "qcSamplingPercentage": self.qc_sampling_percentage,
            "batchMaxSize": self.batch_max_size,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, base: "PipelineConfig | None" = None) -> "PipelineConfig":
        cfg = base or cls()
        tracks = cfg.qc_triage_tracks
        raw_tracks = payload.get("qcTriageTracks")
        if raw_tracks is not None:
            try:
                tracks = {parse_track(str(x)) for x in raw_tracks}
            except ValueError:
                raise ApiError(
                    code="WORKFLOW_CONFIG_INVALID",
                    message=f"unknown track in qcTriageTracks: {raw_tracks}",
                    error_class="validation",
                    retryable=False,
                    http_status=400,
                ) from None
        percentage = float(payload.get("qcSamplingPercentage", cfg.qc_sampling_percentage))
        if not 0.0 <= percentage <= 100.0:
            raise ApiError(
                code="WORKFLOW_CONFIG_INVALID",
                message="qcSamplingPercentage must be between 0 and 100",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        batch_max_size = int(payload.get("batchMaxSize", cfg.batch_max_size))
        if batch_max_size < 1:
            raise ApiError(
                code="WORKFLOW_CONFIG_INVALID",
                message="batchMaxSize must be positive",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        return cls(
            qc_triage_enabled=bool(payload.get("qcTriageEnabled", cfg.qc_triage_enabled)),
            qc_triage_tracks=tracks,
            qc_data_entry_enabled=bool(payload.get("qcDataEntryEnabled", cfg.qc_data_entry_enabled)),
            medical_review_enabled=bool(payload.get("medicalReviewEnabled", cfg.medical_review_enabled)),
            qc_sampling_percentage=percentage,
            batch_max_size=batch_max_size,
        )
