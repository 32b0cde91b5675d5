from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class AllocateRequest(BaseModel):
    role: str = Field(min_length=1)


class ClassifyRequest(BaseModel):
    tag: Literal["ICSR", "AOI", "No Case", "NoCase"]


class ApproveRequest(BaseModel):
    comments: str | None = None


class RejectRequest(BaseModel):
    reason: str = ""
    target_stage: str | None = Field(default=None, alias="targetStage")


class FormRejectRequest(BaseModel):
    reason: str = ""


class FormDraftRequest(BaseModel):
    form_data: dict[str, Any] = Field(alias="formData")


class RevokeRequest(BaseModel):
    reason: str = ""
    target_stage: str | None = Field(default=None, alias="targetStage")


class RouteRequest(BaseModel):
    destination: Literal[
        "data_entry",
        "aoi_assessment",
        "no_case_assessment",
        "icsr_assessment",
        "icsr_triage",
        "aoi_triage",
        "no_case_triage",
        "medical_review",
        "reporting",
    ]
    previous_track: str | None = Field(default=None, alias="previousTrack")
    comments: str | None = None


class CommentRequest(BaseModel):
    text: str = Field(min_length=1, max_length=4000)


class WorkflowConfigRequest(BaseModel):
    qc_triage_enabled: bool | None = Field(default=None, alias="qcTriageEnabled")
    qc_triage_tracks: list[str] | None = Field(default=None, alias="qcTriageTracks")
    qc_data_entry_enabled: bool | None = Field(default=None, alias="qcDataEntryEnabled")
    medical_review_enabled: bool | None = Field(default=None, alias="medicalReviewEnabled")
    qc_sampling_percentage: float | None = Field(default=None, alias="qcSamplingPercentage")
    batch_max_size: int | None = Field(default=None, alias="batchMaxSize")


class InternalCaseCreateRequest(BaseModel):
    id: str | None = None
    organization_id: str | None = Field(default=None, alias="organizationId")
    title: str = Field(min_length=1)
    pmid: str | None = None
    drug_name: str | None = Field(default=None, alias="drugName")
    priority: Literal["normal", "high"] = "normal"
    created_by: str | None = Field(default=None, alias="createdBy")
    extra: dict[str, Any] = Field(default_factory=dict)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
