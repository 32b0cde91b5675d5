from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class ClassificationTag(str, Enum):
    ICSR = "ICSR"
    AOI = "AOI"
    NO_CASE = "No Case"


class WorkflowTrack(str, Enum):
    ICSR = "ICSR"
    AOI = "AOI"
    NO_CASE = "NoCase"


class Stage(str, Enum):
    """Queue position of a case; values are the persisted wire strings."""

    TRIAGE = "Pending Review"
    QC_TRIAGE = "qc_triage"
    QC_ALLOCATION = "qc_allocation"
    DATA_ENTRY = "data_entry"
    QC_DATA_ENTRY = "qc_data_entry"
    MEDICAL_REVIEW = "medical_review"
    AOI_ASSESSMENT = "aoi_assessment"
    NO_CASE_ASSESSMENT = "no_case_assessment"
    REPORTING = "reporting"

    @classmethod
    def parse(cls, raw: str) -> "Stage":
        value = raw.strip()
        alias = _STAGE_ALIASES.get(value.lower())
        if alias is not None:
            return alias
        return cls(value)


_STAGE_ALIASES: dict[str, Stage] = {
    "triage": Stage.TRIAGE,
    "pending review": Stage.TRIAGE,
    "under triage review": Stage.TRIAGE,
}

STAGE_LABELS: dict[Stage, str] = {
    Stage.TRIAGE: "Triage",
    Stage.QC_TRIAGE: "QC Triage",
    Stage.QC_ALLOCATION: "QC Allocation",
    Stage.DATA_ENTRY: "Data Entry",
    Stage.QC_DATA_ENTRY: "QC Data Entry",
    Stage.MEDICAL_REVIEW: "Medical Review",
    Stage.AOI_ASSESSMENT: "AOI Assessment",
    Stage.NO_CASE_ASSESSMENT: "No Case Assessment",
    Stage.REPORTING: "Reporting",
}


class SubStatus(str, Enum):
    TRIAGE = "triage"
    ALLOCATION = "allocation"
    ASSESSMENT = "assessment"
    DATA_ENTRY = "data_entry"
    MEDICAL_REVIEW = "medical_review"
    REPORTING = "reporting"


class WorkflowStage(str, Enum):
    TRIAGE_ICSR = "TRIAGE_ICSR"
    TRIAGE_AOI = "TRIAGE_AOI"
    TRIAGE_NO_CASE = "TRIAGE_NO_CASE"
    QC_TRIAGE = "QC_TRIAGE"
    ASSESSMENT_ICSR = "ASSESSMENT_ICSR"
    ASSESSMENT_AOI = "ASSESSMENT_AOI"
    ASSESSMENT_NO_CASE = "ASSESSMENT_NO_CASE"
    DATA_ENTRY = "DATA_ENTRY"
    QC_DATA_ENTRY = "QC_DATA_ENTRY"
    MEDICAL_REVIEW = "MEDICAL_REVIEW"
    REPORTING = "REPORTING"


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


class QcStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NOT_APPLICABLE = "not_applicable"


class FormStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class QcFormStatus(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    NOT_STARTED = "not_started"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class MedicalReviewStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REVOKED = "revoked"


TAG_TO_TRACK: dict[ClassificationTag, WorkflowTrack] = {
    ClassificationTag.ICSR: WorkflowTrack.ICSR,
    ClassificationTag.AOI: WorkflowTrack.AOI,
    ClassificationTag.NO_CASE: WorkflowTrack.NO_CASE,
}


def parse_tag(raw: str) -> ClassificationTag:
    value = raw.strip()
    if value.lower().replace(" ", "") == "nocase":
        return ClassificationTag.NO_CASE
    return ClassificationTag(value.upper())


def parse_track(raw: str) -> WorkflowTrack:
    value = raw.strip().replace(" ", "")
    if value.lower() == "nocase":
        return WorkflowTrack.NO_CASE
    return WorkflowTrack(value.upper())


@dataclass
class CaseRecord:
    id: str
    organization_id: str
    title: str = ""
    pmid: str | None = None
    drug_name: str | None = None
    created_by: str | None = None
    created_at: str = ""
    updated_at: str = ""

    classification_tag: ClassificationTag | None = None
    workflow_track: WorkflowTrack | None = None
    classified_by: str | None = None

    stage: Stage = Stage.TRIAGE
    sub_status: SubStatus = SubStatus.TRIAGE
    workflow_stage: WorkflowStage | None = None

    assigned_to: str | None = None
    locked_at: str | None = None
    priority: Priority = Priority.NORMAL

    qc_classification_status: QcStatus | None = None
    qc_approved_by: str | None = None
    qc_approved_at: str | None = None
    qc_rejected_by: str | None = None
    qc_rejected_at: str | None = None
    qc_comments: str | None = None

    form_status: FormStatus = FormStatus.NOT_STARTED
    form_data: dict[str, Any] = field(default_factory=dict)
    form_completed_by: str | None = None
    form_completed_at: str | None = None

    qc_form_status: QcFormStatus = QcFormStatus.NOT_APPLICABLE
    qc_form_approved_by: str | None = None
    qc_form_approved_at: str | None = None
    qc_form_rejected_by: str | None = None
    qc_form_rejected_at: str | None = None
    qc_form_comments: str | None = None

    medical_review_status: MedicalReviewStatus = MedicalReviewStatus.NOT_STARTED
    medical_reviewed_by: str | None = None
    medical_reviewed_at: str | None = None

    source_track: WorkflowTrack | None = None
    source_track_timestamp: str | None = None
    last_queue_stage: Stage | None = None
    is_auto_passed: bool = False
    batch_id: str | None = None
    allocated_at: str | None = None

    revoked_by: str | None = None
    revoked_at: str | None = None
    revocation_reason: str | None = None

    comments: list[dict[str, Any]] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)


_ENUM_FIELDS: dict[str, type[Enum]] = {
    "classification_tag": ClassificationTag,
    "workflow_track": WorkflowTrack,
    "stage": Stage,
    "sub_status": SubStatus,
    "workflow_stage": WorkflowStage,
    "priority": Priority,
    "qc_classification_status": QcStatus,
    "form_status": FormStatus,
    "qc_form_status": QcFormStatus,
    "medical_review_status": MedicalReviewStatus,
    "source_track": WorkflowTrack,
    "last_queue_stage": Stage,
}

# A null in the payload falls back to the dataclass default for these.
_DEFAULTED_ENUMS = frozenset(
    {"stage", "sub_status", "priority", "form_status", "qc_form_status", "medical_review_status"}
)

_PARSERS = {
    ClassificationTag: parse_tag,
    WorkflowTrack: parse_track,
    Stage: Stage.parse,
}


def _to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


_CASE_FIELDS = tuple(f.name for f in fields(CaseRecord) if f.name != "extra")
WIRE_NAMES: dict[str, str] = {name: _to_camel(name) for name in _CASE_FIELDS}


def _decode_enum(enum_type: type[Enum], value: Any) -> Enum | None:
    if value is None or value == "":
        return None
    if isinstance(value, enum_type):
        return value
    parser = _PARSERS.get(enum_type)
    if parser is not None:
        return parser(str(value))
    return enum_type(str(value))


def to_record(case: CaseRecord, *, version_token: str | None = None) -> dict[str, Any]:
    """Flatten a case to its persisted/wire shape (camelCase keys, enum values as strings)."""
    out: dict[str, Any] = dict(case.extra)
    for name in _CASE_FIELDS:
        value = getattr(case, name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, list):
            value = [dict(x) for x in value]
        elif isinstance(value, dict):
            value = dict(value)
        out[WIRE_NAMES[name]] = value
    if version_token is not None:
        out["versionToken"] = version_token
    return out


def from_record(payload: dict[str, Any]) -> CaseRecord:
    known = {wire: name for name, wire in WIRE_NAMES.items()}
    kwargs: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for key, value in payload.items():
        if key in {"versionToken", "_etag"}:
            continue
        name = known.get(key)
        if name is None and key in WIRE_NAMES:
            name = key
        if name is None:
            extra[key] = value
            continue
        enum_type = _ENUM_FIELDS.get(name)
        if enum_type is not None:
            decoded = _decode_enum(enum_type, value)
            if decoded is None and name in _DEFAULTED_ENUMS:
                continue
            kwargs[name] = decoded
        elif name == "comments":
            kwargs[name] = [dict(x) for x in (value or []) if isinstance(x, dict)]
        elif name == "form_data":
            kwargs[name] = dict(value) if isinstance(value, dict) else {}
        elif name == "is_auto_passed":
            kwargs[name] = bool(value)
        else:
            kwargs[name] = value
    if "id" not in kwargs or "organization_id" not in kwargs:
        raise ValueError("case record requires id and organizationId")
    return CaseRecord(**kwargs, extra=extra)


def stage_label(stage: Stage) -> str:
    return STAGE_LABELS.get(stage, stage.value)
