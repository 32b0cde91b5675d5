"""Case lifecycle transitions.

Every public transition takes a case and returns an updated copy; the input
record is never mutated, so a rejected precondition leaves the caller's
state exactly as it was. Persistence is the caller's job.
"""

from __future__ import annotations

import copy
import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from caseflow import errors
from caseflow.case_model import (
    TAG_TO_TRACK,
    CaseRecord,
    ClassificationTag,
    FormStatus,
    MedicalReviewStatus,
    Priority,
    QcFormStatus,
    QcStatus,
    Stage,
    SubStatus,
    WorkflowStage,
    WorkflowTrack,
    parse_track,
    stage_label,
)
from caseflow.settings import PipelineConfig

SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True)
class Actor:
    id: str
    name: str


@dataclass(frozen=True)
class StageRule:
    action: str
    to_stage: Stage
    to_sub_status: SubStatus
    workflow_stage: WorkflowStage
    track: WorkflowTrack | None = None
    qc: bool | None = None
    medical_review: bool | None = None
    auto_complete_medical_review: bool = False

    def matches(
        self,
        action: str,
        *,
        track: WorkflowTrack | None,
        qc: bool | None,
        medical_review: bool | None,
    ) -> bool:
        if self.action != action:
            return False
        if self.track is not None and self.track != track:
            return False
        if self.qc is not None and self.qc != qc:
            return False
        if self.medical_review is not None and self.medical_review != medical_review:
            return False
        return True


# None in a key column means "any value". First match wins.
STAGE_TABLE: tuple[StageRule, ...] = (
    StageRule("classify", Stage.QC_TRIAGE, SubStatus.ASSESSMENT, WorkflowStage.QC_TRIAGE, qc=True),
    StageRule(
        "pass_classification_qc",
        Stage.DATA_ENTRY,
        SubStatus.DATA_ENTRY,
        WorkflowStage.DATA_ENTRY,
        track=WorkflowTrack.ICSR,
    ),
    StageRule(
        "pass_classification_qc",
        Stage.AOI_ASSESSMENT,
        SubStatus.ASSESSMENT,
        WorkflowStage.ASSESSMENT_AOI,
        track=WorkflowTrack.AOI,
    ),
    StageRule(
        "pass_classification_qc",
        Stage.REPORTING,
        SubStatus.REPORTING,
        WorkflowStage.REPORTING,
        track=WorkflowTrack.NO_CASE,
    ),
    StageRule("complete_form", Stage.QC_DATA_ENTRY, SubStatus.DATA_ENTRY, WorkflowStage.QC_DATA_ENTRY, qc=True),
    StageRule(
        "complete_form",
        Stage.MEDICAL_REVIEW,
        SubStatus.MEDICAL_REVIEW,
        WorkflowStage.MEDICAL_REVIEW,
        qc=False,
        medical_review=True,
    ),
    StageRule(
        "complete_form",
        Stage.REPORTING,
        SubStatus.REPORTING,
        WorkflowStage.REPORTING,
        qc=False,
        medical_review=False,
        auto_complete_medical_review=True,
    ),
    StageRule(
        "approve_form",
        Stage.MEDICAL_REVIEW,
        SubStatus.MEDICAL_REVIEW,
        WorkflowStage.MEDICAL_REVIEW,
        medical_review=True,
    ),
    StageRule(
        "approve_form",
        Stage.REPORTING,
        SubStatus.REPORTING,
        WorkflowStage.REPORTING,
        medical_review=False,
        auto_complete_medical_review=True,
    ),
    StageRule("complete_medical_review", Stage.REPORTING, SubStatus.REPORTING, WorkflowStage.REPORTING),
)


def resolve_stage(
    action: str,
    *,
    track: WorkflowTrack | None = None,
    qc: bool | None = None,
    medical_review: bool | None = None,
) -> StageRule:
    for rule in STAGE_TABLE:
        if rule.matches(action, track=track, qc=qc, medical_review=medical_review):
            return rule
    raise errors.invalid_transition(action, f"no stage rule for track={track} qc={qc} medical_review={medical_review}")


@dataclass(frozen=True)
class RouteTarget:
    stage: Stage
    sub_status: SubStatus
    workflow_stage: WorkflowStage
    track: WorkflowTrack | None


ROUTE_DESTINATIONS: dict[str, RouteTarget] = {
    "data_entry": RouteTarget(Stage.DATA_ENTRY, SubStatus.DATA_ENTRY, WorkflowStage.DATA_ENTRY, WorkflowTrack.ICSR),
    "aoi_assessment": RouteTarget(
        Stage.AOI_ASSESSMENT, SubStatus.ASSESSMENT, WorkflowStage.ASSESSMENT_AOI, WorkflowTrack.AOI
    ),
    "no_case_assessment": RouteTarget(
        Stage.NO_CASE_ASSESSMENT, SubStatus.ASSESSMENT, WorkflowStage.ASSESSMENT_NO_CASE, WorkflowTrack.NO_CASE
    ),
    "icsr_assessment": RouteTarget(
        Stage.QC_ALLOCATION, SubStatus.ASSESSMENT, WorkflowStage.ASSESSMENT_ICSR, WorkflowTrack.ICSR
    ),
    "icsr_triage": RouteTarget(Stage.TRIAGE, SubStatus.TRIAGE, WorkflowStage.TRIAGE_ICSR, WorkflowTrack.ICSR),
    "aoi_triage": RouteTarget(Stage.TRIAGE, SubStatus.TRIAGE, WorkflowStage.TRIAGE_AOI, WorkflowTrack.AOI),
    "no_case_triage": RouteTarget(Stage.TRIAGE, SubStatus.TRIAGE, WorkflowStage.TRIAGE_NO_CASE, WorkflowTrack.NO_CASE),
    "medical_review": RouteTarget(Stage.MEDICAL_REVIEW, SubStatus.MEDICAL_REVIEW, WorkflowStage.MEDICAL_REVIEW, None),
    "reporting": RouteTarget(Stage.REPORTING, SubStatus.REPORTING, WorkflowStage.REPORTING, None),
}

# Destinations that count as QC approval when routed without comments.
_FORWARD_DESTINATIONS = frozenset({"data_entry", "medical_review", "reporting"})

_TRIAGE_WORKFLOW_STAGE: dict[WorkflowTrack, WorkflowStage] = {
    WorkflowTrack.ICSR: WorkflowStage.TRIAGE_ICSR,
    WorkflowTrack.AOI: WorkflowStage.TRIAGE_AOI,
    WorkflowTrack.NO_CASE: WorkflowStage.TRIAGE_NO_CASE,
}

REVOKE_TARGETS = frozenset(
    {"triage", "qc_triage", "qc_data_entry", "assessment", "qc_allocation", "data_entry"}
)


def _iso(now: datetime) -> str:
    return now.isoformat()


def _comment_id(case: CaseRecord, kind: str, timestamp: str) -> str:
    seed = f"{case.id}:{len(case.comments)}:{kind}:{timestamp}".encode("utf-8")
    return f"cmt_{hashlib.sha256(seed).hexdigest()[:16]}"


def _append_comment(case: CaseRecord, actor: Actor, text: str, kind: str, now: datetime) -> dict[str, Any]:
    timestamp = _iso(now)
    comment = {
        "id": _comment_id(case, kind, timestamp),
        "actorId": actor.id,
        "actorName": actor.name,
        "text": text,
        "timestamp": timestamp,
        "kind": kind,
    }
    case.comments.append(comment)
    case.updated_at = timestamp
    return comment


def _release_lock(case: CaseRecord) -> None:
    case.assigned_to = None
    case.locked_at = None


def _reassign(case: CaseRecord, owner: str | None, now: datetime) -> None:
    if owner:
        case.assigned_to = owner
        case.locked_at = _iso(now)
    else:
        _release_lock(case)


def _move(case: CaseRecord, stage: Stage, sub_status: SubStatus, workflow_stage: WorkflowStage | None) -> None:
    if case.stage != stage:
        case.last_queue_stage = case.stage
    case.stage = stage
    case.sub_status = sub_status
    case.workflow_stage = workflow_stage


def _check_not_held_by_other(case: CaseRecord, actor: Actor) -> None:
    # an unassigned case may be picked up directly; a held one only by its holder
    if case.assigned_to and case.assigned_to != actor.id:
        raise errors.lock_not_held(case.id)


def _require_reason(reason: str | None, action: str) -> str:
    text = (reason or "").strip()
    if not text:
        raise errors.missing_reason(action)
    return text


def _effective_track(case: CaseRecord) -> WorkflowTrack | None:
    if case.workflow_track is not None:
        return case.workflow_track
    if case.classification_tag is not None:
        return TAG_TO_TRACK[case.classification_tag]
    return None


def _with_suffix(text: str, comments: str | None) -> str:
    return f"{text} Comments: {comments}" if comments else text


def classify(
    case: CaseRecord,
    *,
    actor: Actor,
    tag: ClassificationTag,
    pipeline: PipelineConfig,
    now: datetime,
) -> CaseRecord:
    if case.sub_status != SubStatus.TRIAGE:
        raise errors.invalid_transition("classify", f"case is in {case.sub_status.value}, not triage")
    if case.assigned_to != actor.id:
        raise errors.lock_not_held(case.id)

    updated = copy.deepcopy(case)
    track = TAG_TO_TRACK[tag]
    previous = case.classification_tag.value if case.classification_tag else "None"
    updated.classification_tag = tag
    updated.workflow_track = track
    updated.classified_by = actor.id
    updated.batch_id = None
    updated.is_auto_passed = False
    _release_lock(updated)

    if pipeline.qc_triage_applies(track):
        rule = resolve_stage("classify", qc=True)
        updated.qc_classification_status = QcStatus.PENDING
    else:
        rule = resolve_stage("pass_classification_qc", track=track)
        updated.qc_classification_status = QcStatus.NOT_APPLICABLE
    _move(updated, rule.to_stage, rule.to_sub_status, rule.workflow_stage)
    _append_comment(
        updated,
        actor,
        f'Manual classification updated from "{previous}" to "{tag.value}". Moving to {stage_label(rule.to_stage)}.',
        "system",
        now,
    )
    return updated


def _pass_classification_qc(
    case: CaseRecord,
    *,
    actor: Actor,
    now: datetime,
    comments: str | None,
    text: str,
    kind: str,
) -> CaseRecord:
    track = _effective_track(case)
    if track is None:
        raise errors.invalid_transition("approve_classification", "case has no classification")
    rule = resolve_stage("pass_classification_qc", track=track)

    updated = copy.deepcopy(case)
    updated.workflow_track = track
    updated.qc_classification_status = QcStatus.APPROVED
    updated.qc_approved_by = actor.id
    updated.qc_approved_at = _iso(now)
    updated.qc_comments = comments
    _release_lock(updated)
    _move(updated, rule.to_stage, rule.to_sub_status, rule.workflow_stage)
    _append_comment(updated, actor, f"{text} Moving to {stage_label(rule.to_stage)}.", kind, now)
    return updated


def approve_classification(
    case: CaseRecord,
    *,
    actor: Actor,
    now: datetime,
    comments: str | None = None,
) -> CaseRecord:
    if case.qc_classification_status == QcStatus.APPROVED:
        raise errors.already_approved("classification")
    if case.qc_classification_status != QcStatus.PENDING:
        raise errors.invalid_transition("approve_classification", "classification QC is not pending")
    _check_not_held_by_other(case, actor)
    tag = case.classification_tag.value if case.classification_tag else "None"
    return _pass_classification_qc(
        case,
        actor=actor,
        now=now,
        comments=comments,
        text=_with_suffix(f'Classification "{tag}" approved by QC.', comments),
        kind="qc_approval",
    )


def mark_auto_passed(case: CaseRecord, *, actor: Actor, batch_id: str, now: datetime) -> CaseRecord:
    """Sampling-router variant of classification QC approval."""
    if case.qc_classification_status != QcStatus.PENDING:
        raise errors.invalid_transition("auto_pass", "classification QC is not pending")
    updated = _pass_classification_qc(
        case,
        actor=actor,
        now=now,
        comments="Auto approved QC",
        text=f"Auto-passed classification QC in sampling batch {batch_id}.",
        kind="qc_auto_pass",
    )
    updated.is_auto_passed = True
    updated.batch_id = batch_id
    return updated


def mark_queued_for_qc(case: CaseRecord, *, actor: Actor, batch_id: str, now: datetime) -> CaseRecord:
    if case.qc_classification_status != QcStatus.PENDING:
        raise errors.invalid_transition("queue_for_qc", "classification QC is not pending")
    updated = copy.deepcopy(case)
    updated.batch_id = batch_id
    updated.is_auto_passed = False
    _append_comment(updated, actor, f"Selected for manual QC in sampling batch {batch_id}.", "qc_sampling", now)
    return updated


def reject_classification(
    case: CaseRecord,
    *,
    actor: Actor,
    reason: str | None,
    now: datetime,
    target_stage: Stage | None = None,
) -> CaseRecord:
    text = _require_reason(reason, "reject a classification")
    if case.qc_classification_status != QcStatus.PENDING:
        raise errors.invalid_transition("reject_classification", "classification QC is not pending")
    _check_not_held_by_other(case, actor)

    updated = copy.deepcopy(case)
    previous = case.classification_tag.value if case.classification_tag else "None"
    track = _effective_track(case)
    destination = target_stage or Stage.TRIAGE
    updated.qc_classification_status = QcStatus.REJECTED
    updated.qc_rejected_by = actor.id
    updated.qc_rejected_at = _iso(now)
    updated.qc_comments = text
    updated.priority = Priority.HIGH
    _reassign(updated, case.classified_by, now)
    updated.classification_tag = None
    _move(updated, destination, SubStatus.TRIAGE, _TRIAGE_WORKFLOW_STAGE.get(track) if track else None)
    _append_comment(
        updated,
        actor,
        f'Classification "{previous}" rejected by QC. Reason: {text}. '
        f"Returned to {stage_label(destination)} for re-classification.",
        "qc_rejection",
        now,
    )
    return updated


def save_form_draft(case: CaseRecord, *, actor: Actor, form_data: dict[str, Any], now: datetime) -> CaseRecord:
    if case.form_status == FormStatus.COMPLETED:
        raise errors.invalid_transition("save_form", "form is already completed")
    updated = copy.deepcopy(case)
    updated.form_data = {**case.form_data, **form_data}
    updated.form_status = FormStatus.IN_PROGRESS
    _append_comment(updated, actor, "Data entry form updated.", "system", now)
    return updated


def complete_form(case: CaseRecord, *, actor: Actor, pipeline: PipelineConfig, now: datetime) -> CaseRecord:
    if case.form_status == FormStatus.COMPLETED:
        raise errors.invalid_transition("complete_form", "form is already completed")

    updated = copy.deepcopy(case)
    stamp = _iso(now)
    updated.form_status = FormStatus.COMPLETED
    updated.form_completed_by = actor.id
    updated.form_completed_at = stamp
    rule = resolve_stage(
        "complete_form",
        qc=pipeline.qc_data_entry_enabled,
        medical_review=pipeline.medical_review_enabled,
    )

    notes: list[str] = []
    if case.revoked_by is not None:
        notes.append("Data entry form completed and resubmitted after revocation.")
    else:
        notes.append("Data entry form completed.")
    if pipeline.qc_data_entry_enabled:
        updated.qc_form_status = QcFormStatus.PENDING
        notes.append("Awaiting QC approval.")
    else:
        updated.qc_form_status = QcFormStatus.APPROVED
        updated.qc_form_approved_by = SYSTEM_ACTOR_ID
        updated.qc_form_approved_at = stamp
        updated.qc_form_comments = "Auto-approved (QC Data Entry disabled)"
        notes.append("QC Data Entry skipped (disabled).")
    if rule.auto_complete_medical_review:
        updated.medical_review_status = MedicalReviewStatus.COMPLETED
        updated.medical_reviewed_by = SYSTEM_ACTOR_ID
        updated.medical_reviewed_at = stamp
        notes.append("Medical Review skipped (disabled).")
    if case.classification_tag != ClassificationTag.ICSR:
        previous = case.classification_tag.value if case.classification_tag else "None"
        updated.classification_tag = ClassificationTag.ICSR
        updated.workflow_track = WorkflowTrack.ICSR
        notes.append(f'Classified as ICSR on form completion (previous: "{previous}").')

    _release_lock(updated)
    _move(updated, rule.to_stage, rule.to_sub_status, rule.workflow_stage)
    notes.append(f"Moving to {stage_label(rule.to_stage)}.")
    _append_comment(updated, actor, " ".join(notes), "resubmission" if case.revoked_by else "system", now)
    return updated


def approve_form(
    case: CaseRecord,
    *,
    actor: Actor,
    pipeline: PipelineConfig,
    now: datetime,
    comments: str | None = None,
) -> CaseRecord:
    if case.qc_form_status == QcFormStatus.APPROVED:
        raise errors.already_approved("data entry form")
    if case.form_status != FormStatus.COMPLETED:
        raise errors.form_not_completed()
    if case.qc_form_status != QcFormStatus.PENDING:
        raise errors.invalid_transition("approve_form", "form QC is not pending")
    _check_not_held_by_other(case, actor)

    updated = copy.deepcopy(case)
    stamp = _iso(now)
    updated.qc_form_status = QcFormStatus.APPROVED
    updated.qc_form_approved_by = actor.id
    updated.qc_form_approved_at = stamp
    updated.qc_form_comments = comments
    if updated.qc_classification_status not in {QcStatus.APPROVED, QcStatus.NOT_APPLICABLE}:
        updated.qc_classification_status = QcStatus.APPROVED
        if not updated.qc_approved_by:
            updated.qc_approved_by = actor.id
            updated.qc_approved_at = stamp

    rule = resolve_stage("approve_form", medical_review=pipeline.medical_review_enabled)
    text = "Data entry form approved by QC."
    if rule.auto_complete_medical_review:
        updated.medical_review_status = MedicalReviewStatus.COMPLETED
        updated.medical_reviewed_by = SYSTEM_ACTOR_ID
        updated.medical_reviewed_at = stamp
        text += " Medical Review skipped (disabled)."
    _release_lock(updated)
    _move(updated, rule.to_stage, rule.to_sub_status, rule.workflow_stage)
    _append_comment(
        updated,
        actor,
        _with_suffix(f"{text} Moving to {stage_label(rule.to_stage)}.", comments),
        "qc_form_approval",
        now,
    )
    return updated


def reject_form(case: CaseRecord, *, actor: Actor, reason: str | None, now: datetime) -> CaseRecord:
    text = _require_reason(reason, "reject a data entry form")
    if case.qc_form_status != QcFormStatus.PENDING:
        raise errors.invalid_transition("reject_form", "form QC is not pending")
    _check_not_held_by_other(case, actor)

    updated = copy.deepcopy(case)
    updated.qc_form_status = QcFormStatus.REJECTED
    updated.qc_form_rejected_by = actor.id
    updated.qc_form_rejected_at = _iso(now)
    updated.qc_form_comments = text
    updated.form_status = FormStatus.IN_PROGRESS
    updated.priority = Priority.HIGH
    _reassign(updated, case.form_completed_by, now)
    _move(updated, Stage.DATA_ENTRY, SubStatus.DATA_ENTRY, WorkflowStage.DATA_ENTRY)
    _append_comment(
        updated,
        actor,
        f"Data entry form rejected by QC. Reason: {text}. Returned to Data Entry for corrections.",
        "qc_form_rejection",
        now,
    )
    return updated


def complete_medical_review(case: CaseRecord, *, actor: Actor, now: datetime) -> CaseRecord:
    if case.medical_review_status == MedicalReviewStatus.COMPLETED:
        raise errors.invalid_transition("complete_medical_review", "medical review is already completed")
    _check_not_held_by_other(case, actor)

    updated = copy.deepcopy(case)
    updated.medical_review_status = MedicalReviewStatus.COMPLETED
    updated.medical_reviewed_by = actor.id
    updated.medical_reviewed_at = _iso(now)
    text = "Medical review completed. Case approved for final processing."
    if case.revoked_by is not None:
        updated.revoked_by = None
        updated.revoked_at = None
        updated.revocation_reason = None
        text = "Medical review completed after revocation. Case approved for final processing."
    rule = resolve_stage("complete_medical_review")
    _release_lock(updated)
    _move(updated, rule.to_stage, rule.to_sub_status, rule.workflow_stage)
    _append_comment(updated, actor, text, "medical_approval", now)
    return updated


def _default_revoke_target(case: CaseRecord) -> str:
    in_data_entry = (
        case.workflow_stage == WorkflowStage.DATA_ENTRY
        or case.stage == Stage.DATA_ENTRY
        or case.sub_status == SubStatus.DATA_ENTRY
    )
    return "triage" if in_data_entry else "data_entry"


def revoke(
    case: CaseRecord,
    *,
    actor: Actor,
    reason: str | None,
    now: datetime,
    target_stage: str | None = None,
) -> CaseRecord:
    text = _require_reason(reason, "revoke a case")
    target = (target_stage or "").strip()
    if target in {Stage.TRIAGE.value, "Pending Review"}:
        target = "triage"
    if not target:
        target = _default_revoke_target(case)
    if target not in REVOKE_TARGETS:
        raise errors.invalid_transition("revoke", f"unsupported target stage: {target}")

    updated = copy.deepcopy(case)
    stamp = _iso(now)
    updated.medical_review_status = MedicalReviewStatus.NOT_STARTED
    updated.medical_reviewed_by = None
    updated.medical_reviewed_at = None
    updated.revoked_by = actor.id
    updated.revoked_at = stamp
    updated.revocation_reason = text
    updated.priority = Priority.HIGH
    track = _effective_track(case)

    if target == "triage":
        _reassign(updated, case.classified_by or actor.id, now)
        updated.classification_tag = None
        updated.workflow_track = None
        updated.qc_classification_status = None
        updated.qc_approved_by = None
        updated.qc_approved_at = None
        updated.form_status = FormStatus.NOT_STARTED
        updated.qc_form_status = QcFormStatus.NOT_APPLICABLE
        updated.is_auto_passed = False
        updated.batch_id = None
        _move(updated, Stage.TRIAGE, SubStatus.TRIAGE, _TRIAGE_WORKFLOW_STAGE.get(track) if track else None)
    elif target == "qc_triage":
        _release_lock(updated)
        updated.qc_classification_status = QcStatus.PENDING
        updated.qc_approved_by = None
        updated.qc_approved_at = None
        updated.form_status = FormStatus.NOT_STARTED
        updated.is_auto_passed = False
        _move(updated, Stage.QC_TRIAGE, SubStatus.ASSESSMENT, WorkflowStage.QC_TRIAGE)
    elif target == "qc_data_entry":
        _release_lock(updated)
        updated.qc_form_status = QcFormStatus.PENDING
        _move(updated, Stage.QC_DATA_ENTRY, SubStatus.DATA_ENTRY, WorkflowStage.QC_DATA_ENTRY)
    elif target in {"assessment", "qc_allocation"}:
        _release_lock(updated)
        updated.form_status = FormStatus.NOT_STARTED
        updated.qc_form_status = QcFormStatus.NOT_STARTED
        updated.qc_approved_at = None
        updated.is_auto_passed = False
        if track == WorkflowTrack.AOI:
            _move(updated, Stage.AOI_ASSESSMENT, SubStatus.ASSESSMENT, WorkflowStage.ASSESSMENT_AOI)
        elif track == WorkflowTrack.NO_CASE:
            _move(updated, Stage.NO_CASE_ASSESSMENT, SubStatus.ASSESSMENT, WorkflowStage.ASSESSMENT_NO_CASE)
        else:
            updated.qc_classification_status = QcStatus.PENDING
            _move(updated, Stage.QC_ALLOCATION, SubStatus.ASSESSMENT, WorkflowStage.ASSESSMENT_ICSR)
    else:
        _reassign(updated, case.classified_by or case.form_completed_by, now)
        updated.form_status = FormStatus.IN_PROGRESS
        updated.qc_form_status = QcFormStatus.NOT_STARTED
        _move(updated, Stage.DATA_ENTRY, SubStatus.DATA_ENTRY, WorkflowStage.DATA_ENTRY)

    _append_comment(
        updated,
        actor,
        f"Case revoked. Reason: {text}. Returned to {stage_label(updated.stage)} for corrections.",
        "revocation",
        now,
    )
    return updated


def route_from_assessment(
    case: CaseRecord,
    *,
    actor: Actor,
    destination: str,
    now: datetime,
    previous_track: str | None = None,
    comments: str | None = None,
) -> CaseRecord:
    if case.sub_status != SubStatus.ASSESSMENT:
        raise errors.invalid_transition("route", "case must be in assessment to route")
    target = ROUTE_DESTINATIONS.get(destination)
    if target is None:
        raise errors.invalid_transition("route", f"unknown destination: {destination}")
    _check_not_held_by_other(case, actor)

    updated = copy.deepcopy(case)
    stamp = _iso(now)
    note = (comments or "").strip()
    if note:
        updated.qc_classification_status = QcStatus.REJECTED
        updated.qc_rejected_by = actor.id
        updated.qc_rejected_at = stamp
        updated.qc_comments = note
        updated.priority = Priority.HIGH
    elif destination in _FORWARD_DESTINATIONS:
        updated.qc_classification_status = QcStatus.APPROVED
        updated.qc_approved_by = actor.id
        updated.qc_approved_at = stamp
    elif target.sub_status != SubStatus.TRIAGE:
        updated.qc_classification_status = QcStatus.PENDING

    if previous_track:
        try:
            updated.source_track = parse_track(previous_track)
        except ValueError:
            raise errors.invalid_transition("route", f"unknown previous track: {previous_track}") from None
        updated.source_track_timestamp = stamp
    if target.track is not None:
        updated.workflow_track = target.track
    elif updated.workflow_track is None:
        updated.workflow_track = _effective_track(case)
    if target.sub_status == SubStatus.TRIAGE:
        updated.classification_tag = None
        if not note:
            updated.qc_classification_status = None

    _release_lock(updated)
    _move(updated, target.stage, target.sub_status, target.workflow_stage)
    track_label = case.workflow_track.value if case.workflow_track else "unassigned"
    text = f"Routed from {track_label} assessment to {destination}."
    if note:
        text = f"Rejected from assessment. Reason: {note}. {text}"
    _append_comment(updated, actor, text, "rejection" if note else "track_route", now)
    return updated


def add_review_comment(case: CaseRecord, *, actor: Actor, text: str, now: datetime) -> CaseRecord:
    body = text.strip()
    if not body:
        raise errors.ApiError(
            code="REQ_VALIDATION_FAILED",
            message="comment text must not be empty",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    updated = copy.deepcopy(case)
    _append_comment(updated, actor, body, "review", now)
    return updated
