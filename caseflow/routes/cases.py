from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request

from caseflow import state_machine
from caseflow.case_model import Stage, SubStatus, parse_tag
from caseflow.repositories import CaseQuery
from caseflow.routes._deps import (
    actor_from_request,
    allocation_engine,
    case_payload,
    case_response,
    forbidden,
    roles_from_request,
    run_case_transition,
    sampling_router,
    tenant_id_from_request,
    trace_id_from_request,
    validation_error,
)
from caseflow.schemas import (
    AllocateRequest,
    ApproveRequest,
    ClassifyRequest,
    CommentRequest,
    FormDraftRequest,
    FormRejectRequest,
    RejectRequest,
    RevokeRequest,
    RouteRequest,
    success_envelope,
)
from caseflow.store import store

router = APIRouter(prefix="/api/v1", tags=["cases"])


def _parse_stage(raw: str) -> Stage:
    try:
        return Stage.parse(raw)
    except ValueError:
        raise validation_error(f"unknown stage: {raw}") from None


@router.post("/cases/allocate")
def allocate_case(payload: AllocateRequest, request: Request):
    actor = actor_from_request(request)
    roles = roles_from_request(request)
    if roles and payload.role not in roles:
        raise forbidden(f"reviewer lacks role: {payload.role}")
    allocated = allocation_engine.allocate(
        tenant_id=tenant_id_from_request(request),
        worker_id=actor.id,
        role=payload.role,
        trace_id=trace_id_from_request(request),
    )
    if allocated is None:
        return case_response(request, None, message="no cases available")
    return case_response(request, case_payload(allocated))


@router.post("/cases/batch-process")
def batch_process(request: Request):
    summary = sampling_router.run_batch(
        tenant_id=tenant_id_from_request(request),
        actor=actor_from_request(request),
        trace_id=trace_id_from_request(request),
    )
    return success_envelope(summary, trace_id_from_request(request))


@router.get("/cases")
def list_cases(
    request: Request,
    stage: str | None = Query(default=None),
    sub_status: str | None = Query(default=None, alias="subStatus"),
    assigned_to: str | None = Query(default=None, alias="assignedTo"),
    limit: int = Query(default=100, ge=1, le=500),
):
    sub_statuses: tuple[SubStatus, ...] = ()
    if sub_status:
        try:
            sub_statuses = (SubStatus(sub_status),)
        except ValueError:
            raise validation_error(f"unknown subStatus: {sub_status}") from None
    items = store.query_cases(
        tenant_id=tenant_id_from_request(request),
        query=CaseQuery(
            stages=(_parse_stage(stage),) if stage else (),
            sub_statuses=sub_statuses,
            assigned_to=assigned_to,
            limit=limit,
        ),
    )
    data = {"items": [case_payload(x) for x in items], "total": len(items)}
    return success_envelope(data, trace_id_from_request(request))


@router.get("/cases/{case_id}")
def get_case(case_id: str, request: Request):
    found = store.read_case(tenant_id=tenant_id_from_request(request), case_id=case_id)
    return case_response(request, case_payload(found))


@router.get("/cases/{case_id}/audit-logs")
def get_case_audit_logs(case_id: str, request: Request):
    tenant_id = tenant_id_from_request(request)
    store.read_case(tenant_id=tenant_id, case_id=case_id)
    items = store.list_case_audit_logs(tenant_id=tenant_id, case_id=case_id)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.put("/cases/{case_id}/classify")
def classify_case(
    case_id: str,
    payload: ClassifyRequest,
    request: Request,
    if_match: str | None = Header(default=None, alias="If-Match"),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = actor_from_request(request)
    tag = parse_tag(payload.tag)
    return run_case_transition(
        request,
        case_id=case_id,
        action="classify",
        transition=lambda case, pipeline, now: state_machine.classify(
            case, actor=actor, tag=tag, pipeline=pipeline, now=now
        ),
        payload=payload.model_dump(mode="json"),
        if_match=if_match,
        idempotency_key=idempotency_key,
    )


@router.post("/cases/{case_id}/qc/approve")
def approve_classification(
    case_id: str,
    request: Request,
    payload: ApproveRequest | None = None,
    if_match: str | None = Header(default=None, alias="If-Match"),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = actor_from_request(request)
    body = payload or ApproveRequest()
    return run_case_transition(
        request,
        case_id=case_id,
        action="approve_classification",
        transition=lambda case, pipeline, now: state_machine.approve_classification(
            case, actor=actor, now=now, comments=body.comments
        ),
        payload=body.model_dump(mode="json"),
        if_match=if_match,
        idempotency_key=idempotency_key,
    )


@router.post("/cases/{case_id}/qc/reject")
def reject_classification(
    case_id: str,
    payload: RejectRequest,
    request: Request,
    if_match: str | None = Header(default=None, alias="If-Match"),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = actor_from_request(request)
    target = _parse_stage(payload.target_stage) if payload.target_stage else None
    return run_case_transition(
        request,
        case_id=case_id,
        action="reject_classification",
        transition=lambda case, pipeline, now: state_machine.reject_classification(
            case, actor=actor, reason=payload.reason, now=now, target_stage=target
        ),
        payload=payload.model_dump(mode="json", by_alias=True),
        if_match=if_match,
        idempotency_key=idempotency_key,
    )


@router.put("/cases/{case_id}/form")
def save_form_draft(
    case_id: str,
    payload: FormDraftRequest,
    request: Request,
    if_match: str | None = Header(default=None, alias="If-Match"),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = actor_from_request(request)
    return run_case_transition(
        request,
        case_id=case_id,
        action="save_form",
        transition=lambda case, pipeline, now: state_machine.save_form_draft(
            case, actor=actor, form_data=payload.form_data, now=now
        ),
        payload=payload.model_dump(mode="json", by_alias=True),
        if_match=if_match,
        idempotency_key=idempotency_key,
    )


@router.post("/cases/{case_id}/form/complete")
def complete_form(
    case_id: str,
    request: Request,
    if_match: str | None = Header(default=None, alias="If-Match"),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = actor_from_request(request)
    return run_case_transition(
        request,
        case_id=case_id,
        action="complete_form",
        transition=lambda case, pipeline, now: state_machine.complete_form(
            case, actor=actor, pipeline=pipeline, now=now
        ),
        payload={},
        if_match=if_match,
        idempotency_key=idempotency_key,
    )


@router.post("/cases/{case_id}/qc-form/approve")
def approve_form(
    case_id: str,
    request: Request,
    payload: ApproveRequest | None = None,
    if_match: str | None = Header(default=None, alias="If-Match"),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = actor_from_request(request)
    body = payload or ApproveRequest()
    return run_case_transition(
        request,
        case_id=case_id,
        action="approve_form",
        transition=lambda case, pipeline, now: state_machine.approve_form(
            case, actor=actor, pipeline=pipeline, now=now, comments=body.comments
        ),
        payload=body.model_dump(mode="json"),
        if_match=if_match,
        idempotency_key=idempotency_key,
    )


@router.post("/cases/{case_id}/qc-form/reject")
def reject_form(
    case_id: str,
    payload: FormRejectRequest,
    request: Request,
    if_match: str | None = Header(default=None, alias="If-Match"),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = actor_from_request(request)
    return run_case_transition(
        request,
        case_id=case_id,
        action="reject_form",
        transition=lambda case, pipeline, now: state_machine.reject_form(
            case, actor=actor, reason=payload.reason, now=now
        ),
        payload=payload.model_dump(mode="json"),
        if_match=if_match,
        idempotency_key=idempotency_key,
    )


@router.post("/cases/{case_id}/medical-review/complete")
def complete_medical_review(
    case_id: str,
    request: Request,
    if_match: str | None = Header(default=None, alias="If-Match"),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = actor_from_request(request)
    return run_case_transition(
        request,
        case_id=case_id,
        action="complete_medical_review",
        transition=lambda case, pipeline, now: state_machine.complete_medical_review(case, actor=actor, now=now),
        payload={},
        if_match=if_match,
        idempotency_key=idempotency_key,
    )


@router.post("/cases/{case_id}/revoke")
def revoke_case(
    case_id: str,
    payload: RevokeRequest,
    request: Request,
    if_match: str | None = Header(default=None, alias="If-Match"),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = actor_from_request(request)
    return run_case_transition(
        request,
        case_id=case_id,
        action="revoke",
        transition=lambda case, pipeline, now: state_machine.revoke(
            case, actor=actor, reason=payload.reason, now=now, target_stage=payload.target_stage
        ),
        payload=payload.model_dump(mode="json", by_alias=True),
        if_match=if_match,
        idempotency_key=idempotency_key,
    )


@router.post("/cases/{case_id}/route")
def route_case(
    case_id: str,
    payload: RouteRequest,
    request: Request,
    if_match: str | None = Header(default=None, alias="If-Match"),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = actor_from_request(request)
    return run_case_transition(
        request,
        case_id=case_id,
        action="route_from_assessment",
        transition=lambda case, pipeline, now: state_machine.route_from_assessment(
            case,
            actor=actor,
            destination=payload.destination,
            now=now,
            previous_track=payload.previous_track,
            comments=payload.comments,
        ),
        payload=payload.model_dump(mode="json", by_alias=True),
        if_match=if_match,
        idempotency_key=idempotency_key,
    )


@router.post("/cases/{case_id}/comments")
def add_comment(
    case_id: str,
    payload: CommentRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    actor = actor_from_request(request)
    return run_case_transition(
        request,
        case_id=case_id,
        action="add_comment",
        transition=lambda case, pipeline, now: state_machine.add_review_comment(
            case, actor=actor, text=payload.text, now=now
        ),
        payload=payload.model_dump(mode="json"),
        if_match=None,
        idempotency_key=idempotency_key,
    )
