from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, Header, Request

from caseflow.case_model import CaseRecord, Priority
from caseflow.errors import ApiError
from caseflow.routes._deps import (
    case_payload,
    case_response,
    require_internal_debug,
    tenant_id_from_request,
    trace_id_from_request,
)
from caseflow.schemas import InternalCaseCreateRequest, success_envelope
from caseflow.store import store

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


@router.post("/cases")
def internal_create_case(
    payload: InternalCaseCreateRequest,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    tenant_id = payload.organization_id or tenant_id_from_request(request)
    now = datetime.now(UTC).isoformat()
    case = CaseRecord(
        id=payload.id or f"case_{uuid.uuid4().hex[:12]}",
        organization_id=tenant_id,
        title=payload.title,
        pmid=payload.pmid,
        drug_name=payload.drug_name,
        created_by=payload.created_by,
        created_at=now,
        updated_at=now,
        priority=Priority(payload.priority),
        extra=dict(payload.extra),
    )
    created = store.insert_case(case=case)
    store.append_audit_event(
        tenant_id=tenant_id,
        case_id=case.id,
        action="case_created",
        actor_id=payload.created_by or "ingestion",
        before=None,
        after=case,
        trace_id=trace_id_from_request(request),
    )
    return case_response(request, case_payload(created), status_code=201)


@router.get("/audit/integrity")
def internal_verify_audit_integrity(
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    result = store.verify_audit_integrity(tenant_id=tenant_id_from_request(request))
    if not result.get("valid", False):
        raise ApiError(
            code="AUDIT_INTEGRITY_BROKEN",
            message="audit log integrity check failed",
            error_class="security_sensitive",
            retryable=False,
            http_status=409,
        )
    return success_envelope(result, trace_id_from_request(request))
