from __future__ import annotations

from fastapi import APIRouter, Request

from caseflow.routes._deps import tenant_id_from_request, trace_id_from_request
from caseflow.schemas import WorkflowConfigRequest, success_envelope
from caseflow.store import store

router = APIRouter(prefix="/api/v1", tags=["workflow-config"])


@router.get("/workflow-config")
def get_workflow_config(request: Request):
    cfg = store.get_pipeline_config(tenant_id=tenant_id_from_request(request))
    return success_envelope(cfg.to_payload(), trace_id_from_request(request))


@router.put("/workflow-config")
def put_workflow_config(payload: WorkflowConfigRequest, request: Request):
    cfg = store.put_pipeline_config(
        tenant_id=tenant_id_from_request(request),
        payload=payload.model_dump(by_alias=True, exclude_none=True),
    )
    return success_envelope(cfg.to_payload(), trace_id_from_request(request), "workflow configuration updated")
