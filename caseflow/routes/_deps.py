from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from caseflow.allocation import AllocationEngine
from caseflow.case_model import to_record
from caseflow.errors import ApiError
from caseflow.repositories import VersionedCase
from caseflow.review_service import ReviewService, Transition
from caseflow.sampling import BatchSamplingRouter
from caseflow.schemas import error_envelope, success_envelope
from caseflow.security import redact_sensitive
from caseflow.state_machine import Actor
from caseflow.store import store

logger = logging.getLogger(__name__)

review_service = ReviewService(store)
allocation_engine = AllocationEngine(store)
sampling_router = BatchSamplingRouter(store)


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def tenant_id_from_request(request: Request) -> str:
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id:
        return tenant_id
    return "org_default"


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def actor_from_request(request: Request) -> Actor:
    subject = getattr(request.state, "auth_subject", None) or "anonymous"
    name = getattr(request.state, "auth_name", None) or subject
    return Actor(id=subject, name=name)


def roles_from_request(request: Request) -> set[str]:
    return set(getattr(request.state, "auth_roles", None) or set())


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def append_security_audit_log(
    *,
    request: Request,
    action: str,
    code: str,
    detail: str,
) -> None:
    security_cfg = request.app.state.security_cfg
    headers_obj = dict(request.headers.items())
    headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
    try:
        store.append_audit_event(
            tenant_id=tenant_id_from_request(request),
            case_id=None,
            action=action,
            actor_id=getattr(request.state, "auth_subject", None) or "anonymous",
            before=None,
            after=None,
            trace_id=trace_id_from_request(request),
            extra={"error_code": code, "detail": detail, "path": request.url.path, "headers": headers_payload},
        )
    except Exception:
        # A failing audit sink must not turn a 401/403 into a 500.
        logger.exception("failed to record security audit event %s", code)


def strip_etag(value: str | None) -> str | None:
    if value is None:
        return None
    token = value.strip()
    if token.startswith("W/"):
        token = token[2:]
    token = token.strip('"')
    return token or None


def case_payload(item: VersionedCase) -> dict[str, Any]:
    return to_record(item.case, version_token=item.version_token)


def case_response(
    request: Request,
    data: dict[str, Any] | None,
    *,
    message: str = "ok",
    status_code: int = 200,
) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=success_envelope(data, trace_id_from_request(request), message),
    )
    if data is not None and data.get("versionToken"):
        response.headers["ETag"] = f'"{data["versionToken"]}"'
    return response


def run_case_transition(
    request: Request,
    *,
    case_id: str,
    action: str,
    transition: Transition,
    payload: dict[str, Any],
    if_match: str | None,
    idempotency_key: str | None,
) -> JSONResponse:
    tenant_id = tenant_id_from_request(request)
    actor = actor_from_request(request)

    def _execute() -> dict[str, Any]:
        result = review_service.apply(
            tenant_id=tenant_id,
            case_id=case_id,
            action=action,
            actor=actor,
            transition=transition,
            trace_id=trace_id_from_request(request),
            if_match=strip_etag(if_match),
        )
        return case_payload(result)

    if idempotency_key:
        data = store.run_idempotent(
            endpoint=f"{action}:{case_id}",
            tenant_id=tenant_id,
            idempotency_key=idempotency_key,
            payload={**payload, "actor_id": actor.id},
            execute=_execute,
        )
    else:
        data = _execute()
    return case_response(request, data)


def validation_error(message: str) -> ApiError:
    return ApiError(
        code="REQ_VALIDATION_FAILED",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
    )


def forbidden(message: str) -> ApiError:
    return ApiError(
        code="AUTH_FORBIDDEN",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=403,
    )


def require_internal_debug(x_internal_debug: str | None) -> None:
    if x_internal_debug != "true":
        raise forbidden("internal endpoint forbidden")

