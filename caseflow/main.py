from __future__ import annotations

import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from caseflow.errors import ApiError
from caseflow.routes import cases, internal, workflow_config
from caseflow.routes._deps import (
    append_security_audit_log,
    error_response,
    request_id_from_request,
    trace_id_from_request,
)
from caseflow.schemas import success_envelope
from caseflow.security import JwtSecurityConfig, parse_and_validate_bearer_token

logger = logging.getLogger(__name__)

SECURITY_CODES = frozenset({"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN", "TENANT_SCOPE_VIOLATION"})


def _split_header_list(raw: str | None) -> set[str]:
    return {x.strip() for x in (raw or "").split(",") if x.strip()}


def create_app() -> FastAPI:
    app = FastAPI(title="Caseflow Review API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["ETag", "x-trace-id", "x-request-id"],
        )

    def _with_ids(request: Request, response):
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = "anonymous"
        path = request.url.path
        if (
            security_cfg.trace_id_strict_required
            and path.startswith("/api/v1/")
            and path != "/api/v1/health"
            and not incoming_trace_id
        ):
            response = error_response(
                request,
                code="TRACE_ID_REQUIRED",
                message="x-trace-id header is required",
                error_class="validation",
                retryable=False,
                status_code=400,
            )
            return _with_ids(request, response)
        try:
            header_tenant_explicit = request.headers.get("x-tenant-id")
            if security_cfg.enabled and path.startswith("/api/v1/") and not path.startswith("/api/v1/internal/"):
                if path != "/api/v1/health":
                    auth_ctx = parse_and_validate_bearer_token(
                        authorization=request.headers.get("Authorization"),
                        cfg=security_cfg,
                    )
                    request.state.auth_subject = auth_ctx.subject
                    request.state.auth_name = auth_ctx.name
                    request.state.auth_roles = auth_ctx.roles
                    request.state.tenant_id = auth_ctx.organization_id
                    if header_tenant_explicit and header_tenant_explicit != auth_ctx.organization_id:
                        raise ApiError(
                            code="TENANT_SCOPE_VIOLATION",
                            message="organization mismatch",
                            error_class="security_sensitive",
                            retryable=False,
                            http_status=403,
                        )
            else:
                request.state.tenant_id = header_tenant_explicit or "org_default"
                request.state.auth_subject = request.headers.get("x-actor-id", "").strip() or "anonymous"
                request.state.auth_name = request.headers.get("x-actor-name", "").strip() or None
                request.state.auth_roles = _split_header_list(request.headers.get("x-actor-roles"))
            response = await call_next(request)
            return _with_ids(request, response)
        except ApiError as exc:
            logger.warning("request blocked on %s: %s", path, exc.code)
            append_security_audit_log(
                request=request,
                action="security_blocked",
                code=exc.code,
                detail=exc.message,
            )
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
            return _with_ids(request, response)

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in SECURITY_CODES:
            append_security_audit_log(
                request=request,
                action="security_blocked",
                code=exc.code,
                detail=exc.message,
            )
        elif exc.error_class == "concurrency":
            logger.info("concurrency conflict on %s: %s", request.url.path, exc.message)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        if request.url.path.endswith("/revoke") or request.url.path.endswith("/reject"):
            for err in exc.errors():
                if "reason" in tuple(err.get("loc", ())):
                    return error_response(
                        request,
                        code="CASE_REASON_REQUIRED",
                        message="a reason is required",
                        error_class="business_rule",
                        retryable=False,
                        status_code=400,
                    )
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(cases.router)
    app.include_router(workflow_config.router)
    app.include_router(internal.router)
    return app


app = create_app()
