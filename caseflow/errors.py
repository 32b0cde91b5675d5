from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


def case_not_found(case_id: str) -> ApiError:
    return ApiError(
        code="CASE_NOT_FOUND",
        message=f"case not found: {case_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def already_approved(what: str) -> ApiError:
    return ApiError(
        code="CASE_ALREADY_APPROVED",
        message=f"{what} is already approved",
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


def missing_reason(action: str) -> ApiError:
    return ApiError(
        code="CASE_REASON_REQUIRED",
        message=f"a reason is required to {action}",
        error_class="business_rule",
        retryable=False,
        http_status=400,
    )


def form_not_completed() -> ApiError:
    return ApiError(
        code="CASE_FORM_NOT_COMPLETED",
        message="data entry form must be completed before QC approval",
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


def invalid_transition(action: str, detail: str) -> ApiError:
    return ApiError(
        code="CASE_TRANSITION_INVALID",
        message=f"invalid transition {action}: {detail}",
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


def lock_not_held(case_id: str) -> ApiError:
    return ApiError(
        code="CASE_LOCK_NOT_HELD",
        message=f"case {case_id} is not allocated to the current reviewer",
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


def write_conflict(case_id: str) -> ApiError:
    return ApiError(
        code="CASE_WRITE_CONFLICT",
        message=f"case {case_id} was modified concurrently; re-read and retry",
        error_class="concurrency",
        retryable=True,
        http_status=409,
    )


def case_exists(case_id: str) -> ApiError:
    return ApiError(
        code="CASE_ALREADY_EXISTS",
        message=f"case already exists: {case_id}",
        error_class="validation",
        retryable=False,
        http_status=409,
    )


def invalid_role(role: str) -> ApiError:
    return ApiError(
        code="CASE_ROLE_INVALID",
        message=f"unknown reviewer role: {role}",
        error_class="validation",
        retryable=False,
        http_status=400,
    )
