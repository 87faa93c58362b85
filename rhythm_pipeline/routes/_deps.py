from __future__ import annotations

import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from rhythm_pipeline.errors import error_spec
from rhythm_pipeline.schemas import error_envelope, success_envelope
from rhythm_pipeline.security import require_any_role
from rhythm_pipeline.stages import StageResult


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def subject_from_request(request: Request) -> str:
    subject = getattr(request.state, "auth_subject", None)
    if subject:
        return subject
    return "anonymous"


def require_role(request: Request, *, allowed: frozenset[str], action: str) -> None:
    security_cfg = request.app.state.security_cfg
    if not security_cfg.enabled:
        return
    require_any_role(
        roles=getattr(request.state, "auth_roles", frozenset()),
        allowed=allowed,
        action=action,
    )


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )


def stage_result_response(request: Request, result: StageResult) -> JSONResponse:
    if result.success:
        return JSONResponse(
            status_code=200,
            content=success_envelope(result.data, trace_id_from_request(request)),
        )
    code = result.error_code or "INTERNAL_ERROR"
    spec = error_spec(code)
    return error_response(
        request,
        code=code,
        message=result.error or "stage failed",
        error_class=spec.error_class,
        retryable=result.retryable,
        status_code=spec.http_status,
        details=result.details,
    )
