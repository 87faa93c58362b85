from __future__ import annotations

from dataclasses import dataclass
from typing import Any

# How a failure code affects the processing job it was raised for.
JOB_EFFECT_NONE = "none"
JOB_EFFECT_LOG = "log"
JOB_EFFECT_RETRY = "retry"
JOB_EFFECT_FAIL = "fail"


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


@dataclass(frozen=True)
class ErrorSpec:
    error_class: str
    retryable: bool
    http_status: int
    job_effect: str


ERROR_CATALOG: dict[str, ErrorSpec] = {
    "VALIDATION_ERROR": ErrorSpec("validation", False, 400, JOB_EFFECT_NONE),
    "NOT_FOUND": ErrorSpec("validation", False, 404, JOB_EFFECT_NONE),
    "INVALID_STATE": ErrorSpec("business_rule", False, 409, JOB_EFFECT_NONE),
    "NO_ANSWERS": ErrorSpec("business_rule", False, 422, JOB_EFFECT_FAIL),
    "SCORING_FAILED": ErrorSpec("business_rule", False, 422, JOB_EFFECT_FAIL),
    "LOAD_RISK_BUNDLE_FAILED": ErrorSpec("dependency", True, 422, JOB_EFFECT_LOG),
    "LOAD_RANKING_FAILED": ErrorSpec("dependency", True, 422, JOB_EFFECT_LOG),
    "LOAD_SECTIONS_FAILED": ErrorSpec("dependency", True, 422, JOB_EFFECT_LOG),
    "LOAD_SAFETY_CHECK_FAILED": ErrorSpec("dependency", True, 422, JOB_EFFECT_LOG),
    "LOAD_VALIDATION_FAILED": ErrorSpec("dependency", True, 422, JOB_EFFECT_LOG),
    "EVALUATION_FAILED": ErrorSpec("transient", True, 500, JOB_EFFECT_RETRY),
    "SAVE_FAILED": ErrorSpec("transient", True, 503, JOB_EFFECT_RETRY),
    "DELIVERY_ERROR": ErrorSpec("transient", True, 503, JOB_EFFECT_LOG),
    "DELIVERY_INELIGIBLE": ErrorSpec("business_rule", False, 409, JOB_EFFECT_NONE),
    "ACTIVATION_GUARD_FAILED": ErrorSpec("validation", False, 422, JOB_EFFECT_NONE),
    "PDF_GENERATION_FAILED": ErrorSpec("transient", True, 503, JOB_EFFECT_RETRY),
    "PDF_UPLOAD_FAILED": ErrorSpec("transient", True, 503, JOB_EFFECT_RETRY),
    "PDF_POINTER_UPDATE_FAILED": ErrorSpec("transient", True, 503, JOB_EFFECT_RETRY),
    "INTERNAL_ERROR": ErrorSpec("transient", True, 500, JOB_EFFECT_RETRY),
}


def error_spec(code: str) -> ErrorSpec:
    return ERROR_CATALOG.get(code, ERROR_CATALOG["INTERNAL_ERROR"])


def pipeline_error(code: str, message: str, *, details: dict[str, Any] | None = None) -> ApiError:
    """Build an ApiError whose class, retryability and status come from the catalog."""
    spec = error_spec(code)
    return ApiError(
        code=code,
        message=message,
        error_class=spec.error_class,
        retryable=spec.retryable,
        http_status=spec.http_status,
        details=details,
    )
