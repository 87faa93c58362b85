from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class AssessmentUpsertRequest(BaseModel):
    assessment_id: str = Field(min_length=1)
    patient_id: str = Field(min_length=1)
    answers: dict[str, float] = Field(default_factory=dict)
    structured_data: dict[str, Any] = Field(default_factory=dict)
    conversation_turns: list[dict[str, Any]] = Field(default_factory=list)


class CreateJobRequest(BaseModel):
    assessment_id: str = Field(min_length=1)
    correlation_id: str | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=5)


class RunStageRequest(BaseModel):
    """Stage arguments; each stage reads only the fields it understands."""

    # Range is enforced by the ranking stage so the error is a typed stage failure.
    top_n: int = 5
    program_tier: Literal["tier-1-essential", "tier-2-5-enhanced", "tier-2-comprehensive"] | None = None
    structured_intake_data: dict[str, Any] | None = None
    conversation_turns: list[dict[str, Any]] | None = None
    pinned_versions: dict[str, str] | None = None
    recipient_user_id: str | None = None


class RuleCreateRequest(BaseModel):
    rule_key: str = Field(min_length=1, max_length=120)
    kind: Literal["safety_rule", "scoring_config", "reasoning_config"]
    title: str = ""
    domain: str = "general"


class RuleDraftRequest(BaseModel):
    logic: dict[str, Any]
    defaults: dict[str, Any] = Field(default_factory=dict)
    change_reason: str = Field(min_length=1)


class RuleDraftUpdateRequest(BaseModel):
    logic: dict[str, Any] | None = None
    defaults: dict[str, Any] | None = None
    change_reason: str = Field(min_length=1)


class RuleStatusChangeRequest(BaseModel):
    change_reason: str = Field(min_length=1)


class SafetySandboxRequest(BaseModel):
    structured_intake_data: dict[str, Any] = Field(default_factory=dict)
    conversation_turns: list[dict[str, Any]] = Field(default_factory=list)
    pinned_versions: dict[str, str] = Field(default_factory=dict)


class DuplicateCheckRequest(BaseModel):
    patient_id: str = Field(min_length=1)
    inputs_hash: str = Field(min_length=1)
    window_hours: int | None = Field(default=None, ge=1, le=24 * 30)


class DiagnosisRunRequest(BaseModel):
    patient_id: str = Field(min_length=1)
    inputs: dict[str, Any]


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
