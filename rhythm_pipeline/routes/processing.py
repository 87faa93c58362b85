from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from rhythm_pipeline.routes._deps import require_role, stage_result_response, trace_id_from_request
from rhythm_pipeline.schemas import AssessmentUpsertRequest, CreateJobRequest, RunStageRequest, success_envelope
from rhythm_pipeline.store import store

router = APIRouter(prefix="/api/v1", tags=["processing"])


def _stage_kwargs(payload: RunStageRequest | None) -> dict:
    if payload is None:
        return {}
    return payload.model_dump(mode="json", exclude_none=True)


@router.put("/assessments/{assessment_id}")
def upsert_assessment(assessment_id: str, payload: AssessmentUpsertRequest, request: Request):
    data = store.upsert_assessment({**payload.model_dump(mode="json"), "assessment_id": assessment_id})
    return success_envelope(data, trace_id_from_request(request))


@router.post("/jobs")
def create_job(payload: CreateJobRequest, request: Request):
    data = store.create_job(
        assessment_id=payload.assessment_id,
        correlation_id=payload.correlation_id,
        max_attempts=payload.max_attempts,
    )
    return JSONResponse(
        status_code=201 if data["created"] else 200,
        content=success_envelope(data, trace_id_from_request(request)),
    )


@router.get("/jobs/{job_id}")
def get_job(job_id: str, request: Request):
    return success_envelope(store.get_job(job_id), trace_id_from_request(request))


@router.get("/jobs/{job_id}/artifacts/{artifact_type}")
def get_artifact(job_id: str, artifact_type: str, request: Request):
    return success_envelope(store.get_artifact(job_id, artifact_type), trace_id_from_request(request))


@router.post("/jobs/{job_id}/stages/{stage}")
def run_stage(job_id: str, stage: str, request: Request, payload: RunStageRequest | None = None):
    if stage == "delivery":
        require_role(request, allowed=request.app.state.security_cfg.delivery_allowed_roles, action="deliver_report")
    result = store.run_stage(stage, job_id, **_stage_kwargs(payload))
    return stage_result_response(request, result)


@router.post("/jobs/{job_id}/advance")
def run_next_stage(job_id: str, request: Request, payload: RunStageRequest | None = None):
    job = store.get_job(job_id)
    if job.get("stage") == "delivery":
        require_role(request, allowed=request.app.state.security_cfg.delivery_allowed_roles, action="deliver_report")
    result = store.run_next_stage(job_id, **_stage_kwargs(payload))
    return stage_result_response(request, result)


@router.post("/jobs/{job_id}/safety/retry-save")
def retry_safety_save(job_id: str, request: Request):
    return stage_result_response(request, store.retry_safety_save(job_id))


@router.get("/jobs/{job_id}/report-url")
def report_url(job_id: str, request: Request):
    return success_envelope(store.report_url(job_id), trace_id_from_request(request))
