from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from rhythm_pipeline.routes._deps import trace_id_from_request
from rhythm_pipeline.schemas import DiagnosisRunRequest, DuplicateCheckRequest, success_envelope
from rhythm_pipeline.store import store

router = APIRouter(prefix="/api/v1", tags=["diagnosis-runs"])


@router.post("/diagnosis-runs/check-duplicate")
def check_duplicate(payload: DuplicateCheckRequest, request: Request):
    data = store.check_duplicate_run(
        inputs_hash=payload.inputs_hash,
        patient_id=payload.patient_id,
        window_hours=payload.window_hours,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/diagnosis-runs")
def submit_diagnosis_run(payload: DiagnosisRunRequest, request: Request):
    data = store.submit_diagnosis_run(patient_id=payload.patient_id, inputs=payload.inputs)
    return JSONResponse(
        status_code=200 if data["is_duplicate"] else 202,
        content=success_envelope(data, trace_id_from_request(request)),
    )


@router.get("/diagnosis-runs/{run_id}")
def get_diagnosis_run(run_id: str, request: Request):
    return success_envelope(store.get_diagnosis_run(run_id), trace_id_from_request(request))
