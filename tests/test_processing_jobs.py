from __future__ import annotations

import pytest

from rhythm_pipeline.errors import ApiError, ERROR_CATALOG, error_spec, pipeline_error
from rhythm_pipeline.processing_jobs import STAGES, ProcessingJobService, can_retry, next_stage, redact_error
from rhythm_pipeline.repositories import InMemoryArtifactsRepository, InMemoryJobsRepository
from rhythm_pipeline.repositories.artifacts import ARTIFACT_TYPES


def _service(max_attempts: int = 3) -> tuple[ProcessingJobService, InMemoryArtifactsRepository]:
    artifacts = InMemoryArtifactsRepository({})
    service = ProcessingJobService(
        jobs_repository=InMemoryJobsRepository({}),
        artifacts_repository=artifacts,
        max_attempts=max_attempts,
    )
    return service, artifacts


def test_create_job_is_idempotent_per_correlation_key():
    service, _ = _service()
    first, created_first = service.create_job(assessment_id="as_1", correlation_id="corr_1")
    second, created_second = service.create_job(assessment_id="as_1", correlation_id="corr_1")

    assert created_first is True
    assert created_second is False
    assert second["job_id"] == first["job_id"]
    assert first["status"] == "queued"
    assert first["stage"] == "risk"
    assert first["attempt"] == 1


def test_create_job_generates_correlation_id_when_missing():
    service, _ = _service()
    job, _ = service.create_job(assessment_id="as_9")
    assert job["correlation_id"].startswith("assessment-as_9-")


def test_create_job_rejects_max_attempts_out_of_range():
    service, _ = _service()
    with pytest.raises(ApiError) as exc:
        service.create_job(assessment_id="as_1", correlation_id="c", max_attempts=6)
    assert exc.value.code == "VALIDATION_ERROR"


def test_retryable_failures_consume_attempts_then_fail_job():
    service, _ = _service(max_attempts=2)
    job, _ = service.create_job(assessment_id="as_1", correlation_id="c")
    service.mark_running(job)

    after_first = service.record_failure(job["job_id"], stage="pdf", code="PDF_UPLOAD_FAILED", message="boom")
    assert after_first["status"] == "running"
    assert after_first["attempt"] == 2
    assert can_retry(after_first) is False

    after_second = service.record_failure(job["job_id"], stage="pdf", code="PDF_UPLOAD_FAILED", message="boom")
    assert after_second["status"] == "failed"
    assert len(after_second["errors"]) == 2


def test_terminal_business_failure_fails_job_immediately():
    service, _ = _service()
    job, _ = service.create_job(assessment_id="as_1", correlation_id="c")
    service.mark_running(job)
    failed = service.record_failure(job["job_id"], stage="risk", code="NO_ANSWERS", message="no answers")
    assert failed["status"] == "failed"
    with pytest.raises(ApiError) as exc:
        service.mark_running(failed)
    assert exc.value.code == "INVALID_STATE"


def test_caller_errors_leave_job_untouched():
    service, _ = _service()
    job, _ = service.create_job(assessment_id="as_1", correlation_id="c")
    assert service.record_failure(job["job_id"], stage="ranking", code="VALIDATION_ERROR", message="x") is None
    assert service.get_job(job["job_id"])["errors"] == []


def test_load_failures_are_logged_without_consuming_attempt():
    service, _ = _service()
    job, _ = service.create_job(assessment_id="as_1", correlation_id="c")
    service.mark_running(job)
    updated = service.record_failure(job["job_id"], stage="content", code="LOAD_RANKING_FAILED", message="missing")
    assert updated["attempt"] == 1
    assert updated["errors"][0]["code"] == "LOAD_RANKING_FAILED"


def test_complete_stage_advances_and_completes_when_all_artifacts_exist():
    service, artifacts = _service()
    job, _ = service.create_job(assessment_id="as_1", correlation_id="c")
    job = service.mark_running(job)

    advanced = service.complete_stage(job["job_id"], "risk")
    assert advanced["stage"] == "ranking"
    # Re-running an earlier stage never moves the pointer back.
    assert service.complete_stage(job["job_id"], "risk")["stage"] == "ranking"

    for artifact_type in ARTIFACT_TYPES:
        artifacts.put(job_id=job["job_id"], artifact_type=artifact_type, data={"ok": True})
    completed = service.complete_stage(job["job_id"], "pdf")
    assert completed["status"] == "completed"
    assert completed["completed_at"]


def test_redact_error_strips_identifiers():
    message = "failed for 123e4567-e89b-12d3-a456-426614174000 (jane@example.com) on 2024-05-01"
    redacted = redact_error(message)
    assert "123e4567" not in redacted
    assert "jane@example.com" not in redacted
    assert "2024-05-01" not in redacted
    assert len(redact_error("x" * 900)) < 600


def test_stage_order_and_catalog_cover_every_stage_failure():
    assert STAGES == ("risk", "ranking", "content", "safety", "validation", "delivery", "pdf")
    assert next_stage("pdf") is None
    assert next_stage("safety") == "validation"
    assert error_spec("SOMETHING_NEW") == ERROR_CATALOG["INTERNAL_ERROR"]
    err = pipeline_error("ACTIVATION_GUARD_FAILED", "bad", details={"guard_errors": ["x"]})
    assert err.http_status == 422
    assert err.retryable is False
    assert err.details == {"guard_errors": ["x"]}


def test_delivery_errors_are_logged_and_terminal_flag_fails_job():
    service, _ = _service()
    job, _ = service.create_job(assessment_id="as_1", correlation_id="c")
    service.mark_running(job)
    logged = service.record_failure(job["job_id"], stage="delivery", code="DELIVERY_ERROR", message="sink down")
    assert logged["status"] == "running"
    assert logged["attempt"] == 1

    failed = service.record_failure(
        job["job_id"], stage="delivery", code="DELIVERY_INELIGIBLE", message="exhausted", terminal=True
    )
    assert failed["status"] == "failed"
    assert [e["code"] for e in failed["errors"]] == ["DELIVERY_ERROR", "DELIVERY_INELIGIBLE"]
