from __future__ import annotations

import logging
import re
import uuid
from datetime import UTC, datetime
from typing import Any

from rhythm_pipeline.errors import (
    JOB_EFFECT_FAIL,
    JOB_EFFECT_LOG,
    JOB_EFFECT_RETRY,
    error_spec,
    pipeline_error,
)
from rhythm_pipeline.repositories.artifacts import ARTIFACT_TYPES

logger = logging.getLogger(__name__)

STAGES: tuple[str, ...] = ("risk", "ranking", "content", "safety", "validation", "delivery", "pdf")

STAGE_ARTIFACTS: dict[str, str] = {
    "risk": "risk_bundle",
    "ranking": "ranking",
    "content": "sections",
    "safety": "safety_check",
    "validation": "validation_result",
    "delivery": "delivery",
    "pdf": "pdf",
}

SCHEMA_VERSION = "v1"
MAX_ATTEMPTS_CEILING = 5
MAX_ERROR_MESSAGE_LENGTH = 500

_UUID_RE = re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE)
_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_DATE_RE = re.compile(r"\b\d{4}-\d{2}-\d{2}\b")


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def next_stage(stage: str) -> str | None:
    idx = STAGES.index(stage)
    if idx + 1 >= len(STAGES):
        return None
    return STAGES[idx + 1]


def redact_error(message: str) -> str:
    """Strip identifiers and dates from an error message before it is stored on a job."""
    redacted = _UUID_RE.sub("[REDACTED-UUID]", message)
    redacted = _EMAIL_RE.sub("[REDACTED-EMAIL]", redacted)
    redacted = _DATE_RE.sub("[REDACTED-DATE]", redacted)
    if len(redacted) > MAX_ERROR_MESSAGE_LENGTH:
        redacted = redacted[:MAX_ERROR_MESSAGE_LENGTH] + "...[truncated]"
    return redacted


def generate_correlation_id(assessment_id: str, *, now: datetime | None = None) -> str:
    ts = int((now or datetime.now(UTC)).timestamp() * 1000)
    return f"assessment-{assessment_id}-{ts}"


def can_retry(job: dict[str, Any]) -> bool:
    if job.get("status") in {"completed", "failed"}:
        return False
    return int(job.get("attempt", 1)) < int(job.get("max_attempts", 3))


class ProcessingJobService:
    ALLOWED_TRANSITIONS: dict[str, set[str]] = {
        "queued": {"running", "failed"},
        "running": {"completed", "failed"},
        "completed": set(),
        "failed": set(),
    }

    def __init__(self, *, jobs_repository: Any, artifacts_repository: Any, max_attempts: int = 3) -> None:
        self._jobs = jobs_repository
        self._artifacts = artifacts_repository
        self._max_attempts = max(1, min(MAX_ATTEMPTS_CEILING, int(max_attempts)))

    def create_job(
        self,
        *,
        assessment_id: str,
        correlation_id: str | None = None,
        schema_version: str = SCHEMA_VERSION,
        max_attempts: int | None = None,
    ) -> tuple[dict[str, Any], bool]:
        """Create the job for an assessment run, or return the existing one.

        Jobs are unique per (assessment_id, correlation_id, schema_version); the
        second element of the result says whether a new row was written.
        """
        if not assessment_id.strip():
            raise pipeline_error("VALIDATION_ERROR", "assessment_id must not be empty")
        correlation_id = correlation_id or generate_correlation_id(assessment_id)
        existing = self._jobs.find_by_key(
            assessment_id=assessment_id,
            correlation_id=correlation_id,
            schema_version=schema_version,
        )
        if existing is not None:
            return existing, False

        limit = self._max_attempts if max_attempts is None else int(max_attempts)
        if limit < 1 or limit > MAX_ATTEMPTS_CEILING:
            raise pipeline_error(
                "VALIDATION_ERROR",
                f"max_attempts must be between 1 and {MAX_ATTEMPTS_CEILING}",
            )
        now = _utcnow_iso()
        job = {
            "job_id": f"job_{uuid.uuid4().hex[:12]}",
            "assessment_id": assessment_id,
            "correlation_id": correlation_id,
            "schema_version": schema_version,
            "stage": STAGES[0],
            "status": "queued",
            "attempt": 1,
            "max_attempts": limit,
            "created_at": now,
            "updated_at": now,
            "started_at": None,
            "completed_at": None,
            "errors": [],
        }
        created = self._jobs.create(job=job)
        logger.info(
            "processing_job_created job_id=%s correlation_id=%s",
            created["job_id"],
            correlation_id,
        )
        return created, True

    def get_job(self, job_id: str) -> dict[str, Any] | None:
        return self._jobs.get(job_id=job_id)

    def require_job(self, job_id: str) -> dict[str, Any]:
        job = self._jobs.get(job_id=job_id)
        if job is None:
            raise pipeline_error("NOT_FOUND", f"processing job not found: {job_id}")
        return job

    def _transition(self, job: dict[str, Any], new_status: str, patch: dict[str, Any]) -> dict[str, Any]:
        current = job["status"]
        if new_status != current and new_status not in self.ALLOWED_TRANSITIONS.get(current, set()):
            raise pipeline_error("INVALID_STATE", f"invalid job transition: {current} -> {new_status}")
        updated = self._jobs.update(
            job_id=job["job_id"],
            patch={**patch, "status": new_status, "updated_at": _utcnow_iso()},
        )
        return updated if updated is not None else job

    def mark_running(self, job: dict[str, Any]) -> dict[str, Any]:
        if job["status"] == "failed":
            raise pipeline_error("INVALID_STATE", "processing job has failed terminally")
        if job["status"] != "queued":
            return job
        return self._transition(job, "running", {"started_at": _utcnow_iso()})

    def complete_stage(self, job_id: str, stage: str) -> dict[str, Any]:
        """Advance the job past ``stage``; the stage pointer never moves backwards."""
        job = self.require_job(job_id)
        if job["status"] in {"failed", "completed"}:
            return job
        target = next_stage(stage) or stage
        current = str(job.get("stage") or STAGES[0])
        patch: dict[str, Any] = {}
        if STAGES.index(target) > STAGES.index(current):
            patch["stage"] = target
        present = set(self._artifacts.list_types(job_id=job_id))
        if present.issuperset(ARTIFACT_TYPES):
            return self._transition(job, "completed", {**patch, "completed_at": _utcnow_iso()})
        return self._transition(job, job["status"], patch)

    def record_failure(
        self,
        job_id: str,
        *,
        stage: str,
        code: str,
        message: str,
        terminal: bool = False,
    ) -> dict[str, Any] | None:
        """Apply a stage failure to the job according to the error catalog.

        Caller errors leave the job untouched. Retryable failures consume one
        attempt and fail the job once attempts are exhausted. ``terminal`` fails
        the job regardless of the code's catalog effect.
        """
        effect = JOB_EFFECT_FAIL if terminal else error_spec(code).job_effect
        if effect not in {JOB_EFFECT_LOG, JOB_EFFECT_RETRY, JOB_EFFECT_FAIL}:
            return None
        job = self._jobs.get(job_id=job_id)
        if job is None or job["status"] in {"completed", "failed"}:
            return job
        attempt = int(job.get("attempt", 1))
        errors = list(job.get("errors") or [])
        errors.append(
            {
                "code": code,
                "message": redact_error(message),
                "stage": stage,
                "timestamp": _utcnow_iso(),
                "attempt": attempt,
            }
        )
        patch: dict[str, Any] = {"errors": errors}
        if effect == JOB_EFFECT_FAIL:
            logger.warning("processing_job_failed job_id=%s stage=%s code=%s", job_id, stage, code)
            return self._transition(job, "failed", patch)
        if effect == JOB_EFFECT_RETRY:
            if can_retry(job):
                patch["attempt"] = attempt + 1
            else:
                logger.warning(
                    "processing_job_attempts_exhausted job_id=%s stage=%s attempt=%s",
                    job_id,
                    stage,
                    attempt,
                )
                return self._transition(job, "failed", patch)
        return self._transition(job, job["status"], patch)
