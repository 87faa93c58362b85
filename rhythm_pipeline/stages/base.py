from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from rhythm_pipeline.config import PipelineConfig
from rhythm_pipeline.errors import ApiError, error_spec, pipeline_error
from rhythm_pipeline.object_storage import ObjectStorageBackend, build_pdf_path
from rhythm_pipeline.processing_jobs import ProcessingJobService
from rhythm_pipeline.rule_registry import RuleRegistry

logger = logging.getLogger(__name__)


class StageTimeoutError(RuntimeError):
    pass


def call_with_timeout(fn: Callable[[], Any], *, timeout_ms: int) -> Any:
    """Run ``fn`` on a worker thread; raise StageTimeoutError if it overruns.

    The worker is not cancelled on timeout, only abandoned.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout_ms / 1000.0)
    except FutureTimeoutError as exc:
        future.cancel()
        raise StageTimeoutError(f"stage io timeout after {timeout_ms}ms") from exc
    finally:
        executor.shutdown(wait=False)


@dataclass
class StageResult:
    success: bool
    data: dict[str, Any] | None = None
    error_code: str | None = None
    error: str | None = None
    details: dict[str, Any] | None = None
    retryable: bool = False

    @classmethod
    def ok(cls, data: dict[str, Any]) -> "StageResult":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, code: str, message: str, *, details: dict[str, Any] | None = None) -> "StageResult":
        return cls(
            success=False,
            error_code=code,
            error=message,
            details=details,
            retryable=error_spec(code).retryable,
        )

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        out: dict[str, Any] = {
            "success": False,
            "error_code": self.error_code,
            "error": self.error,
            "retryable": self.retryable,
        }
        if self.details:
            out["details"] = self.details
        return out


class StageLocks:
    """In-process advisory locks keyed by (job_id, stage)."""

    def __init__(self, *, enabled: bool = True) -> None:
        self.enabled = enabled
        self._guard = threading.Lock()
        # key -> [lock, holders]; an entry is dropped once nobody holds or waits on it.
        self._locks: dict[tuple[str, str], list[Any]] = {}

    @contextmanager
    def hold(self, job_id: str, stage: str) -> Iterator[None]:
        if not self.enabled:
            yield
            return
        key = (job_id, stage)
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)


@dataclass
class StageDependencies:
    jobs: ProcessingJobService
    artifacts: Any
    assessments: Any
    notifications: Any
    registry: RuleRegistry
    object_storage: ObjectStorageBackend
    config: PipelineConfig
    pdf_path_factory: Callable[..., str] = build_pdf_path
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(UTC))


class StageProcessor:
    stage = ""

    def __init__(self, deps: StageDependencies, *, locks: StageLocks | None = None) -> None:
        self.deps = deps
        self.locks = locks or StageLocks(enabled=deps.config.stage_locks_enabled)

    def run(self, job: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        raise NotImplementedError

    def process(self, job_id: str, **kwargs: Any) -> StageResult:
        try:
            job = self.deps.jobs.require_job(job_id)
            if job["status"] == "failed":
                raise pipeline_error("INVALID_STATE", "processing job has failed terminally")
        except ApiError as exc:
            return StageResult.failure(exc.code, exc.message, details=exc.details)

        correlation_id = job.get("correlation_id")
        started = time.perf_counter()
        with self.locks.hold(job_id, self.stage):
            try:
                job = self.deps.jobs.mark_running(job)
                data = self.run(job, **kwargs)
            except ApiError as exc:
                self.deps.jobs.record_failure(job_id, stage=self.stage, code=exc.code, message=exc.message)
                logger.warning(
                    "stage_failed stage=%s job_id=%s correlation_id=%s code=%s",
                    self.stage,
                    job_id,
                    correlation_id,
                    exc.code,
                )
                return StageResult.failure(exc.code, exc.message, details=exc.details)
            except Exception as exc:
                logger.error(
                    "stage_internal_error stage=%s job_id=%s correlation_id=%s error_type=%s",
                    self.stage,
                    job_id,
                    correlation_id,
                    type(exc).__name__,
                )
                self.deps.jobs.record_failure(
                    job_id,
                    stage=self.stage,
                    code="INTERNAL_ERROR",
                    message=f"unexpected {type(exc).__name__}",
                )
                return StageResult.failure("INTERNAL_ERROR", "internal error during stage processing")
            self.deps.jobs.complete_stage(job_id, self.stage)
        logger.info(
            "stage_completed stage=%s job_id=%s correlation_id=%s duration_ms=%s",
            self.stage,
            job_id,
            correlation_id,
            int((time.perf_counter() - started) * 1000),
        )
        return StageResult.ok(data)

    def now_iso(self) -> str:
        return self.deps.clock().isoformat()

    def load_artifact(self, job_id: str, artifact_type: str, *, missing_code: str) -> dict[str, Any]:
        artifact = self.deps.artifacts.get(job_id=job_id, artifact_type=artifact_type)
        if artifact is None:
            raise pipeline_error(missing_code, f"{artifact_type} not found for job")
        return artifact

    def save_artifact(self, job_id: str, artifact_type: str, data: dict[str, Any]) -> dict[str, Any]:
        return self.deps.artifacts.put(job_id=job_id, artifact_type=artifact_type, data=data)
