from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from rhythm_pipeline.config import PipelineConfig
from rhythm_pipeline.db.postgres import PostgresTxRunner
from rhythm_pipeline.dedup import DedupPolicy
from rhythm_pipeline.errors import pipeline_error
from rhythm_pipeline.object_storage import create_object_storage_from_env
from rhythm_pipeline.ops.rule_consistency import check_rule_consistency
from rhythm_pipeline.processing_jobs import STAGES, ProcessingJobService
from rhythm_pipeline.repositories import (
    InMemoryArtifactsRepository,
    InMemoryAssessmentsRepository,
    InMemoryDiagnosisRunsRepository,
    InMemoryJobsRepository,
    InMemoryNotificationsRepository,
    InMemoryRuleVersionsRepository,
    PostgresArtifactsRepository,
    PostgresAssessmentsRepository,
    PostgresDiagnosisRunsRepository,
    PostgresJobsRepository,
    PostgresNotificationsRepository,
    PostgresRuleVersionsRepository,
)
from rhythm_pipeline.repositories.artifacts import ARTIFACT_TYPES
from rhythm_pipeline.rule_registry import RuleRegistry
from rhythm_pipeline.stages import StageDependencies, StageResult, build_processors

logger = logging.getLogger(__name__)


class PipelineStore:
    """Binds repositories, the rule registry and the stage processors together.

    Every operation the HTTP layer and the scripts call goes through here.
    """

    def __init__(self, *, environ: Mapping[str, str] | None = None) -> None:
        self._environ = os.environ if environ is None else environ
        self.config = PipelineConfig.from_env(self._environ)
        self.object_storage = create_object_storage_from_env(dict(self._environ))
        self.jobs: dict[str, dict[str, Any]] = {}
        self.artifacts: dict[tuple[str, str], dict[str, Any]] = {}
        self.assessments: dict[str, dict[str, Any]] = {}
        self.notifications: dict[str, dict[str, Any]] = {}
        self.diagnosis_runs: dict[str, dict[str, Any]] = {}
        self.rules: dict[str, dict[str, Any]] = {}
        self.rule_versions: dict[str, dict[str, Any]] = {}
        self.rule_audit_records: list[dict[str, Any]] = []
        self._bind_repositories()
        self._build_services()
        self._seed_defaults()

    def _bind_repositories(self) -> None:
        self.jobs_repository: Any = InMemoryJobsRepository(self.jobs)
        self.artifacts_repository: Any = InMemoryArtifactsRepository(self.artifacts)
        self.assessments_repository: Any = InMemoryAssessmentsRepository(self.assessments)
        self.notifications_repository: Any = InMemoryNotificationsRepository(self.notifications)
        self.diagnosis_runs_repository: Any = InMemoryDiagnosisRunsRepository(self.diagnosis_runs)
        self.rule_versions_repository: Any = InMemoryRuleVersionsRepository(
            rules=self.rules,
            versions=self.rule_versions,
            audit_records=self.rule_audit_records,
        )

    def _build_services(self) -> None:
        self.job_service = ProcessingJobService(
            jobs_repository=self.jobs_repository,
            artifacts_repository=self.artifacts_repository,
            max_attempts=self.config.max_attempts,
        )
        self.registry = RuleRegistry(repository=self.rule_versions_repository)
        self.dedup = DedupPolicy(
            runs_repository=self.diagnosis_runs_repository,
            enabled=self.config.dedup_enabled,
            window_hours=self.config.dedup_window_hours,
        )
        self.processors = build_processors(
            StageDependencies(
                jobs=self.job_service,
                artifacts=self.artifacts_repository,
                assessments=self.assessments_repository,
                notifications=self.notifications_repository,
                registry=self.registry,
                object_storage=self.object_storage,
                config=self.config,
            )
        )

    def _seed_defaults(self) -> None:
        if self._environ.get("RHYTHM_SEED_DEFAULT_RULES", "true").strip().lower() in {"0", "false", "no", "off"}:
            return
        seeded = self.registry.seed_defaults()
        if seeded:
            logger.info("rule_registry_seeded count=%s", len(seeded))

    def reset(self) -> None:
        self.config = PipelineConfig.from_env(self._environ)
        self.object_storage = create_object_storage_from_env(dict(self._environ))
        reset_fn = getattr(self.object_storage, "reset", None)
        if callable(reset_fn):
            reset_fn()
        self.jobs.clear()
        self.artifacts.clear()
        self.assessments.clear()
        self.notifications.clear()
        self.diagnosis_runs.clear()
        self.rules.clear()
        self.rule_versions.clear()
        self.rule_audit_records.clear()
        self._build_services()
        self._seed_defaults()

    def upsert_assessment(self, assessment: dict[str, Any]) -> dict[str, Any]:
        if not str(assessment.get("assessment_id") or "").strip():
            raise pipeline_error("VALIDATION_ERROR", "assessment_id must not be empty")
        return self.assessments_repository.upsert(assessment=assessment)

    def create_job(
        self,
        *,
        assessment_id: str,
        correlation_id: str | None = None,
        max_attempts: int | None = None,
    ) -> dict[str, Any]:
        if self.assessments_repository.get(assessment_id=assessment_id) is None:
            raise pipeline_error("NOT_FOUND", f"assessment not found: {assessment_id}")
        job, created = self.job_service.create_job(
            assessment_id=assessment_id,
            correlation_id=correlation_id,
            max_attempts=max_attempts,
        )
        return {"job": job, "created": created}

    def get_job(self, job_id: str) -> dict[str, Any]:
        job = self.job_service.require_job(job_id)
        return {**job, "artifact_types": self.artifacts_repository.list_types(job_id=job_id)}

    def get_artifact(self, job_id: str, artifact_type: str) -> dict[str, Any]:
        if artifact_type not in ARTIFACT_TYPES:
            raise pipeline_error("VALIDATION_ERROR", f"unknown artifact type: {artifact_type}")
        self.job_service.require_job(job_id)
        artifact = self.artifacts_repository.get(job_id=job_id, artifact_type=artifact_type)
        if artifact is None:
            raise pipeline_error("NOT_FOUND", f"{artifact_type} not found for job")
        return artifact

    def run_stage(self, stage: str, job_id: str, **kwargs: Any) -> StageResult:
        processor = self.processors.get(stage)
        if processor is None:
            return StageResult.failure("VALIDATION_ERROR", f"unknown stage: {stage}")
        return processor.process(job_id, **kwargs)

    def run_next_stage(self, job_id: str, **kwargs: Any) -> StageResult:
        job = self.job_service.get_job(job_id)
        if job is None:
            return StageResult.failure("NOT_FOUND", f"processing job not found: {job_id}")
        return self.run_stage(str(job.get("stage") or STAGES[0]), job_id, **kwargs)

    def retry_safety_save(self, job_id: str) -> StageResult:
        return self.processors["safety"].retry_save(job_id)

    def report_url(self, job_id: str) -> dict[str, Any]:
        pointer = self.get_artifact(job_id, "pdf")
        ttl = self.config.signed_url_ttl_s
        return {
            "pdf_path": pointer["pdf_path"],
            "url": self.object_storage.signed_url(pointer["pdf_path"], ttl_seconds=ttl),
            "expires_in": ttl,
        }

    def activate_rule_version(self, *, version_id: str, change_reason: str, changed_by: str) -> dict[str, Any]:
        return self.registry.activate(version_id=version_id, change_reason=change_reason, changed_by=changed_by)

    def evaluate_safety_sandbox(
        self,
        *,
        structured_intake_data: dict[str, Any],
        conversation_turns: list[Any],
        pinned_versions: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        return self.registry.evaluate_safety_sandbox(
            structured_intake_data=structured_intake_data,
            conversation_turns=conversation_turns,
            pinned=pinned_versions,
        )

    def check_duplicate_run(self, *, inputs_hash: str, patient_id: str, window_hours: int | None = None) -> dict[str, Any]:
        return self.dedup.check_duplicate(inputs_hash=inputs_hash, subject_id=patient_id, window_hours=window_hours)

    def submit_diagnosis_run(self, *, patient_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        return self.dedup.submit_diagnosis_run(patient_id=patient_id, inputs=inputs)

    def get_diagnosis_run(self, run_id: str) -> dict[str, Any]:
        run = self.diagnosis_runs_repository.get(run_id=run_id)
        if run is None:
            raise pipeline_error("NOT_FOUND", f"diagnosis run not found: {run_id}")
        return run

    def check_rule_consistency(self) -> dict[str, Any]:
        report = check_rule_consistency(self.rule_versions_repository)
        report["audit_integrity"] = self.registry.verify_audit_integrity()
        return report


class PostgresBackedStore(PipelineStore):
    """Same operations with every repository backed by PostgreSQL tables."""

    def __init__(self, *, dsn: str, environ: Mapping[str, str] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._tx_runner = PostgresTxRunner(dsn.strip())
        super().__init__(environ=environ)

    def _bind_repositories(self) -> None:
        runner = self._tx_runner
        self.jobs_repository = PostgresJobsRepository(tx_runner=runner)
        self.artifacts_repository = PostgresArtifactsRepository(tx_runner=runner)
        self.assessments_repository = PostgresAssessmentsRepository(tx_runner=runner)
        self.notifications_repository = PostgresNotificationsRepository(tx_runner=runner)
        self.diagnosis_runs_repository = PostgresDiagnosisRunsRepository(tx_runner=runner)
        self.rule_versions_repository = PostgresRuleVersionsRepository(tx_runner=runner)

    def reset(self) -> None:
        raise RuntimeError("reset is not supported for the postgres store backend")


def create_store_from_env(environ: Mapping[str, str] | None = None) -> PipelineStore:
    env = os.environ if environ is None else environ
    backend = env.get("RHYTHM_STORE_BACKEND", "memory").strip().lower() or "memory"
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when RHYTHM_STORE_BACKEND=postgres")
        return PostgresBackedStore(dsn=dsn, environ=env)
    if backend != "memory":
        raise ValueError(f"unsupported store backend: {backend}")
    return PipelineStore(environ=env)


store = create_store_from_env()
