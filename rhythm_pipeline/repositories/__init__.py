from rhythm_pipeline.repositories.artifacts import InMemoryArtifactsRepository, PostgresArtifactsRepository
from rhythm_pipeline.repositories.assessments import InMemoryAssessmentsRepository, PostgresAssessmentsRepository
from rhythm_pipeline.repositories.diagnosis_runs import (
    InMemoryDiagnosisRunsRepository,
    PostgresDiagnosisRunsRepository,
)
from rhythm_pipeline.repositories.jobs import InMemoryJobsRepository, PostgresJobsRepository
from rhythm_pipeline.repositories.notifications import (
    InMemoryNotificationsRepository,
    PostgresNotificationsRepository,
)
from rhythm_pipeline.repositories.rule_versions import (
    InMemoryRuleVersionsRepository,
    PostgresRuleVersionsRepository,
)

__all__ = [
    "InMemoryArtifactsRepository",
    "PostgresArtifactsRepository",
    "InMemoryAssessmentsRepository",
    "PostgresAssessmentsRepository",
    "InMemoryDiagnosisRunsRepository",
    "PostgresDiagnosisRunsRepository",
    "InMemoryJobsRepository",
    "PostgresJobsRepository",
    "InMemoryNotificationsRepository",
    "PostgresNotificationsRepository",
    "InMemoryRuleVersionsRepository",
    "PostgresRuleVersionsRepository",
]
