from rhythm_pipeline.stages.base import (
    StageDependencies,
    StageLocks,
    StageProcessor,
    StageResult,
    StageTimeoutError,
    call_with_timeout,
)
from rhythm_pipeline.stages.content import ContentStageProcessor
from rhythm_pipeline.stages.delivery import DeliveryStageProcessor
from rhythm_pipeline.stages.pdf import PdfStageProcessor
from rhythm_pipeline.stages.ranking import RankingStageProcessor
from rhythm_pipeline.stages.risk import RiskStageProcessor
from rhythm_pipeline.stages.safety import SafetyStageProcessor
from rhythm_pipeline.stages.validation import ValidationStageProcessor

PROCESSOR_CLASSES: dict[str, type[StageProcessor]] = {
    "risk": RiskStageProcessor,
    "ranking": RankingStageProcessor,
    "content": ContentStageProcessor,
    "safety": SafetyStageProcessor,
    "validation": ValidationStageProcessor,
    "delivery": DeliveryStageProcessor,
    "pdf": PdfStageProcessor,
}


def build_processors(deps: StageDependencies) -> dict[str, StageProcessor]:
    locks = StageLocks(enabled=deps.config.stage_locks_enabled)
    return {stage: cls(deps, locks=locks) for stage, cls in PROCESSOR_CLASSES.items()}


__all__ = [
    "PROCESSOR_CLASSES",
    "build_processors",
    "StageDependencies",
    "StageLocks",
    "StageProcessor",
    "StageResult",
    "StageTimeoutError",
    "call_with_timeout",
    "ContentStageProcessor",
    "DeliveryStageProcessor",
    "PdfStageProcessor",
    "RankingStageProcessor",
    "RiskStageProcessor",
    "SafetyStageProcessor",
    "ValidationStageProcessor",
]
