from __future__ import annotations

import logging
import uuid
from typing import Any

from rhythm_pipeline.errors import pipeline_error
from rhythm_pipeline.risk_calculator import DEFAULT_SCORING_CONFIG, ScoringError, calculate_risk_score
from rhythm_pipeline.rule_registry import SCORING_CONFIG_KEY
from rhythm_pipeline.stages.base import StageProcessor

logger = logging.getLogger(__name__)

RISK_BUNDLE_VERSION = "v1"


class RiskStageProcessor(StageProcessor):
    stage = "risk"

    def _scoring_config(self) -> tuple[dict[str, Any], dict[str, Any]]:
        active = self.deps.registry.active_config(SCORING_CONFIG_KEY)
        if active is None:
            return DEFAULT_SCORING_CONFIG, {"rule_key": SCORING_CONFIG_KEY, "version_id": None, "version": None}
        ref = {"rule_key": SCORING_CONFIG_KEY, "version_id": active["version_id"], "version": active["version"]}
        return active["logic"], ref

    def run(self, job: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        job_id = job["job_id"]
        existing = self.deps.artifacts.get(job_id=job_id, artifact_type="risk_bundle")
        if existing is not None:
            return {"risk_bundle": existing, "is_new_bundle": False}

        answers = self.deps.assessments.get_answers(assessment_id=job["assessment_id"])
        if not answers:
            raise pipeline_error("NO_ANSWERS", "assessment has no answered questions")

        config, config_ref = self._scoring_config()
        try:
            risk_score = calculate_risk_score(answers, config)
        except ScoringError as exc:
            raise pipeline_error("SCORING_FAILED", str(exc), details=exc.details) from exc

        bundle = {
            "artifact_id": f"rb_{uuid.uuid4().hex[:12]}",
            "risk_bundle_version": RISK_BUNDLE_VERSION,
            "algorithm_version": config["algorithm_version"],
            "assessment_id": job["assessment_id"],
            "job_id": job_id,
            "calculated_at": self.now_iso(),
            "risk_score": risk_score,
            "scoring_config_ref": config_ref,
        }
        saved = self.save_artifact(job_id, "risk_bundle", bundle)
        logger.info(
            "risk_bundle_created job_id=%s risk_level=%s factors=%s",
            job_id,
            risk_score["risk_level"],
            len(risk_score["factors"]),
        )
        return {"risk_bundle": saved, "is_new_bundle": True}
