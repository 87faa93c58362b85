from __future__ import annotations

import logging
from typing import Any

from rhythm_pipeline.canonical_hash import canonical_hash
from rhythm_pipeline.content_validation import ENGINE_VERSION, validate_sections
from rhythm_pipeline.stages.base import StageProcessor

logger = logging.getLogger(__name__)


class ValidationStageProcessor(StageProcessor):
    stage = "validation"

    def run(self, job: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        job_id = job["job_id"]
        sections = self.load_artifact(job_id, "sections", missing_code="LOAD_SECTIONS_FAILED")
        safety_check = self.load_artifact(job_id, "safety_check", missing_code="LOAD_SAFETY_CHECK_FAILED")
        bundle = self.deps.artifacts.get(job_id=job_id, artifact_type="risk_bundle") or {}
        risk_score = bundle.get("risk_score")

        inputs_hash = canonical_hash(
            ENGINE_VERSION,
            {
                "sections_content_hash": sections.get("sections_content_hash"),
                "safety_inputs_hash": safety_check.get("inputs_hash"),
                "recommended_action": safety_check.get("recommended_action"),
                "risk_score": risk_score,
            },
        )
        existing = self.deps.artifacts.get(job_id=job_id, artifact_type="validation_result")
        if existing is not None and existing.get("inputs_hash") == inputs_hash:
            return {"validation_result": existing, "is_new_validation": False}

        result = validate_sections(
            sections.get("sections") or [],
            safety_check=safety_check,
            risk_score=risk_score,
        )
        record = {
            **result,
            "job_id": job_id,
            "inputs_hash": inputs_hash,
            "validated_at": self.now_iso(),
        }
        saved = self.save_artifact(job_id, "validation_result", record)
        logger.info(
            "validation_completed job_id=%s status=%s critical=%s",
            job_id,
            record["overall_status"],
            record["critical_flags_count"],
        )
        return {"validation_result": saved, "is_new_validation": True}
