from __future__ import annotations

import logging
import time
from typing import Any

from rhythm_pipeline.canonical_hash import canonical_hash
from rhythm_pipeline.errors import pipeline_error
from rhythm_pipeline.rule_registry import REASONING_CONFIG_KEY
from rhythm_pipeline.section_generator import SECTIONS_VERSION, generate_sections
from rhythm_pipeline.stages.base import StageProcessor

logger = logging.getLogger(__name__)


class ContentStageProcessor(StageProcessor):
    stage = "content"

    def _reasoning_config(self) -> tuple[str, list[str] | None]:
        active = self.deps.registry.active_config(REASONING_CONFIG_KEY)
        if active is None:
            return self.deps.config.content_prompt_version, None
        logic = active["logic"]
        return str(logic.get("prompt_version") or self.deps.config.content_prompt_version), logic.get("section_keys")

    def run(self, job: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        job_id = job["job_id"]
        bundle = self.load_artifact(job_id, "risk_bundle", missing_code="LOAD_RISK_BUNDLE_FAILED")
        ranking = self.load_artifact(job_id, "ranking", missing_code="LOAD_RANKING_FAILED")
        prompt_version, section_keys = self._reasoning_config()

        content_hash = canonical_hash(
            f"{SECTIONS_VERSION}:{prompt_version}",
            {
                "risk_bundle_id": bundle.get("artifact_id"),
                "risk_score": bundle.get("risk_score"),
                "top_interventions": ranking.get("top_interventions"),
                "section_keys": section_keys,
            },
        )
        existing = self.deps.artifacts.get(job_id=job_id, artifact_type="sections")
        if existing is not None and existing.get("sections_content_hash") == content_hash:
            return {"sections": existing, "is_new_sections": False, "generation_time_ms": 0}

        started = time.perf_counter()
        try:
            sections = generate_sections(
                bundle["risk_score"],
                ranking,
                prompt_version=prompt_version,
                section_keys=section_keys,
            )
        except (KeyError, ValueError) as exc:
            raise pipeline_error("LOAD_RANKING_FAILED", f"cannot build sections: {exc}") from exc
        generation_time_ms = int((time.perf_counter() - started) * 1000)
        report = {
            "sections_version": SECTIONS_VERSION,
            "job_id": job_id,
            "risk_bundle_id": bundle.get("artifact_id"),
            "sections": sections,
            "sections_content_hash": content_hash,
            "generated_at": self.now_iso(),
        }
        saved = self.save_artifact(job_id, "sections", report)
        logger.info("report_sections_generated job_id=%s sections=%s", job_id, len(sections))
        return {"sections": saved, "is_new_sections": True, "generation_time_ms": generation_time_ms}
