from __future__ import annotations

from typing import Any

from rhythm_pipeline.canonical_hash import canonical_hash
from rhythm_pipeline.errors import pipeline_error
from rhythm_pipeline.ranking import ALGORITHM_VERSION, rank_interventions, validate_top_n
from rhythm_pipeline.stages.base import StageProcessor

DEFAULT_TOP_N = 5


class RankingStageProcessor(StageProcessor):
    stage = "ranking"

    def run(
        self,
        job: dict[str, Any],
        *,
        top_n: Any = DEFAULT_TOP_N,
        program_tier: str | None = None,
        risk_bundle: dict[str, Any] | None = None,
        **_: Any,
    ) -> dict[str, Any]:
        try:
            top_n = validate_top_n(top_n)
        except ValueError as exc:
            raise pipeline_error("VALIDATION_ERROR", str(exc)) from exc
        job_id = job["job_id"]
        bundle = risk_bundle or self.load_artifact(job_id, "risk_bundle", missing_code="LOAD_RISK_BUNDLE_FAILED")
        if not isinstance(bundle.get("risk_score"), dict):
            raise pipeline_error("LOAD_RISK_BUNDLE_FAILED", "risk bundle has no risk score")

        inputs_hash = canonical_hash(
            ALGORITHM_VERSION,
            {
                "risk_bundle_id": bundle.get("artifact_id"),
                "risk_score": bundle["risk_score"],
                "top_n": top_n,
                "program_tier": program_tier,
            },
        )
        existing = self.deps.artifacts.get(job_id=job_id, artifact_type="ranking")
        if existing is not None and existing.get("inputs_hash") == inputs_hash:
            return {"ranking": existing, "is_new_ranking": False}

        try:
            ranked = rank_interventions(bundle["risk_score"], top_n=top_n, program_tier=program_tier)
        except ValueError as exc:
            raise pipeline_error("VALIDATION_ERROR", str(exc)) from exc
        ranking = {
            **ranked,
            "risk_bundle_id": bundle.get("artifact_id"),
            "job_id": job_id,
            "inputs_hash": inputs_hash,
            "created_at": self.now_iso(),
        }
        return {"ranking": self.save_artifact(job_id, "ranking", ranking), "is_new_ranking": True}
