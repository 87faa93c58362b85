from __future__ import annotations

import logging
import threading
from typing import Any

from rhythm_pipeline.canonical_hash import canonical_hash
from rhythm_pipeline.errors import pipeline_error
from rhythm_pipeline.safety_rules import NEEDS_REVIEW, evaluate
from rhythm_pipeline.stages.base import StageProcessor, StageResult

logger = logging.getLogger(__name__)

ENGINE_VERSION = "safety-v1.0.0"
LEVEL_PENALTIES: dict[str, int] = {"A": 50, "B": 25, "C": 10}
_ACTION_ORDER = ("PASS", "FLAG", "BLOCK")


def _stronger(current: str, incoming: str) -> str:
    if incoming not in _ACTION_ORDER:
        return current
    return max(current, incoming, key=_ACTION_ORDER.index)


def summarize_verdict(verdict: dict[str, Any], *, rules_evaluated: int) -> dict[str, Any]:
    """Score and recommended action for an engine verdict.

    With no rules to evaluate the action is UNKNOWN and a clinician must review.
    """
    if rules_evaluated == 0:
        return {"safety_score": 0, "recommended_action": "UNKNOWN", "requires_review": True}
    score = 100
    for red_flag in verdict["red_flags"]:
        score -= LEVEL_PENALTIES.get(red_flag["level"], 0)
    escalation = verdict["escalation_level"]
    action = {"A": "BLOCK", "B": "FLAG", "C": "FLAG"}.get(escalation or "", "PASS")
    for triggered in verdict["triggered_rules"]:
        if triggered["verified"]:
            action = _stronger(action, triggered["action"])
        elif triggered["level"] == NEEDS_REVIEW:
            action = _stronger(action, "FLAG")
    return {
        "safety_score": max(0, score),
        "recommended_action": action,
        "requires_review": action != "PASS",
    }


class SafetyStageProcessor(StageProcessor):
    stage = "safety"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._pending_lock = threading.Lock()
        self._pending: dict[str, dict[str, Any]] = {}

    def pending_job_ids(self) -> list[str]:
        with self._pending_lock:
            return sorted(self._pending)

    def retry_save(self, job_id: str) -> StageResult:
        with self._pending_lock:
            parked = self._pending.get(job_id)
        if parked is None:
            return StageResult.failure("NOT_FOUND", "no parked safety verdict for job")
        return self.process(job_id)

    def _persist(self, job_id: str, check: dict[str, Any]) -> dict[str, Any]:
        try:
            saved = self.save_artifact(job_id, "safety_check", check)
        except Exception as exc:
            with self._pending_lock:
                self._pending[job_id] = check
            logger.warning(
                "safety_check_save_failed job_id=%s error_type=%s parked=true",
                job_id,
                type(exc).__name__,
            )
            raise pipeline_error(
                "SAVE_FAILED",
                "safety check computed but could not be saved",
                details={"verdict_parked": True, "inputs_hash": check["inputs_hash"]},
            ) from exc
        with self._pending_lock:
            self._pending.pop(job_id, None)
        return saved

    def run(
        self,
        job: dict[str, Any],
        *,
        structured_intake_data: dict[str, Any] | None = None,
        conversation_turns: list[Any] | None = None,
        pinned_versions: dict[str, str] | None = None,
        **_: Any,
    ) -> dict[str, Any]:
        job_id = job["job_id"]
        with self._pending_lock:
            parked = self._pending.get(job_id)
        if parked is not None:
            # Persist the verdict computed by the failed call; never re-evaluate it.
            return {"safety_check": self._persist(job_id, parked), "is_new_check": True}

        sections = self.load_artifact(job_id, "sections", missing_code="LOAD_SECTIONS_FAILED")
        if structured_intake_data is None or conversation_turns is None:
            intake = self.deps.assessments.get_intake(assessment_id=job["assessment_id"])
            if structured_intake_data is None:
                structured_intake_data = intake["structured_data"]
            if conversation_turns is None:
                conversation_turns = intake["conversation_turns"]

        rules = self.deps.registry.resolve_rules(kind="safety_rule", pinned=pinned_versions)
        rule_snapshot = [
            {"rule_key": r["rule_id"], "version_id": r["version_id"], "version": r["version"]} for r in rules
        ]
        inputs_hash = canonical_hash(
            ENGINE_VERSION,
            {
                "rule_snapshot": rule_snapshot,
                "structured_intake_data": structured_intake_data,
                "conversation_turns": conversation_turns,
                "sections_content_hash": sections.get("sections_content_hash"),
            },
        )
        existing = self.deps.artifacts.get(job_id=job_id, artifact_type="safety_check")
        if existing is not None and existing.get("inputs_hash") == inputs_hash:
            return {"safety_check": existing, "is_new_check": False}

        try:
            verdict = evaluate(structured_intake_data, conversation_turns, rules)
        except Exception as exc:
            logger.error("safety_evaluation_failed job_id=%s error_type=%s", job_id, type(exc).__name__)
            raise pipeline_error("EVALUATION_FAILED", "safety rule evaluation failed") from exc

        check = {
            "engine_version": ENGINE_VERSION,
            "job_id": job_id,
            **summarize_verdict(verdict, rules_evaluated=len(rules)),
            **verdict,
            "rule_snapshot": rule_snapshot,
            "inputs_hash": inputs_hash,
            "sections_content_hash": sections.get("sections_content_hash"),
            "evaluated_at": self.now_iso(),
        }
        saved = self._persist(job_id, check)
        logger.info(
            "safety_check_completed job_id=%s action=%s escalation=%s triggered=%s",
            job_id,
            check["recommended_action"],
            check["escalation_level"],
            len(check["triggered_rules"]),
        )
        return {"safety_check": saved, "is_new_check": True}
