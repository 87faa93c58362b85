from __future__ import annotations

from rhythm_pipeline.stages.safety import summarize_verdict

UPSTREAM = ("risk", "ranking", "content")


def test_safety_stage_passes_clean_intake(pipeline, new_job, run_through):
    job = new_job()
    run_through(job["job_id"], *UPSTREAM)
    result = pipeline.run_stage("safety", job["job_id"])
    check = result.data["safety_check"]
    assert result.data["is_new_check"] is True
    assert check["recommended_action"] == "PASS"
    assert check["safety_score"] == 100
    assert check["escalation_level"] is None
    assert {r["rule_key"] for r in check["rule_snapshot"]} >= {"CHEST_PAIN", "SUICIDAL_IDEATION"}


def test_safety_stage_reads_intake_from_assessment(pipeline, new_job, run_through):
    job = new_job(conversation_turns=[{"id": "t7", "role": "user", "content": "Sometimes I want to end my life"}])
    run_through(job["job_id"], *UPSTREAM)
    check = pipeline.run_stage("safety", job["job_id"]).data["safety_check"]
    assert check["escalation_level"] == "A"
    assert check["recommended_action"] == "BLOCK"
    assert check["requires_review"] is True
    assert check["red_flags"][0]["evidence_refs"] == ["t7"]


def test_safety_stage_is_idempotent_and_deterministic(pipeline, new_job, run_through):
    job = new_job()
    run_through(job["job_id"], *UPSTREAM)
    turns = [{"id": "t1", "content": "I passed out at work"}]
    first = pipeline.run_stage("safety", job["job_id"], structured_intake_data={}, conversation_turns=turns)
    second = pipeline.run_stage("safety", job["job_id"], structured_intake_data={}, conversation_turns=turns)
    assert first.data["is_new_check"] is True
    assert second.data["is_new_check"] is False
    assert first.data["safety_check"]["inputs_hash"] == second.data["safety_check"]["inputs_hash"]
    assert first.data["safety_check"]["recommended_action"] == "FLAG"


def test_safety_stage_with_pinned_draft_is_reproducible(pipeline, new_job, run_through):
    job = new_job()
    run_through(job["job_id"], *UPSTREAM)
    draft = pipeline.registry.create_draft(
        rule_key="SYNCOPE",
        logic={"type": "keyword_any", "keywords": ["dizzy spell"]},
        defaults={"level_default": "C", "action_default": "FLAG"},
        change_reason="narrower wording",
        created_by="admin",
    )
    turns = [{"id": "t1", "content": "I had a dizzy spell"}]
    pinned = {"SYNCOPE": draft["version_id"]}
    first = pipeline.run_stage("safety", job["job_id"], structured_intake_data={}, conversation_turns=turns, pinned_versions=pinned)
    second = pipeline.run_stage("safety", job["job_id"], structured_intake_data={}, conversation_turns=turns, pinned_versions=pinned)
    check = first.data["safety_check"]
    assert check["escalation_level"] == "C"
    snapshot = {r["rule_key"]: r["version_id"] for r in check["rule_snapshot"]}
    assert snapshot["SYNCOPE"] == draft["version_id"]
    assert second.data["is_new_check"] is False
    assert pipeline.registry.get_version(draft["version_id"])["status"] == "draft"


def test_safety_stage_requires_sections(pipeline, new_job):
    job = new_job()
    result = pipeline.run_stage("safety", job["job_id"])
    assert result.error_code == "LOAD_SECTIONS_FAILED"


def test_safety_save_failure_parks_verdict_for_retry(pipeline, new_job, run_through, monkeypatch):
    job = new_job(conversation_turns=[{"id": "t1", "content": "crushing chest pain"}])
    run_through(job["job_id"], *UPSTREAM)
    original_put = pipeline.artifacts_repository.put

    def _failing_put(*, job_id, artifact_type, data):
        if artifact_type == "safety_check":
            raise ConnectionError("db down")
        return original_put(job_id=job_id, artifact_type=artifact_type, data=data)

    monkeypatch.setattr(pipeline.artifacts_repository, "put", _failing_put)
    failed = pipeline.run_stage("safety", job["job_id"])
    assert failed.error_code == "SAVE_FAILED"
    assert failed.retryable is True
    assert failed.details["verdict_parked"] is True
    assert pipeline.processors["safety"].pending_job_ids() == [job["job_id"]]
    assert pipeline.get_job(job["job_id"])["attempt"] == 2

    monkeypatch.setattr(pipeline.artifacts_repository, "put", original_put)
    retried = pipeline.retry_safety_save(job["job_id"])
    assert retried.success
    assert retried.data["safety_check"]["inputs_hash"] == failed.details["inputs_hash"]
    assert pipeline.processors["safety"].pending_job_ids() == []
    assert pipeline.retry_safety_save(job["job_id"]).error_code == "NOT_FOUND"


def test_summarize_verdict_without_rules_is_unknown():
    verdict = {"escalation_level": None, "red_flags": [], "triggered_rules": []}
    assert summarize_verdict(verdict, rules_evaluated=0) == {
        "safety_score": 0,
        "recommended_action": "UNKNOWN",
        "requires_review": True,
    }


def test_summarize_verdict_applies_penalties_and_review_floor():
    verdict = {
        "escalation_level": "B",
        "red_flags": [{"level": "B"}, {"level": "C"}],
        "triggered_rules": [
            {"verified": True, "action": "FLAG", "level": "B"},
            {"verified": False, "action": "BLOCK", "level": "needs_review"},
        ],
    }
    summary = summarize_verdict(verdict, rules_evaluated=7)
    assert summary["safety_score"] == 65
    assert summary["recommended_action"] == "FLAG"

    review_only = {
        "escalation_level": None,
        "red_flags": [],
        "triggered_rules": [{"verified": False, "action": "BLOCK", "level": "needs_review"}],
    }
    assert summarize_verdict(review_only, rules_evaluated=7)["recommended_action"] == "FLAG"
