from __future__ import annotations

from rhythm_pipeline.rule_registry import REASONING_CONFIG_KEY, SCORING_CONFIG_KEY
from rhythm_pipeline.stages import StageLocks


def test_risk_stage_creates_bundle_once(pipeline, new_job):
    job = new_job()
    first = pipeline.run_stage("risk", job["job_id"])
    second = pipeline.run_stage("risk", job["job_id"])

    assert first.success and first.data["is_new_bundle"] is True
    assert second.success and second.data["is_new_bundle"] is False
    bundle = first.data["risk_bundle"]
    assert second.data["risk_bundle"]["artifact_id"] == bundle["artifact_id"]
    assert bundle["risk_score"]["overall"] == 75.0
    assert bundle["scoring_config_ref"]["rule_key"] == SCORING_CONFIG_KEY
    assert bundle["scoring_config_ref"]["version"] == 1
    assert pipeline.get_job(job["job_id"])["stage"] == "ranking"


def test_risk_stage_reuse_skips_answer_fetch(pipeline, new_job, monkeypatch):
    job = new_job()
    assert pipeline.run_stage("risk", job["job_id"]).success

    fetched: list[str] = []
    original_get_answers = pipeline.assessments_repository.get_answers

    def _counting_get_answers(*, assessment_id):
        fetched.append(assessment_id)
        return original_get_answers(assessment_id=assessment_id)

    monkeypatch.setattr(pipeline.assessments_repository, "get_answers", _counting_get_answers)
    second = pipeline.run_stage("risk", job["job_id"])

    assert second.data["is_new_bundle"] is False
    assert fetched == []


def test_risk_stage_without_answers_fails_job(pipeline, new_job):
    job = new_job(answers={})
    result = pipeline.run_stage("risk", job["job_id"])
    assert result.success is False
    assert result.error_code == "NO_ANSWERS"
    assert result.retryable is False
    assert pipeline.get_job(job["job_id"])["status"] == "failed"

    again = pipeline.run_stage("risk", job["job_id"])
    assert again.error_code == "INVALID_STATE"


def test_risk_stage_scoring_failure_is_terminal(pipeline, new_job):
    job = new_job(answers={"stress_q1": 1})
    result = pipeline.run_stage("risk", job["job_id"])
    assert result.error_code == "SCORING_FAILED"
    assert result.details["rule_key"] == "stress"
    assert pipeline.get_job(job["job_id"])["status"] == "failed"


def test_ranking_stage_validates_top_n_before_loading(pipeline, new_job):
    job = new_job()
    result = pipeline.run_stage("ranking", job["job_id"], top_n=15)
    assert result.error_code == "VALIDATION_ERROR"
    job_after = pipeline.get_job(job["job_id"])
    assert job_after["errors"] == []
    assert job_after["attempt"] == 1


def test_ranking_stage_requires_risk_bundle(pipeline, new_job):
    job = new_job()
    result = pipeline.run_stage("ranking", job["job_id"])
    assert result.error_code == "LOAD_RISK_BUNDLE_FAILED"
    assert result.retryable is True
    job_after = pipeline.get_job(job["job_id"])
    assert job_after["attempt"] == 1
    assert job_after["errors"][0]["code"] == "LOAD_RISK_BUNDLE_FAILED"


def test_ranking_stage_reuses_matching_ranking(pipeline, new_job, run_through):
    job = new_job()
    run_through(job["job_id"], "risk")
    first = pipeline.run_stage("ranking", job["job_id"], top_n=3)
    same = pipeline.run_stage("ranking", job["job_id"], top_n=3)
    changed = pipeline.run_stage("ranking", job["job_id"], top_n=4, program_tier="tier-1-essential")

    assert first.data["is_new_ranking"] is True
    assert len(first.data["ranking"]["top_interventions"]) == 3
    assert same.data["is_new_ranking"] is False
    assert changed.data["is_new_ranking"] is True
    assert pipeline.get_artifact(job["job_id"], "ranking")["program_tier"] == "tier-1-essential"


def test_ranking_stage_accepts_explicit_bundle(pipeline, new_job):
    job = new_job()
    bundle = {
        "artifact_id": "rb_external",
        "risk_score": {
            "overall": 20.0,
            "risk_level": "low",
            "factors": [{"key": "prevention", "label": "Prevention", "score": 20.0, "risk_level": "low"}],
        },
    }
    result = pipeline.run_stage("ranking", job["job_id"], risk_bundle=bundle, top_n=5)
    assert result.success
    assert [x["topic_id"] for x in result.data["ranking"]["top_interventions"]] == ["prevention-stress-monitoring"]


def test_content_stage_uses_active_reasoning_config(pipeline, new_job, run_through):
    job = new_job()
    run_through(job["job_id"], "risk", "ranking")
    first = pipeline.run_stage("content", job["job_id"])
    again = pipeline.run_stage("content", job["job_id"])
    assert first.data["is_new_sections"] is True
    assert again.data["is_new_sections"] is False
    assert again.data["generation_time_ms"] == 0
    sections = first.data["sections"]["sections"]
    assert [s["section_key"] for s in sections] == ["overview", "risk_summary", "top_interventions", "recommendations"]

    draft = pipeline.registry.create_draft(
        rule_key=REASONING_CONFIG_KEY,
        logic={"prompt_version": "sections-v2", "section_keys": ["overview", "recommendations"]},
        defaults={},
        change_reason="shorter report",
        created_by="admin",
    )
    pipeline.activate_rule_version(version_id=draft["version_id"], change_reason="shorter report", changed_by="admin")
    regenerated = pipeline.run_stage("content", job["job_id"])
    assert regenerated.data["is_new_sections"] is True
    regenerated_sections = regenerated.data["sections"]["sections"]
    assert [s["section_key"] for s in regenerated_sections] == ["overview", "recommendations"]
    assert all(s["prompt_version"] == "sections-v2" for s in regenerated_sections)


def test_content_stage_requires_ranking(pipeline, new_job, run_through):
    job = new_job()
    run_through(job["job_id"], "risk")
    result = pipeline.run_stage("content", job["job_id"])
    assert result.error_code == "LOAD_RANKING_FAILED"


def test_unknown_stage_and_job(pipeline, new_job):
    job = new_job()
    assert pipeline.run_stage("publish", job["job_id"]).error_code == "VALIDATION_ERROR"
    assert pipeline.run_stage("risk", "job_missing").error_code == "NOT_FOUND"
    assert pipeline.run_next_stage("job_missing").error_code == "NOT_FOUND"


def test_stage_locks_release_entries_after_use(pipeline, new_job):
    locks = StageLocks()
    with locks.hold("job_1", "risk"):
        assert ("job_1", "risk") in locks._locks
    assert locks._locks == {}

    job = new_job()
    pipeline.run_stage("risk", job["job_id"])
    assert pipeline.processors["risk"].locks._locks == {}
