from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from rhythm_pipeline.dedup import DedupPolicy, compute_inputs_hash
from rhythm_pipeline.errors import ApiError
from rhythm_pipeline.repositories import InMemoryDiagnosisRunsRepository


def _policy(**kwargs) -> tuple[DedupPolicy, dict]:
    runs: dict = {}
    return DedupPolicy(runs_repository=InMemoryDiagnosisRunsRepository(runs), **kwargs), runs


def test_inputs_hash_ignores_key_order_whitespace_and_request_metadata():
    a = {"symptoms": [" palpitations "], "answers": {"q1": 2, "q2": 1}, "trace_id": "t1", "note": None}
    b = {"answers": {"q2": 1, "q1": 2}, "symptoms": ["palpitations"], "request_id": "r9"}
    assert compute_inputs_hash(a) == compute_inputs_hash(b)
    assert compute_inputs_hash(a) != compute_inputs_hash({**b, "answers": {"q1": 3, "q2": 1}})


def test_second_submission_within_window_is_flagged():
    policy, runs = _policy()
    first = policy.submit_diagnosis_run(patient_id="p1", inputs={"answers": {"q1": 1}})
    second = policy.submit_diagnosis_run(patient_id="p1", inputs={"answers": {"q1": 1}})
    other_patient = policy.submit_diagnosis_run(patient_id="p2", inputs={"answers": {"q1": 1}})

    assert first["is_duplicate"] is False
    assert second["is_duplicate"] is True
    assert second["run_id"] == first["run_id"]
    assert "within 24h" in second["warning"]
    assert other_patient["is_duplicate"] is False
    assert len(runs) == 2


def test_runs_outside_window_are_not_duplicates():
    policy, runs = _policy(window_hours=1)
    inputs_hash = compute_inputs_hash({"answers": {"q1": 1}})
    runs["run_old"] = {
        "run_id": "run_old",
        "patient_id": "p1",
        "inputs_hash": inputs_hash,
        "created_at": (datetime.now(UTC) - timedelta(hours=2)).isoformat(),
    }
    assert policy.check_duplicate(inputs_hash=inputs_hash, subject_id="p1")["is_duplicate"] is False
    assert policy.check_duplicate(inputs_hash=inputs_hash, subject_id="p1", window_hours=3)["existing_run_id"] == "run_old"


def test_lookup_failure_fails_open_with_warning():
    class BrokenRuns:
        def list_recent(self, **kwargs):
            raise ConnectionError("db down")

    policy = DedupPolicy(runs_repository=BrokenRuns())
    result = policy.check_duplicate(inputs_hash="abc", subject_id="p1")
    assert result["is_duplicate"] is False
    assert result["warning"] == "duplicate check unavailable; proceeding without dedup"


def test_disabled_policy_and_invalid_window():
    policy, _ = _policy(enabled=False)
    policy.submit_diagnosis_run(patient_id="p1", inputs={"x": 1})
    assert policy.submit_diagnosis_run(patient_id="p1", inputs={"x": 1})["is_duplicate"] is False

    enabled, _ = _policy()
    with pytest.raises(ApiError) as exc:
        enabled.check_duplicate(inputs_hash="abc", subject_id="p1", window_hours=0)
    assert exc.value.code == "VALIDATION_ERROR"
    with pytest.raises(ApiError):
        enabled.submit_diagnosis_run(patient_id=" ", inputs={})
