from __future__ import annotations

import copy

import pytest

from rhythm_pipeline.risk_calculator import (
    DEFAULT_SCORING_CONFIG,
    ScoringError,
    calculate_risk_score,
    risk_level_for,
    validate_scoring_config,
)

ANSWERS = {"stress_q1": 4, "stress_q2": 4, "stress_q3": 4, "sleep_q1": 2, "sleep_q2": 2}


def test_default_config_scores_factors_and_overall():
    score = calculate_risk_score(ANSWERS, DEFAULT_SCORING_CONFIG)
    factors = {f["key"]: f for f in score["factors"]}
    assert factors["stress"]["score"] == 100.0
    assert factors["sleep"]["score"] == 50.0
    assert score["overall"] == 75.0
    assert score["risk_level"] == "critical"


def test_scoring_is_deterministic():
    assert calculate_risk_score(ANSWERS, DEFAULT_SCORING_CONFIG) == calculate_risk_score(
        dict(reversed(list(ANSWERS.items()))), DEFAULT_SCORING_CONFIG
    )


def test_missing_answer_fails_whole_calculation():
    answers = dict(ANSWERS)
    answers.pop("sleep_q2")
    with pytest.raises(ScoringError) as exc:
        calculate_risk_score(answers, DEFAULT_SCORING_CONFIG)
    assert exc.value.details["question_ids"] == ["sleep_q2"]


def test_invalid_config_is_rejected_before_scoring():
    config = copy.deepcopy(DEFAULT_SCORING_CONFIG)
    config["factor_rules"][0]["operator"] = "median"
    config["overall_rule"]["question_ids"] = ["stress", "mood"]
    errors = validate_scoring_config(config)
    assert any("unknown operator 'median'" in e for e in errors)
    assert any("unknown factor 'mood'" in e for e in errors)
    with pytest.raises(ScoringError, match="invalid scoring config"):
        calculate_risk_score(ANSWERS, config)


def test_threshold_and_weighted_operators():
    config = {
        "algorithm_version": "risk-test",
        "factor_rules": [
            {
                "key": "load",
                "operator": "threshold",
                "question_ids": ["q1", "q2"],
                "thresholds": [{"value": 0, "score": 10}, {"value": 5, "score": 60}],
            },
            {
                "key": "weighted",
                "operator": "weighted_sum",
                "question_ids": ["q1", "q2"],
                "weights": [{"question_id": "q1", "weight": 10}, {"question_id": "q2", "weight": 5}],
            },
        ],
        "overall_rule": {"key": "overall", "operator": "max", "question_ids": ["load", "weighted"]},
    }
    score = calculate_risk_score({"q1": 3, "q2": 2}, config)
    assert [f["score"] for f in score["factors"]] == [60.0, 40.0]
    assert score["overall"] == 60.0
    assert score["risk_level"] == "high"


@pytest.mark.parametrize(
    ("value", "level"),
    [(0, "low"), (24.99, "low"), (25, "moderate"), (50, "high"), (75, "critical"), (100, "critical")],
)
def test_risk_level_boundaries(value, level):
    assert risk_level_for(value) == level


def test_non_numeric_bounds_fail_validation_not_scoring():
    config = copy.deepcopy(DEFAULT_SCORING_CONFIG)
    config["factor_rules"][1]["max_value"] = [8]
    assert validate_scoring_config(config) == ["rule 'sleep': normalize requires numeric min_value and max_value"]
    with pytest.raises(ScoringError, match="invalid scoring config"):
        calculate_risk_score(ANSWERS, config)
