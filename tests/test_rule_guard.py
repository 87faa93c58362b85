from __future__ import annotations

import copy

import pytest

from rhythm_pipeline.risk_calculator import DEFAULT_SCORING_CONFIG
from rhythm_pipeline.rule_guard import check_rule_version


def test_valid_versions_pass_the_guard():
    assert check_rule_version(
        "safety_rule",
        {
            "logic": {"type": "keyword_any", "keywords": ["dizzy"]},
            "defaults": {"level_default": "C", "action_default": "FLAG"},
        },
    ) == []
    assert check_rule_version("scoring_config", {"logic": DEFAULT_SCORING_CONFIG}) == []
    assert check_rule_version(
        "reasoning_config",
        {"logic": {"prompt_version": "p2", "section_keys": ["overview"]}},
    ) == []


def test_structural_errors_are_itemized():
    errors = check_rule_version("safety_rule", {"logic": {"type": "regex"}, "defaults": {}})
    assert any(e.startswith("logic.type:") for e in errors)
    assert any(e.startswith("defaults:") for e in errors)


def test_semantic_errors_for_safety_logic():
    errors = check_rule_version(
        "safety_rule",
        {
            "logic": {
                "type": "all_of",
                "conditions": [
                    {"type": "keyword_any", "keywords": [" "]},
                    {"type": "numeric_threshold", "field": "vitals.hr", "operator": "~", "value": "high"},
                ],
            },
            "defaults": {"level_default": "B", "action_default": "BLOCK"},
        },
    )
    assert "logic.conditions[0].keywords: at least one non-empty keyword is required" in errors
    assert any(e.startswith("logic.conditions[1].operator") for e in errors)
    assert "logic.conditions[1].value: must be numeric" in errors
    assert "defaults.action_default: BLOCK requires level_default A" in errors


def test_scoring_and_reasoning_semantics():
    broken = {**DEFAULT_SCORING_CONFIG, "overall_rule": {**DEFAULT_SCORING_CONFIG["overall_rule"], "question_ids": ["x"]}}
    assert check_rule_version("scoring_config", {"logic": broken}) == ["logic: overall_rule references unknown factor 'x'"]
    assert check_rule_version(
        "reasoning_config",
        {"logic": {"prompt_version": "p", "section_keys": ["appendix"]}},
    ) == ["logic.section_keys: unknown section 'appendix'"]


def test_unknown_kind():
    assert check_rule_version("pricing", {"logic": {}}) == ["kind: unknown rule kind 'pricing'"]


@pytest.mark.parametrize("min_minutes", ["twenty", [20], None, 0])
def test_duration_escalation_needs_positive_minutes(min_minutes):
    errors = check_rule_version(
        "safety_rule",
        {
            "logic": {
                "type": "keyword_any",
                "keywords": ["dizzy"],
                "duration_escalation": {"min_minutes": min_minutes},
            },
            "defaults": {"level_default": "C", "action_default": "FLAG"},
        },
    )
    assert errors
    assert all(e.startswith("logic.duration_escalation.min_minutes:") for e in errors)


def test_nested_duration_escalation_is_type_checked():
    errors = check_rule_version(
        "safety_rule",
        {
            "logic": {
                "type": "any_of",
                "conditions": [
                    {"type": "keyword_any", "keywords": ["dizzy"], "duration_escalation": {"min_minutes": "long"}},
                ],
            },
            "defaults": {"level_default": "C", "action_default": "FLAG"},
        },
    )
    assert errors == ["logic.conditions[0].duration_escalation.min_minutes: must be positive"]


def test_non_numeric_normalize_bounds_are_reported():
    config = copy.deepcopy(DEFAULT_SCORING_CONFIG)
    config["factor_rules"][0]["max_value"] = "12"
    errors = check_rule_version("scoring_config", {"logic": config})
    assert errors == ["logic.factor_rules.0.max_value: '12' is not of type 'number'"]
