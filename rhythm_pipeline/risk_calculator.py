"""Deterministic risk scoring over questionnaire answers.

A scoring config has ``factor_rules`` (each applies one operator to a set of
answers) and an ``overall_rule`` applied to the factor scores. Any invalid rule
or missing answer fails the whole calculation; there is no partial bundle.
"""

from __future__ import annotations

from typing import Any

SCORING_OPERATORS = ("sum", "weighted_sum", "average", "max", "min", "threshold", "normalize")

RISK_LEVEL_THRESHOLDS: tuple[tuple[float, str], ...] = (
    (75.0, "critical"),
    (50.0, "high"),
    (25.0, "moderate"),
)

DEFAULT_SCORING_CONFIG: dict[str, Any] = {
    "algorithm_version": "risk-v1.0.0",
    "factor_rules": [
        {
            "key": "stress",
            "label": "Stress",
            "operator": "normalize",
            "question_ids": ["stress_q1", "stress_q2", "stress_q3"],
            "min_value": 0,
            "max_value": 12,
        },
        {
            "key": "sleep",
            "label": "Sleep",
            "operator": "normalize",
            "question_ids": ["sleep_q1", "sleep_q2"],
            "min_value": 0,
            "max_value": 8,
        },
    ],
    "overall_rule": {
        "key": "overall",
        "label": "Overall",
        "operator": "average",
        "question_ids": ["stress", "sleep"],
    },
}


class ScoringError(ValueError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


def risk_level_for(score: float) -> str:
    for bound, level in RISK_LEVEL_THRESHOLDS:
        if score >= bound:
            return level
    return "low"


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def validate_scoring_rule(rule: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    key = str(rule.get("key") or "")
    if not key:
        errors.append("rule key is required")
    operator = rule.get("operator")
    if operator not in SCORING_OPERATORS:
        errors.append(f"rule '{key}': unknown operator '{operator}'")
    question_ids = rule.get("question_ids")
    if not isinstance(question_ids, list) or not question_ids:
        errors.append(f"rule '{key}': question_ids must be a non-empty list")
    if operator == "weighted_sum":
        weights = rule.get("weights")
        if not isinstance(weights, list) or not weights:
            errors.append(f"rule '{key}': weighted_sum requires weights")
        elif not all(isinstance(w, dict) and w.get("question_id") and _is_number(w.get("weight")) for w in weights):
            errors.append(f"rule '{key}': each weight needs a question_id and a numeric weight")
    if operator == "threshold":
        thresholds = rule.get("thresholds")
        if not isinstance(thresholds, list) or not thresholds:
            errors.append(f"rule '{key}': threshold requires thresholds")
        elif not all(isinstance(t, dict) and _is_number(t.get("value")) and _is_number(t.get("score")) for t in thresholds):
            errors.append(f"rule '{key}': each threshold needs a numeric value and score")
    if operator == "normalize":
        low, high = rule.get("min_value"), rule.get("max_value")
        if not _is_number(low) or not _is_number(high):
            errors.append(f"rule '{key}': normalize requires numeric min_value and max_value")
        elif high <= low:
            errors.append(f"rule '{key}': max_value must be greater than min_value")
    return errors


def validate_scoring_config(config: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    factor_rules = config.get("factor_rules")
    if not isinstance(factor_rules, list) or not factor_rules:
        return ["factor_rules must be a non-empty list"]
    factor_keys: set[str] = set()
    for rule in factor_rules:
        if not isinstance(rule, dict):
            errors.append("factor rule must be an object")
            continue
        errors.extend(validate_scoring_rule(rule))
        factor_keys.add(str(rule.get("key") or ""))
    overall = config.get("overall_rule")
    if not isinstance(overall, dict):
        errors.append("overall_rule is required")
        return errors
    errors.extend(validate_scoring_rule(overall))
    for ref in overall.get("question_ids") or []:
        if ref not in factor_keys:
            errors.append(f"overall_rule references unknown factor '{ref}'")
    return errors


def _threshold(value: float, thresholds: list[dict[str, Any]]) -> float:
    ordered = sorted(thresholds, key=lambda x: float(x["value"]))
    for item in reversed(ordered):
        if value >= float(item["value"]):
            return float(item["score"])
    return float(ordered[0]["score"])


def apply_operator(values: dict[str, float], rule: dict[str, Any]) -> float:
    question_ids = list(rule["question_ids"])
    missing = [qid for qid in question_ids if qid not in values]
    if missing:
        raise ScoringError(
            f"missing answer for rule '{rule['key']}'",
            details={"rule_key": rule["key"], "question_ids": missing},
        )
    picked = [float(values[qid]) for qid in question_ids]
    operator = rule["operator"]
    if operator == "sum":
        return sum(picked)
    if operator == "weighted_sum":
        return sum(float(values.get(w["question_id"], 0.0)) * float(w["weight"]) for w in rule["weights"])
    if operator == "average":
        return sum(picked) / len(picked)
    if operator == "max":
        return max(picked)
    if operator == "min":
        return min(picked)
    if operator == "threshold":
        return _threshold(sum(picked), list(rule["thresholds"]))
    if operator == "normalize":
        low = float(rule["min_value"])
        high = float(rule["max_value"])
        normalized = (sum(picked) - low) / (high - low) * 100.0
        return max(0.0, min(100.0, normalized))
    raise ScoringError(f"unknown operator '{operator}'", details={"rule_key": rule.get("key")})


def calculate_risk_score(answers: dict[str, float], config: dict[str, Any]) -> dict[str, Any]:
    errors = validate_scoring_config(config)
    if errors:
        raise ScoringError("invalid scoring config", details={"errors": errors})

    factors: list[dict[str, Any]] = []
    for rule in config["factor_rules"]:
        score = round(apply_operator(answers, rule), 2)
        factors.append(
            {
                "key": rule["key"],
                "label": rule.get("label") or rule["key"],
                "score": score,
                "weight": 1.0,
                "risk_level": risk_level_for(score),
            }
        )
    factor_scores = {f["key"]: f["score"] for f in factors}
    overall = round(apply_operator(factor_scores, config["overall_rule"]), 2)
    return {
        "overall": overall,
        "risk_level": risk_level_for(overall),
        "factors": factors,
    }
