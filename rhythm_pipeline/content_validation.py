from __future__ import annotations

import logging
import re
from typing import Any

from rhythm_pipeline.canonical_hash import hash_payload

logger = logging.getLogger(__name__)

ENGINE_VERSION = "medical-validation-v1.0.0"
SEVERITY_CRITICAL = "critical"
SEVERITY_WARNING = "warning"

VALIDATION_RULES: list[dict[str, Any]] = [
    {
        "rule_id": "contraindication-high-stress-vigorous-exercise",
        "version": "v1.0.0",
        "flag_type": "contraindication",
        "severity": SEVERITY_WARNING,
        "section_key": "recommendations",
        "logic": {
            "type": "contraindication",
            "risk_signals": ["critical", "high_stress", "stress_critical"],
            "conflicting_patterns": ["vigorous exercise", "intensive training", "high-intensity", "hiit"],
        },
        "reason": "Vigorous exercise may not be appropriate at critical stress levels without medical clearance",
    },
    {
        "rule_id": "contraindication-sleep-deprivation-stimulants",
        "version": "v1.0.0",
        "flag_type": "contraindication",
        "severity": SEVERITY_WARNING,
        "section_key": "recommendations",
        "logic": {
            "type": "contraindication",
            "risk_signals": ["poor_sleep", "sleep_deprivation", "insomnia", "sleep_critical", "sleep_high"],
            "conflicting_patterns": ["caffeine", "energy drinks", "stimulant", "coffee"],
        },
        "reason": "Stimulant recommendations may worsen existing sleep problems",
    },
    {
        "rule_id": "plausibility-contradictory-risk-level",
        "version": "v1.0.0",
        "flag_type": "plausibility",
        "severity": SEVERITY_CRITICAL,
        "section_key": "all",
        "logic": {
            "type": "pattern",
            "pattern": (
                r"\b(low risk|minimal risk)\b.*\b(high risk|critical risk|severe)\b"
                r"|\b(high risk|critical risk)\b.*\b(low risk|minimal risk)\b"
            ),
        },
        "reason": "Contradictory risk level statements in the same section",
    },
    {
        "rule_id": "plausibility-unrealistic-score-claims",
        "version": "v1.0.0",
        "flag_type": "plausibility",
        "severity": SEVERITY_CRITICAL,
        "section_key": "all",
        "logic": {"type": "pattern", "pattern": r"(100%|\b(guarantee|cure|eliminate|completely resolve)\b)"},
        "reason": "Unrealistic or absolute claims (guarantee, cure, 100% effectiveness)",
    },
    {
        "rule_id": "out-of-bounds-risk-score",
        "version": "v1.0.0",
        "flag_type": "out_of_bounds",
        "severity": SEVERITY_CRITICAL,
        "section_key": "all",
        "logic": {"type": "out_of_bounds", "min_value": 0, "max_value": 100},
        "reason": "Risk score is outside the valid range (0-100)",
    },
    {
        "rule_id": "safety-no-diagnosis-claims",
        "version": "v1.0.0",
        "flag_type": "plausibility",
        "severity": SEVERITY_CRITICAL,
        "section_key": "all",
        "logic": {
            "type": "keyword",
            "keywords": [
                "you have been diagnosed",
                "you are diagnosed with",
                "diagnosis:",
                "medical diagnosis",
                "clinical diagnosis",
            ],
        },
        "reason": "Report text must not make diagnosis claims",
    },
    {
        "rule_id": "safety-no-medication-prescriptions",
        "version": "v1.0.0",
        "flag_type": "plausibility",
        "severity": SEVERITY_CRITICAL,
        "section_key": "all",
        "logic": {
            "type": "keyword",
            "keywords": ["prescribe", "prescription for", "take medication", "start taking", "dosage of"],
        },
        "reason": "Report text must not prescribe medication",
    },
]


def _risk_signals(section: dict[str, Any], risk_score: dict[str, Any] | None) -> list[str]:
    signals = [str(s) for s in (section.get("inputs") or {}).get("signal_refs") or []]
    for factor in (risk_score or {}).get("factors") or []:
        signals.append(f"{factor.get('key')}_{factor.get('risk_level')}")
    return signals


def _score_values(risk_score: dict[str, Any] | None) -> list[tuple[str, Any]]:
    if not risk_score:
        return []
    values: list[tuple[str, Any]] = [("overall", risk_score.get("overall"))]
    values.extend((f"factors.{f.get('key')}", f.get("score")) for f in risk_score.get("factors") or [])
    return values


def _evaluate_rule(
    rule: dict[str, Any],
    section: dict[str, Any],
    risk_score: dict[str, Any] | None,
) -> dict[str, Any] | None:
    logic = rule["logic"]
    draft = str(section.get("draft") or "")
    lowered = draft.lower()
    context: dict[str, Any] = {"section_key": section.get("section_key")}
    if logic["type"] == "pattern":
        if not re.search(logic["pattern"], draft, re.IGNORECASE):
            return None
    elif logic["type"] == "keyword":
        found = [k for k in logic["keywords"] if k in lowered]
        if not found:
            return None
        context["found_keywords_count"] = len(found)
    elif logic["type"] == "contraindication":
        signals = [s.lower() for s in _risk_signals(section, risk_score)]
        detected = [s for s in signals if any(rs in s for rs in logic["risk_signals"])]
        if not detected or not any(p in lowered for p in logic["conflicting_patterns"]):
            return None
        context["detected_signals_count"] = len(detected)
    elif logic["type"] == "out_of_bounds":
        offending = [
            (field, value)
            for field, value in _score_values(risk_score)
            if isinstance(value, int | float)
            and not isinstance(value, bool)
            and (value < logic["min_value"] or value > logic["max_value"])
        ]
        if not offending:
            return None
        context["field"], context["value"] = offending[0]
    else:
        context["error"] = "unknown_rule_type"
        return _flag(rule, section, context, severity=SEVERITY_CRITICAL)
    return _flag(rule, section, context, severity=rule["severity"])


def _flag(rule: dict[str, Any], section: dict[str, Any], context: dict[str, Any], *, severity: str) -> dict[str, Any]:
    section_key = str(section.get("section_key") or "")
    return {
        "flag_id": "flag_" + hash_payload({"rule": rule["rule_id"], "section": section_key})[:12],
        "rule_id": rule["rule_id"],
        "rule_version": rule["version"],
        "flag_type": rule["flag_type"],
        "severity": severity,
        "section_key": section_key,
        "reason": rule["reason"],
        "context": context,
    }


def _safety_flag(safety_check: dict[str, Any]) -> dict[str, Any] | None:
    action = safety_check.get("recommended_action")
    if action not in {"BLOCK", "FLAG"}:
        return None
    return {
        "flag_id": "flag_safety_" + str(safety_check.get("inputs_hash") or "")[:12],
        "rule_id": "safety-check-verdict",
        "rule_version": str(safety_check.get("engine_version") or "v1"),
        "flag_type": "safety",
        "severity": SEVERITY_CRITICAL if action == "BLOCK" else SEVERITY_WARNING,
        "section_key": "all",
        "reason": f"Safety check recommended {action}",
        "context": {
            "escalation_level": safety_check.get("escalation_level"),
            "triggered_rules_count": len(safety_check.get("triggered_rules") or []),
        },
    }


def validate_sections(
    sections: list[dict[str, Any]],
    *,
    safety_check: dict[str, Any] | None = None,
    risk_score: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Apply the medical validation rules to report sections.

    Any critical flag fails validation; warnings alone give ``flag``.
    Output depends only on the arguments.
    """
    flags: list[dict[str, Any]] = []
    section_results: list[dict[str, Any]] = []
    bounds_checked = False
    for section in sections:
        section_flags: list[dict[str, Any]] = []
        for rule in VALIDATION_RULES:
            if rule["section_key"] not in {"all", section.get("section_key")}:
                continue
            if rule["logic"]["type"] == "out_of_bounds":
                # Scores are shared by all sections; flag them once.
                if bounds_checked:
                    continue
                bounds_checked = True
            flag = _evaluate_rule(rule, section, risk_score)
            if flag is not None:
                section_flags.append(flag)
        flags.extend(section_flags)
        section_results.append(
            {
                "section_key": section.get("section_key"),
                "passed": not any(f["severity"] == SEVERITY_CRITICAL for f in section_flags),
                "flags_count": len(section_flags),
            }
        )
    if safety_check:
        verdict_flag = _safety_flag(safety_check)
        if verdict_flag is not None:
            flags.append(verdict_flag)

    critical = sum(1 for f in flags if f["severity"] == SEVERITY_CRITICAL)
    warnings = sum(1 for f in flags if f["severity"] == SEVERITY_WARNING)
    if critical:
        status = "fail"
    elif warnings:
        status = "flag"
    else:
        status = "pass"
    if flags:
        logger.info("content_validation_flags critical=%s warnings=%s", critical, warnings)
    return {
        "engine_version": ENGINE_VERSION,
        "overall_passed": critical == 0,
        "overall_status": status,
        "critical_flags_count": critical,
        "warning_flags_count": warnings,
        "flags": flags,
        "section_results": section_results,
    }
