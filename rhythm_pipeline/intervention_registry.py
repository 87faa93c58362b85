from __future__ import annotations

from typing import Any

ALL_TIERS = ("tier-1-essential", "tier-2-5-enhanced", "tier-2-comprehensive")
EXTENDED_TIERS = ("tier-2-5-enhanced", "tier-2-comprehensive")

# Registry order is the tie-break order for equal priority scores.
INTERVENTION_TOPICS: dict[str, dict[str, Any]] = {
    "stress-breathing-exercises": {
        "topic_label": "Breathing Exercises for Stress Reduction",
        "pillar_key": "stress",
        "target_risk_factors": ["stress", "anxiety", "mental-health"],
        "baseline_impact": 75,
        "baseline_feasibility": 90,
        "compatible_tiers": ALL_TIERS,
    },
    "stress-mindfulness": {
        "topic_label": "Mindfulness and Meditation",
        "pillar_key": "stress",
        "target_risk_factors": ["stress", "anxiety", "mental-health"],
        "baseline_impact": 80,
        "baseline_feasibility": 70,
        "compatible_tiers": ALL_TIERS,
    },
    "stress-physical-activity": {
        "topic_label": "Physical Activity for Stress Relief",
        "pillar_key": "movement",
        "target_risk_factors": ["stress", "mental-health", "movement"],
        "baseline_impact": 85,
        "baseline_feasibility": 75,
        "compatible_tiers": ALL_TIERS,
    },
    "sleep-hygiene": {
        "topic_label": "Sleep Hygiene Practices",
        "pillar_key": "sleep",
        "target_risk_factors": ["sleep", "stress", "mental-health"],
        "baseline_impact": 80,
        "baseline_feasibility": 85,
        "compatible_tiers": ALL_TIERS,
    },
    "sleep-routine": {
        "topic_label": "Consistent Sleep Routine",
        "pillar_key": "sleep",
        "target_risk_factors": ["sleep", "stress"],
        "baseline_impact": 75,
        "baseline_feasibility": 80,
        "compatible_tiers": ALL_TIERS,
    },
    "social-support": {
        "topic_label": "Building Social Support Networks",
        "pillar_key": "social",
        "target_risk_factors": ["social", "stress", "mental-health"],
        "baseline_impact": 70,
        "baseline_feasibility": 60,
        "compatible_tiers": EXTENDED_TIERS,
    },
    "nutrition-stress": {
        "topic_label": "Stress-Reducing Nutrition",
        "pillar_key": "nutrition",
        "target_risk_factors": ["stress", "nutrition", "mental-health"],
        "baseline_impact": 65,
        "baseline_feasibility": 70,
        "compatible_tiers": ALL_TIERS,
    },
    "meaning-values": {
        "topic_label": "Values Clarification and Purpose",
        "pillar_key": "meaning",
        "target_risk_factors": ["meaning", "stress", "mental-health"],
        "baseline_impact": 75,
        "baseline_feasibility": 50,
        "compatible_tiers": EXTENDED_TIERS,
    },
    "prevention-stress-monitoring": {
        "topic_label": "Regular Stress Level Monitoring",
        "pillar_key": "prevention",
        "target_risk_factors": ["stress", "prevention"],
        "baseline_impact": 60,
        "baseline_feasibility": 95,
        "compatible_tiers": ALL_TIERS,
    },
}


def get_topic(topic_id: str) -> dict[str, Any] | None:
    topic = INTERVENTION_TOPICS.get(topic_id)
    if topic is None:
        return None
    return {"topic_id": topic_id, **topic}


def candidates_for_factors(factor_keys: list[str], *, program_tier: str | None = None) -> list[dict[str, Any]]:
    """Topics targeting any of the factors, in first-seen order, optionally tier-filtered."""
    seen: dict[str, dict[str, Any]] = {}
    for factor_key in factor_keys:
        for topic_id, topic in INTERVENTION_TOPICS.items():
            if topic_id in seen or factor_key not in topic["target_risk_factors"]:
                continue
            if program_tier and program_tier not in topic["compatible_tiers"]:
                continue
            seen[topic_id] = {"topic_id": topic_id, **topic}
    return list(seen.values())
