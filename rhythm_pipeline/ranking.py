from __future__ import annotations

from typing import Any

from rhythm_pipeline.intervention_registry import ALL_TIERS, candidates_for_factors

ALGORITHM_VERSION = "ranking-v1.0.0"
RANKING_VERSION = "v1"
TOP_N_MIN = 1
TOP_N_MAX = 10

IMPACT_MULTIPLIERS: dict[str, float] = {
    "critical": 1.3,
    "high": 1.15,
    "moderate": 1.0,
    "low": 0.85,
}

TIER_FEASIBILITY_BOOST: dict[str, int] = {
    "tier-1-essential": 10,
    "tier-2-5-enhanced": 5,
    "tier-2-comprehensive": 0,
}


def _clamp(score: float) -> int:
    return max(0, min(100, int(round(score))))


def _impact(topic: dict[str, Any], risk_score: dict[str, Any]) -> dict[str, Any]:
    signals: list[str] = []
    risk_level = str(risk_score.get("risk_level") or "moderate")
    score = float(topic["baseline_impact"])
    if risk_level == "critical":
        signals.extend(["CRITICAL_RISK_LEVEL", "HIGH_IMPACT_POTENTIAL"])
    elif risk_level == "high":
        signals.append("HIGH_IMPACT_POTENTIAL")
    matching = [f for f in risk_score.get("factors") or [] if f.get("key") in topic["target_risk_factors"]]
    if len(matching) > 1:
        signals.append("MULTIPLE_RISK_FACTORS")
        score *= 1.1
    score *= IMPACT_MULTIPLIERS.get(risk_level, 1.0)
    return {"score": _clamp(score), "signals": signals, "matching_factors": len(matching)}


def _feasibility(topic: dict[str, Any], program_tier: str | None) -> dict[str, Any]:
    signals: list[str] = []
    baseline = int(topic["baseline_feasibility"])
    score = float(baseline)
    if program_tier:
        score += TIER_FEASIBILITY_BOOST.get(program_tier, 0)
        if program_tier in topic["compatible_tiers"]:
            signals.append(f"{program_tier.upper().replace('-', '_')}_RECOMMENDED")
    if baseline >= 80:
        signals.extend(["EASY_TO_IMPLEMENT", "REQUIRES_MINIMAL_TIME", "LOW_BARRIER"])
    elif baseline < 60:
        signals.extend(["HIGH_BARRIER", "REQUIRES_SUPPORT"])
    return {"score": _clamp(score), "signals": signals}


def validate_top_n(top_n: Any) -> int:
    if isinstance(top_n, bool) or not isinstance(top_n, int):
        raise ValueError("top_n must be an integer")
    if top_n < TOP_N_MIN or top_n > TOP_N_MAX:
        raise ValueError(f"top_n must be between {TOP_N_MIN} and {TOP_N_MAX}")
    return top_n


def rank_interventions(
    risk_score: dict[str, Any],
    *,
    top_n: int,
    program_tier: str | None = None,
) -> dict[str, Any]:
    """Score candidates by impact x feasibility and return ranked plus top-N lists.

    ``top_n`` must already be validated. Equal priority scores keep candidate
    order; fewer candidates than ``top_n`` are returned as-is without padding.
    """
    if program_tier is not None and program_tier not in ALL_TIERS:
        raise ValueError(f"unknown program tier: {program_tier}")
    factor_keys = [str(f.get("key")) for f in risk_score.get("factors") or []]
    scored: list[dict[str, Any]] = []
    for topic in candidates_for_factors(factor_keys, program_tier=program_tier):
        impact = _impact(topic, risk_score)
        feasibility = _feasibility(topic, program_tier)
        scored.append(
            {
                "topic_id": topic["topic_id"],
                "topic_label": topic["topic_label"],
                "pillar_key": topic["pillar_key"],
                "impact_score": impact,
                "feasibility_score": feasibility,
                "priority_score": round(impact["score"] * feasibility["score"] / 100),
                "tier_compatibility": sorted(topic["compatible_tiers"]),
            }
        )
    # sorted() is stable, so ties keep candidate order.
    ranked = sorted(scored, key=lambda x: x["priority_score"], reverse=True)
    for idx, item in enumerate(ranked, start=1):
        item["rank"] = idx
    return {
        "ranking_version": RANKING_VERSION,
        "algorithm_version": ALGORITHM_VERSION,
        "program_tier": program_tier,
        "top_n": top_n,
        "ranked_interventions": ranked,
        "top_interventions": ranked[:top_n],
    }
