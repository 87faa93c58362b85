from __future__ import annotations

from typing import Any

SECTIONS_VERSION = "v1"
GENERATION_METHOD = "template"

SECTION_TITLES: dict[str, str] = {
    "overview": "Overview",
    "risk_summary": "Risk Summary",
    "top_interventions": "Top Interventions",
    "recommendations": "Recommendations",
}


def _overview(risk_score: dict[str, Any], ranking: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    draft = (
        f"This report summarizes your assessment. Your overall score is {risk_score['overall']} "
        f"on a 0-100 scale, which corresponds to a {risk_score['risk_level']} risk level. "
        f"{len(ranking.get('top_interventions') or [])} interventions were prioritized for you."
    )
    return draft, {"score_refs": ["risk_score.overall", "risk_score.risk_level"], "signal_refs": []}


def _risk_summary(risk_score: dict[str, Any], ranking: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    lines = [
        f"{factor['label']}: {factor['score']} ({factor['risk_level']})"
        for factor in risk_score.get("factors") or []
    ]
    refs = [f"risk_score.factors.{factor['key']}" for factor in risk_score.get("factors") or []]
    return "Factor scores. " + "; ".join(lines) + ".", {"score_refs": refs, "signal_refs": []}


def _top_interventions(risk_score: dict[str, Any], ranking: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    items = ranking.get("top_interventions") or []
    lines = [f"{item['rank']}. {item['topic_label']} (priority {item['priority_score']})" for item in items]
    signals = sorted({s for item in items for s in item["impact_score"]["signals"]})
    refs = [f"ranking.top_interventions.{item['topic_id']}" for item in items]
    return " ".join(lines) or "No interventions were prioritized.", {"score_refs": refs, "signal_refs": signals}


def _recommendations(risk_score: dict[str, Any], ranking: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    items = ranking.get("top_interventions") or []
    if not items:
        return "Discuss next steps with your care team.", {"score_refs": [], "signal_refs": []}
    first = items[0]
    signals = sorted(set(first["feasibility_score"]["signals"]))
    draft = (
        f"Start with {first['topic_label'].lower()}, which ranked highest for feasibility and impact. "
        "Review your progress with your care team at the next check-in."
    )
    return draft, {"score_refs": [f"ranking.top_interventions.{first['topic_id']}"], "signal_refs": signals}


_BUILDERS = {
    "overview": _overview,
    "risk_summary": _risk_summary,
    "top_interventions": _top_interventions,
    "recommendations": _recommendations,
}


def generate_sections(
    risk_score: dict[str, Any],
    ranking: dict[str, Any],
    *,
    prompt_version: str,
    section_keys: list[str] | None = None,
) -> list[dict[str, Any]]:
    """Render report sections from scores and ranking only.

    Section ``inputs`` carry references into the risk bundle and ranking, never
    patient identifiers or free text from the intake.
    """
    keys = list(section_keys) if section_keys else list(_BUILDERS)
    unknown = [k for k in keys if k not in _BUILDERS]
    if unknown:
        raise ValueError(f"unknown section keys: {', '.join(unknown)}")
    sections: list[dict[str, Any]] = []
    for section_key in keys:
        draft, inputs = _BUILDERS[section_key](risk_score, ranking)
        sections.append(
            {
                "section_key": section_key,
                "title": SECTION_TITLES[section_key],
                "draft": draft,
                "prompt_version": prompt_version,
                "generation_method": GENERATION_METHOD,
                "inputs": inputs,
            }
        )
    return sections
