"""Red-flag evaluation over structured intake data and conversation turns.

``evaluate`` is a pure function of (rules, inputs): no clock, no I/O, and rules
are visited in rule-id order so identical inputs give identical output.

A rule whose logic matches only the structured intake is reported as
``needs_review`` and does not escalate; escalation needs verified evidence
from the patient's own conversation turns (or measured structured values for
numeric rules).
"""

from __future__ import annotations

import re
from typing import Any

ESCALATION_LEVELS = ("A", "B", "C")
NEEDS_REVIEW = "needs_review"
SAFETY_ACTIONS = ("PASS", "FLAG", "BLOCK", "UNKNOWN")
LOGIC_TYPES = ("keyword_any", "numeric_threshold", "field_present", "all_of", "any_of")
NUMERIC_OPERATORS = (">", ">=", "<", "<=", "==")

SAFETY_QUESTIONS_LEVEL_C = [
    "Do you currently have chest pain or pressure in your chest?",
    "Have you fainted, felt severely light-headed or lost consciousness?",
    "Are you having thoughts of harming yourself?",
]

_STRUCTURED_TEXT_FIELDS = (
    "chief_complaint",
    "relevant_negatives",
    "past_medical_history",
    "medication",
    "psychosocial_factors",
    "uncertainties",
)
_HPI_FIELDS = (
    "onset",
    "duration",
    "course",
    "associated_symptoms",
    "relieving_factors",
    "aggravating_factors",
)
_EXCERPT_RADIUS = 40


def _normalize(value: str) -> str:
    return " ".join(value.lower().split())


def _texts(value: Any) -> list[str]:
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    if isinstance(value, list):
        return [x.strip() for x in value if isinstance(x, str) and x.strip()]
    return []


def structured_text(structured_data: dict[str, Any]) -> str:
    parts: list[str] = []
    parts.extend(_texts(structured_data.get("chief_complaint")))
    hpi = structured_data.get("history_of_present_illness")
    if isinstance(hpi, dict):
        for field in _HPI_FIELDS:
            parts.extend(_texts(hpi.get(field)))
    for field in _STRUCTURED_TEXT_FIELDS[1:]:
        parts.extend(_texts(structured_data.get(field)))
    return _normalize(" ".join(parts))


def normalize_turns(conversation_turns: list[Any]) -> list[dict[str, str]]:
    """Patient-authored turns as ``{"id", "text"}``; assistant turns carry no evidence."""
    out: list[dict[str, str]] = []
    for idx, turn in enumerate(conversation_turns or []):
        if isinstance(turn, str):
            turn = {"content": turn}
        if not isinstance(turn, dict):
            continue
        if str(turn.get("role") or "user").lower() in {"assistant", "system"}:
            continue
        content = turn.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        out.append({"id": str(turn.get("id") or f"turn-{idx}"), "text": content})
    return out


def _excerpt(text: str, needle: str) -> str:
    lowered = text.lower()
    pos = lowered.find(needle)
    if pos < 0:
        return text[: 2 * _EXCERPT_RADIUS]
    start = max(0, pos - _EXCERPT_RADIUS)
    end = min(len(text), pos + len(needle) + _EXCERPT_RADIUS)
    return text[start:end].strip()


def _lookup(data: dict[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _compare(value: float, operator: str, target: float) -> bool:
    if operator == ">":
        return value > target
    if operator == ">=":
        return value >= target
    if operator == "<":
        return value < target
    if operator == "<=":
        return value <= target
    return value == target


def _match_logic(
    logic: dict[str, Any],
    *,
    corpus: str,
    structured_data: dict[str, Any],
    turns: list[dict[str, str]],
) -> tuple[bool, list[dict[str, str]]]:
    logic_type = logic.get("type")
    if logic_type == "keyword_any":
        keywords = [_normalize(k) for k in logic.get("keywords") or [] if str(k).strip()]
        chat_text = " ".join(_normalize(t["text"]) for t in turns)
        matched = any(k in corpus or k in chat_text for k in keywords)
        evidence: list[dict[str, str]] = []
        for turn in turns:
            normalized = _normalize(turn["text"])
            hit = next((k for k in keywords if k in normalized), None)
            if hit is not None:
                evidence.append({"source": "conversation_turn", "source_id": turn["id"], "excerpt": _excerpt(turn["text"], hit)})
        return matched, evidence
    if logic_type == "numeric_threshold":
        field = str(logic.get("field") or "")
        raw = _lookup(structured_data, field)
        if isinstance(raw, bool) or not isinstance(raw, int | float):
            return False, []
        if not _compare(float(raw), str(logic.get("operator")), float(logic.get("value", 0))):
            return False, []
        return True, [{"source": "structured_data", "source_id": f"intake:{field}", "excerpt": f"{field}={raw}"}]
    if logic_type == "field_present":
        value = _lookup(structured_data, str(logic.get("field") or ""))
        return value not in (None, "", [], {}), []
    if logic_type in {"all_of", "any_of"}:
        results = [
            _match_logic(cond, corpus=corpus, structured_data=structured_data, turns=turns)
            for cond in logic.get("conditions") or []
        ]
        if logic_type == "all_of":
            matched = bool(results) and all(m for m, _ in results)
        else:
            matched = any(m for m, _ in results)
        evidence = [e for m, ev in results if m for e in ev] if matched else []
        return matched, evidence
    raise ValueError(f"unsupported logic type: {logic_type}")


def _duration_minutes(value: Any) -> int | None:
    if not isinstance(value, str):
        return None
    text = _normalize(value)
    minutes = re.search(r"(\d{1,3})\s*(min|minute|minutes|minuten)\b", text)
    if minutes:
        return int(minutes.group(1))
    hours = re.search(r"(\d{1,2})\s*(h|hour|hours|stunde|stunden)\b", text)
    if hours:
        return int(hours.group(1)) * 60
    if "half" in text and "hour" in text:
        return 30
    return None


def escalate(current: str | None, incoming: str) -> str:
    if current is None:
        return incoming
    return min(current, incoming, key=ESCALATION_LEVELS.index)


def evaluate(
    structured_intake_data: dict[str, Any],
    conversation_turns: list[Any],
    rules: list[dict[str, Any]],
) -> dict[str, Any]:
    structured = structured_intake_data or {}
    corpus = structured_text(structured)
    turns = normalize_turns(conversation_turns)
    negatives = [_normalize(x) for x in _texts(structured.get("relevant_negatives"))]
    hpi = structured.get("history_of_present_illness")
    duration = _duration_minutes(hpi.get("duration")) if isinstance(hpi, dict) else None

    escalation: str | None = None
    red_flags: list[dict[str, Any]] = []
    triggered: list[dict[str, Any]] = []
    contradictions = False

    for rule in sorted(rules, key=lambda r: str(r["rule_id"])):
        logic = rule.get("logic") or {}
        defaults = rule.get("defaults") or {}
        matched, evidence = _match_logic(logic, corpus=corpus, structured_data=structured, turns=turns)
        if not matched:
            continue
        verified = bool(evidence)
        level = str(defaults.get("level_default") or "B") if verified else NEEDS_REVIEW
        triggered.append(
            {
                "rule_id": rule["rule_id"],
                "version": rule.get("version"),
                "title": rule.get("title") or rule["rule_id"],
                "level": level,
                "verified": verified,
                "action": str(defaults.get("action_default") or "FLAG"),
                "evidence": evidence,
            }
        )
        if not verified:
            continue
        red_flags.append(
            {
                "id": rule["rule_id"],
                "domain": rule.get("domain") or "general",
                "level": level,
                "rationale": rule.get("title") or rule["rule_id"],
                "evidence_refs": [e["source_id"] for e in evidence],
            }
        )
        escalation = escalate(escalation, level)

        prolonged = logic.get("duration_escalation")
        if isinstance(prolonged, dict) and duration is not None and duration >= int(prolonged.get("min_minutes", 0)):
            prolonged_level = str(prolonged.get("level") or "A")
            red_flags.append(
                {
                    "id": f"{rule['rule_id']}_PROLONGED",
                    "domain": rule.get("domain") or "general",
                    "level": prolonged_level,
                    "rationale": f"{rule.get('title') or rule['rule_id']} lasting {duration} minutes",
                    "evidence_refs": [e["source_id"] for e in evidence],
                }
            )
            escalation = escalate(escalation, prolonged_level)

        patterns = [_normalize(p) for p in logic.get("contradiction_patterns") or []]
        if any(p in neg for neg in negatives for p in patterns):
            contradictions = True

    uncertainties = _texts(structured.get("uncertainties"))
    if len(uncertainties) >= 2 and escalation is None:
        red_flags.append(
            {
                "id": "UNCERTAINTY_HIGH",
                "domain": "safety",
                "level": "C",
                "rationale": "multiple open uncertainties need targeted safety questions",
                "evidence_refs": [],
            }
        )
        escalation = "C"

    if contradictions and escalation != "A":
        escalation = "B"

    return {
        "escalation_level": escalation,
        "red_flag_present": any(f["level"] in {"A", "B"} for f in red_flags),
        "red_flags": red_flags,
        "triggered_rules": triggered,
        "contradictions_present": contradictions,
        "safety_questions": list(SAFETY_QUESTIONS_LEVEL_C) if escalation == "C" else [],
    }


def _keyword_rule(
    rule_key: str,
    title: str,
    domain: str,
    level: str,
    action: str,
    keywords: list[str],
    **extra: Any,
) -> dict[str, Any]:
    return {
        "rule_key": rule_key,
        "title": title,
        "domain": domain,
        "logic": {"type": "keyword_any", "keywords": keywords, **extra},
        "defaults": {"level_default": level, "action_default": action},
    }


DEFAULT_SAFETY_RULES: list[dict[str, Any]] = [
    _keyword_rule(
        "CHEST_PAIN",
        "Chest pain needs prioritized clarification",
        "cardio",
        "B",
        "FLAG",
        ["chest pain", "chest pressure", "tightness in chest", "crushing chest", "brustschmerz", "brustdruck"],
        contradiction_patterns=["no chest pain", "kein brustschmerz", "keine brustschmerzen"],
        duration_escalation={"min_minutes": 20, "level": "A"},
    ),
    _keyword_rule(
        "SYNCOPE",
        "Syncope or loss of consciousness needs urgent clarification",
        "cardio",
        "B",
        "FLAG",
        ["fainted", "passed out", "lost consciousness", "blacked out", "syncope", "ohnmacht", "bewusstlos", "umgekippt"],
        contradiction_patterns=["no fainting", "no syncope", "keine ohnmacht"],
    ),
    _keyword_rule(
        "SEVERE_DYSPNEA",
        "Severe shortness of breath needs immediate attention",
        "respiratory",
        "A",
        "BLOCK",
        ["shortness of breath", "cannot breathe", "can't breathe", "gasping for air", "atemnot", "luftnot"],
        contradiction_patterns=["no shortness of breath", "keine atemnot"],
    ),
    _keyword_rule(
        "SUICIDAL_IDEATION",
        "Suicidal thoughts need immediate help",
        "mental-health",
        "A",
        "BLOCK",
        ["suicide", "suicidal", "kill myself", "end my life", "want to die", "self-harm", "suizid", "umbringen"],
        contradiction_patterns=["no suicidal", "keine suizidgedanken"],
    ),
    _keyword_rule(
        "ACUTE_PSYCHIATRIC_CRISIS",
        "Acute psychiatric crisis needs prioritized clinician contact",
        "mental-health",
        "B",
        "FLAG",
        ["panic attack", "hearing voices", "hallucinations", "nervous breakdown", "panikattacke", "psychose"],
    ),
    _keyword_rule(
        "ACUTE_NEUROLOGICAL",
        "Acute neurological deficit needs immediate clarification",
        "neurology",
        "A",
        "BLOCK",
        ["stroke", "paralysis", "facial droop", "slurred speech", "schlaganfall", "lähmung"],
    ),
    {
        "rule_key": "SEVERE_TACHYCARDIA",
        "title": "Resting heart rate above 150",
        "domain": "cardio",
        "logic": {"type": "numeric_threshold", "field": "vitals.heart_rate", "operator": ">", "value": 150},
        "defaults": {"level_default": "B", "action_default": "FLAG"},
    },
]
