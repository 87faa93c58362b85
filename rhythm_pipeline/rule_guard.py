from __future__ import annotations

from typing import Any

from jsonschema import Draft7Validator

from rhythm_pipeline.risk_calculator import validate_scoring_config
from rhythm_pipeline.safety_rules import ESCALATION_LEVELS, LOGIC_TYPES, NUMERIC_OPERATORS
from rhythm_pipeline.section_generator import SECTION_TITLES

RULE_KINDS = ("safety_rule", "scoring_config", "reasoning_config")

_SAFETY_RULE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["logic", "defaults"],
    "properties": {
        "logic": {
            "type": "object",
            "required": ["type"],
            "properties": {
                "type": {"enum": list(LOGIC_TYPES)},
                "duration_escalation": {
                    "type": "object",
                    "required": ["min_minutes"],
                    "properties": {
                        "min_minutes": {"type": "number", "exclusiveMinimum": 0},
                        "level": {"enum": list(ESCALATION_LEVELS)},
                    },
                },
            },
        },
        "defaults": {
            "type": "object",
            "required": ["level_default", "action_default"],
            "properties": {
                "level_default": {"enum": list(ESCALATION_LEVELS)},
                "action_default": {"enum": ["PASS", "FLAG", "BLOCK"]},
            },
        },
    },
}

_SCORING_RULE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "min_value": {"type": "number"},
        "max_value": {"type": "number"},
    },
}

_SCORING_CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["logic"],
    "properties": {
        "logic": {
            "type": "object",
            "required": ["algorithm_version", "factor_rules", "overall_rule"],
            "properties": {
                "algorithm_version": {"type": "string", "minLength": 1},
                "factor_rules": {"type": "array", "minItems": 1, "items": _SCORING_RULE_SCHEMA},
                "overall_rule": _SCORING_RULE_SCHEMA,
            },
        },
    },
}

_REASONING_CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["logic"],
    "properties": {
        "logic": {
            "type": "object",
            "required": ["prompt_version", "section_keys"],
            "properties": {
                "prompt_version": {"type": "string", "minLength": 1},
                "section_keys": {"type": "array", "minItems": 1, "items": {"type": "string"}},
            },
        },
    },
}

_SCHEMAS: dict[str, dict[str, Any]] = {
    "safety_rule": _SAFETY_RULE_SCHEMA,
    "scoring_config": _SCORING_CONFIG_SCHEMA,
    "reasoning_config": _REASONING_CONFIG_SCHEMA,
}


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _check_safety_logic(logic: dict[str, Any], path: str) -> list[str]:
    errors: list[str] = []
    logic_type = logic.get("type")
    if logic_type not in LOGIC_TYPES:
        return [f"{path}.type: unsupported logic type '{logic_type}'"]
    if logic_type == "keyword_any":
        keywords = logic.get("keywords")
        if not isinstance(keywords, list) or not [k for k in keywords if isinstance(k, str) and k.strip()]:
            errors.append(f"{path}.keywords: at least one non-empty keyword is required")
    elif logic_type == "numeric_threshold":
        if not str(logic.get("field") or "").strip():
            errors.append(f"{path}.field: required for numeric_threshold")
        if logic.get("operator") not in NUMERIC_OPERATORS:
            errors.append(f"{path}.operator: must be one of {', '.join(NUMERIC_OPERATORS)}")
        if not _is_number(logic.get("value")):
            errors.append(f"{path}.value: must be numeric")
    elif logic_type == "field_present":
        if not str(logic.get("field") or "").strip():
            errors.append(f"{path}.field: required for field_present")
    else:
        conditions = logic.get("conditions")
        if not isinstance(conditions, list) or not conditions:
            errors.append(f"{path}.conditions: at least one condition is required")
        else:
            for idx, cond in enumerate(conditions):
                if not isinstance(cond, dict):
                    errors.append(f"{path}.conditions[{idx}]: must be an object")
                    continue
                errors.extend(_check_safety_logic(cond, f"{path}.conditions[{idx}]"))
    prolonged = logic.get("duration_escalation")
    if prolonged is not None:
        min_minutes = prolonged.get("min_minutes") if isinstance(prolonged, dict) else None
        if not _is_number(min_minutes) or min_minutes <= 0:
            errors.append(f"{path}.duration_escalation.min_minutes: must be positive")
        elif prolonged.get("level", "A") not in ESCALATION_LEVELS:
            errors.append(f"{path}.duration_escalation.level: must be A, B or C")
    return errors


def _semantic_errors(kind: str, version: dict[str, Any]) -> list[str]:
    logic = version.get("logic") or {}
    if kind == "safety_rule":
        errors = _check_safety_logic(logic, "logic")
        defaults = version.get("defaults") or {}
        if defaults.get("action_default") == "BLOCK" and defaults.get("level_default") != "A":
            errors.append("defaults.action_default: BLOCK requires level_default A")
        return errors
    if kind == "scoring_config":
        return [f"logic: {err}" for err in validate_scoring_config(logic)]
    unknown = [k for k in logic.get("section_keys") or [] if k not in SECTION_TITLES]
    return [f"logic.section_keys: unknown section '{k}'" for k in unknown]


def check_rule_version(kind: str, version: dict[str, Any]) -> list[str]:
    """Return itemized guard errors for a rule version; empty means it may be activated."""
    schema = _SCHEMAS.get(kind)
    if schema is None:
        return [f"kind: unknown rule kind '{kind}'"]
    document = {"logic": version.get("logic"), "defaults": version.get("defaults") or {}}
    validator = Draft7Validator(schema)
    structural = sorted(validator.iter_errors(document), key=lambda e: [str(p) for p in e.absolute_path])
    if structural:
        out: list[str] = []
        for err in structural:
            location = ".".join(str(p) for p in err.absolute_path) or "version"
            out.append(f"{location}: {err.message}")
        return out
    return _semantic_errors(kind, version)
