from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


def check_rule_consistency(repository: Any) -> dict[str, Any]:
    """Report rule keys whose active-version count is not exactly what it should be.

    ``multiple_active``: more than one active version. ``no_active_version``: a
    key that has been activated before (it has archived versions) but has no
    active version now, as left behind by an interrupted activation. Keys with
    only drafts are fine.
    """
    rows: list[dict[str, Any]] = []
    violations: list[dict[str, Any]] = []
    for rule in repository.list_rules():
        rule_key = rule["rule_key"]
        versions = repository.list_versions(rule_key=rule_key)
        active = [v for v in versions if v["status"] == "active"]
        archived = [v for v in versions if v["status"] == "archived"]
        problem: str | None = None
        if len(active) > 1:
            problem = "multiple_active"
        elif not active and archived:
            problem = "no_active_version"
        row = {
            "rule_key": rule_key,
            "kind": rule.get("kind"),
            "active_count": len(active),
            "archived_count": len(archived),
            "draft_count": len(versions) - len(active) - len(archived),
            "problem": problem,
        }
        rows.append(row)
        if problem is not None:
            violations.append({"rule_key": rule_key, "problem": problem, "active_versions": [v["version"] for v in active]})
    if violations:
        logger.error("rule_consistency_violations count=%s", len(violations))
    return {"consistent": not violations, "violations": violations, "rules": rows}
