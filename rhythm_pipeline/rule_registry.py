from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from rhythm_pipeline.errors import pipeline_error
from rhythm_pipeline.risk_calculator import DEFAULT_SCORING_CONFIG
from rhythm_pipeline.rule_guard import RULE_KINDS, check_rule_version
from rhythm_pipeline.safety_rules import DEFAULT_SAFETY_RULES, evaluate
from rhythm_pipeline.section_generator import SECTION_TITLES

logger = logging.getLogger(__name__)

SCORING_CONFIG_KEY = "risk_scoring"
REASONING_CONFIG_KEY = "report_sections"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class RuleRegistry:
    """Versioned safety rules and configs with a draft -> active -> archived lifecycle.

    At most one version per rule key is active. Every status change writes a
    hash-chained audit record inside the same repository transaction.
    """

    VERSION_TRANSITIONS: dict[str, set[str]] = {
        "draft": {"active"},
        "active": {"archived"},
        "archived": set(),
    }

    def __init__(self, *, repository: Any) -> None:
        self._repo = repository

    @staticmethod
    def _compute_audit_hash(*, record: dict[str, Any], prev_hash: str) -> str:
        material = {key: value for key, value in record.items() if key not in {"audit_hash", "prev_hash"}}
        material["prev_hash"] = prev_hash
        blob = json.dumps(material, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    def _append_audit(
        self,
        repo: Any,
        *,
        record_id: str,
        operation: str,
        old_values: dict[str, Any] | None,
        new_values: dict[str, Any] | None,
        changed_by: str,
        change_reason: str,
    ) -> dict[str, Any]:
        record = {
            "audit_id": f"audit_{uuid.uuid4().hex[:12]}",
            "table_name": "rule_versions",
            "record_id": record_id,
            "operation": operation,
            "old_values": old_values,
            "new_values": new_values,
            "changed_by": changed_by,
            "change_reason": change_reason,
            "created_at": _utcnow_iso(),
        }
        prev_hash = repo.last_audit_hash()
        record["prev_hash"] = prev_hash
        record["audit_hash"] = self._compute_audit_hash(record=record, prev_hash=prev_hash)
        return repo.insert_audit(record=record)

    def verify_audit_integrity(self) -> dict[str, Any]:
        rows = self._repo.list_audit()
        prev_hash = ""
        for idx, row in enumerate(rows):
            stored_prev = str(row.get("prev_hash") or "")
            if stored_prev != prev_hash:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "prev_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            expected = self._compute_audit_hash(record=row, prev_hash=stored_prev)
            actual = str(row.get("audit_hash") or "")
            if actual != expected:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "audit_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            prev_hash = actual
        return {"valid": True, "checked_count": len(rows), "last_hash": prev_hash}

    def list_audit(self, *, record_id: str | None = None) -> list[dict[str, Any]]:
        return self._repo.list_audit(record_id=record_id)

    def create_rule(
        self,
        *,
        rule_key: str,
        kind: str,
        title: str,
        created_by: str,
        domain: str = "general",
    ) -> dict[str, Any]:
        if not rule_key.strip():
            raise pipeline_error("VALIDATION_ERROR", "rule_key must not be empty")
        if kind not in RULE_KINDS:
            raise pipeline_error("VALIDATION_ERROR", f"unknown rule kind: {kind}")
        if self._repo.get_rule(rule_key=rule_key) is not None:
            raise pipeline_error("VALIDATION_ERROR", f"rule already exists: {rule_key}")
        return self._repo.insert_rule(
            rule={
                "rule_key": rule_key,
                "kind": kind,
                "title": title.strip() or rule_key,
                "domain": domain,
                "created_by": created_by,
                "created_at": _utcnow_iso(),
            }
        )

    def get_rule(self, rule_key: str) -> dict[str, Any]:
        rule = self._repo.get_rule(rule_key=rule_key)
        if rule is None:
            raise pipeline_error("NOT_FOUND", f"rule not found: {rule_key}")
        return rule

    def list_rules(self, *, kind: str | None = None) -> list[dict[str, Any]]:
        return self._repo.list_rules(kind=kind)

    def get_version(self, version_id: str) -> dict[str, Any]:
        version = self._repo.get_version(version_id=version_id)
        if version is None:
            raise pipeline_error("NOT_FOUND", f"rule version not found: {version_id}")
        return version

    def list_versions(self, rule_key: str) -> list[dict[str, Any]]:
        self.get_rule(rule_key)
        return self._repo.list_versions(rule_key=rule_key)

    def get_active_version(self, rule_key: str) -> dict[str, Any] | None:
        active = self._repo.list_active_by_key(rule_key=rule_key)
        if not active:
            return None
        if len(active) > 1:
            logger.error("rule_registry_multiple_active rule_key=%s count=%s", rule_key, len(active))
        return active[-1]

    def create_draft(
        self,
        *,
        rule_key: str,
        logic: dict[str, Any],
        defaults: dict[str, Any] | None,
        change_reason: str,
        created_by: str,
    ) -> dict[str, Any]:
        self.get_rule(rule_key)
        if not change_reason.strip():
            raise pipeline_error("VALIDATION_ERROR", "change_reason is required")
        if not isinstance(logic, dict):
            raise pipeline_error("VALIDATION_ERROR", "logic must be an object")

        def _op(repo: Any) -> dict[str, Any]:
            now = _utcnow_iso()
            version = repo.insert_version(
                version={
                    "version_id": f"rv_{uuid.uuid4().hex[:12]}",
                    "rule_key": rule_key,
                    "version": repo.max_version(rule_key=rule_key) + 1,
                    "status": "draft",
                    "logic": logic,
                    "defaults": dict(defaults or {}),
                    "change_reason": change_reason,
                    "created_by": created_by,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            self._append_audit(
                repo,
                record_id=version["version_id"],
                operation="INSERT",
                old_values=None,
                new_values={"status": "draft", "version": version["version"]},
                changed_by=created_by,
                change_reason=change_reason,
            )
            return version

        return self._repo.run_in_tx(_op)

    def update_draft(
        self,
        *,
        version_id: str,
        changed_by: str,
        change_reason: str,
        logic: dict[str, Any] | None = None,
        defaults: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not change_reason.strip():
            raise pipeline_error("VALIDATION_ERROR", "change_reason is required")

        def _op(repo: Any) -> dict[str, Any]:
            current = repo.get_version(version_id=version_id)
            if current is None:
                raise pipeline_error("NOT_FOUND", f"rule version not found: {version_id}")
            if current["status"] != "draft":
                raise pipeline_error("INVALID_STATE", "only draft versions can be edited")
            patch: dict[str, Any] = {"change_reason": change_reason, "updated_at": _utcnow_iso()}
            if logic is not None:
                patch["logic"] = logic
            if defaults is not None:
                patch["defaults"] = defaults
            updated = repo.update_version(version_id=version_id, patch=patch)
            self._append_audit(
                repo,
                record_id=version_id,
                operation="UPDATE",
                old_values={"logic": current.get("logic"), "defaults": current.get("defaults")},
                new_values={"logic": updated.get("logic"), "defaults": updated.get("defaults")},
                changed_by=changed_by,
                change_reason=change_reason,
            )
            return updated

        return self._repo.run_in_tx(_op)

    def activate(self, *, version_id: str, change_reason: str, changed_by: str) -> dict[str, Any]:
        """Activate a draft, archiving whatever was active for its rule key.

        Guard failures abort before any write. Archive, activate and the audit
        records commit together or not at all.
        """
        target = self.get_version(version_id)
        if target["status"] != "draft":
            raise pipeline_error(
                "VALIDATION_ERROR",
                "only draft versions can be activated",
                details={"status": target["status"]},
            )
        rule = self.get_rule(target["rule_key"])
        guard_errors = check_rule_version(rule["kind"], target)
        if guard_errors:
            logger.info(
                "rule_activation_guard_failed version_id=%s rule_key=%s errors=%s",
                version_id,
                target["rule_key"],
                len(guard_errors),
            )
            raise pipeline_error(
                "ACTIVATION_GUARD_FAILED",
                "rule version failed activation guard",
                details={"guard_errors": guard_errors},
            )

        def _op(repo: Any) -> dict[str, Any]:
            current = repo.get_version(version_id=version_id)
            if current is None or current["status"] != "draft":
                raise pipeline_error("INVALID_STATE", "rule version changed during activation")
            now = _utcnow_iso()
            previous = [v for v in repo.list_active_by_key(rule_key=current["rule_key"]) if v["version_id"] != version_id]
            archived: list[dict[str, Any]] = []
            for old in previous:
                archived.append(
                    repo.update_status(
                        version_id=old["version_id"],
                        status="archived",
                        extra={"archived_at": now, "updated_at": now},
                    )
                )
            activated = repo.update_status(
                version_id=version_id,
                status="active",
                extra={
                    "change_reason": change_reason,
                    "activated_at": now,
                    "activated_by": changed_by,
                    "updated_at": now,
                },
            )
            audit_ids: list[str] = []
            for old in archived:
                record = self._append_audit(
                    repo,
                    record_id=old["version_id"],
                    operation="ARCHIVE",
                    old_values={"status": "active", "version": old["version"]},
                    new_values={"status": "archived", "version": old["version"]},
                    changed_by=changed_by,
                    change_reason=change_reason,
                )
                audit_ids.append(record["audit_id"])
            record = self._append_audit(
                repo,
                record_id=version_id,
                operation="ACTIVATE",
                old_values={
                    "status": "draft",
                    "version": current["version"],
                    "previous_active_versions": [v["version"] for v in archived],
                },
                new_values={"status": "active", "version": current["version"]},
                changed_by=changed_by,
                change_reason=change_reason,
            )
            audit_ids.append(record["audit_id"])
            return {"activated": activated, "archived": archived, "audit_ids": audit_ids}

        result = self._repo.run_in_tx(_op)
        logger.info(
            "rule_version_activated version_id=%s rule_key=%s archived=%s",
            version_id,
            target["rule_key"],
            len(result["archived"]),
        )
        return result

    def archive(self, *, version_id: str, change_reason: str, changed_by: str) -> dict[str, Any]:
        def _op(repo: Any) -> dict[str, Any]:
            current = repo.get_version(version_id=version_id)
            if current is None:
                raise pipeline_error("NOT_FOUND", f"rule version not found: {version_id}")
            if "archived" not in self.VERSION_TRANSITIONS[current["status"]]:
                raise pipeline_error(
                    "INVALID_STATE",
                    f"invalid version transition: {current['status']} -> archived",
                )
            now = _utcnow_iso()
            updated = repo.update_status(
                version_id=version_id,
                status="archived",
                extra={"archived_at": now, "updated_at": now},
            )
            self._append_audit(
                repo,
                record_id=version_id,
                operation="ARCHIVE",
                old_values={"status": current["status"], "version": current["version"]},
                new_values={"status": "archived", "version": current["version"]},
                changed_by=changed_by,
                change_reason=change_reason,
            )
            return updated

        return self._repo.run_in_tx(_op)

    def resolve_rules(self, *, kind: str, pinned: dict[str, str] | None = None) -> list[dict[str, Any]]:
        """Engine-ready rules: the active version per key, with ``pinned`` keys overridden.

        A pinned version may be a draft; resolving never changes registry state.
        """
        resolved: dict[str, dict[str, Any]] = {}
        rules = {r["rule_key"]: r for r in self._repo.list_rules(kind=kind)}
        for rule_key, rule in rules.items():
            active = self.get_active_version(rule_key)
            if active is not None:
                resolved[rule_key] = self._engine_rule(rule, active)
        for rule_key, version_id in sorted((pinned or {}).items()):
            version = self.get_version(version_id)
            rule = rules.get(rule_key)
            if rule is None or version["rule_key"] != rule_key:
                raise pipeline_error(
                    "VALIDATION_ERROR",
                    f"pinned version {version_id} does not belong to rule {rule_key}",
                )
            guard_errors = check_rule_version(kind, version)
            if guard_errors:
                raise pipeline_error(
                    "VALIDATION_ERROR",
                    f"pinned version {version_id} is not evaluable",
                    details={"rule_key": rule_key, "version_id": version_id, "guard_errors": guard_errors},
                )
            resolved[rule_key] = self._engine_rule(rule, version)
        return [resolved[key] for key in sorted(resolved)]

    @staticmethod
    def _engine_rule(rule: dict[str, Any], version: dict[str, Any]) -> dict[str, Any]:
        return {
            "rule_id": rule["rule_key"],
            "title": rule.get("title"),
            "domain": rule.get("domain"),
            "version_id": version["version_id"],
            "version": version["version"],
            "status": version["status"],
            "logic": version.get("logic") or {},
            "defaults": version.get("defaults") or {},
        }

    def evaluate_safety_sandbox(
        self,
        *,
        structured_intake_data: dict[str, Any],
        conversation_turns: list[Any],
        pinned: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """What-if evaluation; pinned drafts are read, never activated."""
        rules = self.resolve_rules(kind="safety_rule", pinned=pinned)
        try:
            verdict = evaluate(structured_intake_data, conversation_turns, rules)
        except Exception as exc:
            logger.error("safety_sandbox_evaluation_failed error_type=%s", type(exc).__name__)
            raise pipeline_error("EVALUATION_FAILED", "safety rule evaluation failed") from exc
        verdict["rule_snapshot"] = [
            {"rule_key": r["rule_id"], "version_id": r["version_id"], "version": r["version"], "status": r["status"]}
            for r in rules
        ]
        return verdict

    def active_config(self, rule_key: str) -> dict[str, Any] | None:
        version = self.get_active_version(rule_key)
        if version is None:
            return None
        return {
            "rule_key": rule_key,
            "version_id": version["version_id"],
            "version": version["version"],
            "logic": version.get("logic") or {},
        }

    def seed_defaults(self, *, created_by: str = "system") -> list[str]:
        """Create and activate the built-in rules for keys that do not exist yet."""
        seeded: list[str] = []
        entries: list[tuple[str, str, str, dict[str, Any], dict[str, Any]]] = [
            (
                item["rule_key"],
                "safety_rule",
                item["title"],
                item["logic"],
                item["defaults"],
            )
            for item in DEFAULT_SAFETY_RULES
        ]
        entries.append((SCORING_CONFIG_KEY, "scoring_config", "Risk scoring", DEFAULT_SCORING_CONFIG, {}))
        entries.append(
            (
                REASONING_CONFIG_KEY,
                "reasoning_config",
                "Report sections",
                {"prompt_version": "sections-v1", "section_keys": list(SECTION_TITLES)},
                {},
            )
        )
        domains = {item["rule_key"]: item["domain"] for item in DEFAULT_SAFETY_RULES}
        for rule_key, kind, title, logic, defaults in entries:
            if self._repo.get_rule(rule_key=rule_key) is not None:
                continue
            self.create_rule(
                rule_key=rule_key,
                kind=kind,
                title=title,
                created_by=created_by,
                domain=domains.get(rule_key, "general"),
            )
            draft = self.create_draft(
                rule_key=rule_key,
                logic=logic,
                defaults=defaults,
                change_reason="initial seed",
                created_by=created_by,
            )
            self.activate(version_id=draft["version_id"], change_reason="initial seed", changed_by=created_by)
            seeded.append(rule_key)
        return seeded
