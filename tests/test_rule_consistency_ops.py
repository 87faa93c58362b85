from __future__ import annotations

from rhythm_pipeline.ops.rule_consistency import check_rule_consistency
from rhythm_pipeline.repositories import InMemoryRuleVersionsRepository
from rhythm_pipeline.rule_registry import RuleRegistry


def _registry_with_two_versions() -> tuple[RuleRegistry, InMemoryRuleVersionsRepository, list[dict]]:
    repo = InMemoryRuleVersionsRepository(rules={}, versions={}, audit_records=[])
    registry = RuleRegistry(repository=repo)
    registry.create_rule(rule_key="DIZZINESS", kind="safety_rule", title="Dizziness", created_by="admin")
    versions = [
        registry.create_draft(
            rule_key="DIZZINESS",
            logic={"type": "keyword_any", "keywords": ["dizzy"]},
            defaults={"level_default": "C", "action_default": "FLAG"},
            change_reason="initial",
            created_by="admin",
        )
        for _ in range(2)
    ]
    return registry, repo, versions


def test_consistent_registry_reports_no_violations():
    registry, repo, versions = _registry_with_two_versions()
    registry.activate(version_id=versions[0]["version_id"], change_reason="go", changed_by="admin")
    registry.activate(version_id=versions[1]["version_id"], change_reason="tune", changed_by="admin")

    report = check_rule_consistency(repo)

    assert report["consistent"] is True
    assert report["rules"] == [
        {
            "rule_key": "DIZZINESS",
            "kind": "safety_rule",
            "active_count": 1,
            "archived_count": 1,
            "draft_count": 0,
            "problem": None,
        }
    ]


def test_drafts_only_key_is_consistent():
    _, repo, _ = _registry_with_two_versions()
    assert check_rule_consistency(repo)["consistent"] is True


def test_multiple_active_versions_are_reported():
    _, repo, versions = _registry_with_two_versions()
    for version in versions:
        repo.update_status(version_id=version["version_id"], status="active")

    report = check_rule_consistency(repo)

    assert report["consistent"] is False
    assert report["violations"] == [{"rule_key": "DIZZINESS", "problem": "multiple_active", "active_versions": [1, 2]}]


def test_key_left_without_active_version_is_reported():
    _, repo, versions = _registry_with_two_versions()
    repo.update_status(version_id=versions[0]["version_id"], status="archived")

    report = check_rule_consistency(repo)

    assert report["violations"][0]["problem"] == "no_active_version"
    assert report["violations"][0]["active_versions"] == []
