from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from rhythm_pipeline.routes._deps import require_role, subject_from_request, trace_id_from_request
from rhythm_pipeline.schemas import (
    RuleCreateRequest,
    RuleDraftRequest,
    RuleDraftUpdateRequest,
    RuleStatusChangeRequest,
    SafetySandboxRequest,
    success_envelope,
)
from rhythm_pipeline.store import store

router = APIRouter(prefix="/api/v1", tags=["rules"])


def _require_rule_admin(request: Request, action: str) -> None:
    require_role(request, allowed=request.app.state.security_cfg.rule_admin_roles, action=action)


@router.get("/rules")
def list_rules(request: Request, kind: str | None = Query(default=None)):
    return success_envelope(store.registry.list_rules(kind=kind), trace_id_from_request(request))


@router.post("/rules")
def create_rule(payload: RuleCreateRequest, request: Request):
    _require_rule_admin(request, "create_rule")
    data = store.registry.create_rule(
        rule_key=payload.rule_key,
        kind=payload.kind,
        title=payload.title,
        domain=payload.domain,
        created_by=subject_from_request(request),
    )
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/rules/{rule_key}/versions")
def list_versions(rule_key: str, request: Request):
    return success_envelope(store.registry.list_versions(rule_key), trace_id_from_request(request))


@router.post("/rules/{rule_key}/versions")
def create_draft(rule_key: str, payload: RuleDraftRequest, request: Request):
    _require_rule_admin(request, "create_rule_draft")
    store.registry.get_rule(rule_key)
    data = store.registry.create_draft(
        rule_key=rule_key,
        logic=payload.logic,
        defaults=payload.defaults,
        change_reason=payload.change_reason,
        created_by=subject_from_request(request),
    )
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/rule-versions/{version_id}")
def get_version(version_id: str, request: Request):
    return success_envelope(store.registry.get_version(version_id), trace_id_from_request(request))


@router.patch("/rule-versions/{version_id}")
def update_draft(version_id: str, payload: RuleDraftUpdateRequest, request: Request):
    _require_rule_admin(request, "update_rule_draft")
    data = store.registry.update_draft(
        version_id=version_id,
        logic=payload.logic,
        defaults=payload.defaults,
        change_reason=payload.change_reason,
        changed_by=subject_from_request(request),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/rule-versions/{version_id}/activate")
def activate_version(version_id: str, payload: RuleStatusChangeRequest, request: Request):
    _require_rule_admin(request, "activate_rule_version")
    data = store.activate_rule_version(
        version_id=version_id,
        change_reason=payload.change_reason,
        changed_by=subject_from_request(request),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/rule-versions/{version_id}/archive")
def archive_version(version_id: str, payload: RuleStatusChangeRequest, request: Request):
    _require_rule_admin(request, "archive_rule_version")
    data = store.registry.archive(
        version_id=version_id,
        change_reason=payload.change_reason,
        changed_by=subject_from_request(request),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/rules/audit")
def list_audit(request: Request, record_id: str | None = Query(default=None)):
    return success_envelope(store.registry.list_audit(record_id=record_id), trace_id_from_request(request))


@router.post("/rules/safety/sandbox")
def safety_sandbox(payload: SafetySandboxRequest, request: Request):
    data = store.evaluate_safety_sandbox(
        structured_intake_data=payload.structured_intake_data,
        conversation_turns=payload.conversation_turns,
        pinned_versions=payload.pinned_versions,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/rules/consistency")
def rule_consistency(request: Request):
    return success_envelope(store.check_rule_consistency(), trace_id_from_request(request))
