"""Project membership and approval policy APIs (versioned per document kind)."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from budgetflow.api.deps import get_workflow
from budgetflow.models.requests import SavePolicyRequest, SetMembersRequest
from budgetflow.services.accounting_workflow import AccountingWorkflowService, parse_kind
from budgetflow.services.auth import Actor, get_actor, verify_api_key


router = APIRouter(
    prefix="/api/projects/{project_id}",
    tags=["projects"],
    dependencies=[Depends(verify_api_key)],
)


@router.get("/members")
def list_members(project_id: str, service: AccountingWorkflowService = Depends(get_workflow)):
    return {
        "project_id": project_id,
        "members": [m.to_dict() for m in service.list_members(project_id)],
    }


@router.put("/members")
def set_members(
    project_id: str,
    request: SetMembersRequest,
    service: AccountingWorkflowService = Depends(get_workflow),
):
    members = service.set_members(project_id, [m.model_dump() for m in request.members])
    return {"project_id": project_id, "members": [m.to_dict() for m in members]}


@router.get("/policies/{kind}")
def get_policy(
    project_id: str,
    kind: str,
    include_versions: bool = Query(default=False),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    document_kind = parse_kind(kind)
    response = {"policy": service.get_policy(project_id, document_kind).to_dict()}
    if include_versions:
        response["versions"] = [
            p.to_dict() for p in service.list_policy_versions(project_id, document_kind)
        ]
    return response


@router.put("/policies/{kind}")
def save_policy(
    project_id: str,
    kind: str,
    request: SavePolicyRequest,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    policy = service.save_policy(
        project_id,
        parse_kind(kind),
        [step.model_dump(exclude_none=True) for step in request.steps],
        updated_by=actor.member_id,
    )
    return {"policy": policy.to_dict()}


@router.get("/policies/{kind}/versions")
def list_policy_versions(
    project_id: str,
    kind: str,
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return {
        "project_id": project_id,
        "kind": kind,
        "versions": [p.to_dict() for p in service.list_policy_versions(project_id, parse_kind(kind))],
    }
