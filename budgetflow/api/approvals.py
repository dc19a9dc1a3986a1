"""Approval APIs shared by purchase orders and invoices."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from budgetflow.api.deps import get_workflow
from budgetflow.models.requests import ApproveRequest, RejectRequest, RequestInfoRequest
from budgetflow.services.accounting_workflow import AccountingWorkflowService, parse_kind
from budgetflow.services.auth import Actor, get_actor, verify_api_key


router = APIRouter(
    prefix="/api/projects/{project_id}/approvals",
    tags=["approvals"],
    dependencies=[Depends(verify_api_key)],
)


@router.get("/pending")
def list_pending(
    project_id: str,
    kind: Optional[str] = Query(default=None),
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    """Documents waiting on the calling member."""
    documents = service.pending_approvals_for(
        project_id, actor.member_id, kind=parse_kind(kind) if kind else None
    )
    return {
        "member_id": actor.member_id,
        "documents": [d.to_dict() for d in documents],
        "count": len(documents),
    }


@router.post("/{kind}/{document_id}/approve")
def approve(
    project_id: str,
    kind: str,
    document_id: str,
    request: ApproveRequest,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return service.approve(project_id, parse_kind(kind), document_id, actor, comment=request.comment).to_dict()


@router.post("/{kind}/{document_id}/reject")
def reject(
    project_id: str,
    kind: str,
    document_id: str,
    request: RejectRequest,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return service.reject(project_id, parse_kind(kind), document_id, actor, request.reason).to_dict()


@router.post("/{kind}/{document_id}/request-info")
def request_info(
    project_id: str,
    kind: str,
    document_id: str,
    request: RequestInfoRequest,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return {"event": service.request_info(project_id, parse_kind(kind), document_id, actor, request.message)}


@router.get("/{kind}/{document_id}/timeline")
def get_timeline(
    project_id: str,
    kind: str,
    document_id: str,
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return service.get_timeline(project_id, parse_kind(kind), document_id).to_dict()
