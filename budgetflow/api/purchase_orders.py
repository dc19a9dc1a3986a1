"""Purchase order APIs: creation, lifecycle and reconciliation."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from budgetflow.api.deps import get_workflow
from budgetflow.models.requests import CreatePORequest, ReasonRequest, UpdatePORequest
from budgetflow.services.accounting_workflow import AccountingWorkflowService
from budgetflow.services.approval_policies import DocumentKind
from budgetflow.services.auth import Actor, get_actor, verify_api_key


router = APIRouter(
    prefix="/api/projects/{project_id}/pos",
    tags=["purchase-orders"],
    dependencies=[Depends(verify_api_key)],
)


@router.post("", status_code=201)
def create_po(
    project_id: str,
    request: CreatePORequest,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    data = request.model_dump(exclude={"submit"}, exclude_none=True)
    return service.create_po(project_id, actor, data, submit=request.submit).to_dict()


@router.get("")
def list_pos(
    project_id: str,
    status: Optional[str] = Query(default=None),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    pos = service.list_documents(project_id, DocumentKind.PO, status=status)
    return {"project_id": project_id, "purchase_orders": [po.to_dict() for po in pos], "count": len(pos)}


@router.get("/{po_id}")
def get_po(project_id: str, po_id: str, service: AccountingWorkflowService = Depends(get_workflow)):
    return {"purchase_order": service.get_document(project_id, DocumentKind.PO, po_id).to_dict()}


@router.put("/{po_id}")
def update_po(
    project_id: str,
    po_id: str,
    request: UpdatePORequest,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    data = request.model_dump(exclude_none=True)
    return service.update_po(project_id, po_id, actor, data).to_dict()


@router.post("/{po_id}/submit")
def submit_po(
    project_id: str,
    po_id: str,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return service.submit_po(project_id, po_id, actor).to_dict()


@router.post("/{po_id}/close")
def close_po(
    project_id: str,
    po_id: str,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return service.close_po(project_id, po_id, actor).to_dict()


@router.post("/{po_id}/reopen")
def reopen_po(
    project_id: str,
    po_id: str,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return service.reopen_po(project_id, po_id, actor).to_dict()


@router.post("/{po_id}/cancel")
def cancel_po(
    project_id: str,
    po_id: str,
    request: ReasonRequest,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return service.cancel_po(project_id, po_id, actor, request.reason).to_dict()


@router.post("/{po_id}/modify")
def modify_po(
    project_id: str,
    po_id: str,
    request: ReasonRequest,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return service.modify_po(project_id, po_id, actor, request.reason).to_dict()


@router.get("/{po_id}/reconciliation")
def get_reconciliation(project_id: str, po_id: str, service: AccountingWorkflowService = Depends(get_workflow)):
    return {"reconciliation": service.get_reconciliation(project_id, po_id).to_dict()}
