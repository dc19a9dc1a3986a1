"""Invoice APIs: recording, cancellation, payment and overdue tracking."""
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from budgetflow.api.deps import get_workflow
from budgetflow.models.requests import (
    CreateInvoiceRequest,
    MarkPaidRequest,
    ReasonRequest,
    UpdateInvoiceRequest,
)
from budgetflow.services.accounting_workflow import AccountingWorkflowService
from budgetflow.services.approval_policies import DocumentKind
from budgetflow.services.auth import Actor, get_actor, verify_api_key
from budgetflow.services.errors import ValidationError


router = APIRouter(
    prefix="/api/projects/{project_id}/invoices",
    tags=["invoices"],
    dependencies=[Depends(verify_api_key)],
)


@router.post("", status_code=201)
def create_invoice(
    project_id: str,
    request: CreateInvoiceRequest,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    data = request.model_dump(exclude={"submit"}, exclude_none=True)
    return service.create_invoice(project_id, actor, data, submit=request.submit).to_dict()


@router.get("")
def list_invoices(
    project_id: str,
    status: Optional[str] = Query(default=None),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    invoices = service.list_documents(project_id, DocumentKind.INVOICE, status=status)
    return {"project_id": project_id, "invoices": [i.to_dict() for i in invoices], "count": len(invoices)}


@router.post("/overdue/refresh")
def refresh_overdue(
    project_id: str,
    as_of: Optional[str] = Query(default=None, description="ISO date, defaults to today"),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    try:
        today = date.fromisoformat(as_of) if as_of else None
    except ValueError:
        raise ValidationError("as_of", f"Not an ISO date: {as_of}")
    flagged = service.refresh_overdue(project_id, today=today)
    return {"project_id": project_id, "overdue": flagged, "count": len(flagged)}


@router.get("/{invoice_id}")
def get_invoice(project_id: str, invoice_id: str, service: AccountingWorkflowService = Depends(get_workflow)):
    return {"invoice": service.get_document(project_id, DocumentKind.INVOICE, invoice_id).to_dict()}


@router.put("/{invoice_id}")
def update_invoice(
    project_id: str,
    invoice_id: str,
    request: UpdateInvoiceRequest,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    data = request.model_dump(exclude_none=True)
    return service.update_invoice(project_id, invoice_id, actor, data).to_dict()


@router.post("/{invoice_id}/submit")
def submit_invoice(
    project_id: str,
    invoice_id: str,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return service.submit_invoice(project_id, invoice_id, actor).to_dict()


@router.post("/{invoice_id}/cancel")
def cancel_invoice(
    project_id: str,
    invoice_id: str,
    request: ReasonRequest,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return service.cancel_invoice(project_id, invoice_id, actor, request.reason).to_dict()


@router.post("/{invoice_id}/pay")
def mark_paid(
    project_id: str,
    invoice_id: str,
    request: MarkPaidRequest,
    actor: Actor = Depends(get_actor),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return service.mark_paid(project_id, invoice_id, actor, paid_at=request.paid_at).to_dict()
