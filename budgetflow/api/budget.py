"""Budget APIs: accounts, sub-accounts, summary bands and the ledger journal."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from budgetflow.api.deps import get_workflow
from budgetflow.models.requests import BudgetPreviewRequest, CreateAccountRequest, CreateSubAccountRequest
from budgetflow.services.accounting_workflow import AccountingWorkflowService
from budgetflow.services.auth import verify_api_key


router = APIRouter(
    prefix="/api/projects/{project_id}/budget",
    tags=["budget"],
    dependencies=[Depends(verify_api_key)],
)


@router.get("")
def get_budget(project_id: str, service: AccountingWorkflowService = Depends(get_workflow)):
    return service.get_budget_summary(project_id)


@router.post("/accounts", status_code=201)
def create_account(
    project_id: str,
    request: CreateAccountRequest,
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return {"account": service.create_account(project_id, request.code, request.description)}


@router.post("/accounts/{account_id}/subaccounts", status_code=201)
def create_sub_account(
    project_id: str,
    account_id: str,
    request: CreateSubAccountRequest,
    service: AccountingWorkflowService = Depends(get_workflow),
):
    sub = service.create_sub_account(
        project_id, account_id, request.code, request.description, request.budgeted
    )
    return {"sub_account": sub.to_dict()}


@router.post("/preview")
def preview_budget_impact(
    project_id: str,
    request: BudgetPreviewRequest,
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return {
        "project_id": project_id,
        "impact": service.preview_budget_impact(project_id, [i.model_dump() for i in request.line_items]),
    }


@router.get("/ledger")
def list_ledger(
    project_id: str,
    sub_account_id: Optional[str] = Query(default=None),
    document_id: Optional[str] = Query(default=None),
    service: AccountingWorkflowService = Depends(get_workflow),
):
    return {
        "project_id": project_id,
        "entries": service.list_ledger(project_id, sub_account_id=sub_account_id, document_id=document_id),
    }
