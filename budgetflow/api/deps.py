"""FastAPI dependencies for Budgetflow services."""
from budgetflow.services.accounting_workflow import AccountingWorkflowService, get_accounting_workflow


def get_workflow() -> AccountingWorkflowService:
    return get_accounting_workflow()
