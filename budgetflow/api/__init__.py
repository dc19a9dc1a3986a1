from budgetflow.api.approvals import router as approvals_router
from budgetflow.api.budget import router as budget_router
from budgetflow.api.invoices import router as invoices_router
from budgetflow.api.projects import router as projects_router
from budgetflow.api.purchase_orders import router as purchase_orders_router

__all__ = [
    "approvals_router",
    "budget_router",
    "invoices_router",
    "projects_router",
    "purchase_orders_router",
]
