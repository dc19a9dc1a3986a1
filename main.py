"""
Budgetflow - FastAPI Backend

Budgetflow: Purchase Order & Invoice Approvals Against a Project Budget

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health

4. Create a purchase order:
   curl -X POST http://localhost:8000/api/projects/p1/pos \
     -H "X-Member-Id: u1" -H "Content-Type: application/json" \
     -d '{"supplier": "Acme", "line_items": [{"sub_account_id": "SUB-...", "base_amount": 500}]}'
"""
import time
from datetime import datetime, timezone

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from budgetflow.api import (
    approvals_router,
    budget_router,
    invoices_router,
    projects_router,
    purchase_orders_router,
)
from budgetflow.core.database import get_db
from budgetflow.services.auth import verify_api_key
from budgetflow.services.errors import BudgetflowError, status_code_for
from budgetflow.services.logging import log_error, log_request, logger
from budgetflow.services.metrics import get_metrics, record_error, record_request

app = FastAPI(
    title="Budgetflow API",
    description="""
    Budgetflow API - Purchase Order & Invoice Approvals

    ## Approval chains
    - Per-project, versioned approval policies for POs and invoices
    - Fixed, role, head-of-department and coordinator approver steps
    - Amount gates re-evaluated against the document's current amount

    ## Budget
    - Accounts and sub-accounts with budgeted, committed and actual figures
    - Approved POs commit budget; posted invoices realize it
    - PO-invoice reconciliation per PO and per PO line

    ## Authentication
    API key authentication is optional. Set `API_KEY` environment variable to enable.
    The acting member is passed in `X-Member-Id`; destructive actions also need
    `X-Reauth-Token` when `BUDGETFLOW_REAUTH_SECRET` is set.
    """,
    version="1.0.0",
)

app.include_router(projects_router)
app.include_router(budget_router)
app.include_router(purchase_orders_router)
app.include_router(invoices_router)
app.include_router(approvals_router)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and record metrics."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_id = request.headers.get("X-Member-Id", request.client.host if request.client else "unknown")

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000

            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                client_id=client_id,
            )
            record_request(request.method, request.url.path, response.status_code, duration_ms)

            if response.status_code >= 400:
                record_error(f"http_{response.status_code}", request.url.path)

            return response
        except Exception as e:
            record_error("exception", request.url.path)
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(BudgetflowError)
async def budgetflow_exception_handler(request: Request, exc: BudgetflowError):
    """Handle all BudgetflowErrors with structured responses."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        log_error(exc.code.value, str(exc), {"path": str(request.url.path), **exc.context})
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code.value, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_error(
        "unhandled_exception",
        str(exc),
        {"path": str(request.url.path), "method": request.method},
        exception=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again or contact support.",
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup."""
    get_db().initialize()


@app.get("/health", tags=["System"], summary="Health Check")
async def health():
    """Liveness plus a database round-trip. No authentication required."""
    database = "ok"
    try:
        with get_db().connect() as conn:
            conn.execute("SELECT 1").fetchone()
    except Exception as exc:
        logger.warning("Health check database query failed: %s", exc)
        database = "unavailable"
    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "version": "v1.0.0",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/metrics", tags=["System"], summary="Get Metrics")
async def metrics_endpoint(api_key: str = Depends(verify_api_key)):
    """Uptime, request counts, errors, document transitions and ledger warnings."""
    return get_metrics()
