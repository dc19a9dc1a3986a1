from __future__ import annotations

from pathlib import Path

import pytest

from budgetflow.core import config as config_module
from budgetflow.core import database as db_module
from budgetflow.core.config import Settings
from budgetflow.core.database import BudgetflowDB
from budgetflow.services.accounting_workflow import AccountingWorkflowService
from budgetflow.services.metrics import reset_metrics


@pytest.fixture(autouse=True)
def _isolated_environment(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("BUDGETFLOW_DB_PATH", str(tmp_path / "budgetflow-env.db"))
    monkeypatch.delenv("API_KEY", raising=False)
    monkeypatch.delenv("BUDGETFLOW_REAUTH_SECRET", raising=False)
    db_module._DB_INSTANCE = None
    config_module.reset_settings()
    reset_metrics()
    yield
    db_module._DB_INSTANCE = None
    config_module.reset_settings()


@pytest.fixture
def db(tmp_path: Path) -> BudgetflowDB:
    database = BudgetflowDB(str(tmp_path / "budgetflow-test.db"))
    database.initialize()
    return database


@pytest.fixture
def service(db: BudgetflowDB) -> AccountingWorkflowService:
    return AccountingWorkflowService(db=db, settings=Settings(default_vat_rate=0.0))
