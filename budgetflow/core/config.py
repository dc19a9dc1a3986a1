"""
Runtime configuration

Settings are read from the environment once and cached:
- Database location and transaction retry budget
- Tax and currency defaults for line amounts
- Budget status bands
- Default approval policies for projects without a saved policy
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


DEFAULT_PO_POLICY: List[Dict[str, Any]] = [
    {"id": "default-po-1", "order": 1, "approver_type": "role", "roles": ["PM", "EP"], "require_all": False},
]

DEFAULT_INVOICE_POLICY: List[Dict[str, Any]] = [
    {"id": "default-inv-1", "order": 1, "approver_type": "role", "roles": ["Controller", "PM", "EP"], "require_all": False},
]


@dataclass
class Settings:
    """Process-wide settings."""
    db_path: str = "budgetflow.db"
    transaction_retries: int = 3
    default_vat_rate: float = 21.0
    currency: str = "EUR"

    # Available budget below these percentages of budgeted changes status
    budget_warning_percent: float = 25.0
    budget_critical_percent: float = 10.0

    # None = development mode, the reauthentication gate passes
    reauth_secret: Optional[str] = None
    api_key: Optional[str] = None

    default_policies: Dict[str, List[Dict[str, Any]]] = field(default_factory=lambda: {
        "po": DEFAULT_PO_POLICY,
        "invoice": DEFAULT_INVOICE_POLICY,
    })

    def __post_init__(self):
        if self.transaction_retries < 1:
            raise ValueError("transaction_retries must be >= 1")
        if not (0 <= self.budget_critical_percent <= self.budget_warning_percent):
            raise ValueError("Budget bands must be: 0 <= critical <= warning")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("BUDGETFLOW_DB_PATH", "budgetflow.db"),
            transaction_retries=_env_int("BUDGETFLOW_TX_RETRIES", 3),
            default_vat_rate=_env_float("BUDGETFLOW_DEFAULT_VAT_RATE", 21.0),
            currency=os.getenv("BUDGETFLOW_CURRENCY", "EUR"),
            budget_warning_percent=_env_float("BUDGETFLOW_BUDGET_WARNING_PERCENT", 25.0),
            budget_critical_percent=_env_float("BUDGETFLOW_BUDGET_CRITICAL_PERCENT", 10.0),
            reauth_secret=os.getenv("BUDGETFLOW_REAUTH_SECRET") or None,
            api_key=os.getenv("API_KEY") or None,
        )


_SETTINGS: Optional[Settings] = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _SETTINGS
    _SETTINGS = None
