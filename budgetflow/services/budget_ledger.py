"""
Budget Ledger

Per sub-account budget figures:
- budgeted: fixed baseline
- committed: reserved by approved POs
- actual: realized by posted invoices
- available = budgeted - committed - actual (derived, may go negative)

Documents produce LedgerDelta lists; applying a delta clamps committed and
actual at zero and reports overspend as a warning, never as an error.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from budgetflow.services.documents import LineItem, money

logger = logging.getLogger(__name__)


class LedgerReason(Enum):
    """Why a sub-account moved."""
    PO_APPROVED = "po_approved"
    PO_CANCELLED = "po_cancelled"
    PO_MODIFIED = "po_modified"
    INVOICE_POSTED = "invoice_posted"
    INVOICE_CANCELLED = "invoice_cancelled"


class BudgetStatus(Enum):
    """Budget status bands, by share of budget still available."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    OVERSPENT = "overspent"


@dataclass
class SubAccount:
    """Leaf budget line."""
    sub_account_id: str
    account_id: str
    code: str = ""
    description: str = ""
    budgeted: float = 0.0
    committed: float = 0.0
    actual: float = 0.0
    project_id: str = ""
    version: int = 0

    @property
    def available(self) -> float:
        return money(self.budgeted - self.committed - self.actual)

    @property
    def executed(self) -> float:
        return money(self.committed + self.actual)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub_account_id": self.sub_account_id,
            "account_id": self.account_id,
            "project_id": self.project_id,
            "code": self.code,
            "description": self.description,
            "budgeted": self.budgeted,
            "committed": self.committed,
            "actual": self.actual,
            "available": self.available,
            "version": self.version,
        }


@dataclass
class Account:
    """Chart-of-accounts parent of sub-accounts."""
    account_id: str
    code: str = ""
    description: str = ""
    project_id: str = ""
    sub_accounts: List[SubAccount] = field(default_factory=list)

    @property
    def budgeted(self) -> float:
        return money(sum(s.budgeted for s in self.sub_accounts))

    @property
    def committed(self) -> float:
        return money(sum(s.committed for s in self.sub_accounts))

    @property
    def actual(self) -> float:
        return money(sum(s.actual for s in self.sub_accounts))

    @property
    def available(self) -> float:
        return money(self.budgeted - self.committed - self.actual)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "project_id": self.project_id,
            "code": self.code,
            "description": self.description,
            "budgeted": self.budgeted,
            "committed": self.committed,
            "actual": self.actual,
            "available": self.available,
            "sub_accounts": [s.to_dict() for s in self.sub_accounts],
        }


@dataclass
class LedgerDelta:
    """A requested change to one sub-account."""
    sub_account_id: str
    reason: LedgerReason
    committed_delta: float = 0.0
    actual_delta: float = 0.0
    document_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub_account_id": self.sub_account_id,
            "reason": self.reason.value,
            "committed_delta": self.committed_delta,
            "actual_delta": self.actual_delta,
            "document_id": self.document_id,
        }


@dataclass
class AppliedDelta:
    """Outcome of applying a delta to a sub-account."""
    delta: LedgerDelta
    committed_before: float
    committed_after: float
    actual_before: float
    actual_after: float
    # Portion of a decrement that was dropped by the zero floor
    committed_clamped: float = 0.0
    actual_clamped: float = 0.0
    available_after: float = 0.0

    @property
    def underflow(self) -> bool:
        return bool(self.committed_clamped or self.actual_clamped)

    @property
    def overspent(self) -> bool:
        return self.available_after < 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.delta.to_dict(),
            "committed_before": self.committed_before,
            "committed_after": self.committed_after,
            "actual_before": self.actual_before,
            "actual_after": self.actual_after,
            "committed_clamped": self.committed_clamped,
            "actual_clamped": self.actual_clamped,
            "available_after": self.available_after,
        }


def aggregate_by_sub_account(line_items: Iterable[LineItem]) -> "OrderedDict[str, float]":
    """Sum line base amounts per sub-account, ignoring unassigned or empty lines."""
    totals: "OrderedDict[str, float]" = OrderedDict()
    for item in line_items:
        if item.sub_account_id and item.base_amount > 0:
            totals[item.sub_account_id] = money(totals.get(item.sub_account_id, 0) + item.base_amount)
    return totals


def approve_po(po) -> List[LedgerDelta]:
    """PO fully approved: reserve each line's base amount."""
    return [
        LedgerDelta(sub_id, LedgerReason.PO_APPROVED, committed_delta=amount, document_id=po.document_id)
        for sub_id, amount in aggregate_by_sub_account(po.line_items).items()
    ]


def cancel_po(po, reason: LedgerReason = LedgerReason.PO_CANCELLED) -> List[LedgerDelta]:
    """PO cancelled after approval: release the reservation."""
    return [
        LedgerDelta(sub_id, reason, committed_delta=-amount, document_id=po.document_id)
        for sub_id, amount in aggregate_by_sub_account(po.line_items).items()
    ]


def post_invoice(invoice, po_link: Optional[str] = None) -> List[LedgerDelta]:
    """
    Invoice posted: realize spend.

    A PO-linked invoice converts the PO's reservation into actual spend.
    """
    linked = bool(po_link if po_link is not None else getattr(invoice, "po_id", None))
    return [
        LedgerDelta(
            sub_id,
            LedgerReason.INVOICE_POSTED,
            committed_delta=-amount if linked else 0.0,
            actual_delta=amount,
            document_id=invoice.document_id,
        )
        for sub_id, amount in aggregate_by_sub_account(invoice.line_items).items()
    ]


def cancel_invoice(invoice) -> List[LedgerDelta]:
    """Invoice cancelled: exact inverse of its posting."""
    linked = bool(getattr(invoice, "po_id", None))
    return [
        LedgerDelta(
            sub_id,
            LedgerReason.INVOICE_CANCELLED,
            committed_delta=amount if linked else 0.0,
            actual_delta=-amount,
            document_id=invoice.document_id,
        )
        for sub_id, amount in aggregate_by_sub_account(invoice.line_items).items()
    ]


def apply_delta(sub_account: SubAccount, delta: LedgerDelta) -> AppliedDelta:
    """Mutate sub_account in place, flooring committed and actual at zero."""
    committed_before = sub_account.committed
    actual_before = sub_account.actual

    committed_raw = money(committed_before + delta.committed_delta)
    actual_raw = money(actual_before + delta.actual_delta)

    sub_account.committed = max(0.0, committed_raw)
    sub_account.actual = max(0.0, actual_raw)

    applied = AppliedDelta(
        delta=delta,
        committed_before=committed_before,
        committed_after=sub_account.committed,
        actual_before=actual_before,
        actual_after=sub_account.actual,
        committed_clamped=money(-committed_raw) if committed_raw < 0 else 0.0,
        actual_clamped=money(-actual_raw) if actual_raw < 0 else 0.0,
        available_after=sub_account.available,
    )

    if applied.underflow:
        # Clamping hides the excess; a non-zero clamp means figures drifted
        logger.warning(
            "Ledger underflow on %s (%s, document %s): committed clamped %.2f, actual clamped %.2f",
            sub_account.sub_account_id,
            delta.reason.value,
            delta.document_id,
            applied.committed_clamped,
            applied.actual_clamped,
        )
    if applied.overspent:
        logger.warning(
            "Sub-account %s overspent: available %.2f",
            sub_account.sub_account_id,
            applied.available_after,
        )
    return applied


def budget_status(
    available: float,
    budgeted: float,
    warning_percent: float = 25.0,
    critical_percent: float = 10.0,
) -> BudgetStatus:
    if available < 0:
        return BudgetStatus.OVERSPENT
    if budgeted <= 0:
        return BudgetStatus.HEALTHY
    percent = available / budgeted * 100
    if percent < critical_percent:
        return BudgetStatus.CRITICAL
    if percent < warning_percent:
        return BudgetStatus.WARNING
    return BudgetStatus.HEALTHY


def execution_percent(executed: float, budgeted: float) -> float:
    return round(executed / budgeted * 100, 2) if budgeted > 0 else 0.0


def preview_budget_impact(
    sub_accounts: Dict[str, SubAccount],
    line_items: Iterable[LineItem],
    warning_percent: float = 25.0,
    critical_percent: float = 10.0,
) -> List[Dict[str, Any]]:
    """What approving these lines would do to each sub-account's availability."""
    impact = []
    for sub_id, amount in aggregate_by_sub_account(line_items).items():
        sub = sub_accounts.get(sub_id)
        if sub is None:
            impact.append({"sub_account_id": sub_id, "amount": amount, "missing": True})
            continue
        after = money(sub.available - amount)
        status = budget_status(after, sub.budgeted, warning_percent, critical_percent)
        entry = {
            "sub_account_id": sub_id,
            "code": sub.code,
            "amount": amount,
            "available_before": sub.available,
            "available_after": after,
            "status_after": status.value,
            "missing": False,
        }
        if status is BudgetStatus.OVERSPENT:
            entry["warning_message"] = (
                f"Sub-account {sub.code or sub_id} would be overspent by {abs(after):,.2f}"
            )
        impact.append(entry)
    return impact
