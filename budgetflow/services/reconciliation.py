"""
PO-Invoice Reconciliation

Tracks how much of a purchase order has been invoiced:
- Aggregate invoiced and remaining amounts (base, before taxes)
- Per PO line figures, keyed by PO line id or index
- Over-invoicing surfaced as a flag, never blocked
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from budgetflow.services.documents import money
from budgetflow.services.invoices import Invoice
from budgetflow.services.purchase_orders import PurchaseOrder

logger = logging.getLogger(__name__)


def _percentage(part: float, whole: float) -> float:
    return round(part / whole * 100, 2) if whole > 0 else 0.0


@dataclass
class LineReconciliation:
    """Invoiced figures for one PO line."""
    key: str
    description: str
    sub_account_id: str
    po_amount: float
    invoiced_amount: float = 0.0

    @property
    def remaining_amount(self) -> float:
        return money(self.po_amount - self.invoiced_amount)

    @property
    def percentage_used(self) -> float:
        return _percentage(self.invoiced_amount, self.po_amount)

    @property
    def over_invoiced(self) -> bool:
        return self.invoiced_amount > self.po_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "description": self.description,
            "sub_account_id": self.sub_account_id,
            "po_amount": self.po_amount,
            "invoiced_amount": self.invoiced_amount,
            "remaining_amount": self.remaining_amount,
            "percentage_used": self.percentage_used,
            "over_invoiced": self.over_invoiced,
        }


@dataclass
class POReconciliation:
    """Invoiced figures for a whole PO."""
    po_id: str
    po_number: str
    po_amount: float
    invoiced_amount: float = 0.0
    invoice_ids: List[str] = field(default_factory=list)
    lines: List[LineReconciliation] = field(default_factory=list)
    # Invoice lines not drawn from any PO line
    unmatched_amount: float = 0.0

    @property
    def remaining_amount(self) -> float:
        return money(self.po_amount - self.invoiced_amount)

    @property
    def percentage_used(self) -> float:
        return _percentage(self.invoiced_amount, self.po_amount)

    @property
    def over_invoiced(self) -> bool:
        return self.invoiced_amount > self.po_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "po_id": self.po_id,
            "po_number": self.po_number,
            "po_amount": self.po_amount,
            "invoiced_amount": self.invoiced_amount,
            "remaining_amount": self.remaining_amount,
            "percentage_used": self.percentage_used,
            "over_invoiced": self.over_invoiced,
            "unmatched_amount": self.unmatched_amount,
            "invoice_ids": list(self.invoice_ids),
            "lines": [line.to_dict() for line in self.lines],
        }


def po_line_keys(po: PurchaseOrder) -> List[str]:
    """Key for each PO line: its id, or its position when it has none."""
    return [item.line_id or f"index-{index}" for index, item in enumerate(po.line_items)]


def _line_key_for(item, keys: List[str]) -> Optional[str]:
    if item.po_item_id:
        return item.po_item_id
    if item.po_item_index is not None and 0 <= item.po_item_index < len(keys):
        return keys[item.po_item_index]
    return None


def reconcile_po(po: PurchaseOrder, invoices: Iterable[Invoice]) -> POReconciliation:
    """Recompute a PO's invoiced figures from its linked invoices."""
    keys = po_line_keys(po)
    lines = {
        key: LineReconciliation(
            key=key,
            description=item.description,
            sub_account_id=item.sub_account_id,
            po_amount=item.base_amount,
        )
        for key, item in zip(keys, po.line_items)
    }
    result = POReconciliation(
        po_id=po.document_id,
        po_number=po.number,
        po_amount=po.base_amount,
        lines=list(lines.values()),
    )

    for invoice in invoices:
        if invoice.po_id != po.document_id or not invoice.counts_against_po:
            continue
        result.invoice_ids.append(invoice.document_id)
        result.invoiced_amount = money(result.invoiced_amount + invoice.base_amount)
        for item in invoice.line_items:
            key = _line_key_for(item, keys)
            if key in lines and not item.is_new_item:
                line = lines[key]
                line.invoiced_amount = money(line.invoiced_amount + item.base_amount)
            else:
                result.unmatched_amount = money(result.unmatched_amount + item.base_amount)

    if result.over_invoiced:
        logger.warning(
            "PO %s over-invoiced: %.2f invoiced against %.2f",
            po.document_id, result.invoiced_amount, result.po_amount,
        )
    return result
