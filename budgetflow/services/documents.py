"""
Shared document model for purchase orders and invoices.

Both document kinds carry line items charged to budget sub-accounts and an
embedded approval chain.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Optional

from budgetflow.services.approval_policies import DocumentKind
from budgetflow.services.approval_steps import ApprovalStepStatus


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def money(value: float) -> float:
    return round(float(value or 0), 2)


@dataclass
class LineItem:
    """A document line charged to one sub-account."""
    line_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    description: str = ""
    sub_account_id: str = ""
    quantity: float = 0.0
    unit_price: float = 0.0
    base_amount: float = 0.0
    vat_rate: float = 0.0
    vat_amount: float = 0.0
    irpf_rate: float = 0.0
    irpf_amount: float = 0.0
    total_amount: float = 0.0

    # Provenance: set when an invoice line draws from a PO line
    po_item_id: Optional[str] = None
    po_item_index: Optional[int] = None
    is_new_item: bool = False

    def calculate(self) -> "LineItem":
        """Recompute base, taxes and total from quantity and unit price."""
        self.base_amount = money(self.quantity * self.unit_price)
        self.vat_amount = money(self.base_amount * self.vat_rate / 100)
        self.irpf_amount = money(self.base_amount * self.irpf_rate / 100)
        self.total_amount = money(self.base_amount + self.vat_amount - self.irpf_amount)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_id": self.line_id,
            "description": self.description,
            "sub_account_id": self.sub_account_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "base_amount": self.base_amount,
            "vat_rate": self.vat_rate,
            "vat_amount": self.vat_amount,
            "irpf_rate": self.irpf_rate,
            "irpf_amount": self.irpf_amount,
            "total_amount": self.total_amount,
            "po_item_id": self.po_item_id,
            "po_item_index": self.po_item_index,
            "is_new_item": self.is_new_item,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_vat_rate: float = 21.0) -> "LineItem":
        """
        Build a line from stored or submitted data.

        Lines with quantity and unit price are recalculated. Legacy lines that
        only carry a total are converted back to a base amount with the
        default VAT rate.
        """
        item = cls(
            line_id=data.get("line_id") or uuid.uuid4().hex[:8],
            description=(data.get("description") or "").strip(),
            sub_account_id=data.get("sub_account_id") or "",
            quantity=float(data.get("quantity") or 0),
            unit_price=float(data.get("unit_price") or 0),
            base_amount=float(data.get("base_amount") or 0),
            vat_rate=float(data.get("vat_rate") or 0),
            irpf_rate=float(data.get("irpf_rate") or 0),
            total_amount=float(data.get("total_amount") or 0),
            po_item_id=data.get("po_item_id") or None,
            po_item_index=data.get("po_item_index"),
            is_new_item=bool(data.get("is_new_item", False)),
        )
        if item.quantity and item.unit_price:
            return item.calculate()
        if not item.base_amount and item.total_amount:
            item.base_amount = money(item.total_amount / (1 + default_vat_rate / 100))
        item.vat_amount = money(data.get("vat_amount") or item.base_amount * item.vat_rate / 100)
        item.irpf_amount = money(data.get("irpf_amount") or item.base_amount * item.irpf_rate / 100)
        if not item.total_amount:
            item.total_amount = money(item.base_amount + item.vat_amount - item.irpf_amount)
        return item


@dataclass
class ApprovalDocument:
    """Fields shared by every document that runs an approval chain."""
    kind: ClassVar[DocumentKind]

    document_id: str = ""
    project_id: str = ""
    number: str = ""
    supplier: str = ""
    supplier_id: str = ""
    department: Optional[str] = None
    description: str = ""
    currency: str = "EUR"
    line_items: List[LineItem] = field(default_factory=list)

    approval_steps: List[ApprovalStepStatus] = field(default_factory=list)
    current_approval_step: int = 0
    # Bumped on every submission; scopes approval audit keys to one round
    approval_round: int = 0
    auto_approved: bool = False

    created_by: str = ""
    created_by_name: str = ""
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    approved_at: Optional[str] = None
    approved_by: Optional[str] = None
    approved_by_name: Optional[str] = None
    rejected_at: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_by_name: Optional[str] = None
    rejection_reason: Optional[str] = None

    cancelled_at: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None

    # Optimistic concurrency token, owned by the store
    version: int = 0

    @property
    def base_amount(self) -> float:
        return money(sum(item.base_amount for item in self.line_items))

    @property
    def vat_amount(self) -> float:
        return money(sum(item.vat_amount for item in self.line_items))

    @property
    def irpf_amount(self) -> float:
        return money(sum(item.irpf_amount for item in self.line_items))

    @property
    def total_amount(self) -> float:
        return money(sum(item.total_amount for item in self.line_items))

    @property
    def amount(self) -> float:
        """Amount used by approval amount gates."""
        return self.total_amount

    @property
    def is_pending_approval(self) -> bool:
        raise NotImplementedError

    @property
    def is_rejected(self) -> bool:
        raise NotImplementedError

    def mark_pending_approval(self) -> None:
        raise NotImplementedError

    def mark_approved(self) -> None:
        raise NotImplementedError

    def mark_rejected(self) -> None:
        raise NotImplementedError

    def _base_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "kind": self.kind.value,
            "project_id": self.project_id,
            "number": self.number,
            "supplier": self.supplier,
            "supplier_id": self.supplier_id,
            "department": self.department,
            "description": self.description,
            "currency": self.currency,
            "line_items": [item.to_dict() for item in self.line_items],
            "base_amount": self.base_amount,
            "vat_amount": self.vat_amount,
            "irpf_amount": self.irpf_amount,
            "total_amount": self.total_amount,
            "approval_steps": [s.to_dict() for s in self.approval_steps],
            "current_approval_step": self.current_approval_step,
            "approval_round": self.approval_round,
            "auto_approved": self.auto_approved,
            "created_by": self.created_by,
            "created_by_name": self.created_by_name,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "approved_at": self.approved_at,
            "approved_by": self.approved_by,
            "approved_by_name": self.approved_by_name,
            "rejected_at": self.rejected_at,
            "rejected_by": self.rejected_by,
            "rejected_by_name": self.rejected_by_name,
            "rejection_reason": self.rejection_reason,
            "cancelled_at": self.cancelled_at,
            "cancelled_by": self.cancelled_by,
            "cancellation_reason": self.cancellation_reason,
            "version": self.version,
        }

    @staticmethod
    def _base_kwargs(data: Dict[str, Any], default_vat_rate: float = 21.0) -> Dict[str, Any]:
        return {
            "document_id": data.get("document_id") or "",
            "project_id": data.get("project_id") or "",
            "number": data.get("number") or "",
            "supplier": data.get("supplier") or "",
            "supplier_id": data.get("supplier_id") or "",
            "department": data.get("department") or None,
            "description": data.get("description") or "",
            "currency": data.get("currency") or "EUR",
            "line_items": [
                LineItem.from_dict(i, default_vat_rate) for i in data.get("line_items") or []
            ],
            "approval_steps": [
                ApprovalStepStatus.from_dict(s) for s in data.get("approval_steps") or []
            ],
            "current_approval_step": int(data.get("current_approval_step") or 0),
            "approval_round": int(data.get("approval_round") or 0),
            "auto_approved": bool(data.get("auto_approved", False)),
            "created_by": data.get("created_by") or "",
            "created_by_name": data.get("created_by_name") or "",
            "created_at": data.get("created_at") or utc_now(),
            "updated_at": data.get("updated_at") or utc_now(),
            "approved_at": data.get("approved_at"),
            "approved_by": data.get("approved_by"),
            "approved_by_name": data.get("approved_by_name"),
            "rejected_at": data.get("rejected_at"),
            "rejected_by": data.get("rejected_by"),
            "rejected_by_name": data.get("rejected_by_name"),
            "rejection_reason": data.get("rejection_reason"),
            "cancelled_at": data.get("cancelled_at"),
            "cancelled_by": data.get("cancelled_by"),
            "cancellation_reason": data.get("cancellation_reason"),
            "version": int(data.get("version") or 0),
        }
