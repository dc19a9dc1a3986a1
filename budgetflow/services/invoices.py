"""
Invoice Model

Invoices (and invoice-like documents) recorded against the budget:
- Optional link to a purchase order
- Approval chain, then "pending" payment once approved
- Posting to the budget ledger on approval, exact reversal on cancellation
- Proformas and quotes that must later be replaced by a final invoice
"""

import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from budgetflow.services.approval_policies import DocumentKind
from budgetflow.services.documents import ApprovalDocument


class InvoiceStatus(Enum):
    """Operational invoice status."""
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    PENDING = "pending"        # approved, awaiting payment
    APPROVED = "approved"
    PAID = "paid"
    OVERDUE = "overdue"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ApprovalStatus(Enum):
    """Approval outcome, orthogonal to the operational status."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DocumentType(Enum):
    """Invoice-like document types."""
    INVOICE = "invoice"
    PROFORMA = "proforma"
    BUDGET = "budget"          # supplier quote
    GUARANTEE = "guarantee"    # deposit

    @property
    def code(self) -> str:
        return DOCUMENT_TYPE_CODES[self]

    @property
    def requires_replacement(self) -> bool:
        return self in (DocumentType.PROFORMA, DocumentType.BUDGET)

    @property
    def posts_to_budget(self) -> bool:
        # Provisional documents are realized by the invoice that replaces them
        return not self.requires_replacement


DOCUMENT_TYPE_CODES = {
    DocumentType.INVOICE: "FAC",
    DocumentType.PROFORMA: "PRF",
    DocumentType.BUDGET: "PRS",
    DocumentType.GUARANTEE: "FNZ",
}

# Statuses whose base amount counts against the linked PO
INVOICED_STATUSES = {
    InvoiceStatus.PENDING,
    InvoiceStatus.PENDING_APPROVAL,
    InvoiceStatus.APPROVED,
    InvoiceStatus.PAID,
    InvoiceStatus.OVERDUE,
}

# Statuses in which the invoice's posting is live in the ledger
AWAITING_PAYMENT_STATUSES = {InvoiceStatus.PENDING, InvoiceStatus.APPROVED, InvoiceStatus.OVERDUE}


@dataclass
class Invoice(ApprovalDocument):
    """Invoice."""
    kind: ClassVar[DocumentKind] = DocumentKind.INVOICE

    document_id: str = field(default_factory=lambda: f"INV-{uuid.uuid4().hex[:8].upper()}")
    document_type: DocumentType = DocumentType.INVOICE
    status: InvoiceStatus = InvoiceStatus.DRAFT
    approval_status: ApprovalStatus = ApprovalStatus.PENDING

    po_id: Optional[str] = None
    po_number: Optional[str] = None
    due_date: Optional[str] = None  # ISO date

    # Set when the ledger has been charged; cleared by cancellation
    posted: bool = False
    posted_at: Optional[str] = None

    paid_at: Optional[str] = None

    replaces_document_id: Optional[str] = None
    replaced_by_document_id: Optional[str] = None

    @property
    def display_number(self) -> str:
        return f"{self.document_type.code}-{self.number}" if self.number else ""

    @property
    def is_pending_approval(self) -> bool:
        return self.status is InvoiceStatus.PENDING_APPROVAL

    @property
    def is_rejected(self) -> bool:
        return self.status is InvoiceStatus.REJECTED

    @property
    def is_approved(self) -> bool:
        return self.approval_status is ApprovalStatus.APPROVED

    def mark_pending_approval(self) -> None:
        self.status = InvoiceStatus.PENDING_APPROVAL
        self.approval_status = ApprovalStatus.PENDING

    def mark_approved(self) -> None:
        # Approved invoices wait for payment
        self.status = InvoiceStatus.PENDING
        self.approval_status = ApprovalStatus.APPROVED

    def mark_rejected(self) -> None:
        self.status = InvoiceStatus.REJECTED
        self.approval_status = ApprovalStatus.REJECTED

    @property
    def is_po_linked(self) -> bool:
        return bool(self.po_id)

    @property
    def counts_against_po(self) -> bool:
        return self.is_po_linked and self.status in INVOICED_STATUSES

    def is_overdue(self, today: Optional[date] = None) -> bool:
        if self.status not in (InvoiceStatus.PENDING, InvoiceStatus.APPROVED) or not self.due_date:
            return False
        today = today or date.today()
        return date.fromisoformat(self.due_date[:10]) < today

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data.update({
            "document_type": self.document_type.value,
            "display_number": self.display_number,
            "requires_replacement": self.document_type.requires_replacement,
            "status": self.status.value,
            "approval_status": self.approval_status.value,
            "po_id": self.po_id,
            "po_number": self.po_number,
            "due_date": self.due_date,
            "posted": self.posted,
            "posted_at": self.posted_at,
            "paid_at": self.paid_at,
            "replaces_document_id": self.replaces_document_id,
            "replaced_by_document_id": self.replaced_by_document_id,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_vat_rate: float = 21.0) -> "Invoice":
        kwargs = cls._base_kwargs(data, default_vat_rate)
        if not kwargs["document_id"]:
            kwargs.pop("document_id")
        return cls(
            document_type=DocumentType(data.get("document_type") or "invoice"),
            status=InvoiceStatus(data.get("status") or "draft"),
            approval_status=ApprovalStatus(data.get("approval_status") or "pending"),
            po_id=data.get("po_id") or None,
            po_number=data.get("po_number") or None,
            due_date=data.get("due_date") or None,
            posted=bool(data.get("posted", False)),
            posted_at=data.get("posted_at"),
            paid_at=data.get("paid_at"),
            replaces_document_id=data.get("replaces_document_id") or None,
            replaced_by_document_id=data.get("replaced_by_document_id") or None,
            **kwargs,
        )
