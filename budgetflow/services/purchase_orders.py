"""
Purchase Order Model

PO lifecycle:
- Draft, submitted for approval, approved (budget committed)
- Closed / reopened once approved
- Cancelled (commitment released) or modified back to draft
- Invoiced against, tracked by reconciliation
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from budgetflow.services.approval_policies import DocumentKind
from budgetflow.services.documents import ApprovalDocument, money


class POStatus(Enum):
    """Purchase Order status."""
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    CLOSED = "closed"
    CANCELLED = "cancelled"


@dataclass
class ModificationRecord:
    """An approved PO sent back to draft for changes."""
    date: str
    member_id: str
    member_name: str
    reason: str
    previous_version: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "member_id": self.member_id,
            "member_name": self.member_name,
            "reason": self.reason,
            "previous_version": self.previous_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModificationRecord":
        return cls(
            date=data.get("date") or "",
            member_id=data.get("member_id") or "",
            member_name=data.get("member_name") or "",
            reason=data.get("reason") or "",
            previous_version=int(data.get("previous_version") or 1),
        )


@dataclass
class PurchaseOrder(ApprovalDocument):
    """Purchase Order."""
    kind: ClassVar[DocumentKind] = DocumentKind.PO

    document_id: str = field(default_factory=lambda: f"PO-{uuid.uuid4().hex[:8].upper()}")
    status: POStatus = POStatus.DRAFT
    po_type: str = ""

    # Budget figures for display; the ledger rows hold the truth
    committed_amount: float = 0.0
    invoiced_amount: float = 0.0

    po_version: int = 1
    modification_history: List[ModificationRecord] = field(default_factory=list)

    closed_at: Optional[str] = None
    closed_by: Optional[str] = None

    @property
    def remaining_amount(self) -> float:
        """Unclamped: negative means the PO is over-invoiced."""
        return money(self.base_amount - self.invoiced_amount)

    @property
    def is_pending_approval(self) -> bool:
        return self.status is POStatus.PENDING_APPROVAL

    @property
    def is_rejected(self) -> bool:
        return self.status is POStatus.REJECTED

    @property
    def is_approved(self) -> bool:
        return self.status is POStatus.APPROVED

    def mark_pending_approval(self) -> None:
        self.status = POStatus.PENDING_APPROVAL

    def mark_approved(self) -> None:
        self.status = POStatus.APPROVED
        self.committed_amount = self.base_amount

    def mark_rejected(self) -> None:
        self.status = POStatus.REJECTED

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data.update({
            "status": self.status.value,
            "po_type": self.po_type,
            "committed_amount": self.committed_amount,
            "invoiced_amount": self.invoiced_amount,
            "remaining_amount": self.remaining_amount,
            "po_version": self.po_version,
            "modification_history": [m.to_dict() for m in self.modification_history],
            "closed_at": self.closed_at,
            "closed_by": self.closed_by,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_vat_rate: float = 21.0) -> "PurchaseOrder":
        kwargs = cls._base_kwargs(data, default_vat_rate)
        if not kwargs["document_id"]:
            kwargs.pop("document_id")
        return cls(
            status=POStatus(data.get("status") or "draft"),
            po_type=data.get("po_type") or "",
            committed_amount=float(data.get("committed_amount") or 0),
            invoiced_amount=float(data.get("invoiced_amount") or 0),
            po_version=int(data.get("po_version") or 1),
            modification_history=[
                ModificationRecord.from_dict(m) for m in data.get("modification_history") or []
            ],
            closed_at=data.get("closed_at"),
            closed_by=data.get("closed_by"),
            **kwargs,
        )
