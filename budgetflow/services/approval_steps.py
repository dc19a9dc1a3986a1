"""Runtime approval step status embedded in POs and invoices."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from budgetflow.services.approval_policies import AmountGate, ApproverType


class StepStatus(Enum):
    """Status of one generated approval step."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"  # non-blocking step the chain advanced past


TERMINAL_STEP_STATUSES = {StepStatus.APPROVED, StepStatus.REJECTED, StepStatus.SKIPPED}


@dataclass
class ApprovalStepStatus:
    """A policy step resolved to concrete approvers for one document."""
    id: str
    order: int
    approver_type: ApproverType
    resolved_approver_ids: List[str] = field(default_factory=list)
    resolved_names: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    department: Optional[str] = None
    department_deferred: bool = False
    approved_by: List[str] = field(default_factory=list)
    rejected_by: List[str] = field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    require_all: bool = False
    amount_gate: Optional[AmountGate] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    def has_acted(self, member_id: str) -> bool:
        return member_id in self.approved_by or member_id in self.rejected_by

    def gate_active(self, amount: float) -> bool:
        return self.amount_gate is None or self.amount_gate.is_active(amount)

    def is_blocking(self, amount: float) -> bool:
        """True when the step needs a human decision for this amount."""
        return bool(self.resolved_approver_ids) and self.gate_active(amount)

    def is_satisfied(self) -> bool:
        if not self.approved_by:
            return False
        if not self.require_all:
            return True
        return len(self.approved_by) >= len(self.resolved_approver_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order": self.order,
            "approver_type": self.approver_type.value,
            "resolved_approver_ids": list(self.resolved_approver_ids),
            "resolved_names": list(self.resolved_names),
            "roles": list(self.roles),
            "department": self.department,
            "department_deferred": self.department_deferred,
            "approved_by": list(self.approved_by),
            "rejected_by": list(self.rejected_by),
            "status": self.status.value,
            "require_all": self.require_all,
            "amount_gate": self.amount_gate.to_dict() if self.amount_gate else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalStepStatus":
        return cls(
            id=data["id"],
            order=int(data.get("order") or 0),
            approver_type=ApproverType(data.get("approver_type") or "fixed"),
            resolved_approver_ids=list(data.get("resolved_approver_ids") or []),
            resolved_names=list(data.get("resolved_names") or []),
            roles=list(data.get("roles") or []),
            department=data.get("department"),
            department_deferred=bool(data.get("department_deferred", False)),
            approved_by=list(data.get("approved_by") or []),
            rejected_by=list(data.get("rejected_by") or []),
            status=StepStatus(data.get("status") or "pending"),
            require_all=bool(data.get("require_all", False)),
            amount_gate=AmountGate.from_dict(data["amount_gate"]) if data.get("amount_gate") else None,
        )
