"""
Approval Policy Definitions

Per-project, per-document-kind ordered list of approval steps:
- Fixed approvers, project roles, department heads or coordinators
- "Any one" or "all must approve" steps
- Optional amount gate (above / below / between)

Policies are validated when saved; a malformed step never reaches the
approval state machine.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from budgetflow.services.errors import PolicyError

logger = logging.getLogger(__name__)


class DocumentKind(Enum):
    """Document kinds that carry their own approval policy."""
    PO = "po"
    INVOICE = "invoice"


class ApproverType(Enum):
    """How a step's approvers are found."""
    FIXED = "fixed"
    ROLE = "role"
    HOD = "hod"
    COORDINATOR = "coordinator"


class AmountCondition(Enum):
    """Amount gate comparison."""
    ABOVE = "above"
    BELOW = "below"
    BETWEEN = "between"


@dataclass
class AmountGate:
    """Restricts a step to documents whose amount falls in a range."""
    condition: AmountCondition
    threshold: float
    threshold_max: Optional[float] = None

    def is_active(self, amount: float) -> bool:
        if self.condition is AmountCondition.ABOVE:
            return amount > self.threshold
        if self.condition is AmountCondition.BELOW:
            return amount < self.threshold
        if self.condition is AmountCondition.BETWEEN:
            if self.threshold_max is None:
                return False
            return self.threshold <= amount <= self.threshold_max
        raise ValueError(f"Unknown amount condition: {self.condition}")

    def describe(self) -> str:
        if self.condition is AmountCondition.ABOVE:
            return f"> {self.threshold:,.2f}"
        if self.condition is AmountCondition.BELOW:
            return f"< {self.threshold:,.2f}"
        return f"{self.threshold:,.2f} - {(self.threshold_max or 0):,.2f}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "condition": self.condition.value,
            "threshold": self.threshold,
            "threshold_max": self.threshold_max,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AmountGate":
        return cls(
            condition=AmountCondition(data.get("condition") or "above"),
            threshold=float(data.get("threshold") or 0),
            threshold_max=float(data["threshold_max"]) if data.get("threshold_max") is not None else None,
        )


@dataclass
class ApprovalStepDefinition:
    """One configured step of an approval policy."""
    id: str
    order: int
    approver_type: ApproverType
    approvers: List[str] = field(default_factory=list)  # member IDs (fixed)
    roles: List[str] = field(default_factory=list)      # project roles (role)
    department: Optional[str] = None                    # hod / coordinator
    require_all: bool = False
    amount_gate: Optional[AmountGate] = None

    def validate(self) -> List[str]:
        """Return a list of problems; empty when the step is well formed."""
        errors = []
        label = f"step {self.id or self.order}"
        if not isinstance(self.order, int) or self.order < 1:
            errors.append(f"{label}: order must be a positive integer")
        if self.approver_type is ApproverType.ROLE and not self.roles:
            errors.append(f"{label}: role step needs at least one role")
        gate = self.amount_gate
        if gate is not None:
            if gate.threshold < 0:
                errors.append(f"{label}: threshold must be >= 0")
            if gate.condition is AmountCondition.BETWEEN:
                if gate.threshold_max is None:
                    errors.append(f"{label}: between gate requires threshold_max")
                elif gate.threshold_max < gate.threshold:
                    errors.append(f"{label}: threshold_max must be >= threshold")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "order": self.order,
            "approver_type": self.approver_type.value,
            "require_all": self.require_all,
        }
        # Only the fields relevant to the approver type are persisted
        if self.approver_type is ApproverType.FIXED:
            data["approvers"] = list(self.approvers)
        elif self.approver_type is ApproverType.ROLE:
            data["roles"] = list(self.roles)
        elif self.department:
            data["department"] = self.department
        if self.amount_gate is not None:
            data["amount_gate"] = self.amount_gate.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], position: int = 0) -> "ApprovalStepDefinition":
        try:
            approver_type = ApproverType(data.get("approver_type") or "fixed")
        except ValueError:
            raise PolicyError(f"Unknown approver type: {data.get('approver_type')!r}")

        gate = None
        if data.get("amount_gate"):
            try:
                gate = AmountGate.from_dict(data["amount_gate"])
            except (ValueError, TypeError) as exc:
                raise PolicyError(f"Invalid amount gate: {exc}")

        try:
            order = int(data.get("order", position + 1))
        except (TypeError, ValueError):
            raise PolicyError(f"Invalid step order: {data.get('order')!r}")
        return cls(
            id=str(data.get("id") or f"step-{position + 1}"),
            order=order,
            approver_type=approver_type,
            approvers=list(data.get("approvers") or []),
            roles=list(data.get("roles") or []),
            department=data.get("department") or None,
            require_all=bool(data.get("require_all", False)),
            amount_gate=gate,
        )


@dataclass
class ApprovalPolicy:
    """Ordered approval steps for one project and document kind."""
    project_id: str
    kind: DocumentKind
    steps: List[ApprovalStepDefinition] = field(default_factory=list)
    version: int = 0
    updated_by: Optional[str] = None

    def __post_init__(self):
        self.steps = sorted(self.steps, key=lambda s: s.order)

    def validate(self) -> List[str]:
        errors = []
        seen_orders = set()
        for step in self.steps:
            errors.extend(step.validate())
            if step.order in seen_orders:
                errors.append(f"step {step.id}: duplicate order {step.order}")
            seen_orders.add(step.order)
        return errors

    def ensure_valid(self) -> None:
        errors = self.validate()
        if errors:
            logger.info(
                "Rejected %s policy for project %s: %s",
                self.kind.value, self.project_id, "; ".join(errors),
            )
            raise PolicyError("; ".join(errors), errors=errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "kind": self.kind.value,
            "version": self.version,
            "updated_by": self.updated_by,
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_steps(
        cls,
        project_id: str,
        kind: DocumentKind,
        steps: List[Dict[str, Any]],
        version: int = 0,
        updated_by: Optional[str] = None,
    ) -> "ApprovalPolicy":
        return cls(
            project_id=project_id,
            kind=kind,
            steps=[ApprovalStepDefinition.from_dict(s, i) for i, s in enumerate(steps or [])],
            version=version,
            updated_by=updated_by,
        )
