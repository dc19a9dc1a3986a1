"""
Approver Resolution

Turns an abstract approval step (fixed users, project role, department head,
department coordinator) into concrete member IDs from a snapshot of the
project's membership directory.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from budgetflow.services.approval_policies import (
    ApprovalPolicy,
    ApprovalStepDefinition,
    ApproverType,
)
from budgetflow.services.approval_steps import ApprovalStepStatus

logger = logging.getLogger(__name__)

HOD_POSITION = "HOD"
COORDINATOR_POSITION = "Coordinator"


@dataclass
class Member:
    """A project member as seen by the membership directory."""
    member_id: str
    name: str = ""
    email: str = ""
    role: Optional[str] = None
    department: Optional[str] = None
    position: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.member_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "member_id": self.member_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "department": self.department,
            "position": self.position,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Member":
        return cls(
            member_id=data["member_id"],
            name=data.get("name") or "",
            email=data.get("email") or "",
            role=data.get("role") or None,
            department=data.get("department") or None,
            position=data.get("position") or None,
        )


def _dedupe(ids: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for member_id in ids:
        if member_id and member_id not in seen:
            seen.add(member_id)
            result.append(member_id)
    return result


def _members_in_position(
    membership: List[Member],
    position: str,
    department: Optional[str],
) -> List[str]:
    if not department:
        return []
    return [
        m.member_id for m in membership
        if m.position == position and m.department == department
    ]


def resolve_approvers(
    definition: ApprovalStepDefinition,
    membership: List[Member],
    requester_department: Optional[str] = None,
) -> Tuple[List[str], List[str]]:
    """
    Resolve one step definition to (member_ids, display_names).

    HOD and coordinator steps without a configured department fall back to
    the requester's department.
    """
    approver_type = definition.approver_type
    if approver_type is ApproverType.FIXED:
        ids = list(definition.approvers)
    elif approver_type is ApproverType.ROLE:
        roles = set(definition.roles)
        ids = [m.member_id for m in membership if m.role and m.role in roles]
    elif approver_type is ApproverType.HOD:
        ids = _members_in_position(
            membership, HOD_POSITION, definition.department or requester_department
        )
    elif approver_type is ApproverType.COORDINATOR:
        ids = _members_in_position(
            membership, COORDINATOR_POSITION, definition.department or requester_department
        )
    else:
        raise ValueError(f"Unhandled approver type: {approver_type}")

    ids = _dedupe(ids)
    by_id = {m.member_id: m for m in membership}
    names = [by_id[i].display_name if i in by_id else i for i in ids]
    return ids, names


def resolve_step(
    definition: ApprovalStepDefinition,
    membership: List[Member],
    requester_department: Optional[str] = None,
) -> ApprovalStepStatus:
    ids, names = resolve_approvers(definition, membership, requester_department)
    deferred = (
        definition.approver_type in (ApproverType.HOD, ApproverType.COORDINATOR)
        and not definition.department
    )
    return ApprovalStepStatus(
        id=definition.id,
        order=definition.order,
        approver_type=definition.approver_type,
        resolved_approver_ids=ids,
        resolved_names=names,
        roles=list(definition.roles),
        department=definition.department,
        department_deferred=deferred,
        require_all=definition.require_all,
        amount_gate=definition.amount_gate,
    )


def resolve_approval_steps(
    policy: ApprovalPolicy,
    membership: List[Member],
    requester_department: Optional[str] = None,
) -> List[ApprovalStepStatus]:
    """Generate the concrete step list for a new document."""
    steps = [resolve_step(d, membership, requester_department) for d in policy.steps]
    empty = [s.id for s in steps if not s.resolved_approver_ids]
    if empty:
        logger.info(
            "Policy %s/%s v%s: steps without approvers will not block: %s",
            policy.project_id, policy.kind.value, policy.version, ", ".join(empty),
        )
    return steps


def live_approvers(
    step: ApprovalStepStatus,
    membership: Optional[List[Member]],
    requester_department: Optional[str],
) -> Tuple[List[str], List[str]]:
    """
    Approvers of a generated step as of now.

    Only department-deferred steps consult the live directory; every other
    step keeps the snapshot taken at generation.
    """
    if not step.department_deferred or membership is None:
        return list(step.resolved_approver_ids), list(step.resolved_names)
    if step.approver_type is ApproverType.HOD:
        position = HOD_POSITION
    elif step.approver_type is ApproverType.COORDINATOR:
        position = COORDINATOR_POSITION
    else:
        raise ValueError(f"Step {step.id} of type {step.approver_type} cannot be deferred")
    ids = _dedupe(_members_in_position(membership, position, requester_department))
    by_id = {m.member_id: m for m in membership}
    return ids, [by_id[i].display_name for i in ids]


def reresolve_deferred_step(
    step: ApprovalStepStatus,
    membership: Optional[List[Member]],
    requester_department: Optional[str],
) -> ApprovalStepStatus:
    """Refresh a department-deferred step against the live directory."""
    if step.department_deferred and membership is not None and not step.is_terminal:
        step.resolved_approver_ids, step.resolved_names = live_approvers(
            step, membership, requester_department
        )
    return step
