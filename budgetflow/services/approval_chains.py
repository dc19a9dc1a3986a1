"""
Approval Chain State Machine

Drives a document's generated approval steps:
- Sequential steps, one authoritative pointer recomputed from step statuses
- Any-one or all-must-approve steps
- Amount gates evaluated against the document's current amount
- Single rejection terminates the whole chain
- Request-info as a side channel that never moves the chain

Functions here mutate the document in memory and return ledger deltas;
persisting both atomically is the caller's job.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from budgetflow.services.approval_steps import ApprovalStepStatus, StepStatus
from budgetflow.services.approver_resolver import Member, live_approvers, reresolve_deferred_step
from budgetflow.services.budget_ledger import LedgerDelta, approve_po, post_invoice
from budgetflow.services.documents import ApprovalDocument, utc_now
from budgetflow.services.errors import AuthorizationError, StateError, ValidationError
from budgetflow.services.invoices import Invoice
from budgetflow.services.purchase_orders import PurchaseOrder

logger = logging.getLogger(__name__)


@dataclass
class ApprovalOutcome:
    """Result of a transition that may complete the chain."""
    document: ApprovalDocument
    ledger_deltas: List[LedgerDelta] = field(default_factory=list)
    step_id: Optional[str] = None
    step_completed: bool = False
    fully_approved: bool = False
    skipped_step_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document": self.document.to_dict(),
            "ledger_deltas": [d.to_dict() for d in self.ledger_deltas],
            "step_id": self.step_id,
            "step_completed": self.step_completed,
            "fully_approved": self.fully_approved,
            "skipped_step_ids": list(self.skipped_step_ids),
        }


def _status_label(document: ApprovalDocument) -> str:
    return document.status.value


def should_auto_approve(steps: List[ApprovalStepStatus], amount: Optional[float] = None) -> bool:
    """
    True when nobody needs to act on a freshly generated chain.

    Without an amount only the structural rule applies (no steps, or no
    approvers anywhere). With an amount, steps whose gate is inactive also
    count as non-blocking.
    """
    if not steps:
        return True
    if all(not s.resolved_approver_ids for s in steps):
        return True
    if amount is None:
        return False
    return all(not s.is_blocking(amount) for s in steps)


def _step_blocks(
    step: ApprovalStepStatus,
    document: ApprovalDocument,
    membership: Optional[List[Member]],
) -> bool:
    ids, _ = live_approvers(step, membership, document.department)
    return bool(ids) and step.gate_active(document.amount)


def current_step_index(
    document: ApprovalDocument,
    membership: Optional[List[Member]] = None,
) -> int:
    """
    Index of the first step that still needs a decision, without mutating.

    Pending steps that do not block (no approvers, or gate inactive for the
    current amount) are passed over. Returns len(steps) when none is left.
    """
    for index, step in enumerate(document.approval_steps):
        if step.is_terminal:
            continue
        if _step_blocks(step, document, membership):
            return index
    return len(document.approval_steps)


def current_step(
    document: ApprovalDocument,
    membership: Optional[List[Member]] = None,
) -> Optional[ApprovalStepStatus]:
    index = current_step_index(document, membership)
    if index < len(document.approval_steps):
        return document.approval_steps[index]
    return None


def advance(
    document: ApprovalDocument,
    membership: Optional[List[Member]] = None,
) -> List[str]:
    """
    Move the pointer to the first blocking step, marking passed-over steps skipped.

    Returns the IDs of newly skipped steps.
    """
    skipped = []
    pointer = len(document.approval_steps)
    for index, step in enumerate(document.approval_steps):
        if step.is_terminal:
            continue
        reresolve_deferred_step(step, membership, document.department)
        if _step_blocks(step, document, membership):
            pointer = index
            break
        step.status = StepStatus.SKIPPED
        skipped.append(step.id)
    document.current_approval_step = pointer
    if skipped:
        logger.info(
            "Document %s: skipped non-blocking steps %s (amount %.2f)",
            document.document_id, ", ".join(skipped), document.amount,
        )
    return skipped


def _complete(
    document: ApprovalDocument,
    actor_id: Optional[str],
    actor_name: Optional[str],
    auto: bool,
) -> List[LedgerDelta]:
    """Terminal approval: stamp the document and emit its ledger deltas."""
    now = utc_now()
    document.mark_approved()
    document.approved_at = now
    document.approved_by = actor_id
    document.approved_by_name = actor_name
    document.auto_approved = auto
    document.updated_at = now
    document.current_approval_step = len(document.approval_steps)

    if isinstance(document, PurchaseOrder):
        return approve_po(document)
    if isinstance(document, Invoice):
        if not document.document_type.posts_to_budget:
            return []
        document.posted = True
        document.posted_at = now
        return post_invoice(document)
    raise TypeError(f"Unsupported document type: {type(document).__name__}")


def start_approval(
    document: ApprovalDocument,
    steps: List[ApprovalStepStatus],
    membership: Optional[List[Member]] = None,
) -> ApprovalOutcome:
    """
    Attach a freshly generated chain and enter pending_approval.

    Auto-approves on the spot when no step needs a human decision.
    """
    document.approval_steps = steps
    document.approval_round += 1
    document.mark_pending_approval()
    document.updated_at = utc_now()
    document.approved_at = document.approved_by = document.approved_by_name = None
    document.rejected_at = document.rejected_by = document.rejected_by_name = None
    document.rejection_reason = None
    document.auto_approved = False

    skipped = advance(document, membership)
    outcome = ApprovalOutcome(document=document, skipped_step_ids=skipped)
    if document.current_approval_step >= len(steps):
        outcome.ledger_deltas = _complete(document, None, None, auto=True)
        outcome.fully_approved = True
        logger.info("Document %s auto-approved at submission", document.document_id)
    return outcome


def can_act(
    actor_id: str,
    step: ApprovalStepStatus,
    document: ApprovalDocument,
    membership: Optional[List[Member]] = None,
) -> bool:
    """Whether actor may approve or reject this step right now."""
    if not document.is_pending_approval or step.status is not StepStatus.PENDING:
        return False
    if not step.gate_active(document.amount):
        return False
    index = current_step_index(document, membership)
    if index >= len(document.approval_steps) or document.approval_steps[index] is not step:
        return False
    ids, _ = live_approvers(step, membership, document.department)
    return actor_id in ids and not step.has_acted(actor_id)


def _eligible_step(
    document: ApprovalDocument,
    actor_id: str,
    action: str,
    membership: Optional[List[Member]],
) -> ApprovalStepStatus:
    """The current step, provided actor may act on it; raises otherwise."""
    if document.is_rejected:
        raise StateError(document.document_id, _status_label(document), f"Cannot {action} a rejected document")
    if not document.is_pending_approval:
        raise StateError(document.document_id, _status_label(document), "Document is not awaiting approval")

    step = current_step(document, membership)
    if step is None:
        raise StateError(document.document_id, _status_label(document), "No approval step is pending")

    ids, _ = live_approvers(step, membership, document.department)
    if actor_id not in ids:
        raise AuthorizationError(
            actor_id, f"Not an approver of step {step.order}", document_id=document.document_id
        )
    if step.has_acted(actor_id):
        raise AuthorizationError(
            actor_id, f"Already acted on step {step.order}", document_id=document.document_id
        )
    return step


def apply_approval(
    document: ApprovalDocument,
    actor_id: str,
    actor_name: Optional[str] = None,
    comment: Optional[str] = None,
    membership: Optional[List[Member]] = None,
) -> ApprovalOutcome:
    """
    Record one approval on the current step.

    The step completes once its require_all rule is met; the chain then
    advances past non-blocking steps, and completes when none remain.
    A document with no blocking step left is a StateError here; `settle`
    completes it.
    """
    step = _eligible_step(document, actor_id, "approve", membership)
    reresolve_deferred_step(step, membership, document.department)

    step.approved_by.append(actor_id)
    document.updated_at = utc_now()
    outcome = ApprovalOutcome(document=document, step_id=step.id)

    if step.is_satisfied():
        step.status = StepStatus.APPROVED
        outcome.step_completed = True
        logger.info(
            "Step %s of %s approved by %s%s",
            step.order, document.document_id, actor_id, f": {comment}" if comment else "",
        )
    else:
        logger.info(
            "Step %s of %s: %s approved (%d/%d)",
            step.order, document.document_id, actor_id,
            len(step.approved_by), len(step.resolved_approver_ids),
        )
    outcome.skipped_step_ids = advance(document, membership)

    if document.current_approval_step >= len(document.approval_steps):
        outcome.ledger_deltas = _complete(document, actor_id, actor_name or actor_id, auto=False)
        outcome.fully_approved = True
        logger.info("Document %s fully approved", document.document_id)
    return outcome


def settle(
    document: ApprovalDocument,
    membership: Optional[List[Member]] = None,
) -> Optional[ApprovalOutcome]:
    """
    Re-run skipping on a pending document after the directory changed.

    Returns None when nothing moved. Completes the document, with no
    approving actor, when no blocking step remains.
    """
    if not document.is_pending_approval:
        return None
    skipped = advance(document, membership)
    outcome = ApprovalOutcome(document=document, skipped_step_ids=skipped)
    if document.current_approval_step >= len(document.approval_steps):
        outcome.ledger_deltas = _complete(document, None, None, auto=True)
        outcome.fully_approved = True
        logger.info("Document %s has no blocking step left, auto-approved", document.document_id)
    if not skipped and not outcome.fully_approved:
        return None
    return outcome


def apply_rejection(
    document: ApprovalDocument,
    actor_id: str,
    reason: str,
    actor_name: Optional[str] = None,
    membership: Optional[List[Member]] = None,
) -> ApprovalDocument:
    """
    Reject the document from its current step.

    Replaying the same actor's rejection returns the document unchanged.
    """
    if document.is_rejected and document.rejected_by == actor_id:
        return document
    if not reason or not reason.strip():
        raise ValidationError("reason", "A rejection reason is required")

    step = _eligible_step(document, actor_id, "reject", membership)
    now = utc_now()
    step.rejected_by.append(actor_id)
    step.status = StepStatus.REJECTED

    document.mark_rejected()
    document.rejected_at = now
    document.rejected_by = actor_id
    document.rejected_by_name = actor_name or actor_id
    document.rejection_reason = reason.strip()
    document.updated_at = now
    logger.info("Document %s rejected at step %s by %s", document.document_id, step.order, actor_id)
    return document


def request_info(
    document: ApprovalDocument,
    actor_id: str,
    message: str,
    membership: Optional[List[Member]] = None,
) -> Dict[str, Any]:
    """
    Validate an information request and describe it for the timeline.

    Never touches steps or status.
    """
    if not message or not message.strip():
        raise ValidationError("message", "An information request needs a message")
    if not document.is_pending_approval:
        raise StateError(document.document_id, _status_label(document), "Document is not awaiting approval")
    step = current_step(document, membership)
    ids = live_approvers(step, membership, document.department)[0] if step else []
    if actor_id not in ids:
        raise AuthorizationError(
            actor_id, "Only a current approver can request information", document_id=document.document_id
        )
    return {
        "step_id": step.id,
        "step_order": step.order,
        "message": message.strip(),
        "requested_from": document.created_by,
    }


def pending_approvals_for(
    actor_id: str,
    documents: Iterable[ApprovalDocument],
    membership: Optional[List[Member]] = None,
) -> List[ApprovalDocument]:
    """Documents whose current step the actor may act on, given live amounts."""
    pending = []
    for document in documents:
        if not document.is_pending_approval:
            continue
        step = current_step(document, membership)
        if step is not None and can_act(actor_id, step, document, membership):
            pending.append(document)
    return pending
