"""
Accounting Workflow Service

Orchestrates purchase orders and invoices over the document store:
- Approval policies and membership, resolved into per-document chains
- Approve / reject / request-info through the approval state machine
- Budget ledger mutations written in the same transaction as the document
- PO close, reopen, cancel, modify; invoice cancel, payment, overdue
- PO-invoice reconciliation kept current on every invoice change

Every mutating call runs in one database transaction and is retried on
write conflicts up to `transaction_retries` times.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, TypeVar

from budgetflow.core.config import Settings, get_settings
from budgetflow.core.database import BudgetflowDB, get_db
from budgetflow.services import approval_chains
from budgetflow.services.approval_policies import ApprovalPolicy, DocumentKind
from budgetflow.services.approver_resolver import Member, resolve_approval_steps
from budgetflow.services.audit_trail import AuditEventType, AuditTrailService, DocumentTimeline
from budgetflow.services.auth import Actor, Reauthenticator
from budgetflow.services.budget_ledger import (
    Account,
    AppliedDelta,
    BudgetStatus,
    LedgerDelta,
    LedgerReason,
    SubAccount,
    apply_delta,
    budget_status,
    cancel_invoice,
    cancel_po,
    execution_percent,
    preview_budget_impact,
)
from budgetflow.services.documents import ApprovalDocument, LineItem, money, utc_now
from budgetflow.services.errors import (
    ConcurrencyConflict,
    NotFoundError,
    StateError,
    StorageError,
    ValidationError,
)
from budgetflow.services.invoices import (
    AWAITING_PAYMENT_STATUSES,
    Invoice,
    InvoiceStatus,
)
from budgetflow.services.logging import log_ledger_event
from budgetflow.services.metrics import record_ledger_warning, record_transition
from budgetflow.services.purchase_orders import ModificationRecord, POStatus, PurchaseOrder
from budgetflow.services.reconciliation import POReconciliation, reconcile_po

logger = logging.getLogger(__name__)

T = TypeVar("T")

EDITABLE_PO_STATUSES = (POStatus.DRAFT, POStatus.REJECTED)
EDITABLE_INVOICE_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.REJECTED)


@dataclass
class WorkflowResult:
    """A document after an operation, with the ledger movements it caused."""
    document: ApprovalDocument
    applied: List[AppliedDelta] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    fully_approved: bool = False
    changed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document": self.document.to_dict(),
            "ledger": [a.to_dict() for a in self.applied],
            "warnings": list(self.warnings),
            "fully_approved": self.fully_approved,
            "changed": self.changed,
        }


def _new_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Client data for a new document; identity and version are assigned here."""
    return {k: v for k, v in data.items() if k not in ("document_id", "version", "number")}


def parse_kind(kind: str) -> DocumentKind:
    try:
        return DocumentKind(kind)
    except ValueError:
        raise ValidationError("kind", f"Unknown document kind '{kind}', expected 'po' or 'invoice'")


class AccountingWorkflowService:
    def __init__(
        self,
        db: Optional[BudgetflowDB] = None,
        settings: Optional[Settings] = None,
        reauthenticator: Optional[Reauthenticator] = None,
    ):
        self.settings = settings or get_settings()
        self.db = db or get_db()
        self.audit = AuditTrailService(self.db)
        self.reauth = reauthenticator or Reauthenticator(self.settings.reauth_secret)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _run(self, operation: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run fn in a transaction, retrying lost races."""
        attempts = self.settings.transaction_retries
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                with self.db.transaction() as conn:
                    return fn(conn)
            except ConcurrencyConflict as exc:
                last_error = exc
            except sqlite3.OperationalError as exc:
                message = str(exc).lower()
                if "locked" not in message and "busy" not in message:
                    raise StorageError(operation, str(exc)) from exc
                last_error = exc
            logger.warning("%s: write conflict (attempt %d/%d): %s", operation, attempt, attempts, last_error)
            time.sleep(0.02 * attempt)

        if isinstance(last_error, ConcurrencyConflict):
            raise last_error
        raise StorageError(operation, str(last_error), retryable=True)

    # ------------------------------------------------------------------
    # Loading and saving documents
    # ------------------------------------------------------------------

    def _from_payload(self, payload: Dict[str, Any]) -> ApprovalDocument:
        if payload.get("kind") == DocumentKind.PO.value:
            return PurchaseOrder.from_dict(payload, self.settings.default_vat_rate)
        return Invoice.from_dict(payload, self.settings.default_vat_rate)

    def _load(
        self,
        conn: Optional[sqlite3.Connection],
        project_id: str,
        kind: DocumentKind,
        document_id: str,
    ) -> ApprovalDocument:
        payload = self.db.get_document(document_id, kind=kind.value, conn=conn)
        if not payload or payload.get("project_id") != project_id:
            label = "Purchase order" if kind is DocumentKind.PO else "Invoice"
            raise NotFoundError(label, document_id)
        return self._from_payload(payload)

    def _save(self, conn: sqlite3.Connection, document: ApprovalDocument) -> None:
        document.version = self.db.update_document(conn, document.to_dict(), document.version)

    def _insert(self, conn: sqlite3.Connection, document: ApprovalDocument) -> None:
        document.version = self.db.insert_document(conn, document.to_dict())

    def _membership(self, conn: Optional[sqlite3.Connection], project_id: str) -> List[Member]:
        return [Member.from_dict(m) for m in self.db.list_members(project_id, conn=conn)]

    # ------------------------------------------------------------------
    # Members and policies
    # ------------------------------------------------------------------

    def set_members(self, project_id: str, members: List[Dict[str, Any]]) -> List[Member]:
        """Replace the directory and re-settle pending documents against it."""
        seen = set()
        for index, member in enumerate(members):
            member_id = (member.get("member_id") or "").strip()
            if not member_id:
                raise ValidationError(f"members[{index}].member_id", "Member ID is required")
            if member_id in seen:
                raise ValidationError(f"members[{index}].member_id", f"Duplicate member {member_id}")
            seen.add(member_id)

        def op(conn):
            rows = self.db.replace_members(project_id, members, conn=conn)
            membership = [Member.from_dict(r) for r in rows]
            settled = self._settle_pending(conn, project_id, membership)
            logger.info(
                "Project %s membership replaced: %d members, %d pending documents settled",
                project_id, len(rows), settled,
            )
            return membership

        return self._run("set_members", op)

    def _settle_pending(self, conn: sqlite3.Connection, project_id: str, membership: List[Member]) -> int:
        """Skip steps nobody can act on any more; complete documents left with none."""
        settled = 0
        for kind in (DocumentKind.PO, DocumentKind.INVOICE):
            for payload in self.db.list_documents(project_id, kind=kind.value, conn=conn):
                document = self._from_payload(payload)
                outcome = approval_chains.settle(document, membership)
                if outcome is None:
                    continue
                settled += 1
                self._save(conn, document)
                if outcome.skipped_step_ids:
                    self.audit.record(
                        conn, document, AuditEventType.STEPS_SKIPPED,
                        f"Skipped steps after directory change: {', '.join(outcome.skipped_step_ids)}",
                        details={"step_ids": outcome.skipped_step_ids, "amount": document.amount},
                    )
                if not outcome.fully_approved:
                    continue
                self.audit.record(
                    conn, document, AuditEventType.AUTO_APPROVED,
                    "Auto-approved: no step left with an eligible approver",
                    details={"amount": document.amount},
                )
                record_transition(kind.value, "auto_approved")
                self._apply_ledger(conn, document, outcome.ledger_deltas, None)
                if isinstance(document, Invoice):
                    if document.posted:
                        self._post_audit(conn, document)
                    if document.po_id:
                        self._refresh_po_invoiced(conn, project_id, document.po_id)
        return settled

    def list_members(self, project_id: str) -> List[Member]:
        return self._membership(None, project_id)

    def get_policy(
        self,
        project_id: str,
        kind: DocumentKind,
        conn: Optional[sqlite3.Connection] = None,
    ) -> ApprovalPolicy:
        """Latest saved policy, or the configured default (version 0)."""
        row = self.db.get_policy(project_id, kind.value, conn=conn)
        if row:
            return ApprovalPolicy.from_steps(
                project_id, kind, row["steps"], version=int(row["version"]), updated_by=row.get("updated_by")
            )
        return ApprovalPolicy.from_steps(project_id, kind, self.settings.default_policies[kind.value])

    def save_policy(
        self,
        project_id: str,
        kind: DocumentKind,
        steps: List[Dict[str, Any]],
        updated_by: str,
    ) -> ApprovalPolicy:
        """Validate and store a new policy version. Running documents keep their chains."""
        policy = ApprovalPolicy.from_steps(project_id, kind, steps, updated_by=updated_by)
        policy.ensure_valid()
        row = self.db.insert_policy_version(
            project_id, kind.value, [s.to_dict() for s in policy.steps], updated_by=updated_by
        )
        policy.version = int(row["version"])
        logger.info("Saved %s policy v%d for project %s", kind.value, policy.version, project_id)
        return policy

    def list_policy_versions(self, project_id: str, kind: DocumentKind) -> List[ApprovalPolicy]:
        return [
            ApprovalPolicy.from_steps(
                project_id, kind, row["steps"], version=int(row["version"]), updated_by=row.get("updated_by")
            )
            for row in self.db.list_policy_versions(project_id, kind.value)
        ]

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    def create_account(self, project_id: str, code: str, description: str = "") -> Dict[str, Any]:
        if not code or not code.strip():
            raise ValidationError("code", "Account code is required")
        try:
            return self.db.create_account(project_id, code.strip(), description)
        except sqlite3.IntegrityError:
            raise ValidationError("code", f"Account {code} already exists in project {project_id}")

    def create_sub_account(
        self,
        project_id: str,
        account_id: str,
        code: str,
        description: str = "",
        budgeted: float = 0.0,
    ) -> SubAccount:
        account = self.db.get_account(account_id)
        if not account or account["project_id"] != project_id:
            raise NotFoundError("Account", account_id)
        if not code or not code.strip():
            raise ValidationError("code", "Sub-account code is required")
        if budgeted < 0:
            raise ValidationError("budgeted", "Budgeted amount cannot be negative")
        try:
            row = self.db.create_sub_account(project_id, account_id, code.strip(), description, money(budgeted))
        except sqlite3.IntegrityError:
            raise ValidationError("code", f"Sub-account {code} already exists in project {project_id}")
        return self._sub_account(row)

    @staticmethod
    def _sub_account(row: Dict[str, Any]) -> SubAccount:
        return SubAccount(
            sub_account_id=row["id"],
            account_id=row["account_id"],
            project_id=row["project_id"],
            code=row.get("code") or "",
            description=row.get("description") or "",
            budgeted=float(row["budgeted"]),
            committed=float(row["committed"]),
            actual=float(row["actual"]),
            version=int(row["version"]),
        )

    def get_sub_account(self, project_id: str, sub_account_id: str) -> SubAccount:
        row = self.db.get_sub_account(sub_account_id)
        if not row or row["project_id"] != project_id:
            raise NotFoundError("Sub-account", sub_account_id)
        return self._sub_account(row)

    def _band(self, available: float, budgeted: float) -> BudgetStatus:
        return budget_status(
            available,
            budgeted,
            self.settings.budget_warning_percent,
            self.settings.budget_critical_percent,
        )

    def get_budget_summary(self, project_id: str) -> Dict[str, Any]:
        accounts = {
            row["id"]: Account(
                account_id=row["id"],
                project_id=project_id,
                code=row["code"],
                description=row.get("description") or "",
            )
            for row in self.db.list_accounts(project_id)
        }
        for row in self.db.list_sub_accounts(project_id):
            if row["account_id"] in accounts:
                accounts[row["account_id"]].sub_accounts.append(self._sub_account(row))

        warnings = []
        account_views = []
        for account in accounts.values():
            view = account.to_dict()
            view["status"] = self._band(account.available, account.budgeted).value
            view["executed_percent"] = execution_percent(account.committed + account.actual, account.budgeted)
            for sub, sub_view in zip(account.sub_accounts, view["sub_accounts"]):
                band = self._band(sub.available, sub.budgeted)
                sub_view["status"] = band.value
                sub_view["executed_percent"] = execution_percent(sub.executed, sub.budgeted)
                if band is BudgetStatus.OVERSPENT:
                    warnings.append(f"Sub-account {sub.code} overspent by {abs(sub.available):,.2f}")
            account_views.append(view)

        budgeted = money(sum(a.budgeted for a in accounts.values()))
        committed = money(sum(a.committed for a in accounts.values()))
        actual = money(sum(a.actual for a in accounts.values()))
        available = money(budgeted - committed - actual)
        return {
            "project_id": project_id,
            "currency": self.settings.currency,
            "totals": {
                "budgeted": budgeted,
                "committed": committed,
                "actual": actual,
                "available": available,
                "executed_percent": execution_percent(committed + actual, budgeted),
                "status": self._band(available, budgeted).value,
            },
            "accounts": account_views,
            "warnings": warnings,
        }

    def preview_budget_impact(self, project_id: str, line_items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        items = [LineItem.from_dict(i, self.settings.default_vat_rate) for i in line_items]
        rows = self.db.get_sub_accounts(i.sub_account_id for i in items if i.sub_account_id)
        subs = {
            sub_id: self._sub_account(row)
            for sub_id, row in rows.items()
            if row["project_id"] == project_id
        }
        return preview_budget_impact(
            subs, items, self.settings.budget_warning_percent, self.settings.budget_critical_percent
        )

    def list_ledger(
        self,
        project_id: str,
        sub_account_id: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        return self.db.list_ledger_entries(project_id, sub_account_id=sub_account_id, document_id=document_id)

    def _apply_ledger(
        self,
        conn: sqlite3.Connection,
        document: ApprovalDocument,
        deltas: List[LedgerDelta],
        actor_id: Optional[str],
    ) -> List[AppliedDelta]:
        """Apply deltas to sub-account rows, journal them, and audit any warnings."""
        if not deltas:
            return []
        rows = self.db.get_sub_accounts([d.sub_account_id for d in deltas], conn=conn)
        subs: Dict[str, SubAccount] = {}
        applied = []
        for delta in deltas:
            if delta.sub_account_id not in subs:
                row = rows.get(delta.sub_account_id)
                if not row or row["project_id"] != document.project_id:
                    raise NotFoundError("Sub-account", delta.sub_account_id)
                subs[delta.sub_account_id] = self._sub_account(row)
            sub = subs[delta.sub_account_id]

            result = apply_delta(sub, delta)
            sub.version = self.db.update_sub_account_figures(
                conn, sub.sub_account_id, sub.committed, sub.actual, sub.version
            )
            self.db.append_ledger_entry(conn, {
                "project_id": document.project_id,
                "actor_id": actor_id,
                **result.to_dict(),
            })
            log_ledger_event(
                document.project_id,
                sub.sub_account_id,
                delta.reason.value,
                delta.committed_delta,
                delta.actual_delta,
                document_id=delta.document_id,
            )
            if result.underflow:
                record_ledger_warning("underflow")
                self.audit.record(
                    conn, document, AuditEventType.LEDGER_UNDERFLOW,
                    f"Ledger underflow clamped on {sub.code or sub.sub_account_id}",
                    actor_id=actor_id,
                    details=result.to_dict(),
                )
            if result.overspent:
                record_ledger_warning("overspent")
                self.audit.record(
                    conn, document, AuditEventType.OVERSPEND_WARNING,
                    f"Sub-account {sub.code or sub.sub_account_id} overspent by {abs(result.available_after):,.2f}",
                    actor_id=actor_id,
                    details={"sub_account_id": sub.sub_account_id, "available": result.available_after},
                )
            applied.append(result)
        return applied

    @staticmethod
    def _warnings(applied: List[AppliedDelta]) -> List[str]:
        warnings = []
        for result in applied:
            if result.overspent:
                warnings.append(
                    f"Sub-account {result.delta.sub_account_id} overspent: available {result.available_after:,.2f}"
                )
            if result.underflow:
                warnings.append(f"Ledger underflow clamped on sub-account {result.delta.sub_account_id}")
        return warnings

    # ------------------------------------------------------------------
    # Document creation
    # ------------------------------------------------------------------

    def _validate_lines(
        self,
        conn: sqlite3.Connection,
        project_id: str,
        items: List[LineItem],
    ) -> None:
        if not items:
            raise ValidationError("line_items", "At least one line item is required")
        for index, item in enumerate(items):
            if not item.sub_account_id:
                raise ValidationError(f"line_items[{index}].sub_account_id", "Every line needs a sub-account")
            if item.base_amount <= 0:
                raise ValidationError(f"line_items[{index}].base_amount", "Line amount must be positive")
        rows = self.db.get_sub_accounts([i.sub_account_id for i in items], conn=conn)
        for index, item in enumerate(items):
            row = rows.get(item.sub_account_id)
            if not row or row["project_id"] != project_id:
                raise ValidationError(
                    f"line_items[{index}].sub_account_id", f"Unknown sub-account {item.sub_account_id}"
                )

    def _stamp_creator(
        self,
        conn: sqlite3.Connection,
        document: ApprovalDocument,
        actor: Actor,
    ) -> List[Member]:
        membership = self._membership(conn, document.project_id)
        member = next((m for m in membership if m.member_id == actor.member_id), None)
        document.created_by = actor.member_id
        document.created_by_name = actor.name or (member.display_name if member else actor.member_id)
        if not document.department and member:
            document.department = member.department
        document.currency = document.currency or self.settings.currency
        return membership

    def _start_chain(
        self,
        conn: sqlite3.Connection,
        document: ApprovalDocument,
        membership: List[Member],
    ) -> approval_chains.ApprovalOutcome:
        policy = self.get_policy(document.project_id, document.kind, conn=conn)
        steps = resolve_approval_steps(policy, membership, document.department)
        outcome = approval_chains.start_approval(document, steps, membership)
        logger.info(
            "Document %s submitted under %s policy v%d: %d steps, auto-approved=%s",
            document.document_id, document.kind.value, policy.version, len(steps), outcome.fully_approved,
        )
        return outcome

    def _after_submit(
        self,
        conn: sqlite3.Connection,
        document: ApprovalDocument,
        outcome: approval_chains.ApprovalOutcome,
        actor: Actor,
    ) -> List[AppliedDelta]:
        """Audit a submission and apply ledger effects of an auto-approval."""
        self.audit.record(
            conn, document, AuditEventType.SUBMITTED,
            f"Submitted for approval ({len(document.approval_steps)} steps)",
            actor_id=actor.member_id, actor_name=actor.display_name,
            details={"steps": [s.to_dict() for s in document.approval_steps]},
        )
        record_transition(document.kind.value, "submitted")
        if outcome.skipped_step_ids:
            self.audit.record(
                conn, document, AuditEventType.STEPS_SKIPPED,
                f"Skipped non-blocking steps: {', '.join(outcome.skipped_step_ids)}",
                details={"step_ids": outcome.skipped_step_ids, "amount": document.amount},
            )
        if not outcome.fully_approved:
            return []
        self.audit.record(
            conn, document, AuditEventType.AUTO_APPROVED,
            "Auto-approved: no step requires a decision",
            details={"amount": document.amount},
        )
        record_transition(document.kind.value, "auto_approved")
        return self._apply_ledger(conn, document, outcome.ledger_deltas, actor.member_id)

    def create_po(
        self,
        project_id: str,
        actor: Actor,
        data: Dict[str, Any],
        submit: bool = True,
    ) -> WorkflowResult:
        """Create a PO; submitted POs enter their approval chain at once."""
        def op(conn):
            po = PurchaseOrder.from_dict(
                {**_new_payload(data), "project_id": project_id, "status": POStatus.DRAFT.value},
                self.settings.default_vat_rate,
            )
            self._validate_lines(conn, project_id, po.line_items)
            membership = self._stamp_creator(conn, po, actor)
            po.number = self.db.next_document_number(conn, project_id, DocumentKind.PO.value)

            outcome = self._start_chain(conn, po, membership) if submit else None
            self._insert(conn, po)
            self.audit.record(
                conn, po, AuditEventType.CREATED, f"PO {po.number} created ({po.base_amount:,.2f})",
                actor_id=actor.member_id, actor_name=actor.display_name,
            )
            applied = self._after_submit(conn, po, outcome, actor) if outcome else []
            return WorkflowResult(
                po, applied, self._warnings(applied), fully_approved=bool(outcome and outcome.fully_approved)
            )

        return self._run("create_po", op)

    def submit_po(self, project_id: str, po_id: str, actor: Actor) -> WorkflowResult:
        """Draft or rejected PO enters approval with a freshly generated chain."""
        def op(conn):
            po = self._load(conn, project_id, DocumentKind.PO, po_id)
            if po.status not in EDITABLE_PO_STATUSES:
                raise StateError(po.document_id, po.status.value, "Only draft or rejected POs can be submitted")
            self._validate_lines(conn, project_id, po.line_items)
            membership = self._membership(conn, project_id)
            outcome = self._start_chain(conn, po, membership)
            self._save(conn, po)
            applied = self._after_submit(conn, po, outcome, actor)
            return WorkflowResult(po, applied, self._warnings(applied), fully_approved=outcome.fully_approved)

        return self._run("submit_po", op)

    def update_po(self, project_id: str, po_id: str, actor: Actor, data: Dict[str, Any]) -> WorkflowResult:
        """Edit a draft or rejected PO's header and lines."""
        def op(conn):
            po = self._load(conn, project_id, DocumentKind.PO, po_id)
            if po.status not in EDITABLE_PO_STATUSES:
                raise StateError(po.document_id, po.status.value, "Only draft or rejected POs can be edited")
            if "line_items" in data:
                items = [LineItem.from_dict(i, self.settings.default_vat_rate) for i in data["line_items"] or []]
                self._validate_lines(conn, project_id, items)
                po.line_items = items
            for attr in ("supplier", "supplier_id", "description", "department", "po_type", "currency"):
                if attr in data and data[attr] is not None:
                    setattr(po, attr, data[attr])
            po.updated_at = utc_now()
            self._save(conn, po)
            return WorkflowResult(po)

        return self._run("update_po", op)

    def _refresh_po_invoiced(
        self,
        conn: sqlite3.Connection,
        project_id: str,
        po_id: str,
    ) -> POReconciliation:
        po = self._load(conn, project_id, DocumentKind.PO, po_id)
        invoices = [
            self._from_payload(p)
            for p in self.db.list_documents(project_id, kind=DocumentKind.INVOICE.value, po_id=po_id, conn=conn)
        ]
        reconciliation = reconcile_po(po, invoices)
        if po.invoiced_amount != reconciliation.invoiced_amount:
            po.invoiced_amount = reconciliation.invoiced_amount
            po.updated_at = utc_now()
            self._save(conn, po)
        return reconciliation

    def _over_invoice_warning(self, reconciliation: POReconciliation) -> List[str]:
        if not reconciliation.over_invoiced:
            return []
        return [
            f"PO {reconciliation.po_number} over-invoiced: {reconciliation.invoiced_amount:,.2f} "
            f"against {reconciliation.po_amount:,.2f} ({reconciliation.percentage_used:.1f}%)"
        ]

    def _link_invoice_lines(self, invoice: Invoice, po: PurchaseOrder) -> None:
        po_line_ids = {item.line_id for item in po.line_items}
        for index, item in enumerate(invoice.line_items):
            if item.po_item_id and item.po_item_id not in po_line_ids:
                raise ValidationError(f"line_items[{index}].po_item_id", f"PO {po.number} has no line {item.po_item_id}")
            if item.po_item_index is not None and not 0 <= item.po_item_index < len(po.line_items):
                raise ValidationError(f"line_items[{index}].po_item_index", "PO line index out of range")
            if item.po_item_id is None and item.po_item_index is None:
                item.is_new_item = True

    def _linked_po(
        self,
        conn: sqlite3.Connection,
        project_id: str,
        invoice: Invoice,
    ) -> Optional[PurchaseOrder]:
        if not invoice.po_id:
            invoice.po_number = None
            return None
        po = self._load(conn, project_id, DocumentKind.PO, invoice.po_id)
        if po.status is not POStatus.APPROVED:
            raise StateError(po.document_id, po.status.value, "Invoices can only be linked to approved POs")
        invoice.po_number = po.number
        self._link_invoice_lines(invoice, po)
        return po

    def create_invoice(
        self,
        project_id: str,
        actor: Actor,
        data: Dict[str, Any],
        submit: bool = True,
    ) -> WorkflowResult:
        """Record an invoice, optionally against an approved PO, and start its approval."""
        def op(conn):
            invoice = Invoice.from_dict(
                {**_new_payload(data), "project_id": project_id, "status": InvoiceStatus.DRAFT.value, "posted": False},
                self.settings.default_vat_rate,
            )
            self._validate_lines(conn, project_id, invoice.line_items)

            po = self._linked_po(conn, project_id, invoice)

            replaced = None
            if invoice.replaces_document_id:
                replaced = self._load(conn, project_id, DocumentKind.INVOICE, invoice.replaces_document_id)
                if not replaced.document_type.requires_replacement:
                    raise ValidationError("replaces_document_id", "Only proformas and quotes can be replaced")
                if replaced.replaced_by_document_id:
                    raise StateError(
                        replaced.document_id, replaced.status.value,
                        f"Already replaced by {replaced.replaced_by_document_id}",
                    )

            membership = self._stamp_creator(conn, invoice, actor)
            invoice.number = self.db.next_document_number(conn, project_id, DocumentKind.INVOICE.value)
            outcome = self._start_chain(conn, invoice, membership) if submit else None
            self._insert(conn, invoice)
            self.audit.record(
                conn, invoice, AuditEventType.CREATED,
                f"{invoice.display_number} created ({invoice.base_amount:,.2f})",
                actor_id=actor.member_id, actor_name=actor.display_name,
                details={"po_id": invoice.po_id, "document_type": invoice.document_type.value},
            )

            applied = self._after_submit(conn, invoice, outcome, actor) if outcome else []
            if invoice.posted:
                self._post_audit(conn, invoice)

            if replaced is not None:
                replaced.replaced_by_document_id = invoice.document_id
                replaced.updated_at = utc_now()
                self._save(conn, replaced)

            warnings = self._warnings(applied)
            if po is not None:
                warnings.extend(self._over_invoice_warning(self._refresh_po_invoiced(conn, project_id, po.document_id)))
            return WorkflowResult(
                invoice, applied, warnings, fully_approved=bool(outcome and outcome.fully_approved)
            )

        return self._run("create_invoice", op)

    def update_invoice(
        self,
        project_id: str,
        invoice_id: str,
        actor: Actor,
        data: Dict[str, Any],
    ) -> WorkflowResult:
        """Edit a draft or rejected invoice before it is (re)submitted."""
        def op(conn):
            invoice = self._load(conn, project_id, DocumentKind.INVOICE, invoice_id)
            if invoice.status not in EDITABLE_INVOICE_STATUSES:
                raise StateError(
                    invoice.document_id, invoice.status.value, "Only draft or rejected invoices can be edited"
                )
            previous_po_id = invoice.po_id
            if "line_items" in data:
                items = [LineItem.from_dict(i, self.settings.default_vat_rate) for i in data["line_items"] or []]
                self._validate_lines(conn, project_id, items)
                invoice.line_items = items
            for attr in ("supplier", "supplier_id", "description", "department", "currency", "due_date"):
                if attr in data and data[attr] is not None:
                    setattr(invoice, attr, data[attr])
            if "po_id" in data:
                invoice.po_id = data["po_id"] or None
            self._linked_po(conn, project_id, invoice)
            invoice.updated_at = utc_now()
            self._save(conn, invoice)
            for po_id in {previous_po_id, invoice.po_id} - {None}:
                self._refresh_po_invoiced(conn, project_id, po_id)
            return WorkflowResult(invoice)

        return self._run("update_invoice", op)

    def submit_invoice(self, project_id: str, invoice_id: str, actor: Actor) -> WorkflowResult:
        """Draft or rejected invoice enters approval with a freshly generated chain."""
        def op(conn):
            invoice = self._load(conn, project_id, DocumentKind.INVOICE, invoice_id)
            if invoice.status not in EDITABLE_INVOICE_STATUSES:
                raise StateError(
                    invoice.document_id, invoice.status.value, "Only draft or rejected invoices can be submitted"
                )
            self._validate_lines(conn, project_id, invoice.line_items)
            po = self._linked_po(conn, project_id, invoice)
            membership = self._membership(conn, project_id)
            outcome = self._start_chain(conn, invoice, membership)
            self._save(conn, invoice)
            applied = self._after_submit(conn, invoice, outcome, actor)
            if invoice.posted:
                self._post_audit(conn, invoice)
            warnings = self._warnings(applied)
            if po is not None:
                warnings.extend(self._over_invoice_warning(self._refresh_po_invoiced(conn, project_id, po.document_id)))
            return WorkflowResult(invoice, applied, warnings, fully_approved=outcome.fully_approved)

        return self._run("submit_invoice", op)

    def _post_audit(self, conn: sqlite3.Connection, invoice: Invoice) -> None:
        self.audit.record(
            conn, invoice, AuditEventType.POSTED,
            f"Posted to budget ({invoice.base_amount:,.2f})",
            details={"po_id": invoice.po_id},
            idempotency_key=f"posted:{invoice.document_id}:{invoice.posted_at}",
        )

    # ------------------------------------------------------------------
    # Approval actions
    # ------------------------------------------------------------------

    def approve(
        self,
        project_id: str,
        kind: DocumentKind,
        document_id: str,
        actor: Actor,
        comment: Optional[str] = None,
    ) -> WorkflowResult:
        def op(conn):
            document = self._load(conn, project_id, kind, document_id)
            membership = self._membership(conn, project_id)
            outcome = approval_chains.apply_approval(
                document, actor.member_id, actor.display_name, comment=comment, membership=membership
            )
            self._save(conn, document)

            if outcome.skipped_step_ids:
                self.audit.record(
                    conn, document, AuditEventType.STEPS_SKIPPED,
                    f"Skipped non-blocking steps: {', '.join(outcome.skipped_step_ids)}",
                    details={"step_ids": outcome.skipped_step_ids, "amount": document.amount},
                )
            if outcome.step_id:
                step = next(s for s in document.approval_steps if s.id == outcome.step_id)
                self.audit.record(
                    conn, document, AuditEventType.STEP_APPROVED,
                    f"Step {step.order} approved ({len(step.approved_by)}/{len(step.resolved_approver_ids)})",
                    actor_id=actor.member_id, actor_name=actor.display_name,
                    details={"step_id": step.id, "comment": comment, "step_completed": outcome.step_completed},
                    idempotency_key=(
                        f"approve:{document.document_id}:r{document.approval_round}:{step.id}:{actor.member_id}"
                    ),
                )
            record_transition(kind.value, "approved_step")

            applied: List[AppliedDelta] = []
            warnings: List[str] = []
            if outcome.fully_approved:
                self.audit.record(
                    conn, document, AuditEventType.APPROVED, "Fully approved",
                    actor_id=document.approved_by, actor_name=document.approved_by_name,
                    details={"amount": document.amount},
                )
                record_transition(kind.value, "approved")
                applied = self._apply_ledger(conn, document, outcome.ledger_deltas, actor.member_id)
                warnings = self._warnings(applied)
                if isinstance(document, Invoice) and document.posted:
                    self._post_audit(conn, document)
            if isinstance(document, Invoice) and document.po_id:
                warnings.extend(
                    self._over_invoice_warning(self._refresh_po_invoiced(conn, project_id, document.po_id))
                )
            return WorkflowResult(document, applied, warnings, fully_approved=outcome.fully_approved)

        return self._run("approve", op)

    def reject(
        self,
        project_id: str,
        kind: DocumentKind,
        document_id: str,
        actor: Actor,
        reason: str,
    ) -> WorkflowResult:
        """Reject from the current step. A replay by the same actor changes nothing."""
        def op(conn):
            document = self._load(conn, project_id, kind, document_id)
            was_rejected = document.is_rejected
            membership = self._membership(conn, project_id)
            approval_chains.apply_rejection(
                document, actor.member_id, reason, actor_name=actor.display_name, membership=membership
            )
            if was_rejected:
                return WorkflowResult(document, changed=False)

            self._save(conn, document)
            self.audit.record(
                conn, document, AuditEventType.REJECTED, f"Rejected: {document.rejection_reason}",
                actor_id=actor.member_id, actor_name=actor.display_name,
                details={"reason": document.rejection_reason, "step": document.current_approval_step},
                idempotency_key=f"reject:{document.document_id}:r{document.approval_round}:{actor.member_id}",
            )
            record_transition(kind.value, "rejected")
            if isinstance(document, Invoice) and document.po_id:
                self._refresh_po_invoiced(conn, project_id, document.po_id)
            return WorkflowResult(document)

        return self._run("reject", op)

    def request_info(
        self,
        project_id: str,
        kind: DocumentKind,
        document_id: str,
        actor: Actor,
        message: str,
    ) -> Dict[str, Any]:
        def op(conn):
            document = self._load(conn, project_id, kind, document_id)
            membership = self._membership(conn, project_id)
            info = approval_chains.request_info(document, actor.member_id, message, membership)
            event = self.audit.record(
                conn, document, AuditEventType.INFO_REQUESTED, f"Information requested: {info['message']}",
                actor_id=actor.member_id, actor_name=actor.display_name, details=info,
            )
            record_transition(kind.value, "info_requested")
            return event.to_dict()

        return self._run("request_info", op)

    # ------------------------------------------------------------------
    # PO lifecycle
    # ------------------------------------------------------------------

    def close_po(self, project_id: str, po_id: str, actor: Actor) -> WorkflowResult:
        """Approved PO stops accepting invoices. The remaining commitment is reported, not released."""
        self.reauth.require(actor.member_id, actor.reauth_token, "close purchase order")

        def op(conn):
            po = self._load(conn, project_id, DocumentKind.PO, po_id)
            if po.status is not POStatus.APPROVED:
                raise StateError(po.document_id, po.status.value, "Only approved POs can be closed")
            reconciliation = self._refresh_po_invoiced(conn, project_id, po_id)
            po = self._load(conn, project_id, DocumentKind.PO, po_id)
            now = utc_now()
            po.status = POStatus.CLOSED
            po.closed_at = now
            po.closed_by = actor.member_id
            po.updated_at = now
            self._save(conn, po)
            warnings = []
            if reconciliation.remaining_amount > 0:
                warnings.append(f"PO {po.number} closed with {reconciliation.remaining_amount:,.2f} not invoiced")
            self.audit.record(
                conn, po, AuditEventType.CLOSED, f"Closed ({reconciliation.percentage_used:.1f}% invoiced)",
                actor_id=actor.member_id, actor_name=actor.display_name,
                details={"remaining_amount": reconciliation.remaining_amount},
            )
            record_transition("po", "closed")
            return WorkflowResult(po, warnings=warnings)

        return self._run("close_po", op)

    def reopen_po(self, project_id: str, po_id: str, actor: Actor) -> WorkflowResult:
        self.reauth.require(actor.member_id, actor.reauth_token, "reopen purchase order")

        def op(conn):
            po = self._load(conn, project_id, DocumentKind.PO, po_id)
            if po.status is not POStatus.CLOSED:
                raise StateError(po.document_id, po.status.value, "Only closed POs can be reopened")
            po.status = POStatus.APPROVED
            po.closed_at = None
            po.closed_by = None
            po.updated_at = utc_now()
            self._save(conn, po)
            self.audit.record(
                conn, po, AuditEventType.REOPENED, "Reopened",
                actor_id=actor.member_id, actor_name=actor.display_name,
            )
            record_transition("po", "reopened")
            return WorkflowResult(po)

        return self._run("reopen_po", op)

    def cancel_po(self, project_id: str, po_id: str, actor: Actor, reason: str) -> WorkflowResult:
        """Cancel a draft or approved PO with nothing invoiced; releases its commitment."""
        if not reason or not reason.strip():
            raise ValidationError("reason", "A cancellation reason is required")
        self.reauth.require(actor.member_id, actor.reauth_token, "cancel purchase order")

        def op(conn):
            po = self._load(conn, project_id, DocumentKind.PO, po_id)
            if po.status not in (POStatus.APPROVED, POStatus.DRAFT):
                raise StateError(po.document_id, po.status.value, "Only draft or approved POs can be cancelled")
            reconciliation = self._refresh_po_invoiced(conn, project_id, po_id)
            if reconciliation.invoiced_amount > 0:
                raise StateError(
                    po.document_id, po.status.value,
                    f"PO has {reconciliation.invoiced_amount:,.2f} invoiced; cancel its invoices first",
                )
            po = self._load(conn, project_id, DocumentKind.PO, po_id)
            deltas = cancel_po(po) if po.status is POStatus.APPROVED else []

            now = utc_now()
            po.status = POStatus.CANCELLED
            po.cancelled_at = now
            po.cancelled_by = actor.member_id
            po.cancellation_reason = reason.strip()
            po.committed_amount = 0.0
            po.updated_at = now
            self._save(conn, po)
            applied = self._apply_ledger(conn, po, deltas, actor.member_id)
            self.audit.record(
                conn, po, AuditEventType.CANCELLED, f"Cancelled: {po.cancellation_reason}",
                actor_id=actor.member_id, actor_name=actor.display_name,
                details={"released": [a.to_dict() for a in applied]},
            )
            record_transition("po", "cancelled")
            return WorkflowResult(po, applied, self._warnings(applied))

        return self._run("cancel_po", op)

    def modify_po(self, project_id: str, po_id: str, actor: Actor, reason: str) -> WorkflowResult:
        """Send an approved, uninvoiced PO back to draft as a new version."""
        if not reason or not reason.strip():
            raise ValidationError("reason", "A modification reason is required")

        def op(conn):
            po = self._load(conn, project_id, DocumentKind.PO, po_id)
            if po.status is not POStatus.APPROVED:
                raise StateError(po.document_id, po.status.value, "Only approved POs can be modified")
            reconciliation = self._refresh_po_invoiced(conn, project_id, po_id)
            if reconciliation.invoiced_amount > 0:
                raise StateError(po.document_id, po.status.value, "Invoiced POs cannot be modified")
            po = self._load(conn, project_id, DocumentKind.PO, po_id)

            deltas = cancel_po(po, reason=LedgerReason.PO_MODIFIED)
            po.modification_history.append(ModificationRecord(
                date=utc_now(),
                member_id=actor.member_id,
                member_name=actor.display_name,
                reason=reason.strip(),
                previous_version=po.po_version,
            ))
            po.po_version += 1
            po.status = POStatus.DRAFT
            po.committed_amount = 0.0
            po.approval_steps = []
            po.current_approval_step = 0
            po.approved_at = po.approved_by = po.approved_by_name = None
            po.auto_approved = False
            po.updated_at = utc_now()
            self._save(conn, po)
            applied = self._apply_ledger(conn, po, deltas, actor.member_id)
            self.audit.record(
                conn, po, AuditEventType.MODIFIED, f"Sent back to draft as version {po.po_version}: {reason.strip()}",
                actor_id=actor.member_id, actor_name=actor.display_name,
                details={"po_version": po.po_version},
            )
            record_transition("po", "modified")
            return WorkflowResult(po, applied, self._warnings(applied))

        return self._run("modify_po", op)

    # ------------------------------------------------------------------
    # Invoice lifecycle
    # ------------------------------------------------------------------

    def cancel_invoice(self, project_id: str, invoice_id: str, actor: Actor, reason: str) -> WorkflowResult:
        """Cancel an unpaid invoice, reversing exactly what its posting did."""
        if not reason or not reason.strip():
            raise ValidationError("reason", "A cancellation reason is required")
        self.reauth.require(actor.member_id, actor.reauth_token, "cancel invoice")

        def op(conn):
            invoice = self._load(conn, project_id, DocumentKind.INVOICE, invoice_id)
            if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
                raise StateError(invoice.document_id, invoice.status.value, "Paid or cancelled invoices cannot be cancelled")

            # Only a live posting is reversed, so a second cancel can never reverse twice
            deltas = cancel_invoice(invoice) if invoice.posted else []
            now = utc_now()
            invoice.status = InvoiceStatus.CANCELLED
            invoice.posted = False
            invoice.cancelled_at = now
            invoice.cancelled_by = actor.member_id
            invoice.cancellation_reason = reason.strip()
            invoice.updated_at = now
            self._save(conn, invoice)
            applied = self._apply_ledger(conn, invoice, deltas, actor.member_id)
            self.audit.record(
                conn, invoice, AuditEventType.CANCELLED, f"Cancelled: {invoice.cancellation_reason}",
                actor_id=actor.member_id, actor_name=actor.display_name,
                details={"reversed": [a.to_dict() for a in applied]},
            )
            record_transition("invoice", "cancelled")
            if invoice.po_id:
                self._refresh_po_invoiced(conn, project_id, invoice.po_id)
            return WorkflowResult(invoice, applied, self._warnings(applied))

        return self._run("cancel_invoice", op)

    def mark_paid(
        self,
        project_id: str,
        invoice_id: str,
        actor: Actor,
        paid_at: Optional[str] = None,
    ) -> WorkflowResult:
        def op(conn):
            invoice = self._load(conn, project_id, DocumentKind.INVOICE, invoice_id)
            if invoice.status not in AWAITING_PAYMENT_STATUSES:
                raise StateError(invoice.document_id, invoice.status.value, "Invoice is not awaiting payment")
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = paid_at or utc_now()
            invoice.updated_at = utc_now()
            self._save(conn, invoice)
            self.audit.record(
                conn, invoice, AuditEventType.PAID, "Marked as paid",
                actor_id=actor.member_id, actor_name=actor.display_name,
                details={"paid_at": invoice.paid_at},
            )
            record_transition("invoice", "paid")
            return WorkflowResult(invoice)

        return self._run("mark_paid", op)

    def refresh_overdue(self, project_id: str, today: Optional[date] = None) -> List[str]:
        """Flag approved, unpaid invoices past their due date. Returns flagged IDs."""
        today = today or date.today()
        candidates = [
            p["document_id"]
            for p in self.db.list_documents(project_id, kind=DocumentKind.INVOICE.value)
            if p.get("status") in (InvoiceStatus.PENDING.value, InvoiceStatus.APPROVED.value)
        ]
        flagged = []
        for invoice_id in candidates:
            def op(conn, invoice_id=invoice_id):
                invoice = self._load(conn, project_id, DocumentKind.INVOICE, invoice_id)
                if not invoice.is_overdue(today):
                    return False
                invoice.status = InvoiceStatus.OVERDUE
                invoice.updated_at = utc_now()
                self._save(conn, invoice)
                self.audit.record(
                    conn, invoice, AuditEventType.OVERDUE, f"Overdue since {invoice.due_date}",
                    idempotency_key=f"overdue:{invoice.document_id}:{invoice.due_date}",
                )
                return True

            if self._run("refresh_overdue", op):
                flagged.append(invoice_id)
        if flagged:
            logger.info("Project %s: %d invoices now overdue", project_id, len(flagged))
        return flagged

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_document(self, project_id: str, kind: DocumentKind, document_id: str) -> ApprovalDocument:
        return self._load(None, project_id, kind, document_id)

    def list_documents(
        self,
        project_id: str,
        kind: DocumentKind,
        status: Optional[str] = None,
    ) -> List[ApprovalDocument]:
        return [
            self._from_payload(p)
            for p in self.db.list_documents(project_id, kind=kind.value, status=status)
        ]

    def pending_approvals_for(
        self,
        project_id: str,
        member_id: str,
        kind: Optional[DocumentKind] = None,
    ) -> List[ApprovalDocument]:
        kinds = [kind] if kind else [DocumentKind.PO, DocumentKind.INVOICE]
        documents: List[ApprovalDocument] = []
        for k in kinds:
            documents.extend(self.list_documents(project_id, k, status="pending_approval"))
        return approval_chains.pending_approvals_for(member_id, documents, self.list_members(project_id))

    def get_reconciliation(self, project_id: str, po_id: str) -> POReconciliation:
        po = self._load(None, project_id, DocumentKind.PO, po_id)
        invoices = [
            self._from_payload(p)
            for p in self.db.list_documents(project_id, kind=DocumentKind.INVOICE.value, po_id=po_id)
        ]
        return reconcile_po(po, invoices)

    def get_timeline(self, project_id: str, kind: DocumentKind, document_id: str) -> DocumentTimeline:
        self._load(None, project_id, kind, document_id)
        return self.audit.get_timeline(document_id)


def get_accounting_workflow() -> AccountingWorkflowService:
    return AccountingWorkflowService()
