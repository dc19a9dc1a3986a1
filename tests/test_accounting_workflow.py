from __future__ import annotations

from datetime import date

import pytest

from budgetflow.core.config import Settings
from budgetflow.services.accounting_workflow import AccountingWorkflowService
from budgetflow.services.approval_policies import DocumentKind
from budgetflow.services.approval_steps import StepStatus
from budgetflow.services.audit_trail import AuditEventType
from budgetflow.services.auth import Actor, Reauthenticator
from budgetflow.services.errors import (
    AuthorizationError,
    NotFoundError,
    PolicyError,
    ReauthenticationError,
    StateError,
    ValidationError,
)
from budgetflow.services.invoices import InvoiceStatus
from budgetflow.services.purchase_orders import POStatus

PROJECT = "p1"

MEMBERS = [
    {"member_id": "pm", "name": "Paula", "role": "PM"},
    {"member_id": "ep", "name": "Eli", "role": "EP"},
    {"member_id": "ctl", "name": "Carla", "role": "Controller"},
    {"member_id": "u1", "name": "Uma", "department": "Camera", "position": "Crew"},
    {"member_id": "u2", "name": "Ugo"},
    {"member_id": "hod-cam", "name": "Hana", "department": "Camera", "position": "HOD"},
]

REQUESTER = Actor("u1", "Uma")


def _setup(service: AccountingWorkflowService, budgeted: float = 50000) -> str:
    service.set_members(PROJECT, MEMBERS)
    account = service.create_account(PROJECT, "100", "Camera")
    return service.create_sub_account(PROJECT, account["id"], "100-01", "Lenses", budgeted).sub_account_id


def _po_data(sub_id: str, *amounts: float) -> dict:
    return {
        "supplier": "Acme Rentals",
        "line_items": [{"description": f"Item {i}", "sub_account_id": sub_id, "base_amount": a}
                       for i, a in enumerate(amounts)],
    }


def _sub(service, sub_id):
    return service.get_sub_account(PROJECT, sub_id)


def test_scenario_c_through_the_store(service):
    sub_id = _setup(service)

    created = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 10000))
    po = created.document
    assert po.status is POStatus.PENDING_APPROVAL
    assert po.number == "0001"
    assert po.department == "Camera"
    assert _sub(service, sub_id).committed == 0

    approved = service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("pm"))
    assert approved.fully_approved
    assert _sub(service, sub_id).committed == 10000

    invoice = service.create_invoice(PROJECT, REQUESTER, {
        "po_id": po.document_id,
        "line_items": [{"sub_account_id": sub_id, "base_amount": 10000,
                        "po_item_id": po.line_items[0].line_id}],
    }).document
    assert invoice.po_number == "0001"
    assert service.get_document(PROJECT, DocumentKind.PO, po.document_id).invoiced_amount == 10000

    service.approve(PROJECT, DocumentKind.INVOICE, invoice.document_id, Actor("ctl"))
    sub = _sub(service, sub_id)
    assert (sub.committed, sub.actual) == (0, 10000)
    assert service.get_reconciliation(PROJECT, po.document_id).remaining_amount == 0

    cancelled = service.cancel_invoice(PROJECT, invoice.document_id, Actor("ctl"), "Duplicate")
    assert cancelled.document.status is InvoiceStatus.CANCELLED
    assert not cancelled.document.posted
    sub = _sub(service, sub_id)
    assert (sub.committed, sub.actual) == (10000, 0)
    assert service.get_document(PROJECT, DocumentKind.PO, po.document_id).invoiced_amount == 0

    with pytest.raises(StateError):
        service.cancel_invoice(PROJECT, invoice.document_id, Actor("ctl"), "Again")
    assert len(service.list_ledger(PROJECT, sub_account_id=sub_id)) == 3


def test_empty_policy_auto_approves_at_creation(service):
    sub_id = _setup(service)
    service.save_policy(PROJECT, DocumentKind.PO, [], updated_by="admin")

    result = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 700))

    assert result.fully_approved
    assert result.document.status is POStatus.APPROVED
    assert result.document.auto_approved
    assert _sub(service, sub_id).committed == 700
    events = [e.event_type for e in service.get_timeline(PROJECT, DocumentKind.PO, result.document.document_id).events]
    assert events[:3] == [AuditEventType.CREATED, AuditEventType.SUBMITTED, AuditEventType.AUTO_APPROVED]


def test_draft_po_does_not_touch_the_budget_until_approved(service):
    sub_id = _setup(service)

    draft = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 300), submit=False).document
    assert draft.status is POStatus.DRAFT
    assert draft.approval_steps == []

    submitted = service.submit_po(PROJECT, draft.document_id, REQUESTER).document
    assert submitted.status is POStatus.PENDING_APPROVAL
    with pytest.raises(StateError):
        service.submit_po(PROJECT, draft.document_id, REQUESTER)


def test_rejection_is_idempotent_and_logged_once(service):
    sub_id = _setup(service)
    po = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 100)).document

    first = service.reject(PROJECT, DocumentKind.PO, po.document_id, Actor("pm"), "Wrong supplier")
    replay = service.reject(PROJECT, DocumentKind.PO, po.document_id, Actor("pm"), "Wrong supplier")

    assert first.changed and not replay.changed
    assert replay.document.status is POStatus.REJECTED
    assert service.audit.count_events(po.document_id, AuditEventType.REJECTED) == 1
    with pytest.raises(StateError):
        service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("ep"))
    assert _sub(service, sub_id).committed == 0


def test_unauthorized_approval_changes_nothing(service):
    sub_id = _setup(service)
    po = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 100)).document

    with pytest.raises(AuthorizationError):
        service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("u2"))

    stored = service.get_document(PROJECT, DocumentKind.PO, po.document_id)
    assert stored.version == po.version
    assert stored.approval_steps[0].approved_by == []


def test_policy_versions_do_not_rewrite_in_flight_chains(service):
    sub_id = _setup(service)
    v1 = service.save_policy(PROJECT, DocumentKind.PO, [{"order": 1, "approver_type": "fixed", "approvers": ["u2"]}], "admin")
    po = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 100)).document

    v2 = service.save_policy(PROJECT, DocumentKind.PO, [{"order": 1, "approver_type": "fixed", "approvers": ["ep"]}], "admin")

    assert (v1.version, v2.version) == (1, 2)
    assert [p.version for p in service.list_policy_versions(PROJECT, DocumentKind.PO)] == [2, 1]
    assert service.get_policy(PROJECT, DocumentKind.PO).steps[0].approvers == ["ep"]
    assert service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("u2")).fully_approved


def test_invalid_policy_is_not_stored(service):
    with pytest.raises(PolicyError):
        service.save_policy(PROJECT, DocumentKind.INVOICE, [
            {"order": 1, "approver_type": "fixed", "approvers": ["u1"],
             "amount_gate": {"condition": "between", "threshold": 10}},
        ], "admin")
    assert service.list_policy_versions(PROJECT, DocumentKind.INVOICE) == []
    assert service.get_policy(PROJECT, DocumentKind.INVOICE).version == 0


def test_gated_step_skipped_for_small_amounts(service):
    sub_id = _setup(service)
    service.save_policy(PROJECT, DocumentKind.PO, [
        {"order": 1, "approver_type": "role", "roles": ["PM"]},
        {"order": 2, "approver_type": "fixed", "approvers": ["ep"],
         "amount_gate": {"condition": "above", "threshold": 5000}},
    ], "admin")

    small = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 4000)).document
    large = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 6000)).document

    assert service.approve(PROJECT, DocumentKind.PO, small.document_id, Actor("pm")).fully_approved
    stored = service.get_document(PROJECT, DocumentKind.PO, small.document_id)
    assert stored.approval_steps[1].status is StepStatus.SKIPPED
    assert service.audit.count_events(small.document_id, AuditEventType.STEPS_SKIPPED) == 1

    assert not service.approve(PROJECT, DocumentKind.PO, large.document_id, Actor("pm")).fully_approved
    assert [d.document_id for d in service.pending_approvals_for(PROJECT, "ep")] == [large.document_id]
    assert service.approve(PROJECT, DocumentKind.PO, large.document_id, Actor("ep")).fully_approved


def test_deferred_hod_step_resolves_against_current_directory(service):
    sub_id = _setup(service)
    service.save_policy(PROJECT, DocumentKind.PO, [{"order": 1, "approver_type": "hod"}], "admin")
    po = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 100)).document
    assert po.approval_steps[0].resolved_approver_ids == ["hod-cam"]

    service.set_members(PROJECT, [m for m in MEMBERS if m["member_id"] != "hod-cam"] + [
        {"member_id": "hod-new", "department": "Camera", "position": "HOD"},
    ])

    with pytest.raises(AuthorizationError):
        service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("hod-cam"))
    assert service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("hod-new")).fully_approved


def test_request_info_is_recorded_on_the_timeline(service):
    sub_id = _setup(service)
    po = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 100)).document

    event = service.request_info(PROJECT, DocumentKind.PO, po.document_id, Actor("ep"), "Which quote?")

    assert event["event_type"] == "info_requested"
    assert event["details"]["requested_from"] == "u1"
    stored = service.get_document(PROJECT, DocumentKind.PO, po.document_id)
    assert stored.status is POStatus.PENDING_APPROVAL
    assert stored.version == po.version


def test_destructive_po_actions_require_reauthentication(db):
    service = AccountingWorkflowService(db=db, settings=Settings(default_vat_rate=0.0, reauth_secret="s3cret"))
    sub_id = _setup(service)
    po = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 1000)).document
    service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("pm"))

    with pytest.raises(ReauthenticationError):
        service.close_po(PROJECT, po.document_id, Actor("pm"))
    with pytest.raises(ReauthenticationError):
        service.close_po(PROJECT, po.document_id, Actor("pm", reauth_token="forged"))

    pm = Actor("pm", reauth_token=Reauthenticator("s3cret").issue_token("pm"))
    closed = service.close_po(PROJECT, po.document_id, pm)
    assert closed.document.status is POStatus.CLOSED
    assert closed.document.closed_by == "pm"
    assert "not invoiced" in closed.warnings[0]

    with pytest.raises(StateError):
        service.create_invoice(PROJECT, REQUESTER, {
            "po_id": po.document_id, "line_items": [{"sub_account_id": sub_id, "base_amount": 10}],
        })

    reopened = service.reopen_po(PROJECT, po.document_id, pm)
    assert reopened.document.status is POStatus.APPROVED
    assert reopened.document.closed_at is None

    cancelled = service.cancel_po(PROJECT, po.document_id, pm, "Shoot moved")
    assert cancelled.document.status is POStatus.CANCELLED
    assert cancelled.document.cancellation_reason == "Shoot moved"
    assert _sub(service, sub_id).committed == 0


def test_po_with_invoices_cannot_be_cancelled_or_modified(service):
    sub_id = _setup(service)
    po = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 1000)).document
    service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("pm"))
    service.create_invoice(PROJECT, REQUESTER, {
        "po_id": po.document_id, "line_items": [{"sub_account_id": sub_id, "base_amount": 400}],
    })

    with pytest.raises(StateError):
        service.cancel_po(PROJECT, po.document_id, Actor("pm"), "No longer needed")
    with pytest.raises(StateError):
        service.modify_po(PROJECT, po.document_id, Actor("pm"), "Add a lens")
    with pytest.raises(ValidationError):
        service.cancel_po(PROJECT, po.document_id, Actor("pm"), " ")


def test_modify_sends_po_back_to_draft_as_new_version(service):
    sub_id = _setup(service)
    po = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 1000)).document
    service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("pm"))

    modified = service.modify_po(PROJECT, po.document_id, Actor("pm"), "Add a lens").document

    assert modified.status is POStatus.DRAFT
    assert modified.po_version == 2
    assert modified.committed_amount == 0
    assert modified.approval_steps == []
    assert modified.modification_history[0].previous_version == 1
    assert _sub(service, sub_id).committed == 0

    service.update_po(PROJECT, po.document_id, Actor("pm"), {
        "line_items": [{"sub_account_id": sub_id, "base_amount": 1000}, {"sub_account_id": sub_id, "base_amount": 250}],
    })
    resubmitted = service.submit_po(PROJECT, po.document_id, REQUESTER).document
    assert resubmitted.base_amount == 1250
    service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("ep"))
    assert _sub(service, sub_id).committed == 1250


def test_lines_must_reference_known_sub_accounts(service):
    sub_id = _setup(service)
    with pytest.raises(ValidationError):
        service.create_po(PROJECT, REQUESTER, _po_data("SUB-missing", 100))
    with pytest.raises(ValidationError):
        service.create_po(PROJECT, REQUESTER, {"line_items": []})
    with pytest.raises(ValidationError):
        service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 0))
    with pytest.raises(NotFoundError):
        service.get_document(PROJECT, DocumentKind.PO, "PO-NOPE")


def test_invoice_lines_must_match_po_lines(service):
    sub_id = _setup(service)
    service.save_policy(PROJECT, DocumentKind.PO, [], "admin")
    po = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 1000)).document

    with pytest.raises(ValidationError):
        service.create_invoice(PROJECT, REQUESTER, {
            "po_id": po.document_id,
            "line_items": [{"sub_account_id": sub_id, "base_amount": 10, "po_item_id": "nope"}],
        })


def test_overspend_is_warned_and_audited(service):
    sub_id = _setup(service, budgeted=1000)
    service.save_policy(PROJECT, DocumentKind.PO, [], "admin")

    result = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 1500))

    assert result.warnings and "overspent" in result.warnings[0]
    assert service.audit.count_events(result.document.document_id, AuditEventType.OVERSPEND_WARNING) == 1
    summary = service.get_budget_summary(PROJECT)
    assert summary["totals"]["status"] == "overspent"
    assert summary["accounts"][0]["sub_accounts"][0]["status"] == "overspent"
    assert summary["warnings"]


def test_budget_preview_does_not_write(service):
    sub_id = _setup(service, budgeted=1000)
    impact = service.preview_budget_impact(PROJECT, [{"sub_account_id": sub_id, "base_amount": 950}])

    assert impact[0]["status_after"] == "critical"
    assert _sub(service, sub_id).committed == 0


def test_payment_and_overdue_tracking(service):
    sub_id = _setup(service)
    service.save_policy(PROJECT, DocumentKind.INVOICE, [], "admin")
    invoice = service.create_invoice(PROJECT, REQUESTER, {
        "due_date": "2026-01-01", "line_items": [{"sub_account_id": sub_id, "base_amount": 80}],
    }).document
    assert invoice.status is InvoiceStatus.PENDING
    assert _sub(service, sub_id).actual == 80

    assert service.refresh_overdue(PROJECT, today=date(2025, 12, 31)) == []
    assert service.refresh_overdue(PROJECT, today=date(2026, 2, 1)) == [invoice.document_id]

    paid = service.mark_paid(PROJECT, invoice.document_id, Actor("ctl")).document
    assert paid.status is InvoiceStatus.PAID and paid.paid_at
    with pytest.raises(StateError):
        service.cancel_invoice(PROJECT, invoice.document_id, Actor("ctl"), "Too late")
    with pytest.raises(StateError):
        service.mark_paid(PROJECT, invoice.document_id, Actor("ctl"))


def test_proforma_is_replaced_by_final_invoice(service):
    sub_id = _setup(service)
    service.save_policy(PROJECT, DocumentKind.INVOICE, [], "admin")
    proforma = service.create_invoice(PROJECT, REQUESTER, {
        "document_type": "proforma", "line_items": [{"sub_account_id": sub_id, "base_amount": 500}],
    }).document
    assert not proforma.posted
    assert proforma.display_number == "PRF-0001"
    assert _sub(service, sub_id).actual == 0

    final = service.create_invoice(PROJECT, REQUESTER, {
        "replaces_document_id": proforma.document_id,
        "line_items": [{"sub_account_id": sub_id, "base_amount": 500}],
    }).document

    assert final.posted
    assert _sub(service, sub_id).actual == 500
    stored = service.get_document(PROJECT, DocumentKind.INVOICE, proforma.document_id)
    assert stored.replaced_by_document_id == final.document_id
    with pytest.raises(StateError):
        service.create_invoice(PROJECT, REQUESTER, {
            "replaces_document_id": proforma.document_id,
            "line_items": [{"sub_account_id": sub_id, "base_amount": 500}],
        })


def test_directory_change_settles_documents_left_without_approvers(service):
    sub_id = _setup(service)
    service.save_policy(PROJECT, DocumentKind.PO, [{"order": 1, "approver_type": "hod"}], "admin")
    po = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 700)).document
    assert po.status is POStatus.PENDING_APPROVAL

    service.set_members(PROJECT, [m for m in MEMBERS if m["member_id"] != "hod-cam"])

    stored = service.get_document(PROJECT, DocumentKind.PO, po.document_id)
    assert stored.status is POStatus.APPROVED
    assert stored.auto_approved
    assert stored.approval_steps[0].status is StepStatus.SKIPPED
    assert _sub(service, sub_id).committed == 700
    assert service.audit.count_events(po.document_id, AuditEventType.STEPS_SKIPPED) == 1
    assert service.audit.count_events(po.document_id, AuditEventType.AUTO_APPROVED) == 1
    with pytest.raises(StateError):
        service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("u2"))
    assert len(service.list_ledger(PROJECT, document_id=po.document_id)) == 1


def test_rejected_po_is_edited_and_resubmitted(service):
    sub_id = _setup(service)
    po = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 100)).document
    service.reject(PROJECT, DocumentKind.PO, po.document_id, Actor("pm"), "Wrong supplier")

    service.update_po(PROJECT, po.document_id, REQUESTER, {"supplier": "Lens House"})
    resubmitted = service.submit_po(PROJECT, po.document_id, REQUESTER).document

    assert resubmitted.status is POStatus.PENDING_APPROVAL
    assert resubmitted.supplier == "Lens House"
    assert resubmitted.approval_round == 2
    assert resubmitted.rejection_reason is None

    service.reject(PROJECT, DocumentKind.PO, po.document_id, Actor("pm"), "Still wrong")
    assert service.audit.count_events(po.document_id, AuditEventType.REJECTED) == 2


def test_second_approval_round_records_its_own_decisions(service):
    sub_id = _setup(service)
    po = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 1000)).document
    service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("pm"))
    service.modify_po(PROJECT, po.document_id, Actor("pm"), "Add a lens")
    service.update_po(PROJECT, po.document_id, REQUESTER, {
        "line_items": [{"sub_account_id": sub_id, "base_amount": 1200}],
    })
    service.submit_po(PROJECT, po.document_id, REQUESTER)

    result = service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("pm"))

    assert result.fully_approved
    assert service.audit.count_events(po.document_id, AuditEventType.STEP_APPROVED) == 2
    assert service.audit.count_events(po.document_id, AuditEventType.APPROVED) == 2
    assert _sub(service, sub_id).committed == 1200


def test_rejected_invoice_is_edited_and_resubmitted(service):
    sub_id = _setup(service)
    po = service.create_po(PROJECT, REQUESTER, _po_data(sub_id, 1000)).document
    service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor("pm"))
    invoice = service.create_invoice(PROJECT, REQUESTER, {
        "po_id": po.document_id, "line_items": [{"sub_account_id": sub_id, "base_amount": 400}],
    }).document
    service.reject(PROJECT, DocumentKind.INVOICE, invoice.document_id, Actor("ctl"), "Wrong amount")

    edited = service.update_invoice(PROJECT, invoice.document_id, REQUESTER, {
        "line_items": [{"sub_account_id": sub_id, "base_amount": 350}], "due_date": "2030-02-28",
    }).document
    assert edited.status is InvoiceStatus.REJECTED
    assert edited.po_number == po.number

    submitted = service.submit_invoice(PROJECT, invoice.document_id, REQUESTER).document
    assert submitted.status is InvoiceStatus.PENDING_APPROVAL
    assert submitted.approval_round == 2
    assert service.get_reconciliation(PROJECT, po.document_id).invoiced_amount == 350

    assert service.approve(PROJECT, DocumentKind.INVOICE, invoice.document_id, Actor("ctl")).fully_approved
    sub = _sub(service, sub_id)
    assert (sub.committed, sub.actual) == (650, 350)
    with pytest.raises(StateError):
        service.update_invoice(PROJECT, invoice.document_id, REQUESTER, {"supplier": "Other"})
    with pytest.raises(StateError):
        service.submit_invoice(PROJECT, invoice.document_id, REQUESTER)


def test_draft_invoice_is_submitted_later(service):
    sub_id = _setup(service)
    draft = service.create_invoice(PROJECT, REQUESTER, {
        "line_items": [{"sub_account_id": sub_id, "base_amount": 90}],
    }, submit=False).document
    assert draft.status is InvoiceStatus.DRAFT

    with pytest.raises(ValidationError):
        service.update_invoice(PROJECT, draft.document_id, REQUESTER, {"line_items": []})

    submitted = service.submit_invoice(PROJECT, draft.document_id, REQUESTER)
    assert submitted.document.status is InvoiceStatus.PENDING_APPROVAL
    assert service.audit.count_events(draft.document_id, AuditEventType.SUBMITTED) == 1
