"""
Concurrent approvals against shared sub-accounts.

Each test fans work out over a thread pool and checks that the budget
figures equal the serial result: no lost updates, no double commits.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from budgetflow.services.approval_policies import DocumentKind
from budgetflow.services.audit_trail import AuditEventType
from budgetflow.services.auth import Actor
from budgetflow.services.errors import AuthorizationError, StateError
from budgetflow.services.purchase_orders import POStatus

PROJECT = "p1"


def _setup(service, extra_members=()):
    service.set_members(PROJECT, [
        {"member_id": "pm", "role": "PM"},
        {"member_id": "u1"},
        *extra_members,
    ])
    account = service.create_account(PROJECT, "200", "Grip")
    return service.create_sub_account(PROJECT, account["id"], "200-01", "Dollies", 100000).sub_account_id


def _po(service, sub_id, amount):
    return service.create_po(PROJECT, Actor("u1"), {
        "supplier": "Grip House", "line_items": [{"sub_account_id": sub_id, "base_amount": amount}],
    }).document


def _run_all(calls):
    """Run callables concurrently; return (results, errors)."""
    results, errors = [], []
    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [pool.submit(call) for call in calls]
        for future in futures:
            try:
                results.append(future.result())
            except Exception as exc:  # collected and asserted on by the caller
                errors.append(exc)
    return results, errors


def test_parallel_approvals_on_one_sub_account_lose_no_updates(service):
    sub_id = _setup(service)
    pos = [_po(service, sub_id, 100 + i) for i in range(8)]

    results, errors = _run_all([
        lambda po_id=po.document_id: service.approve(PROJECT, DocumentKind.PO, po_id, Actor("pm"))
        for po in pos
    ])

    assert errors == []
    assert all(r.fully_approved for r in results)
    sub = service.get_sub_account(PROJECT, sub_id)
    assert sub.committed == sum(100 + i for i in range(8))
    assert len(service.list_ledger(PROJECT, sub_account_id=sub_id)) == 8


def test_require_all_step_completes_and_commits_exactly_once(service):
    approvers = [f"a{i}" for i in range(5)]
    sub_id = _setup(service, [{"member_id": a} for a in approvers])
    service.save_policy(PROJECT, DocumentKind.PO, [
        {"order": 1, "approver_type": "fixed", "approvers": approvers, "require_all": True},
    ], "admin")
    po = _po(service, sub_id, 2500)

    results, errors = _run_all([
        lambda a=a: service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor(a))
        for a in approvers
    ])

    assert errors == []
    assert sum(1 for r in results if r.fully_approved) == 1
    stored = service.get_document(PROJECT, DocumentKind.PO, po.document_id)
    assert stored.status is POStatus.APPROVED
    assert sorted(stored.approval_steps[0].approved_by) == approvers
    assert service.get_sub_account(PROJECT, sub_id).committed == 2500
    assert len(service.list_ledger(PROJECT, document_id=po.document_id)) == 1
    assert service.audit.count_events(po.document_id, AuditEventType.STEP_APPROVED) == 5
    assert service.audit.count_events(po.document_id, AuditEventType.APPROVED) == 1


def test_racing_approvers_on_any_one_step_produce_one_winner(service):
    sub_id = _setup(service, [{"member_id": "ep", "role": "EP"}])
    po = _po(service, sub_id, 900)

    results, errors = _run_all([
        lambda a=a: service.approve(PROJECT, DocumentKind.PO, po.document_id, Actor(a))
        for a in ("pm", "ep")
    ])

    assert len(results) == 1 and results[0].fully_approved
    assert len(errors) == 1 and isinstance(errors[0], (StateError, AuthorizationError))
    assert service.get_sub_account(PROJECT, sub_id).committed == 900


def test_concurrent_auto_approved_invoices_sum_into_actual(service):
    sub_id = _setup(service)
    service.save_policy(PROJECT, DocumentKind.INVOICE, [], "admin")

    results, errors = _run_all([
        lambda: service.create_invoice(PROJECT, Actor("u1"), {
            "line_items": [{"sub_account_id": sub_id, "base_amount": 50}],
        })
        for _ in range(10)
    ])

    assert errors == []
    assert len({r.document.number for r in results}) == 10
    sub = service.get_sub_account(PROJECT, sub_id)
    assert (sub.committed, sub.actual) == (0, 500)
