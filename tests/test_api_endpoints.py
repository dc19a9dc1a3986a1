"""
Tests for API Endpoints

Tests the FastAPI endpoints for the Budgetflow API.
"""

import pytest
from fastapi.testclient import TestClient

from budgetflow.core import config as config_module
from main import app

PROJECT_URL = "/api/projects/p1"


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _as(member_id: str) -> dict:
    return {"X-Member-Id": member_id}


def _seed(client) -> str:
    """Members plus one sub-account; returns the sub-account ID."""
    response = client.put(f"{PROJECT_URL}/members", json={"members": [
        {"member_id": "pm", "name": "Paula", "role": "PM"},
        {"member_id": "ctl", "role": "Controller"},
        {"member_id": "u1", "name": "Uma", "department": "Camera"},
        {"member_id": "u2"},
    ]})
    assert response.status_code == 200
    account = client.post(f"{PROJECT_URL}/budget/accounts", json={"code": "100", "description": "Camera"})
    assert account.status_code == 201
    sub = client.post(
        f"{PROJECT_URL}/budget/accounts/{account.json()['account']['id']}/subaccounts",
        json={"code": "100-01", "description": "Lenses", "budgeted": 20000},
    )
    assert sub.status_code == 201
    return sub.json()["sub_account"]["sub_account_id"]


def _create_po(client, sub_id: str, amount: float = 500) -> dict:
    response = client.post(f"{PROJECT_URL}/pos", headers=_as("u1"), json={
        "supplier": "Acme Rentals",
        "line_items": [{"description": "Lens kit", "sub_account_id": sub_id, "base_amount": amount}],
    })
    assert response.status_code == 201
    return response.json()["document"]


class TestHealthEndpoints:
    """Test health check endpoints."""

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "ok"

    def test_metrics_count_requests_and_transitions(self, client):
        client.get("/health")
        response = client.get("/metrics")
        assert response.status_code == 200
        data = response.json()
        assert data["requests"]["total"] >= 1
        assert "transitions" in data


class TestPurchaseOrderFlow:
    """PO from creation to committed budget."""

    def test_create_approve_and_commit(self, client):
        sub_id = _seed(client)
        po = _create_po(client, sub_id)
        assert po["status"] == "pending_approval"
        assert po["created_by_name"] == "Uma"

        pending = client.get(f"{PROJECT_URL}/approvals/pending", headers=_as("pm")).json()
        assert pending["count"] == 1
        assert pending["documents"][0]["document_id"] == po["document_id"]

        response = client.post(
            f"{PROJECT_URL}/approvals/po/{po['document_id']}/approve",
            headers=_as("pm"),
            json={"comment": "Fine"},
        )
        assert response.status_code == 200
        assert response.json()["fully_approved"] is True
        assert response.json()["ledger"][0]["committed_delta"] == 500

        budget = client.get(f"{PROJECT_URL}/budget").json()
        assert budget["totals"]["committed"] == 500
        assert budget["totals"]["available"] == 19500

        timeline = client.get(f"{PROJECT_URL}/approvals/po/{po['document_id']}/timeline").json()
        assert [e["event_type"] for e in timeline["events"]][-2:] == ["step_approved", "approved"]

    def test_invoice_against_po_updates_reconciliation(self, client):
        sub_id = _seed(client)
        po = _create_po(client, sub_id, 1000)
        client.post(f"{PROJECT_URL}/approvals/po/{po['document_id']}/approve", headers=_as("pm"), json={})

        response = client.post(f"{PROJECT_URL}/invoices", headers=_as("u1"), json={
            "po_id": po["document_id"],
            "due_date": "2030-01-31",
            "line_items": [{"sub_account_id": sub_id, "base_amount": 400,
                            "po_item_id": po["line_items"][0]["line_id"]}],
        })
        assert response.status_code == 201
        invoice = response.json()["document"]
        assert invoice["po_number"] == po["number"]

        reconciliation = client.get(f"{PROJECT_URL}/pos/{po['document_id']}/reconciliation").json()["reconciliation"]
        assert reconciliation["invoiced_amount"] == 400
        assert reconciliation["remaining_amount"] == 600

        client.post(f"{PROJECT_URL}/approvals/invoice/{invoice['document_id']}/approve", headers=_as("ctl"), json={})
        budget = client.get(f"{PROJECT_URL}/budget").json()
        assert budget["totals"]["committed"] == 600
        assert budget["totals"]["actual"] == 400

    def test_rejected_invoice_is_edited_and_resubmitted(self, client):
        sub_id = _seed(client)
        invoice = client.post(f"{PROJECT_URL}/invoices", headers=_as("u1"), json={
            "line_items": [{"sub_account_id": sub_id, "base_amount": 300}],
        }).json()["document"]
        url = f"{PROJECT_URL}/invoices/{invoice['document_id']}"
        client.post(
            f"{PROJECT_URL}/approvals/invoice/{invoice['document_id']}/reject",
            headers=_as("ctl"), json={"reason": "Missing VAT number"},
        )

        edited = client.put(url, headers=_as("u1"), json={"supplier": "Acme Rentals SL"})
        assert edited.status_code == 200
        assert edited.json()["document"]["status"] == "rejected"

        submitted = client.post(f"{url}/submit", headers=_as("u1"))
        assert submitted.status_code == 200
        assert submitted.json()["document"]["status"] == "pending_approval"
        assert submitted.json()["document"]["approval_round"] == 2
        assert client.post(f"{url}/submit", headers=_as("u1")).status_code == 409


class TestErrorResponses:
    """Structured errors from the workflow service."""

    def test_non_approver_gets_403(self, client):
        sub_id = _seed(client)
        po = _create_po(client, sub_id)
        response = client.post(f"{PROJECT_URL}/approvals/po/{po['document_id']}/approve", headers=_as("u2"), json={})
        assert response.status_code == 403
        assert response.json()["error"] == "NOT_AUTHORIZED"

    def test_blank_rejection_reason_is_422(self, client):
        sub_id = _seed(client)
        po = _create_po(client, sub_id)
        response = client.post(
            f"{PROJECT_URL}/approvals/po/{po['document_id']}/reject", headers=_as("pm"), json={"reason": "   "}
        )
        assert response.status_code == 422

    def test_rejected_document_cannot_be_approved(self, client):
        sub_id = _seed(client)
        po = _create_po(client, sub_id)
        url = f"{PROJECT_URL}/approvals/po/{po['document_id']}"
        assert client.post(f"{url}/reject", headers=_as("pm"), json={"reason": "No"}).status_code == 200
        response = client.post(f"{url}/approve", headers=_as("pm"), json={})
        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE"

    def test_invalid_policy_is_rejected(self, client):
        response = client.put(f"{PROJECT_URL}/policies/invoice", headers=_as("pm"), json={"steps": [
            {"order": 1, "approver_type": "fixed", "approvers": ["u1"],
             "amount_gate": {"condition": "between", "threshold": 100}},
        ]})
        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_POLICY"
        versions = client.get(f"{PROJECT_URL}/policies/invoice/versions").json()
        assert versions["versions"] == []

    def test_unknown_kind_is_400(self, client):
        response = client.get(f"{PROJECT_URL}/policies/receipt")
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_REQUEST"

    def test_member_header_is_required(self, client):
        sub_id = _seed(client)
        response = client.post(f"{PROJECT_URL}/pos", json={
            "line_items": [{"sub_account_id": sub_id, "base_amount": 10}],
        })
        assert response.status_code == 422

    def test_unknown_po_is_404(self, client):
        response = client.get(f"{PROJECT_URL}/pos/PO-missing")
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"


class TestAuthentication:
    """API key and reauthentication gates."""

    def test_api_key_enforced_when_configured(self, client, monkeypatch):
        monkeypatch.setenv("API_KEY", "test-key")
        config_module.reset_settings()

        missing = client.get(f"{PROJECT_URL}/members")
        assert missing.status_code == 401
        assert missing.headers["www-authenticate"] == "ApiKey"
        assert missing.json()["detail"]["error"] == "INVALID_API_KEY"

        wrong = client.get(f"{PROJECT_URL}/members", headers={"X-API-Key": "wrong"})
        assert wrong.status_code == 401
        assert wrong.json()["detail"]["error"] == "INVALID_API_KEY"
        assert client.get(f"{PROJECT_URL}/members", headers={"X-API-Key": "test-key"}).status_code == 200

    def test_close_needs_reauth_token_when_secret_set(self, client, monkeypatch):
        monkeypatch.setenv("BUDGETFLOW_REAUTH_SECRET", "s3cret")
        config_module.reset_settings()
        sub_id = _seed(client)
        po = _create_po(client, sub_id)
        client.post(f"{PROJECT_URL}/approvals/po/{po['document_id']}/approve", headers=_as("pm"), json={})

        response = client.post(f"{PROJECT_URL}/pos/{po['document_id']}/close", headers=_as("pm"))
        assert response.status_code == 401
        assert response.json()["error"] == "REAUTH_REQUIRED"
