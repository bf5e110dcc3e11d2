"""
Integration tests for the Lending Payments API
Tests end-to-end payment workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from core_lending.api import app, LendingSystem, get_lending_system
from core_lending.config import LendingConfig
from core_lending.exceptions import NetworkError, ProcessorTimeout, ProcessorRejected
from core_lending.gateway import MockProcessorGateway


@pytest.fixture
def system():
    """Lending system on in-memory storage and the mock processor"""
    test_system = LendingSystem(
        config=LendingConfig(use_in_memory_storage=True, enable_notifications=False),
        gateway=MockProcessorGateway()
    )
    yield test_system
    test_system.close()


@pytest.fixture
def client(system):
    """Test client with the lending system dependency overridden"""
    app.dependency_overrides[get_lending_system] = lambda: system
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_loan(client, **overrides):
    body = {
        "principal_amount": "500.00",
        "annual_interest_rate": "0",
        "payment_frequency": "monthly",
        "number_of_payments": 2,
        "first_payment_date": "2026-11-01",
        "processor_customer_id": "C-1"
    }
    body.update(overrides)
    r = client.post("/loans", json=body, headers={"X-User-Id": "underwriter"})
    assert r.status_code == 201, r.text
    return r.json()


def disburse_and_settle(client, loan_id):
    r = client.post(f"/loans/{loan_id}/disbursement")
    assert r.status_code == 201, r.text
    txn_id = r.json()["transaction"]["id"]
    assert client.post(f"/transactions/{txn_id}/authorize").status_code == 200
    r = client.post(f"/transactions/{txn_id}/confirm")
    assert r.status_code == 200, r.text
    return txn_id


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert data["processor_reachable"] is True

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "transactions" in r.json()["endpoints"]


class TestLoanEndpoints:
    """Loan records, schedules and listing"""

    def test_create_and_get_loan(self, client):
        loan = create_loan(client)
        assert loan["status"] == "pending_disbursement"
        assert loan["principal_amount"] == {"amount": "500.00", "currency": "CAD"}

        r = client.get(f"/loans/{loan['id']}")
        assert r.status_code == 200
        assert r.json()["loan_number"] == loan["loan_number"]

    def test_schedule(self, client):
        loan = create_loan(client)
        r = client.get(f"/loans/{loan['id']}/schedule")
        schedule = r.json()["schedule"]
        assert [(e["schedule_slot"], e["due_date"], e["amount"]) for e in schedule] == [
            (1, "2026-11-01", "250.00"),
            (2, "2026-12-01", "250.00"),
        ]

    def test_formatted_admin_amounts(self, client):
        loan = create_loan(client, principal_amount="$1,000.00", fees="12,50")
        assert loan["principal_amount"]["amount"] == "1000.00"
        assert loan["fees"] == "12.50"

    def test_invalid_loan_requests(self, client):
        r = client.post("/loans", json={"principal_amount": "abc"})
        assert r.status_code == 400
        assert r.json()["error"] == "ValidationError"

        r = client.post("/loans", json={"principal_amount": "100.00", "payment_frequency": "daily"})
        assert r.status_code == 400

        r = client.post("/loans", json={"principal_amount": "100.00", "currency": "EUR"})
        assert r.status_code == 400

    def test_unknown_loan(self, client):
        assert client.get("/loans/missing").status_code == 404
        assert client.post("/loans/missing/disbursement").status_code == 404

    def test_list_loans(self, client):
        create_loan(client)
        active = create_loan(client)
        disburse_and_settle(client, active["id"])

        assert client.get("/loans").json()["count"] == 2
        r = client.get("/loans", params={"loan_status": "active"})
        assert [l["id"] for l in r.json()["loans"]] == [active["id"]]
        assert client.get("/loans", params={"loan_status": "bogus"}).status_code == 400


class TestPaymentFlow:
    """End-to-end disbursement and collection over HTTP"""

    def test_full_lifecycle(self, client):
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['id']}/disbursement", headers={"X-User-Id": "ops"})
        assert r.status_code == 201
        disbursement = r.json()["transaction"]
        assert disbursement["status"] == "initiated"
        assert disbursement["external_id"] == "X1"

        # Asking again returns the active record
        r = client.post(f"/loans/{loan['id']}/disbursement")
        assert r.status_code == 200
        assert r.json()["created"] is False
        assert r.json()["transaction"]["id"] == disbursement["id"]

        assert client.post(f"/transactions/{disbursement['id']}/authorize").json()["status"] == "authorized"
        r = client.post(f"/transactions/{disbursement['id']}/confirm",
                        json={"settled_at": "2099-01-01T00:00:00+00:00"})
        assert r.json()["status"] == "completed"

        loan_view = client.get(f"/loans/{loan['id']}").json()
        assert loan_view["status"] == "active"
        assert loan_view["disbursement_transaction_id"] == disbursement["id"]

        collections = client.get(f"/loans/{loan['id']}/transactions", params={"kind": "collection"}).json()
        assert [t["status"] for t in collections["transactions"]] == ["pending", "pending"]

        for slot in (1, 2):
            r = client.post(f"/loans/{loan['id']}/collections", json={"schedule_slot": slot})
            assert r.status_code == 200  # placeholder already materialized
            txn_id = r.json()["transaction"]["id"]
            assert r.json()["transaction"]["status"] == "initiated"
            client.post(f"/transactions/{txn_id}/authorize")
            client.post(f"/transactions/{txn_id}/confirm")

        loan_view = client.get(f"/loans/{loan['id']}").json()
        assert loan_view["status"] == "completed"
        assert loan_view["remaining_balance"]["amount"] == "0.00"

        assert client.get("/reconciliation/audit/verify").json()["valid"] is True

    def test_confirm_requires_authorized(self, client):
        loan = create_loan(client)
        txn = client.post(f"/loans/{loan['id']}/disbursement").json()["transaction"]

        r = client.post(f"/transactions/{txn['id']}/confirm")
        assert r.status_code == 409
        assert r.json()["current_status"] == "initiated"

    def test_collection_on_pending_loan(self, client):
        loan = create_loan(client)
        r = client.post(f"/loans/{loan['id']}/collections", json={"schedule_slot": 1})
        assert r.status_code == 400

    def test_rejected_authorization_then_retry(self, client, system):
        loan = create_loan(client)
        txn = client.post(f"/loans/{loan['id']}/disbursement").json()["transaction"]

        system.gateway.fail_next("authorize", ProcessorRejected("904"))
        r = client.post(f"/transactions/{txn['id']}/authorize")
        failed = r.json()
        assert failed["status"] == "failed"
        assert failed["error_code"] == "904"
        assert failed["error_description"] == "Insufficient funds"
        assert failed["error_retryable"] is True

        r = client.post(f"/transactions/{txn['id']}/retry")
        assert r.status_code == 201
        retried = r.json()["transaction"]
        assert retried["retry_count"] == 1
        assert retried["retry_of"] == txn["id"]
        assert retried["status"] == "initiated"

        # Only failed records can be re-initiated
        assert client.post(f"/transactions/{retried['id']}/retry").status_code == 409

    def test_cancel(self, client):
        loan = create_loan(client)
        disburse_and_settle(client, loan["id"])
        placeholder = client.get(f"/loans/{loan['id']}/transactions",
                                 params={"kind": "collection"}).json()["transactions"][0]

        r = client.post(f"/transactions/{placeholder['id']}/cancel", json={"reason": "borrower paid by cheque"})
        assert r.status_code == 200
        assert r.json()["status"] == "cancelled"
        assert r.json()["cancel_reason"] == "borrower paid by cheque"

        assert client.post(f"/transactions/{placeholder['id']}/cancel").status_code == 409

    def test_void(self, client, system):
        loan = create_loan(client)
        txn = client.post(f"/loans/{loan['id']}/disbursement").json()["transaction"]

        r = client.post(f"/transactions/{txn['id']}/void", json={"reason": "wrong account"},
                        headers={"X-User-Id": "ops"})
        assert r.status_code == 200
        voided = r.json()
        assert voided["status"] == "failed"
        assert voided["error_code"] == "VOIDED"
        assert voided["void_reason"] == "wrong account"
        assert voided["error_description"] == "Transaction voided at the processor"

        assert client.post(f"/transactions/{txn['id']}/void").status_code == 409
        assert client.post(f"/transactions/{txn['id']}/retry").status_code == 201

    def test_void_refused_by_processor(self, client, system):
        loan = create_loan(client)
        txn = client.post(f"/loans/{loan['id']}/disbursement").json()["transaction"]
        system.gateway.set_remote_status(txn["external_id"], "AA")

        r = client.post(f"/transactions/{txn['id']}/void")
        assert r.status_code == 502
        assert r.json()["error_code"] == "NOT_VOIDABLE"
        assert client.get(f"/transactions/{txn['id']}").json()["status"] == "initiated"

    def test_history(self, client):
        loan = create_loan(client)
        txn = client.post(f"/loans/{loan['id']}/disbursement").json()["transaction"]
        events = client.get(f"/transactions/{txn['id']}/history").json()["events"]
        assert events[0]["event_type"] == "transaction_created"
        assert client.get("/transactions/missing/history").status_code == 404


class TestGatewayFailures:
    """Processor errors surface as gateway status codes"""

    def test_network_error_leaves_record_pending(self, client, system):
        loan = create_loan(client)
        system.gateway.fail_next("initiate", NetworkError("connection refused"))

        r = client.post(f"/loans/{loan['id']}/disbursement")
        assert r.status_code == 502

        txn = client.get(f"/loans/{loan['id']}/transactions").json()["transactions"][0]
        assert txn["status"] == "pending"
        assert txn["submission_state"] == "not_submitted"
        assert "connection refused" in txn["last_gateway_error"]

        r = client.post(f"/transactions/{txn['id']}/submit")
        assert r.json()["status"] == "initiated"

    def test_timeout_is_in_doubt_until_resolved(self, client, system):
        loan = create_loan(client)
        system.gateway.fail_next("initiate", ProcessorTimeout("no response"), accepted=True)

        r = client.post(f"/loans/{loan['id']}/disbursement")
        assert r.status_code == 504

        unresolved = client.get("/transactions/unresolved").json()
        assert unresolved["count"] == 1
        txn_id = unresolved["transactions"][0]["id"]

        r = client.post(f"/transactions/{txn_id}/resolve")
        assert r.json()["status"] == "initiated"
        assert r.json()["external_id"] == "X1"
        assert system.gateway.calls["initiate"] == 1
        assert client.get("/transactions/in-flight").json()["count"] == 1


class TestReconciliationEndpoints:
    """Sync runs and single-transaction reconciliation"""

    def test_sync_run(self, client, system):
        loan = create_loan(client)
        txn = client.post(f"/loans/{loan['id']}/disbursement").json()["transaction"]
        system.gateway.set_remote_status(txn["external_id"], "AA")

        r = client.post("/reconciliation/runs", json={"loan_id": loan["id"]})
        assert r.status_code == 200
        assert r.json()["advanced"] == 1

        assert client.get(f"/loans/{loan['id']}").json()["status"] == "active"
        runs = client.get("/reconciliation/runs").json()
        assert len(runs["runs"]) == 1
        assert runs["regressions_rejected_total"] == 0

    def test_sync_run_unknown_loan(self, client):
        assert client.post("/reconciliation/runs", json={"loan_id": "missing"}).status_code == 404

    def test_reconcile_rejects_regression(self, client, system):
        loan = create_loan(client)
        txn_id = disburse_and_settle(client, loan["id"])
        txn = client.get(f"/transactions/{txn_id}").json()
        system.gateway.set_remote_status(txn["external_id"], "R01")

        r = client.post(f"/transactions/{txn_id}/reconcile")
        assert r.status_code == 200
        assert r.json()["result"] == "regression_rejected"
        assert r.json()["remote_status"] == "failed"
        assert r.json()["transaction"]["status"] == "completed"

        assert client.get("/reconciliation/runs").json()["regressions_rejected_total"] == 1
