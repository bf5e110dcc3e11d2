"""
Test suite for the payment processor gateway

Tests status normalization, the EFT REST client against a mocked transport
and the in-memory processor used by the rest of the suite.
"""

import json
import pytest
import httpx
from decimal import Decimal
from datetime import date, datetime, timezone

from core_lending.exceptions import NetworkError, ProcessorTimeout, ProcessorRejected
from core_lending.gateway import (
    RemoteStatus, normalize_status, EFTProcessorGateway, MockProcessorGateway
)
from core_lending.ledger import PaymentTransaction, TransactionKind


def make_transaction(kind=TransactionKind.DISBURSEMENT, slot=0, due_date=None):
    now = datetime.now(timezone.utc)
    return PaymentTransaction(
        id="txn-123", created_at=now, updated_at=now, loan_id="L1",
        kind=kind, amount=Decimal('500.00'), schedule_slot=slot, due_date=due_date
    )


class TestNormalizeStatus:
    """Test processor status normalization"""

    def test_known_codes(self):
        assert normalize_status("PD") == (RemoteStatus.PENDING, None)
        assert normalize_status("101") == (RemoteStatus.PENDING, None)
        assert normalize_status(101) == (RemoteStatus.PENDING, None)
        assert normalize_status("102") == (RemoteStatus.AUTHORIZED, None)
        assert normalize_status("AA") == (RemoteStatus.SETTLED, None)
        assert normalize_status("completed") == (RemoteStatus.SETTLED, None)
        assert normalize_status("VOID") == (RemoteStatus.VOIDED, None)

    def test_error_codes_are_failures(self):
        assert normalize_status("905") == (RemoteStatus.FAILED, "905")
        assert normalize_status("R01") == (RemoteStatus.FAILED, "R01")
        assert normalize_status("r16") == (RemoteStatus.FAILED, "R16")

    def test_failure_words(self):
        assert normalize_status("FAILED", "insufficient_funds") == (RemoteStatus.FAILED, "INSUFFICIENT_FUNDS")
        assert normalize_status("RETURNED") == (RemoteStatus.FAILED, "RETURNED")

    def test_unknown_is_pending(self):
        assert normalize_status("ZZ") == (RemoteStatus.PENDING, None)
        assert normalize_status(None) == (RemoteStatus.PENDING, None)
        # Three digits outside the 9XX range are not error codes
        assert normalize_status("805") == (RemoteStatus.PENDING, None)


class FakeProcessor:
    """Routes mocked HTTP requests and records them"""

    def __init__(self):
        self.requests = []
        self.logins = 0
        self.routes = {}
        self.min_process_date = "2000-01-03T00:00:00"

    def add(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key == ("POST", "/User/Login"):
            self.logins += 1
            return httpx.Response(200, json={"Success": True, "Token": f"tok-{self.logins}",
                                             "ExpireAfterMinutes": 240})
        if key == ("GET", "/enumerations/MinProcessDate"):
            return httpx.Response(200, json={"ProcessDate": self.min_process_date})

        responses = self.routes.get(key)
        if not responses:
            return httpx.Response(404, json={"ErrorCode": "NOT_FOUND", "Message": "no route"})
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class TestEFTProcessorGateway:
    """Test the REST client"""

    def setup_method(self):
        self.processor = FakeProcessor()
        self.gateway = EFTProcessorGateway(
            base_url="https://processor.test",
            username="lender",
            password="secret",
            timeout=2.0,
            transport=httpx.MockTransport(self.processor)
        )

    def teardown_method(self):
        self.gateway.close()

    def test_initiate(self):
        self.processor.add("POST", "/transactions", httpx.Response(200, json={"Id": 555}))
        self.processor.min_process_date = "2099-01-05T00:00:00"

        external_id = self.gateway.initiate(make_transaction(), customer_id="C-9", memo="LOAN-LN-1")

        assert external_id == "555"
        post = [r for r in self.processor.requests if r.url.path == "/transactions"][0]
        body = json.loads(post.content)
        assert body["Amount"] == 500.0
        assert body["TransactionType"] == "CR"
        assert body["Reference"] == "txn-123"
        assert body["CustomerId"] == "C-9"
        # Never earlier than the processor's minimum process date
        assert body["ProcessDate"] == "2099-01-05"
        assert post.headers["Authorization"] == "Bearer tok-1"

    def test_collections_are_debits_on_due_date(self):
        self.processor.add("POST", "/transactions", httpx.Response(200, json={"TransactionId": "A7"}))

        external_id = self.gateway.initiate(
            make_transaction(TransactionKind.COLLECTION, 1, due_date=date(2026, 12, 1))
        )

        assert external_id == "A7"
        post = [r for r in self.processor.requests if r.url.path == "/transactions"][0]
        body = json.loads(post.content)
        assert body["TransactionType"] == "DB"
        assert body["ProcessDate"] == "2026-12-01"

    def test_token_reused_then_refreshed_on_401(self):
        self.processor.add("GET", "/transactions/555",
                           httpx.Response(401),
                           httpx.Response(200, json={"Id": 555, "Status": "102"}))

        remote = self.gateway.fetch_status("555")

        assert remote.status == RemoteStatus.AUTHORIZED
        assert self.processor.logins == 2

    def test_fetch_settled_status(self):
        self.processor.add("GET", "/transactions/555", httpx.Response(200, json={
            "Id": 555, "Status": "AA", "CompletedDate": "2026-10-18T14:30:00Z", "Reference": "txn-123"
        }))

        remote = self.gateway.fetch_status("555")

        assert remote.status == RemoteStatus.SETTLED
        assert remote.settled_at == datetime(2026, 10, 18, 14, 30, tzinfo=timezone.utc)
        assert remote.reference == "txn-123"
        assert remote.raw_status == "AA"

    def test_fetch_failed_status(self):
        self.processor.add("GET", "/transactions/555", httpx.Response(200, json={"Id": 555, "Status": "R01"}))
        remote = self.gateway.fetch_status("555")
        assert remote.status == RemoteStatus.FAILED
        assert remote.error_code == "R01"

    def test_rejection_carries_code(self):
        self.processor.add("POST", "/transactions/555/authorizations",
                           httpx.Response(400, json={"ErrorCode": "909", "Message": "Not authorized"}))
        with pytest.raises(ProcessorRejected) as exc_info:
            self.gateway.authorize("555")
        assert exc_info.value.code == "909"

    def test_rejection_without_code(self):
        self.processor.add("POST", "/transactions/555/authorizations", httpx.Response(422, text="bad"))
        with pytest.raises(ProcessorRejected) as exc_info:
            self.gateway.authorize("555")
        assert exc_info.value.code == "HTTP_422"

    def test_server_errors(self):
        self.processor.add("GET", "/transactions/1", httpx.Response(504))
        self.processor.add("GET", "/transactions/2", httpx.Response(503))
        with pytest.raises(ProcessorTimeout):
            self.gateway.fetch_status("1")
        with pytest.raises(NetworkError):
            self.gateway.fetch_status("2")

    def test_transport_failures(self):
        request = httpx.Request("GET", "https://processor.test/transactions/1")
        self.processor.add("GET", "/transactions/1", httpx.ReadTimeout("slow", request=request))
        self.processor.add("GET", "/transactions/2", httpx.ConnectError("refused", request=request))
        with pytest.raises(ProcessorTimeout):
            self.gateway.fetch_status("1")
        with pytest.raises(NetworkError):
            self.gateway.fetch_status("2")

    def test_non_json_body(self):
        self.processor.add("GET", "/transactions/1", httpx.Response(200, text="<html>"))
        with pytest.raises(NetworkError):
            self.gateway.fetch_status("1")

    def test_find_by_reference_checks_next_day(self):
        self.processor.add("GET", "/transactions/CreatedDate/2026-10-18", httpx.Response(200, json=[]))
        self.processor.add("GET", "/transactions/CreatedDate/2026-10-19", httpx.Response(200, json=[
            {"Id": 1, "Status": "PD", "Reference": "other"},
            {"Id": 2, "Status": "PD", "Reference": "txn-123"},
        ]))

        remote = self.gateway.find_by_reference("txn-123", date(2026, 10, 18))
        assert remote.external_id == "2"
        assert remote.status == RemoteStatus.PENDING

    def test_find_by_reference_not_found(self):
        self.processor.add("GET", "/transactions/CreatedDate/2026-10-18", httpx.Response(200, json=[]))
        self.processor.add("GET", "/transactions/CreatedDate/2026-10-19", httpx.Response(200, json={"Items": []}))
        assert self.gateway.find_by_reference("txn-123", date(2026, 10, 18)) is None

    def test_void(self):
        self.processor.add("POST", "/transactions/555/voids", httpx.Response(200, json={}))
        self.gateway.void("555")
        assert [r.url.path for r in self.processor.requests][-1] == "/transactions/555/voids"

    def test_void_refused(self):
        self.processor.add("POST", "/transactions/555/voids",
                           httpx.Response(400, json={"ErrorCode": "911", "Message": "Already processed"}))
        with pytest.raises(ProcessorRejected) as exc_info:
            self.gateway.void("555")
        assert exc_info.value.code == "911"

    def test_health_check(self):
        self.processor.add("GET", "/enumerations/serverinfo", httpx.Response(200, json={"Version": "1"}))
        assert self.gateway.health_check()

        self.processor.add("GET", "/enumerations/serverinfo", httpx.Response(500))
        assert not self.gateway.health_check()


class TestMockProcessorGateway:
    """Test the in-memory processor"""

    def setup_method(self):
        self.gateway = MockProcessorGateway()

    def test_sequential_ids_and_authorize(self):
        assert self.gateway.initiate(make_transaction()) == "X1"
        assert self.gateway.initiate(make_transaction()) == "X2"

        self.gateway.authorize("X1")
        assert self.gateway.fetch_status("X1").status == RemoteStatus.AUTHORIZED
        assert self.gateway.fetch_status("X2").status == RemoteStatus.PENDING
        assert self.gateway.calls["initiate"] == 2

    def test_scripted_failure(self):
        self.gateway.fail_next("initiate", NetworkError("down"))
        with pytest.raises(NetworkError):
            self.gateway.initiate(make_transaction())
        assert self.gateway.submitted_count == 0
        assert self.gateway.initiate(make_transaction()) == "X1"

    def test_accepted_but_response_lost(self):
        self.gateway.fail_next("initiate", ProcessorTimeout("lost"), accepted=True)
        with pytest.raises(ProcessorTimeout):
            self.gateway.initiate(make_transaction())

        remote = self.gateway.find_by_reference("txn-123", date.today())
        assert remote.external_id == "X1"

    def test_set_remote_status_normalizes(self):
        self.gateway.initiate(make_transaction())
        self.gateway.set_remote_status("X1", "905")
        remote = self.gateway.fetch_status("X1")
        assert remote.status == RemoteStatus.FAILED
        assert remote.error_code == "905"

        self.gateway.set_remote_status("X1", RemoteStatus.SETTLED)
        assert self.gateway.fetch_status("X1").settled_at is not None

    def test_void(self):
        self.gateway.initiate(make_transaction())
        self.gateway.authorize("X1")

        self.gateway.void("X1")

        assert self.gateway.fetch_status("X1").status == RemoteStatus.VOIDED
        assert self.gateway.calls["void"] == 1

    def test_settled_transaction_cannot_be_voided(self):
        self.gateway.initiate(make_transaction())
        self.gateway.set_remote_status("X1", "AA")
        with pytest.raises(ProcessorRejected) as exc_info:
            self.gateway.void("X1")
        assert exc_info.value.code == "NOT_VOIDABLE"
        assert self.gateway.fetch_status("X1").status == RemoteStatus.SETTLED

    def test_unknown_transaction(self):
        with pytest.raises(ProcessorRejected):
            self.gateway.fetch_status("X99")
        assert self.gateway.find_by_reference("nothing", date.today()) is None
