"""
Payment Processor Gateway Module

Boundary to the external payment processor. Raw processor vocabulary (status
codes, error codes, JSON field names) is parsed here into a small closed set of
normalized variants and never leaks past this module.

Every call can fail with NetworkError (not delivered), ProcessorTimeout (outcome
unknown) or ProcessorRejected(code). Calls are not idempotent at the network
layer, so the transaction id travels as the processor-side reference and an
ambiguous submission can be looked up later.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, date, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union, Any
import logging
import re
import threading
import time

import httpx

from .exceptions import GatewayError, NetworkError, ProcessorTimeout, ProcessorRejected

logger = logging.getLogger("lending.gateway")


class RemoteStatus(Enum):
    """Normalized processor-side status"""
    PENDING = "pending"          # Received, not yet sent to the bank
    AUTHORIZED = "authorized"    # Sent to the bank
    SETTLED = "settled"          # Funds moved
    FAILED = "failed"            # Bank or processor error, code attached
    VOIDED = "voided"            # Withdrawn at the processor


@dataclass
class RemoteTransaction:
    """Authoritative processor view of one transaction"""
    external_id: str
    status: RemoteStatus
    error_code: Optional[str] = None
    settled_at: Optional[datetime] = None
    reference: Optional[str] = None
    raw_status: Optional[str] = None


STATUS_ALIASES = {
    "PD": RemoteStatus.PENDING,
    "101": RemoteStatus.PENDING,
    "PENDING": RemoteStatus.PENDING,
    "102": RemoteStatus.AUTHORIZED,  # Sent to bank
    "AUTHORIZED": RemoteStatus.AUTHORIZED,
    "AA": RemoteStatus.SETTLED,
    "SETTLED": RemoteStatus.SETTLED,
    "COMPLETED": RemoteStatus.SETTLED,
    "VOID": RemoteStatus.VOIDED,
    "VOIDED": RemoteStatus.VOIDED,
}

FAILURE_WORDS = frozenset({"FAILED", "REJECTED", "RETURNED"})

_EFT_ERROR = re.compile(r"^9\d{2}$")
_ACH_ERROR = re.compile(r"^R\d{2}$")


def normalize_status(raw: Optional[Any], error_code: Optional[str] = None) -> Tuple[RemoteStatus, Optional[str]]:
    """
    Map a raw processor status to a normalized status and error code

    EFT (9XX) and ACH (RXX) codes are failures carrying the code itself. Anything
    unrecognized is treated as pending so it can never advance a record.
    """
    if raw is None:
        return RemoteStatus.PENDING, None

    value = str(raw).strip().upper()
    if value in STATUS_ALIASES:
        return STATUS_ALIASES[value], None
    if _EFT_ERROR.match(value) or _ACH_ERROR.match(value):
        return RemoteStatus.FAILED, value
    if value in FAILURE_WORDS:
        return RemoteStatus.FAILED, (error_code or value).strip().upper()

    logger.warning(f"Unrecognized processor status {raw!r}, treating as pending")
    return RemoteStatus.PENDING, None


class ProcessorGateway(ABC):
    """Abstract payment processor"""

    @abstractmethod
    def initiate(self, transaction, customer_id: Optional[str] = None,
                 memo: Optional[str] = None) -> str:
        """Submit a transaction; returns the processor's external id"""
        pass

    @abstractmethod
    def authorize(self, external_id: str) -> None:
        """Clear a submitted transaction to move funds"""
        pass

    @abstractmethod
    def void(self, external_id: str) -> None:
        """Withdraw a submitted transaction before it settles"""
        pass

    @abstractmethod
    def fetch_status(self, external_id: str) -> RemoteTransaction:
        """Fetch the authoritative status of a transaction"""
        pass

    @abstractmethod
    def find_by_reference(self, reference: str, submitted_on: date) -> Optional[RemoteTransaction]:
        """Look up a transaction by the reference sent with it, None if the processor never got it"""
        pass

    def health_check(self) -> bool:
        """Check if the processor is reachable"""
        return True

    def close(self) -> None:
        """Release connections"""
        pass


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable processor timestamp {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class EFTProcessorGateway(ProcessorGateway):
    """
    REST client for the EFT payment processor

    Bearer-token authentication: the token from ``POST /User/Login`` is refreshed
    shortly before it expires and once more if a request comes back 401.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 10.0,
        payment_type: int = 1,
        token_refresh_margin_seconds: int = 300,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.timeout = timeout
        self.payment_type = payment_type
        self.token_refresh_margin_seconds = token_refresh_margin_seconds
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def initiate(self, transaction, customer_id: Optional[str] = None,
                 memo: Optional[str] = None) -> str:
        """
        Create the transaction at the processor

        Disbursements are credits to the borrower, collections are debits.

        Returns:
            The processor transaction id

        Raises:
            NetworkError, ProcessorTimeout, ProcessorRejected
        """
        payload = {
            "CustomerId": customer_id,
            "ProcessDate": self._process_date(transaction.due_date).isoformat(),
            # Processor expects a JSON number; the ledger keeps the Decimal
            "Amount": float(transaction.amount),
            "TransactionType": "CR" if transaction.kind.value == "disbursement" else "DB",
            "PaymentType": self.payment_type,
            "Memo": memo,
            "Reference": transaction.id,
        }
        response = self._request("POST", "/transactions", transaction_id=transaction.id, json=payload)
        data = self._json(response)
        external_id = data.get("Id") or data.get("TransactionId")
        if external_id is None:
            raise NetworkError("Processor response did not include a transaction id",
                               transaction_id=transaction.id)

        logger.info(f"Processor accepted transaction {transaction.id} as {external_id}")
        return str(external_id)

    def authorize(self, external_id: str) -> None:
        """Authorize a transaction at the processor"""
        self._request("POST", f"/transactions/{external_id}/authorizations")
        logger.info(f"Processor authorized transaction {external_id}")

    def void(self, external_id: str) -> None:
        """Mark a transaction voided at the processor"""
        self._request("POST", f"/transactions/{external_id}/voids")
        logger.info(f"Processor voided transaction {external_id}")

    def fetch_status(self, external_id: str) -> RemoteTransaction:
        """Fetch and normalize the processor status of a transaction"""
        response = self._request("GET", f"/transactions/{external_id}")
        return self._to_remote(self._json(response), external_id)

    def find_by_reference(self, reference: str, submitted_on: date) -> Optional[RemoteTransaction]:
        """
        Find a transaction by its reference among those created on a date

        The following day is searched too: the processor dates records in its own
        timezone.
        """
        for day in (submitted_on, submitted_on + timedelta(days=1)):
            response = self._request("GET", f"/transactions/CreatedDate/{day.isoformat()}")
            items = self._json(response)
            if isinstance(items, dict):
                items = items.get("Items") or items.get("Transactions") or []
            for item in items:
                if item.get("Reference") == reference:
                    return self._to_remote(item)
        return None

    def health_check(self) -> bool:
        """Check processor connectivity"""
        try:
            self._request("GET", "/enumerations/serverinfo")
            return True
        except GatewayError as e:
            logger.warning(f"Processor health check failed: {e}")
            return False

    def min_process_date(self) -> date:
        """Earliest date the processor accepts as ProcessDate"""
        data = self._json(self._request("GET", "/enumerations/MinProcessDate"))
        return date.fromisoformat(str(data["ProcessDate"])[:10])

    def close(self) -> None:
        """Close the HTTP client"""
        self._client.close()

    def _process_date(self, due_date: Optional[date]) -> date:
        requested = due_date or datetime.now(timezone.utc).date()
        return max(requested, self.min_process_date())

    def _to_remote(self, data: Dict[str, Any], external_id: Optional[str] = None) -> RemoteTransaction:
        raw_status = data.get("Status")
        status, error_code = normalize_status(raw_status, data.get("ErrorCode"))
        return RemoteTransaction(
            external_id=str(data.get("Id", external_id)),
            status=status,
            error_code=error_code,
            settled_at=_parse_datetime(data.get("CompletedDate")) if status == RemoteStatus.SETTLED else None,
            reference=data.get("Reference"),
            raw_status=None if raw_status is None else str(raw_status)
        )

    def _login(self) -> None:
        response = self._send("POST", "/User/Login", json={
            "username": self.username,
            "password": self.password
        })
        self._raise_for_status(response)
        data = self._json(response)
        if not data.get("Success") or not data.get("Token"):
            raise ProcessorRejected("AUTH_FAILED", "Processor login failed: invalid response")

        self._token = data["Token"]
        expires_after = int(data.get("ExpireAfterMinutes") or 240)
        self._token_expires_at = time.monotonic() + expires_after * 60
        logger.info(f"Processor token refreshed, valid for {expires_after} minutes")

    def _auth_token(self, force: bool = False) -> str:
        with self._token_lock:
            expiring = time.monotonic() >= self._token_expires_at - self.token_refresh_margin_seconds
            if force or self._token is None or expiring:
                self._login()
            return self._token

    def _request(self, method: str, path: str, transaction_id: Optional[str] = None,
                 **kwargs) -> httpx.Response:
        response = self._send(method, path, token=self._auth_token(),
                              transaction_id=transaction_id, **kwargs)
        if response.status_code == 401:
            logger.info("Processor token rejected, logging in again")
            response = self._send(method, path, token=self._auth_token(force=True),
                                  transaction_id=transaction_id, **kwargs)
        self._raise_for_status(response, transaction_id)
        return response

    def _send(self, method: str, path: str, token: Optional[str] = None,
              transaction_id: Optional[str] = None, **kwargs) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            return self._client.request(method, path, headers=headers, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.error(f"Processor connection failed for {method} {path}: {e}")
            raise NetworkError(f"Could not reach payment processor: {e}", transaction_id) from e
        except httpx.TimeoutException as e:
            logger.error(f"Processor timed out on {method} {path}: {e}")
            raise ProcessorTimeout(f"Payment processor did not answer within {self.timeout}s",
                                   transaction_id) from e
        except httpx.TransportError as e:
            logger.error(f"Processor transport error for {method} {path}: {e}")
            raise NetworkError(f"Payment processor transport error: {e}", transaction_id) from e

    def _raise_for_status(self, response: httpx.Response, transaction_id: Optional[str] = None) -> None:
        status = response.status_code
        if status < 400:
            return

        logger.warning(f"Processor returned {status}: {response.text}")
        if status == 504:
            raise ProcessorTimeout("Payment processor gateway timeout", transaction_id)
        if 400 <= status < 500:
            code, message = self._error_details(response)
            raise ProcessorRejected(code or f"HTTP_{status}", message, transaction_id)
        raise NetworkError(f"Payment processor error {status}", transaction_id)

    @staticmethod
    def _error_details(response: httpx.Response) -> Tuple[Optional[str], Optional[str]]:
        try:
            data = response.json()
        except ValueError:
            return None, response.text or None
        if not isinstance(data, dict):
            return None, None
        code = data.get("ErrorCode") or data.get("Code") or data.get("ResponseCode")
        message = data.get("Message") or data.get("message")
        return (str(code) if code is not None else None), message

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Processor returned a non-JSON body: {e}") from e


@dataclass
class _ScriptedFailure:
    error: GatewayError
    accepted: bool = False  # initiate only: the processor keeps the record, the response is lost


class MockProcessorGateway(ProcessorGateway):
    """
    In-memory payment processor for tests and local runs

    Assigns external ids "X1", "X2", ... and lets callers script failures, set
    the remote status of a record and inspect call counts.
    """

    OPERATIONS = ("initiate", "authorize", "void", "fetch_status", "find_by_reference")

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.calls: Dict[str, int] = {name: 0 for name in self.OPERATIONS}
        self._records: Dict[str, Dict[str, Any]] = {}
        self._failures: Dict[str, List[_ScriptedFailure]] = {name: [] for name in self.OPERATIONS}
        self._sequence = 0
        self._lock = threading.Lock()

    def fail_next(self, operation: str, error: GatewayError, accepted: bool = False) -> None:
        """
        Make the next call of ``operation`` raise ``error``

        With ``accepted=True`` an initiate creates the record before raising,
        simulating a request that reached the processor but whose response was lost.
        """
        if operation not in self._failures:
            raise ValueError(f"Unknown gateway operation {operation}")
        with self._lock:
            self._failures[operation].append(_ScriptedFailure(error, accepted))

    def set_remote_status(self, external_id: str, status: Union[RemoteStatus, str],
                          error_code: Optional[str] = None,
                          settled_at: Optional[datetime] = None) -> None:
        """Set the processor-side status; raw processor codes are normalized"""
        if isinstance(status, RemoteStatus):
            normalized, code = status, error_code
        else:
            normalized, code = normalize_status(status, error_code)
        with self._lock:
            record = self._records[external_id]
            record["status"] = normalized
            record["error_code"] = code
            if normalized == RemoteStatus.SETTLED:
                record["settled_at"] = settled_at or datetime.now(timezone.utc)

    def get_record(self, external_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(external_id)
            return dict(record) if record else None

    @property
    def submitted_count(self) -> int:
        """Number of transactions the processor holds"""
        with self._lock:
            return len(self._records)

    def initiate(self, transaction, customer_id: Optional[str] = None,
                 memo: Optional[str] = None) -> str:
        failure = self._enter("initiate")
        if failure and not failure.accepted:
            raise failure.error

        with self._lock:
            self._sequence += 1
            external_id = f"X{self._sequence}"
            self._records[external_id] = {
                "external_id": external_id,
                "status": RemoteStatus.PENDING,
                "error_code": None,
                "settled_at": None,
                "reference": transaction.id,
                "amount": transaction.amount,
                "kind": transaction.kind.value,
                "customer_id": customer_id,
                "memo": memo,
                "created_on": datetime.now(timezone.utc).date(),
            }

        if failure:
            raise failure.error
        return external_id

    def authorize(self, external_id: str) -> None:
        failure = self._enter("authorize")
        if failure:
            raise failure.error

        with self._lock:
            record = self._records.get(external_id)
            if record is None:
                raise ProcessorRejected("NOT_FOUND", f"Unknown transaction {external_id}")
            if record["status"] == RemoteStatus.PENDING:
                record["status"] = RemoteStatus.AUTHORIZED

    def void(self, external_id: str) -> None:
        failure = self._enter("void")
        if failure:
            raise failure.error

        with self._lock:
            record = self._records.get(external_id)
            if record is None:
                raise ProcessorRejected("NOT_FOUND", f"Unknown transaction {external_id}")
            if record["status"] in (RemoteStatus.SETTLED, RemoteStatus.FAILED):
                raise ProcessorRejected(
                    "NOT_VOIDABLE", f"Transaction {external_id} is {record['status'].value}"
                )
            record["status"] = RemoteStatus.VOIDED

    def fetch_status(self, external_id: str) -> RemoteTransaction:
        failure = self._enter("fetch_status")
        if failure:
            raise failure.error

        with self._lock:
            record = self._records.get(external_id)
            if record is None:
                raise ProcessorRejected("NOT_FOUND", f"Unknown transaction {external_id}")
            return self._to_remote(record)

    def find_by_reference(self, reference: str, submitted_on: date) -> Optional[RemoteTransaction]:
        failure = self._enter("find_by_reference")
        if failure:
            raise failure.error

        with self._lock:
            for record in self._records.values():
                if record["reference"] == reference:
                    return self._to_remote(record)
        return None

    def _enter(self, operation: str) -> Optional[_ScriptedFailure]:
        with self._lock:
            self.calls[operation] += 1
            failure = self._failures[operation].pop(0) if self._failures[operation] else None
        if self.latency:
            time.sleep(self.latency)
        return failure

    @staticmethod
    def _to_remote(record: Dict[str, Any]) -> RemoteTransaction:
        return RemoteTransaction(
            external_id=record["external_id"],
            status=record["status"],
            error_code=record["error_code"],
            settled_at=record["settled_at"],
            reference=record["reference"]
        )
