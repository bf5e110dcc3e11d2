"""
Transaction Ledger Module

Persistent store of payment transactions (disbursements and collections). Each
record moves through a fixed, forward-only state machine:

    pending -> initiated -> authorized -> completed
    initiated | authorized -> failed
    pending -> cancelled

Every transition is a compare-and-swap on the stored status, so admin actions and
reconciliation sweeps racing on the same record cannot lose updates. At most one
non-terminal record exists per (loan, kind, schedule slot).
"""

from decimal import Decimal
from datetime import datetime, date, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import round_currency, ZERO
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import (
    ValidationError, TransactionNotFound, IdempotencyConflict,
    InvalidTransition, TransitionConflict
)
from .logging_config import get_logger, log_action


class TransactionKind(Enum):
    """Direction of money movement"""
    DISBURSEMENT = "disbursement"  # Lender -> borrower, implicit slot 0
    COLLECTION = "collection"      # Borrower -> lender, slots 1..N


class TransactionStatus(Enum):
    """Lifecycle states of a payment transaction"""
    PENDING = "pending"          # Recorded, processor not yet holding it
    INITIATED = "initiated"      # Processor accepted it, external_id assigned
    AUTHORIZED = "authorized"    # Cleared to move funds
    COMPLETED = "completed"      # Settled
    FAILED = "failed"            # Processor reported an error
    CANCELLED = "cancelled"      # Withdrawn before any processor contact

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class SubmissionState(Enum):
    """Where a pending record stands with respect to the processor"""
    NOT_SUBMITTED = "not_submitted"  # Safe to submit
    SUBMITTING = "submitting"        # One caller holds the claim and is calling the processor
    IN_DOUBT = "in_doubt"            # Submission timed out; check status before any retry
    ACCEPTED = "accepted"            # Processor returned an external id


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED
})

ACTIVE_STATUSES = frozenset({
    TransactionStatus.PENDING, TransactionStatus.INITIATED, TransactionStatus.AUTHORIZED
})

ALLOWED_TRANSITIONS: Dict[TransactionStatus, frozenset] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.INITIATED, TransactionStatus.CANCELLED}),
    TransactionStatus.INITIATED: frozenset({TransactionStatus.AUTHORIZED, TransactionStatus.FAILED}),
    TransactionStatus.AUTHORIZED: frozenset({TransactionStatus.COMPLETED, TransactionStatus.FAILED}),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}

# Position along the success path
STATUS_RANK = {
    TransactionStatus.PENDING: 0,
    TransactionStatus.INITIATED: 1,
    TransactionStatus.AUTHORIZED: 2,
    TransactionStatus.COMPLETED: 3,
}

TIMESTAMP_FIELDS = {
    TransactionStatus.INITIATED: "initiated_at",
    TransactionStatus.AUTHORIZED: "authorized_at",
    TransactionStatus.COMPLETED: "completed_at",
    TransactionStatus.FAILED: "failed_at",
    TransactionStatus.CANCELLED: "cancelled_at",
}

DATETIME_FIELDS = (
    "created_at", "updated_at", "initiated_at", "authorized_at", "completed_at",
    "failed_at", "cancelled_at", "submission_started_at"
)


def is_legal_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    """Check a directed edge of the state machine"""
    return target in ALLOWED_TRANSITIONS[current]


@dataclass
class PaymentTransaction(StorageRecord):
    """
    A disbursement or scheduled collection moved through the payment processor
    """
    loan_id: str
    kind: TransactionKind
    amount: Decimal
    schedule_slot: int = 0
    status: TransactionStatus = TransactionStatus.PENDING

    # Processor tracking
    external_id: Optional[str] = None
    error_code: Optional[str] = None  # Set only on failed
    submission_state: SubmissionState = SubmissionState.NOT_SUBMITTED
    submission_started_at: Optional[datetime] = None
    last_gateway_error: Optional[str] = None

    # Retry lineage
    retry_count: int = 0
    retry_of: Optional[str] = None

    # Lifecycle timestamps, each set once
    initiated_at: Optional[datetime] = None
    authorized_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    due_date: Optional[date] = None
    cancel_reason: Optional[str] = None
    void_reason: Optional[str] = None
    created_by: Optional[str] = None

    def __post_init__(self):
        self.amount = round_currency(self.amount)
        if self.amount <= ZERO:
            raise ValidationError("Transaction amount must be positive")

        if self.kind == TransactionKind.DISBURSEMENT and self.schedule_slot != 0:
            raise ValidationError("Disbursements use schedule slot 0")
        if self.kind == TransactionKind.COLLECTION and self.schedule_slot < 1:
            raise ValidationError("Collections use schedule slots starting at 1")
        if self.retry_count < 0:
            raise ValidationError("Retry count cannot be negative")

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition is possible"""
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        """Check if the record holds its (loan, kind, slot) key"""
        return self.status in ACTIVE_STATUSES

    @property
    def is_in_flight(self) -> bool:
        """Check if the processor holds the record and it is not settled"""
        return self.is_active and self.external_id is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentTransaction':
        """Create from the stored dictionary"""
        data = dict(data)
        for name in DATETIME_FIELDS:
            if data.get(name):
                data[name] = datetime.fromisoformat(data[name])
        if data.get('due_date'):
            data['due_date'] = date.fromisoformat(data['due_date'])
        data['kind'] = TransactionKind(data['kind'])
        data['status'] = TransactionStatus(data['status'])
        data['submission_state'] = SubmissionState(data['submission_state'])
        data['amount'] = Decimal(data['amount'])
        return cls(**data)


class TransactionLedger:
    """
    Authoritative store of payment transactions with guarded transitions
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "payment_transactions"
        self.logger = get_logger("lending.ledger")

    def create_transaction(
        self,
        loan_id: str,
        kind: TransactionKind,
        amount: Decimal,
        schedule_slot: Optional[int] = None,
        due_date: Optional[date] = None,
        created_by: Optional[str] = None
    ) -> PaymentTransaction:
        """
        Insert a new pending transaction unless one is already active for the slot

        The check and the insert run in one atomic unit. A record following a failed
        one for the same slot is a re-initiation: it carries the previous
        retry_count + 1 and links back through retry_of.

        Args:
            loan_id: Owning loan
            kind: Disbursement or collection
            amount: Positive amount, rounded to cents
            schedule_slot: Collection slot (1..N); ignored for disbursements
            due_date: Scheduled collection date
            created_by: Staff member or job creating the record

        Returns:
            The created PaymentTransaction

        Raises:
            IdempotencyConflict: An active record already exists (carried in ``existing``)
            ValidationError: Invalid amount or slot
        """
        slot = 0 if kind == TransactionKind.DISBURSEMENT else schedule_slot
        if slot is None:
            raise ValidationError("Collections require a schedule slot")

        with self.storage.atomic():
            history = self._slot_history(loan_id, kind, slot)
            active = [t for t in history if t.is_active]
            if active:
                raise IdempotencyConflict(active[0])

            retry_count = 0
            retry_of = None
            if history:
                previous = history[-1]
                if previous.status == TransactionStatus.FAILED:
                    retry_count = previous.retry_count + 1
                    retry_of = previous.id
                else:
                    retry_count = previous.retry_count

            now = datetime.now(timezone.utc)
            transaction = PaymentTransaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                kind=kind,
                amount=amount,
                schedule_slot=slot,
                retry_count=retry_count,
                retry_of=retry_of,
                due_date=due_date,
                created_by=created_by
            )
            self._save(transaction)

            self.audit_trail.log_event(
                event_type=(AuditEventType.TRANSACTION_RETRY_CREATED if retry_of
                            else AuditEventType.TRANSACTION_CREATED),
                entity_type="transaction",
                entity_id=transaction.id,
                metadata={
                    "loan_id": loan_id,
                    "kind": kind.value,
                    "amount": transaction.amount,
                    "schedule_slot": slot,
                    "retry_count": retry_count,
                    "retry_of": retry_of
                },
                user_id=created_by
            )

        log_action(
            self.logger, "info",
            f"Created {kind.value} transaction for slot {slot}",
            user_id=created_by, action="create_transaction", resource="transaction",
            transaction_id=transaction.id, loan_id=loan_id,
            extra={"amount": str(transaction.amount), "retry_count": retry_count}
        )
        return transaction

    def transition(
        self,
        transaction_id: str,
        expected: TransactionStatus,
        new: TransactionStatus,
        external_id: Optional[str] = None,
        error_code: Optional[str] = None,
        at: Optional[datetime] = None,
        expected_submission: Optional[SubmissionState] = None,
        changes: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> PaymentTransaction:
        """
        Move a transaction along one edge of the state machine

        The update applies only if the stored status still equals ``expected``.

        Args:
            transaction_id: Transaction to move
            expected: Status the caller observed
            new: Target status
            external_id: Processor id (required when moving to initiated)
            error_code: Processor error code (required when moving to failed)
            at: Event time reported by the processor; defaults to now
            expected_submission: Also require this submission state
            changes: Extra fields to store with the transition
            user_id: Staff member or job performing the transition

        Returns:
            The updated transaction

        Raises:
            InvalidTransition: The edge is not part of the state machine
            TransitionConflict: The stored status was not ``expected``
            TransactionNotFound: Unknown transaction id
        """
        if not is_legal_transition(expected, new):
            raise InvalidTransition(
                f"Transaction {transaction_id} cannot move from {expected.value} to {new.value}",
                current=expected, target=new
            )
        if new == TransactionStatus.FAILED and not error_code:
            raise ValidationError("An error code is required to fail a transaction")
        if new == TransactionStatus.INITIATED and not external_id:
            raise ValidationError("An external id is required to initiate a transaction")

        with self.storage.atomic():
            current = self.require_transaction(transaction_id)
            if current.status != expected or (
                expected_submission is not None and current.submission_state != expected_submission
            ):
                raise TransitionConflict(
                    f"Transaction {transaction_id} is {current.status.value}"
                    f"/{current.submission_state.value}, expected {expected.value}",
                    current=current.status, target=new
                )

            now = datetime.now(timezone.utc)
            event_time = self._monotonic_time(current, at or now)

            update: Dict[str, Any] = dict(changes or {})
            update["status"] = new.value
            update["updated_at"] = now.isoformat()
            update[TIMESTAMP_FIELDS[new]] = event_time.isoformat()
            if external_id:
                update["external_id"] = external_id
            if new == TransactionStatus.INITIATED:
                update["submission_state"] = SubmissionState.ACCEPTED.value
            if new == TransactionStatus.FAILED:
                update["error_code"] = error_code

            expected_fields = {"status": expected.value}
            if expected_submission is not None:
                expected_fields["submission_state"] = expected_submission.value

            stored = self.storage.compare_and_set(self.table_name, transaction_id, expected_fields, update)
            if stored is None:
                raise TransitionConflict(
                    f"Transaction {transaction_id} changed concurrently",
                    current=current.status, target=new
                )
            updated = PaymentTransaction.from_dict(stored)

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_STATUS_CHANGED,
                entity_type="transaction",
                entity_id=transaction_id,
                metadata={
                    "from": expected.value,
                    "to": new.value,
                    "external_id": updated.external_id,
                    "error_code": updated.error_code
                },
                user_id=user_id
            )

        log_action(
            self.logger, "info",
            f"Transaction moved from {expected.value} to {new.value}",
            user_id=user_id, action="transition", resource="transaction",
            transaction_id=transaction_id, loan_id=updated.loan_id,
            extra={"external_id": updated.external_id, "error_code": updated.error_code}
        )
        return updated

    def update_submission(
        self,
        transaction_id: str,
        expected_state: SubmissionState,
        new_state: SubmissionState,
        changes: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[PaymentTransaction]:
        """
        Compare-and-swap the submission state of a pending transaction

        Returns:
            The updated transaction, or None when the record is no longer pending
            in ``expected_state`` (another caller won)
        """
        update: Dict[str, Any] = dict(changes or {})
        update["submission_state"] = new_state.value
        update["updated_at"] = datetime.now(timezone.utc).isoformat()
        if new_state == SubmissionState.SUBMITTING:
            update["submission_started_at"] = update["updated_at"]

        with self.storage.atomic():
            stored = self.storage.compare_and_set(
                self.table_name, transaction_id,
                {"status": TransactionStatus.PENDING.value, "submission_state": expected_state.value},
                update
            )
            if stored is None:
                return None

            self.audit_trail.log_event(
                event_type=AuditEventType.SUBMISSION_STATE_CHANGED,
                entity_type="transaction",
                entity_id=transaction_id,
                metadata={
                    "from": expected_state.value,
                    "to": new_state.value,
                    "last_gateway_error": stored.get("last_gateway_error")
                },
                user_id=user_id
            )

        log_action(
            self.logger, "info" if new_state != SubmissionState.IN_DOUBT else "warning",
            f"Submission moved from {expected_state.value} to {new_state.value}",
            user_id=user_id, action="submission", resource="transaction",
            transaction_id=transaction_id, loan_id=stored.get("loan_id")
        )
        return PaymentTransaction.from_dict(stored)

    def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return PaymentTransaction.from_dict(data)
        return None

    def require_transaction(self, transaction_id: str) -> PaymentTransaction:
        """Get transaction by ID or raise TransactionNotFound"""
        transaction = self.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return transaction

    def find_active(self, loan_id: str, kind: TransactionKind, schedule_slot: int) -> Optional[PaymentTransaction]:
        """The non-terminal record for a slot, if any"""
        for transaction in self._slot_history(loan_id, kind, schedule_slot):
            if transaction.is_active:
                return transaction
        return None

    def latest_for_slot(self, loan_id: str, kind: TransactionKind, schedule_slot: int) -> Optional[PaymentTransaction]:
        """Most recent record for a slot regardless of status"""
        history = self._slot_history(loan_id, kind, schedule_slot)
        return history[-1] if history else None

    def has_slot(self, loan_id: str, kind: TransactionKind, schedule_slot: int) -> bool:
        """Check if any record exists for a slot"""
        return bool(self.storage.find(self.table_name, {
            "loan_id": loan_id, "kind": kind.value, "schedule_slot": schedule_slot
        }))

    def get_transactions_for_loan(self, loan_id: str,
                                  kind: Optional[TransactionKind] = None) -> List[PaymentTransaction]:
        """All records of a loan ordered by slot, then retry lineage"""
        filters: Dict[str, Any] = {"loan_id": loan_id}
        if kind:
            filters["kind"] = kind.value
        transactions = [PaymentTransaction.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        transactions.sort(key=lambda t: (t.schedule_slot, t.retry_count, t.created_at))
        return transactions

    def get_in_flight_transactions(self, loan_id: Optional[str] = None) -> List[PaymentTransaction]:
        """Non-terminal records the processor holds (external id recorded)"""
        results = []
        for status in (TransactionStatus.INITIATED, TransactionStatus.AUTHORIZED):
            filters: Dict[str, Any] = {"status": status.value}
            if loan_id:
                filters["loan_id"] = loan_id
            results.extend(PaymentTransaction.from_dict(d) for d in self.storage.find(self.table_name, filters))
        results = [t for t in results if t.external_id]
        results.sort(key=lambda t: t.created_at)
        return results

    def get_unresolved_submissions(self, loan_id: Optional[str] = None) -> List[PaymentTransaction]:
        """Pending records whose submission is claimed or in doubt"""
        results = []
        for state in (SubmissionState.SUBMITTING, SubmissionState.IN_DOUBT):
            filters: Dict[str, Any] = {
                "status": TransactionStatus.PENDING.value,
                "submission_state": state.value
            }
            if loan_id:
                filters["loan_id"] = loan_id
            results.extend(PaymentTransaction.from_dict(d) for d in self.storage.find(self.table_name, filters))
        results.sort(key=lambda t: t.created_at)
        return results

    def _slot_history(self, loan_id: str, kind: TransactionKind, schedule_slot: int) -> List[PaymentTransaction]:
        records = self.storage.find(self.table_name, {
            "loan_id": loan_id, "kind": kind.value, "schedule_slot": schedule_slot
        })
        history = [PaymentTransaction.from_dict(d) for d in records]
        history.sort(key=lambda t: (t.retry_count, t.created_at))
        return history

    def _monotonic_time(self, transaction: PaymentTransaction, at: datetime) -> datetime:
        """Never stamp a later status with an earlier time than a previous one"""
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        previous = [
            getattr(transaction, name) for name in ("initiated_at", "authorized_at")
            if getattr(transaction, name) is not None
        ]
        if previous and at < max(previous):
            return max(previous)
        return at

    def _save(self, transaction: PaymentTransaction) -> None:
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
