"""
Payment Orchestrator Module

Drives payment transactions through their lifecycle: idempotent creation,
submission to the processor, authorization, completion with its loan side
effects, cancellation, staff voids and explicit re-initiation after failure.

Submission protocol for a pending record:

1. Check before retry: an in-doubt record (its previous submission timed out)
   is looked up at the processor first, by external id or by reference.
2. Claim: compare-and-swap ``not_submitted -> submitting``. Only the winner
   contacts the processor; losers return the record unchanged.
3. Submit: success moves the record to initiated, a timeout leaves it in doubt,
   any other gateway error returns it to not_submitted.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .activation import LoanActivationTrigger
from .audit import AuditTrail, AuditEventType
from .currency import round_currency, validate_payment_amount
from .error_codes import VOIDED_ERROR_CODE
from .events import EventDispatcher, DomainEvent, create_transaction_event, create_loan_event
from .exceptions import (
    ValidationError, IdempotencyConflict, InvalidTransition, TransitionConflict,
    GatewayError, ProcessorTimeout, ProcessorRejected
)
from .gateway import ProcessorGateway
from .ledger import (
    TransactionLedger, PaymentTransaction, TransactionKind, TransactionStatus, SubmissionState
)
from .loans import LoanManager, Loan, LoanStatus
from .logging_config import get_logger, log_action


@dataclass
class TransactionHandle:
    """A transaction returned to a requester"""
    transaction: PaymentTransaction
    created: bool  # False when an active record already existed


def describe_gateway_error(error: GatewayError) -> str:
    """Short text stored as last_gateway_error"""
    if isinstance(error, ProcessorRejected):
        return f"{error.code}: {error}"
    return f"{type(error).__name__}: {error}"


class PaymentOrchestrator:
    """
    Lifecycle orchestrator for disbursements and collections
    """

    def __init__(
        self,
        ledger: TransactionLedger,
        loan_manager: LoanManager,
        gateway: ProcessorGateway,
        activation: LoanActivationTrigger,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.ledger = ledger
        self.loan_manager = loan_manager
        self.gateway = gateway
        self.activation = activation
        self.audit_trail = audit_trail
        self.event_dispatcher = event_dispatcher
        self.storage = ledger.storage
        self.logger = get_logger("lending.orchestrator")

    # Requests

    def request_disbursement(self, loan_id: str, amount: Optional[Decimal] = None,
                             user_id: Optional[str] = None) -> TransactionHandle:
        """
        Disburse a loan's principal to the borrower

        Args:
            loan_id: Loan in pending_disbursement
            amount: Amount to send (defaults to the principal)
            user_id: Staff member requesting the disbursement

        Returns:
            TransactionHandle for the new or already active disbursement

        Raises:
            ValidationError: Bad amount, loan not awaiting disbursement, or already disbursed
            GatewayError: The submission failed; the record stays pending
        """
        loan = self.loan_manager.require_loan(loan_id)
        if loan.status != LoanStatus.PENDING_DISBURSEMENT:
            raise ValidationError(
                f"Loan {loan.loan_number} is {loan.status.value}; "
                f"disbursement requires {LoanStatus.PENDING_DISBURSEMENT.value}"
            )

        amount = round_currency(loan.principal_amount if amount is None else amount)
        error = validate_payment_amount(amount, loan.principal_amount)
        if error:
            raise ValidationError(error.message, reason=error)

        self._ensure_slot_open(loan, TransactionKind.DISBURSEMENT, 0)
        handle = self._create_or_existing(loan, TransactionKind.DISBURSEMENT, amount, None, None, user_id)
        return self._submit_handle(handle, loan, user_id)

    def request_collection(self, loan_id: str, slot: int, amount: Optional[Decimal] = None,
                           user_id: Optional[str] = None) -> TransactionHandle:
        """
        Collect one scheduled repayment from the borrower

        The pending placeholder materialized at activation is the record that gets
        submitted, at its own amount. A requested ``amount`` must match it.

        Raises:
            ValidationError: Bad amount or slot, amount differs from the slot's active
                record, loan not active, or slot already collected
            GatewayError: The submission failed; the record stays pending
        """
        loan = self.loan_manager.require_loan(loan_id)
        if loan.status != LoanStatus.ACTIVE:
            raise ValidationError(
                f"Loan {loan.loan_number} is {loan.status.value}; collections require an active loan"
            )

        schedule = self.loan_manager.collection_schedule(loan)
        if slot < 1 or slot > len(schedule):
            raise ValidationError(f"Schedule slot {slot} is outside 1..{len(schedule)}")
        entry = schedule[slot - 1]

        requested = None if amount is None else round_currency(amount)
        active = self.ledger.find_active(loan.id, TransactionKind.COLLECTION, slot)
        if active:
            if requested is not None and requested != active.amount:
                raise ValidationError(
                    f"Loan {loan.loan_number} slot {slot} already has transaction {active.id} "
                    f"for {active.amount}; requested {requested}"
                )
            amount = active.amount
        else:
            amount = entry.amount if requested is None else requested

        error = validate_payment_amount(amount, loan.remaining_balance)
        if error:
            raise ValidationError(error.message, reason=error)

        self._ensure_slot_open(loan, TransactionKind.COLLECTION, slot)
        handle = self._create_or_existing(loan, TransactionKind.COLLECTION, amount, slot, entry.due_date, user_id)
        return self._submit_handle(handle, loan, user_id)

    def retry(self, transaction_id: str, user_id: Optional[str] = None) -> TransactionHandle:
        """
        Explicitly re-initiate a failed transaction

        A new record with retry_count + 1 replaces it for the same loan, kind, slot
        and amount. The failed record stays as it is.

        Raises:
            InvalidTransition: The transaction is not failed
            ValidationError: The loan no longer accepts this kind of transaction
        """
        failed = self.ledger.require_transaction(transaction_id)
        if failed.status != TransactionStatus.FAILED:
            raise InvalidTransition(
                f"Only failed transactions can be re-initiated; {transaction_id} is {failed.status.value}",
                current=failed.status
            )

        loan = self.loan_manager.require_loan(failed.loan_id)
        required = (LoanStatus.PENDING_DISBURSEMENT if failed.kind == TransactionKind.DISBURSEMENT
                    else LoanStatus.ACTIVE)
        if loan.status != required:
            raise ValidationError(
                f"Loan {loan.loan_number} is {loan.status.value}; cannot re-initiate a {failed.kind.value}"
            )

        self._ensure_slot_open(loan, failed.kind, failed.schedule_slot)
        slot = failed.schedule_slot if failed.kind == TransactionKind.COLLECTION else None
        handle = self._create_or_existing(loan, failed.kind, failed.amount, slot, failed.due_date, user_id)
        return self._submit_handle(handle, loan, user_id)

    def submit(self, transaction_id: str, user_id: Optional[str] = None) -> PaymentTransaction:
        """Submit (or resume submitting) an existing pending transaction"""
        transaction = self.ledger.require_transaction(transaction_id)
        loan = self.loan_manager.require_loan(transaction.loan_id)
        return self._submit(transaction, loan, user_id)

    # Processor-driven transitions

    def authorize(self, transaction_id: str, user_id: Optional[str] = None) -> PaymentTransaction:
        """
        Authorize an initiated transaction at the processor

        A processor rejection fails the record with the reported code; there is no
        automatic retry. Network errors and timeouts propagate and leave the record
        unchanged for the next sweep.

        Raises:
            InvalidTransition: The transaction is not initiated
            NetworkError, ProcessorTimeout: The processor could not be reached
        """
        transaction = self.ledger.require_transaction(transaction_id)
        if transaction.status != TransactionStatus.INITIATED:
            raise InvalidTransition(
                f"Transaction {transaction_id} is {transaction.status.value}; authorize requires initiated",
                current=transaction.status, target=TransactionStatus.AUTHORIZED
            )

        try:
            self.gateway.authorize(transaction.external_id)
        except ProcessorRejected as e:
            log_action(
                self.logger, "warning", f"Processor rejected authorization with code {e.code}",
                user_id=user_id, action="authorize", resource="transaction",
                transaction_id=transaction_id, loan_id=transaction.loan_id,
                extra={"external_id": transaction.external_id, "error_code": e.code}
            )
            return self.record_failure(transaction_id, TransactionStatus.INITIATED, e.code, user_id=user_id)

        return self.record_authorization(transaction_id, user_id=user_id)

    def record_authorization(self, transaction_id: str, user_id: Optional[str] = None,
                             at: Optional[datetime] = None) -> PaymentTransaction:
        """Record that the processor authorized the transaction"""
        try:
            transaction = self.ledger.transition(
                transaction_id, TransactionStatus.INITIATED, TransactionStatus.AUTHORIZED,
                at=at, user_id=user_id
            )
        except TransitionConflict:
            return self._lost_race(transaction_id, "authorization")

        self._publish(create_transaction_event(DomainEvent.TRANSACTION_AUTHORIZED, transaction))
        return transaction

    def record_failure(self, transaction_id: str, expected: TransactionStatus, error_code: str,
                       user_id: Optional[str] = None, at: Optional[datetime] = None) -> PaymentTransaction:
        """Record a processor-reported failure with its error code"""
        try:
            transaction = self.ledger.transition(
                transaction_id, expected, TransactionStatus.FAILED,
                error_code=error_code, at=at, user_id=user_id
            )
        except TransitionConflict:
            return self._lost_race(transaction_id, "failure")

        self._publish(create_transaction_event(DomainEvent.TRANSACTION_FAILED, transaction))
        return transaction

    def confirm_completion(self, transaction_id: str, user_id: Optional[str] = None,
                           settled_at: Optional[datetime] = None) -> PaymentTransaction:
        """
        Complete an authorized transaction together with its loan side effect

        Completing a disbursement activates the loan and materializes its schedule;
        completing a collection reduces the loan balance. Both happen in one unit of
        work with the status change. An already completed transaction is returned
        unchanged with no side effects.

        The processor has already moved the funds, so a loan that can no longer
        take the side effect (defaulted, paid off, cancelled) is left unchanged and
        the settlement is audited for follow-up.

        Raises:
            InvalidTransition: The transaction is not authorized, or the loan side
                effect failed (the completion is rolled back)
        """
        current = self.ledger.require_transaction(transaction_id)
        if current.status == TransactionStatus.COMPLETED:
            return current
        if current.status != TransactionStatus.AUTHORIZED:
            raise InvalidTransition(
                f"Transaction {transaction_id} is {current.status.value}; completion requires authorized",
                current=current.status, target=TransactionStatus.COMPLETED
            )

        activation_result = None
        loan = None
        applied = True
        try:
            with self.storage.atomic():
                transaction = self.ledger.transition(
                    transaction_id, TransactionStatus.AUTHORIZED, TransactionStatus.COMPLETED,
                    at=settled_at, user_id=user_id
                )
                loan = self.loan_manager.require_loan(transaction.loan_id)
                if not self._accepts_settlement(loan, transaction):
                    # Funds moved at the processor; the loan is left as it is
                    applied = False
                    self.audit_trail.log_event(
                        event_type=AuditEventType.SETTLED_ON_INACTIVE_LOAN,
                        entity_type="transaction",
                        entity_id=transaction.id,
                        metadata={
                            "loan_id": loan.id,
                            "loan_status": loan.status,
                            "kind": transaction.kind,
                            "amount": transaction.amount
                        },
                        user_id=user_id
                    )
                elif transaction.kind == TransactionKind.DISBURSEMENT:
                    activation_result = self.activation.activate(transaction.loan_id, transaction, user_id=user_id)
                    loan = activation_result.loan
                else:
                    loan = self.loan_manager.apply_payment(
                        transaction.loan_id, transaction.amount,
                        transaction_id=transaction.id, user_id=user_id
                    )
        except TransitionConflict:
            latest = self.ledger.require_transaction(transaction_id)
            if latest.status == TransactionStatus.COMPLETED:
                return latest
            raise

        if not applied:
            log_action(
                self.logger, "warning",
                f"{transaction.kind.value.capitalize()} settled against a {loan.status.value} loan, "
                "loan not changed",
                user_id=user_id, action="confirm_completion", resource="transaction",
                transaction_id=transaction.id, loan_id=loan.id,
                extra={"amount": str(transaction.amount), "external_id": transaction.external_id}
            )

        self._publish(create_transaction_event(DomainEvent.TRANSACTION_COMPLETED, transaction))
        if activation_result and activation_result.activated:
            self._publish(create_loan_event(
                DomainEvent.LOAN_ACTIVATED, loan,
                collections_materialized=len(activation_result.materialized)
            ))
        if applied and transaction.kind == TransactionKind.COLLECTION and loan.status == LoanStatus.COMPLETED:
            self._publish(create_loan_event(DomainEvent.LOAN_PAID_OFF, loan))
        return transaction

    def void(self, transaction_id: str, reason: Optional[str] = None,
             user_id: Optional[str] = None) -> PaymentTransaction:
        """
        Void a submitted transaction at the processor

        The record fails with error code VOIDED once the processor confirms.

        Raises:
            InvalidTransition: The transaction is not initiated or authorized
            GatewayError: The processor refused or could not be reached; the record is unchanged
        """
        transaction = self.ledger.require_transaction(transaction_id)
        if transaction.status not in (TransactionStatus.INITIATED, TransactionStatus.AUTHORIZED):
            raise InvalidTransition(
                f"Transaction {transaction_id} is {transaction.status.value}; "
                "only initiated or authorized transactions can be voided",
                current=transaction.status, target=TransactionStatus.FAILED
            )

        try:
            self.gateway.void(transaction.external_id)
        except GatewayError as e:
            log_action(
                self.logger, "error", f"Void at processor failed: {describe_gateway_error(e)}",
                user_id=user_id, action="void", resource="transaction",
                transaction_id=transaction_id, loan_id=transaction.loan_id,
                extra={"external_id": transaction.external_id}
            )
            raise

        log_action(
            self.logger, "info", "Transaction voided at processor",
            user_id=user_id, action="void", resource="transaction",
            transaction_id=transaction_id, loan_id=transaction.loan_id,
            extra={"external_id": transaction.external_id, "reason": reason}
        )
        try:
            voided = self.ledger.transition(
                transaction_id, transaction.status, TransactionStatus.FAILED,
                error_code=VOIDED_ERROR_CODE, changes={"void_reason": reason}, user_id=user_id
            )
        except TransitionConflict:
            return self._lost_race(transaction_id, "void")

        self._publish(create_transaction_event(DomainEvent.TRANSACTION_FAILED, voided))
        return voided

    def cancel(self, transaction_id: str, reason: Optional[str] = None,
               user_id: Optional[str] = None) -> PaymentTransaction:
        """
        Cancel a transaction the processor has never seen

        Raises:
            InvalidTransition: The record is past pending or a submission is under way
        """
        transaction = self.ledger.require_transaction(transaction_id)
        if (transaction.status != TransactionStatus.PENDING
                or transaction.submission_state != SubmissionState.NOT_SUBMITTED):
            raise InvalidTransition(
                f"Transaction {transaction_id} is {transaction.status.value}"
                f"/{transaction.submission_state.value}; only unsubmitted pending transactions can be cancelled",
                current=transaction.status, target=TransactionStatus.CANCELLED
            )

        transaction = self.ledger.transition(
            transaction_id, TransactionStatus.PENDING, TransactionStatus.CANCELLED,
            expected_submission=SubmissionState.NOT_SUBMITTED,
            changes={"cancel_reason": reason}, user_id=user_id
        )
        self._publish(create_transaction_event(DomainEvent.TRANSACTION_CANCELLED, transaction))
        return transaction

    # Submission

    def resolve_submission(self, transaction_id: str, user_id: Optional[str] = None) -> PaymentTransaction:
        """
        Settle an in-doubt submission by asking the processor

        Found at the processor: the record moves to initiated with that external id.
        Not found: it returns to not_submitted and may be submitted again.
        """
        transaction = self.ledger.require_transaction(transaction_id)
        if transaction.status != TransactionStatus.PENDING or transaction.submission_state != SubmissionState.IN_DOUBT:
            return transaction

        if transaction.external_id:
            remote = self.gateway.fetch_status(transaction.external_id)
        else:
            submitted_on = (transaction.submission_started_at or transaction.updated_at).date()
            remote = self.gateway.find_by_reference(transaction.id, submitted_on)

        if remote is None:
            log_action(
                self.logger, "info", "In-doubt submission never reached the processor",
                user_id=user_id, action="resolve_submission", resource="transaction",
                transaction_id=transaction_id, loan_id=transaction.loan_id
            )
            restored = self.ledger.update_submission(
                transaction_id, SubmissionState.IN_DOUBT, SubmissionState.NOT_SUBMITTED, user_id=user_id
            )
            return restored or self.ledger.require_transaction(transaction_id)

        return self._record_initiated(transaction, remote.external_id, SubmissionState.IN_DOUBT, user_id)

    def _submit_handle(self, handle: TransactionHandle, loan: Loan,
                       user_id: Optional[str]) -> TransactionHandle:
        transaction = handle.transaction
        if transaction.status == TransactionStatus.PENDING and transaction.submission_state in (
            SubmissionState.NOT_SUBMITTED, SubmissionState.IN_DOUBT
        ):
            transaction = self._submit(transaction, loan, user_id)
        return TransactionHandle(transaction=transaction, created=handle.created)

    def _submit(self, transaction: PaymentTransaction, loan: Loan,
                user_id: Optional[str]) -> PaymentTransaction:
        if transaction.status != TransactionStatus.PENDING:
            return transaction

        if transaction.submission_state == SubmissionState.IN_DOUBT:
            transaction = self.resolve_submission(transaction.id, user_id=user_id)
            if transaction.status != TransactionStatus.PENDING:
                return transaction

        claimed = self.ledger.update_submission(
            transaction.id, SubmissionState.NOT_SUBMITTED, SubmissionState.SUBMITTING, user_id=user_id
        )
        if claimed is None:
            # Another caller holds the submission
            return self.ledger.require_transaction(transaction.id)

        try:
            external_id = self.gateway.initiate(
                claimed,
                customer_id=loan.processor_customer_id,
                memo=f"LOAN-{loan.loan_number}"
            )
        except ProcessorTimeout as e:
            self._log_gateway_error(claimed, e, user_id)
            self.ledger.update_submission(
                claimed.id, SubmissionState.SUBMITTING, SubmissionState.IN_DOUBT,
                changes={"last_gateway_error": describe_gateway_error(e)}, user_id=user_id
            )
            raise
        except GatewayError as e:
            self._log_gateway_error(claimed, e, user_id)
            self.ledger.update_submission(
                claimed.id, SubmissionState.SUBMITTING, SubmissionState.NOT_SUBMITTED,
                changes={"last_gateway_error": describe_gateway_error(e)}, user_id=user_id
            )
            raise

        return self._record_initiated(claimed, external_id, SubmissionState.SUBMITTING, user_id)

    def _record_initiated(self, transaction: PaymentTransaction, external_id: str,
                          expected_submission: SubmissionState,
                          user_id: Optional[str]) -> PaymentTransaction:
        try:
            initiated = self.ledger.transition(
                transaction.id, TransactionStatus.PENDING, TransactionStatus.INITIATED,
                external_id=external_id, expected_submission=expected_submission,
                changes={"last_gateway_error": None}, user_id=user_id
            )
        except TransitionConflict:
            current = self.ledger.require_transaction(transaction.id)
            if current.external_id != external_id:
                log_action(
                    self.logger, "error",
                    "Processor accepted a submission the ledger already resolved differently",
                    user_id=user_id, action="initiate", resource="transaction",
                    transaction_id=transaction.id, loan_id=transaction.loan_id,
                    extra={"external_id": external_id, "recorded_external_id": current.external_id}
                )
            return current

        self._publish(create_transaction_event(DomainEvent.TRANSACTION_INITIATED, initiated))
        return initiated

    # Helpers

    def _create_or_existing(self, loan: Loan, kind: TransactionKind, amount: Decimal,
                            slot: Optional[int], due_date, user_id: Optional[str]) -> TransactionHandle:
        try:
            transaction = self.ledger.create_transaction(
                loan_id=loan.id, kind=kind, amount=amount, schedule_slot=slot,
                due_date=due_date, created_by=user_id
            )
        except IdempotencyConflict as conflict:
            existing = conflict.existing
            log_action(
                self.logger, "info", "Active transaction already exists, returning it",
                user_id=user_id, action="request", resource="transaction",
                transaction_id=existing.id, loan_id=loan.id,
                extra={"status": existing.status.value, "submission_state": existing.submission_state.value}
            )
            return TransactionHandle(transaction=existing, created=False)

        self._publish(create_transaction_event(DomainEvent.TRANSACTION_CREATED, transaction))
        return TransactionHandle(transaction=transaction, created=True)

    def _ensure_slot_open(self, loan: Loan, kind: TransactionKind, slot: int) -> None:
        latest = self.ledger.latest_for_slot(loan.id, kind, slot)
        if latest and latest.status == TransactionStatus.COMPLETED:
            raise ValidationError(
                f"Loan {loan.loan_number} {kind.value} slot {slot} is already completed "
                f"by transaction {latest.id}"
            )

    @staticmethod
    def _accepts_settlement(loan: Loan, transaction: PaymentTransaction) -> bool:
        if transaction.kind == TransactionKind.COLLECTION:
            return loan.status == LoanStatus.ACTIVE
        if loan.status == LoanStatus.PENDING_DISBURSEMENT:
            return True
        return loan.status == LoanStatus.ACTIVE and loan.disbursement_transaction_id == transaction.id

    def _lost_race(self, transaction_id: str, what: str) -> PaymentTransaction:
        current = self.ledger.require_transaction(transaction_id)
        log_action(
            self.logger, "info", f"Transaction moved concurrently, {what} not applied",
            action="transition", resource="transaction",
            transaction_id=transaction_id, loan_id=current.loan_id,
            extra={"status": current.status.value}
        )
        return current

    def _log_gateway_error(self, transaction: PaymentTransaction, error: GatewayError,
                           user_id: Optional[str]) -> None:
        log_action(
            self.logger, "warning" if isinstance(error, ProcessorTimeout) else "error",
            f"Submission to processor failed: {describe_gateway_error(error)}",
            user_id=user_id, action="initiate", resource="transaction",
            transaction_id=transaction.id, loan_id=transaction.loan_id
        )

    def _publish(self, event) -> None:
        if self.event_dispatcher:
            self.event_dispatcher.publish(event)
