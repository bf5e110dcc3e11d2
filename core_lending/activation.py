"""
Loan Activation Module

Fires when a loan's disbursement settles: the loan moves to active and every
scheduled repayment is materialized as a pending collection transaction. Runs
inside the completion unit of work, so a failure here rolls the completion back.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .audit import AuditTrail, AuditEventType
from .ledger import TransactionLedger, PaymentTransaction, TransactionKind
from .loans import LoanManager, Loan, LoanStatus
from .exceptions import IdempotencyConflict, InvalidTransition, ValidationError
from .logging_config import get_logger, log_action


@dataclass
class ActivationResult:
    """Outcome of an activation"""
    loan: Loan
    activated: bool  # False when the loan was already active (re-run)
    materialized: List[PaymentTransaction] = field(default_factory=list)


class LoanActivationTrigger:
    """
    Activates loans and materializes their collection schedules
    """

    def __init__(self, loan_manager: LoanManager, ledger: TransactionLedger,
                 audit_trail: AuditTrail):
        self.loan_manager = loan_manager
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.storage = loan_manager.storage
        self.logger = get_logger("lending.activation")

    def activate(self, loan_id: str, disbursement: PaymentTransaction,
                 user_id: Optional[str] = None) -> ActivationResult:
        """
        Activate a loan for its completed disbursement

        Re-running for an already active loan with the same disbursement only
        fills schedule slots that are still missing.

        Args:
            loan_id: Loan to activate
            disbursement: The disbursement transaction that settled
            user_id: Staff member or job completing the disbursement

        Returns:
            ActivationResult

        Raises:
            InvalidTransition: The loan is in any other status
            ValidationError: The transaction is not this loan's disbursement
        """
        if disbursement.kind != TransactionKind.DISBURSEMENT or disbursement.loan_id != loan_id:
            raise ValidationError(f"Transaction {disbursement.id} is not a disbursement of loan {loan_id}")

        with self.storage.atomic():
            loan = self.loan_manager.require_loan(loan_id)

            if loan.status == LoanStatus.PENDING_DISBURSEMENT:
                loan = self.loan_manager.transition_status(
                    loan_id, LoanStatus.PENDING_DISBURSEMENT, LoanStatus.ACTIVE,
                    user_id=user_id, disbursement_transaction_id=disbursement.id
                )
                activated = True
            elif loan.status == LoanStatus.ACTIVE and loan.disbursement_transaction_id == disbursement.id:
                activated = False
            else:
                raise InvalidTransition(
                    f"Loan {loan_id} in status {loan.status.value} cannot be activated "
                    f"by disbursement {disbursement.id}",
                    current=loan.status, target=LoanStatus.ACTIVE
                )

            materialized = self.materialize_schedule(loan, user_id=user_id)

            if activated:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_ACTIVATED,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={
                        "disbursement_transaction_id": disbursement.id,
                        "collections_materialized": len(materialized)
                    },
                    user_id=user_id
                )

        log_action(
            self.logger, "info",
            "Loan activated" if activated else "Loan already active, schedule checked",
            user_id=user_id, action="activate_loan", resource="loan",
            transaction_id=disbursement.id, loan_id=loan_id,
            extra={"collections_materialized": len(materialized)}
        )
        return ActivationResult(loan=loan, activated=activated, materialized=materialized)

    def materialize_schedule(self, loan: Loan, user_id: Optional[str] = None) -> List[PaymentTransaction]:
        """Create a pending collection for every schedule slot that has no record yet"""
        created = []
        with self.storage.atomic():
            for entry in self.loan_manager.collection_schedule(loan):
                if self.ledger.has_slot(loan.id, TransactionKind.COLLECTION, entry.slot):
                    continue
                try:
                    transaction = self.ledger.create_transaction(
                        loan_id=loan.id,
                        kind=TransactionKind.COLLECTION,
                        amount=entry.amount,
                        schedule_slot=entry.slot,
                        due_date=entry.due_date,
                        created_by=user_id
                    )
                except IdempotencyConflict:
                    continue
                created.append(transaction)

            if created:
                self.audit_trail.log_event(
                    event_type=AuditEventType.SCHEDULE_MATERIALIZED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"slots": [t.schedule_slot for t in created]},
                    user_id=user_id
                )
        return created
