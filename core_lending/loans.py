"""
Loan Module

Loan aggregate referenced by the payments engine: approval intake, status
lifecycle, repayment schedule derivation and balance updates from settled
collections. Loans never embed transactions; the ledger refers to them by id.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import (
    Currency, Money, PaymentAmountError, round_currency, validate_payment_amount,
    calculate_new_balance, ZERO
)
from .schedule import (
    PaymentFrequency, ScheduleEntry, build_collection_schedule, default_number_of_payments,
    due_date_for, total_repayment, validate_loan_parameters
)
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import ValidationError, LoanNotFound, InvalidTransition, TransitionConflict
from .logging_config import get_logger, log_action


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING_DISBURSEMENT = "pending_disbursement"  # Approved, funds not yet sent
    ACTIVE = "active"                              # Disbursed, in repayment
    COMPLETED = "completed"                        # Remaining balance reached zero
    DEFAULTED = "defaulted"                        # Set by collections/risk
    CANCELLED = "cancelled"                        # Withdrawn before disbursement


LOAN_TRANSITIONS: Dict[LoanStatus, frozenset] = {
    LoanStatus.PENDING_DISBURSEMENT: frozenset({LoanStatus.ACTIVE, LoanStatus.CANCELLED}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.COMPLETED, LoanStatus.DEFAULTED}),
    LoanStatus.COMPLETED: frozenset(),
    LoanStatus.DEFAULTED: frozenset(),
    LoanStatus.CANCELLED: frozenset(),
}

STATUS_TIMESTAMPS = {
    LoanStatus.ACTIVE: "activated_at",
    LoanStatus.COMPLETED: "completed_at",
    LoanStatus.DEFAULTED: "defaulted_at",
    LoanStatus.CANCELLED: "cancelled_at",
}


@dataclass
class LoanTerms:
    """Schedule parameters supplied by the approval workflow"""
    annual_interest_rate: Decimal  # Percentage, e.g. 29 for 29%
    number_of_payments: int
    payment_frequency: PaymentFrequency
    first_payment_date: date
    fees: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            'annual_interest_rate': str(self.annual_interest_rate),
            'number_of_payments': self.number_of_payments,
            'payment_frequency': self.payment_frequency.value,
            'first_payment_date': self.first_payment_date.isoformat(),
            'fees': str(self.fees)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        return cls(
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            number_of_payments=data['number_of_payments'],
            payment_frequency=PaymentFrequency(data['payment_frequency']),
            first_payment_date=date.fromisoformat(data['first_payment_date']),
            fees=Decimal(data['fees'])
        )


@dataclass
class Loan(StorageRecord):
    """Approved loan and its repayment position"""
    loan_number: str
    principal_amount: Decimal
    remaining_balance: Decimal
    currency: Currency
    terms: LoanTerms
    status: LoanStatus = LoanStatus.PENDING_DISBURSEMENT
    processor_customer_id: Optional[str] = None
    disbursement_transaction_id: Optional[str] = None
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        """Check if loan is in repayment"""
        return self.status == LoanStatus.ACTIVE

    @property
    def is_paid_off(self) -> bool:
        """Check if nothing remains to collect"""
        return self.remaining_balance <= ZERO

    @property
    def principal(self) -> Money:
        return Money(self.principal_amount, self.currency)

    @property
    def balance(self) -> Money:
        return Money(self.remaining_balance, self.currency)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_number': self.loan_number,
            'principal_amount': str(self.principal_amount),
            'remaining_balance': str(self.remaining_balance),
            'currency': self.currency.code,
            'terms': self.terms.to_dict(),
            'status': self.status.value,
            'processor_customer_id': self.processor_customer_id,
            'disbursement_transaction_id': self.disbursement_transaction_id,
        }
        for name in STATUS_TIMESTAMPS.values():
            value = getattr(self, name)
            result[name] = value.isoformat() if value else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Create from the stored dictionary"""
        def get_datetime(name: str) -> Optional[datetime]:
            if data.get(name):
                return datetime.fromisoformat(data[name])
            return None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            principal_amount=Decimal(data['principal_amount']),
            remaining_balance=Decimal(data['remaining_balance']),
            currency=Currency[data['currency']],
            terms=LoanTerms.from_dict(data['terms']),
            status=LoanStatus(data['status']),
            processor_customer_id=data.get('processor_customer_id'),
            disbursement_transaction_id=data.get('disbursement_transaction_id'),
            activated_at=get_datetime('activated_at'),
            completed_at=get_datetime('completed_at'),
            defaulted_at=get_datetime('defaulted_at'),
            cancelled_at=get_datetime('cancelled_at')
        )


class LoanManager:
    """
    Manages the loan lifecycle around money movement
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.loans_table = "loans"
        self.logger = get_logger("lending.loans")

    def create_loan(
        self,
        principal_amount: Decimal,
        annual_interest_rate: Decimal,
        payment_frequency: PaymentFrequency = PaymentFrequency.MONTHLY,
        number_of_payments: Optional[int] = None,
        first_payment_date: Optional[date] = None,
        fees: Decimal = ZERO,
        currency: Currency = Currency.CAD,
        processor_customer_id: Optional[str] = None,
        loan_number: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Record an approved loan in pending_disbursement

        The remaining balance starts at the total scheduled repayment, so collecting
        every slot brings it to exactly zero.

        Args:
            principal_amount: Amount to disburse
            annual_interest_rate: Annual rate as a percentage
            payment_frequency: Repayment frequency
            number_of_payments: Scheduled collections (defaults by frequency)
            first_payment_date: Due date of slot 1 (defaults to one period from today)
            fees: Fees financed with the principal
            currency: Loan currency
            processor_customer_id: Borrower's customer id at the payment processor
            loan_number: Human readable reference (generated when omitted)
            user_id: Staff member recording the approval

        Returns:
            Created Loan

        Raises:
            ValidationError: Schedule parameters are invalid
        """
        principal_amount = round_currency(principal_amount)
        fees = round_currency(fees)
        annual_interest_rate = Decimal(str(annual_interest_rate))
        if number_of_payments is None:
            number_of_payments = default_number_of_payments(payment_frequency)
        validate_loan_parameters(principal_amount, annual_interest_rate, number_of_payments, fees)

        now = datetime.now(timezone.utc)
        if first_payment_date is None:
            first_payment_date = due_date_for(now.date(), payment_frequency, 1)

        terms = LoanTerms(
            annual_interest_rate=annual_interest_rate,
            number_of_payments=number_of_payments,
            payment_frequency=payment_frequency,
            first_payment_date=first_payment_date,
            fees=fees
        )
        schedule = build_collection_schedule(
            principal_amount, annual_interest_rate, payment_frequency,
            number_of_payments, first_payment_date, fees
        )

        loan_id = str(uuid.uuid4())
        loan = Loan(
            id=loan_id,
            created_at=now,
            updated_at=now,
            loan_number=loan_number or f"LN-{loan_id[:8].upper()}",
            principal_amount=principal_amount,
            remaining_balance=total_repayment(schedule),
            currency=currency,
            terms=terms,
            processor_customer_id=processor_customer_id
        )

        with self.storage.atomic():
            self._save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "principal_amount": principal_amount,
                    "total_repayment": loan.remaining_balance,
                    "annual_interest_rate": annual_interest_rate,
                    "number_of_payments": number_of_payments,
                    "payment_frequency": payment_frequency.value,
                    "first_payment_date": first_payment_date.isoformat()
                },
                user_id=user_id
            )

        log_action(
            self.logger, "info", f"Loan {loan.loan_number} created",
            user_id=user_id, action="create_loan", resource="loan", loan_id=loan.id,
            extra={"principal_amount": str(principal_amount)}
        )
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if loan_dict:
            return Loan.from_dict(loan_dict)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        """Get loan by ID or raise LoanNotFound"""
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return loan

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        """All loans, optionally filtered by status"""
        filters = {"status": status.value} if status else {}
        return [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]

    def collection_schedule(self, loan: Loan) -> List[ScheduleEntry]:
        """Derive the repayment schedule of a loan"""
        return build_collection_schedule(
            loan.principal_amount,
            loan.terms.annual_interest_rate,
            loan.terms.payment_frequency,
            loan.terms.number_of_payments,
            loan.terms.first_payment_date,
            loan.terms.fees
        )

    def transition_status(
        self,
        loan_id: str,
        expected: LoanStatus,
        new: LoanStatus,
        user_id: Optional[str] = None,
        **changes
    ) -> Loan:
        """
        Compare-and-swap the loan status

        Raises:
            InvalidTransition: The edge is not part of the loan lifecycle
            TransitionConflict: The stored status was not ``expected``
            LoanNotFound: Unknown loan id
        """
        if new not in LOAN_TRANSITIONS[expected]:
            raise InvalidTransition(
                f"Loan {loan_id} cannot move from {expected.value} to {new.value}",
                current=expected, target=new
            )

        now = datetime.now(timezone.utc)
        update: Dict[str, Any] = {
            key: (value.isoformat() if isinstance(value, (datetime, date))
                  else str(value) if isinstance(value, Decimal) else value)
            for key, value in changes.items()
        }
        update["status"] = new.value
        update["updated_at"] = now.isoformat()
        update[STATUS_TIMESTAMPS[new]] = now.isoformat()

        with self.storage.atomic():
            current = self.require_loan(loan_id)
            stored = self.storage.compare_and_set(
                self.loans_table, loan_id, {"status": expected.value}, update
            )
            if stored is None:
                raise TransitionConflict(
                    f"Loan {loan_id} is {current.status.value}, expected {expected.value}",
                    current=current.status, target=new
                )
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_STATUS_CHANGED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={"from": expected.value, "to": new.value},
                user_id=user_id
            )

        log_action(
            self.logger, "info", f"Loan moved from {expected.value} to {new.value}",
            user_id=user_id, action="loan_status", resource="loan", loan_id=loan_id
        )
        return Loan.from_dict(stored)

    def apply_payment(self, loan_id: str, amount: Decimal,
                      transaction_id: Optional[str] = None,
                      user_id: Optional[str] = None) -> Loan:
        """
        Reduce the remaining balance by a settled collection

        The loan moves to completed once nothing remains. An amount above the
        balance is clamped since the funds have already moved. Runs inside the caller's
        unit of work when there is one.

        Raises:
            InvalidTransition: Loan is not active
            ValidationError: Amount is not positive
        """
        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise InvalidTransition(
                    f"Cannot apply a payment to loan {loan_id} in status {loan.status.value}",
                    current=loan.status
                )

            error = validate_payment_amount(amount, loan.remaining_balance)
            if error == PaymentAmountError.AMOUNT_NOT_POSITIVE:
                raise ValidationError(error.message, reason=error)
            if error == PaymentAmountError.AMOUNT_EXCEEDS_BALANCE:
                # Funds already moved at the processor; the balance is clamped at zero
                log_action(
                    self.logger, "warning", "Settled amount exceeds the remaining balance",
                    user_id=user_id, action="apply_payment", resource="loan",
                    transaction_id=transaction_id, loan_id=loan_id,
                    extra={"amount": str(amount), "remaining_balance": str(loan.remaining_balance)}
                )

            result = calculate_new_balance(loan.remaining_balance, amount)
            now = datetime.now(timezone.utc)
            update: Dict[str, Any] = {
                "remaining_balance": str(result.new_balance),
                "updated_at": now.isoformat()
            }
            if result.is_paid_off:
                update["status"] = LoanStatus.COMPLETED.value
                update["completed_at"] = now.isoformat()

            stored = self.storage.compare_and_set(
                self.loans_table, loan_id,
                {"status": LoanStatus.ACTIVE.value, "remaining_balance": str(loan.remaining_balance)},
                update
            )
            if stored is None:
                raise TransitionConflict(f"Loan {loan_id} changed concurrently", current=loan.status)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PAYMENT_APPLIED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={
                    "transaction_id": transaction_id,
                    "amount_paid": result.amount_paid,
                    "previous_balance": loan.remaining_balance,
                    "new_balance": result.new_balance,
                    "is_paid_off": result.is_paid_off
                },
                user_id=user_id
            )
            if result.is_paid_off:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_STATUS_CHANGED,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={"from": LoanStatus.ACTIVE.value, "to": LoanStatus.COMPLETED.value},
                    user_id=user_id
                )

        log_action(
            self.logger, "info",
            "Loan paid off" if result.is_paid_off else "Payment applied to loan",
            user_id=user_id, action="apply_payment", resource="loan",
            transaction_id=transaction_id, loan_id=loan_id,
            extra={"amount": str(result.amount_paid), "remaining_balance": str(result.new_balance)}
        )
        return Loan.from_dict(stored)

    def mark_defaulted(self, loan_id: str, user_id: Optional[str] = None) -> Loan:
        """Move an active loan to defaulted (collections/risk decision)"""
        return self.transition_status(loan_id, LoanStatus.ACTIVE, LoanStatus.DEFAULTED, user_id=user_id)

    def cancel_loan(self, loan_id: str, user_id: Optional[str] = None) -> Loan:
        """Withdraw a loan that was never disbursed"""
        return self.transition_status(
            loan_id, LoanStatus.PENDING_DISBURSEMENT, LoanStatus.CANCELLED, user_id=user_id
        )

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
