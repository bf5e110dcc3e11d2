"""
Test suite for loans module

Tests loan creation from approved terms, the loan status lifecycle and
application of settled collections to the remaining balance.
"""

import pytest
from decimal import Decimal
from datetime import date

from core_lending.audit import AuditTrail, AuditEventType
from core_lending.currency import Currency
from core_lending.exceptions import ValidationError, InvalidTransition, TransitionConflict, LoanNotFound
from core_lending.loans import LoanManager, Loan, LoanStatus
from core_lending.schedule import PaymentFrequency, total_repayment
from core_lending.storage import InMemoryStorage


class TestLoanManager:
    """Test loan records and their lifecycle"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.manager = LoanManager(self.storage, self.audit)

    def _create(self, **overrides):
        params = dict(
            principal_amount=Decimal('500.00'),
            annual_interest_rate=Decimal('0'),
            payment_frequency=PaymentFrequency.MONTHLY,
            number_of_payments=2,
            first_payment_date=date(2026, 11, 1)
        )
        params.update(overrides)
        return self.manager.create_loan(**params)

    def _activate(self, loan):
        return self.manager.transition_status(loan.id, LoanStatus.PENDING_DISBURSEMENT, LoanStatus.ACTIVE,
                                              disbursement_transaction_id="T-DISB")

    def test_create_loan(self):
        loan = self._create(processor_customer_id="C-42", user_id="underwriter")

        assert loan.status == LoanStatus.PENDING_DISBURSEMENT
        assert loan.principal_amount == Decimal('500.00')
        assert loan.remaining_balance == Decimal('500.00')
        assert loan.loan_number.startswith("LN-")
        assert loan.currency == Currency.CAD
        assert self.manager.get_loan(loan.id) == loan

        events = self.audit.get_events_for_entity("loan", loan.id)
        assert events[0].event_type == AuditEventType.LOAN_CREATED
        assert events[0].user_id == "underwriter"

    def test_remaining_balance_is_total_repayment(self):
        loan = self._create(annual_interest_rate=Decimal('29'), number_of_payments=6,
                            payment_frequency=PaymentFrequency.BI_WEEKLY, fees=Decimal('25.00'))
        schedule = self.manager.collection_schedule(loan)
        assert len(schedule) == 6
        assert loan.remaining_balance == total_repayment(schedule)
        assert loan.remaining_balance > Decimal('525.00')

    def test_default_terms(self):
        loan = self.manager.create_loan(Decimal('300.00'), Decimal('0'))
        assert loan.terms.number_of_payments == 3
        assert loan.terms.first_payment_date > date.today()

    def test_invalid_terms(self):
        with pytest.raises(ValidationError):
            self._create(principal_amount=Decimal('0'))
        with pytest.raises(ValidationError):
            self._create(number_of_payments=0)

    def test_dict_round_trip(self):
        loan = self._create(currency=Currency.USD, loan_number="LN-TEST")
        assert Loan.from_dict(loan.to_dict()) == loan

    def test_require_unknown_loan(self):
        with pytest.raises(LoanNotFound):
            self.manager.require_loan("missing")

    def test_activation_transition(self):
        loan = self._activate(self._create())
        assert loan.status == LoanStatus.ACTIVE
        assert loan.activated_at is not None
        assert loan.disbursement_transaction_id == "T-DISB"

    def test_illegal_transition(self):
        loan = self._create()
        with pytest.raises(InvalidTransition):
            self.manager.transition_status(loan.id, LoanStatus.PENDING_DISBURSEMENT, LoanStatus.COMPLETED)

    def test_stale_expectation(self):
        loan = self._activate(self._create())
        with pytest.raises(TransitionConflict):
            self.manager.transition_status(loan.id, LoanStatus.PENDING_DISBURSEMENT, LoanStatus.ACTIVE)

    def test_apply_payment(self):
        loan = self._activate(self._create())
        updated = self.manager.apply_payment(loan.id, Decimal('250.00'), transaction_id="T-1")

        assert updated.remaining_balance == Decimal('250.00')
        assert updated.status == LoanStatus.ACTIVE
        payment_events = self.audit.get_events_by_type(AuditEventType.LOAN_PAYMENT_APPLIED)
        assert payment_events[-1].metadata["transaction_id"] == "T-1"
        assert payment_events[-1].metadata["new_balance"] == "250.00"

    def test_final_payment_completes_loan(self):
        loan = self._activate(self._create())
        self.manager.apply_payment(loan.id, Decimal('250.00'))
        paid_off = self.manager.apply_payment(loan.id, Decimal('250.00'))

        assert paid_off.remaining_balance == Decimal('0.00')
        assert paid_off.status == LoanStatus.COMPLETED
        assert paid_off.completed_at is not None
        assert paid_off.is_paid_off

    def test_overpayment_clamped(self):
        loan = self._activate(self._create())
        paid_off = self.manager.apply_payment(loan.id, Decimal('600.00'))
        assert paid_off.remaining_balance == Decimal('0.00')
        assert paid_off.status == LoanStatus.COMPLETED

    def test_payment_requires_active_loan(self):
        loan = self._create()
        with pytest.raises(InvalidTransition):
            self.manager.apply_payment(loan.id, Decimal('100.00'))

    def test_payment_must_be_positive(self):
        loan = self._activate(self._create())
        with pytest.raises(ValidationError):
            self.manager.apply_payment(loan.id, Decimal('0'))

    def test_cancel_and_default(self):
        cancelled = self.manager.cancel_loan(self._create().id)
        assert cancelled.status == LoanStatus.CANCELLED

        defaulted = self.manager.mark_defaulted(self._activate(self._create()).id)
        assert defaulted.status == LoanStatus.DEFAULTED
        assert defaulted.defaulted_at is not None

    def test_list_loans(self):
        self._create()
        self._activate(self._create())
        assert len(self.manager.list_loans()) == 2
        assert len(self.manager.list_loans(status=LoanStatus.ACTIVE)) == 1
