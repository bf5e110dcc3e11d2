"""
Collection Schedule Module

Derives the repayment schedule of a loan from its principal, fees, rate, number
of payments and frequency. The schedule is not persisted on its own: each entry
becomes one collection PaymentTransaction when the loan is activated.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import List
from enum import Enum
import calendar

from .currency import round_currency, ZERO
from .exceptions import ValidationError


class PaymentFrequency(Enum):
    """Repayment frequency options"""
    WEEKLY = "weekly"                # 52 payments per year
    BI_WEEKLY = "bi_weekly"          # 26 payments per year
    TWICE_MONTHLY = "twice_monthly"  # 24 payments per year, 15th and month end
    MONTHLY = "monthly"              # 12 payments per year

    @property
    def payments_per_year(self) -> int:
        return {
            PaymentFrequency.WEEKLY: 52,
            PaymentFrequency.BI_WEEKLY: 26,
            PaymentFrequency.TWICE_MONTHLY: 24,
            PaymentFrequency.MONTHLY: 12,
        }[self]

    @property
    def days_between(self) -> int:
        return {
            PaymentFrequency.WEEKLY: 7,
            PaymentFrequency.BI_WEEKLY: 14,
            PaymentFrequency.TWICE_MONTHLY: 15,
            PaymentFrequency.MONTHLY: 0,
        }[self]


@dataclass(frozen=True)
class ScheduleEntry:
    """One scheduled collection"""
    slot: int
    due_date: date
    amount: Decimal
    interest: Decimal
    principal: Decimal
    remaining_balance: Decimal


def default_number_of_payments(frequency: PaymentFrequency) -> int:
    """Standard short-term loan length for a frequency"""
    return {
        PaymentFrequency.WEEKLY: 12,
        PaymentFrequency.BI_WEEKLY: 6,
        PaymentFrequency.TWICE_MONTHLY: 6,
        PaymentFrequency.MONTHLY: 3,
    }[frequency]


def validate_loan_parameters(principal: Decimal, annual_interest_rate: Decimal,
                             number_of_payments: int, fees: Decimal = ZERO) -> None:
    """Raise ValidationError when schedule parameters cannot produce a schedule"""
    if principal <= ZERO:
        raise ValidationError("Principal amount must be greater than zero")
    if annual_interest_rate < ZERO:
        raise ValidationError("Interest rate cannot be negative")
    if number_of_payments < 1:
        raise ValidationError("Number of payments must be at least 1")
    if fees < ZERO:
        raise ValidationError("Fees cannot be negative")


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for(first_payment_date: date, frequency: PaymentFrequency, index: int) -> date:
    """Due date of the payment at zero-based ``index``"""
    if frequency == PaymentFrequency.MONTHLY:
        return add_months(first_payment_date, index)
    if frequency == PaymentFrequency.TWICE_MONTHLY:
        month_start = add_months(first_payment_date.replace(day=1), index // 2)
        if index % 2 == 0:
            return month_start.replace(day=15)
        last_day = calendar.monthrange(month_start.year, month_start.month)[1]
        return month_start.replace(day=last_day)
    return first_payment_date + timedelta(days=index * frequency.days_between)


def periodic_rate(annual_interest_rate: Decimal, frequency: PaymentFrequency) -> Decimal:
    """Annual rate given as a percentage (29 for 29%) to the per-period rate"""
    return Decimal(str(annual_interest_rate)) / Decimal('100') / Decimal(frequency.payments_per_year)


def calculate_payment_amount(total_loan_amount: Decimal, annual_interest_rate: Decimal,
                             frequency: PaymentFrequency, number_of_payments: int) -> Decimal:
    """
    Level payment for an amortized loan: P * r(1+r)^n / ((1+r)^n - 1)

    Args:
        total_loan_amount: Principal plus fees
        annual_interest_rate: Annual rate as a percentage
        frequency: Repayment frequency
        number_of_payments: Number of scheduled collections

    Returns:
        Payment amount rounded to cents
    """
    rate = periodic_rate(annual_interest_rate, frequency)
    n = number_of_payments

    if rate == 0:
        return round_currency(total_loan_amount / Decimal(n))

    factor = (Decimal('1') + rate) ** n
    return round_currency(total_loan_amount * rate * factor / (factor - Decimal('1')))


def build_collection_schedule(principal: Decimal, annual_interest_rate: Decimal,
                              frequency: PaymentFrequency, number_of_payments: int,
                              first_payment_date: date, fees: Decimal = ZERO) -> List[ScheduleEntry]:
    """
    Build the ordered collection schedule of a loan.

    Interest is charged on the remaining balance each period and rounded to cents.
    The final payment clears the exact remaining balance, so the amounts always sum
    to the total repayment.
    """
    principal = round_currency(principal)
    fees = round_currency(fees)
    validate_loan_parameters(principal, Decimal(str(annual_interest_rate)), number_of_payments, fees)

    total_loan_amount = principal + fees
    payment_amount = calculate_payment_amount(
        total_loan_amount, annual_interest_rate, frequency, number_of_payments
    )
    rate = periodic_rate(annual_interest_rate, frequency)

    schedule = []
    remaining = total_loan_amount

    for index in range(number_of_payments):
        interest = round_currency(remaining * rate)
        principal_part = max(ZERO, payment_amount - interest)

        # Final payment pays off exactly what's left
        if index == number_of_payments - 1 or principal_part > remaining:
            principal_part = remaining

        remaining = remaining - principal_part

        schedule.append(ScheduleEntry(
            slot=index + 1,
            due_date=due_date_for(first_payment_date, frequency, index),
            amount=round_currency(principal_part + interest),
            interest=interest,
            principal=round_currency(principal_part),
            remaining_balance=round_currency(remaining)
        ))

        if remaining == ZERO:
            break

    return schedule


def total_repayment(schedule: List[ScheduleEntry]) -> Decimal:
    """Sum of all scheduled collection amounts"""
    return round_currency(sum((entry.amount for entry in schedule), ZERO))
