"""
Money Amount Module

Currency rounding, payment amount validation and payoff detection for loan
payments. Pure functions with no I/O: identical inputs always give identical
outputs. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Optional, Union
from enum import Enum
import re

# Set global decimal context for financial precision
getcontext().prec = 28

CENTS = Decimal('0.01')
ZERO = Decimal('0.00')

Number = Union[Decimal, int, str]


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    CAD = ("CAD", 2)  # Canadian Dollar, 2 decimal places
    USD = ("USD", 2)  # US Dollar, 2 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError("Monetary values must not be floats")
    return Decimal(str(value))


def round_currency(value: Number) -> Decimal:
    """Round to cents using round-half-up. All stored amounts pass through here."""
    return _to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        rounded = _to_decimal(self.amount).quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency.code} and {other.currency.code}")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount < other.amount

    def __gt__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount > other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


class PaymentAmountError(Enum):
    """Reasons a payment amount is refused"""
    AMOUNT_NOT_POSITIVE = "amount_not_positive"
    AMOUNT_EXCEEDS_BALANCE = "amount_exceeds_balance"

    @property
    def message(self) -> str:
        if self is PaymentAmountError.AMOUNT_NOT_POSITIVE:
            return "Payment amount must be greater than zero"
        return "Payment amount exceeds the remaining balance"


@dataclass(frozen=True)
class BalanceResult:
    """Outcome of applying a payment to a balance"""
    new_balance: Decimal
    is_paid_off: bool
    amount_paid: Decimal


def validate_payment_amount(amount: Number, remaining_balance: Number) -> Optional[PaymentAmountError]:
    """
    Validate a payment against the remaining balance. Overpayment is not allowed.

    Returns:
        None when the amount is acceptable, otherwise the reason it is not
    """
    amount = round_currency(amount)
    if amount <= ZERO:
        return PaymentAmountError.AMOUNT_NOT_POSITIVE
    if amount > round_currency(remaining_balance):
        return PaymentAmountError.AMOUNT_EXCEEDS_BALANCE
    return None


def calculate_new_balance(current_balance: Number, payment_amount: Number) -> BalanceResult:
    """
    Apply a payment to a balance.

    The new balance is rounded to cents and clamped at zero; the loan is paid off
    once it reaches zero.
    """
    payment = round_currency(payment_amount)
    new_balance = round_currency(_to_decimal(current_balance) - payment)
    if new_balance <= ZERO:
        return BalanceResult(new_balance=ZERO, is_paid_off=True, amount_paid=payment)
    return BalanceResult(new_balance=new_balance, is_paid_off=False, amount_paid=payment)


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert admin input to Decimal, handling common formats

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - comma is the thousands separator
        clean_value = clean_value.replace(',', '')
    elif clean_value.count(',') == 1 and len(clean_value.split(',')[1]) <= 2:
        # Single comma followed by cents - decimal separator
        clean_value = clean_value.replace(',', '.')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
