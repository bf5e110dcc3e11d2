"""
Test suite for currency module

Tests Decimal rounding, Money arithmetic and the payment amount helpers used
when a collection settles against a loan balance.
"""

import pytest
from decimal import Decimal

from core_lending.currency import (
    Money, Currency, round_currency, validate_payment_amount, calculate_new_balance,
    decimal_from_string, PaymentAmountError, ZERO
)


class TestRounding:
    """Test cent rounding"""

    def test_round_half_up(self):
        assert round_currency(Decimal('2.675')) == Decimal('2.68')
        assert round_currency(Decimal('2.665')) == Decimal('2.67')
        assert round_currency(Decimal('10.004')) == Decimal('10.00')

    def test_round_accepts_strings_and_ints(self):
        assert round_currency("19.999") == Decimal('20.00')
        assert round_currency(5) == Decimal('5.00')

    def test_floats_rejected(self):
        """Floats must never reach monetary arithmetic"""
        with pytest.raises(TypeError):
            round_currency(0.1)


class TestMoney:
    """Test Money value object"""

    def test_money_rounds_to_currency_precision(self):
        money = Money(Decimal('100.005'), Currency.CAD)
        assert money.amount == Decimal('100.01')

    def test_add_and_subtract(self):
        a = Money(Decimal('250.00'), Currency.CAD)
        b = Money(Decimal('100.50'), Currency.CAD)
        assert (a + b).amount == Decimal('350.50')
        assert (a - b).amount == Decimal('149.50')

    def test_currency_mismatch(self):
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.CAD) + Money(Decimal('1'), Currency.USD)

    def test_comparisons(self):
        assert Money(Decimal('2'), Currency.USD) > Money(Decimal('1'), Currency.USD)
        assert Money(Decimal('0'), Currency.USD).is_zero()
        assert Money(Decimal('0.01'), Currency.USD).is_positive()

    def test_to_string(self):
        assert Money(Decimal('1234.5'), Currency.CAD).to_string() == "CAD 1,234.50"


class TestPaymentAmounts:
    """Test payment validation and balance arithmetic"""

    def test_valid_amount(self):
        assert validate_payment_amount(Decimal('100.00'), Decimal('500.00')) is None

    def test_amount_must_be_positive(self):
        assert validate_payment_amount(ZERO, Decimal('500.00')) == PaymentAmountError.AMOUNT_NOT_POSITIVE
        assert validate_payment_amount(Decimal('-1'), Decimal('500.00')) == PaymentAmountError.AMOUNT_NOT_POSITIVE

    def test_overpayment_not_allowed(self):
        error = validate_payment_amount(Decimal('500.01'), Decimal('500.00'))
        assert error == PaymentAmountError.AMOUNT_EXCEEDS_BALANCE
        assert "exceeds" in error.message

    def test_exact_payoff(self):
        result = calculate_new_balance(Decimal('250.00'), Decimal('250.00'))
        assert result.new_balance == ZERO
        assert result.is_paid_off
        assert result.amount_paid == Decimal('250.00')

    def test_partial_payment(self):
        result = calculate_new_balance(Decimal('500.00'), Decimal('125.50'))
        assert result.new_balance == Decimal('374.50')
        assert not result.is_paid_off

    def test_balance_clamped_at_zero(self):
        result = calculate_new_balance(Decimal('10.00'), Decimal('12.00'))
        assert result.new_balance == ZERO
        assert result.is_paid_off


class TestDecimalFromString:
    """Test admin input parsing"""

    def test_plain_and_formatted(self):
        assert decimal_from_string("500.00") == Decimal('500.00')
        assert decimal_from_string("$1,234.56") == Decimal('1234.56')
        assert decimal_from_string("12,50") == Decimal('12.50')

    def test_invalid_input(self):
        with pytest.raises(ValueError):
            decimal_from_string("")
        with pytest.raises(ValueError):
            decimal_from_string("abc")
