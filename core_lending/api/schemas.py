"""
Pydantic schemas for API requests and response serialization helpers
"""

from decimal import Decimal
from datetime import date, datetime
from typing import Dict, Optional, Any
from pydantic import BaseModel, Field

from ..currency import Money, Currency, decimal_from_string
from ..error_codes import describe_error
from ..exceptions import ValidationError
from ..ledger import PaymentTransaction
from ..loans import Loan
from ..reconciliation import SyncRun, SyncOutcome
from ..schedule import ScheduleEntry


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (CAD, USD)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


class CreateLoanRequest(BaseModel):
    principal_amount: str = Field(..., description="Decimal amount as string")
    annual_interest_rate: str = Field("0", description="Annual rate in percent, e.g. 29")
    payment_frequency: str = Field("monthly", description="weekly, bi_weekly, twice_monthly or monthly")
    number_of_payments: Optional[int] = None
    first_payment_date: Optional[date] = None
    fees: str = "0"
    currency: str = "CAD"
    processor_customer_id: Optional[str] = None
    loan_number: Optional[str] = None


class DisbursementRequest(BaseModel):
    amount: Optional[str] = Field(None, description="Defaults to the principal")


class CollectionRequest(BaseModel):
    schedule_slot: int
    amount: Optional[str] = Field(None, description="Defaults to the scheduled amount")


class ConfirmRequest(BaseModel):
    settled_at: Optional[datetime] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class VoidRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Recorded with the voided transaction")


class SyncRunRequest(BaseModel):
    loan_id: Optional[str] = None


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    """Admin-entered amount to Decimal; None stays None"""
    if value is None:
        return None
    try:
        return decimal_from_string(value)
    except ValueError as e:
        raise ValidationError(str(e))


def parse_currency(code: str) -> Currency:
    try:
        return Currency[code.upper()]
    except KeyError:
        raise ValidationError(f"Unsupported currency {code}")


def transaction_to_dict(transaction: PaymentTransaction) -> Dict[str, Any]:
    """API view of a transaction; the error code is shown verbatim with its description"""
    result = transaction.to_dict()
    if transaction.error_code:
        info = describe_error(transaction.error_code)
        result["error_description"] = info.message
        result["error_category"] = info.category.value
        result["error_retryable"] = info.retryable
    return result


def loan_to_dict(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "loan_number": loan.loan_number,
        "status": loan.status.value,
        "principal_amount": MoneyModel.from_money(loan.principal).model_dump(),
        "remaining_balance": MoneyModel.from_money(loan.balance).model_dump(),
        "annual_interest_rate": str(loan.terms.annual_interest_rate),
        "number_of_payments": loan.terms.number_of_payments,
        "payment_frequency": loan.terms.payment_frequency.value,
        "first_payment_date": loan.terms.first_payment_date.isoformat(),
        "fees": str(loan.terms.fees),
        "processor_customer_id": loan.processor_customer_id,
        "disbursement_transaction_id": loan.disbursement_transaction_id,
        "activated_at": loan.activated_at.isoformat() if loan.activated_at else None,
        "completed_at": loan.completed_at.isoformat() if loan.completed_at else None,
        "created_at": loan.created_at.isoformat()
    }


def schedule_entry_to_dict(entry: ScheduleEntry) -> Dict[str, Any]:
    return {
        "schedule_slot": entry.slot,
        "due_date": entry.due_date.isoformat(),
        "amount": str(entry.amount),
        "interest": str(entry.interest),
        "principal": str(entry.principal),
        "remaining_balance": str(entry.remaining_balance)
    }


def sync_run_to_dict(sync_run: SyncRun) -> Dict[str, Any]:
    return sync_run.to_dict()


def sync_outcome_to_dict(outcome: SyncOutcome) -> Dict[str, Any]:
    return {
        "result": outcome.result.value,
        "remote_status": outcome.remote_status.value if outcome.remote_status else None,
        "transaction": transaction_to_dict(outcome.transaction)
    }
