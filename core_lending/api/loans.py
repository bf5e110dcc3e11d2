"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Header, Response, status

from .system import LendingSystem, get_lending_system
from .schemas import (
    CreateLoanRequest, DisbursementRequest, CollectionRequest,
    parse_amount, parse_currency, loan_to_dict, transaction_to_dict, schedule_entry_to_dict
)
from ..exceptions import ValidationError
from ..ledger import TransactionKind
from ..loans import LoanStatus
from ..schedule import PaymentFrequency


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    x_user_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    """Record an approved loan awaiting disbursement"""
    try:
        frequency = PaymentFrequency(request.payment_frequency)
    except ValueError:
        raise ValidationError(f"Unknown payment frequency {request.payment_frequency}")

    loan = system.loan_manager.create_loan(
        principal_amount=parse_amount(request.principal_amount),
        annual_interest_rate=parse_amount(request.annual_interest_rate),
        payment_frequency=frequency,
        number_of_payments=request.number_of_payments,
        first_payment_date=request.first_payment_date,
        fees=parse_amount(request.fees),
        currency=parse_currency(request.currency),
        processor_customer_id=request.processor_customer_id,
        loan_number=request.loan_number,
        user_id=x_user_id
    )
    return loan_to_dict(loan)


@router.get("")
def list_loans(
    loan_status: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans, optionally filtered by status"""
    status_filter = None
    if loan_status:
        try:
            status_filter = LoanStatus(loan_status)
        except ValueError:
            raise ValidationError(f"Unknown loan status {loan_status}")

    loans = system.loan_manager.list_loans(status=status_filter)
    return {"loans": [loan_to_dict(loan) for loan in loans], "count": len(loans)}


@router.get("/{loan_id}")
def get_loan(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    return loan_to_dict(system.loan_manager.require_loan(loan_id))


@router.get("/{loan_id}/schedule")
def get_schedule(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Scheduled collections with their due dates and amounts"""
    loan = system.loan_manager.require_loan(loan_id)
    schedule = system.loan_manager.collection_schedule(loan)
    return {
        "loan_id": loan.id,
        "schedule": [schedule_entry_to_dict(entry) for entry in schedule]
    }


@router.get("/{loan_id}/transactions")
def get_loan_transactions(
    loan_id: str,
    kind: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Every transaction of a loan, retries included, in slot order"""
    system.loan_manager.require_loan(loan_id)
    kind_filter = None
    if kind:
        try:
            kind_filter = TransactionKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown transaction kind {kind}")

    transactions = system.ledger.get_transactions_for_loan(loan_id, kind=kind_filter)
    return {
        "loan_id": loan_id,
        "transactions": [transaction_to_dict(t) for t in transactions]
    }


@router.post("/{loan_id}/disbursement", status_code=status.HTTP_201_CREATED)
def request_disbursement(
    loan_id: str,
    response: Response,
    request: Optional[DisbursementRequest] = None,
    x_user_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    """
    Disburse the loan principal

    Answers 200 with the existing record when a disbursement is already active.
    """
    amount = parse_amount(request.amount) if request else None
    handle = system.orchestrator.request_disbursement(loan_id, amount=amount, user_id=x_user_id)
    if not handle.created:
        response.status_code = status.HTTP_200_OK
    return {"created": handle.created, "transaction": transaction_to_dict(handle.transaction)}


@router.post("/{loan_id}/collections", status_code=status.HTTP_201_CREATED)
def request_collection(
    loan_id: str,
    request: CollectionRequest,
    response: Response,
    x_user_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    """Collect one scheduled repayment"""
    handle = system.orchestrator.request_collection(
        loan_id, request.schedule_slot, amount=parse_amount(request.amount), user_id=x_user_id
    )
    if not handle.created:
        response.status_code = status.HTTP_200_OK
    return {"created": handle.created, "transaction": transaction_to_dict(handle.transaction)}


@router.get("/{loan_id}/audit")
def get_loan_audit(
    loan_id: str,
    limit: int = 100,
    system: LendingSystem = Depends(get_lending_system)
):
    """Audit history of a loan"""
    system.loan_manager.require_loan(loan_id)
    events = system.audit_trail.get_events_for_entity("loan", loan_id, limit=limit)
    return {"loan_id": loan_id, "events": [event.to_dict() for event in events]}
