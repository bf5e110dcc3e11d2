"""
Payment transaction endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Header, Response, status

from .system import LendingSystem, get_lending_system
from .schemas import (
    ConfirmRequest, CancelRequest, VoidRequest, transaction_to_dict, sync_outcome_to_dict
)


router = APIRouter()


@router.get("/in-flight")
def get_in_flight(
    loan_id: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Transactions held by the processor and not yet settled"""
    transactions = system.ledger.get_in_flight_transactions(loan_id=loan_id)
    return {"transactions": [transaction_to_dict(t) for t in transactions], "count": len(transactions)}


@router.get("/unresolved")
def get_unresolved(
    loan_id: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Pending transactions whose submission is claimed or in doubt"""
    transactions = system.ledger.get_unresolved_submissions(loan_id=loan_id)
    return {"transactions": [transaction_to_dict(t) for t in transactions], "count": len(transactions)}


@router.get("/{transaction_id}")
def get_transaction(transaction_id: str, system: LendingSystem = Depends(get_lending_system)):
    return transaction_to_dict(system.ledger.require_transaction(transaction_id))


@router.post("/{transaction_id}/submit")
def submit_transaction(
    transaction_id: str,
    x_user_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    """Submit, or resume submitting, a pending transaction"""
    transaction = system.orchestrator.submit(transaction_id, user_id=x_user_id)
    return transaction_to_dict(transaction)


@router.post("/{transaction_id}/authorize")
def authorize_transaction(
    transaction_id: str,
    x_user_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    transaction = system.orchestrator.authorize(transaction_id, user_id=x_user_id)
    return transaction_to_dict(transaction)


@router.post("/{transaction_id}/confirm")
def confirm_transaction(
    transaction_id: str,
    request: Optional[ConfirmRequest] = None,
    x_user_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    """Record settlement of an authorized transaction"""
    settled_at = request.settled_at if request else None
    transaction = system.orchestrator.confirm_completion(
        transaction_id, user_id=x_user_id, settled_at=settled_at
    )
    return transaction_to_dict(transaction)


@router.post("/{transaction_id}/cancel")
def cancel_transaction(
    transaction_id: str,
    request: Optional[CancelRequest] = None,
    x_user_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    """Cancel a transaction that was never submitted"""
    reason = request.reason if request else None
    transaction = system.orchestrator.cancel(transaction_id, reason=reason, user_id=x_user_id)
    return transaction_to_dict(transaction)


@router.post("/{transaction_id}/void")
def void_transaction(
    transaction_id: str,
    request: Optional[VoidRequest] = None,
    x_user_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    """Void a submitted transaction at the processor"""
    reason = request.reason if request else None
    transaction = system.orchestrator.void(transaction_id, reason=reason or "Voided by staff", user_id=x_user_id)
    return transaction_to_dict(transaction)


@router.post("/{transaction_id}/retry", status_code=status.HTTP_201_CREATED)
def retry_transaction(
    transaction_id: str,
    response: Response,
    x_user_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    """Re-initiate a failed transaction as a new record"""
    handle = system.orchestrator.retry(transaction_id, user_id=x_user_id)
    if not handle.created:
        response.status_code = status.HTTP_200_OK
    return {"created": handle.created, "transaction": transaction_to_dict(handle.transaction)}


@router.post("/{transaction_id}/resolve")
def resolve_submission(
    transaction_id: str,
    x_user_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    """Look up an in-doubt submission at the processor"""
    transaction = system.orchestrator.resolve_submission(transaction_id, user_id=x_user_id)
    return transaction_to_dict(transaction)


@router.post("/{transaction_id}/reconcile")
def reconcile_transaction(
    transaction_id: str,
    x_user_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    """Merge the processor status of one transaction now"""
    outcome = system.reconciliation.reconcile_transaction(
        transaction_id, user_id=x_user_id or "reconciliation"
    )
    return sync_outcome_to_dict(outcome)


@router.get("/{transaction_id}/history")
def get_transaction_history(
    transaction_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Audit history of a transaction"""
    system.ledger.require_transaction(transaction_id)
    events = system.audit_trail.get_events_for_entity("transaction", transaction_id)
    return {"transaction_id": transaction_id, "events": [event.to_dict() for event in events]}
