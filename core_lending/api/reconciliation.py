"""
Reconciliation and audit endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Header

from .system import LendingSystem, get_lending_system
from .schemas import SyncRunRequest, sync_run_to_dict
from ..reconciliation import SYNC_USER


router = APIRouter()


@router.post("/runs")
def run_sync(
    request: Optional[SyncRunRequest] = None,
    x_user_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_lending_system)
):
    """Sweep in-flight transactions now, for one loan or all"""
    loan_id = request.loan_id if request else None
    if loan_id:
        system.loan_manager.require_loan(loan_id)
    sync_run = system.reconciliation.run(loan_id=loan_id, user_id=x_user_id or SYNC_USER)
    return sync_run_to_dict(sync_run)


@router.get("/runs")
def get_sync_runs(limit: int = 20, system: LendingSystem = Depends(get_lending_system)):
    """Most recent sync runs first"""
    runs = system.reconciliation.get_sync_runs(limit=limit)
    return {
        "runs": [sync_run_to_dict(run) for run in runs],
        "regressions_rejected_total": system.reconciliation.regressions_rejected_total
    }


@router.get("/audit/verify")
def verify_audit_trail(system: LendingSystem = Depends(get_lending_system)):
    """Check the audit hash chain for tampering"""
    return system.audit_trail.verify_integrity()
