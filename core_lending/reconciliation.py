"""
Reconciliation Sync Module

Periodic sweep that pulls the authoritative processor status of every in-flight
transaction and merges it into the ledger. Merges only ever move a record
forward: a remote status that maps to an earlier local state is rejected,
logged and audited, never applied. Forward moves go through the orchestrator so
loan side effects run exactly as for an admin action.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Any
import threading
import uuid

from .audit import AuditTrail, AuditEventType
from .error_codes import VOIDED_ERROR_CODE
from .events import DomainEvent, EventPayload
from .exceptions import StateRegressionRejected
from .gateway import ProcessorGateway, RemoteStatus, RemoteTransaction
from .ledger import (
    TransactionLedger, PaymentTransaction, TransactionStatus, SubmissionState, STATUS_RANK
)
from .orchestrator import PaymentOrchestrator
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action

SYNC_USER = "reconciliation"

# Local state each processor status corresponds to
REMOTE_TARGETS = {
    RemoteStatus.PENDING: TransactionStatus.INITIATED,
    RemoteStatus.AUTHORIZED: TransactionStatus.AUTHORIZED,
    RemoteStatus.SETTLED: TransactionStatus.COMPLETED,
}


class MergeResult(Enum):
    """What a merge did to one record"""
    ADVANCED = "advanced"
    FAILED = "failed"
    UNCHANGED = "unchanged"
    REGRESSION_REJECTED = "regression_rejected"
    SUBMISSION_RESOLVED = "submission_resolved"


@dataclass
class SyncOutcome:
    """Result of reconciling one transaction"""
    transaction: PaymentTransaction
    result: MergeResult
    remote_status: Optional[RemoteStatus] = None


@dataclass
class SyncRun(StorageRecord):
    """Sync log entry for one sweep"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    loan_id: Optional[str] = None
    checked: int = 0
    advanced: int = 0
    failed: int = 0
    unchanged: int = 0
    regressions_rejected: int = 0
    submissions_resolved: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncRun':
        data = dict(data)
        for name in ("created_at", "updated_at", "started_at", "finished_at"):
            if data.get(name):
                data[name] = datetime.fromisoformat(data[name])
        return cls(**data)


class ReconciliationSync:
    """
    Merges processor status into the ledger without ever regressing a record
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: TransactionLedger,
        orchestrator: PaymentOrchestrator,
        gateway: ProcessorGateway,
        audit_trail: AuditTrail,
        submission_stale_after_seconds: int = 300
    ):
        self.storage = storage
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.gateway = gateway
        self.audit_trail = audit_trail
        self.submission_stale_after = timedelta(seconds=submission_stale_after_seconds)
        self.runs_table = "sync_runs"
        self.regressions_rejected_total = 0
        self.logger = get_logger("lending.reconciliation")
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def run(self, loan_id: Optional[str] = None, user_id: str = SYNC_USER) -> SyncRun:
        """
        Run one reconciliation sweep

        1. Submission claims older than the stale threshold become in doubt.
        2. In-doubt submissions are resolved by asking the processor.
        3. Every in-flight transaction is merged with its processor status.

        A failure on one record is recorded in the run and the sweep continues.

        Args:
            loan_id: Restrict the sweep to one loan
            user_id: Identity recorded in the audit trail

        Returns:
            The persisted SyncRun
        """
        now = datetime.now(timezone.utc)
        sync_run = SyncRun(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            started_at=now,
            loan_id=loan_id
        )

        for transaction in self.ledger.get_unresolved_submissions(loan_id):
            if self._is_stale_claim(transaction):
                self._expire_claim(transaction, user_id)

        for transaction in self.ledger.get_unresolved_submissions(loan_id):
            if transaction.submission_state != SubmissionState.IN_DOUBT:
                continue
            try:
                resolved = self.orchestrator.resolve_submission(transaction.id, user_id=user_id)
                if self._submission_changed(transaction, resolved):
                    sync_run.submissions_resolved += 1
            except Exception as e:
                self._record_error(sync_run, transaction, e)

        for transaction in self.ledger.get_in_flight_transactions(loan_id):
            sync_run.checked += 1
            try:
                outcome = self._sync_in_flight(transaction, user_id)
            except Exception as e:
                self._record_error(sync_run, transaction, e)
                continue

            if outcome.result == MergeResult.ADVANCED:
                sync_run.advanced += 1
            elif outcome.result == MergeResult.FAILED:
                sync_run.failed += 1
            elif outcome.result == MergeResult.REGRESSION_REJECTED:
                sync_run.regressions_rejected += 1
            else:
                sync_run.unchanged += 1

        sync_run.finished_at = datetime.now(timezone.utc)
        sync_run.updated_at = sync_run.finished_at

        with self.storage.atomic():
            self.storage.save(self.runs_table, sync_run.id, sync_run.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.SYNC_RUN_COMPLETED,
                entity_type="sync_run",
                entity_id=sync_run.id,
                metadata=self._summary(sync_run),
                user_id=user_id
            )

        log_action(
            self.logger, "warning" if sync_run.errors else "info",
            f"Reconciliation sweep finished: {sync_run.checked} checked, {sync_run.advanced} advanced, "
            f"{sync_run.failed} failed, {sync_run.regressions_rejected} regressions rejected",
            user_id=user_id, action="sync", resource="sync_run", loan_id=loan_id,
            extra=self._summary(sync_run)
        )

        dispatcher = self.orchestrator.event_dispatcher
        if dispatcher:
            dispatcher.publish(EventPayload(
                event_type=DomainEvent.SYNC_COMPLETED,
                entity_type="sync_run",
                entity_id=sync_run.id,
                data=self._summary(sync_run)
            ))
        return sync_run

    def reconcile_transaction(self, transaction_id: str, user_id: str = SYNC_USER) -> SyncOutcome:
        """
        Reconcile a single transaction on demand

        Pending records have their in-doubt submission resolved; records with an
        external id are merged with the processor status, terminal ones included so
        a late processor failure is surfaced as a rejected regression.
        """
        transaction = self.ledger.require_transaction(transaction_id)

        if transaction.status == TransactionStatus.PENDING:
            if self._is_stale_claim(transaction):
                transaction = self._expire_claim(transaction, user_id) or transaction
            if transaction.submission_state != SubmissionState.IN_DOUBT:
                return SyncOutcome(transaction=transaction, result=MergeResult.UNCHANGED)
            resolved = self.orchestrator.resolve_submission(transaction.id, user_id=user_id)
            result = (MergeResult.SUBMISSION_RESOLVED if self._submission_changed(transaction, resolved)
                      else MergeResult.UNCHANGED)
            return SyncOutcome(transaction=resolved, result=result)

        if not transaction.external_id:
            return SyncOutcome(transaction=transaction, result=MergeResult.UNCHANGED)

        return self._sync_in_flight(transaction, user_id)

    def merge(self, transaction: PaymentTransaction, remote: RemoteTransaction,
              user_id: str = SYNC_USER) -> SyncOutcome:
        """
        Merge one processor status into the ledger

        Raises:
            StateRegressionRejected: The remote status would move the record backward
        """
        local = transaction.status

        if remote.status in (RemoteStatus.FAILED, RemoteStatus.VOIDED):
            code = remote.error_code or (VOIDED_ERROR_CODE if remote.status == RemoteStatus.VOIDED else "UNKNOWN")
            if local in (TransactionStatus.INITIATED, TransactionStatus.AUTHORIZED):
                updated = self.orchestrator.record_failure(transaction.id, local, code, user_id=user_id)
                result = MergeResult.FAILED if updated.status == TransactionStatus.FAILED else MergeResult.UNCHANGED
                return SyncOutcome(transaction=updated, result=result, remote_status=remote.status)
            if local in (TransactionStatus.FAILED, TransactionStatus.PENDING):
                return SyncOutcome(transaction=transaction, result=MergeResult.UNCHANGED,
                                   remote_status=remote.status)
            raise StateRegressionRejected(transaction.id, local, remote.status)

        target = REMOTE_TARGETS[remote.status]
        if local in (TransactionStatus.FAILED, TransactionStatus.CANCELLED):
            raise StateRegressionRejected(transaction.id, local, remote.status)
        if STATUS_RANK[target] < STATUS_RANK[local]:
            raise StateRegressionRejected(transaction.id, local, remote.status)
        if STATUS_RANK[target] == STATUS_RANK[local]:
            return SyncOutcome(transaction=transaction, result=MergeResult.UNCHANGED, remote_status=remote.status)

        current = transaction
        if current.status == TransactionStatus.INITIATED:
            current = self.orchestrator.record_authorization(transaction.id, user_id=user_id)
        if current.status == TransactionStatus.AUTHORIZED and target == TransactionStatus.COMPLETED:
            current = self.orchestrator.confirm_completion(
                transaction.id, user_id=user_id, settled_at=remote.settled_at
            )

        result = MergeResult.ADVANCED if current.status != local else MergeResult.UNCHANGED
        return SyncOutcome(transaction=current, result=result, remote_status=remote.status)

    def get_sync_runs(self, limit: int = 20) -> List[SyncRun]:
        """Most recent sync runs first"""
        runs = [SyncRun.from_dict(data) for data in self.storage.load_all(self.runs_table)]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[:limit]

    def run_periodically(self, interval_seconds: float, stop_event: threading.Event) -> int:
        """
        Sweep every ``interval_seconds`` until ``stop_event`` is set

        Blocking; meant for a worker thread. Returns the number of sweeps run.
        """
        sweeps = 0
        while not stop_event.is_set():
            try:
                self.run()
                sweeps += 1
            except Exception as e:
                self.logger.error(f"Reconciliation sweep failed: {e}", exc_info=True)
            stop_event.wait(interval_seconds)
        return sweeps

    def start(self, interval_seconds: float) -> None:
        """Run sweeps on a daemon thread"""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run_periodically,
            args=(interval_seconds, self._stop_event),
            name="reconciliation-sync"
        )
        self._thread.daemon = True
        self._thread.start()
        self.logger.info(f"Reconciliation sync started, every {interval_seconds}s")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the sweep thread"""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.logger.info("Reconciliation sync stopped")

    def _sync_in_flight(self, transaction: PaymentTransaction, user_id: str) -> SyncOutcome:
        remote = self.gateway.fetch_status(transaction.external_id)
        try:
            return self.merge(transaction, remote, user_id=user_id)
        except StateRegressionRejected as rejection:
            self._reject_regression(transaction, remote, rejection, user_id)
            return SyncOutcome(
                transaction=self.ledger.require_transaction(transaction.id),
                result=MergeResult.REGRESSION_REJECTED,
                remote_status=remote.status
            )

    def _reject_regression(self, transaction: PaymentTransaction, remote: RemoteTransaction,
                           rejection: StateRegressionRejected, user_id: str) -> None:
        self.regressions_rejected_total += 1
        log_action(
            self.logger, "warning", str(rejection),
            user_id=user_id, action="sync", resource="transaction",
            transaction_id=transaction.id, loan_id=transaction.loan_id,
            extra={
                "local_status": transaction.status.value,
                "remote_status": remote.status.value,
                "remote_error_code": remote.error_code,
                "external_id": transaction.external_id
            }
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.STATE_REGRESSION_REJECTED,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata={
                "local_status": transaction.status.value,
                "remote_status": remote.status.value,
                "remote_error_code": remote.error_code,
                "external_id": transaction.external_id
            },
            user_id=user_id
        )

    def _is_stale_claim(self, transaction: PaymentTransaction) -> bool:
        if transaction.submission_state != SubmissionState.SUBMITTING:
            return False
        started = transaction.submission_started_at or transaction.updated_at
        return datetime.now(timezone.utc) - started >= self.submission_stale_after

    def _expire_claim(self, transaction: PaymentTransaction, user_id: str) -> Optional[PaymentTransaction]:
        log_action(
            self.logger, "warning", "Submission claim expired, treating the submission as in doubt",
            user_id=user_id, action="sync", resource="transaction",
            transaction_id=transaction.id, loan_id=transaction.loan_id
        )
        return self.ledger.update_submission(
            transaction.id, SubmissionState.SUBMITTING, SubmissionState.IN_DOUBT,
            changes={"last_gateway_error": "Submission claim expired"}, user_id=user_id
        )

    @staticmethod
    def _submission_changed(before: PaymentTransaction, after: PaymentTransaction) -> bool:
        return (after.status != before.status
                or after.submission_state != before.submission_state)

    def _record_error(self, sync_run: SyncRun, transaction: PaymentTransaction, error: Exception) -> None:
        sync_run.errors.append({
            "transaction_id": transaction.id,
            "error": f"{type(error).__name__}: {error}"
        })
        log_action(
            self.logger, "error", f"Reconciliation failed for transaction: {error}",
            action="sync", resource="transaction",
            transaction_id=transaction.id, loan_id=transaction.loan_id
        )

    @staticmethod
    def _summary(sync_run: SyncRun) -> Dict[str, Any]:
        return {
            "loan_id": sync_run.loan_id,
            "checked": sync_run.checked,
            "advanced": sync_run.advanced,
            "failed": sync_run.failed,
            "unchanged": sync_run.unchanged,
            "regressions_rejected": sync_run.regressions_rejected,
            "submissions_resolved": sync_run.submissions_resolved,
            "errors": len(sync_run.errors)
        }
