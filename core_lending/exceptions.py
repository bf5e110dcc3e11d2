"""Exception hierarchy for the lending payments engine."""

from typing import Any, Optional


class LendingError(Exception):
    """Base exception for all lending payments errors."""


class ValidationError(LendingError, ValueError):
    """Raised when an admin request carries a bad amount, slot or loan state."""

    def __init__(self, message: str, reason: Optional[Any] = None):
        super().__init__(message)
        self.reason = reason


class NotFoundError(LendingError, LookupError):
    """Raised when a referenced record does not exist."""


class TransactionNotFound(NotFoundError):
    """Raised when a payment transaction id is unknown."""


class LoanNotFound(NotFoundError):
    """Raised when a loan id is unknown."""


class IdempotencyConflict(LendingError):
    """Raised when an active transaction already exists for (loan, kind, slot).

    Not a failure: callers return the existing record carried in ``existing``.
    """

    def __init__(self, existing: Any):
        super().__init__(
            f"Active transaction {existing.id} already exists for loan "
            f"{existing.loan_id} ({existing.kind.value}, slot {existing.schedule_slot})"
        )
        self.existing = existing


class InvalidTransition(LendingError):
    """Raised when a transition is not legal from the current status."""

    def __init__(self, message: str, current: Any = None, target: Any = None):
        super().__init__(message)
        self.current = current
        self.target = target


class TransitionConflict(InvalidTransition):
    """Raised when a compare-and-swap lost: the stored status was not the expected one."""


class StateRegressionRejected(LendingError):
    """Raised when a sync would move a record backward. Logged, never applied."""

    def __init__(self, transaction_id: str, local_status: Any, remote_status: Any):
        super().__init__(
            f"Rejected regression of transaction {transaction_id} from "
            f"{getattr(local_status, 'value', local_status)} to "
            f"{getattr(remote_status, 'value', remote_status)}"
        )
        self.transaction_id = transaction_id
        self.local_status = local_status
        self.remote_status = remote_status


class GatewayError(LendingError):
    """Base class for payment processor failures."""

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        super().__init__(message)
        self.transaction_id = transaction_id


class NetworkError(GatewayError):
    """Raised when a request could not be delivered to the processor."""


class ProcessorTimeout(GatewayError):
    """Raised when the processor did not answer in time; the outcome is unknown."""


class ProcessorRejected(GatewayError):
    """Raised when the processor refused a request with an error code."""

    def __init__(self, code: str, message: Optional[str] = None,
                 transaction_id: Optional[str] = None):
        super().__init__(message or f"Processor rejected request with code {code}",
                         transaction_id=transaction_id)
        self.code = code
