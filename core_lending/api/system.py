"""
Lending system container and its FastAPI dependency
"""

from typing import Optional

from ..activation import LoanActivationTrigger
from ..audit import AuditTrail
from ..config import LendingConfig, get_config
from ..events import EventDispatcher
from ..gateway import ProcessorGateway, EFTProcessorGateway, MockProcessorGateway
from ..ledger import TransactionLedger
from ..loans import LoanManager
from ..logging_config import get_logger
from ..notifications import (
    PaymentNotifier, NotificationSender, LoggingNotificationSender, WebhookNotificationSender
)
from ..orchestrator import PaymentOrchestrator
from ..reconciliation import ReconciliationSync
from ..storage import StorageInterface, InMemoryStorage, SQLiteStorage

logger = get_logger("lending.api")


class LendingSystem:
    """Payments engine with all components wired from configuration"""

    def __init__(
        self,
        config: Optional[LendingConfig] = None,
        storage: Optional[StorageInterface] = None,
        gateway: Optional[ProcessorGateway] = None
    ):
        self.config = config or get_config()

        self.storage = storage or self._create_storage()
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.event_dispatcher = EventDispatcher()

        self.loan_manager = LoanManager(self.storage, self.audit_trail)
        self.ledger = TransactionLedger(self.storage, self.audit_trail)
        self.gateway = gateway or self._create_gateway()
        self.activation = LoanActivationTrigger(self.loan_manager, self.ledger, self.audit_trail)
        self.orchestrator = PaymentOrchestrator(
            self.ledger, self.loan_manager, self.gateway, self.activation,
            self.audit_trail, self.event_dispatcher
        )
        self.reconciliation = ReconciliationSync(
            self.storage, self.ledger, self.orchestrator, self.gateway, self.audit_trail,
            submission_stale_after_seconds=self.config.submission_stale_after_seconds
        )

        self.notifier = PaymentNotifier(self._create_sender(), enabled=self.config.enable_notifications)
        self.notifier.register(self.event_dispatcher)

    def _create_storage(self) -> StorageInterface:
        if self.config.use_in_memory_storage:
            return InMemoryStorage()
        return SQLiteStorage(self.config.database_path)

    def _create_gateway(self) -> ProcessorGateway:
        """Use the EFT processor when configured, the in-memory processor otherwise"""
        if not self.config.processor_base_url:
            logger.warning("No processor URL configured, using the in-memory mock processor")
            return MockProcessorGateway()

        return EFTProcessorGateway(
            base_url=self.config.processor_base_url,
            username=self.config.processor_username,
            password=self.config.processor_password,
            timeout=self.config.processor_timeout,
            payment_type=self.config.processor_payment_type,
            token_refresh_margin_seconds=self.config.processor_token_refresh_margin_seconds
        )

    def _create_sender(self) -> NotificationSender:
        if self.config.notification_webhook_url:
            return WebhookNotificationSender(
                self.config.notification_webhook_url, timeout=self.config.notification_timeout
            )
        return LoggingNotificationSender()

    def close(self) -> None:
        """Stop background work and release connections"""
        self.reconciliation.stop()
        self.gateway.close()
        self.storage.close()


# Global lending system instance, created on first use
_lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    """Dependency to get the lending system"""
    global _lending_system
    if _lending_system is None:
        _lending_system = LendingSystem()
    return _lending_system
