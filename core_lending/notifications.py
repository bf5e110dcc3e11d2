"""
Notifications Module

Fire-and-forget notices on terminal payment outcomes and loan milestones.
Delivery happens after the transition has committed; a failed delivery is logged
and never rolls anything back.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, Optional, Any
from enum import Enum
from abc import ABC, abstractmethod
import logging
import threading
import uuid

import requests

from .error_codes import describe_error
from .events import EventDispatcher, DomainEvent, EventPayload


class NotificationType(Enum):
    """Types of notifications"""
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    LOAN_ACTIVATED = "loan_activated"
    LOAN_PAID_OFF = "loan_paid_off"


EVENT_NOTIFICATIONS = {
    DomainEvent.TRANSACTION_COMPLETED: NotificationType.PAYMENT_COMPLETED,
    DomainEvent.TRANSACTION_FAILED: NotificationType.PAYMENT_FAILED,
    DomainEvent.LOAN_ACTIVATED: NotificationType.LOAN_ACTIVATED,
    DomainEvent.LOAN_PAID_OFF: NotificationType.LOAN_PAID_OFF,
}


@dataclass
class PaymentNotification:
    """A notice about a payment outcome"""
    notification_type: NotificationType
    entity_type: str
    entity_id: str
    subject: str
    body: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "notification_id": self.id,
            "type": self.notification_type.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "subject": self.subject,
            "body": self.body,
            "timestamp": self.created_at.isoformat(),
            "metadata": self.metadata
        }


class NotificationSender(ABC):
    """Abstract base class for notification delivery"""

    @abstractmethod
    def send(self, notification: PaymentNotification) -> bool:
        """Deliver a notification. Returns True if successful."""
        pass


class LoggingNotificationSender(NotificationSender):
    """Writes notifications to the log instead of delivering them"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("lending.notifications")

    def send(self, notification: PaymentNotification) -> bool:
        self.logger.info(
            f"{notification.notification_type.value.upper()} {notification.entity_type}:"
            f"{notification.entity_id}: {notification.subject} | {notification.body[:100]}"
        )
        return True


class WebhookNotificationSender(NotificationSender):
    """POSTs notifications as JSON to a webhook"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout
        self.logger = logging.getLogger("lending.notifications")

    def send(self, notification: PaymentNotification) -> bool:
        try:
            response = requests.post(
                self.url,
                json=notification.to_payload(),
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            self.logger.error(f"Webhook delivery of {notification.id} failed: {e}")
            return False

        if not 200 <= response.status_code < 300:
            self.logger.warning(f"Webhook returned {response.status_code} for {notification.id}")
            return False
        return True


class PaymentNotifier:
    """
    Turns payment domain events into notifications
    """

    def __init__(self, sender: NotificationSender, enabled: bool = True):
        self.sender = sender
        self.enabled = enabled
        self.stats = {"sent": 0, "failed": 0}
        self._lock = threading.Lock()
        self.logger = logging.getLogger("lending.notifications")

    def register(self, dispatcher: EventDispatcher) -> None:
        """Subscribe to the events that produce notifications"""
        for event_type in EVENT_NOTIFICATIONS:
            dispatcher.subscribe(event_type, self.handle_event)

    def handle_event(self, event: EventPayload) -> Optional[PaymentNotification]:
        """Build and send the notification for an event"""
        if not self.enabled or event.event_type not in EVENT_NOTIFICATIONS:
            return None

        notification = self.build_notification(event)
        delivered = self.sender.send(notification)
        with self._lock:
            self.stats["sent" if delivered else "failed"] += 1
        if not delivered:
            self.logger.warning(f"Notification {notification.id} for {event.entity_id} was not delivered")
        return notification

    def build_notification(self, event: EventPayload) -> PaymentNotification:
        notification_type = EVENT_NOTIFICATIONS[event.event_type]
        data = event.data

        if notification_type == NotificationType.PAYMENT_COMPLETED:
            subject = f"{data['kind'].capitalize()} completed"
            body = f"The {data['kind']} of {data['amount']} for slot {data['schedule_slot']} has settled."
        elif notification_type == NotificationType.PAYMENT_FAILED:
            info = describe_error(data.get("error_code"))
            subject = f"{data['kind'].capitalize()} failed ({info.code})"
            body = (f"The {data['kind']} of {data['amount']} for slot {data['schedule_slot']} "
                    f"failed with code {info.code}: {info.message}.")
            data = dict(data, error_message=info.message, error_category=info.category.value,
                        retryable=info.retryable)
        elif notification_type == NotificationType.LOAN_ACTIVATED:
            subject = f"Loan {data['loan_number']} is active"
            body = f"Loan {data['loan_number']} was disbursed and its repayment schedule is in place."
        else:
            subject = f"Loan {data['loan_number']} is paid off"
            body = f"Loan {data['loan_number']} has no remaining balance."

        return PaymentNotification(
            notification_type=notification_type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            subject=subject,
            body=body,
            metadata=dict(data)
        )

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.stats)
