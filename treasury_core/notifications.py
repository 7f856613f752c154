"""
Notification Engine Module

Fans domain events (budget funded, transfer succeeded/failed/reversed,
approval requested/resolved, payroll approved) out to users over pluggable
channels. Delivery is best effort: failures are recorded on the notification
row for ``retry_failed`` and never propagate into ledger operations.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid
import requests
from abc import ABC, abstractmethod

from .storage import StorageInterface, StorageRecord, parse_datetime
from .events import DomainEvent, EventDispatcher, EventPayload
from .logging_config import get_logger, log_action

logger = get_logger("treasury.notifications")


class NotificationChannel(Enum):
    """Available notification channels"""
    LOG = "log"
    WEBHOOK = "webhook"
    IN_APP = "in_app"


class NotificationType(Enum):
    """Types of notifications"""
    TRANSFER_SUCCEEDED = "transfer_succeeded"
    TRANSFER_FAILED = "transfer_failed"
    TRANSFER_REVERSED = "transfer_reversed"
    BUDGET_FUNDED = "budget_funded"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESOLVED = "approval_resolved"
    PAYROLL_APPROVED = "payroll_approved"


class NotificationStatus(Enum):
    """Status of notifications"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    READ = "read"


EVENT_NOTIFICATIONS = {
    DomainEvent.TRANSFER_SUCCEEDED: NotificationType.TRANSFER_SUCCEEDED,
    DomainEvent.TRANSFER_FAILED: NotificationType.TRANSFER_FAILED,
    DomainEvent.TRANSFER_REVERSED: NotificationType.TRANSFER_REVERSED,
    DomainEvent.BUDGET_FUNDED: NotificationType.BUDGET_FUNDED,
    DomainEvent.APPROVAL_REQUESTED: NotificationType.APPROVAL_REQUESTED,
    DomainEvent.APPROVAL_RESOLVED: NotificationType.APPROVAL_RESOLVED,
    DomainEvent.PAYROLL_APPROVED: NotificationType.PAYROLL_APPROVED,
}

DEFAULT_TEMPLATES: Dict[NotificationType, Dict[str, str]] = {
    NotificationType.TRANSFER_SUCCEEDED: {
        "subject": "Transfer successful",
        "body": "Your transfer {reference} of {amount} was successful.",
    },
    NotificationType.TRANSFER_FAILED: {
        "subject": "Transfer failed",
        "body": "Your transfer {reference} of {amount} failed and {amount} has been returned.",
    },
    NotificationType.TRANSFER_REVERSED: {
        "subject": "Transfer reversed",
        "body": "Your transfer {reference} of {amount} was reversed by the bank.",
    },
    NotificationType.BUDGET_FUNDED: {
        "subject": "Budget funded",
        "body": "Budget {name} is now active with {amount} available.",
    },
    NotificationType.APPROVAL_REQUESTED: {
        "subject": "Approval requested",
        "body": "A {workflow_type} request for {amount} is waiting for your review.",
    },
    NotificationType.APPROVAL_RESOLVED: {
        "subject": "Request {status}",
        "body": "Your {workflow_type} request for {amount} was {status}.",
    },
    NotificationType.PAYROLL_APPROVED: {
        "subject": "Payroll approved",
        "body": "Payroll {payroll_id} has been approved for processing.",
    },
}


@dataclass(frozen=True)
class Notification(StorageRecord):
    """Individual notification instance"""
    notification_type: NotificationType
    channel: NotificationChannel
    recipient_id: str
    subject: str
    body: str
    status: NotificationStatus = NotificationStatus.PENDING
    sent_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        return cls(
            id=data["id"],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            notification_type=NotificationType(data["notification_type"]),
            channel=NotificationChannel(data["channel"]),
            recipient_id=data["recipient_id"],
            subject=data["subject"],
            body=data["body"],
            status=NotificationStatus(data["status"]),
            sent_at=parse_datetime(data.get("sent_at")),
            failed_reason=data.get("failed_reason"),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", 3),
            metadata=data.get("metadata") or {},
        )


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Logging channel provider for development"""

    def send(self, notification: Notification) -> bool:
        log_action(
            logger, "info", f"{notification.subject}: {notification.body}",
            user_id=notification.recipient_id,
            action="notify",
            resource=f"notification:{notification.id}"
        )
        return True


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external integrations"""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        """Send notification via webhook POST"""
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "recipient_id": notification.recipient_id,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }
        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            logger.warning(f"Webhook send failed: {e}")
            return False
        return 200 <= response.status_code < 300


class InAppChannelProvider(ChannelProvider):
    """In-app notification provider using storage"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "in_app_notifications"

    def send(self, notification: Notification) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table, notification.id, {
            "id": notification.id,
            "created_at": now,
            "updated_at": now,
            "recipient_id": notification.recipient_id,
            "type": notification.notification_type.value,
            "subject": notification.subject,
            "body": notification.body,
            "read": False,
            "metadata": notification.metadata
        })
        return True


class NotificationService:
    """Subscribes to domain events and delivers notifications to their recipients"""

    def __init__(self, storage: StorageInterface, channels: Optional[List[NotificationChannel]] = None):
        self.storage = storage
        self.notifications_table = "notifications"
        self.providers: Dict[NotificationChannel, ChannelProvider] = {
            NotificationChannel.LOG: LogChannelProvider(),
            NotificationChannel.IN_APP: InAppChannelProvider(storage),
        }
        if channels is None:
            channels = [NotificationChannel.IN_APP, NotificationChannel.LOG]
        self.channels = list(channels)

    def register_provider(self, channel: NotificationChannel, provider: ChannelProvider) -> None:
        """Register (or replace) the provider for a channel and enable the channel"""
        self.providers[channel] = provider
        if channel not in self.channels:
            self.channels.append(channel)

    def attach(self, dispatcher: EventDispatcher) -> None:
        """Subscribe to every event that produces a notification"""
        for event_type in EVENT_NOTIFICATIONS:
            dispatcher.subscribe(event_type, self.handle_event)

    def handle_event(self, event: EventPayload) -> List[str]:
        """Render and send the notification for one domain event"""
        notification_type = EVENT_NOTIFICATIONS[event.event_type]
        recipients = event.data.get("recipients") or []
        sent = []
        for recipient_id in recipients:
            sent.extend(self.send_notification(notification_type, recipient_id, event.data))
        return sent

    def send_notification(
        self,
        notification_type: NotificationType,
        recipient_id: str,
        data: Dict[str, Any]
    ) -> List[str]:
        """Send notification to recipient via every enabled channel"""
        template = DEFAULT_TEMPLATES[notification_type]
        values = _TemplateValues(data)
        subject = template["subject"].format_map(values)
        body = template["body"].format_map(values)

        sent_ids = []
        for channel in self.channels:
            provider = self.providers.get(channel)
            if provider is None:
                continue
            now = datetime.now(timezone.utc)
            notification = Notification(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                notification_type=notification_type,
                channel=channel,
                recipient_id=recipient_id,
                subject=subject,
                body=body,
                metadata={k: v for k, v in data.items() if k != "recipients"}
            )
            notification = self._deliver(provider, notification)
            if notification.status == NotificationStatus.SENT:
                sent_ids.append(notification.id)
        return sent_ids

    def _deliver(self, provider: ChannelProvider, notification: Notification) -> Notification:
        try:
            success = provider.send(notification)
            reason = None if success else "Provider send failed"
        except Exception as e:
            success = False
            reason = str(e)

        now = datetime.now(timezone.utc)
        if success:
            notification = replace(notification, status=NotificationStatus.SENT, sent_at=now,
                                   failed_reason=None, updated_at=now)
        else:
            notification = replace(notification, status=NotificationStatus.FAILED,
                                   failed_reason=reason, updated_at=now)
            logger.warning(
                f"Notification {notification.id} via {notification.channel.value} failed: {reason}"
            )
        self.storage.save(self.notifications_table, notification.id, notification.to_dict())
        return notification

    def retry_failed(self) -> Dict[str, int]:
        """Retry failed notifications that have not exhausted their retries"""
        results = {"attempted": 0, "succeeded": 0, "failed": 0}

        failed_data = self.storage.find(self.notifications_table, {
            "status": NotificationStatus.FAILED.value
        })
        for data in failed_data:
            notification = Notification.from_dict(data)
            if notification.retry_count >= notification.max_retries:
                continue
            provider = self.providers.get(notification.channel)
            if provider is None:
                continue

            results["attempted"] += 1
            notification = self._deliver(
                provider, replace(notification, retry_count=notification.retry_count + 1)
            )
            if notification.status == NotificationStatus.SENT:
                results["succeeded"] += 1
            elif notification.retry_count >= notification.max_retries:
                results["failed"] += 1

        return results

    def get_notifications(self, recipient_id: str) -> List[Notification]:
        """List notifications for a recipient, newest first"""
        records = self.storage.find(self.notifications_table, {"recipient_id": recipient_id})
        notifications = [Notification.from_dict(data) for data in records]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications


class _TemplateValues(dict):
    """Leaves unknown placeholders visible instead of raising KeyError"""

    def __missing__(self, key):
        return "{" + key + "}"
