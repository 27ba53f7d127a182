"""
Notification Dispatcher Module

Fire-and-forget delivery of customer notifications after payment confirmation
or rejection and after device lock/unlock. Dispatch happens after the ledger
transaction commits; provider failures are logged and never raised back into
the caller, and nothing is retried synchronously.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from abc import ABC, abstractmethod
import logging
import uuid

import requests

from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("device_finance.notifications")


class NotificationChannel(Enum):
    """Available notification channels"""
    LOG = "log"
    IN_APP = "in_app"
    WEBHOOK = "webhook"


class NotificationType(Enum):
    """Types of notifications"""
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_REJECTED = "payment_rejected"
    DEVICE_LOCK_REQUESTED = "device_lock_requested"
    DEVICE_LOCKED = "device_locked"
    DEVICE_UNLOCKED = "device_unlocked"
    DEVICE_BLOCKED_OVERDUE = "device_blocked_overdue"


class NotificationStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


TEMPLATES: Dict[NotificationType, Dict[str, str]] = {
    NotificationType.PAYMENT_CONFIRMED: {
        "subject": "Payment confirmed",
        "body": "Your payment of {amount} was verified and applied to your installments.",
    },
    NotificationType.PAYMENT_REJECTED: {
        "subject": "Payment rejected",
        "body": "Your payment of {amount} could not be verified: {reason}.",
    },
    NotificationType.DEVICE_LOCK_REQUESTED: {
        "subject": "Device lock scheduled",
        "body": "A lock was requested for your device {device_id}: {reason}.",
    },
    NotificationType.DEVICE_LOCKED: {
        "subject": "Device locked",
        "body": "Your device {device_id} has been locked: {reason}.",
    },
    NotificationType.DEVICE_UNLOCKED: {
        "subject": "Device unlocked",
        "body": "Your device {device_id} has been unlocked: {reason}.",
    },
    NotificationType.DEVICE_BLOCKED_OVERDUE: {
        "subject": "Device blocked for overdue payment",
        "body": "Your device {device_id} was blocked because installment #{installment_number} "
                "is {days_overdue} days overdue.",
    },
}


@dataclass
class Notification(StorageRecord):
    """Individual notification instance"""
    notification_type: NotificationType
    recipient_id: str
    subject: str
    body: str
    status: NotificationStatus = NotificationStatus.PENDING
    channels_sent: List[str] = field(default_factory=list)
    channels_failed: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['notification_type'] = self.notification_type.value
        result['status'] = self.status.value
        return result


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    channel: NotificationChannel

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Writes notifications to the application log"""

    channel = NotificationChannel.LOG

    def send(self, notification: Notification) -> bool:
        logger.info(
            f"{notification.notification_type.value} to {notification.recipient_id}: {notification.subject}",
            extra={'action': 'notification_sent', 'resource': f"customer:{notification.recipient_id}"}
        )
        return True


class InAppChannelProvider(ChannelProvider):
    """In-app notification provider using storage"""

    channel = NotificationChannel.IN_APP

    def __init__(self, storage: StorageInterface, table: str = "in_app_notifications"):
        self.storage = storage
        self.table = table

    def send(self, notification: Notification) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        in_app_data = {
            "id": str(uuid.uuid4()),
            "created_at": now,
            "updated_at": now,
            "notification_id": notification.id,
            "recipient_id": notification.recipient_id,
            "type": notification.notification_type.value,
            "subject": notification.subject,
            "body": notification.body,
            "read": False,
            "metadata": notification.metadata
        }
        self.storage.save(self.table, in_app_data["id"], in_app_data)
        return True


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external delivery services (SMS, push)"""

    channel = NotificationChannel.WEBHOOK

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "recipient_id": notification.recipient_id,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }
        response = requests.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        return response.status_code < 300


class NotificationDispatcher:
    """Renders notifications and hands them to every registered provider"""

    def __init__(self, storage: StorageInterface,
                 providers: Optional[List[ChannelProvider]] = None,
                 enabled: bool = True):
        self.storage = storage
        self.enabled = enabled
        self.notifications_table = "notifications"
        if providers is None:
            providers = [LogChannelProvider(), InAppChannelProvider(storage)]
        self.providers: List[ChannelProvider] = list(providers)

    def register_provider(self, provider: ChannelProvider) -> None:
        self.providers.append(provider)

    def _render(self, notification_type: NotificationType, data: Dict[str, Any]) -> Dict[str, str]:
        template = TEMPLATES[notification_type]
        try:
            return {
                "subject": template["subject"].format(**data),
                "body": template["body"].format(**data),
            }
        except KeyError as e:
            logger.warning(f"Template for {notification_type.value} missing key {e}; sending subject only")
            return {"subject": template["subject"], "body": template["subject"]}

    def dispatch(
        self,
        notification_type: NotificationType,
        recipient_id: Optional[str],
        data: Dict[str, Any]
    ) -> Optional[Notification]:
        """
        Deliver a notification to all providers.

        Never raises: every failure is logged and reflected in the returned
        notification's ``channels_failed``.
        """
        if not self.enabled:
            return None
        if not recipient_id:
            logger.warning(f"Skipping {notification_type.value} notification without recipient")
            return None

        try:
            rendered = self._render(notification_type, data)
            now = datetime.now(timezone.utc)
            notification = Notification(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                notification_type=notification_type,
                recipient_id=recipient_id,
                subject=rendered["subject"],
                body=rendered["body"],
                metadata={k: str(v) for k, v in data.items()}
            )
        except Exception as e:
            logger.error(f"Could not build {notification_type.value} notification: {e}")
            return None

        for provider in self.providers:
            channel = provider.channel.value
            try:
                if provider.send(notification):
                    notification.channels_sent.append(channel)
                else:
                    notification.channels_failed.append(channel)
                    logger.warning(f"Provider {channel} refused {notification_type.value} for {recipient_id}")
            except Exception as e:
                notification.channels_failed.append(channel)
                logger.error(f"Provider {channel} failed for {notification_type.value} to {recipient_id}: {e}")

        notification.status = (
            NotificationStatus.SENT if notification.channels_sent else NotificationStatus.FAILED
        )
        try:
            self.storage.save(self.notifications_table, notification.id, notification.to_dict())
        except Exception as e:
            logger.error(f"Could not persist notification {notification.id}: {e}")

        return notification
