"""Pydantic schemas for webhook payloads, relay events and the management API."""

from webhook_relay.schemas.notification import (
    EncryptedContent,
    EncryptedNotification,
    LifecycleEvent,
    LifecycleNotification,
    NotificationEnvelope,
    RelayEvent,
    RelayEventType,
    RelayMessage,
    ResourceData,
    ResourceNotification,
    notification_item_adapter,
)
from webhook_relay.schemas.subscription import SubscribeUserRequest, SubscriptionResponse

__all__ = [
    "EncryptedContent",
    "EncryptedNotification",
    "ResourceData",
    "ResourceNotification",
    "NotificationEnvelope",
    "notification_item_adapter",
    "LifecycleEvent",
    "LifecycleNotification",
    "RelayEvent",
    "RelayEventType",
    "RelayMessage",
    "SubscribeUserRequest",
    "SubscriptionResponse",
]
