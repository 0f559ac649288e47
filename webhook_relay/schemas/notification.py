"""Notification-related Pydantic schemas.

Publisher payloads arrive in camelCase; the models accept either the wire
name or the Python field name.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


class PublisherModel(BaseModel):
    """Base for payloads sent by the notification publisher."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EncryptedContent(PublisherModel):
    """Encrypted resource payload attached to a rich notification."""

    data: str
    data_key: str
    data_signature: str
    encryption_certificate_id: str | None = None
    encryption_certificate_thumbprint: str | None = None


class ResourceData(PublisherModel):
    """Lightweight reference to the changed resource."""

    id: str
    odata_type: str | None = Field(default=None, alias="@odata.type")


class NotificationBase(PublisherModel):
    """Fields common to every notification item."""

    subscription_id: str
    client_state: str | None = None
    change_type: str | None = None
    resource: str | None = None
    tenant_id: str | None = None


class EncryptedNotification(NotificationBase):
    """Notification carrying the resource itself, encrypted."""

    encrypted_content: EncryptedContent
    resource_data: ResourceData | None = None


class ResourceNotification(NotificationBase):
    """Notification carrying only a reference; the resource must be fetched."""

    resource_data: ResourceData | None = None


def _notification_kind(value: Any) -> str:
    if isinstance(value, dict):
        content = value.get("encryptedContent", value.get("encrypted_content"))
    else:
        content = getattr(value, "encrypted_content", None)
    return "encrypted" if content is not None else "resource"


NotificationItem = Annotated[
    Union[
        Annotated[EncryptedNotification, Tag("encrypted")],
        Annotated[ResourceNotification, Tag("resource")],
    ],
    Discriminator(_notification_kind),
]

notification_item_adapter: TypeAdapter[EncryptedNotification | ResourceNotification] = TypeAdapter(
    NotificationItem
)


class NotificationEnvelope(PublisherModel):
    """A batch of notifications as posted to the webhook.

    Items are kept raw and parsed one at a time so a malformed item only
    drops itself.
    """

    value: list[Any] = Field(default_factory=list)
    validation_tokens: list[str] | None = None

    @field_validator("value", mode="before")
    @classmethod
    def none_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class LifecycleEvent(StrEnum):
    """Subscription lifecycle events sent by the publisher."""

    SUBSCRIPTION_REMOVED = "subscriptionRemoved"
    REAUTHORIZATION_REQUIRED = "reauthorizationRequired"
    MISSED = "missed"


class LifecycleNotification(PublisherModel):
    """A single lifecycle notification item."""

    subscription_id: str
    client_state: str | None = None
    lifecycle_event: str


class RelayEventType(StrEnum):
    """Event types sent to realtime clients."""

    MESSAGE = "message"
    USER_MESSAGE = "user_message"
    CHAT_MESSAGE = "chatMessage"


class RelayEvent(BaseModel):
    """Normalized event produced for one processed notification."""

    type: RelayEventType
    resource: dict[str, Any]


class RelayMessage(BaseModel):
    """Server-to-client realtime message wrapping a relay event."""

    type: str = "notification"
    subscription_id: str
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    data: RelayEvent
