"""Subscription management schemas."""

from pydantic import BaseModel


class SubscriptionResponse(BaseModel):
    """Schema for a subscription created through the management API."""

    subscription_id: str
    account_id: str
    resource: str
    expiration_date_time: str | None = None


class SubscribeUserRequest(BaseModel):
    """Optional body for a user subscription.

    ``refresh_token`` is handed over by the sign-in flow the first time an
    account subscribes; later calls can omit it.
    """

    refresh_token: str | None = None
