"""Subscription management endpoints."""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Response, status

from webhook_relay.api.dependencies import get_subscription_service
from webhook_relay.errors import AccessTokenError, RemoteFetchError
from webhook_relay.schemas.subscription import SubscribeUserRequest, SubscriptionResponse
from webhook_relay.services.registry import APP_ONLY_ACCOUNT
from webhook_relay.services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


def _to_response(created: dict[str, Any], account_id: str) -> SubscriptionResponse:
    return SubscriptionResponse(
        subscription_id=created["id"],
        account_id=account_id,
        resource=created.get("resource", ""),
        expiration_date_time=created.get("expirationDateTime"),
    )


@router.post("/app-only", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def subscribe_app_only(
    service: Annotated[SubscriptionService, Depends(get_subscription_service)],
) -> SubscriptionResponse:
    """Subscribe to the app-only resource, replacing any previous app-only subscription."""
    try:
        created = await service.subscribe_app_only()
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e
    except RemoteFetchError as e:
        logger.error(f"App-only subscription failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Error subscribing for channel message notifications: {e}",
        ) from e
    return _to_response(created, APP_ONLY_ACCOUNT)


@router.post(
    "/users/{account_id}", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED
)
async def subscribe_user(
    account_id: str,
    service: Annotated[SubscriptionService, Depends(get_subscription_service)],
    body: SubscribeUserRequest | None = None,
) -> SubscriptionResponse:
    """Subscribe to a signed-in user's inbox."""
    refresh_token = body.refresh_token if body else None
    try:
        created = await service.subscribe_user(account_id, refresh_token=refresh_token)
    except AccessTokenError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e)) from e
    except RemoteFetchError as e:
        logger.error(f"Subscription for {account_id} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Error subscribing for inbox notifications: {e}",
        ) from e
    return _to_response(created, account_id)


@router.delete("/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unsubscribe(
    subscription_id: str,
    service: Annotated[SubscriptionService, Depends(get_subscription_service)],
) -> Response:
    """Delete a subscription remotely and stop tracking it."""
    try:
        found = await service.unsubscribe(subscription_id)
    except RemoteFetchError as e:
        logger.warning(f"Error deleting subscription {subscription_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Subscription untracked locally but remote delete failed: {e}",
        ) from e

    if not found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
