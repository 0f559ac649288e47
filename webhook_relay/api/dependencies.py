"""FastAPI dependencies resolving the components built at startup."""

import logging

from fastapi import Request
from fastapi.requests import HTTPConnection
from pydantic import ValidationError

from webhook_relay.config import Settings
from webhook_relay.schemas.notification import NotificationEnvelope
from webhook_relay.services.pipeline import NotificationPipeline
from webhook_relay.services.registry import SubscriptionRegistry
from webhook_relay.services.relay import Relay
from webhook_relay.services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)


def get_app_settings(connection: HTTPConnection) -> Settings:
    return connection.app.state.settings


def get_registry(connection: HTTPConnection) -> SubscriptionRegistry:
    return connection.app.state.registry


def get_relay(connection: HTTPConnection) -> Relay:
    return connection.app.state.relay


def get_pipeline(connection: HTTPConnection) -> NotificationPipeline:
    return connection.app.state.pipeline


def get_subscription_service(connection: HTTPConnection) -> SubscriptionService:
    return connection.app.state.subscription_service


async def read_envelope(request: Request) -> NotificationEnvelope | None:
    """Parse a webhook body, or return None if there is nothing usable in it.

    Malformed bodies are not an error for the publisher; they become an
    empty batch.
    """
    body = await request.body()
    if not body.strip():
        logger.warning(f"Empty notification body on {request.url.path}")
        return None
    try:
        return NotificationEnvelope.model_validate_json(body)
    except ValidationError as e:
        logger.warning(f"Unparseable notification body on {request.url.path}: {e.error_count()} errors")
        return None
