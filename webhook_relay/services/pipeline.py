"""Processing of notification batches posted to the webhook.

For each batch: all validation tokens must pass, then every item is handled
on its own. An item must echo the configured client state and reference a
tracked subscription; encrypted items are unwrapped, verified and decrypted
locally, plain items are fetched from the resource API. Whatever goes wrong
with one item is logged and never affects its siblings or the response.
"""

import asyncio
import json
import logging
import secrets
from collections.abc import Awaitable
from typing import Any, TypeVar

from pydantic import ValidationError

from webhook_relay.config import Settings, get_settings
from webhook_relay.errors import (
    DecryptionError,
    LookupMiss,
    RemoteFetchError,
    ValidationFailure,
)
from webhook_relay.schemas.notification import (
    EncryptedNotification,
    LifecycleEvent,
    LifecycleNotification,
    NotificationEnvelope,
    RelayEvent,
    RelayEventType,
    ResourceNotification,
    notification_item_adapter,
)
from webhook_relay.services.access_tokens import AccessTokenProvider
from webhook_relay.services.decryption import PayloadDecryptor
from webhook_relay.services.graph import GraphClient
from webhook_relay.services.registry import Subscription, SubscriptionRegistry
from webhook_relay.services.relay import Relay
from webhook_relay.services.token_validator import TokenValidator

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NotificationPipeline:
    """Turns notification batches into relay events.

    Holds no per-call state, so overlapping webhook calls can share one
    instance.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        relay: Relay,
        token_validator: TokenValidator,
        graph: GraphClient,
        token_provider: AccessTokenProvider,
        decryptor: PayloadDecryptor | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.registry = registry
        self.relay = relay
        self.token_validator = token_validator
        self.graph = graph
        self.token_provider = token_provider
        self.decryptor = decryptor
        self.settings = settings or get_settings()

    async def process(self, envelope: NotificationEnvelope) -> list[RelayEvent]:
        """Process a batch and return the events that were broadcast."""
        if envelope.validation_tokens and not await self._tokens_valid(envelope.validation_tokens):
            logger.warning(
                f"Validation tokens rejected; skipping batch of {len(envelope.value)} notifications"
            )
            return []

        events: list[RelayEvent] = []
        for index, raw in enumerate(envelope.value):
            try:
                item = notification_item_adapter.validate_python(raw)
                event = await self._process_item(item)
                if event is None:
                    continue
                await self.relay.broadcast(item.subscription_id, event)
            except ValidationError as e:
                logger.warning(f"Skipping malformed notification #{index}: {e.error_count()} errors")
                continue
            except (ValidationFailure, LookupMiss) as e:
                logger.info(f"Dropped notification #{index}: {e}")
                continue
            except (DecryptionError, RemoteFetchError) as e:
                logger.warning(f"Dropped notification #{index}: {e}")
                continue
            except Exception as e:
                logger.error(f"Unexpected error processing notification #{index}: {e}", exc_info=True)
                continue
            events.append(event)

        return events

    async def process_lifecycle(self, envelope: NotificationEnvelope) -> int:
        """Apply lifecycle notifications; returns how many subscriptions were removed.

        Only removal is acted on. Reauthorization and missed-notification
        events are logged; renewing subscriptions is left to the
        subscribe flows.
        """
        if envelope.validation_tokens and not await self._tokens_valid(envelope.validation_tokens):
            logger.warning("Validation tokens rejected; skipping lifecycle batch")
            return 0

        removed = 0
        for index, raw in enumerate(envelope.value):
            try:
                item = LifecycleNotification.model_validate(raw)
                if self._apply_lifecycle(item):
                    removed += 1
            except ValidationError as e:
                logger.warning(f"Skipping malformed lifecycle notification #{index}: {e.error_count()} errors")
                continue
            except (ValidationFailure, LookupMiss) as e:
                logger.info(f"Dropped lifecycle notification #{index}: {e}")
                continue
            except Exception as e:
                logger.error(f"Unexpected error processing lifecycle notification #{index}: {e}", exc_info=True)
                continue
        return removed

    def _apply_lifecycle(self, item: LifecycleNotification) -> bool:
        """Act on one lifecycle notification; True if the subscription was removed."""
        if not self._client_state_matches(item.client_state):
            raise ValidationFailure(f"client state mismatch for subscription {item.subscription_id}")
        if self.registry.get(item.subscription_id) is None:
            raise LookupMiss(f"subscription {item.subscription_id} is not tracked")

        if item.lifecycle_event == LifecycleEvent.SUBSCRIPTION_REMOVED:
            self.registry.delete(item.subscription_id)
            logger.info(f"Subscription {item.subscription_id} removed by publisher")
            return True
        if item.lifecycle_event == LifecycleEvent.REAUTHORIZATION_REQUIRED:
            logger.warning(f"Subscription {item.subscription_id} requires reauthorization")
        elif item.lifecycle_event == LifecycleEvent.MISSED:
            logger.warning(f"Publisher reports missed notifications for {item.subscription_id}")
        else:
            logger.info(f"Ignoring lifecycle event {item.lifecycle_event} for {item.subscription_id}")
        return False

    async def _tokens_valid(self, tokens: list[str]) -> bool:
        results = await asyncio.gather(
            *(
                self.token_validator.is_token_valid(
                    token, self.settings.oauth_client_id, self.settings.oauth_tenant_id
                )
                for token in tokens
            )
        )
        return all(results)

    def _client_state_matches(self, client_state: str | None) -> bool:
        if client_state is None:
            return False
        return secrets.compare_digest(
            client_state.encode(), self.settings.subscription_client_state.encode()
        )

    async def _process_item(
        self, item: EncryptedNotification | ResourceNotification
    ) -> RelayEvent | None:
        if not self._client_state_matches(item.client_state):
            raise ValidationFailure(f"client state mismatch for subscription {item.subscription_id}")

        subscription = self.registry.get(item.subscription_id)
        if subscription is None:
            raise LookupMiss(f"subscription {item.subscription_id} is not tracked")

        logger.info(f"Received notification for subscription {item.subscription_id}")

        match item:
            case EncryptedNotification():
                return await self._process_encrypted(item, subscription)
            case ResourceNotification():
                return await self._process_resource(item, subscription)

    async def _process_encrypted(
        self, item: EncryptedNotification, subscription: Subscription
    ) -> RelayEvent | None:
        if self.decryptor is None:
            raise DecryptionError("no private key configured for encrypted notifications")

        content = item.encrypted_content
        expected_certificate = self.settings.certificate_id
        if (
            expected_certificate
            and content.encryption_certificate_id
            and content.encryption_certificate_id != expected_certificate
        ):
            raise DecryptionError(
                f"payload encrypted for unknown certificate {content.encryption_certificate_id}"
            )

        # Order matters: nothing is decrypted unless the signature checks out
        symmetric_key = self.decryptor.decrypt_symmetric_key(content.data_key)
        if not self.decryptor.verify_signature(content.data_signature, content.data, symmetric_key):
            logger.warning(
                f"Signature verification failed for subscription {item.subscription_id}; dropping"
            )
            return None
        payload = self.decryptor.decrypt_payload(content.data, symmetric_key)

        try:
            resource = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DecryptionError("decrypted payload is not JSON") from e
        if not isinstance(resource, dict):
            raise DecryptionError("decrypted payload is not a JSON object")

        if self.settings.enrich_encrypted_notifications and item.resource:
            resource = await self._enrich(item, subscription, resource)

        return RelayEvent(type=RelayEventType.CHAT_MESSAGE, resource=resource)

    async def _enrich(
        self, item: EncryptedNotification, subscription: Subscription, resource: dict[str, Any]
    ) -> dict[str, Any]:
        """Merge the full resource over the decrypted one; best effort."""
        try:
            token = await self._bounded(
                self.token_provider.get_token(subscription.account_id), "token request"
            )
            full = await self._bounded(
                self.graph.get_resource(item.resource, token), f"fetch of {item.resource}"
            )
        except RemoteFetchError as e:
            logger.warning(f"Could not enrich notification for {item.subscription_id}: {e}")
            return resource
        return {**resource, **full}

    async def _process_resource(
        self, item: ResourceNotification, subscription: Subscription
    ) -> RelayEvent:
        select = self.settings.message_select_fields
        token = await self._bounded(
            self.token_provider.get_token(subscription.account_id), "token request"
        )

        # App-only tokens have no signed-in user, so fetch by the resource path
        if subscription.is_app_only:
            if not item.resource:
                raise RemoteFetchError(f"notification for {item.subscription_id} has no resource path")
            resource = await self._bounded(
                self.graph.get_resource(item.resource, token, select=select),
                f"fetch of {item.resource}",
            )
            return RelayEvent(type=RelayEventType.USER_MESSAGE, resource=resource)

        if item.resource_data is None:
            raise RemoteFetchError(f"notification for {item.subscription_id} has no resource id")
        message_id = item.resource_data.id
        resource = await self._bounded(
            self.graph.get_message(message_id, token, select=select),
            f"fetch of message {message_id}",
        )
        return RelayEvent(type=RelayEventType.MESSAGE, resource=resource)

    async def _bounded(self, awaitable: Awaitable[T], what: str) -> T:
        timeout = self.settings.fetch_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except TimeoutError as e:
            raise RemoteFetchError(f"{what} timed out after {timeout}s") from e
