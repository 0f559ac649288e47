"""Creation and removal of remote subscriptions, mirrored in the registry."""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from webhook_relay.config import Settings, get_settings
from webhook_relay.errors import RemoteFetchError
from webhook_relay.services.access_tokens import AccessTokenProvider
from webhook_relay.services.decryption import load_certificate
from webhook_relay.services.graph import GraphClient
from webhook_relay.services.registry import APP_ONLY_ACCOUNT, Subscription, SubscriptionRegistry

logger = logging.getLogger(__name__)


class SubscriptionService:
    """Subscribes the relay's webhook to remote resources."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        graph: GraphClient,
        token_provider: AccessTokenProvider,
        settings: Settings | None = None,
    ) -> None:
        self.registry = registry
        self.graph = graph
        self.token_provider = token_provider
        self.settings = settings or get_settings()

    def _base_payload(self, resource: str) -> dict[str, Any]:
        expires = datetime.now(UTC) + timedelta(minutes=self.settings.subscription_lifetime_minutes)
        return {
            "changeType": "created",
            "notificationUrl": self.settings.notification_url,
            "lifecycleNotificationUrl": self.settings.lifecycle_notification_url,
            "resource": resource,
            "clientState": self.settings.subscription_client_state,
            "expirationDateTime": expires.isoformat().replace("+00:00", "Z"),
        }

    async def subscribe_app_only(self) -> dict[str, Any]:
        """Subscribe to the app-only resource with encrypted resource data.

        The publisher allows one such subscription per app, so any existing
        app-only subscriptions are deleted first.
        """
        if not self.settings.certificate_path or not self.settings.certificate_id:
            raise ValueError("CERTIFICATE_PATH and CERTIFICATE_ID are required for app-only subscriptions")

        token = await self.token_provider.get_token(APP_ONLY_ACCOUNT)

        for existing in self.registry.list_by_account(APP_ONLY_ACCOUNT):
            try:
                await self.graph.delete_subscription(existing.subscription_id, token)
            except RemoteFetchError as e:
                logger.warning(f"Could not delete subscription {existing.subscription_id}: {e}")
            self.registry.delete(existing.subscription_id)

        payload = {
            **self._base_payload(self.settings.app_only_resource),
            "includeResourceData": True,
            "encryptionCertificate": load_certificate(self.settings.certificate_path),
            "encryptionCertificateId": self.settings.certificate_id,
        }
        created = await self.graph.create_subscription(payload, token)
        self.registry.put(Subscription(subscription_id=created["id"], account_id=APP_ONLY_ACCOUNT))
        logger.info(f"Subscribed to {self.settings.app_only_resource}, subscription ID: {created['id']}")
        return created

    async def subscribe_user(self, account_id: str, refresh_token: str | None = None) -> dict[str, Any]:
        """Subscribe to a signed-in user's resource (reference-only notifications)."""
        if refresh_token:
            self.token_provider.remember_account(account_id, refresh_token)
        token = await self.token_provider.get_token(account_id)
        payload = {
            **self._base_payload(self.settings.user_resource),
            "includeResourceData": False,
        }
        created = await self.graph.create_subscription(payload, token)
        self.registry.put(Subscription(subscription_id=created["id"], account_id=account_id))
        logger.info(f"Subscribed to user's inbox, subscription ID: {created['id']}")
        return created

    async def unsubscribe(self, subscription_id: str) -> bool:
        """Stop tracking a subscription and delete it remotely.

        Returns False if the subscription wasn't tracked. The local record is
        removed even when the remote delete fails.
        """
        subscription = self.registry.get(subscription_id)
        if subscription is None:
            return False

        self.registry.delete(subscription_id)
        token = await self.token_provider.get_token(subscription.account_id)
        await self.graph.delete_subscription(subscription_id, token)

        if not subscription.is_app_only and not self.registry.list_by_account(subscription.account_id):
            self.token_provider.forget_account(subscription.account_id)
        return True
