"""Client for the remote resource API (subscriptions and changed resources)."""

import logging
from typing import Any

import httpx

from webhook_relay.config import get_settings
from webhook_relay.errors import RemoteFetchError

logger = logging.getLogger(__name__)


class GraphClient:
    """Thin async client over the resource API's REST surface."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.graph_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.fetch_timeout_seconds

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={"Authorization": f"Bearer {token}"},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RemoteFetchError(
                f"{method} {path} failed with status {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise RemoteFetchError(f"{method} {path} failed: {e}") from e

        if response.status_code == 204 or not response.content:
            return None
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteFetchError(f"{method} {path} returned a body that is not JSON") from e
        if not isinstance(data, dict):
            raise RemoteFetchError(f"{method} {path} returned {type(data).__name__}, expected an object")
        return data

    async def get_resource(self, path: str, token: str, select: str | None = None) -> dict[str, Any]:
        """Fetch a resource by its path relative to the API root."""
        params = {"$select": select} if select else None
        data = await self._request("GET", path, token, params=params)
        return data or {}

    async def get_message(self, message_id: str, token: str, select: str | None = None) -> dict[str, Any]:
        """Fetch one of the signed-in user's messages."""
        return await self.get_resource(f"me/messages/{message_id}", token, select=select)

    async def create_subscription(self, payload: dict[str, Any], token: str) -> dict[str, Any]:
        data = await self._request("POST", "subscriptions", token, json=payload)
        if not data or "id" not in data:
            raise RemoteFetchError("Subscription response did not include an id")
        logger.info(f"Created subscription {data['id']} for {payload.get('resource')}")
        return data

    async def delete_subscription(self, subscription_id: str, token: str) -> None:
        await self._request("DELETE", f"subscriptions/{subscription_id}", token)
        logger.info(f"Deleted subscription {subscription_id}")
