"""Access tokens for calls to the resource API.

App-only tokens come from the client-credentials grant. Delegated tokens are
minted from the refresh token the sign-in flow hands over through
``remember_account``.
"""

import logging
import time
from dataclasses import dataclass

import httpx

from webhook_relay.config import Settings, get_settings
from webhook_relay.errors import AccessTokenError
from webhook_relay.services.registry import APP_ONLY_ACCOUNT

logger = logging.getLogger(__name__)

# Refresh tokens this many seconds before they expire
EXPIRY_MARGIN_SECONDS = 60


@dataclass
class CachedToken:
    access_token: str
    expires_at: float

    @property
    def is_fresh(self) -> bool:
        return time.monotonic() < self.expires_at - EXPIRY_MARGIN_SECONDS


class AccessTokenProvider:
    """Acquires and caches access tokens per owning account."""

    def __init__(self, settings: Settings | None = None, timeout: float = 10.0) -> None:
        self.settings = settings or get_settings()
        self.timeout = timeout
        self._tokens: dict[str, CachedToken] = {}
        self._refresh_tokens: dict[str, str] = {}

    @property
    def token_url(self) -> str:
        return (
            f"{self.settings.oauth_authority.rstrip('/')}/"
            f"{self.settings.oauth_tenant_id}/oauth2/v2.0/token"
        )

    def remember_account(self, account_id: str, refresh_token: str) -> None:
        """Record the refresh token obtained when ``account_id`` signed in."""
        self._refresh_tokens[account_id] = refresh_token
        self._tokens.pop(account_id, None)

    def forget_account(self, account_id: str) -> None:
        self._refresh_tokens.pop(account_id, None)
        self._tokens.pop(account_id, None)

    async def get_token(self, account_id: str) -> str:
        """Return a usable access token for ``account_id`` (or the app itself)."""
        cached = self._tokens.get(account_id)
        if cached and cached.is_fresh:
            return cached.access_token

        if account_id == APP_ONLY_ACCOUNT:
            form = {
                "grant_type": "client_credentials",
                "scope": f"{_resource_root(self.settings.graph_base_url)}/.default",
            }
        else:
            refresh_token = self._refresh_tokens.get(account_id)
            if refresh_token is None:
                raise AccessTokenError(f"No signed-in session for account {account_id}")
            form = {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "scope": " ".join([*self.settings.scopes, "offline_access"]),
            }

        token = await self._request_token(form)
        self._tokens[account_id] = token.cached
        if token.refresh_token:
            self._refresh_tokens[account_id] = token.refresh_token
        return token.cached.access_token

    async def _request_token(self, form: dict[str, str]) -> "_TokenResponse":
        form = {
            **form,
            "client_id": self.settings.oauth_client_id,
            "client_secret": self.settings.oauth_client_secret,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.token_url, data=form)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise AccessTokenError(f"Token request ({form['grant_type']}) failed: {e}") from e

        if "access_token" not in data:
            raise AccessTokenError("Token response did not include an access token")

        expires_in = int(data.get("expires_in", 3600))
        return _TokenResponse(
            cached=CachedToken(data["access_token"], time.monotonic() + expires_in),
            refresh_token=data.get("refresh_token"),
        )


@dataclass
class _TokenResponse:
    cached: CachedToken
    refresh_token: str | None


def _resource_root(base_url: str) -> str:
    """'https://graph.microsoft.com/v1.0' -> 'https://graph.microsoft.com'."""
    scheme, _, rest = base_url.partition("://")
    return f"{scheme}://{rest.split('/', 1)[0]}"
