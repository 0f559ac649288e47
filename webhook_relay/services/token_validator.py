"""Validation of the signed tokens the publisher embeds in notification batches."""

import logging
import time

import httpx
from jose import jwt
from jose.exceptions import JOSEError

logger = logging.getLogger(__name__)


class SigningKeySet:
    """Identity provider signing keys (JWKS), fetched over HTTP and cached.

    An unknown ``kid`` triggers a refresh, at most once per
    ``min_refresh_seconds``, so rotated keys are picked up without letting
    garbage tokens hammer the key endpoint.
    """

    def __init__(
        self,
        jwks_url: str,
        cache_seconds: int = 3600,
        min_refresh_seconds: int = 60,
        timeout: float = 10.0,
    ) -> None:
        self.jwks_url = jwks_url
        self.cache_seconds = cache_seconds
        self.min_refresh_seconds = min_refresh_seconds
        self.timeout = timeout
        self._keys: dict[str, dict] = {}
        self._fetched_at: float | None = None

    async def _refresh(self) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(self.jwks_url)
            response.raise_for_status()
            data = response.json()

        self._keys = {key["kid"]: key for key in data.get("keys", []) if "kid" in key}
        self._fetched_at = time.monotonic()
        logger.info(f"Loaded {len(self._keys)} signing keys from {self.jwks_url}")

    async def get_key(self, kid: str) -> dict | None:
        """Return the JWK for ``kid``, or None if the issuer doesn't publish it."""
        if self._fetched_at is None:
            await self._refresh()
        else:
            age = time.monotonic() - self._fetched_at
            if age > self.cache_seconds or (
                kid not in self._keys and age >= self.min_refresh_seconds
            ):
                await self._refresh()
        return self._keys.get(kid)


class TokenValidator:
    """Checks validation tokens against the tenant issuer and the app id."""

    def __init__(
        self,
        key_set: SigningKeySet,
        issuer_template: str = "https://sts.windows.net/{tenant_id}/",
        leeway_seconds: int = 0,
        authorized_party: str | None = None,
    ) -> None:
        self.key_set = key_set
        self.issuer_template = issuer_template
        self.leeway_seconds = leeway_seconds
        self.authorized_party = authorized_party

    async def is_token_valid(self, token: str, expected_app_id: str, expected_tenant_id: str) -> bool:
        """Verify signature, issuer, audience and expiry of a token.

        Never raises: any structural, signature or claim problem is logged
        and reported as False.
        """
        try:
            header = jwt.get_unverified_header(token)
        except JOSEError as e:
            logger.warning(f"Malformed validation token: {e}")
            return False

        kid = header.get("kid")
        if not kid:
            logger.warning("Validation token has no key id")
            return False

        try:
            key = await self.key_set.get_key(kid)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Could not load signing keys: {e}")
            return False

        if key is None:
            logger.warning(f"Validation token signed with unknown key {kid}")
            return False

        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                audience=expected_app_id,
                issuer=self.issuer_template.format(tenant_id=expected_tenant_id),
                options={
                    "leeway": self.leeway_seconds,
                    "require_aud": True,
                    "require_iss": True,
                    "require_exp": True,
                    "verify_at_hash": False,
                },
            )
        except JOSEError as e:
            logger.warning(f"Validation token rejected: {e}")
            return False

        # v2 tokens name the calling app in azp, v1 tokens in appid
        caller = claims.get("azp") or claims.get("appid")
        if self.authorized_party and caller != self.authorized_party:
            logger.warning(f"Validation token issued to unexpected party {caller}")
            return False

        return True
