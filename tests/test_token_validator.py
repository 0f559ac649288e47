"""Tests for validation token checks."""

import asyncio
import time
from unittest.mock import patch

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt

from webhook_relay.services.token_validator import SigningKeySet, TokenValidator

APP_ID = "app-id"
TENANT_ID = "tenant-id"
ISSUER = f"https://sts.windows.net/{TENANT_ID}/"
AZP = "publisher-app"


def _pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ).decode()


def _public_jwk(key: rsa.RSAPrivateKey, kid: str) -> dict:
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return {**jwk.construct(public_pem, "RS256").to_dict(), "kid": kid}


class FakeKeySet:
    """Key set serving fixed JWKs without HTTP."""

    def __init__(self, keys: dict[str, dict], error: Exception | None = None):
        self.keys = keys
        self.error = error
        self.requested: list[str] = []

    async def get_key(self, kid: str) -> dict | None:
        self.requested.append(kid)
        if self.error is not None:
            raise self.error
        return self.keys.get(kid)


@pytest.fixture
def signing_key(rsa_private_key):
    return rsa_private_key


@pytest.fixture
def key_set(signing_key):
    return FakeKeySet({"key-1": _public_jwk(signing_key, "key-1")})


@pytest.fixture
def validator(key_set):
    return TokenValidator(key_set, leeway_seconds=0, authorized_party=AZP)


@pytest.fixture
def make_token(signing_key):
    def _make(kid: str = "key-1", key: rsa.RSAPrivateKey | None = None, **overrides) -> str:
        claims = {
            "iss": ISSUER,
            "aud": APP_ID,
            "azp": AZP,
            "iat": int(time.time()) - 60,
            "exp": int(time.time()) + 600,
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return jwt.encode(claims, _pem(key or signing_key), algorithm="RS256", headers={"kid": kid})

    return _make


class TestTokenValidator:
    """Tests for TokenValidator.is_token_valid."""

    @pytest.mark.asyncio
    async def test_valid_token(self, validator, make_token):
        assert await validator.is_token_valid(make_token(), APP_ID, TENANT_ID) is True

    @pytest.mark.asyncio
    async def test_wrong_audience(self, validator, make_token):
        token = make_token(aud="someone-else")
        assert await validator.is_token_valid(token, APP_ID, TENANT_ID) is False

    @pytest.mark.asyncio
    async def test_wrong_tenant(self, validator, make_token):
        """The issuer must be scoped to the expected tenant."""
        assert await validator.is_token_valid(make_token(), APP_ID, "other-tenant") is False

    @pytest.mark.asyncio
    async def test_expired(self, validator, make_token):
        token = make_token(exp=int(time.time()) - 10)
        assert await validator.is_token_valid(token, APP_ID, TENANT_ID) is False

    @pytest.mark.asyncio
    async def test_leeway_tolerates_small_skew(self, key_set, make_token):
        validator = TokenValidator(key_set, leeway_seconds=60, authorized_party=AZP)
        token = make_token(exp=int(time.time()) - 10)
        assert await validator.is_token_valid(token, APP_ID, TENANT_ID) is True

    @pytest.mark.asyncio
    async def test_missing_expiry(self, validator, make_token):
        token = make_token(exp=None)
        assert await validator.is_token_valid(token, APP_ID, TENANT_ID) is False

    @pytest.mark.asyncio
    async def test_signed_by_another_key(self, validator, make_token):
        """A token claiming a known kid but signed elsewhere is rejected."""
        forger = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        token = make_token(key=forger)
        assert await validator.is_token_valid(token, APP_ID, TENANT_ID) is False

    @pytest.mark.asyncio
    async def test_unknown_key_id(self, validator, make_token):
        assert await validator.is_token_valid(make_token(kid="key-2"), APP_ID, TENANT_ID) is False

    @pytest.mark.asyncio
    async def test_malformed_token(self, validator, key_set):
        assert await validator.is_token_valid("not-a-jwt", APP_ID, TENANT_ID) is False
        assert key_set.requested == []

    @pytest.mark.asyncio
    async def test_unauthorized_party(self, validator, make_token):
        token = make_token(azp="not-the-publisher")
        assert await validator.is_token_valid(token, APP_ID, TENANT_ID) is False

    @pytest.mark.asyncio
    async def test_missing_audience(self, validator, make_token):
        token = make_token(aud=None)
        assert await validator.is_token_valid(token, APP_ID, TENANT_ID) is False

    @pytest.mark.asyncio
    async def test_missing_issuer(self, validator, make_token):
        token = make_token(iss=None)
        assert await validator.is_token_valid(token, APP_ID, TENANT_ID) is False

    @pytest.mark.asyncio
    async def test_v1_token_names_caller_in_appid(self, validator, make_token):
        token = make_token(azp=None, appid=AZP)
        assert await validator.is_token_valid(token, APP_ID, TENANT_ID) is True

    @pytest.mark.asyncio
    async def test_v1_token_from_unexpected_caller(self, validator, make_token):
        token = make_token(azp=None, appid="not-the-publisher")
        assert await validator.is_token_valid(token, APP_ID, TENANT_ID) is False

    @pytest.mark.asyncio
    async def test_key_fetch_failure_is_false(self, make_token):
        """Errors loading signing keys never escape."""
        key_set = FakeKeySet({}, error=httpx.ConnectError("unreachable"))
        validator = TokenValidator(key_set)
        assert await validator.is_token_valid(make_token(), APP_ID, TENANT_ID) is False

    @pytest.mark.asyncio
    async def test_concurrent_validation(self, validator, make_token):
        """Tokens in one batch can be validated concurrently."""
        tokens = [make_token(), make_token(aud="wrong"), make_token()]
        results = await asyncio.gather(
            *(validator.is_token_valid(token, APP_ID, TENANT_ID) for token in tokens)
        )
        assert results == [True, False, True]


class TestSigningKeySet:
    """Tests for JWKS fetching and caching."""

    @staticmethod
    def _patched_client(handler):
        real_client = httpx.AsyncClient

        def factory(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        return patch("webhook_relay.services.token_validator.httpx.AsyncClient", side_effect=factory)

    @pytest.mark.asyncio
    async def test_fetches_and_caches(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(200, json={"keys": [{"kid": "a", "kty": "RSA"}]})

        key_set = SigningKeySet("https://idp.example/keys")
        with self._patched_client(handler):
            assert (await key_set.get_key("a"))["kid"] == "a"
            assert (await key_set.get_key("a"))["kid"] == "a"

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_kid_refresh_is_rate_limited(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(200, json={"keys": [{"kid": "a", "kty": "RSA"}]})

        key_set = SigningKeySet("https://idp.example/keys", min_refresh_seconds=3600)
        with self._patched_client(handler):
            assert await key_set.get_key("b") is None
            assert await key_set.get_key("b") is None

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_kid_triggers_refresh(self):
        responses = iter(
            [
                {"keys": [{"kid": "a", "kty": "RSA"}]},
                {"keys": [{"kid": "a", "kty": "RSA"}, {"kid": "b", "kty": "RSA"}]},
            ]
        )

        def handler(request):
            return httpx.Response(200, json=next(responses))

        key_set = SigningKeySet("https://idp.example/keys", min_refresh_seconds=0)
        with self._patched_client(handler):
            assert await key_set.get_key("a") is not None
            assert (await key_set.get_key("b"))["kid"] == "b"

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        def handler(request):
            return httpx.Response(503)

        key_set = SigningKeySet("https://idp.example/keys")
        with self._patched_client(handler), pytest.raises(httpx.HTTPStatusError):
            await key_set.get_key("a")
