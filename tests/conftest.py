"""Pytest configuration and fixtures."""

import base64
import hashlib
import hmac
import json
import os
from typing import Any
from unittest.mock import AsyncMock

import pytest
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.padding import MGF1, OAEP
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from fastapi.testclient import TestClient

from webhook_relay.api.dependencies import (
    get_app_settings,
    get_pipeline,
    get_registry,
    get_relay,
    get_subscription_service,
)
from webhook_relay.config import Settings
from webhook_relay.main import app
from webhook_relay.services.access_tokens import AccessTokenProvider
from webhook_relay.services.decryption import PayloadDecryptor
from webhook_relay.services.graph import GraphClient
from webhook_relay.services.pipeline import NotificationPipeline
from webhook_relay.services.registry import (
    APP_ONLY_ACCOUNT,
    InMemorySubscriptionRegistry,
    Subscription,
)
from webhook_relay.services.relay import Relay
from webhook_relay.services.subscriptions import SubscriptionService

CLIENT_STATE = "right"
CERTIFICATE_ID = "cert-1"


class FakeConnection:
    """In-memory stand-in for a live WebSocket connection."""

    def __init__(self, name: str, is_open: bool = True, fail_with: Exception | None = None):
        self.name = name
        self.is_open = is_open
        self.fail_with = fail_with
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, data: dict[str, Any]) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(data)

    def __repr__(self) -> str:
        return f"FakeConnection({self.name})"


@pytest.fixture
def settings():
    """Settings with a known client state and short timeouts."""
    return Settings(
        subscription_client_state=CLIENT_STATE,
        oauth_client_id="app-id",
        oauth_tenant_id="tenant-id",
        certificate_id=CERTIFICATE_ID,
        fetch_timeout_seconds=1.0,
        webhook_response_timeout_seconds=2.0,
        environment="test",
    )


@pytest.fixture(scope="session")
def rsa_private_key():
    """RSA key pair standing in for the relay's encryption certificate."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def encrypt_content(rsa_private_key):
    """Build an encryptedContent bundle the way the publisher does."""

    def _encrypt(
        resource: dict[str, Any] | bytes,
        oaep_hash: type[hashes.HashAlgorithm] = hashes.SHA1,
        symmetric_key: bytes | None = None,
    ) -> dict[str, str]:
        plaintext = resource if isinstance(resource, bytes) else json.dumps(resource).encode()
        key = symmetric_key or os.urandom(32)

        padder = padding.PKCS7(128).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(key[:16])).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        signature = hmac.new(key, ciphertext, hashlib.sha256).digest()
        wrapped_key = rsa_private_key.public_key().encrypt(
            key, OAEP(mgf=MGF1(algorithm=oaep_hash()), algorithm=oaep_hash(), label=None)
        )
        return {
            "data": base64.b64encode(ciphertext).decode(),
            "dataKey": base64.b64encode(wrapped_key).decode(),
            "dataSignature": base64.b64encode(signature).decode(),
            "encryptionCertificateId": CERTIFICATE_ID,
        }

    return _encrypt


@pytest.fixture
def registry():
    """Registry tracking one user subscription and one app-only subscription."""
    registry = InMemorySubscriptionRegistry()
    registry.put(Subscription(subscription_id="s1", account_id="account-1"))
    registry.put(Subscription(subscription_id="app-sub", account_id=APP_ONLY_ACCOUNT))
    return registry


@pytest.fixture
def relay():
    return Relay()


@pytest.fixture
def token_validator():
    validator = AsyncMock()
    validator.is_token_valid.return_value = True
    return validator


@pytest.fixture
def graph():
    graph = AsyncMock(spec=GraphClient)
    graph.get_message.return_value = {"id": "m1", "subject": "Hello"}
    graph.get_resource.return_value = {"id": "r1", "subject": "From the app"}
    return graph


@pytest.fixture
def token_provider():
    provider = AsyncMock(spec=AccessTokenProvider)
    provider.get_token.return_value = "access-token"
    return provider


@pytest.fixture
def decryptor(rsa_private_key):
    return PayloadDecryptor(rsa_private_key)


@pytest.fixture
def pipeline(registry, relay, token_validator, graph, token_provider, decryptor, settings):
    """Pipeline wired to in-memory and mocked collaborators."""
    return NotificationPipeline(
        registry=registry,
        relay=relay,
        token_validator=token_validator,
        graph=graph,
        token_provider=token_provider,
        decryptor=decryptor,
        settings=settings,
    )


@pytest.fixture
def subscription_service():
    return AsyncMock(spec=SubscriptionService)


@pytest.fixture
def client(pipeline, relay, registry, settings, subscription_service):
    """Create a test client whose components are the test fixtures."""
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_relay] = lambda: relay
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_subscription_service] = lambda: subscription_service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def fake_connection():
    """The FakeConnection class, for tests that build their own connections."""
    return FakeConnection
