"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated

import uvicorn
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from webhook_relay import __version__
from webhook_relay.api import listen, subscriptions, websocket
from webhook_relay.api.dependencies import get_app_settings, get_relay
from webhook_relay.config import Settings, get_settings
from webhook_relay.services.access_tokens import AccessTokenProvider
from webhook_relay.services.decryption import PayloadDecryptor
from webhook_relay.services.graph import GraphClient
from webhook_relay.services.pipeline import NotificationPipeline
from webhook_relay.services.registry import create_registry
from webhook_relay.services.relay import Relay
from webhook_relay.services.subscriptions import SubscriptionService
from webhook_relay.services.token_validator import SigningKeySet, TokenValidator

logger = logging.getLogger(__name__)
settings = get_settings()

# App id of the publisher's change-tracking service, the authorized party on its validation tokens
CHANGE_TRACKING_APP_ID = "0bf30f3b-4a52-48df-9a82-234910c4a086"

# How long shutdown waits for batches still being processed
SHUTDOWN_GRACE_SECONDS = 5.0


def build_components(app: FastAPI, settings: Settings) -> None:
    """Wire the relay's collaborators onto ``app.state``."""
    registry = create_registry(settings.subscription_store, settings.redis_url)
    relay = Relay(mode=settings.relay_mode)
    graph = GraphClient(settings.graph_base_url, timeout=settings.fetch_timeout_seconds)
    token_provider = AccessTokenProvider(settings)
    token_validator = TokenValidator(
        SigningKeySet(settings.jwks_url, cache_seconds=settings.jwks_cache_seconds),
        issuer_template=settings.token_issuer_template,
        leeway_seconds=settings.token_leeway_seconds,
        authorized_party=CHANGE_TRACKING_APP_ID,
    )

    decryptor = None
    if settings.private_key_path:
        decryptor = PayloadDecryptor.from_file(
            settings.private_key_path, settings.private_key_password, oaep_hash=settings.oaep_hash
        )
    else:
        logger.info("PRIVATE_KEY_PATH not set; encrypted notifications will be dropped")

    app.state.settings = settings
    app.state.registry = registry
    app.state.relay = relay
    app.state.token_provider = token_provider
    app.state.background_tasks = set()
    app.state.pipeline = NotificationPipeline(
        registry=registry,
        relay=relay,
        token_validator=token_validator,
        graph=graph,
        token_provider=token_provider,
        decryptor=decryptor,
        settings=settings,
    )
    app.state.subscription_service = SubscriptionService(
        registry=registry, graph=graph, token_provider=token_provider, settings=settings
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown events."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    build_components(app, settings)
    logger.info(f"Relay ready in {settings.relay_mode} mode, notifications at {settings.notification_url}")
    yield
    pending = app.state.background_tasks
    if pending:
        logger.info(f"Waiting for {len(pending)} notification batches to finish")
        await asyncio.wait(list(pending), timeout=SHUTDOWN_GRACE_SECONDS)


app = FastAPI(
    title="Webhook Notification Relay",
    description="Relays change notifications to live WebSocket clients",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware for development
if settings.is_development:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.public_base_url.rstrip("/")],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

# Register routers
app.include_router(listen.router)
app.include_router(websocket.router)
app.include_router(subscriptions.router)


@app.get("/health")
async def health_check(
    app_settings: Annotated[Settings, Depends(get_app_settings)],
    relay: Annotated[Relay, Depends(get_relay)],
):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "environment": app_settings.environment,
        "connections": relay.connection_count,
    }


def run() -> None:
    """Start the relay server."""
    uvicorn.run(
        "webhook_relay.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
