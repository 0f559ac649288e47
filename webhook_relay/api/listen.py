"""Webhook endpoints the notification publisher calls."""

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import PlainTextResponse

from webhook_relay.api.dependencies import get_app_settings, get_pipeline, read_envelope
from webhook_relay.config import Settings
from webhook_relay.services.pipeline import NotificationPipeline

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def _accepted() -> Response:
    return Response(status_code=status.HTTP_202_ACCEPTED)


def _track(request: Request, task: asyncio.Task) -> None:
    """Keep a reference to a detached batch until it finishes."""
    pending: set[asyncio.Task] = request.app.state.background_tasks
    pending.add(task)

    def _done(finished: asyncio.Task) -> None:
        pending.discard(finished)
        if not finished.cancelled() and finished.exception() is not None:
            logger.error(f"Notification batch failed: {finished.exception()!r}")

    task.add_done_callback(_done)


@router.post("/listen")
async def listen(
    request: Request,
    pipeline: Annotated[NotificationPipeline, Depends(get_pipeline)],
    settings: Annotated[Settings, Depends(get_app_settings)],
    validation_token: Annotated[str | None, Query(alias="validationToken")] = None,
) -> Response:
    """Receive change notifications.

    A ``validationToken`` query parameter is the publisher's endpoint
    handshake: echo it back as plain text and do nothing else. Otherwise the
    batch is processed and the publisher always gets a 202, within the
    response budget even if some items are still being fetched.
    """
    if validation_token:
        return PlainTextResponse(validation_token)

    envelope = await read_envelope(request)
    if envelope is None:
        return _accepted()

    task = asyncio.create_task(pipeline.process(envelope))
    _track(request, task)
    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=settings.webhook_response_timeout_seconds)
    except TimeoutError:
        logger.warning(
            f"Batch still processing after {settings.webhook_response_timeout_seconds}s; "
            "acknowledging and continuing in the background"
        )
    except Exception as e:
        logger.error(f"Notification batch failed: {e}", exc_info=True)

    return _accepted()


@router.post("/lifecycle")
async def lifecycle(
    request: Request,
    pipeline: Annotated[NotificationPipeline, Depends(get_pipeline)],
    validation_token: Annotated[str | None, Query(alias="validationToken")] = None,
) -> Response:
    """Receive subscription lifecycle notifications."""
    if validation_token:
        return PlainTextResponse(validation_token)

    envelope = await read_envelope(request)
    if envelope is None:
        return _accepted()

    try:
        await pipeline.process_lifecycle(envelope)
    except Exception as e:
        logger.error(f"Lifecycle batch failed: {e}", exc_info=True)
    return _accepted()
