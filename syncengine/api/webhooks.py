"""Webhook receiver for Google Calendar push notifications."""

import logging

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from syncengine.api.dependencies import limiter, webhook_rate_limit
from syncengine.config import get_settings
from syncengine.sync.webhooks import ingest_notification
from syncengine.utils.tasks import create_background_task

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/google-calendar")
@limiter.limit(webhook_rate_limit)
async def receive_google_calendar_webhook(
    request: Request,
    x_goog_channel_id: str = Header(None, alias="X-Goog-Channel-ID"),
    x_goog_channel_token: str = Header(None, alias="X-Goog-Channel-Token"),
    x_goog_resource_id: str = Header(None, alias="X-Goog-Resource-ID"),
    x_goog_resource_state: str = Header(None, alias="X-Goog-Resource-State"),
    x_goog_message_number: str = Header(None, alias="X-Goog-Message-Number"),
):
    """
    Receive push notifications from Google Calendar.

    Google sends a POST with headers saying that something changed; the event
    data itself is fetched later by the queued pull.
    """
    logger.info(
        f"Webhook received: channel={x_goog_channel_id}, resource={x_goog_resource_id}, "
        f"state={x_goog_resource_state}, message={x_goog_message_number}"
    )

    outcome = await ingest_notification(
        channel_id=x_goog_channel_id,
        channel_token=x_goog_channel_token,
        resource_id=x_goog_resource_id,
        resource_state=x_goog_resource_state,
    )

    if outcome.queue_item_id is not None and get_settings().process_queue_on_webhook:
        from syncengine.sync.engine import get_orchestrator

        create_background_task(
            get_orchestrator().process_queue_batch(
                limit=get_settings().queue_batch_size,
                integration_id=outcome.integration_id,
            ),
            f"process_queue_{outcome.integration_id}",
        )

    return JSONResponse(
        status_code=outcome.status_code,
        content={"status": "ok" if outcome.status_code == 200 else "rejected", "message": outcome.message},
    )
