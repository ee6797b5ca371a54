"""Push notification ingestion and channel lifecycle.

A notification only tells us that something changed; it carries no event data.
Ingestion validates the channel and queues an incremental pull. It never calls
the provider, so it stays fast enough for the provider's delivery timeout.
"""

import hmac
import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from syncengine.auth import get_credential_provider
from syncengine.config import get_settings
from syncengine.database import record_sync_log
from syncengine.models import Integration, QueueItem, QueueOperation, WebhookState
from syncengine.sync import integrations
from syncengine.sync.adapters import PushCapableAdapter, build_adapter
from syncengine.sync.errors import ConfigurationError
from syncengine.sync.queue import SyncQueue

logger = logging.getLogger(__name__)

CHANGE_STATES = {"exists", "not_exists", "not-exists"}


class NotificationOutcome(BaseModel):
    """Result of one webhook delivery, with the HTTP status to answer."""

    status_code: int
    message: str
    integration_id: Optional[str] = None
    queue_item_id: Optional[int] = None


def webhook_callback_url() -> str:
    return f"{get_settings().public_url.rstrip('/')}/api/webhooks/google-calendar"


def _renew_margin() -> timedelta:
    return timedelta(hours=get_settings().webhook_renew_margin_hours)


async def ingest_notification(
    channel_id: Optional[str],
    channel_token: Optional[str],
    resource_id: Optional[str],
    resource_state: Optional[str],
    queue: Optional[SyncQueue] = None,
    now: Optional[datetime] = None,
) -> NotificationOutcome:
    """Validate a push notification and queue a pull for its integration."""
    if not channel_id:
        return NotificationOutcome(status_code=400, message="Missing channel ID")

    # Handshake sent when the channel is first opened
    if resource_state == "sync":
        logger.info(f"Sync message for channel {channel_id}")
        return NotificationOutcome(status_code=200, message="Channel verified")

    integration = await integrations.get_integration_by_channel(channel_id)
    if integration is None or not integration.is_active or integration.channel is None:
        logger.warning(f"Unknown webhook channel: {channel_id}")
        return NotificationOutcome(status_code=404, message="Unknown channel")

    channel = integration.channel
    if channel.token and not hmac.compare_digest(channel.token, channel_token or ""):
        logger.warning(f"Webhook token mismatch for channel {channel_id}")
        return NotificationOutcome(status_code=404, message="Unknown channel")

    if channel.resource_id and resource_id != channel.resource_id:
        logger.warning(
            f"Webhook resource mismatch for channel {channel_id}: "
            f"expected={channel.resource_id} got={resource_id}"
        )
        return NotificationOutcome(status_code=404, message="Resource mismatch")

    if channel.state(now, _renew_margin()) == WebhookState.EXPIRED:
        logger.warning(f"Notification on expired channel {channel_id}")
        return NotificationOutcome(status_code=410, message="Channel expired", integration_id=integration.id)

    if resource_state not in CHANGE_STATES:
        logger.info(f"Ignoring resource state {resource_state} on channel {channel_id}")
        return NotificationOutcome(status_code=200, message="Ignored", integration_id=integration.id)

    if not integration.pull_enabled:
        return NotificationOutcome(status_code=200, message="Pull disabled", integration_id=integration.id)

    item = await enqueue_pull(integration, trigger="webhook", queue=queue, now=now)
    return NotificationOutcome(
        status_code=200,
        message="Pull queued",
        integration_id=integration.id,
        queue_item_id=item.id,
    )


async def enqueue_pull(
    integration: Integration,
    trigger: str,
    queue: Optional[SyncQueue] = None,
    now: Optional[datetime] = None,
) -> QueueItem:
    """Queue an incremental pull. Webhooks and polling both land here."""
    queue = queue or SyncQueue()
    return await queue.enqueue(
        QueueItem(
            operation=QueueOperation.PULL_INCREMENTAL,
            integration_id=integration.id,
            payload={"cursor": integration.cursor, "trigger": trigger},
        ),
        now=now,
    )


def _push_adapter(integration: Integration, adapter=None) -> PushCapableAdapter:
    adapter = adapter or build_adapter(integration, get_credential_provider())
    if not isinstance(adapter, PushCapableAdapter):
        raise ConfigurationError(f"Provider {integration.provider} does not support webhooks")
    return adapter


async def register_channel(integration: Integration, adapter=None) -> Integration:
    """Open a push channel for an integration and store it."""
    adapter = _push_adapter(integration, adapter)
    if integration.channel is not None:
        return await renew_channel(integration, adapter)

    channel = await adapter.register_webhook(webhook_callback_url())
    await integrations.save_channel(integration.id, channel)
    await record_sync_log(
        "webhook_registered", "success",
        {"channel_id": channel.channel_id, "expiry": channel.expiry},
        integration_id=integration.id,
    )
    return integration.model_copy(update={"channel": channel})


async def renew_channel(integration: Integration, adapter=None) -> Integration:
    """Replace the integration's channel with a fresh one."""
    adapter = _push_adapter(integration, adapter)
    if integration.channel is None:
        return await register_channel(integration, adapter)

    old_channel_id = integration.channel.channel_id
    channel = await adapter.renew_webhook(integration.channel, webhook_callback_url())
    await integrations.save_channel(integration.id, channel)
    await record_sync_log(
        "webhook_renewed", "success",
        {"old_channel_id": old_channel_id, "channel_id": channel.channel_id, "expiry": channel.expiry},
        integration_id=integration.id,
    )
    logger.info(f"Renewed webhook for integration {integration.id}")
    return integration.model_copy(update={"channel": channel})


async def stop_channel(integration: Integration, adapter=None) -> None:
    """
    Close the integration's channel. The stored channel is cleared even if the
    provider call fails; an orphaned channel expires on its own and its
    notifications no longer match anything.
    """
    if integration.channel is None:
        return

    try:
        adapter = _push_adapter(integration, adapter)
        await adapter.stop_webhook(integration.channel)
    except Exception as e:
        logger.warning(f"Failed to stop channel {integration.channel.channel_id}: {e}")

    await integrations.clear_channel(integration.id)
