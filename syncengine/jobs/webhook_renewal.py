"""Webhook channel renewal job."""

import logging
from datetime import datetime, timedelta

from syncengine.config import get_settings
from syncengine.models import ProviderKind, WebhookState
from syncengine.sync import integrations
from syncengine.sync.webhooks import register_channel, renew_channel

logger = logging.getLogger(__name__)


async def renew_expiring_webhooks() -> dict:
    """Renew channels inside the renewal margin and reopen missing ones."""
    settings = get_settings()
    margin = timedelta(hours=settings.webhook_renew_margin_hours)
    now = datetime.utcnow()
    summary = {"renewed": 0, "registered": 0, "failed": 0}

    for integration in await integrations.list_integrations(active_only=True, provider_kind=ProviderKind.PUSH):
        if not integration.pull_enabled:
            continue

        state = integration.webhook_state(now, margin)
        if state == WebhookState.ACTIVE:
            continue

        try:
            if state == WebhookState.UNREGISTERED:
                await register_channel(integration)
                summary["registered"] += 1
            else:
                await renew_channel(integration)
                summary["renewed"] += 1
        except Exception as e:
            summary["failed"] += 1
            logger.error(f"Failed to renew webhook for integration {integration.id}: {e}")

            from syncengine.alerts.email import queue_alert
            await queue_alert(
                alert_type="webhook_registration_failed",
                details=f"Failed to renew webhook: {e}",
                integration_id=integration.id,
            )

    if any(summary.values()):
        logger.info(f"Webhook renewal: {summary}")
    return summary
