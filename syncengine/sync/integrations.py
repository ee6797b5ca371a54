"""Integration repository: configuration, cursor and push channel state."""

import logging
import uuid
from datetime import datetime
from typing import Optional

from syncengine.database import get_database, transaction
from syncengine.models import ChannelMetadata, Integration, ProviderKind, SyncDirection
from syncengine.sync.adapters import get_adapter_class
from syncengine.sync.errors import ConfigurationError

logger = logging.getLogger(__name__)


async def create_integration(
    provider: str,
    provider_kind: ProviderKind,
    auth_ref: str,
    external_calendar_id: str,
    display_name: Optional[str] = None,
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
    integration_id: Optional[str] = None,
) -> Integration:
    """
    Register an external calendar.

    A push integration needs an adapter that can open webhook channels;
    asking for one on a poll-only provider is rejected here so nothing later
    reaches for a webhook method the adapter does not have.
    """
    provider_kind = ProviderKind(provider_kind)
    adapter_class = get_adapter_class(provider)
    if provider_kind == ProviderKind.PUSH and not adapter_class.push_capable:
        raise ConfigurationError(f"Provider {provider} cannot deliver push notifications")

    integration = Integration(
        id=integration_id or str(uuid.uuid4()),
        provider=provider,
        provider_kind=provider_kind,
        auth_ref=auth_ref,
        external_calendar_id=external_calendar_id,
        display_name=display_name,
        sync_direction=SyncDirection(sync_direction),
    )

    async with transaction() as db:
        await db.execute(
            """INSERT INTO integrations
               (id, provider, provider_kind, auth_ref, external_calendar_id,
                display_name, sync_direction)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                integration.id,
                integration.provider,
                integration.provider_kind.value,
                integration.auth_ref,
                integration.external_calendar_id,
                integration.display_name,
                integration.sync_direction.value,
            )
        )

    logger.info(f"Created {provider} integration {integration.id} ({provider_kind.value})")
    return integration


async def get_integration(integration_id: str) -> Optional[Integration]:
    db = await get_database()
    cursor = await db.execute("SELECT * FROM integrations WHERE id = ?", (integration_id,))
    row = await cursor.fetchone()
    return Integration.from_row(row) if row else None


async def get_integration_by_channel(channel_id: str) -> Optional[Integration]:
    db = await get_database()
    cursor = await db.execute("SELECT * FROM integrations WHERE channel_id = ?", (channel_id,))
    row = await cursor.fetchone()
    return Integration.from_row(row) if row else None


async def list_integrations(active_only: bool = True, provider_kind: Optional[ProviderKind] = None) -> list[Integration]:
    query = "SELECT * FROM integrations WHERE 1 = 1"
    params: list = []
    if active_only:
        query += " AND is_active = TRUE"
    if provider_kind:
        query += " AND provider_kind = ?"
        params.append(ProviderKind(provider_kind).value)
    query += " ORDER BY created_at, id"

    db = await get_database()
    cursor = await db.execute(query, params)
    rows = await cursor.fetchall()
    return [Integration.from_row(row) for row in rows]


async def update_cursor(integration_id: str, cursor: Optional[str]) -> None:
    """Persist the incremental cursor and mark the integration as synced."""
    now = datetime.utcnow().isoformat()

    async with transaction() as db:
        await db.execute(
            """UPDATE integrations
               SET cursor = ?, last_sync_at = ?, last_error = NULL
               WHERE id = ?""",
            (cursor, now, integration_id)
        )


async def record_sync_error(integration_id: str, error: str) -> None:
    async with transaction() as db:
        await db.execute(
            "UPDATE integrations SET last_error = ? WHERE id = ?",
            (error, integration_id)
        )


async def set_active(integration_id: str, is_active: bool) -> None:
    async with transaction() as db:
        await db.execute(
            "UPDATE integrations SET is_active = ? WHERE id = ?",
            (is_active, integration_id)
        )


async def save_channel(integration_id: str, channel: ChannelMetadata) -> None:
    async with transaction() as db:
        await db.execute(
            """UPDATE integrations
               SET channel_id = ?, channel_resource_id = ?, channel_token = ?, channel_expiry = ?
               WHERE id = ?""",
            (
                channel.channel_id,
                channel.resource_id,
                channel.token,
                channel.expiry.isoformat(),
                integration_id,
            )
        )


async def clear_channel(integration_id: str) -> None:
    async with transaction() as db:
        await db.execute(
            """UPDATE integrations
               SET channel_id = NULL, channel_resource_id = NULL,
                   channel_token = NULL, channel_expiry = NULL
               WHERE id = ?""",
            (integration_id,)
        )


async def delete_integration(integration_id: str) -> bool:
    """
    Remove an integration. Its ledger rows and queue items go with it.

    Stopping the push channel is the caller's job; see
    ``syncengine.sync.webhooks.stop_channel``.
    """
    async with transaction() as db:
        cursor = await db.execute(
            "DELETE FROM integrations WHERE id = ? RETURNING id",
            (integration_id,)
        )
        deleted = await cursor.fetchone()

    if deleted:
        logger.info(f"Deleted integration {integration_id}")
    return deleted is not None
