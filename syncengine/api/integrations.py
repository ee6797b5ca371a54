"""Integration management endpoints."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from syncengine.api.dependencies import require_sync_token
from syncengine.config import get_settings
from syncengine.models import Integration, ProviderKind, SyncDirection, WebhookState
from syncengine.sync import integrations
from syncengine.sync.errors import ConfigurationError, SyncError
from syncengine.sync.webhooks import register_channel, renew_channel, stop_channel

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/integrations", tags=["integrations"], dependencies=[Depends(require_sync_token)])


class CreateIntegrationRequest(BaseModel):
    provider: str
    provider_kind: ProviderKind
    auth_ref: str
    external_calendar_id: str
    display_name: Optional[str] = None
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    register_webhook: bool = True


class IntegrationResponse(BaseModel):
    id: str
    provider: str
    provider_kind: ProviderKind
    external_calendar_id: str
    display_name: Optional[str] = None
    sync_direction: SyncDirection
    is_active: bool
    cursor: Optional[str] = None
    webhook_state: WebhookState
    channel_expiry: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None


def _to_response(integration: Integration) -> IntegrationResponse:
    margin_hours = get_settings().webhook_renew_margin_hours

    return IntegrationResponse(
        id=integration.id,
        provider=integration.provider,
        provider_kind=integration.provider_kind,
        external_calendar_id=integration.external_calendar_id,
        display_name=integration.display_name,
        sync_direction=integration.sync_direction,
        is_active=integration.is_active,
        cursor=integration.cursor,
        webhook_state=integration.webhook_state(renew_margin=timedelta(hours=margin_hours)),
        channel_expiry=integration.channel.expiry if integration.channel else None,
        last_sync_at=integration.last_sync_at,
        last_error=integration.last_error,
    )


async def _get_or_404(integration_id: str) -> Integration:
    integration = await integrations.get_integration(integration_id)
    if integration is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found")
    return integration


def _poll_scheduler():
    from syncengine.jobs.polling import PollingScheduler
    from syncengine.jobs.scheduler import get_scheduler

    scheduler = get_scheduler()
    return PollingScheduler(scheduler) if scheduler else None


@router.post("", response_model=IntegrationResponse, status_code=status.HTTP_201_CREATED)
async def create_integration(request: CreateIntegrationRequest):
    """Connect an external calendar."""
    try:
        integration = await integrations.create_integration(
            provider=request.provider,
            provider_kind=request.provider_kind,
            auth_ref=request.auth_ref,
            external_calendar_id=request.external_calendar_id,
            display_name=request.display_name,
            sync_direction=request.sync_direction,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if integration.provider_kind == ProviderKind.PUSH:
        if request.register_webhook and get_settings().enable_webhooks and integration.pull_enabled:
            try:
                integration = await register_channel(integration)
            except SyncError as e:
                # The renewal job keeps trying
                logger.warning(f"Could not register webhook for {integration.id}: {e}")
    else:
        poller = _poll_scheduler()
        if poller and integration.pull_enabled:
            poller.schedule(integration.id)

    return _to_response(integration)


@router.get("", response_model=list[IntegrationResponse])
async def list_all_integrations(include_inactive: bool = False):
    return [_to_response(i) for i in await integrations.list_integrations(active_only=not include_inactive)]


@router.get("/{integration_id}", response_model=IntegrationResponse)
async def get_integration(integration_id: str):
    return _to_response(await _get_or_404(integration_id))


@router.delete("/{integration_id}")
async def delete_integration(integration_id: str):
    """Disconnect an external calendar. Its ledger rows and queue items are removed."""
    integration = await _get_or_404(integration_id)

    await stop_channel(integration)
    poller = _poll_scheduler()
    if poller:
        poller.unschedule(integration_id)

    await integrations.delete_integration(integration_id)
    return {"status": "ok", "message": "Integration removed"}


@router.post("/{integration_id}/webhook", response_model=IntegrationResponse)
async def register_integration_webhook(integration_id: str):
    """Open a push channel (or replace the current one)."""
    integration = await _get_or_404(integration_id)
    try:
        integration = await register_channel(integration)
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SyncError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return _to_response(integration)


@router.post("/{integration_id}/webhook/renew", response_model=IntegrationResponse)
async def renew_integration_webhook(integration_id: str):
    integration = await _get_or_404(integration_id)
    try:
        integration = await renew_channel(integration)
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SyncError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return _to_response(integration)


@router.delete("/{integration_id}/webhook")
async def stop_integration_webhook(integration_id: str):
    integration = await _get_or_404(integration_id)
    await stop_channel(integration)
    return {"status": "ok", "message": "Webhook stopped"}
