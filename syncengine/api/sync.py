"""Sync control endpoints used by schedulers, operators and the CRUD layer."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from syncengine.api.dependencies import require_sync_token
from syncengine.config import get_settings
from syncengine.database import is_sync_paused, set_setting
from syncengine.models import ChangeKind, QueueStatus, SyncRecord, SyncStatus
from syncengine.sync import integrations
from syncengine.sync.engine import get_orchestrator
from syncengine.sync.errors import SyncError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[Depends(require_sync_token)])


class PullResponse(BaseModel):
    """Result of one incremental pull."""
    pulled: int
    applied: int
    conflicts: int
    skipped: int
    kept_local: int = 0
    cursor: Optional[str] = None


class QueueOutcome(BaseModel):
    id: int
    operation: str
    integration_id: str
    event_id: Optional[str] = None
    status: str


class QueueProcessResponse(BaseModel):
    processed: int
    paused: bool = False
    outcomes: list[QueueOutcome]
    stats: dict


class RequeueResponse(BaseModel):
    id: int
    status: QueueStatus
    retry_count: int


class EventChangedRequest(BaseModel):
    change_kind: ChangeKind


class EventChangedResponse(BaseModel):
    event_id: str
    outcomes: dict[str, str]


class SyncRecordsResponse(BaseModel):
    records: list[SyncRecord]
    limit: int
    offset: int


@router.post("/pull/{integration_id}", response_model=PullResponse)
async def trigger_pull(integration_id: str):
    """Pull an integration's remote changes now."""
    if await integrations.get_integration(integration_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found")

    try:
        summary = await get_orchestrator().run_pull(integration_id)
    except SyncError as e:
        logger.warning(f"Pull for {integration_id} failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return PullResponse(**summary)


@router.post("/queue/process", response_model=QueueProcessResponse)
async def process_queue(
    limit: Optional[int] = Query(None, ge=1, le=500),
    integration_id: Optional[str] = None,
):
    """Process one batch of ready queue items."""
    limit = limit or get_settings().queue_batch_size
    return await get_orchestrator().process_queue_batch(limit=limit, integration_id=integration_id)


@router.get("/queue/stats")
async def queue_stats():
    """Queue counts per status."""
    stats = await get_orchestrator().queue.stats()
    stats["sync_paused"] = await is_sync_paused()
    return stats


@router.post("/queue/{item_id}/requeue", response_model=RequeueResponse)
async def requeue_item(item_id: int):
    """Give a failed queue item a fresh set of retries."""
    item = await get_orchestrator().requeue(item_id)
    if item is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No failed queue item with that id",
        )
    return RequeueResponse(id=item.id, status=item.status, retry_count=item.retry_count)


@router.get("/records", response_model=SyncRecordsResponse)
async def list_sync_records(
    integration_id: Optional[str] = None,
    status_filter: Optional[SyncStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Ledger view, newest first."""
    records = await get_orchestrator().ledger.list_records(
        integration_id=integration_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return SyncRecordsResponse(records=records, limit=limit, offset=offset)


@router.post("/events/{event_id}/changed", response_model=EventChangedResponse)
async def event_changed(event_id: str, request: EventChangedRequest):
    """Change notification from an out-of-process event CRUD layer."""
    orchestrator = get_orchestrator()
    event = await orchestrator.store.get_event(event_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")

    outcomes = await orchestrator.on_local_event_changed(event, request.change_kind)
    return EventChangedResponse(event_id=event_id, outcomes=outcomes)


@router.post("/pause")
async def pause_sync():
    """Pause queue processing and polling. Writes keep being queued."""
    await set_setting("sync_paused", "true")
    logger.info("Sync paused")
    return {"sync_paused": True}


@router.post("/resume")
async def resume_sync():
    await set_setting("sync_paused", "false")
    logger.info("Sync resumed")
    return {"sync_paused": False}
