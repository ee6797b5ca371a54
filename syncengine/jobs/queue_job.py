"""Periodic queue processing job."""

import logging
from datetime import timedelta

from syncengine.config import get_settings
from syncengine.database import is_sync_paused
from syncengine.jobs.locks import acquire_job_lock, release_job_lock

logger = logging.getLogger(__name__)


async def release_abandoned_claims() -> int:
    """Return items claimed by a worker that died mid-item to pending."""
    from syncengine.sync.engine import get_orchestrator

    timeout = timedelta(minutes=get_settings().queue_claim_timeout_minutes)
    return await get_orchestrator().queue.release_stale_claims(timeout)


async def run_queue_processing() -> None:
    """Drain ready queue items in batches until none are left."""
    if await is_sync_paused():
        logger.debug("Sync is paused, skipping queue processing")
        return

    if not await acquire_job_lock("queue_processing"):
        logger.debug("Queue processing already running, skipping")
        return

    try:
        from syncengine.sync.engine import get_orchestrator

        settings = get_settings()
        orchestrator = get_orchestrator()

        await release_abandoned_claims()

        total = 0
        while True:
            result = await orchestrator.process_queue_batch(limit=settings.queue_batch_size)
            total += result["processed"]
            if result["processed"] < settings.queue_batch_size:
                break

        if total:
            logger.info(f"Queue processing completed: {total} item(s)")

    finally:
        await release_job_lock("queue_processing")
