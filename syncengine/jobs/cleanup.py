"""Retention cleanup job."""

import logging
from datetime import datetime, timedelta

from syncengine.config import get_settings
from syncengine.database import record_sync_log, transaction
from syncengine.sync.queue import SyncQueue

logger = logging.getLogger(__name__)


async def run_retention_cleanup() -> dict:
    """
    Run retention cleanup.

    - Completed and failed queue items: ``queue_retention_days``
    - Sync log entries: ``audit_log_retention_days``
    """
    settings = get_settings()
    now = datetime.utcnow()

    summary = {
        "terminal_queue_items": await SyncQueue().cleanup_terminal(settings.queue_retention_days, now=now),
        "old_sync_logs": 0,
    }

    log_cutoff = (now - timedelta(days=settings.audit_log_retention_days)).isoformat()
    async with transaction() as db:
        cursor = await db.execute(
            "DELETE FROM sync_log WHERE created_at < ? RETURNING id",
            (log_cutoff,)
        )
        summary["old_sync_logs"] = len(await cursor.fetchall())

    logger.info(f"Retention cleanup completed: {summary}")
    await record_sync_log("retention_cleanup", "success", summary)
    return summary
