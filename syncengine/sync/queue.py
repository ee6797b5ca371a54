"""Durable retry queue for provider operations.

Pending push items are coalesced per (event, integration), and at most one
pending incremental pull exists per integration. Claiming is a conditional
update, so two workers can never both process the same item.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from syncengine.config import get_settings
from syncengine.database import get_database, transaction
from syncengine.models import QueueItem, QueueOperation, QueueStatus

logger = logging.getLogger(__name__)


def backoff_delay(retry_count: int, retry_after: Optional[float] = None) -> timedelta:
    """Exponential backoff in minutes, stretched to honour a provider hint."""
    delay = timedelta(minutes=2 ** retry_count)
    if retry_after is not None:
        delay = max(delay, timedelta(seconds=retry_after))
    return delay


def _merge_push_operation(existing: QueueOperation, new: QueueOperation) -> QueueOperation:
    if new == QueueOperation.PUSH_DELETE:
        return QueueOperation.PUSH_DELETE
    if existing == QueueOperation.PUSH_CREATE:
        # Not created remotely yet, so the create carries the newer payload.
        return QueueOperation.PUSH_CREATE
    if existing == QueueOperation.PUSH_DELETE and new == QueueOperation.PUSH_CREATE:
        return QueueOperation.PUSH_UPDATE
    return new


class SyncQueue:
    """SQLite-backed work queue."""

    def __init__(self, max_retries: Optional[int] = None):
        self.max_retries = max_retries if max_retries is not None else get_settings().queue_max_retries

    async def get(self, item_id: int) -> Optional[QueueItem]:
        db = await get_database()
        cursor = await db.execute("SELECT * FROM sync_queue WHERE id = ?", (item_id,))
        row = await cursor.fetchone()
        return QueueItem.from_row(row) if row else None

    async def enqueue(self, item: QueueItem, now: Optional[datetime] = None) -> QueueItem:
        """
        Add work to the queue, folding it into an existing pending item when
        one already covers the same target.
        """
        now = now or datetime.utcnow()
        operation = QueueOperation(item.operation)

        async with transaction() as db:
            existing = await self._find_pending(item.integration_id, operation, item.event_id)

            if existing is not None:
                if operation.is_push:
                    merged = _merge_push_operation(existing.operation, operation)
                    await db.execute(
                        """UPDATE sync_queue
                           SET operation = ?, payload = ?, updated_at = ?
                           WHERE id = ?""",
                        (merged.value, json.dumps(item.payload, default=str), now.isoformat(), existing.id)
                    )
                    logger.debug(
                        f"Coalesced {operation.value} for event {item.event_id} "
                        f"into queue item {existing.id} ({merged.value})"
                    )
                    existing.operation = merged
                    existing.payload = item.payload
                else:
                    logger.debug(f"Pull already pending for integration {item.integration_id}")
                return existing

            scheduled_for = item.scheduled_for or now
            max_retries = item.max_retries if item.max_retries is not None else self.max_retries
            cursor = await db.execute(
                """INSERT INTO sync_queue
                   (operation, event_id, integration_id, payload, status, retry_count,
                    max_retries, scheduled_for, created_at, updated_at)
                   VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, ?, ?)
                   RETURNING id""",
                (
                    operation.value,
                    item.event_id,
                    item.integration_id,
                    json.dumps(item.payload, default=str),
                    item.retry_count,
                    max_retries,
                    scheduled_for.isoformat(),
                    now.isoformat(),
                    now.isoformat(),
                )
            )
            row = await cursor.fetchone()

        logger.info(f"Enqueued {operation.value} for integration {item.integration_id} (item {row[0]})")
        return item.model_copy(update={
            "id": row[0],
            "operation": operation,
            "status": QueueStatus.PENDING,
            "max_retries": max_retries,
            "scheduled_for": scheduled_for,
            "created_at": now,
        })

    async def _find_pending(
        self,
        integration_id: str,
        operation: QueueOperation,
        event_id: Optional[str],
    ) -> Optional[QueueItem]:
        db = await get_database()
        if operation.is_push:
            cursor = await db.execute(
                """SELECT * FROM sync_queue
                   WHERE integration_id = ? AND event_id = ? AND status = 'pending'
                   AND operation != 'pull-incremental'
                   ORDER BY id LIMIT 1""",
                (integration_id, event_id)
            )
        else:
            cursor = await db.execute(
                """SELECT * FROM sync_queue
                   WHERE integration_id = ? AND operation = 'pull-incremental'
                   AND status = 'pending'
                   ORDER BY id LIMIT 1""",
                (integration_id,)
            )
        row = await cursor.fetchone()
        return QueueItem.from_row(row) if row else None

    async def has_pending_push(self, event_id: str, integration_id: str) -> bool:
        """Whether a push for the pair is waiting or being worked on."""
        db = await get_database()
        cursor = await db.execute(
            """SELECT 1 FROM sync_queue
               WHERE event_id = ? AND integration_id = ?
               AND status IN ('pending', 'processing')
               AND operation != 'pull-incremental'
               LIMIT 1""",
            (event_id, integration_id)
        )
        return await cursor.fetchone() is not None

    async def dequeue_ready(
        self,
        limit: int,
        integration_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[QueueItem]:
        """Pending items due by ``now``, oldest schedule first."""
        now = now or datetime.utcnow()
        query = """SELECT * FROM sync_queue
                   WHERE status = 'pending' AND scheduled_for <= ?"""
        params: list = [now.isoformat()]
        if integration_id:
            query += " AND integration_id = ?"
            params.append(integration_id)
        query += " ORDER BY scheduled_for, id LIMIT ?"
        params.append(limit)

        db = await get_database()
        cursor = await db.execute(query, params)
        rows = await cursor.fetchall()
        return [QueueItem.from_row(row) for row in rows]

    async def mark_processing(self, item: QueueItem, worker_id: str) -> bool:
        """Claim an item. Returns False if it is no longer pending."""
        now = datetime.utcnow().isoformat()

        async with transaction() as db:
            cursor = await db.execute(
                """UPDATE sync_queue
                   SET status = 'processing', claimed_by = ?, claimed_at = ?, updated_at = ?
                   WHERE id = ? AND status = 'pending'""",
                (worker_id, now, now, item.id)
            )
            claimed = cursor.rowcount == 1

        if claimed:
            item.status = QueueStatus.PROCESSING
            item.claimed_by = worker_id
        return claimed

    async def mark_completed(self, item: QueueItem) -> None:
        now = datetime.utcnow()

        async with transaction() as db:
            await db.execute(
                """UPDATE sync_queue
                   SET status = 'completed', processed_at = ?, updated_at = ?
                   WHERE id = ?""",
                (now.isoformat(), now.isoformat(), item.id)
            )
        item.status = QueueStatus.COMPLETED
        item.processed_at = now

    async def mark_retry(
        self,
        item: QueueItem,
        error: str,
        retry_after: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> QueueItem:
        """
        Record a failed attempt.

        The item is rescheduled with exponential backoff, or becomes terminally
        failed once it has been retried more than ``max_retries`` times.
        """
        now = now or datetime.utcnow()
        retry_count = item.retry_count + 1

        if retry_count > item.max_retries:
            item.retry_count = retry_count
            await self.mark_failed(item, error)
            return item

        scheduled_for = now + backoff_delay(retry_count, retry_after)

        async with transaction() as db:
            await db.execute(
                """UPDATE sync_queue
                   SET status = 'pending', retry_count = ?, scheduled_for = ?,
                       last_error = ?, claimed_by = NULL, claimed_at = NULL, updated_at = ?
                   WHERE id = ?""",
                (retry_count, scheduled_for.isoformat(), error, now.isoformat(), item.id)
            )

        logger.warning(
            f"Queue item {item.id} ({item.operation.value}) failed, "
            f"retry {retry_count}/{item.max_retries} at {scheduled_for.isoformat()}: {error}"
        )
        item.status = QueueStatus.PENDING
        item.retry_count = retry_count
        item.scheduled_for = scheduled_for
        item.last_error = error
        item.claimed_by = None
        return item

    async def mark_failed(self, item: QueueItem, error: str) -> None:
        """Terminal failure. The item is never picked up again on its own."""
        now = datetime.utcnow()

        async with transaction() as db:
            await db.execute(
                """UPDATE sync_queue
                   SET status = 'failed', retry_count = ?, last_error = ?,
                       processed_at = ?, updated_at = ?
                   WHERE id = ?""",
                (item.retry_count, error, now.isoformat(), now.isoformat(), item.id)
            )

        logger.error(f"Queue item {item.id} ({item.operation.value}) failed permanently: {error}")
        item.status = QueueStatus.FAILED
        item.last_error = error
        item.processed_at = now

    async def convert_pending_to_delete(self, event_id: str, payload: dict) -> int:
        """Turn every pending push for a deleted event into a push-delete."""
        now = datetime.utcnow().isoformat()

        async with transaction() as db:
            cursor = await db.execute(
                """UPDATE sync_queue
                   SET operation = 'push-delete', payload = ?, updated_at = ?
                   WHERE event_id = ? AND status = 'pending'
                   AND operation IN ('push-create', 'push-update')
                   RETURNING id""",
                (json.dumps(payload, default=str), now, event_id)
            )
            converted = await cursor.fetchall()

        if converted:
            logger.info(f"Converted {len(converted)} pending push(es) for event {event_id} to push-delete")
        return len(converted)

    async def supersede_pending_pushes(self, event_id: str, integration_id: str, reason: str) -> int:
        """Complete pending pushes whose payload a newer remote version replaced."""
        now = datetime.utcnow().isoformat()

        async with transaction() as db:
            cursor = await db.execute(
                """UPDATE sync_queue
                   SET status = 'completed', last_error = ?, processed_at = ?, updated_at = ?
                   WHERE event_id = ? AND integration_id = ? AND status = 'pending'
                   AND operation != 'pull-incremental'
                   RETURNING id""",
                (f"superseded: {reason}", now, now, event_id, integration_id)
            )
            superseded = await cursor.fetchall()
        return len(superseded)

    async def requeue(self, item_id: int) -> Optional[QueueItem]:
        """Give a failed item a fresh set of retries."""
        now = datetime.utcnow().isoformat()

        async with transaction() as db:
            cursor = await db.execute(
                """UPDATE sync_queue
                   SET status = 'pending', retry_count = 0, scheduled_for = ?,
                       claimed_by = NULL, claimed_at = NULL, processed_at = NULL, updated_at = ?
                   WHERE id = ? AND status = 'failed'""",
                (now, now, item_id)
            )
            if cursor.rowcount != 1:
                return None

        logger.info(f"Requeued failed queue item {item_id}")
        return await self.get(item_id)

    async def release_stale_claims(self, older_than: timedelta) -> int:
        """Return items stuck in processing (worker crashed) to pending."""
        now = datetime.utcnow()
        cutoff = (now - older_than).isoformat()

        async with transaction() as db:
            cursor = await db.execute(
                """UPDATE sync_queue
                   SET status = 'pending', claimed_by = NULL, claimed_at = NULL, updated_at = ?
                   WHERE status = 'processing' AND claimed_at < ?
                   RETURNING id""",
                (now.isoformat(), cutoff)
            )
            released = await cursor.fetchall()

        if released:
            logger.warning(f"Released {len(released)} stale queue claim(s)")
        return len(released)

    async def stats(self, now: Optional[datetime] = None) -> dict:
        """Counts per status and age of the oldest pending item."""
        now = now or datetime.utcnow()
        db = await get_database()

        counts = {status.value: 0 for status in QueueStatus}
        cursor = await db.execute("SELECT status, COUNT(*) AS n FROM sync_queue GROUP BY status")
        for row in await cursor.fetchall():
            counts[row["status"]] = row["n"]

        cursor = await db.execute(
            "SELECT MIN(created_at) AS oldest FROM sync_queue WHERE status = 'pending'"
        )
        row = await cursor.fetchone()
        oldest_age = None
        if row and row["oldest"]:
            oldest_age = (now - datetime.fromisoformat(row["oldest"])).total_seconds()

        counts["oldest_pending_age_seconds"] = oldest_age
        return counts

    async def cleanup_terminal(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete completed and failed items older than the retention window."""
        now = now or datetime.utcnow()
        cutoff = (now - timedelta(days=retention_days)).isoformat()

        async with transaction() as db:
            cursor = await db.execute(
                """DELETE FROM sync_queue
                   WHERE status IN ('completed', 'failed') AND updated_at < ?
                   RETURNING id""",
                (cutoff,)
            )
            deleted = await cursor.fetchall()

        if deleted:
            logger.info(f"Cleaned up {len(deleted)} terminal queue items")
        return len(deleted)
