"""Per-(event, integration) sync ledger.

Every write is keyed by the composite key and expressed as an upsert, so a
redelivered queue item replaying the same update leaves the same end state.
"""

import json
import logging
from datetime import datetime
from typing import Optional

from syncengine.database import get_database, transaction
from syncengine.models import SyncRecord, SyncStatus

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class EventSyncLedger:
    """Persisted sync state, one row per (event, integration)."""

    async def get(self, event_id: str, integration_id: str) -> Optional[SyncRecord]:
        db = await get_database()
        cursor = await db.execute(
            "SELECT * FROM sync_records WHERE event_id = ? AND integration_id = ?",
            (event_id, integration_id)
        )
        row = await cursor.fetchone()
        return SyncRecord.from_row(row) if row else None

    async def find_by_external_id(self, integration_id: str, external_id: str) -> Optional[SyncRecord]:
        db = await get_database()
        cursor = await db.execute(
            "SELECT * FROM sync_records WHERE integration_id = ? AND external_id = ?",
            (integration_id, external_id)
        )
        row = await cursor.fetchone()
        return SyncRecord.from_row(row) if row else None

    async def list_records(
        self,
        integration_id: Optional[str] = None,
        status: Optional[SyncStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SyncRecord]:
        query = "SELECT * FROM sync_records WHERE 1 = 1"
        params: list = []
        if integration_id:
            query += " AND integration_id = ?"
            params.append(integration_id)
        if status:
            query += " AND status = ?"
            params.append(SyncStatus(status).value)
        query += " ORDER BY updated_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        db = await get_database()
        cursor = await db.execute(query, params)
        rows = await cursor.fetchall()
        return [SyncRecord.from_row(row) for row in rows]

    async def upsert(self, record: SyncRecord) -> None:
        """Insert or fully replace the row for the record's key."""
        now = datetime.utcnow().isoformat()
        snapshot = json.dumps(record.conflict_snapshot) if record.conflict_snapshot is not None else None

        async with transaction() as db:
            await db.execute(
                """INSERT INTO sync_records
                   (event_id, integration_id, external_id, status, local_version,
                    remote_version, last_synced_at, last_error, retry_count,
                    conflict_snapshot, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(event_id, integration_id) DO UPDATE SET
                   external_id = excluded.external_id,
                   status = excluded.status,
                   local_version = excluded.local_version,
                   remote_version = excluded.remote_version,
                   last_synced_at = excluded.last_synced_at,
                   last_error = excluded.last_error,
                   retry_count = excluded.retry_count,
                   conflict_snapshot = excluded.conflict_snapshot,
                   updated_at = excluded.updated_at""",
                (
                    record.event_id,
                    record.integration_id,
                    record.external_id,
                    SyncStatus(record.status).value,
                    _iso(record.local_version),
                    _iso(record.remote_version),
                    _iso(record.last_synced_at),
                    record.last_error,
                    record.retry_count,
                    snapshot,
                    now,
                )
            )

    async def mark_synced(
        self,
        event_id: str,
        integration_id: str,
        external_id: Optional[str],
        remote_version: Optional[datetime],
        local_version: Optional[datetime] = None,
    ) -> None:
        """
        Record convergence. Any earlier conflict snapshot is kept for audit;
        retry bookkeeping is cleared.
        """
        now = datetime.utcnow().isoformat()

        async with transaction() as db:
            await db.execute(
                """INSERT INTO sync_records
                   (event_id, integration_id, external_id, status, local_version,
                    remote_version, last_synced_at, last_error, retry_count, updated_at)
                   VALUES (?, ?, ?, 'synced', ?, ?, ?, NULL, 0, ?)
                   ON CONFLICT(event_id, integration_id) DO UPDATE SET
                   external_id = COALESCE(excluded.external_id, sync_records.external_id),
                   status = 'synced',
                   local_version = COALESCE(excluded.local_version, sync_records.local_version),
                   remote_version = COALESCE(excluded.remote_version, sync_records.remote_version),
                   last_synced_at = excluded.last_synced_at,
                   last_error = NULL,
                   retry_count = 0,
                   updated_at = excluded.updated_at""",
                (
                    event_id,
                    integration_id,
                    external_id,
                    _iso(local_version),
                    _iso(remote_version),
                    now,
                    now,
                )
            )

    async def mark_conflict(
        self,
        event_id: str,
        integration_id: str,
        conflict_snapshot: dict,
        remote_version: Optional[datetime] = None,
        local_version: Optional[datetime] = None,
        external_id: Optional[str] = None,
    ) -> None:
        """Store the losing side's snapshot and flag the pair as conflicted."""
        now = datetime.utcnow().isoformat()

        async with transaction() as db:
            await db.execute(
                """INSERT INTO sync_records
                   (event_id, integration_id, external_id, status, local_version,
                    remote_version, conflict_snapshot, updated_at)
                   VALUES (?, ?, ?, 'conflict', ?, ?, ?, ?)
                   ON CONFLICT(event_id, integration_id) DO UPDATE SET
                   external_id = COALESCE(excluded.external_id, sync_records.external_id),
                   status = 'conflict',
                   local_version = COALESCE(excluded.local_version, sync_records.local_version),
                   remote_version = COALESCE(excluded.remote_version, sync_records.remote_version),
                   conflict_snapshot = excluded.conflict_snapshot,
                   updated_at = excluded.updated_at""",
                (
                    event_id,
                    integration_id,
                    external_id,
                    _iso(local_version),
                    _iso(remote_version),
                    json.dumps(conflict_snapshot, default=str),
                    now,
                )
            )

    async def mark_pending(
        self,
        event_id: str,
        integration_id: str,
        error: Optional[str] = None,
        retry_count: Optional[int] = None,
    ) -> None:
        """Record a failed attempt that will be retried."""
        await self._mark_unsynced(event_id, integration_id, SyncStatus.PENDING, error, retry_count)

    async def mark_failed(
        self,
        event_id: str,
        integration_id: str,
        error: Optional[str] = None,
        retry_count: Optional[int] = None,
    ) -> None:
        """Record a permanent failure."""
        await self._mark_unsynced(event_id, integration_id, SyncStatus.FAILED, error, retry_count)

    async def _mark_unsynced(
        self,
        event_id: str,
        integration_id: str,
        status: SyncStatus,
        error: Optional[str],
        retry_count: Optional[int],
    ) -> None:
        now = datetime.utcnow().isoformat()

        # Conflict state wins over pending so the audit flag is not lost.
        async with transaction() as db:
            await db.execute(
                """INSERT INTO sync_records
                   (event_id, integration_id, status, last_error, retry_count, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(event_id, integration_id) DO UPDATE SET
                   status = CASE
                       WHEN excluded.status = 'pending' AND sync_records.status = 'conflict'
                       THEN 'conflict' ELSE excluded.status END,
                   last_error = excluded.last_error,
                   retry_count = COALESCE(?, sync_records.retry_count),
                   updated_at = excluded.updated_at""",
                (
                    event_id,
                    integration_id,
                    status.value,
                    error,
                    retry_count or 0,
                    now,
                    retry_count,
                )
            )

    async def delete(self, event_id: str, integration_id: str) -> None:
        async with transaction() as db:
            await db.execute(
                "DELETE FROM sync_records WHERE event_id = ? AND integration_id = ?",
                (event_id, integration_id)
            )

    async def delete_for_event(self, event_id: str) -> int:
        """Drop every ledger row of an event (all integrations)."""
        async with transaction() as db:
            cursor = await db.execute(
                "DELETE FROM sync_records WHERE event_id = ? RETURNING event_id",
                (event_id,)
            )
            deleted = await cursor.fetchall()
        return len(deleted)
