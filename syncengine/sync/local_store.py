"""Local canonical event store.

The event CRUD layer owns this table. The sync engine reads events from it and
applies winning remote versions to it; it never edits fields on its own
initiative other than ``local_version`` and ``deleted_at``.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from syncengine.database import get_database, transaction
from syncengine.models import CanonicalEvent, RemoteEvent

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class LocalEventStore:
    """SQLite-backed canonical event store."""

    async def get_event(self, event_id: str) -> Optional[CanonicalEvent]:
        db = await get_database()
        cursor = await db.execute("SELECT * FROM events WHERE id = ?", (event_id,))
        row = await cursor.fetchone()
        return CanonicalEvent.from_row(row) if row else None

    async def save_event(self, event: CanonicalEvent) -> CanonicalEvent:
        """Insert or replace an event exactly as given."""
        async with transaction() as db:
            await db.execute(
                """INSERT INTO events
                   (id, title, description, location, start_time, end_time,
                    is_all_day, is_multi_day, recurrence_rule, local_version, deleted_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                   title = excluded.title,
                   description = excluded.description,
                   location = excluded.location,
                   start_time = excluded.start_time,
                   end_time = excluded.end_time,
                   is_all_day = excluded.is_all_day,
                   is_multi_day = excluded.is_multi_day,
                   recurrence_rule = excluded.recurrence_rule,
                   local_version = excluded.local_version,
                   deleted_at = excluded.deleted_at""",
                (
                    event.id,
                    event.title,
                    event.description,
                    event.location,
                    _iso(event.start),
                    _iso(event.end),
                    event.is_all_day,
                    event.is_multi_day,
                    event.recurrence_rule,
                    _iso(event.local_version),
                    _iso(event.deleted_at),
                )
            )
        return event

    async def apply_external_event(
        self,
        remote: RemoteEvent,
        event_id: Optional[str] = None,
        merged_at: Optional[datetime] = None,
    ) -> CanonicalEvent:
        """
        Overwrite (or create) the local event with a winning remote version.

        ``local_version`` is set to the merge time so later local edits compare
        as newer than this merge.
        """
        merged_at = merged_at or datetime.utcnow()
        existing = await self.get_event(event_id) if event_id else None

        start = remote.start or (existing.start if existing else merged_at)
        end = remote.end or (existing.end if existing else start)

        event = CanonicalEvent(
            id=event_id or str(uuid.uuid4()),
            title=remote.title,
            description=remote.description,
            location=remote.location,
            start=start,
            end=end,
            is_all_day=remote.is_all_day,
            is_multi_day=remote.is_multi_day,
            recurrence_rule=remote.recurrence_rule,
            local_version=merged_at,
            deleted_at=None,
        )
        await self.save_event(event)
        logger.debug(f"Applied remote {remote.external_id} to local event {event.id}")
        return event

    async def tombstone(self, event_id: str, deleted_at: Optional[datetime] = None) -> Optional[CanonicalEvent]:
        """Soft-delete an event and bump its version."""
        deleted_at = deleted_at or datetime.utcnow()

        async with transaction() as db:
            await db.execute(
                """UPDATE events SET deleted_at = ?, local_version = ?
                   WHERE id = ? AND deleted_at IS NULL""",
                (deleted_at.isoformat(), deleted_at.isoformat(), event_id)
            )
        return await self.get_event(event_id)

    async def purge(self, event_id: str) -> None:
        """Hard-delete an event together with its ledger rows."""
        async with transaction() as db:
            await db.execute("DELETE FROM sync_records WHERE event_id = ?", (event_id,))
            await db.execute("DELETE FROM events WHERE id = ?", (event_id,))
