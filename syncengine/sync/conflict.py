"""Conflict resolution between a local event and a fetched remote version."""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from syncengine.models import CanonicalEvent, RemoteEvent, SyncRecord

logger = logging.getLogger(__name__)


class Winner(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    SKIP = "skip"


class Resolution(BaseModel):
    """What to do with one fetched remote event."""

    winner: Winner
    conflict: bool = False
    # Full copy of the losing side, stored on the ledger when conflict is set
    loser_snapshot: Optional[dict] = None
    reason: str = ""


class ConflictResolver:
    """
    Whichever side changed since the last sync wins. When both did, last
    write wins by timestamp, ties to the local side.

    Timestamps come from different clocks (ours and the provider's), so skew
    between them can flip the outcome of near-simultaneous edits. Losing
    versions are kept in the ledger's conflict snapshot rather than merged.
    """

    def resolve(
        self,
        local: Optional[CanonicalEvent],
        record: Optional[SyncRecord],
        remote: RemoteEvent,
    ) -> Resolution:
        # Echo of our own push, or an older version delivered late
        if record and record.remote_version and remote.remote_version <= record.remote_version:
            return Resolution(
                winner=Winner.SKIP,
                reason=f"remote version {remote.remote_version.isoformat()} already seen",
            )

        if local is None:
            if remote.deleted:
                return Resolution(winner=Winner.SKIP, reason="remote deletion of unknown event")
            return Resolution(winner=Winner.REMOTE, reason="new remote event")

        local_changed = (
            record is None
            or record.local_version is None
            or local.local_version > record.local_version
        )
        conflict = local_changed

        if local.is_deleted:
            if remote.deleted:
                return Resolution(winner=Winner.SKIP, reason="deleted on both sides")
            return Resolution(
                winner=Winner.LOCAL,
                conflict=conflict,
                loser_snapshot=remote.snapshot() if conflict else None,
                reason="local deletion is kept",
            )

        if not local_changed:
            # Only the remote side moved since the last sync
            return Resolution(winner=Winner.REMOTE, reason="local unchanged since last sync")

        if remote.remote_version > local.local_version:
            resolution = Resolution(
                winner=Winner.REMOTE,
                conflict=True,
                loser_snapshot=local.snapshot(),
                reason="remote version is newer",
            )
        else:
            resolution = Resolution(
                winner=Winner.LOCAL,
                conflict=True,
                loser_snapshot=remote.snapshot(),
                reason="local version is newer or equal",
            )

        logger.info(
            f"Conflict on event {local.id} ({remote.external_id}): "
            f"{resolution.winner.value} wins, {resolution.reason}"
        )
        return resolution
