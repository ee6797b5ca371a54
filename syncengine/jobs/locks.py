"""Cross-process job locks stored in ``job_locks``."""

import logging
import os
import socket
from datetime import datetime, timedelta

import aiosqlite

from syncengine.database import transaction

logger = logging.getLogger(__name__)

_LOCK_OWNER = f"{socket.gethostname()}:{os.getpid()}"


async def acquire_job_lock(job_name: str, timeout_minutes: int = 30) -> bool:
    """
    Acquire a lock for a job.

    Returns True if acquired, False if the job is already running. Locks older
    than ``timeout_minutes`` belong to a crashed run and are taken over.
    """
    now = datetime.utcnow()
    cutoff = (now - timedelta(minutes=timeout_minutes)).isoformat()

    try:
        async with transaction() as db:
            await db.execute(
                "DELETE FROM job_locks WHERE job_name = ? AND locked_at < ?",
                (job_name, cutoff)
            )
            await db.execute(
                "INSERT INTO job_locks (job_name, locked_at, locked_by) VALUES (?, ?, ?)",
                (job_name, now.isoformat(), _LOCK_OWNER)
            )
    except aiosqlite.IntegrityError:
        return False
    return True


async def release_job_lock(job_name: str) -> None:
    async with transaction() as db:
        await db.execute("DELETE FROM job_locks WHERE job_name = ?", (job_name,))
