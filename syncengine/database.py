"""Database connection and schema management."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import AsyncGenerator, Optional

import aiosqlite

from syncengine.config import get_settings

logger = logging.getLogger(__name__)

# Global database connection
_db_connection: Optional[aiosqlite.Connection] = None
_db_lock = asyncio.Lock()

# Serializes write transactions on the shared connection
_write_lock = asyncio.Lock()
_in_transaction: ContextVar[bool] = ContextVar("in_transaction", default=False)


SCHEMA = """
-- System settings
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value_plain TEXT,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Canonical local events (owned by the event CRUD layer)
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    description TEXT,
    location TEXT,
    start_time TIMESTAMP NOT NULL,
    end_time TIMESTAMP NOT NULL,
    is_all_day BOOLEAN DEFAULT FALSE,
    is_multi_day BOOLEAN DEFAULT FALSE,
    recurrence_rule TEXT,
    local_version TIMESTAMP NOT NULL,
    deleted_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Connected external calendars
CREATE TABLE IF NOT EXISTS integrations (
    id TEXT PRIMARY KEY,
    provider TEXT NOT NULL,
    provider_kind TEXT NOT NULL,
    auth_ref TEXT NOT NULL,
    external_calendar_id TEXT NOT NULL,
    display_name TEXT,
    sync_direction TEXT NOT NULL DEFAULT 'bidirectional',
    cursor TEXT,
    channel_id TEXT UNIQUE,
    channel_resource_id TEXT,
    channel_token TEXT,
    channel_expiry TIMESTAMP,
    is_active BOOLEAN DEFAULT TRUE,
    last_sync_at TIMESTAMP,
    last_error TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Per-(event, integration) sync ledger
CREATE TABLE IF NOT EXISTS sync_records (
    event_id TEXT NOT NULL,
    integration_id TEXT NOT NULL REFERENCES integrations(id) ON DELETE CASCADE,
    external_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    local_version TIMESTAMP,
    remote_version TIMESTAMP,
    last_synced_at TIMESTAMP,
    last_error TEXT,
    retry_count INTEGER DEFAULT 0,
    conflict_snapshot TEXT,
    updated_at TIMESTAMP,
    PRIMARY KEY (event_id, integration_id)
);

CREATE INDEX IF NOT EXISTS idx_sync_records_external
    ON sync_records(integration_id, external_id);
CREATE INDEX IF NOT EXISTS idx_sync_records_status ON sync_records(status);

-- Durable retry queue
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY,
    operation TEXT NOT NULL,
    event_id TEXT,
    integration_id TEXT NOT NULL REFERENCES integrations(id) ON DELETE CASCADE,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER DEFAULT 0,
    max_retries INTEGER DEFAULT 3,
    scheduled_for TIMESTAMP NOT NULL,
    last_error TEXT,
    claimed_by TEXT,
    claimed_at TIMESTAMP,
    processed_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_sync_queue_ready
    ON sync_queue(status, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_sync_queue_event
    ON sync_queue(event_id, integration_id, status);

-- Audit log
CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY,
    integration_id TEXT,
    event_id TEXT,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    details TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_sync_log_created ON sync_log(created_at);

-- Email alert queue
CREATE TABLE IF NOT EXISTS alert_queue (
    id INTEGER PRIMARY KEY,
    alert_type TEXT NOT NULL,
    recipient_email TEXT NOT NULL,
    subject TEXT NOT NULL,
    body TEXT NOT NULL,
    attempts INTEGER DEFAULT 0,
    last_attempt TIMESTAMP,
    sent_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Job locking
CREATE TABLE IF NOT EXISTS job_locks (
    job_name TEXT PRIMARY KEY,
    locked_at TIMESTAMP,
    locked_by TEXT
);
"""


async def get_database() -> aiosqlite.Connection:
    """Get the database connection, creating it if necessary."""
    global _db_connection

    async with _db_lock:
        if _db_connection is None:
            settings = get_settings()
            _db_connection = await aiosqlite.connect(settings.database_path)
            _db_connection.row_factory = aiosqlite.Row
            await _db_connection.execute("PRAGMA foreign_keys = ON")
            await _db_connection.execute("PRAGMA journal_mode = WAL")
            await init_schema(_db_connection)
        return _db_connection


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    async with _db_lock:
        if _db_connection is not None:
            await _db_connection.close()
            _db_connection = None
            logger.info("Database connection closed")


@asynccontextmanager
async def transaction() -> AsyncGenerator[aiosqlite.Connection, None]:
    """
    Run a group of writes as one unit.

    Commits on success and rolls back on any exception. Nested use within the
    same task joins the outer transaction.
    """
    db = await get_database()

    if _in_transaction.get():
        yield db
        return

    async with _write_lock:
        token = _in_transaction.set(True)
        try:
            yield db
            await db.commit()
        except BaseException:
            await db.rollback()
            raise
        finally:
            _in_transaction.reset(token)


async def get_setting(key: str) -> Optional[dict]:
    """Get a setting by key."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM settings WHERE key = ?", (key,)
    )
    row = await cursor.fetchone()
    if row:
        return dict(row)
    return None


async def set_setting(key: str, value: str) -> None:
    """Set a setting value."""
    now = datetime.utcnow().isoformat()

    async with transaction() as db:
        await db.execute(
            """INSERT INTO settings (key, value_plain, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
               value_plain = excluded.value_plain,
               updated_at = excluded.updated_at""",
            (key, value, now)
        )


async def is_sync_paused() -> bool:
    """Check if sync is globally paused."""
    setting = await get_setting("sync_paused")
    return bool(setting and setting.get("value_plain") == "true")


async def record_sync_log(
    action: str,
    status: str,
    details: Optional[dict] = None,
    integration_id: Optional[str] = None,
    event_id: Optional[str] = None,
) -> None:
    """Append an entry to the sync audit log."""
    async with transaction() as db:
        await db.execute(
            """INSERT INTO sync_log (integration_id, event_id, action, status, details, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                integration_id,
                event_id,
                action,
                status,
                json.dumps(details, default=str) if details is not None else None,
                datetime.utcnow().isoformat(),
            )
        )
