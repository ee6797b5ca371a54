"""Pytest configuration and fixtures."""

import asyncio
import os
from datetime import datetime, timedelta
from typing import Optional

import pytest
import pytest_asyncio

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["PUBLIC_URL"] = "http://localhost:3000"
os.environ["ALERT_RECIPIENTS"] = "ops@example.com"
os.environ.pop("API_TOKEN", None)

from syncengine.auth import StaticTokenProvider  # noqa: E402
from syncengine.models import (  # noqa: E402
    CanonicalEvent,
    ChangeBatch,
    ChannelMetadata,
    PushResult,
    RemoteEvent,
)
from syncengine.sync.adapters import PushCapableAdapter  # noqa: E402


class FakeRemote:
    """In-memory provider calendar shared by every adapter built for one integration."""

    def __init__(self, name: str = "remote"):
        self.name = name
        self.events: dict[str, RemoteEvent] = {}
        self.calls: list[tuple] = []
        self.failures: list[Exception] = []
        # Raised after a write has landed, like a timeout on the response
        self.failures_after_write: list[Exception] = []
        self.changes: list[RemoteEvent] = []
        self.next_cursor: Optional[str] = None
        self.fetch_error: Optional[Exception] = None
        self.channels: list[ChannelMetadata] = []
        self._ticks = 0

    def tick(self) -> datetime:
        """Provider clock: always ahead of anything written locally so far."""
        self._ticks += 1
        return datetime.utcnow() + timedelta(seconds=self._ticks)

    def _maybe_fail(self):
        if self.failures:
            raise self.failures.pop(0)

    def _store(self, external_id: str, event: CanonicalEvent) -> RemoteEvent:
        remote = RemoteEvent(
            external_id=external_id,
            remote_version=self.tick(),
            local_event_id=event.id,
            title=event.title,
            description=event.description,
            location=event.location,
            start=event.start,
            end=event.end,
            is_all_day=event.is_all_day,
        )
        self.events[external_id] = remote
        return remote


class FakeAdapter(PushCapableAdapter):
    provider = "fake"

    def __init__(self, integration, credentials, remote: FakeRemote):
        super().__init__(integration, credentials, timeout=5)
        self.remote = remote

    async def create(self, event: CanonicalEvent) -> PushResult:
        self.remote.calls.append(("create", event.id))
        self.remote._maybe_fail()
        remote = self.remote._store(f"ext-{event.id}", event)
        if self.remote.failures_after_write:
            raise self.remote.failures_after_write.pop(0)
        return PushResult(external_id=remote.external_id, remote_version=remote.remote_version)

    async def update(self, external_id: str, event: CanonicalEvent) -> PushResult:
        self.remote.calls.append(("update", external_id))
        self.remote._maybe_fail()
        if external_id not in self.remote.events:
            return PushResult(external_id=external_id, gone=True)
        remote = self.remote._store(external_id, event)
        return PushResult(external_id=external_id, remote_version=remote.remote_version)

    async def delete(self, external_id: str) -> None:
        self.remote.calls.append(("delete", external_id))
        self.remote._maybe_fail()
        self.remote.events.pop(external_id, None)

    async def find_external_id(self, event: CanonicalEvent) -> Optional[str]:
        self.remote.calls.append(("find", event.id))
        external_id = f"ext-{event.id}"
        return external_id if external_id in self.remote.events else None

    async def fetch_changes_since(self, cursor: Optional[str]) -> ChangeBatch:
        self.remote.calls.append(("fetch", cursor))
        if self.remote.fetch_error:
            raise self.remote.fetch_error
        return ChangeBatch(events=list(self.remote.changes), new_cursor=self.remote.next_cursor)

    async def register_webhook(self, callback_url: str) -> ChannelMetadata:
        self.remote.calls.append(("register_webhook", callback_url))
        channel = ChannelMetadata(
            channel_id=f"{self.remote.name}-chan-{len(self.remote.channels) + 1}",
            resource_id="res-1",
            token="secret-token",
            expiry=datetime.utcnow() + timedelta(days=6),
        )
        self.remote.channels.append(channel)
        return channel

    async def stop_webhook(self, channel: ChannelMetadata) -> None:
        self.remote.calls.append(("stop_webhook", channel.channel_id))


@pytest_asyncio.fixture
async def test_db():
    """Fresh in-memory database, with module-level locks rebuilt for this loop."""
    import syncengine.database as db_module
    import syncengine.sync.engine as engine_module
    from syncengine.database import close_database, get_database

    db_module._db_connection = None
    db_module._db_lock = asyncio.Lock()
    db_module._write_lock = asyncio.Lock()
    engine_module._integration_locks.clear()
    engine_module._integration_locks_guard = asyncio.Lock()
    engine_module.set_orchestrator(None)

    db = await get_database()

    yield db

    await close_database()
    db_module._db_connection = None
    engine_module.set_orchestrator(None)


@pytest.fixture
def remotes():
    """Fake provider calendars keyed by integration id."""
    class _Remotes(dict):
        def __missing__(self, key):
            self[key] = FakeRemote(key)
            return self[key]

    return _Remotes()


@pytest.fixture
def credentials():
    return StaticTokenProvider({"ref-google": "google-token", "ref-notion": "notion-token"})


@pytest.fixture
def orchestrator(test_db, remotes, credentials):
    """Orchestrator wired to fake adapters."""
    from syncengine.sync.engine import SyncOrchestrator, set_orchestrator

    orch = SyncOrchestrator(
        credentials=credentials,
        adapter_factory=lambda integration, creds: FakeAdapter(integration, creds, remotes[integration.id]),
    )
    set_orchestrator(orch)
    return orch


def make_event(event_id: str = "evt-1", title: str = "Standup", version: Optional[datetime] = None, **fields) -> CanonicalEvent:
    start = fields.pop("start", datetime(2025, 3, 10, 9, 0))
    return CanonicalEvent(
        id=event_id,
        title=title,
        start=start,
        end=fields.pop("end", start + timedelta(hours=1)),
        local_version=version or datetime.utcnow(),
        **fields,
    )


@pytest.fixture
def event_factory():
    return make_event
