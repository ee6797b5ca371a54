"""Tests for the Google Calendar adapter."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httplib2
import httpx
import pytest
from googleapiclient.errors import HttpError

from syncengine.auth import StaticTokenProvider
from syncengine.models import ChannelMetadata, Integration, ProviderKind
from syncengine.sync.adapters.google_calendar import (
    LOCAL_ID_PROPERTY,
    GoogleCalendarAdapter,
    from_google_event,
    google_event_id,
    to_google_event,
    translate_http_error,
)
from syncengine.sync.errors import (
    AuthenticationError,
    PermanentSyncError,
    RateLimitedError,
    TransientSyncError,
)


def _http_error(status: int, content: bytes = b"{}", headers: dict = None) -> HttpError:
    return HttpError(httplib2.Response({"status": status, **(headers or {})}), content)


class FakeRequest:
    def __init__(self, outcome):
        self.outcome = outcome

    def execute(self):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeEvents:
    """Scripted stand-in for ``service.events()``."""

    def __init__(self, **responses):
        self.responses = {op: list(outcomes) for op, outcomes in responses.items()}
        self.calls = []

    def _next(self, op, kwargs):
        self.calls.append((op, kwargs))
        return FakeRequest(self.responses[op].pop(0))

    def insert(self, **kwargs):
        return self._next("insert", kwargs)

    def update(self, **kwargs):
        return self._next("update", kwargs)

    def delete(self, **kwargs):
        return self._next("delete", kwargs)

    def list(self, **kwargs):
        return self._next("list", kwargs)

    def get(self, **kwargs):
        return self._next("get", kwargs)


class FakeService:
    def __init__(self, events: FakeEvents):
        self._events = events

    def events(self):
        return self._events


class CountingTokens(StaticTokenProvider):
    def __init__(self):
        super().__init__({"ref-google": "token-1"})
        self.refreshes = 0

    async def get_access_token(self, auth_ref, force_refresh=False):
        if force_refresh:
            self.refreshes += 1
        return await super().get_access_token(auth_ref, force_refresh)


@pytest.fixture
def integration():
    return Integration(
        id="g1",
        provider="google",
        provider_kind=ProviderKind.PUSH,
        auth_ref="ref-google",
        external_calendar_id="primary",
    )


def _adapter(integration, monkeypatch, events=None, transport=None, tokens=None):
    adapter = GoogleCalendarAdapter(integration, tokens or CountingTokens(), timeout=5, transport=transport)
    if events is not None:
        monkeypatch.setattr(adapter, "_service", lambda token: FakeService(events))
    return adapter


def test_google_event_id_is_deterministic_base32hex():
    first = google_event_id("evt-1")
    assert first == google_event_id("evt-1")
    assert first != google_event_id("evt-2")
    assert set(first) <= set("0123456789abcdefghijklmnopqrstuv")
    assert 5 <= len(first) <= 1024


def test_to_google_event_timed(event_factory):
    body = to_google_event(event_factory(description="Daily"), "calendarSyncEngine", "Europe/Berlin")

    assert body["summary"] == "Standup"
    assert body["status"] == "confirmed"
    assert body["start"] == {"dateTime": "2025-03-10T09:00:00Z", "timeZone": "Europe/Berlin"}
    assert body["end"] == {"dateTime": "2025-03-10T10:00:00Z", "timeZone": "Europe/Berlin"}
    assert body["extendedProperties"]["private"] == {LOCAL_ID_PROPERTY: "evt-1", "calendarSyncEngine": "true"}


def test_to_google_event_normalises_aware_times(event_factory):
    berlin = timezone(timedelta(hours=1))
    event = event_factory(start=datetime(2025, 3, 10, 10, 0, tzinfo=berlin), end="2025-03-10T10:00:00+01:00")

    body = to_google_event(event, "tag")

    assert body["start"]["dateTime"] == "2025-03-10T09:00:00Z"
    assert body["end"]["dateTime"] == "2025-03-10T09:00:00Z"


def test_to_google_event_all_day_end_is_exclusive(event_factory):
    event = event_factory(
        start=datetime(2025, 3, 10),
        end=datetime(2025, 3, 10),
        is_all_day=True,
        recurrence_rule="FREQ=WEEKLY",
    )
    body = to_google_event(event, "tag")

    assert body["start"] == {"date": "2025-03-10"}
    assert body["end"] == {"date": "2025-03-11"}
    assert body["recurrence"] == ["RRULE:FREQ=WEEKLY"]


def test_from_google_event_decodes_fields():
    remote = from_google_event({
        "id": "g-123",
        "status": "confirmed",
        "updated": "2025-03-10T08:15:30.120Z",
        "summary": "Offsite",
        "start": {"date": "2025-03-12"},
        "end": {"date": "2025-03-14"},
        "recurrence": ["EXDATE:20250319", "RRULE:FREQ=WEEKLY"],
        "extendedProperties": {"private": {LOCAL_ID_PROPERTY: "evt-9"}},
    })

    assert remote.external_id == "g-123"
    assert remote.local_event_id == "evt-9"
    assert remote.remote_version == datetime(2025, 3, 10, 8, 15, 30, 120000)
    assert remote.is_all_day is True
    assert remote.is_multi_day is True
    assert remote.recurrence_rule == "FREQ=WEEKLY"
    assert remote.deleted is False


def test_from_google_event_cancelled_is_deleted():
    remote = from_google_event({"id": "g-1", "status": "cancelled", "updated": "2025-03-10T08:00:00Z"})
    assert remote.deleted is True
    assert remote.start is None


def test_translate_http_error():
    assert isinstance(translate_http_error(_http_error(401)), AuthenticationError)
    assert isinstance(translate_http_error(_http_error(503)), TransientSyncError)
    assert isinstance(translate_http_error(_http_error(400)), PermanentSyncError)
    assert isinstance(translate_http_error(_http_error(404)), PermanentSyncError)

    limited = translate_http_error(_http_error(429, headers={"retry-after": "30"}))
    assert isinstance(limited, RateLimitedError)
    assert limited.retry_after == 30

    quota = translate_http_error(
        _http_error(403, json.dumps({"error": {"errors": [{"reason": "userRateLimitExceeded"}]}}).encode())
    )
    assert isinstance(quota, RateLimitedError)


@pytest.mark.asyncio
async def test_create_inserts_with_deterministic_id(integration, monkeypatch, event_factory):
    events = FakeEvents(insert=[{"id": google_event_id("evt-1"), "updated": "2025-03-10T08:00:00Z"}])
    adapter = _adapter(integration, monkeypatch, events)

    result = await adapter.create(event_factory())

    assert result.external_id == google_event_id("evt-1")
    assert result.remote_version == datetime(2025, 3, 10, 8, 0)
    op, kwargs = events.calls[0]
    assert op == "insert"
    assert kwargs["calendarId"] == "primary"
    assert kwargs["body"]["id"] == google_event_id("evt-1")


@pytest.mark.asyncio
async def test_create_retry_after_conflict_updates_existing(integration, monkeypatch, event_factory):
    event_id = google_event_id("evt-1")
    events = FakeEvents(
        insert=[_http_error(409)],
        update=[{"id": event_id, "updated": "2025-03-10T08:00:00Z"}],
    )
    adapter = _adapter(integration, monkeypatch, events)

    result = await adapter.create(event_factory())

    assert result.external_id == event_id
    assert [op for op, _ in events.calls] == ["insert", "update"]
    assert events.calls[1][1]["eventId"] == event_id
    assert "id" not in events.calls[1][1]["body"]


@pytest.mark.asyncio
async def test_auth_failure_refreshes_once(integration, monkeypatch, event_factory):
    tokens = CountingTokens()
    events = FakeEvents(insert=[_http_error(401), {"id": "g-1"}])
    adapter = _adapter(integration, monkeypatch, events, tokens=tokens)

    result = await adapter.create(event_factory())

    assert result.external_id == "g-1"
    assert tokens.refreshes == 1


@pytest.mark.asyncio
async def test_second_auth_failure_propagates(integration, monkeypatch, event_factory):
    events = FakeEvents(insert=[_http_error(401), _http_error(401)])
    adapter = _adapter(integration, monkeypatch, events)

    with pytest.raises(AuthenticationError):
        await adapter.create(event_factory())


@pytest.mark.asyncio
async def test_update_of_missing_event_reports_gone(integration, monkeypatch, event_factory):
    events = FakeEvents(update=[_http_error(404)])
    adapter = _adapter(integration, monkeypatch, events)

    result = await adapter.update("g-1", event_factory())

    assert result.gone is True
    assert result.external_id == "g-1"


@pytest.mark.asyncio
async def test_delete_of_missing_event_succeeds(integration, monkeypatch):
    events = FakeEvents(delete=[_http_error(410)])
    adapter = _adapter(integration, monkeypatch, events)

    await adapter.delete("g-1")


@pytest.mark.asyncio
async def test_find_external_id_uses_deterministic_id(integration, monkeypatch, event_factory):
    event_id = google_event_id("evt-1")
    events = FakeEvents(get=[
        {"id": event_id, "status": "confirmed"},
        {"id": event_id, "status": "cancelled"},
        _http_error(404),
    ])
    adapter = _adapter(integration, monkeypatch, events)

    assert await adapter.find_external_id(event_factory()) == event_id
    assert await adapter.find_external_id(event_factory()) is None
    assert await adapter.find_external_id(event_factory()) is None
    assert events.calls[0] == ("get", {"calendarId": "primary", "eventId": event_id})


@pytest.mark.asyncio
async def test_server_error_is_transient(integration, monkeypatch):
    events = FakeEvents(delete=[_http_error(500)])
    adapter = _adapter(integration, monkeypatch, events)

    with pytest.raises(TransientSyncError):
        await adapter.delete("g-1")


@pytest.mark.asyncio
async def test_fetch_changes_pages_through_results(integration, monkeypatch):
    events = FakeEvents(list=[
        {"items": [{"id": "a", "updated": "2025-03-10T08:00:00Z"}], "nextPageToken": "p2"},
        {"items": [{"id": "b", "status": "cancelled", "updated": "2025-03-10T08:01:00Z"}], "nextSyncToken": "s2"},
    ])
    adapter = _adapter(integration, monkeypatch, events)

    batch = await adapter.fetch_changes_since("s1")

    assert [e.external_id for e in batch.events] == ["a", "b"]
    assert batch.events[1].deleted is True
    assert batch.new_cursor == "s2"
    assert events.calls[0][1]["syncToken"] == "s1"
    assert events.calls[0][1]["showDeleted"] is True
    assert events.calls[1][1]["pageToken"] == "p2"


@pytest.mark.asyncio
async def test_expired_sync_token_falls_back_to_full_listing(integration, monkeypatch):
    events = FakeEvents(list=[
        _http_error(410),
        {"items": [{"id": "a", "updated": "2025-03-10T08:00:00Z"}], "nextSyncToken": "fresh"},
    ])
    adapter = _adapter(integration, monkeypatch, events)

    batch = await adapter.fetch_changes_since("stale")

    assert batch.new_cursor == "fresh"
    full = events.calls[1][1]
    assert "syncToken" not in full
    assert full["timeMin"].endswith("Z")
    assert full["timeMax"].endswith("Z")


@pytest.mark.asyncio
async def test_register_webhook_posts_watch_request(integration, monkeypatch):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"resourceId": "res-9", "expiration": "1741608000000"})

    adapter = _adapter(integration, monkeypatch, transport=httpx.MockTransport(handler))

    channel = await adapter.register_webhook("https://sync.example.com/api/webhooks/google-calendar")

    request = seen[0]
    body = json.loads(request.content)
    assert request.url.path == "/calendar/v3/calendars/primary/events/watch"
    assert request.headers["Authorization"] == "Bearer token-1"
    assert body["type"] == "web_hook"
    assert body["address"] == "https://sync.example.com/api/webhooks/google-calendar"
    assert body["id"] == channel.channel_id
    assert body["token"] == channel.token
    assert channel.resource_id == "res-9"
    assert channel.expiry == datetime(2025, 3, 10, 12, 0)


@pytest.mark.asyncio
async def test_register_webhook_rejection_is_permanent(integration, monkeypatch):
    transport = httpx.MockTransport(lambda request: httpx.Response(400, text="bad address"))
    adapter = _adapter(integration, monkeypatch, transport=transport)

    with pytest.raises(PermanentSyncError):
        await adapter.register_webhook("http://localhost/hook")


@pytest.mark.asyncio
async def test_stop_webhook_tolerates_unknown_channel(integration, monkeypatch):
    transport = httpx.MockTransport(lambda request: httpx.Response(404))
    adapter = _adapter(integration, monkeypatch, transport=transport)
    channel = ChannelMetadata(channel_id="chan-1", resource_id="res-1", expiry=datetime(2025, 3, 10))

    await adapter.stop_webhook(channel)


@pytest.mark.asyncio
async def test_stop_webhook_server_error_is_transient(integration, monkeypatch):
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    adapter = _adapter(integration, monkeypatch, transport=transport)
    channel = ChannelMetadata(channel_id="chan-1", resource_id="res-1", expiry=datetime(2025, 3, 10))

    with pytest.raises(TransientSyncError):
        await adapter.stop_webhook(channel)


@pytest.mark.asyncio
async def test_slow_call_times_out_as_transient(integration, monkeypatch):
    adapter = _adapter(integration, monkeypatch)
    adapter.timeout = 0.01

    async def _slow(token):
        await asyncio.sleep(1)

    with pytest.raises(TransientSyncError):
        await adapter._call("list", _slow)
