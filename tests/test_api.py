"""Tests for the HTTP API."""

import httpx
import pytest
import pytest_asyncio

from syncengine.config import get_settings
from syncengine.database import is_sync_paused
from syncengine.models import ProviderKind, SyncStatus
from syncengine.sync import integrations
from syncengine.sync.errors import PermanentSyncError

from conftest import FakeAdapter


@pytest_asyncio.fixture
async def client(orchestrator, remotes, credentials, monkeypatch):
    import syncengine.sync.webhooks as webhooks
    from syncengine.main import app

    monkeypatch.setattr(
        webhooks, "build_adapter",
        lambda integration, creds: FakeAdapter(integration, credentials, remotes[integration.id]),
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": "connected"}


@pytest.mark.asyncio
async def test_sync_token_required_when_configured(client, monkeypatch):
    monkeypatch.setattr(get_settings(), "api_token", "s3cret")

    assert (await client.get("/api/sync/queue/stats")).status_code == 401
    assert (await client.get("/api/sync/queue/stats", headers={"X-Sync-Token": "wrong"})).status_code == 401
    assert (await client.get("/api/sync/queue/stats", headers={"X-Sync-Token": "s3cret"})).status_code == 200


@pytest.mark.asyncio
async def test_create_push_integration_registers_webhook(client):
    response = await client.post("/api/integrations", json={
        "provider": "google",
        "provider_kind": "push",
        "auth_ref": "ref-google",
        "external_calendar_id": "primary",
        "display_name": "Work",
    })

    assert response.status_code == 201
    data = response.json()
    assert data["webhook_state"] == "active"
    assert data["sync_direction"] == "bidirectional"
    assert (await integrations.get_integration(data["id"])).channel is not None


@pytest.mark.asyncio
async def test_push_kind_on_poll_provider_is_rejected(client):
    response = await client.post("/api/integrations", json={
        "provider": "notion",
        "provider_kind": "push",
        "auth_ref": "ref-notion",
        "external_calendar_id": "db-1",
    })

    assert response.status_code == 400
    assert await integrations.list_integrations() == []


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected(client):
    response = await client.post("/api/integrations", json={
        "provider": "outlook",
        "provider_kind": "poll",
        "auth_ref": "ref",
        "external_calendar_id": "x",
    })
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_list_get_and_delete_integration(client, remotes):
    created = (await client.post("/api/integrations", json={
        "provider": "notion",
        "provider_kind": "poll",
        "auth_ref": "ref-notion",
        "external_calendar_id": "db-1",
    })).json()
    assert created["webhook_state"] == "unregistered"

    listed = (await client.get("/api/integrations")).json()
    assert [i["id"] for i in listed] == [created["id"]]
    assert (await client.get(f"/api/integrations/{created['id']}")).status_code == 200

    assert (await client.delete(f"/api/integrations/{created['id']}")).status_code == 200
    assert (await client.get(f"/api/integrations/{created['id']}")).status_code == 404
    assert (await client.delete(f"/api/integrations/{created['id']}")).status_code == 404


@pytest.mark.asyncio
async def test_delete_push_integration_stops_channel(client, remotes):
    created = (await client.post("/api/integrations", json={
        "provider": "google",
        "provider_kind": "push",
        "auth_ref": "ref-google",
        "external_calendar_id": "primary",
    })).json()

    await client.delete(f"/api/integrations/{created['id']}")

    assert ("stop_webhook", f"{created['id']}-chan-1") in remotes[created["id"]].calls


@pytest.mark.asyncio
async def test_webhook_renew_and_stop_endpoints(client):
    created = (await client.post("/api/integrations", json={
        "provider": "google",
        "provider_kind": "push",
        "auth_ref": "ref-google",
        "external_calendar_id": "primary",
    })).json()
    integration_id = created["id"]

    renewed = await client.post(f"/api/integrations/{integration_id}/webhook/renew")
    assert renewed.status_code == 200
    assert (await integrations.get_integration(integration_id)).channel.channel_id == f"{integration_id}-chan-2"

    stopped = await client.delete(f"/api/integrations/{integration_id}/webhook")
    assert stopped.status_code == 200
    assert (await client.get(f"/api/integrations/{integration_id}")).json()["webhook_state"] == "unregistered"

    assert (await client.post("/api/integrations/missing/webhook")).status_code == 404


@pytest.mark.asyncio
async def test_event_changed_pushes(client, orchestrator, remotes, event_factory):
    await integrations.create_integration("google", ProviderKind.PUSH, "ref-google", "primary", integration_id="g1")
    await orchestrator.store.save_event(event_factory())

    response = await client.post("/api/sync/events/evt-1/changed", json={"change_kind": "created"})

    assert response.status_code == 200
    assert response.json() == {"event_id": "evt-1", "outcomes": {"g1": "synced"}}
    assert "ext-evt-1" in remotes["g1"].events

    missing = await client.post("/api/sync/events/nope/changed", json={"change_kind": "updated"})
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_trigger_pull(client, remotes):
    await integrations.create_integration("google", ProviderKind.PUSH, "ref-google", "primary", integration_id="g1")
    remotes["g1"].next_cursor = "token-1"

    response = await client.post("/api/sync/pull/g1")
    assert response.status_code == 200
    assert response.json()["cursor"] == "token-1"

    remotes["g1"].fetch_error = PermanentSyncError("calendar deleted")
    assert (await client.post("/api/sync/pull/g1")).status_code == 502
    assert (await client.post("/api/sync/pull/missing")).status_code == 404


@pytest.mark.asyncio
async def test_pause_resume_and_queue_processing(client, orchestrator, remotes, event_factory):
    await integrations.create_integration("google", ProviderKind.PUSH, "ref-google", "primary", integration_id="g1")
    await orchestrator.store.save_event(event_factory())

    assert (await client.post("/api/sync/pause")).json() == {"sync_paused": True}
    assert await is_sync_paused() is True
    await client.post("/api/sync/events/evt-1/changed", json={"change_kind": "created"})

    stats = (await client.get("/api/sync/queue/stats")).json()
    assert stats["pending"] == 1
    assert stats["sync_paused"] is True

    await client.post("/api/sync/resume")
    result = (await client.post("/api/sync/queue/process")).json()
    assert result["processed"] == 1
    assert result["outcomes"][0]["status"] == "completed"


@pytest.mark.asyncio
async def test_requeue_and_records(client, orchestrator, remotes, event_factory):
    await integrations.create_integration("google", ProviderKind.PUSH, "ref-google", "primary", integration_id="g1")
    event = await orchestrator.store.save_event(event_factory())
    remotes["g1"].failures.append(PermanentSyncError("400 invalid"))
    await client.post(f"/api/sync/events/{event.id}/changed", json={"change_kind": "created"})

    records = (await client.get("/api/sync/records", params={"status": "failed"})).json()
    assert [r["event_id"] for r in records["records"]] == ["evt-1"]

    assert (await orchestrator.queue.stats())["failed"] == 1

    assert (await client.post("/api/sync/queue/999/requeue")).status_code == 404
    response = await client.post("/api/sync/queue/1/requeue")
    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert (await orchestrator.ledger.get("evt-1", "g1")).status == SyncStatus.PENDING
