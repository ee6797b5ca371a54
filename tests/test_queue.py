"""Tests for the durable sync queue."""

import asyncio
from datetime import datetime, timedelta

import pytest

from syncengine.models import ProviderKind, QueueItem, QueueOperation, QueueStatus
from syncengine.sync.integrations import create_integration
from syncengine.sync.queue import SyncQueue, backoff_delay

NOW = datetime(2025, 3, 10, 12, 0)


async def _insert_integration(integration_id: str = "g1"):
    return await create_integration(
        "google", ProviderKind.PUSH, "ref-google", "primary", integration_id=integration_id
    )


def _push(operation=QueueOperation.PUSH_CREATE, event_id="evt-1", integration_id="g1", **payload):
    return QueueItem(
        operation=operation,
        integration_id=integration_id,
        event_id=event_id,
        payload=payload or {"event": {"id": event_id}},
    )


def test_backoff_delay_doubles():
    assert backoff_delay(1) == timedelta(minutes=2)
    assert backoff_delay(2) == timedelta(minutes=4)
    assert backoff_delay(3) == timedelta(minutes=8)


def test_backoff_delay_honours_retry_after():
    assert backoff_delay(1, retry_after=600) == timedelta(minutes=10)
    assert backoff_delay(3, retry_after=5) == timedelta(minutes=8)


@pytest.mark.asyncio
async def test_enqueue_uses_configured_max_retries(test_db):
    await _insert_integration()
    queue = SyncQueue(max_retries=5)

    item = await queue.enqueue(_push(), now=NOW)
    assert item.id is not None
    assert item.max_retries == 5
    assert (await queue.get(item.id)).max_retries == 5


@pytest.mark.asyncio
async def test_dequeue_ready_orders_by_schedule(test_db):
    await _insert_integration()
    queue = SyncQueue()

    later = await queue.enqueue(_push(event_id="evt-2"), now=NOW + timedelta(minutes=1))
    first = await queue.enqueue(_push(event_id="evt-1"), now=NOW)
    future = await queue.enqueue(
        _push(event_id="evt-3").model_copy(update={"scheduled_for": NOW + timedelta(hours=1)}),
        now=NOW,
    )

    ready = await queue.dequeue_ready(10, now=NOW + timedelta(minutes=5))
    assert [item.id for item in ready] == [first.id, later.id]
    assert future.id not in [item.id for item in ready]


@pytest.mark.asyncio
async def test_claim_is_exclusive(test_db):
    await _insert_integration()
    queue = SyncQueue()
    item = await queue.enqueue(_push(), now=NOW)

    copy_a = await queue.get(item.id)
    copy_b = await queue.get(item.id)
    results = await asyncio.gather(
        queue.mark_processing(copy_a, "worker-a"),
        queue.mark_processing(copy_b, "worker-b"),
    )

    assert sorted(results) == [False, True]
    stored = await queue.get(item.id)
    assert stored.status == QueueStatus.PROCESSING
    assert stored.claimed_by in ("worker-a", "worker-b")


@pytest.mark.asyncio
async def test_retry_backoff_then_terminal_failure(test_db):
    await _insert_integration()
    queue = SyncQueue(max_retries=3)
    item = await queue.enqueue(_push(), now=NOW)

    for expected_minutes in (2, 4, 8):
        item = await queue.mark_retry(item, "503 from provider", now=NOW)
        assert item.status == QueueStatus.PENDING
        assert item.scheduled_for == NOW + timedelta(minutes=expected_minutes)

    item = await queue.mark_retry(item, "503 from provider", now=NOW)
    assert item.status == QueueStatus.FAILED

    stored = await queue.get(item.id)
    assert stored.status == QueueStatus.FAILED
    assert stored.retry_count == 4
    assert stored.last_error == "503 from provider"
    assert await queue.dequeue_ready(10, now=NOW + timedelta(days=1)) == []


@pytest.mark.asyncio
async def test_retry_after_hint_delays_schedule(test_db):
    await _insert_integration()
    queue = SyncQueue()
    item = await queue.enqueue(_push(), now=NOW)

    item = await queue.mark_retry(item, "rate limited", retry_after=900, now=NOW)
    assert item.scheduled_for == NOW + timedelta(minutes=15)


@pytest.mark.asyncio
async def test_push_items_coalesce_per_event(test_db):
    await _insert_integration()
    queue = SyncQueue()

    first = await queue.enqueue(_push(QueueOperation.PUSH_UPDATE, title="v1"), now=NOW)
    second = await queue.enqueue(_push(QueueOperation.PUSH_UPDATE, title="v2"), now=NOW)

    assert second.id == first.id
    stored = await queue.get(first.id)
    assert stored.payload == {"title": "v2"}
    assert (await queue.stats(now=NOW))["pending"] == 1


@pytest.mark.asyncio
async def test_coalescing_keeps_create_until_created_remotely(test_db):
    await _insert_integration()
    queue = SyncQueue()

    first = await queue.enqueue(_push(QueueOperation.PUSH_CREATE), now=NOW)
    await queue.enqueue(_push(QueueOperation.PUSH_UPDATE), now=NOW)
    assert (await queue.get(first.id)).operation == QueueOperation.PUSH_CREATE

    await queue.enqueue(_push(QueueOperation.PUSH_DELETE), now=NOW)
    assert (await queue.get(first.id)).operation == QueueOperation.PUSH_DELETE


@pytest.mark.asyncio
async def test_single_pending_pull_per_integration(test_db):
    await _insert_integration()
    queue = SyncQueue()
    pull = QueueItem(operation=QueueOperation.PULL_INCREMENTAL, integration_id="g1")

    first = await queue.enqueue(pull, now=NOW)
    second = await queue.enqueue(pull, now=NOW)

    assert first.id == second.id
    assert (await queue.stats(now=NOW))["pending"] == 1


@pytest.mark.asyncio
async def test_convert_pending_to_delete(test_db):
    await _insert_integration("g1")
    await _insert_integration("g2")
    queue = SyncQueue()
    a = await queue.enqueue(_push(QueueOperation.PUSH_CREATE, integration_id="g1"), now=NOW)
    b = await queue.enqueue(_push(QueueOperation.PUSH_UPDATE, integration_id="g2"), now=NOW)

    converted = await queue.convert_pending_to_delete("evt-1", {"event": {"id": "evt-1", "deleted": True}})

    assert converted == 2
    for item_id in (a.id, b.id):
        stored = await queue.get(item_id)
        assert stored.operation == QueueOperation.PUSH_DELETE
        assert stored.payload["event"]["deleted"] is True


@pytest.mark.asyncio
async def test_supersede_pending_pushes(test_db):
    await _insert_integration()
    queue = SyncQueue()
    item = await queue.enqueue(_push(QueueOperation.PUSH_UPDATE), now=NOW)

    assert await queue.supersede_pending_pushes("evt-1", "g1", "remote version applied") == 1

    stored = await queue.get(item.id)
    assert stored.status == QueueStatus.COMPLETED
    assert stored.last_error.startswith("superseded")


@pytest.mark.asyncio
async def test_requeue_failed_item(test_db):
    await _insert_integration()
    queue = SyncQueue()
    item = await queue.enqueue(_push(), now=NOW)
    await queue.mark_failed(item, "400 bad request")

    requeued = await queue.requeue(item.id)
    assert requeued.status == QueueStatus.PENDING
    assert requeued.retry_count == 0

    # Only failed items can be requeued
    assert await queue.requeue(item.id) is None


@pytest.mark.asyncio
async def test_release_stale_claims(test_db):
    await _insert_integration()
    queue = SyncQueue()
    item = await queue.enqueue(_push(), now=NOW)
    await queue.mark_processing(item, "crashed-worker")

    assert await queue.release_stale_claims(timedelta(minutes=10)) == 0
    assert await queue.release_stale_claims(timedelta(seconds=-1)) == 1
    assert (await queue.get(item.id)).status == QueueStatus.PENDING


@pytest.mark.asyncio
async def test_stats_and_cleanup(test_db):
    await _insert_integration()
    queue = SyncQueue()
    done = await queue.enqueue(_push(event_id="evt-1"), now=NOW)
    await queue.enqueue(_push(event_id="evt-2"), now=NOW)
    await queue.mark_completed(done)

    stats = await queue.stats(now=NOW + timedelta(minutes=1))
    assert stats["pending"] == 1
    assert stats["completed"] == 1
    assert stats["failed"] == 0
    assert stats["oldest_pending_age_seconds"] == 60

    assert await queue.cleanup_terminal(7) == 0
    assert await queue.cleanup_terminal(7, now=datetime.utcnow() + timedelta(days=8)) == 1
    assert await queue.get(done.id) is None
