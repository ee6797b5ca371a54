"""Sync orchestrator.

Local writes are pushed to every push-enabled integration right away, falling
back to the durable queue when a provider call fails. Remote changes arrive as
queued incremental pulls; each pull batch is resolved against the ledger and
applied in a single transaction together with the cursor advance.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Optional

from syncengine.auth import CredentialProvider, get_credential_provider
from syncengine.database import is_sync_paused, record_sync_log, transaction
from syncengine.models import (
    CanonicalEvent,
    ChangeKind,
    Integration,
    QueueItem,
    QueueOperation,
    QueueStatus,
    RemoteEvent,
    SyncRecord,
    SyncStatus,
)
from syncengine.sync import integrations
from syncengine.sync.adapters import ProviderAdapter, build_adapter
from syncengine.sync.conflict import ConflictResolver, Resolution, Winner
from syncengine.sync.errors import (
    AuthenticationError,
    PermanentSyncError,
    SyncError,
    is_retryable,
)
from syncengine.sync.ledger import EventSyncLedger
from syncengine.sync.local_store import LocalEventStore
from syncengine.sync.queue import SyncQueue, backoff_delay

logger = logging.getLogger(__name__)

# Per-integration locks keep provider operations for one integration serial
_integration_locks: dict[str, asyncio.Lock] = {}
_integration_locks_guard = asyncio.Lock()


async def _get_integration_lock(integration_id: str) -> asyncio.Lock:
    """Get or create the lock for an integration."""
    async with _integration_locks_guard:
        if integration_id not in _integration_locks:
            _integration_locks[integration_id] = asyncio.Lock()
        return _integration_locks[integration_id]


def _retry_after(error: Exception) -> Optional[float]:
    return getattr(error, "retry_after", None)


class SyncOrchestrator:
    """Coordinates adapters, ledger, queue and conflict policy."""

    def __init__(
        self,
        store: Optional[LocalEventStore] = None,
        ledger: Optional[EventSyncLedger] = None,
        queue: Optional[SyncQueue] = None,
        resolver: Optional[ConflictResolver] = None,
        credentials: Optional[CredentialProvider] = None,
        adapter_factory: Optional[Callable[[Integration, CredentialProvider], ProviderAdapter]] = None,
    ):
        self.store = store or LocalEventStore()
        self.ledger = ledger or EventSyncLedger()
        self.queue = queue or SyncQueue()
        self.resolver = resolver or ConflictResolver()
        self.credentials = credentials
        self.adapter_factory = adapter_factory or build_adapter
        self.worker_id = f"worker-{uuid.uuid4().hex[:8]}"

    def adapter_for(self, integration: Integration) -> ProviderAdapter:
        return self.adapter_factory(integration, self.credentials or get_credential_provider())

    async def _push_targets(self, exclude: Optional[str] = None) -> list[Integration]:
        return [
            integration
            for integration in await integrations.list_integrations(active_only=True)
            if integration.push_enabled and integration.id != exclude
        ]

    # Push path

    async def on_local_event_changed(self, event: CanonicalEvent, change_kind: ChangeKind) -> dict[str, str]:
        """
        Propagate a local write to every push-enabled integration.

        Never raises for provider failures: each integration's outcome ends up
        in the ledger, the queue or the sync log. Returns an outcome per
        integration id.
        """
        change_kind = ChangeKind(change_kind)
        operation = QueueOperation.PUSH_DELETE if event.is_deleted else change_kind.to_operation()
        outcomes: dict[str, str] = {}

        if operation == QueueOperation.PUSH_DELETE:
            await self.queue.convert_pending_to_delete(event.id, {"event": event.snapshot()})

        paused = await is_sync_paused()

        for integration in await self._push_targets():
            lock = await _get_integration_lock(integration.id)
            async with lock:
                if paused or await self.queue.has_pending_push(event.id, integration.id):
                    # Keep per-integration order behind work already queued
                    await self._enqueue_push(integration, event, operation)
                    outcomes[integration.id] = "queued"
                    continue

                try:
                    outcomes[integration.id] = await self._push(integration, event, operation)
                except Exception as e:
                    outcomes[integration.id] = await self._handle_immediate_failure(
                        integration, event, operation, e
                    )

        return outcomes

    async def _enqueue_push(
        self,
        integration: Integration,
        event: CanonicalEvent,
        operation: QueueOperation,
        scheduled_for: Optional[datetime] = None,
        retry_count: int = 0,
    ) -> QueueItem:
        payload = {"event": event.snapshot()}
        # Kept so a push still finds the remote copy after the event is purged
        record = await self.ledger.get(event.id, integration.id)
        if record and record.external_id:
            payload["external_id"] = record.external_id

        return await self.queue.enqueue(QueueItem(
            operation=operation,
            integration_id=integration.id,
            event_id=event.id,
            payload=payload,
            scheduled_for=scheduled_for,
            retry_count=retry_count,
        ))

    async def _handle_immediate_failure(
        self,
        integration: Integration,
        event: CanonicalEvent,
        operation: QueueOperation,
        error: Exception,
    ) -> str:
        message = str(error) or error.__class__.__name__

        if is_retryable(error) or not isinstance(error, SyncError):
            if not isinstance(error, SyncError):
                logger.exception(f"Unexpected error pushing event {event.id} to {integration.id}: {error}")
            else:
                logger.warning(f"Push of event {event.id} to {integration.id} failed, queueing: {message}")
            # The synchronous attempt is the first failure
            scheduled_for = datetime.utcnow() + backoff_delay(1, _retry_after(error))
            await self._enqueue_push(integration, event, operation, scheduled_for=scheduled_for, retry_count=1)
            await self.ledger.mark_pending(event.id, integration.id, error=message, retry_count=1)
            await record_sync_log(
                operation.value, "queued", {"error": message},
                integration_id=integration.id, event_id=event.id,
            )
            return "queued"

        # Permanent: keep the item visible as failed so an operator can requeue it
        logger.error(f"Push of event {event.id} to {integration.id} failed permanently: {message}")
        item = await self._enqueue_push(integration, event, operation)
        await self.queue.mark_failed(item, message)
        await self.ledger.mark_failed(event.id, integration.id, error=message)
        await record_sync_log(
            operation.value, "failed", {"error": message},
            integration_id=integration.id, event_id=event.id,
        )
        await self._alert_failure(integration.id, f"{operation.value} for event {event.id} failed: {message}")
        return "failed"

    async def _push(
        self,
        integration: Integration,
        event: CanonicalEvent,
        operation: QueueOperation,
        payload: Optional[dict] = None,
    ) -> str:
        """Apply one push to the provider and record the result in the ledger."""
        adapter = self.adapter_for(integration)
        record = await self.ledger.get(event.id, integration.id)

        if operation == QueueOperation.PUSH_DELETE or event.is_deleted:
            external_id = (record.external_id if record else None) or (payload or {}).get("external_id")
            if not external_id:
                # An earlier create may have landed without us seeing the result
                external_id = await adapter.find_external_id(event)
            if not external_id:
                # Never reached the provider
                if record:
                    await self.ledger.delete(event.id, integration.id)
                return "skipped"

            await adapter.delete(external_id)
            await self.ledger.mark_synced(
                event.id, integration.id, external_id, None, local_version=event.local_version
            )
            await record_sync_log(
                "push-delete", "success", {"external_id": external_id},
                integration_id=integration.id, event_id=event.id,
            )
            return "deleted"

        result = None
        if record and record.external_id:
            result = await adapter.update(record.external_id, event)
            if result.gone:
                logger.info(f"Remote copy of event {event.id} on {integration.id} is gone, recreating")
                await self.ledger.delete(event.id, integration.id)
                result = None

        if result is None:
            result = await adapter.create(event)

        await self.ledger.mark_synced(
            event.id,
            integration.id,
            result.external_id,
            result.remote_version,
            local_version=event.local_version,
        )
        await record_sync_log(
            operation.value, "success", {"external_id": result.external_id},
            integration_id=integration.id, event_id=event.id,
        )
        return "synced"

    # Pull path

    async def run_pull(self, integration_id: str) -> dict:
        """Pull one integration now, serialized with its queue worker."""
        integration = await integrations.get_integration(integration_id)
        if integration is None:
            raise PermanentSyncError(f"Integration {integration_id} not found")

        lock = await _get_integration_lock(integration_id)
        async with lock:
            return await self.process_pull_operation(integration)

    async def process_pull_operation(self, integration: Integration, cursor: Optional[str] = None) -> dict:
        """
        Fetch remote changes since the cursor and apply them.

        The fetch happens before any database write. Applying events, ledger
        updates, fan-out pushes and the cursor advance share one transaction,
        so a failure part way leaves the stored cursor where it was and the
        next pull sees the same changes again.
        """
        summary = {"pulled": 0, "applied": 0, "conflicts": 0, "skipped": 0, "kept_local": 0}

        if not integration.pull_enabled:
            summary["cursor"] = integration.cursor
            return summary

        if cursor is None:
            current = await integrations.get_integration(integration.id)
            cursor = current.cursor if current else integration.cursor

        adapter = self.adapter_for(integration)
        batch = await adapter.fetch_changes_since(cursor)
        summary["pulled"] = len(batch.events)

        merged_at = datetime.utcnow()
        async with transaction():
            fan_out = await self._push_targets(exclude=integration.id)
            for remote in batch.events:
                outcome = await self._apply_remote(integration, remote, merged_at, fan_out)
                summary[outcome] += 1
            await integrations.update_cursor(integration.id, batch.new_cursor)
            await record_sync_log(
                "pull-incremental", "success",
                {**summary, "cursor": batch.new_cursor},
                integration_id=integration.id,
            )

        summary["cursor"] = batch.new_cursor
        logger.info(
            f"Pulled {summary['pulled']} change(s) from {integration.id}: "
            f"{summary['applied']} applied, {summary['conflicts']} conflicts, {summary['skipped']} skipped"
        )
        return summary

    async def _apply_remote(
        self,
        integration: Integration,
        remote: RemoteEvent,
        merged_at: datetime,
        fan_out: list[Integration],
    ) -> str:
        """Resolve one remote event and apply the winner. Returns the summary key."""
        record = await self.ledger.find_by_external_id(integration.id, remote.external_id)
        event_id = record.event_id if record else remote.local_event_id
        local = await self.store.get_event(event_id) if event_id else None
        if record is None and local is not None:
            record = await self.ledger.get(local.id, integration.id)

        resolution = self.resolver.resolve(local, record, remote)

        if resolution.winner == Winner.SKIP:
            if record and (record.remote_version is None or remote.remote_version > record.remote_version):
                await self.ledger.mark_synced(
                    record.event_id, integration.id, remote.external_id, remote.remote_version
                )
            return "skipped"

        if resolution.winner == Winner.REMOTE:
            await self._apply_remote_winner(integration, remote, local, event_id, resolution, merged_at, fan_out)
            return "conflicts" if resolution.conflict else "applied"

        await self._keep_local(integration, remote, local, record, resolution)
        return "conflicts" if resolution.conflict else "kept_local"

    async def _apply_remote_winner(
        self,
        integration: Integration,
        remote: RemoteEvent,
        local: Optional[CanonicalEvent],
        event_id: Optional[str],
        resolution: Resolution,
        merged_at: datetime,
        fan_out: list[Integration],
    ) -> None:
        if remote.deleted:
            event = await self.store.tombstone(local.id, merged_at)
        else:
            event = await self.store.apply_external_event(
                remote, event_id=local.id if local else event_id, merged_at=merged_at
            )

        # A queued push of the old local state must not overwrite the winner
        await self.queue.supersede_pending_pushes(event.id, integration.id, "remote version applied")
        await self.ledger.mark_synced(
            event.id, integration.id, remote.external_id, remote.remote_version, local_version=event.local_version
        )
        if resolution.conflict:
            await self.ledger.mark_conflict(
                event.id, integration.id, resolution.loser_snapshot or {},
                remote_version=remote.remote_version,
                local_version=event.local_version,
                external_id=remote.external_id,
            )

        for target in fan_out:
            if event.is_deleted:
                operation = QueueOperation.PUSH_DELETE
            else:
                target_record = await self.ledger.get(event.id, target.id)
                has_remote = target_record is not None and target_record.external_id is not None
                operation = QueueOperation.PUSH_UPDATE if has_remote else QueueOperation.PUSH_CREATE
            await self._enqueue_push(target, event, operation)

    async def _keep_local(
        self,
        integration: Integration,
        remote: RemoteEvent,
        local: CanonicalEvent,
        record: Optional[SyncRecord],
        resolution: Resolution,
    ) -> None:
        # Remember this remote version as seen, then push the local state over it
        if resolution.conflict:
            await self.ledger.mark_conflict(
                local.id, integration.id, resolution.loser_snapshot or {},
                remote_version=remote.remote_version,
                external_id=remote.external_id,
            )
        else:
            await self.ledger.upsert(SyncRecord(
                event_id=local.id,
                integration_id=integration.id,
                external_id=remote.external_id,
                status=SyncStatus.PENDING,
                local_version=record.local_version if record else None,
                remote_version=remote.remote_version,
                last_synced_at=record.last_synced_at if record else None,
                conflict_snapshot=record.conflict_snapshot if record else None,
            ))

        if not integration.push_enabled:
            return

        if local.is_deleted:
            operation = QueueOperation.PUSH_DELETE
        elif remote.deleted:
            operation = QueueOperation.PUSH_CREATE
        else:
            operation = QueueOperation.PUSH_UPDATE
        await self._enqueue_push(integration, local, operation)

    # Queue processing

    async def process_queue_item(self, item: QueueItem) -> str:
        """
        Execute one claimed queue item and settle it as completed, retrying or
        failed. Returns the resulting queue status.
        """
        integration = await integrations.get_integration(item.integration_id)
        if integration is None or not integration.is_active:
            await self.queue.mark_failed(item, "integration inactive or removed")
            return QueueStatus.FAILED.value

        try:
            if item.operation == QueueOperation.PULL_INCREMENTAL:
                await self.process_pull_operation(integration)
            else:
                event = await self._event_for_item(item)
                if event is None:
                    await self.queue.mark_completed(item)
                    return QueueStatus.COMPLETED.value
                await self._push(integration, event, item.operation, item.payload)
        except Exception as e:
            return await self._handle_item_failure(integration, item, e)

        await self.queue.mark_completed(item)
        return QueueStatus.COMPLETED.value

    async def _event_for_item(self, item: QueueItem) -> Optional[CanonicalEvent]:
        """Current local state of the item's event, or its queued snapshot once purged."""
        if item.event_id:
            event = await self.store.get_event(item.event_id)
            if event is not None:
                return event

        snapshot = item.payload.get("event")
        if not snapshot:
            logger.warning(f"Queue item {item.id} has no event to push")
            return None

        event = CanonicalEvent(**snapshot)
        if not event.is_deleted:
            # Purged locally, so the only sensible push is the deletion
            event = event.model_copy(update={"deleted_at": datetime.utcnow()})
        return event

    async def _handle_item_failure(self, integration: Integration, item: QueueItem, error: Exception) -> str:
        message = str(error) or error.__class__.__name__

        if is_retryable(error) or not isinstance(error, SyncError):
            if not isinstance(error, SyncError):
                logger.exception(f"Unexpected error processing queue item {item.id}: {error}")
            item = await self.queue.mark_retry(item, message, retry_after=_retry_after(error))
        else:
            await self.queue.mark_failed(item, message)

        terminal = item.status == QueueStatus.FAILED

        if item.operation.is_push and item.event_id:
            if terminal:
                await self.ledger.mark_failed(item.event_id, integration.id, error=message, retry_count=item.retry_count)
            else:
                await self.ledger.mark_pending(item.event_id, integration.id, error=message, retry_count=item.retry_count)
        else:
            await integrations.record_sync_error(integration.id, message)

        await record_sync_log(
            item.operation.value, "failed" if terminal else "retry",
            {"error": message, "retry_count": item.retry_count, "queue_item_id": item.id},
            integration_id=integration.id, event_id=item.event_id,
        )

        if terminal:
            alert_type = "authentication_failed" if isinstance(error, AuthenticationError) else "queue_item_failed"
            await self._alert_failure(
                integration.id,
                f"{item.operation.value} (queue item {item.id}) failed after {item.retry_count} retries: {message}",
                alert_type=alert_type,
            )
        return item.status.value

    async def process_queue_batch(self, limit: int = 25, integration_id: Optional[str] = None) -> dict:
        """
        Process ready queue items: one serial worker per integration,
        integrations in parallel.
        """
        if await is_sync_paused():
            logger.debug("Sync is paused, skipping queue processing")
            return {"processed": 0, "paused": True, "outcomes": [], "stats": await self.queue.stats()}

        items = await self.queue.dequeue_ready(limit, integration_id=integration_id)

        grouped: "OrderedDict[str, list[QueueItem]]" = OrderedDict()
        for item in items:
            grouped.setdefault(item.integration_id, []).append(item)

        async def _worker(group_id: str, group: list[QueueItem]) -> list[dict]:
            results = []
            lock = await _get_integration_lock(group_id)
            async with lock:
                for item in group:
                    if not await self.queue.mark_processing(item, self.worker_id):
                        # Claimed by another worker, or superseded
                        continue
                    status = await self.process_queue_item(item)
                    results.append({
                        "id": item.id,
                        "operation": item.operation.value,
                        "integration_id": item.integration_id,
                        "event_id": item.event_id,
                        "status": status,
                    })
            return results

        batches = await asyncio.gather(*[_worker(gid, group) for gid, group in grouped.items()])
        outcomes = [outcome for batch in batches for outcome in batch]

        if outcomes:
            logger.info(f"Processed {len(outcomes)} queue item(s) across {len(grouped)} integration(s)")
        return {
            "processed": len(outcomes),
            "paused": False,
            "outcomes": outcomes,
            "stats": await self.queue.stats(),
        }

    async def requeue(self, item_id: int) -> Optional[QueueItem]:
        """Operator retry of a failed item."""
        item = await self.queue.requeue(item_id)
        if item and item.event_id and item.operation.is_push:
            await self.ledger.mark_pending(item.event_id, item.integration_id, retry_count=0)
        return item

    async def _alert_failure(self, integration_id: str, details: str, alert_type: str = "queue_item_failed") -> None:
        from syncengine.alerts.email import queue_alert

        try:
            await queue_alert(alert_type=alert_type, details=details, integration_id=integration_id)
        except Exception as e:
            logger.error(f"Failed to queue alert: {e}")


_orchestrator: Optional[SyncOrchestrator] = None


def get_orchestrator() -> SyncOrchestrator:
    """Process-wide orchestrator with default collaborators."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SyncOrchestrator()
    return _orchestrator


def set_orchestrator(orchestrator: Optional[SyncOrchestrator]) -> None:
    global _orchestrator
    _orchestrator = orchestrator
