"""Polling for providers without push notifications.

Each active poll-only integration gets its own interval job. Firing a job does
exactly what a webhook does: it queues an incremental pull.
"""

import logging
from typing import Optional

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger

from syncengine.config import get_settings
from syncengine.database import is_sync_paused
from syncengine.models import ProviderKind
from syncengine.sync import integrations
from syncengine.sync.webhooks import enqueue_pull

logger = logging.getLogger(__name__)

POLL_JOB_PREFIX = "poll:"


async def enqueue_poll(integration_id: str) -> Optional[int]:
    """Queue an incremental pull for a poll-only integration."""
    if await is_sync_paused():
        logger.debug("Sync is paused, skipping poll")
        return None

    integration = await integrations.get_integration(integration_id)
    if integration is None or not integration.is_active or not integration.pull_enabled:
        logger.debug(f"Integration {integration_id} no longer polled")
        return None

    item = await enqueue_pull(integration, trigger="poll")
    return item.id


class PollingScheduler:
    """Keeps one interval job per active poll-only integration."""

    def __init__(self, scheduler: BaseScheduler, interval_minutes: Optional[int] = None):
        self.scheduler = scheduler
        self.interval_minutes = interval_minutes or get_settings().poll_interval_minutes

    def _job_ids(self) -> set[str]:
        return {job.id for job in self.scheduler.get_jobs() if job.id.startswith(POLL_JOB_PREFIX)}

    def schedule(self, integration_id: str) -> None:
        self.scheduler.add_job(
            "syncengine.jobs.polling:enqueue_poll",
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            args=[integration_id],
            id=f"{POLL_JOB_PREFIX}{integration_id}",
            name=f"Poll {integration_id}",
            replace_existing=True,
        )

    def unschedule(self, integration_id: str) -> None:
        job_id = f"{POLL_JOB_PREFIX}{integration_id}"
        if self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)

    async def reconcile(self) -> dict:
        """Add jobs for new poll-only integrations and drop jobs for removed ones."""
        wanted = {
            integration.id
            for integration in await integrations.list_integrations(
                active_only=True, provider_kind=ProviderKind.POLL
            )
            if integration.pull_enabled
        }
        existing = {job_id[len(POLL_JOB_PREFIX):] for job_id in self._job_ids()}

        added = wanted - existing
        removed = existing - wanted
        for integration_id in added:
            self.schedule(integration_id)
        for integration_id in removed:
            self.unschedule(integration_id)

        if added or removed:
            logger.info(f"Polling jobs reconciled: {len(added)} added, {len(removed)} removed")
        return {"added": sorted(added), "removed": sorted(removed), "active": sorted(wanted)}


async def reconcile_poll_jobs() -> None:
    """Scheduled entry point for ``PollingScheduler.reconcile``."""
    from syncengine.jobs.scheduler import get_scheduler

    scheduler = get_scheduler()
    if scheduler is None:
        return
    await PollingScheduler(scheduler).reconcile()
