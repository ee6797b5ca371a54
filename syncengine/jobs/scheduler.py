"""APScheduler setup for background jobs."""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from syncengine.config import get_settings

logger = logging.getLogger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


def setup_scheduler() -> AsyncIOScheduler:
    """Set up and start the background scheduler."""
    global _scheduler

    settings = get_settings()

    _scheduler = AsyncIOScheduler()

    # Queue processing - every minute
    _scheduler.add_job(
        "syncengine.jobs.queue_job:run_queue_processing",
        trigger=IntervalTrigger(minutes=settings.queue_process_minutes),
        id="queue_processing",
        name="Sync Queue Processing",
        replace_existing=True,
    )

    # Poll job reconciliation - at startup, then periodically
    _scheduler.add_job(
        "syncengine.jobs.polling:reconcile_poll_jobs",
        id="poll_reconcile_initial",
        name="Poll Job Reconciliation (startup)",
        replace_existing=True,
    )
    _scheduler.add_job(
        "syncengine.jobs.polling:reconcile_poll_jobs",
        trigger=IntervalTrigger(minutes=settings.poll_reconcile_minutes),
        id="poll_reconcile",
        name="Poll Job Reconciliation",
        replace_existing=True,
    )

    if settings.enable_webhooks:
        _scheduler.add_job(
            "syncengine.jobs.webhook_renewal:renew_expiring_webhooks",
            trigger=IntervalTrigger(hours=settings.webhook_renewal_hours),
            id="webhook_renewal",
            name="Webhook Renewal",
            replace_existing=True,
        )
        # Open channels that are missing or expired on startup
        _scheduler.add_job(
            "syncengine.jobs.webhook_renewal:renew_expiring_webhooks",
            id="webhook_initial_registration",
            name="Webhook Initial Registration",
            replace_existing=True,
        )
    else:
        logger.info("Webhook renewal job disabled (ENABLE_WEBHOOKS=false)")

    # Alert queue processing - every minute
    _scheduler.add_job(
        "syncengine.jobs.alerts:process_alert_queue",
        trigger=IntervalTrigger(minutes=1),
        id="alert_processing",
        name="Alert Queue Processing",
        replace_existing=True,
    )

    # Retention cleanup - daily at 3 AM
    _scheduler.add_job(
        "syncengine.jobs.cleanup:run_retention_cleanup",
        trigger=CronTrigger(hour=3, minute=0),
        id="retention_cleanup",
        name="Retention Cleanup",
        replace_existing=True,
    )

    # Stale alert cleanup - daily at 4 AM
    _scheduler.add_job(
        "syncengine.jobs.alerts:cleanup_stale_alerts",
        trigger=CronTrigger(hour=4, minute=0),
        id="stale_alert_cleanup",
        name="Stale Alert Cleanup",
        replace_existing=True,
    )

    _scheduler.start()
    logger.info("Background scheduler started")

    return _scheduler


def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    global _scheduler

    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> Optional[AsyncIOScheduler]:
    """Get the current scheduler instance."""
    return _scheduler
