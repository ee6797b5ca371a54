"""Alert delivery and cleanup jobs."""

import logging
from datetime import datetime, timedelta

from syncengine.database import get_database, transaction

logger = logging.getLogger(__name__)

MAX_ALERT_ATTEMPTS = 3


async def process_alert_queue(batch_size: int = 10) -> int:
    """Send unsent alerts. Returns the number sent."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM alert_queue
           WHERE sent_at IS NULL AND attempts < ?
           ORDER BY created_at ASC
           LIMIT ?""",
        (MAX_ALERT_ATTEMPTS, batch_size)
    )
    alerts = await cursor.fetchall()

    if not alerts:
        return 0

    from syncengine.alerts.email import send_email

    sent = 0
    for alert in alerts:
        now = datetime.utcnow().isoformat()
        try:
            await send_email(
                to_email=alert["recipient_email"],
                subject=alert["subject"],
                body=alert["body"],
            )
        except Exception as e:
            logger.error(f"Failed to send alert {alert['id']}: {e}")
            async with transaction() as db:
                await db.execute(
                    """UPDATE alert_queue
                       SET attempts = attempts + 1, last_attempt = ?
                       WHERE id = ?""",
                    (now, alert["id"])
                )
            continue

        async with transaction() as db:
            await db.execute(
                "UPDATE alert_queue SET sent_at = ?, attempts = attempts + 1, last_attempt = ? WHERE id = ?",
                (now, now, alert["id"])
            )
        sent += 1
        logger.info(f"Sent alert {alert['id']} to {alert['recipient_email']}")

    return sent


async def cleanup_stale_alerts(retention_days: int = 7) -> int:
    """Delete sent alerts and alerts that ran out of attempts."""
    cutoff = (datetime.utcnow() - timedelta(days=retention_days)).isoformat()

    async with transaction() as db:
        cursor = await db.execute(
            """DELETE FROM alert_queue
               WHERE (sent_at IS NOT NULL AND sent_at < ?)
               OR (attempts >= ? AND created_at < ?)
               RETURNING id""",
            (cutoff, MAX_ALERT_ATTEMPTS, cutoff)
        )
        deleted = await cursor.fetchall()

    if deleted:
        logger.info(f"Cleaned up {len(deleted)} stale alerts")
    return len(deleted)
