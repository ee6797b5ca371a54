"""Email alerts for sync failures that need an operator."""

import logging
from datetime import datetime, timedelta
from email.mime.text import MIMEText
from typing import Optional

import aiosmtplib

from syncengine.config import get_alert_recipients, get_settings
from syncengine.database import get_database, transaction

logger = logging.getLogger(__name__)

ALERT_SUBJECTS = {
    "queue_item_failed": "Calendar Sync - Operation Failed",
    "authentication_failed": "Calendar Sync - Authentication Required",
    "webhook_registration_failed": "Calendar Sync - Webhook Issue",
    "pull_failed": "Calendar Sync - Import Failing",
    "system_error": "Calendar Sync - System Error",
}


async def send_email(to_email: str, subject: str, body: str) -> None:
    """Send a plain-text email through the configured SMTP server."""
    settings = get_settings()

    if not settings.smtp_host:
        logger.warning("SMTP not configured, cannot send email")
        raise ValueError("SMTP not configured")

    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = settings.smtp_from_address or settings.smtp_username or ""
    msg["To"] = to_email

    await aiosmtplib.send(
        msg,
        hostname=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        start_tls=True,
    )
    logger.info(f"Email sent to {to_email}: {subject}")


def generate_alert_content(
    alert_type: str,
    details: str,
    integration_id: Optional[str] = None,
) -> tuple[str, str]:
    """Subject and body for an alert."""
    timestamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M UTC")
    subject = ALERT_SUBJECTS.get(alert_type, f"Calendar Sync - {alert_type}")

    body = f"Calendar Sync Engine Alert\n\nAlert Type: {alert_type}\nTime: {timestamp}\n"
    if integration_id:
        body += f"Integration: {integration_id}\n"
    body += f"\nDetails:\n{details}\n\n---\nQueue status: {get_settings().public_url}/api/sync/queue/stats\n"

    return subject, body


async def queue_alert(
    alert_type: str,
    details: str = "",
    integration_id: Optional[str] = None,
) -> int:
    """
    Queue an alert for each configured recipient.

    The same alert type for the same integration is sent at most once an hour.
    Returns the number of queued messages.
    """
    recipients = get_alert_recipients()
    if not recipients:
        logger.debug(f"No alert recipients configured, dropping {alert_type} alert")
        return 0

    subject, body = generate_alert_content(alert_type, details, integration_id)
    marker = f"Integration: {integration_id}\n" if integration_id else ""

    db = await get_database()
    dedup_cutoff = (datetime.utcnow() - timedelta(hours=1)).isoformat()
    cursor = await db.execute(
        """SELECT id FROM alert_queue
           WHERE alert_type = ? AND created_at > ? AND instr(body, ?) > 0
           LIMIT 1""",
        (alert_type, dedup_cutoff, marker)
    )
    if await cursor.fetchone():
        logger.debug(f"Skipping duplicate alert: {alert_type}")
        return 0

    now = datetime.utcnow().isoformat()
    async with transaction() as db:
        for recipient in recipients:
            await db.execute(
                """INSERT INTO alert_queue (alert_type, recipient_email, subject, body, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (alert_type, recipient, subject, body, now)
            )

    logger.info(f"Queued {alert_type} alert for {len(recipients)} recipients")
    return len(recipients)
