"""Application configuration management."""

import re
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/sync-engine.db"

    # Server
    public_url: str = "http://localhost:3000"
    log_level: str = "info"

    # Shared secret for the scheduler-facing endpoints (disabled when unset)
    api_token: Optional[str] = None

    # Runtime features
    enable_webhooks: bool = True
    process_queue_on_webhook: bool = True

    # Rate limiting
    rate_limit_per_minute: int = 60
    webhook_rate_limit_per_minute: int = 120

    # Queue
    queue_process_minutes: int = 1
    queue_batch_size: int = 25
    queue_max_retries: int = 3
    queue_retention_days: int = 7
    # A processing claim older than this belongs to a worker that died
    queue_claim_timeout_minutes: int = 30

    # Polling and webhooks
    poll_interval_minutes: int = 2
    poll_reconcile_minutes: int = 10
    webhook_renewal_hours: int = 6
    webhook_channel_ttl_hours: int = 144
    webhook_renew_margin_hours: int = 24

    # Provider calls
    adapter_timeout_seconds: float = 30.0
    full_sync_past_days: int = 30
    full_sync_future_days: int = 365
    default_timezone: str = "UTC"

    # Google Calendar
    calendar_sync_tag: str = "calendarSyncEngine"

    # Notion
    notion_api_url: str = "https://api.notion.com/v1"
    notion_version: str = "2022-06-28"
    notion_title_property: str = "Title"
    notion_date_property: str = "Date"
    notion_description_property: str = "Description"
    notion_location_property: str = "Location"
    notion_local_id_property: str = "Local Event ID"

    # Default credential provider: auth_ref -> access token
    static_tokens: dict[str, str] = {}

    # Alerts
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from_address: Optional[str] = None
    alert_recipients: str = ""

    # Retention settings (days)
    audit_log_retention_days: int = 90

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def _parse_email_list(raw: Optional[str]) -> list[str]:
    """Parse comma/newline/semicolon separated email values."""
    if not raw:
        return []

    emails: list[str] = []
    for token in re.split(r"[,\n;]+", raw):
        email = token.strip().lower()
        if email and email not in emails:
            emails.append(email)
    return emails


def get_alert_recipients() -> list[str]:
    """Get normalized alert recipient addresses."""
    return _parse_email_list(get_settings().alert_recipients)
