"""Domain models shared by the sync engine."""

import json
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class ProviderKind(str, Enum):
    """Whether a provider can notify us of changes."""
    PUSH = "push"
    POLL = "poll"


class SyncDirection(str, Enum):
    """Which way events flow for an integration."""
    PUSH_ONLY = "push_only"
    PULL_ONLY = "pull_only"
    BIDIRECTIONAL = "bidirectional"


class SyncStatus(str, Enum):
    """Ledger state for one (event, integration) pair."""
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"
    FAILED = "failed"


class QueueOperation(str, Enum):
    """Unit of retryable work."""
    PUSH_CREATE = "push-create"
    PUSH_UPDATE = "push-update"
    PUSH_DELETE = "push-delete"
    PULL_INCREMENTAL = "pull-incremental"

    @property
    def is_push(self) -> bool:
        return self is not QueueOperation.PULL_INCREMENTAL


class QueueStatus(str, Enum):
    """Queue item lifecycle."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ChangeKind(str, Enum):
    """Kind of local write reported by the event CRUD layer."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"

    def to_operation(self) -> QueueOperation:
        return {
            ChangeKind.CREATED: QueueOperation.PUSH_CREATE,
            ChangeKind.UPDATED: QueueOperation.PUSH_UPDATE,
            ChangeKind.DELETED: QueueOperation.PUSH_DELETE,
        }[self]


class WebhookState(str, Enum):
    """Push channel lifecycle for an integration."""
    UNREGISTERED = "unregistered"
    ACTIVE = "active"
    EXPIRING = "expiring"
    EXPIRED = "expired"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a provider or database timestamp into a naive UTC datetime.

    Accepts datetimes, ISO-8601 strings (with or without offset or trailing Z)
    and epoch milliseconds.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        parsed = datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class CanonicalEvent(BaseModel):
    """Provider-agnostic local event."""

    id: str
    title: str = ""
    description: Optional[str] = None
    location: Optional[str] = None
    start: datetime
    end: datetime
    is_all_day: bool = False
    is_multi_day: bool = False
    recurrence_rule: Optional[str] = None
    local_version: datetime
    deleted_at: Optional[datetime] = None

    @field_validator("start", "end", "local_version", "deleted_at", mode="before")
    @classmethod
    def _naive_utc(cls, value: Any) -> Any:
        return parse_timestamp(value)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def snapshot(self) -> dict:
        """JSON-safe copy used for queue payloads and conflict audit."""
        return self.model_dump(mode="json")

    @classmethod
    def from_row(cls, row) -> "CanonicalEvent":
        data = dict(row)
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            description=data.get("description"),
            location=data.get("location"),
            start=data["start_time"],
            end=data["end_time"],
            is_all_day=bool(data.get("is_all_day")),
            is_multi_day=bool(data.get("is_multi_day")),
            recurrence_rule=data.get("recurrence_rule"),
            local_version=data["local_version"],
            deleted_at=data.get("deleted_at"),
        )


class RemoteEvent(BaseModel):
    """An event as fetched from a provider, already decoded from wire format."""

    external_id: str
    remote_version: datetime
    local_event_id: Optional[str] = None
    deleted: bool = False
    title: str = ""
    description: Optional[str] = None
    location: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    is_all_day: bool = False
    is_multi_day: bool = False
    recurrence_rule: Optional[str] = None

    @field_validator("remote_version", "start", "end", mode="before")
    @classmethod
    def _naive_utc(cls, value: Any) -> Any:
        return parse_timestamp(value)

    def snapshot(self) -> dict:
        return self.model_dump(mode="json")


class ChannelMetadata(BaseModel):
    """Push channel registered with a provider."""

    channel_id: str
    resource_id: Optional[str] = None
    token: Optional[str] = None
    expiry: datetime

    @field_validator("expiry", mode="before")
    @classmethod
    def _naive_utc(cls, value: Any) -> Any:
        return parse_timestamp(value)

    def state(self, now: Optional[datetime] = None, renew_margin: timedelta = timedelta(hours=24)) -> WebhookState:
        now = now or datetime.utcnow()
        if now >= self.expiry:
            return WebhookState.EXPIRED
        if now >= self.expiry - renew_margin:
            return WebhookState.EXPIRING
        return WebhookState.ACTIVE


class Integration(BaseModel):
    """One configured external calendar connection."""

    id: str
    provider: str
    provider_kind: ProviderKind
    auth_ref: str
    external_calendar_id: str
    display_name: Optional[str] = None
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    cursor: Optional[str] = None
    channel: Optional[ChannelMetadata] = None
    is_active: bool = True
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @field_validator("last_sync_at", mode="before")
    @classmethod
    def _naive_utc(cls, value: Any) -> Any:
        return parse_timestamp(value)

    @property
    def push_enabled(self) -> bool:
        return self.sync_direction in (SyncDirection.PUSH_ONLY, SyncDirection.BIDIRECTIONAL)

    @property
    def pull_enabled(self) -> bool:
        return self.sync_direction in (SyncDirection.PULL_ONLY, SyncDirection.BIDIRECTIONAL)

    def webhook_state(self, now: Optional[datetime] = None, renew_margin: timedelta = timedelta(hours=24)) -> WebhookState:
        if self.channel is None:
            return WebhookState.UNREGISTERED
        return self.channel.state(now, renew_margin)

    @classmethod
    def from_row(cls, row) -> "Integration":
        data = dict(row)
        channel = None
        if data.get("channel_id") and data.get("channel_expiry"):
            channel = ChannelMetadata(
                channel_id=data["channel_id"],
                resource_id=data.get("channel_resource_id"),
                token=data.get("channel_token"),
                expiry=data["channel_expiry"],
            )
        return cls(
            id=data["id"],
            provider=data["provider"],
            provider_kind=data["provider_kind"],
            auth_ref=data["auth_ref"],
            external_calendar_id=data["external_calendar_id"],
            display_name=data.get("display_name"),
            sync_direction=data.get("sync_direction") or SyncDirection.BIDIRECTIONAL,
            cursor=data.get("cursor"),
            channel=channel,
            is_active=bool(data.get("is_active", True)),
            last_sync_at=data.get("last_sync_at"),
            last_error=data.get("last_error"),
        )


class SyncRecord(BaseModel):
    """Ledger row: what the remote side thinks, and whether we converged."""

    event_id: str
    integration_id: str
    external_id: Optional[str] = None
    status: SyncStatus = SyncStatus.PENDING
    local_version: Optional[datetime] = None
    remote_version: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    conflict_snapshot: Optional[dict] = None

    @field_validator("local_version", "remote_version", "last_synced_at", mode="before")
    @classmethod
    def _naive_utc(cls, value: Any) -> Any:
        return parse_timestamp(value)

    @classmethod
    def from_row(cls, row) -> "SyncRecord":
        data = dict(row)
        snapshot = data.get("conflict_snapshot")
        return cls(
            event_id=data["event_id"],
            integration_id=data["integration_id"],
            external_id=data.get("external_id"),
            status=data.get("status") or SyncStatus.PENDING,
            local_version=data.get("local_version"),
            remote_version=data.get("remote_version"),
            last_synced_at=data.get("last_synced_at"),
            last_error=data.get("last_error"),
            retry_count=data.get("retry_count") or 0,
            conflict_snapshot=json.loads(snapshot) if snapshot else None,
        )


class QueueItem(BaseModel):
    """Durable unit of retryable work."""

    id: Optional[int] = None
    operation: QueueOperation
    integration_id: str
    event_id: Optional[str] = None
    payload: dict = Field(default_factory=dict)
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    max_retries: Optional[int] = None
    scheduled_for: Optional[datetime] = None
    last_error: Optional[str] = None
    claimed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("scheduled_for", "processed_at", "created_at", mode="before")
    @classmethod
    def _naive_utc(cls, value: Any) -> Any:
        return parse_timestamp(value)

    @classmethod
    def from_row(cls, row) -> "QueueItem":
        data = dict(row)
        return cls(
            id=data["id"],
            operation=data["operation"],
            integration_id=data["integration_id"],
            event_id=data.get("event_id"),
            payload=json.loads(data["payload"]) if data.get("payload") else {},
            status=data["status"],
            retry_count=data.get("retry_count") or 0,
            max_retries=data.get("max_retries") if data.get("max_retries") is not None else 3,
            scheduled_for=data.get("scheduled_for"),
            last_error=data.get("last_error"),
            claimed_by=data.get("claimed_by"),
            processed_at=data.get("processed_at"),
            created_at=data.get("created_at"),
        )


class PushResult(BaseModel):
    """Outcome of a create/update call against a provider."""

    external_id: str
    remote_version: Optional[datetime] = None
    gone: bool = False

    @field_validator("remote_version", mode="before")
    @classmethod
    def _naive_utc(cls, value: Any) -> Any:
        return parse_timestamp(value)


class ChangeBatch(BaseModel):
    """Remote changes since a cursor, plus the cursor to store afterwards."""

    events: list[RemoteEvent] = Field(default_factory=list)
    new_cursor: Optional[str] = None
