"""Google Calendar adapter."""

import asyncio
import hashlib
import logging
import secrets
import uuid
from datetime import date, datetime, time, timedelta
from typing import Optional

import httpx
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from syncengine.config import get_settings
from syncengine.models import (
    CanonicalEvent,
    ChangeBatch,
    ChannelMetadata,
    PushResult,
    RemoteEvent,
    parse_timestamp,
)
from syncengine.sync.adapters.base import PushCapableAdapter
from syncengine.sync.errors import (
    AuthenticationError,
    PermanentSyncError,
    RateLimitedError,
    TransientSyncError,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
LOCAL_ID_PROPERTY = "localEventId"


def google_event_id(local_event_id: str) -> str:
    """
    Deterministic Google event id for a local event.

    Hex digits are valid base32hex, so the digest can be supplied as the id on
    insert; retrying an insert then hits the same event instead of a copy.
    """
    return hashlib.sha1(local_event_id.encode("utf-8")).hexdigest()


def _retry_after(headers) -> Optional[float]:
    value = headers.get("retry-after") if headers is not None else None
    if not value:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def translate_http_error(error: HttpError) -> Exception:
    """Map a Google API error onto the sync error taxonomy."""
    status = error.resp.status
    content = error.content or b""
    if isinstance(content, str):
        content = content.encode("utf-8")

    if status == 401:
        return AuthenticationError(f"Google rejected credential: {error}")
    if status == 429 or (status == 403 and b"ateLimitExceeded" in content):
        return RateLimitedError(f"Google rate limit: {error}", retry_after=_retry_after(error.resp))
    if status >= 500:
        return TransientSyncError(f"Google server error {status}: {error}")
    return PermanentSyncError(f"Google rejected request ({status}): {error}")


def to_google_event(event: CanonicalEvent, sync_tag: str, timezone_name: str = "UTC") -> dict:
    """Build a Google event body from a local event."""
    body = {
        "summary": event.title,
        "description": event.description or "",
        "location": event.location or "",
        # Restores an event that was cancelled remotely
        "status": "confirmed",
        "extendedProperties": {
            "private": {
                LOCAL_ID_PROPERTY: event.id,
                sync_tag: "true",
            }
        },
    }

    if event.is_all_day:
        start_day = event.start.date()
        # All-day end dates are exclusive
        end_day = max(event.end.date(), start_day + timedelta(days=1))
        body["start"] = {"date": start_day.isoformat()}
        body["end"] = {"date": end_day.isoformat()}
    else:
        body["start"] = {"dateTime": event.start.isoformat() + "Z", "timeZone": timezone_name}
        body["end"] = {"dateTime": event.end.isoformat() + "Z", "timeZone": timezone_name}

    if event.recurrence_rule:
        rule = event.recurrence_rule
        if not rule.startswith("RRULE:"):
            rule = f"RRULE:{rule}"
        body["recurrence"] = [rule]

    return body


def _parse_google_time(value: dict) -> tuple[Optional[datetime], bool]:
    if not value:
        return None, False
    if value.get("dateTime"):
        return parse_timestamp(value["dateTime"]), False
    if value.get("date"):
        return datetime.combine(date.fromisoformat(value["date"]), time.min), True
    return None, False


def from_google_event(item: dict) -> RemoteEvent:
    """Decode a Google event resource."""
    private = item.get("extendedProperties", {}).get("private", {})
    start, is_all_day = _parse_google_time(item.get("start", {}))
    end, _ = _parse_google_time(item.get("end", {}))

    recurrence_rule = None
    for rule in item.get("recurrence", []):
        if rule.startswith("RRULE:"):
            recurrence_rule = rule[len("RRULE:"):]
            break

    is_multi_day = False
    if start and end:
        last_day = end - timedelta(days=1) if is_all_day else end
        is_multi_day = last_day.date() > start.date()

    return RemoteEvent(
        external_id=item["id"],
        remote_version=parse_timestamp(item.get("updated")) or datetime.utcnow(),
        local_event_id=private.get(LOCAL_ID_PROPERTY),
        deleted=item.get("status") == "cancelled",
        title=item.get("summary") or "",
        description=item.get("description") or None,
        location=item.get("location") or None,
        start=start,
        end=end or start,
        is_all_day=is_all_day,
        is_multi_day=is_multi_day,
        recurrence_rule=recurrence_rule,
    )


class GoogleCalendarAdapter(PushCapableAdapter):
    """Google Calendar v3 events, incremental sync tokens and watch channels."""

    provider = "google"

    def __init__(self, integration, credentials, timeout=None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(integration, credentials, timeout)
        self.settings = get_settings()
        self.calendar_id = integration.external_calendar_id
        self._transport = transport
        self._services: dict[str, object] = {}

    def _service(self, token: str):
        if token not in self._services:
            self._services = {
                token: build("calendar", "v3", credentials=Credentials(token=token), cache_discovery=False)
            }
        return self._services[token]

    async def _execute(self, token: str, make_request):
        """Run a blocking client library request off the event loop."""
        service = self._service(token)

        def _run():
            return make_request(service).execute()

        try:
            return await asyncio.to_thread(_run)
        except OSError as e:
            raise TransientSyncError(f"Google transport error: {e}")

    async def create(self, event: CanonicalEvent) -> PushResult:
        body = to_google_event(event, self.settings.calendar_sync_tag, self.settings.default_timezone)
        event_id = google_event_id(event.id)
        body["id"] = event_id

        async def _insert(token: str) -> dict:
            try:
                return await self._execute(
                    token,
                    lambda s: s.events().insert(calendarId=self.calendar_id, body=body, sendUpdates="none"),
                )
            except HttpError as e:
                if e.resp.status != 409:
                    raise translate_http_error(e)

            # Already exists from an earlier attempt
            logger.info(f"Google event {event_id} already exists, updating instead")
            update_body = {k: v for k, v in body.items() if k != "id"}
            try:
                return await self._execute(
                    token,
                    lambda s: s.events().update(
                        calendarId=self.calendar_id, eventId=event_id, body=update_body, sendUpdates="none"
                    ),
                )
            except HttpError as e:
                raise translate_http_error(e)

        result = await self._call("create", _insert)
        return PushResult(external_id=result["id"], remote_version=parse_timestamp(result.get("updated")))

    async def update(self, external_id: str, event: CanonicalEvent) -> PushResult:
        body = to_google_event(event, self.settings.calendar_sync_tag, self.settings.default_timezone)

        async def _update(token: str) -> Optional[dict]:
            try:
                return await self._execute(
                    token,
                    lambda s: s.events().update(
                        calendarId=self.calendar_id, eventId=external_id, body=body, sendUpdates="none"
                    ),
                )
            except HttpError as e:
                if e.resp.status in (404, 410):
                    return None
                raise translate_http_error(e)

        result = await self._call("update", _update)
        if result is None:
            logger.info(f"Google event {external_id} no longer exists")
            return PushResult(external_id=external_id, gone=True)
        return PushResult(external_id=result["id"], remote_version=parse_timestamp(result.get("updated")))

    async def delete(self, external_id: str) -> None:
        async def _delete(token: str) -> None:
            try:
                await self._execute(
                    token,
                    lambda s: s.events().delete(calendarId=self.calendar_id, eventId=external_id, sendUpdates="none"),
                )
            except HttpError as e:
                if e.resp.status in (404, 410):
                    # Already deleted
                    return
                raise translate_http_error(e)

        await self._call("delete", _delete)

    async def find_external_id(self, event: CanonicalEvent) -> Optional[str]:
        event_id = google_event_id(event.id)

        async def _get(token: str) -> Optional[dict]:
            try:
                return await self._execute(
                    token, lambda s: s.events().get(calendarId=self.calendar_id, eventId=event_id)
                )
            except HttpError as e:
                if e.resp.status in (404, 410):
                    return None
                raise translate_http_error(e)

        result = await self._call("get", _get)
        if result is None or result.get("status") == "cancelled":
            return None
        return result["id"]

    async def fetch_changes_since(self, cursor: Optional[str]) -> ChangeBatch:
        """
        Incremental listing with the stored sync token.

        An expired token (410) falls back to a full listing over the configured
        time window, which also yields a fresh token.
        """
        async def _list(token: str) -> tuple[list[dict], Optional[str]]:
            if cursor:
                try:
                    return await self._list_pages(token, {"syncToken": cursor})
                except HttpError as e:
                    if e.resp.status != 410:
                        raise translate_http_error(e)
                    logger.info(f"Sync token expired for integration {self.integration.id}, doing full sync")

            now = datetime.utcnow()
            window = {
                "timeMin": (now - timedelta(days=self.settings.full_sync_past_days)).isoformat() + "Z",
                "timeMax": (now + timedelta(days=self.settings.full_sync_future_days)).isoformat() + "Z",
            }
            try:
                return await self._list_pages(token, window)
            except HttpError as e:
                raise translate_http_error(e)

        items, next_sync_token = await self._call("list", _list)
        events = [from_google_event(item) for item in items]
        return ChangeBatch(events=events, new_cursor=next_sync_token or cursor)

    async def _list_pages(self, token: str, params: dict) -> tuple[list[dict], Optional[str]]:
        request_params = {
            "calendarId": self.calendar_id,
            "maxResults": 2500,
            "singleEvents": False,
            "showDeleted": True,
            **params,
        }
        all_items: list[dict] = []
        page_token = None

        while True:
            if page_token:
                request_params["pageToken"] = page_token

            result = await self._execute(token, lambda s: s.events().list(**request_params))
            all_items.extend(result.get("items", []))

            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return all_items, result.get("nextSyncToken")

    async def register_webhook(self, callback_url: str) -> ChannelMetadata:
        channel_id = str(uuid.uuid4())
        channel_token = secrets.token_urlsafe(32)

        # Google caps channel lifetime at 7 days
        expiration = datetime.utcnow() + timedelta(hours=self.settings.webhook_channel_ttl_hours)
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": callback_url,
            "expiration": str(int((expiration - datetime(1970, 1, 1)).total_seconds() * 1000)),
            "token": channel_token,
        }

        async def _watch(token: str) -> dict:
            response = await self._post(
                token,
                f"{GOOGLE_CALENDAR_API}/calendars/{self.calendar_id}/events/watch",
                body,
            )
            if response.status_code != 200:
                raise self._translate_response(response, "register webhook")
            return response.json()

        result = await self._call("watch", _watch)
        expiry = parse_timestamp(result.get("expiration")) or expiration

        logger.info(f"Registered webhook channel {channel_id} for calendar {self.calendar_id}")
        return ChannelMetadata(
            channel_id=channel_id,
            resource_id=result.get("resourceId"),
            token=channel_token,
            expiry=expiry,
        )

    async def stop_webhook(self, channel: ChannelMetadata) -> None:
        async def _stop(token: str) -> None:
            response = await self._post(
                token,
                f"{GOOGLE_CALENDAR_API}/channels/stop",
                {"id": channel.channel_id, "resourceId": channel.resource_id},
            )
            # 404 is OK - channel might already be stopped
            if response.status_code not in (200, 204, 404):
                raise self._translate_response(response, "stop webhook")

        await self._call("stop", _stop)
        logger.info(f"Stopped webhook channel {channel.channel_id}")

    async def _post(self, token: str, url: str, body: dict) -> httpx.Response:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                return await client.post(
                    url,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Content-Type": "application/json",
                    },
                    json=body,
                )
        except httpx.TransportError as e:
            raise TransientSyncError(f"Google transport error: {e}")

    @staticmethod
    def _translate_response(response: httpx.Response, action: str) -> Exception:
        status = response.status_code
        message = f"Failed to {action} ({status}): {response.text}"
        if status == 401:
            return AuthenticationError(message)
        if status == 429 or (status == 403 and "ateLimitExceeded" in response.text):
            return RateLimitedError(message, retry_after=_retry_after(response.headers))
        if status >= 500:
            return TransientSyncError(message)
        return PermanentSyncError(message)
