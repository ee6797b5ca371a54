"""Notion database adapter.

A Notion database acts as a calendar: each page is an event, with a date
property for its time span. Notion has no push mechanism, so changes are found
by querying pages edited since the last seen ``last_edited_time``.

Archived pages drop out of database queries, so a page deleted in Notion is
never reported as a deletion; the local event stays until it is deleted
locally.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

import httpx

from syncengine.config import get_settings
from syncengine.models import CanonicalEvent, ChangeBatch, PushResult, RemoteEvent, parse_timestamp
from syncengine.sync.adapters.base import ProviderAdapter
from syncengine.sync.errors import (
    AuthenticationError,
    PermanentSyncError,
    RateLimitedError,
    TransientSyncError,
)

logger = logging.getLogger(__name__)


def _rich_text(value: Optional[str]) -> list[dict]:
    if not value:
        return []
    # Notion caps a single text object at 2000 characters
    return [
        {"type": "text", "text": {"content": value[i:i + 2000]}}
        for i in range(0, len(value), 2000)
    ]


def _plain_text(items: Optional[list]) -> str:
    return "".join(item.get("plain_text") or item.get("text", {}).get("content", "") for item in items or [])


class NotionAdapter(ProviderAdapter):
    """Pages of one Notion database, polled by ``last_edited_time``."""

    provider = "notion"

    def __init__(self, integration, credentials, timeout=None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(integration, credentials, timeout)
        self.settings = get_settings()
        self.database_id = integration.external_calendar_id
        self._transport = transport

    def to_properties(self, event: CanonicalEvent) -> dict:
        """Page properties for a local event."""
        s = self.settings
        if event.is_all_day:
            start_day = event.start.date()
            # Notion all-day ranges are inclusive, ours end exclusively
            last_day = max(event.end.date() - timedelta(days=1), start_day)
            date_value = {"start": start_day.isoformat()}
            if last_day > start_day:
                date_value["end"] = last_day.isoformat()
        else:
            date_value = {
                "start": event.start.isoformat() + "Z",
                "end": event.end.isoformat() + "Z",
            }

        return {
            s.notion_title_property: {"title": _rich_text(event.title or "Untitled Event")},
            s.notion_date_property: {"date": date_value},
            s.notion_description_property: {"rich_text": _rich_text(event.description)},
            s.notion_location_property: {"rich_text": _rich_text(event.location)},
            s.notion_local_id_property: {"rich_text": _rich_text(event.id)},
        }

    def from_page(self, page: dict) -> RemoteEvent:
        """Decode a Notion page into a remote event."""
        s = self.settings
        properties = page.get("properties", {})

        date_value = (properties.get(s.notion_date_property) or {}).get("date") or {}
        raw_start = date_value.get("start")
        raw_end = date_value.get("end")
        is_all_day = bool(raw_start) and "T" not in raw_start

        start = end = None
        if raw_start and is_all_day:
            start = datetime.combine(date.fromisoformat(raw_start), time.min)
            last_day = date.fromisoformat(raw_end) if raw_end else start.date()
            end = datetime.combine(last_day + timedelta(days=1), time.min)
        elif raw_start:
            start = parse_timestamp(raw_start)
            end = parse_timestamp(raw_end) if raw_end else start

        is_multi_day = False
        if start and end:
            last = end - timedelta(days=1) if is_all_day else end
            is_multi_day = last.date() > start.date()

        local_id = _plain_text((properties.get(s.notion_local_id_property) or {}).get("rich_text"))

        return RemoteEvent(
            external_id=page["id"],
            remote_version=parse_timestamp(page.get("last_edited_time")) or datetime.utcnow(),
            local_event_id=local_id or None,
            deleted=bool(page.get("archived") or page.get("in_trash")),
            title=_plain_text((properties.get(s.notion_title_property) or {}).get("title")),
            description=_plain_text((properties.get(s.notion_description_property) or {}).get("rich_text")) or None,
            location=_plain_text((properties.get(s.notion_location_property) or {}).get("rich_text")) or None,
            start=start,
            end=end,
            is_all_day=is_all_day,
            is_multi_day=is_multi_day,
        )

    async def _request(self, token: str, method: str, path: str, body: Optional[dict] = None) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Notion-Version": self.settings.notion_version,
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.settings.notion_api_url,
                headers=headers,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=body)
        except httpx.TransportError as e:
            raise TransientSyncError(f"Notion transport error: {e}")

        status = response.status_code
        if status < 400 or status == 404:
            return response

        message = f"Notion {method} {path} failed ({status}): {response.text}"
        if status == 401:
            raise AuthenticationError(message)
        if status == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitedError(message, retry_after=float(retry_after) if retry_after else None)
        if status == 409 or status >= 500:
            raise TransientSyncError(message)
        raise PermanentSyncError(message)

    async def _query(self, token: str, filter: Optional[dict] = None) -> list[dict]:
        results: list[dict] = []
        start_cursor = None

        while True:
            body: dict = {
                "page_size": 100,
                "sorts": [{"timestamp": "last_edited_time", "direction": "ascending"}],
            }
            if filter:
                body["filter"] = filter
            if start_cursor:
                body["start_cursor"] = start_cursor

            response = await self._request(token, "POST", f"/databases/{self.database_id}/query", body)
            if response.status_code == 404:
                raise PermanentSyncError(f"Notion database {self.database_id} not found or not shared")
            data = response.json()
            results.extend(data.get("results", []))

            if not data.get("has_more"):
                break
            start_cursor = data.get("next_cursor")

        return results

    async def create(self, event: CanonicalEvent) -> PushResult:
        properties = self.to_properties(event)

        async def _create(token: str) -> dict:
            # A page from an earlier attempt carries our local id
            existing = await self._query(token, {
                "property": self.settings.notion_local_id_property,
                "rich_text": {"equals": event.id},
            })
            if existing:
                page_id = existing[0]["id"]
                logger.info(f"Notion page {page_id} already exists for event {event.id}, updating")
                response = await self._request(token, "PATCH", f"/pages/{page_id}", {"properties": properties})
                if response.status_code != 404:
                    return response.json()

            response = await self._request(token, "POST", "/pages", {
                "parent": {"database_id": self.database_id},
                "properties": properties,
            })
            if response.status_code == 404:
                raise PermanentSyncError(f"Notion database {self.database_id} not found or not shared")
            return response.json()

        page = await self._call("create", _create)
        return PushResult(external_id=page["id"], remote_version=parse_timestamp(page.get("last_edited_time")))

    async def update(self, external_id: str, event: CanonicalEvent) -> PushResult:
        properties = self.to_properties(event)

        async def _update(token: str) -> Optional[dict]:
            response = await self._request(token, "PATCH", f"/pages/{external_id}", {"properties": properties})
            if response.status_code == 404:
                return None
            page = response.json()
            if page.get("archived") or page.get("in_trash"):
                return None
            return page

        page = await self._call("update", _update)
        if page is None:
            logger.info(f"Notion page {external_id} no longer exists")
            return PushResult(external_id=external_id, gone=True)
        return PushResult(external_id=page["id"], remote_version=parse_timestamp(page.get("last_edited_time")))

    async def delete(self, external_id: str) -> None:
        async def _archive(token: str) -> None:
            # 404 means it is already gone
            await self._request(token, "PATCH", f"/pages/{external_id}", {"archived": True})

        await self._call("delete", _archive)

    async def find_external_id(self, event: CanonicalEvent) -> Optional[str]:
        pages = await self._call("query", lambda token: self._query(token, {
            "property": self.settings.notion_local_id_property,
            "rich_text": {"equals": event.id},
        }))
        return pages[0]["id"] if pages else None

    async def fetch_changes_since(self, cursor: Optional[str]) -> ChangeBatch:
        """
        Pages edited at or after ``cursor``.

        The cursor is the newest ``last_edited_time`` seen. The comparison is
        inclusive because Notion timestamps are minute-granular, so pages at
        the boundary are re-fetched and dropped by the ledger as already seen.
        """
        filter = None
        if cursor:
            filter = {
                "timestamp": "last_edited_time",
                "last_edited_time": {"on_or_after": cursor},
            }

        pages = await self._call("query", lambda token: self._query(token, filter))
        events = [self.from_page(page) for page in pages]

        new_cursor = cursor
        for page in pages:
            edited = page.get("last_edited_time")
            if edited and (new_cursor is None or parse_timestamp(edited) > parse_timestamp(new_cursor)):
                new_cursor = edited

        return ChangeBatch(events=events, new_cursor=new_cursor)
