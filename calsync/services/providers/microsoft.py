"""
Microsoft Graph calendar adapter.

Incremental sync uses calendarView/delta; the opaque cursor is the full
@odata.deltaLink URL.
"""

import re
from datetime import timedelta
from typing import Optional, List, Dict, Any
from urllib.parse import quote

import structlog

from calsync.errors import CursorExpired
from calsync.models.calendar_sync import SyncConnection, SyncProvider, ExternalCalendar
from calsync.schemas.events import CanonicalEvent, FetchResult, MicrosoftEvent, PushResult
from calsync.services.providers.base import CalendarProvider, MAX_PAGES
from calsync.utils.timezones import (
    add_minutes,
    civil_datetime,
    export_all_day_end,
    import_all_day_end,
    microsoft_timezone,
    parse_date,
    parse_instant,
    safe_user_timezone,
    to_user_local,
    utc_now,
)

logger = structlog.get_logger()

API_BASE = "https://graph.microsoft.com/v1.0"
PAGE_SIZE = 1000
MAX_WINDOW = timedelta(days=365)

DELTA_SELECT_FIELDS = [
    "id", "subject", "body", "bodyPreview", "location", "isAllDay",
    "start", "end", "seriesMasterId", "originalStart",
    "originalStartTimeZone", "originalEndTimeZone", "lastModifiedDateTime",
]
DETAIL_SELECT_FIELDS = [
    "subject", "body", "bodyPreview", "location", "isAllDay", "start", "end",
]

_TOP_PARAM = re.compile(r"([?&])(?:%24|\$)top=[^&]*&?", re.IGNORECASE)
_SELECT_PARAM = re.compile(r"(?:%24|\$)select=", re.IGNORECASE)

# Previews at least this long may be cut off
PREVIEW_TRUNCATION = 200


def sanitize_delta_link(url: Optional[str]) -> Optional[str]:
    """Strip $top from a delta/next link; Graph rejects it on follow-up requests."""
    if not url:
        return None
    cleaned = _TOP_PARAM.sub(r"\1", url)
    return cleaned.rstrip("?&")


def _needs_details(raw: MicrosoftEvent) -> bool:
    if not (raw.subject or "").strip():
        return True

    content = ((raw.body.content if raw.body else None) or "").strip()
    preview = (raw.body_preview or "").strip()

    if not content and preview:
        return True
    if content and len(preview) >= PREVIEW_TRUNCATION:
        return len(content) <= len(preview)
    return False


class MicrosoftCalendarProvider(CalendarProvider):
    """Microsoft Graph v1.0 adapter."""

    provider = SyncProvider.MICROSOFT

    def _events_url(self, calendar_id: str, event_id: Optional[str] = None) -> str:
        url = f"{API_BASE}/me/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url += f"/{quote(event_id, safe='')}"
        return url

    def _prefer_header(self, user_timezone: str, page_size: bool = True) -> str:
        parts = []
        zone = microsoft_timezone(user_timezone)
        if zone:
            parts.append(f'outlook.timezone="{zone}"')
        if page_size:
            parts.append(f"odata.maxpagesize={PAGE_SIZE}")
        parts.append('outlook.body-content-type="text"')
        return ", ".join(parts)

    def sync_window(self):
        start, end = super().sync_window()
        # calendarView/delta rejects ranges wider than a year
        if end - start > MAX_WINDOW:
            start = end - MAX_WINDOW
        return start, end

    # ==================== Calendars ====================

    async def list_calendars(self, connection: SyncConnection) -> List[ExternalCalendar]:
        response = await self._request(connection, "GET", f"{API_BASE}/me/calendars")
        self._raise_for_fetch(response)

        return [
            ExternalCalendar(
                id=item["id"],
                name=item.get("name") or item["id"],
                description=item.get("description"),
                primary=item.get("isDefaultCalendar", False),
            )
            for item in response.json().get("value", [])
        ]

    async def get_calendar_name(self, connection: SyncConnection, calendar_id: str) -> str:
        response = await self._request(connection, "GET", f"{API_BASE}/me/calendars/{quote(calendar_id, safe='')}")
        if response.is_success:
            return response.json().get("name") or f"Calendar {calendar_id}"
        return f"External Calendar {calendar_id}"

    # ==================== Events ====================

    def _effective_cursor(self, cursor: Optional[str], calendar_id: str) -> Optional[str]:
        effective = sanitize_delta_link(cursor)
        if effective and not _SELECT_PARAM.search(effective):
            # Old links were created without $select and return bodiless items
            logger.warning("microsoft_delta_link_missing_select",
                           external_calendar_id=calendar_id)
            return None
        return effective

    async def _fetch(
        self,
        connection: SyncConnection,
        calendar_id: str,
        cursor: Optional[str],
        user_timezone: str,
    ) -> FetchResult:
        effective_cursor = self._effective_cursor(cursor, calendar_id)
        result = FetchResult(cursor_reset=bool(cursor) and not effective_cursor)
        headers = {"Prefer": self._prefer_header(user_timezone)}

        if effective_cursor:
            next_url, params = effective_cursor, None
        else:
            window_start, window_end = self.sync_window()
            next_url = f"{API_BASE}/me/calendars/{quote(calendar_id, safe='')}/calendarView/delta"
            params = {
                "startDateTime": window_start.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "endDateTime": window_end.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "$select": ",".join(DELTA_SELECT_FIELDS),
            }

        delta_link: Optional[str] = None
        pages = 0

        while next_url and pages < MAX_PAGES:
            pages += 1
            response = await self._request(connection, "GET", next_url, params=params, headers=headers)
            params = None

            if effective_cursor and response.status_code == 410:
                raise CursorExpired(f"Graph delta link expired for calendar {calendar_id}")
            if (effective_cursor and response.status_code == 400
                    and "ErrorInvalidUrlQuery" in response.text and "$top" in response.text):
                raise CursorExpired(f"Graph rejected $top in delta link for calendar {calendar_id}")
            self._raise_for_fetch(response, calendar_id)

            data = response.json()
            for item in data.get("value", []):
                try:
                    raw = MicrosoftEvent.model_validate(item)
                    if raw.is_removed:
                        result.deleted_ids.append(raw.id)
                        continue
                    result.events.append(self._raw_to_canonical(raw, user_timezone))
                except ValueError as e:
                    logger.warning("microsoft_event_skipped",
                                   connection_id=connection.id,
                                   external_calendar_id=calendar_id,
                                   external_event_id=item.get("id"),
                                   error=str(e))

            next_url = sanitize_delta_link(data.get("@odata.nextLink"))
            if data.get("@odata.deltaLink"):
                delta_link = sanitize_delta_link(data["@odata.deltaLink"])

        if next_url:
            logger.warning("microsoft_fetch_page_limit_reached",
                           connection_id=connection.id,
                           external_calendar_id=calendar_id,
                           max_pages=MAX_PAGES)

        result.next_cursor = delta_link or effective_cursor

        if result.events or result.deleted_ids:
            logger.info("microsoft_events_fetched",
                        connection_id=connection.id,
                        external_calendar_id=calendar_id,
                        count=len(result.events),
                        deleted=len(result.deleted_ids),
                        incremental=bool(effective_cursor))
        return result

    async def enrich_event(
        self,
        connection: SyncConnection,
        calendar_id: str,
        event: CanonicalEvent,
        user_timezone: str,
    ) -> CanonicalEvent:
        """Re-fetch one event when the delta item came without subject or full body."""
        if not event.needs_details or not event.external_id:
            return event

        logger.info("microsoft_event_details_fetch",
                    connection_id=connection.id,
                    external_calendar_id=calendar_id,
                    external_event_id=event.external_id)

        response = await self._request(
            connection,
            "GET",
            self._events_url(calendar_id, event.external_id),
            params={"$select": ",".join(DETAIL_SELECT_FIELDS)},
            headers={"Prefer": self._prefer_header(user_timezone, page_size=False)},
        )
        if not response.is_success:
            logger.warning("microsoft_event_details_failed",
                           connection_id=connection.id,
                           external_event_id=event.external_id,
                           status_code=response.status_code)
            return event

        details = {"id": event.external_id, **response.json()}
        try:
            detailed = self.to_canonical(details, user_timezone)
        except ValueError as e:
            logger.warning("microsoft_event_details_invalid",
                           connection_id=connection.id,
                           external_event_id=event.external_id,
                           error=str(e))
            return event

        return event.model_copy(update={
            "title": detailed.title,
            "description": detailed.description,
            "location": detailed.location,
            "all_day": detailed.all_day,
            "start_date": detailed.start_date,
            "start_time": detailed.start_time,
            "end_date": detailed.end_date,
            "end_time": detailed.end_time,
            "needs_details": False,
        })

    async def push_event(
        self,
        connection: SyncConnection,
        calendar_id: str,
        event: CanonicalEvent,
        user_timezone: str,
        external_id: Optional[str] = None,
    ) -> PushResult:
        payload = self.from_canonical(event, user_timezone)

        if external_id:
            operation = "update"
            response = await self._request(connection, "PATCH", self._events_url(calendar_id, external_id), json=payload)
        else:
            operation = "create"
            response = await self._request(connection, "POST", self._events_url(calendar_id), json=payload)
        self._raise_for_write(response, operation, external_id)

        data = response.json()
        logger.info("microsoft_event_pushed",
                    connection_id=connection.id,
                    external_calendar_id=calendar_id,
                    external_event_id=data["id"],
                    operation=operation)
        return PushResult(
            external_id=data["id"],
            last_modified=parse_instant(data.get("lastModifiedDateTime")) or utc_now(),
        )

    async def delete_event(self, connection: SyncConnection, calendar_id: str, external_id: str) -> None:
        response = await self._request(connection, "DELETE", self._events_url(calendar_id, external_id))
        if response.status_code == 404:
            logger.info("microsoft_event_already_deleted",
                        connection_id=connection.id,
                        external_event_id=external_id)
            return
        self._raise_for_write(response, "delete", external_id)

    # ==================== Translation ====================

    def to_canonical(self, raw: Dict[str, Any], user_timezone: str) -> CanonicalEvent:
        return self._raw_to_canonical(MicrosoftEvent.model_validate(raw), user_timezone)

    def _raw_to_canonical(self, raw: MicrosoftEvent, user_timezone: str) -> CanonicalEvent:
        if raw.start is None or not raw.start.date_time:
            raise ValueError(f"Microsoft event {raw.id} has no start")

        fields: Dict[str, Any] = {
            "external_id": raw.id,
            "title": raw.subject or "Untitled Event",
            "description": (raw.body.content if raw.body else None) or raw.body_preview or "",
            "location": (raw.location.display_name if raw.location else None) or "",
            "last_modified": parse_instant(raw.last_modified_date_time) or utc_now(),
            "needs_details": _needs_details(raw),
        }

        if raw.series_master_id:
            fields["recurrence_parent_id"] = raw.series_master_id
            if raw.original_start:
                fields["original_date"] = parse_date(raw.original_start)

        if raw.is_all_day:
            start_date = parse_date(raw.start.date_time)
            if start_date is None:
                raise ValueError(f"Microsoft event {raw.id} has an unparseable start")
            end_date = import_all_day_end(parse_date(raw.end.date_time)) if raw.end else None
            fields.update(
                all_day=True,
                start_date=start_date,
                end_date=max(end_date, start_date) if end_date else start_date,
            )
            return CanonicalEvent(**fields)

        start = to_user_local(
            raw.start.date_time,
            user_timezone,
            [raw.start.time_zone, raw.original_start_time_zone, raw.original_end_time_zone],
        )
        if start is None:
            raise ValueError(f"Microsoft event {raw.id} has an unparseable start")

        end = None
        if raw.end and raw.end.date_time:
            end = to_user_local(
                raw.end.date_time,
                user_timezone,
                [raw.end.time_zone, raw.original_end_time_zone, raw.original_start_time_zone],
            )
        if end is None:
            end = add_minutes(start[0], start[1], 60)

        fields.update(
            all_day=False,
            start_date=start[0],
            start_time=start[1],
            end_date=end[0],
            end_time=end[1],
        )
        return CanonicalEvent(**fields)

    def from_canonical(self, event: CanonicalEvent, user_timezone: str) -> Dict[str, Any]:
        timezone = safe_user_timezone(user_timezone)
        zone_name = microsoft_timezone(timezone) or timezone

        if event.all_day:
            end_date = export_all_day_end(event.end_date or event.start_date)
            start_value = civil_datetime(event.start_date, "00:00")
            end_value = civil_datetime(end_date, "00:00")
        else:
            start_time = event.start_time or "00:00"
            if event.end_time:
                end_date, end_time = event.end_date or event.start_date, event.end_time
            else:
                end_date, end_time = add_minutes(event.start_date, start_time, 60)
            start_value = civil_datetime(event.start_date, start_time)
            end_value = civil_datetime(end_date, end_time)

        payload: Dict[str, Any] = {
            "subject": event.title,
            "body": {"contentType": "HTML", "content": event.description or ""},
            "isAllDay": event.all_day,
            "start": {"dateTime": start_value, "timeZone": zone_name},
            "end": {"dateTime": end_value, "timeZone": zone_name},
        }
        if event.location:
            payload["location"] = {"displayName": event.location}
        return payload
