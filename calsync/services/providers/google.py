"""
Google Calendar API adapter.
"""

from typing import Optional, List, Dict, Any
from urllib.parse import quote

import structlog

from calsync.errors import CursorExpired
from calsync.models.calendar_sync import SyncConnection, SyncProvider, ExternalCalendar
from calsync.schemas.events import CanonicalEvent, FetchResult, GoogleEvent, PushResult
from calsync.services.providers.base import CalendarProvider, MAX_PAGES
from calsync.utils.timezones import (
    add_minutes,
    civil_datetime,
    export_all_day_end,
    import_all_day_end,
    parse_date,
    parse_instant,
    safe_user_timezone,
    to_user_local,
    utc_now,
)

logger = structlog.get_logger()

API_BASE = "https://www.googleapis.com/calendar/v3"
PAGE_SIZE = 2500


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar v3 adapter."""

    provider = SyncProvider.GOOGLE

    def _events_url(self, calendar_id: str, event_id: Optional[str] = None) -> str:
        url = f"{API_BASE}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url += f"/{quote(event_id, safe='')}"
        return url

    # ==================== Calendars ====================

    async def list_calendars(self, connection: SyncConnection) -> List[ExternalCalendar]:
        response = await self._request(connection, "GET", f"{API_BASE}/users/me/calendarList")
        self._raise_for_fetch(response)

        return [
            ExternalCalendar(
                id=item["id"],
                name=item.get("summary") or item["id"],
                description=item.get("description"),
                primary=item.get("primary", False),
                access_role=item.get("accessRole"),
            )
            for item in response.json().get("items", [])
        ]

    async def get_calendar_name(self, connection: SyncConnection, calendar_id: str) -> str:
        response = await self._request(connection, "GET", f"{API_BASE}/calendars/{quote(calendar_id, safe='')}")
        if response.is_success:
            return response.json().get("summary") or f"Calendar {calendar_id}"
        return f"External Calendar {calendar_id}"

    # ==================== Events ====================

    async def _fetch(
        self,
        connection: SyncConnection,
        calendar_id: str,
        cursor: Optional[str],
        user_timezone: str,
    ) -> FetchResult:
        params: Dict[str, str] = {
            "maxResults": str(PAGE_SIZE),
            "singleEvents": "true",
            "showDeleted": "true",
        }
        if cursor:
            params["syncToken"] = cursor
        else:
            window_start, window_end = self.sync_window()
            params["timeMin"] = window_start.strftime("%Y-%m-%dT%H:%M:%SZ")
            params["timeMax"] = window_end.strftime("%Y-%m-%dT%H:%M:%SZ")

        result = FetchResult()
        page_token: Optional[str] = None

        for _ in range(MAX_PAGES):
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token

            response = await self._request(connection, "GET", self._events_url(calendar_id), params=page_params)
            if response.status_code == 410 and cursor:
                raise CursorExpired(f"Google sync token expired for calendar {calendar_id}")
            self._raise_for_fetch(response, calendar_id)

            data = response.json()
            for item in data.get("items", []):
                try:
                    raw = GoogleEvent.model_validate(item)
                    if raw.is_cancelled:
                        result.deleted_ids.append(raw.id)
                        continue
                    result.events.append(self._raw_to_canonical(raw, user_timezone))
                except ValueError as e:
                    logger.warning("google_event_skipped",
                                   connection_id=connection.id,
                                   external_calendar_id=calendar_id,
                                   external_event_id=item.get("id"),
                                   error=str(e))

            if data.get("nextSyncToken"):
                result.next_cursor = data["nextSyncToken"]
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        else:
            logger.warning("google_fetch_page_limit_reached",
                           connection_id=connection.id,
                           external_calendar_id=calendar_id,
                           max_pages=MAX_PAGES)

        if result.events or result.deleted_ids:
            logger.info("google_events_fetched",
                        connection_id=connection.id,
                        external_calendar_id=calendar_id,
                        count=len(result.events),
                        deleted=len(result.deleted_ids),
                        incremental=bool(cursor))
        return result

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
        logger.info("google_event_pushed",
                    connection_id=connection.id,
                    external_calendar_id=calendar_id,
                    external_event_id=data["id"],
                    operation=operation)
        return PushResult(
            external_id=data["id"],
            last_modified=parse_instant(data.get("updated")) or utc_now(),
        )

    async def delete_event(self, connection: SyncConnection, calendar_id: str, external_id: str) -> None:
        response = await self._request(connection, "DELETE", self._events_url(calendar_id, external_id))
        if response.status_code in (404, 410):
            logger.info("google_event_already_deleted",
                        connection_id=connection.id,
                        external_event_id=external_id)
            return
        self._raise_for_write(response, "delete", external_id)

    # ==================== Translation ====================

    def to_canonical(self, raw: Dict[str, Any], user_timezone: str) -> CanonicalEvent:
        return self._raw_to_canonical(GoogleEvent.model_validate(raw), user_timezone)

    def _raw_to_canonical(self, raw: GoogleEvent, user_timezone: str) -> CanonicalEvent:
        if raw.start is None or not (raw.start.date or raw.start.date_time):
            raise ValueError(f"Google event {raw.id} has no start")

        fields: Dict[str, Any] = {
            "external_id": raw.id,
            "title": raw.summary or "Untitled Event",
            "description": raw.description or "",
            "location": raw.location or "",
            "last_modified": parse_instant(raw.updated) or utc_now(),
        }

        if raw.recurring_event_id:
            fields["recurrence_parent_id"] = raw.recurring_event_id
            if raw.original_start_time:
                fields["original_date"] = parse_date(
                    raw.original_start_time.date_time or raw.original_start_time.date
                )

        if raw.start.date:
            start_date = parse_date(raw.start.date)
            end_date = import_all_day_end(parse_date(raw.end.date)) if raw.end and raw.end.date else None
            fields.update(
                all_day=True,
                start_date=start_date,
                end_date=max(end_date, start_date) if end_date else start_date,
            )
            return CanonicalEvent(**fields)

        start = to_user_local(raw.start.date_time, user_timezone, [raw.start.time_zone])
        if start is None:
            raise ValueError(f"Google event {raw.id} has an unparseable start")

        end = None
        if raw.end and raw.end.date_time:
            end = to_user_local(raw.end.date_time, user_timezone, [raw.end.time_zone, raw.start.time_zone])
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
        payload: Dict[str, Any] = {
            "summary": event.title,
            "description": event.description or "",
            "location": event.location or "",
        }

        if event.all_day:
            end_date = event.end_date or event.start_date
            payload["start"] = {"date": event.start_date.isoformat()}
            payload["end"] = {"date": export_all_day_end(end_date).isoformat()}
            return payload

        timezone = safe_user_timezone(user_timezone)
        start_time = event.start_time or "00:00"
        if event.end_time:
            end_date, end_time = event.end_date or event.start_date, event.end_time
        else:
            end_date, end_time = add_minutes(event.start_date, start_time, 60)

        payload["start"] = {"dateTime": civil_datetime(event.start_date, start_time), "timeZone": timezone}
        payload["end"] = {"dateTime": civil_datetime(end_date, end_time), "timeZone": timezone}
        return payload
