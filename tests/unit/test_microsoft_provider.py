"""Tests for the Microsoft Graph adapter."""

from datetime import date, timedelta

import httpx
import pytest

from calsync.models.calendar_sync import SyncProvider
from calsync.schemas.events import CanonicalEvent
from calsync.services.providers.microsoft import (
    MicrosoftCalendarProvider,
    sanitize_delta_link,
)
from calsync.utils.timezones import utc_now

DELTA_LINK = (
    "https://graph.microsoft.com/v1.0/me/calendars/cal-1/calendarView/delta"
    "?$deltatoken=abc&$select=id,subject"
)


@pytest.fixture
def microsoft(token_manager, settings):
    return MicrosoftCalendarProvider(token_manager, settings)


@pytest.fixture
def ms_connection(sync_db, sample_user_id):
    return sync_db.upsert_connection(
        user_id=sample_user_id,
        provider=SyncProvider.MICROSOFT,
        provider_account_id="ms-account",
        access_token="ms-access",
        refresh_token="ms-refresh",
        token_expires_at=None,
    )


def _item(event_id, start, end, zone="UTC", **extra):
    return {
        "id": event_id,
        "subject": f"Event {event_id}",
        "body": {"contentType": "text", "content": "Agenda"},
        "bodyPreview": "Agenda",
        "start": {"dateTime": start, "timeZone": zone},
        "end": {"dateTime": end, "timeZone": zone},
        "isAllDay": False,
        "lastModifiedDateTime": "2024-03-01T10:00:00.1234567Z",
        **extra,
    }


class TestDeltaLinks:

    @pytest.mark.parametrize("url,expected", [
        ("https://g/delta?$top=10&$deltatoken=x", "https://g/delta?$deltatoken=x"),
        ("https://g/delta?$deltatoken=x&$top=10", "https://g/delta?$deltatoken=x"),
        ("https://g/delta?$deltatoken=x&%24top=50&$select=id", "https://g/delta?$deltatoken=x&$select=id"),
        ("https://g/delta?$deltatoken=x", "https://g/delta?$deltatoken=x"),
    ])
    def test_sanitize_strips_top(self, url, expected):
        assert sanitize_delta_link(url) == expected

    def test_sanitize_none(self):
        assert sanitize_delta_link(None) is None

    def test_window_capped_at_one_year(self, microsoft):
        start, end = microsoft.sync_window()

        assert end - start <= timedelta(days=365)


class TestFetch:

    @pytest.mark.asyncio
    async def test_full_fetch_follows_pages_to_delta_link(self, microsoft, ms_connection, token_handler):
        requests = []

        def handler(request):
            requests.append(request)
            if "page=2" in str(request.url):
                return httpx.Response(200, json={
                    "value": [{"id": "gone", "@removed": {"reason": "deleted"}}],
                    "@odata.deltaLink": DELTA_LINK + "&$top=1000",
                })
            return httpx.Response(200, json={
                "value": [_item("a", "2024-03-10T10:00:00.0000000", "2024-03-10T11:00:00.0000000")],
                "@odata.nextLink": "https://graph.microsoft.com/v1.0/next?page=2",
            })

        token_handler["handler"] = handler

        result = await microsoft.fetch_events(ms_connection, "cal-1", user_timezone="Europe/Berlin")

        first = requests[0]
        assert "calendarView/delta" in first.url.path
        assert "$select" in first.url.params
        assert 'outlook.timezone="W. Europe Standard Time"' in first.headers["Prefer"]
        assert [e.external_id for e in result.events] == ["a"]
        assert result.deleted_ids == ["gone"]
        assert result.next_cursor == DELTA_LINK

    @pytest.mark.asyncio
    async def test_delta_link_without_select_forces_full_fetch(self, microsoft, ms_connection, token_handler):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"value": [], "@odata.deltaLink": DELTA_LINK})

        token_handler["handler"] = handler
        legacy = "https://graph.microsoft.com/v1.0/me/calendars/cal-1/calendarView/delta?$deltatoken=old"

        result = await microsoft.fetch_events(ms_connection, "cal-1", cursor=legacy)

        assert len(requests) == 1
        assert "startDateTime" in requests[0].url.params
        assert result.cursor_reset is True
        assert result.next_cursor == DELTA_LINK

    @pytest.mark.asyncio
    async def test_top_rejection_falls_back_to_full_fetch(self, microsoft, ms_connection, token_handler):
        requests = []

        def handler(request):
            requests.append(request)
            if "deltatoken" in str(request.url):
                return httpx.Response(400, json={"error": {
                    "code": "ErrorInvalidUrlQuery",
                    "message": "The following parameters are not supported with change tracking: $top",
                }})
            return httpx.Response(200, json={"value": [], "@odata.deltaLink": DELTA_LINK + "&fresh=1"})

        token_handler["handler"] = handler

        result = await microsoft.fetch_events(ms_connection, "cal-1", cursor=DELTA_LINK)

        assert len(requests) == 2
        assert result.cursor_reset is True
        assert result.next_cursor == DELTA_LINK + "&fresh=1"

    @pytest.mark.asyncio
    async def test_expired_delta_link_falls_back(self, microsoft, ms_connection, token_handler):
        def handler(request):
            if "deltatoken" in str(request.url):
                return httpx.Response(410, json={"error": {"code": "SyncStateNotFound"}})
            return httpx.Response(200, json={"value": [], "@odata.deltaLink": DELTA_LINK})

        token_handler["handler"] = handler

        result = await microsoft.fetch_events(ms_connection, "cal-1", cursor=DELTA_LINK)

        assert result.cursor_reset is True

    @pytest.mark.asyncio
    async def test_truncated_item_is_enriched(self, microsoft, ms_connection, token_handler):
        def handler(request):
            if "calendarView" in request.url.path:
                return httpx.Response(200, json={
                    "value": [{**_item("a", "2024-03-10T10:00:00", "2024-03-10T11:00:00"),
                               "subject": "", "body": None, "bodyPreview": "Short preview"}],
                    "@odata.deltaLink": DELTA_LINK,
                })
            return httpx.Response(200, json={
                "subject": "Full subject",
                "body": {"contentType": "text", "content": "Full body"},
                "start": {"dateTime": "2024-03-10T10:00:00", "timeZone": "UTC"},
                "end": {"dateTime": "2024-03-10T11:00:00", "timeZone": "UTC"},
            })

        token_handler["handler"] = handler

        result = await microsoft.fetch_events(ms_connection, "cal-1")
        assert result.events[0].needs_details is True

        enriched = await microsoft.enrich_event(ms_connection, "cal-1", result.events[0], "UTC")

        assert enriched.title == "Full subject"
        assert enriched.description == "Full body"
        assert enriched.needs_details is False


class TestTranslation:

    def test_windows_zone_hint_converted(self, microsoft):
        raw = _item("a", "2024-07-01T10:00:00.0000000", "2024-07-01T11:00:00.0000000",
                    zone="W. Europe Standard Time")

        event = microsoft.to_canonical(raw, "UTC")

        assert (event.start_date, event.start_time) == (date(2024, 7, 1), "08:00")
        assert event.last_modified.isoformat().startswith("2024-03-01T10:00:00.123456")

    def test_all_day_end_is_inclusive(self, microsoft):
        raw = {
            "id": "a", "subject": "Holiday", "isAllDay": True,
            "start": {"dateTime": "2024-12-24T00:00:00.0000000", "timeZone": "UTC"},
            "end": {"dateTime": "2024-12-27T00:00:00.0000000", "timeZone": "UTC"},
            "lastModifiedDateTime": "2024-03-01T10:00:00Z",
        }

        event = microsoft.to_canonical(raw, "Europe/Berlin")

        assert event.all_day is True
        assert (event.start_date, event.end_date) == (date(2024, 12, 24), date(2024, 12, 26))

    def test_payload_uses_windows_zone(self, microsoft):
        event = CanonicalEvent(
            title="Call", description="Notes", location="Room 4",
            start_date=date(2024, 3, 10), start_time="09:00",
            end_date=date(2024, 3, 10), end_time="10:00", last_modified=utc_now(),
        )

        payload = microsoft.from_canonical(event, "America/New_York")

        assert payload["subject"] == "Call"
        assert payload["body"] == {"contentType": "HTML", "content": "Notes"}
        assert payload["location"] == {"displayName": "Room 4"}
        assert payload["start"] == {"dateTime": "2024-03-10T09:00:00", "timeZone": "Eastern Standard Time"}
        assert payload["isAllDay"] is False

    def test_unmapped_zone_sent_as_iana(self, microsoft):
        event = CanonicalEvent(title="Call", start_date=date(2024, 3, 10), start_time="09:00",
                               last_modified=utc_now())

        payload = microsoft.from_canonical(event, "Australia/Sydney")

        assert payload["start"]["timeZone"] == "Australia/Sydney"
        assert payload["end"]["dateTime"] == "2024-03-10T10:00:00"

    def test_all_day_payload_exclusive_end(self, microsoft):
        event = CanonicalEvent(title="Trip", all_day=True, start_date=date(2024, 5, 1),
                               end_date=date(2024, 5, 3), last_modified=utc_now())

        payload = microsoft.from_canonical(event, "UTC")

        assert payload["isAllDay"] is True
        assert payload["start"]["dateTime"] == "2024-05-01T00:00:00"
        assert payload["end"]["dateTime"] == "2024-05-04T00:00:00"


class TestWrites:

    @pytest.mark.asyncio
    async def test_delete_tolerates_404(self, microsoft, ms_connection, token_handler):
        token_handler["handler"] = lambda request: httpx.Response(404)

        await microsoft.delete_event(ms_connection, "cal-1", "gone")

    @pytest.mark.asyncio
    async def test_push_uses_last_modified(self, microsoft, ms_connection, token_handler):
        token_handler["handler"] = lambda request: httpx.Response(201, json={
            "id": "new", "lastModifiedDateTime": "2024-03-01T12:00:00.0000000Z",
        })
        event = CanonicalEvent(title="Call", start_date=date(2024, 3, 10), start_time="09:00",
                               last_modified=utc_now())

        result = await microsoft.push_event(ms_connection, "cal-1", event, "UTC")

        assert result.external_id == "new"
        assert result.last_modified.isoformat() == "2024-03-01T12:00:00+00:00"
