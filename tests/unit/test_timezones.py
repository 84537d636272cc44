"""Tests for timezone resolution and civil time helpers."""

from datetime import date

import pytest

from calsync.utils.timezones import (
    civil_datetime,
    export_all_day_end,
    iana_to_windows,
    import_all_day_end,
    microsoft_timezone,
    parse_instant,
    resolve_timezone,
    safe_user_timezone,
    to_user_local,
    windows_to_iana,
)


class TestZoneTables:

    @pytest.mark.parametrize("iana,windows", [
        ("Europe/Berlin", "W. Europe Standard Time"),
        ("America/New_York", "Eastern Standard Time"),
        ("Asia/Kolkata", "India Standard Time"),
        ("UTC", "UTC"),
    ])
    def test_tables_are_inverse(self, iana, windows):
        assert iana_to_windows(iana) == windows
        assert windows_to_iana(windows) == iana

    def test_lookup_is_case_insensitive(self):
        assert windows_to_iana("  pacific standard time ") == "America/Los_Angeles"
        assert iana_to_windows("europe/london") == "GMT Standard Time"

    def test_unknown_names(self):
        assert iana_to_windows("Mars/Olympus") is None
        assert windows_to_iana("Mars Standard Time") is None


class TestResolution:

    def test_resolve_windows_name(self):
        assert resolve_timezone("Tokyo Standard Time") == "Asia/Tokyo"

    def test_resolve_iana_passthrough(self):
        assert resolve_timezone("Australia/Sydney") == "Australia/Sydney"

    @pytest.mark.parametrize("name", [None, "", "   ", "Not/AZone"])
    def test_resolve_invalid(self, name):
        assert resolve_timezone(name) is None

    def test_safe_user_timezone_falls_back(self):
        assert safe_user_timezone("Europe/Paris") == "Europe/Paris"
        assert safe_user_timezone("Nowhere/City") == "UTC"
        assert safe_user_timezone(None) == "UTC"

    def test_microsoft_timezone(self):
        assert microsoft_timezone("Europe/Paris") == "Romance Standard Time"
        assert microsoft_timezone("Romance Standard Time") == "Romance Standard Time"
        assert microsoft_timezone("Australia/Sydney") is None
        assert microsoft_timezone(None) is None


class TestCivilTime:

    def test_offset_timestamp_in_user_zone(self):
        assert to_user_local("2024-01-15T23:30:00Z", "Asia/Tokyo") == (date(2024, 1, 16), "08:30")

    def test_naive_timestamp_uses_first_valid_hint(self):
        result = to_user_local("2024-01-15T09:00:00", "UTC", [None, "Bogus Zone", "Eastern Standard Time"])

        assert result == (date(2024, 1, 15), "14:00")

    def test_naive_timestamp_without_hint_is_utc(self):
        assert to_user_local("2024-01-15T09:00:00", "Europe/Berlin") == (date(2024, 1, 15), "10:00")

    def test_dst_is_respected(self):
        assert to_user_local("2024-07-15T09:00:00Z", "Europe/Berlin") == (date(2024, 7, 15), "11:00")

    def test_unparseable(self):
        assert to_user_local("not a date", "UTC") is None

    def test_parse_instant_normalizes_to_utc(self):
        instant = parse_instant("2024-03-01T12:00:00+02:00")

        assert instant.isoformat() == "2024-03-01T10:00:00+00:00"

    def test_civil_datetime(self):
        assert civil_datetime(date(2024, 3, 5), "7:05") == "2024-03-05T07:05:00"

    def test_all_day_end_conversion(self):
        assert import_all_day_end(date(2024, 3, 13)) == date(2024, 3, 12)
        assert export_all_day_end(date(2024, 3, 12)) == date(2024, 3, 13)
        assert import_all_day_end(None) is None
