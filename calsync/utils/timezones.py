"""
Timezone utilities shared by the provider adapters.

Google speaks IANA zone names, Microsoft Graph speaks Windows zone names.
Everything here is a pure function over immutable tables.
"""

from datetime import datetime, date, timedelta
from types import MappingProxyType
from typing import Optional, Iterable, Tuple
import dateutil.parser
import pytz
import structlog

logger = structlog.get_logger()

DEFAULT_TIMEZONE = "UTC"

_IANA_TO_WINDOWS = MappingProxyType({
    "utc": "UTC",
    "europe/berlin": "W. Europe Standard Time",
    "europe/budapest": "Central Europe Standard Time",
    "europe/warsaw": "Central European Standard Time",
    "europe/paris": "Romance Standard Time",
    "europe/london": "GMT Standard Time",
    "etc/greenwich": "Greenwich Standard Time",
    "europe/bucharest": "E. Europe Standard Time",
    "america/new_york": "Eastern Standard Time",
    "america/los_angeles": "Pacific Standard Time",
    "america/denver": "Mountain Standard Time",
    "asia/shanghai": "China Standard Time",
    "asia/tokyo": "Tokyo Standard Time",
    "asia/kolkata": "India Standard Time",
})

_WINDOWS_TO_IANA = MappingProxyType({
    "utc": "UTC",
    "w. europe standard time": "Europe/Berlin",
    "central europe standard time": "Europe/Budapest",
    "central european standard time": "Europe/Warsaw",
    "romance standard time": "Europe/Paris",
    "gmt standard time": "Europe/London",
    "greenwich standard time": "Etc/Greenwich",
    "e. europe standard time": "Europe/Bucharest",
    "eastern standard time": "America/New_York",
    "pacific standard time": "America/Los_Angeles",
    "mountain standard time": "America/Denver",
    "china standard time": "Asia/Shanghai",
    "tokyo standard time": "Asia/Tokyo",
    "india standard time": "Asia/Kolkata",
})


def iana_to_windows(name: str) -> Optional[str]:
    return _IANA_TO_WINDOWS.get(name.strip().lower())


def windows_to_iana(name: str) -> Optional[str]:
    return _WINDOWS_TO_IANA.get(name.strip().lower())


def is_valid_timezone(name: Optional[str]) -> bool:
    if not name:
        return False
    try:
        pytz.timezone(name)
        return True
    except pytz.UnknownTimeZoneError:
        return False


def safe_user_timezone(name: Optional[str]) -> str:
    """Return the user's zone if pytz knows it, otherwise UTC."""
    if is_valid_timezone(name):
        return name
    if name:
        logger.warning("invalid_user_timezone", timezone=name, fallback=DEFAULT_TIMEZONE)
    return DEFAULT_TIMEZONE


def resolve_timezone(name: Optional[str]) -> Optional[str]:
    """
    Resolve a provider zone name to a valid IANA name.

    Windows names are translated first; the result (or the name itself)
    is accepted only if pytz knows it.
    """
    if not name or not name.strip():
        return None
    trimmed = name.strip()
    candidate = windows_to_iana(trimmed) or trimmed
    return candidate if is_valid_timezone(candidate) else None


def microsoft_timezone(name: Optional[str]) -> Optional[str]:
    """
    Zone name to send to Microsoft Graph.

    IANA names are translated to Windows names, Windows names pass through.
    Unmapped names return None so the mailbox default applies.
    """
    if not name or not name.strip():
        return None
    trimmed = name.strip()
    mapped = iana_to_windows(trimmed)
    if mapped:
        return mapped
    if windows_to_iana(trimmed):
        return trimmed
    return None


def parse_datetime(raw: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp. Graph's 7-digit fractions are truncated by isoparse."""
    if not raw:
        return None
    try:
        return dateutil.parser.isoparse(raw)
    except (ValueError, OverflowError):
        logger.warning("unparseable_datetime", value=raw)
        return None


def parse_instant(raw: Optional[str]) -> Optional[datetime]:
    """Parse a modification timestamp into an aware UTC datetime (naive means UTC)."""
    parsed = parse_datetime(raw)
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return pytz.UTC.localize(parsed)
    return parsed.astimezone(pytz.UTC)


def parse_date(raw: Optional[str]) -> Optional[date]:
    """Date part of an ISO date or datetime string."""
    if not raw:
        return None
    if len(raw) == 10:
        try:
            return date.fromisoformat(raw)
        except ValueError:
            return None
    parsed = parse_datetime(raw)
    return parsed.date() if parsed else None


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def to_user_local(
    raw: Optional[str],
    user_timezone: str,
    source_zone_hints: Iterable[Optional[str]] = (),
) -> Optional[Tuple[date, str]]:
    """
    Render a provider timestamp as civil date and "HH:MM" in the user's zone.

    Args:
        raw: ISO timestamp, with or without an explicit offset
        user_timezone: Target zone (falls back to UTC when invalid)
        source_zone_hints: Candidate zones for offset-less timestamps, best first

    Returns:
        (date, "HH:MM") or None when the timestamp cannot be parsed
    """
    parsed = parse_datetime(raw)
    if parsed is None:
        return None

    if parsed.tzinfo is None:
        source = next(
            (tz for tz in (resolve_timezone(hint) for hint in source_zone_hints) if tz),
            DEFAULT_TIMEZONE,
        )
        parsed = pytz.timezone(source).localize(parsed)

    local = parsed.astimezone(pytz.timezone(safe_user_timezone(user_timezone)))
    return local.date(), local.strftime("%H:%M")


def civil_datetime(day: date, time_of_day: Optional[str]) -> str:
    """Offset-less ISO timestamp for a civil date and "HH:MM"."""
    hours, minutes = (time_of_day or "00:00").split(":")[:2]
    return f"{day.isoformat()}T{int(hours):02d}:{int(minutes):02d}:00"


def add_minutes(day: date, time_of_day: str, minutes: int) -> Tuple[date, str]:
    hours, mins = time_of_day.split(":")[:2]
    moved = datetime(day.year, day.month, day.day, int(hours), int(mins)) + timedelta(minutes=minutes)
    return moved.date(), moved.strftime("%H:%M")


def import_all_day_end(exclusive_end: Optional[date]) -> Optional[date]:
    """Provider exclusive all-day end to the inclusive local end."""
    if exclusive_end is None:
        return None
    return exclusive_end - timedelta(days=1)


def export_all_day_end(inclusive_end: date) -> date:
    """Local inclusive all-day end to the provider exclusive end."""
    return inclusive_end + timedelta(days=1)
