"""
Error types raised by the calendar sync engine.

Everything derives from CalendarSyncError so callers at the edges
(router, background loop, hooks) can catch the whole family at once.
"""

from typing import Optional


class CalendarSyncError(Exception):
    """Base class for calendar sync failures."""


class UnsupportedProvider(CalendarSyncError):
    def __init__(self, provider: str):
        super().__init__(f"Unsupported calendar provider: {provider}")
        self.provider = provider


class InvalidOAuthState(CalendarSyncError):
    """OAuth state parameter is malformed or its signature does not match."""


class ConnectionNotFound(CalendarSyncError):
    """No active sync connection exists for the user (and provider)."""

    def __init__(self, user_id: str, provider: Optional[str] = None):
        target = f"{provider} " if provider else ""
        super().__init__(f"No active {target}sync connection for user {user_id}")
        self.user_id = user_id
        self.provider = provider


class AuthExchangeFailed(CalendarSyncError):
    """Authorization code to token exchange was rejected by the provider."""

    def __init__(self, provider: str, status_code: Optional[int], body: str):
        super().__init__(f"{provider} token exchange failed ({status_code}): {body}")
        self.provider = provider
        self.status_code = status_code
        self.body = body


class TokenRefreshFailed(CalendarSyncError):
    """
    Access token refresh was rejected.

    Soft failure: the token manager logs it and keeps the old token.
    """

    def __init__(self, provider: str, status_code: Optional[int], body: str, revoked: bool = False):
        super().__init__(f"{provider} token refresh failed ({status_code}): {body}")
        self.provider = provider
        self.status_code = status_code
        self.body = body
        self.revoked = revoked


class ProviderFetchFailed(CalendarSyncError):
    """Listing calendars or events failed (network error or non-2xx)."""

    def __init__(self, provider: str, status_code: Optional[int], body: str, calendar_id: Optional[str] = None):
        where = f" for calendar {calendar_id}" if calendar_id else ""
        super().__init__(f"{provider} fetch failed{where} ({status_code}): {body}")
        self.provider = provider
        self.status_code = status_code
        self.body = body
        self.calendar_id = calendar_id


class ProviderAuthError(ProviderFetchFailed):
    """Provider still answered 401 after one token refresh."""


class ProviderWriteFailed(CalendarSyncError):
    """Creating, updating or deleting an external event was rejected."""

    def __init__(self, provider: str, operation: str, status_code: Optional[int], body: str,
                 external_event_id: Optional[str] = None):
        super().__init__(f"{provider} {operation} failed ({status_code}): {body}")
        self.provider = provider
        self.operation = operation
        self.status_code = status_code
        self.body = body
        self.external_event_id = external_event_id


class MappingConflict(CalendarSyncError):
    """A mapping with the same external or local event id already exists."""

    def __init__(self, synced_calendar_id: int, external_event_id: str, local_event_id: str):
        super().__init__(
            f"Mapping already exists for calendar {synced_calendar_id} "
            f"(external={external_event_id}, local={local_event_id})"
        )
        self.synced_calendar_id = synced_calendar_id
        self.external_event_id = external_event_id
        self.local_event_id = local_event_id


class CursorExpired(CalendarSyncError):
    """Provider rejected the incremental cursor (410 Gone or equivalent)."""
