"""
Common shape of the external calendar provider adapters.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Tuple

import httpx
import structlog

from calsync.config import Settings
from calsync.errors import CursorExpired, ProviderAuthError, ProviderFetchFailed, ProviderWriteFailed
from calsync.models.calendar_sync import SyncConnection, SyncProvider, ExternalCalendar
from calsync.schemas.events import CanonicalEvent, FetchResult, PushResult
from calsync.services.token_manager import TokenManager
from calsync.utils.timezones import utc_now

logger = structlog.get_logger()

# Upper bound on pages followed in one fetch
MAX_PAGES = 50


class CalendarProvider(ABC):
    """Provider adapter: calendar listing, event fetch/push/delete and payload translation."""

    provider: SyncProvider

    def __init__(self, token_manager: TokenManager, settings: Settings):
        self.tokens = token_manager
        self.settings = settings

    # ==================== Shared helpers ====================

    def sync_window(self) -> Tuple[datetime, datetime]:
        """Full-fetch window [now - lookback, now + lookahead]."""
        now = utc_now()
        return (
            now - timedelta(days=self.settings.sync_lookback_days),
            now + timedelta(days=self.settings.sync_lookahead_days),
        )

    async def _request(self, connection: SyncConnection, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.tokens.authorized_fetch(connection, method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("provider_request_error",
                           provider=self.provider.value,
                           connection_id=connection.id,
                           method=method,
                           error=str(e))
            if method == "GET":
                raise ProviderFetchFailed(self.provider.value, None, str(e)) from e
            raise ProviderWriteFailed(self.provider.value, method.lower(), None, str(e)) from e

    def _raise_for_fetch(self, response: httpx.Response, calendar_id: Optional[str] = None):
        if response.is_success:
            return
        error_cls = ProviderAuthError if response.status_code == 401 else ProviderFetchFailed
        raise error_cls(self.provider.value, response.status_code, response.text, calendar_id=calendar_id)

    def _raise_for_write(self, response: httpx.Response, operation: str, external_id: Optional[str] = None):
        if response.is_success:
            return
        raise ProviderWriteFailed(
            self.provider.value, operation, response.status_code, response.text, external_event_id=external_id
        )

    # ==================== Public operations ====================

    @abstractmethod
    async def list_calendars(self, connection: SyncConnection) -> List[ExternalCalendar]:
        ...

    @abstractmethod
    async def get_calendar_name(self, connection: SyncConnection, calendar_id: str) -> str:
        ...

    @abstractmethod
    async def _fetch(
        self,
        connection: SyncConnection,
        calendar_id: str,
        cursor: Optional[str],
        user_timezone: str,
    ) -> FetchResult:
        """One fetch attempt. Raises CursorExpired when the provider rejects the cursor."""

    async def fetch_events(
        self,
        connection: SyncConnection,
        calendar_id: str,
        cursor: Optional[str] = None,
        user_timezone: str = "UTC",
    ) -> FetchResult:
        """
        Fetch changed events, incrementally when a cursor is given.

        An expired cursor falls back to exactly one full-window fetch and
        the result is flagged with cursor_reset.
        """
        try:
            return await self._fetch(connection, calendar_id, cursor, user_timezone)
        except CursorExpired:
            if not cursor:
                raise
            logger.warning("sync_cursor_expired",
                           provider=self.provider.value,
                           connection_id=connection.id,
                           external_calendar_id=calendar_id)

        result = await self._fetch(connection, calendar_id, None, user_timezone)
        result.cursor_reset = True
        return result

    async def enrich_event(
        self,
        connection: SyncConnection,
        calendar_id: str,
        event: CanonicalEvent,
        user_timezone: str,
    ) -> CanonicalEvent:
        """Fill in details missing from an incremental payload. Default: nothing to do."""
        return event

    @abstractmethod
    async def push_event(
        self,
        connection: SyncConnection,
        calendar_id: str,
        event: CanonicalEvent,
        user_timezone: str,
        external_id: Optional[str] = None,
    ) -> PushResult:
        """Create (no external_id) or update an external event."""

    @abstractmethod
    async def delete_event(self, connection: SyncConnection, calendar_id: str, external_id: str) -> None:
        """Delete an external event; an already-missing event is not an error."""

    @abstractmethod
    def to_canonical(self, raw: Dict[str, Any], user_timezone: str) -> CanonicalEvent:
        ...

    @abstractmethod
    def from_canonical(self, event: CanonicalEvent, user_timezone: str) -> Dict[str, Any]:
        ...
