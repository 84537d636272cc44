"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime, date, timedelta
from typing import Optional, Dict, List

import httpx
import pytest
from cryptography.fernet import Fernet

from calsync.config import Settings
from calsync.errors import ProviderWriteFailed
from calsync.models.calendar_sync import (
    ExternalCalendar,
    LocalCalendar,
    SyncProvider,
    SyncedCalendar,
)
from calsync.schemas.events import CanonicalEvent, FetchResult, PushResult
from calsync.services.calendar_sync_service import CalendarSyncService
from calsync.services.error_reporter import ErrorReporter
from calsync.services.local_store import SQLiteLocalStore
from calsync.services.reconciler import Reconciler
from calsync.services.sync_database import SyncDatabase
from calsync.services.token_manager import TokenManager
from calsync.utils.timezones import utc_now


class FakeProvider:
    """
    In-memory external calendar.

    Every external change (including our own pushes) bumps a version
    counter; the cursor is the version the caller has seen.
    """

    def __init__(self, provider: SyncProvider = SyncProvider.GOOGLE):
        self.provider = provider
        self.events: Dict[str, CanonicalEvent] = {}
        self.versions: Dict[str, int] = {}
        self.tombstones: Dict[str, int] = {}
        self.version = 0
        self._next_id = 0

        self.fetch_calls: List[Optional[str]] = []
        self.push_calls: List[Dict] = []
        self.delete_calls: List[str] = []

        self.fetch_error: Optional[Exception] = None
        self.fail_delete = False
        self.expire_cursor = False
        self.gate: Optional[asyncio.Event] = None
        self.fetch_started = asyncio.Event()

    # Test helpers simulating edits made in the provider UI

    def external_create(self, title: str, start_date: date, start_time: Optional[str] = "10:00",
                        end_time: Optional[str] = "11:00", all_day: bool = False,
                        end_date: Optional[date] = None,
                        last_modified: Optional[datetime] = None) -> str:
        self._next_id += 1
        external_id = f"ext-{self._next_id}"
        self._store(CanonicalEvent(
            external_id=external_id,
            title=title,
            all_day=all_day,
            start_date=start_date,
            start_time=None if all_day else start_time,
            end_date=end_date or start_date,
            end_time=None if all_day else end_time,
            last_modified=last_modified or utc_now(),
        ))
        return external_id

    def external_update(self, external_id: str, last_modified: Optional[datetime] = None, **changes):
        event = self.events[external_id].model_copy(update={
            **changes, "last_modified": last_modified or utc_now()
        })
        self._store(event)

    def external_delete(self, external_id: str):
        self.events.pop(external_id)
        self.version += 1
        self.tombstones[external_id] = self.version

    def _store(self, event: CanonicalEvent):
        self.version += 1
        self.events[event.external_id] = event
        self.versions[event.external_id] = self.version

    # Adapter surface used by the engine

    def sync_window(self):
        now = utc_now()
        return now - timedelta(days=90), now + timedelta(days=365)

    async def list_calendars(self, connection) -> List[ExternalCalendar]:
        return [ExternalCalendar(id="primary", name="Primary", primary=True)]

    async def get_calendar_name(self, connection, calendar_id: str) -> str:
        return "Primary" if calendar_id == "primary" else f"Calendar {calendar_id}"

    async def fetch_events(self, connection, calendar_id, cursor=None, user_timezone="UTC") -> FetchResult:
        self.fetch_calls.append(cursor)
        self.fetch_started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error

        cursor_reset = False
        if cursor and self.expire_cursor:
            cursor, cursor_reset = None, True

        if cursor:
            seen = int(cursor)
            events = [e for i, e in self.events.items() if self.versions[i] > seen]
            deleted = [i for i, v in self.tombstones.items() if v > seen]
        else:
            events, deleted = list(self.events.values()), []

        return FetchResult(
            events=[e.model_copy() for e in events],
            deleted_ids=deleted,
            next_cursor=str(self.version),
            cursor_reset=cursor_reset,
        )

    async def enrich_event(self, connection, calendar_id, event, user_timezone):
        return event

    async def push_event(self, connection, calendar_id, event, user_timezone, external_id=None) -> PushResult:
        self.push_calls.append({"external_id": external_id, "event": event})
        if external_id is None:
            self._next_id += 1
            external_id = f"ext-{self._next_id}"
        stored = event.model_copy(update={"external_id": external_id, "last_modified": utc_now()})
        self._store(stored)
        return PushResult(external_id=external_id, last_modified=stored.last_modified)

    async def delete_event(self, connection, calendar_id, external_id):
        self.delete_calls.append(external_id)
        if self.fail_delete:
            raise ProviderWriteFailed(self.provider.value, "delete", 500, "backend error", external_event_id=external_id)
        if external_id in self.events:
            self.external_delete(external_id)


class RecordingReporter(ErrorReporter):
    def __init__(self):
        self.reports = []

    def report(self, error, action, **context):
        self.reports.append((error, action, context))


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment."""
    return Settings(
        _env_file=None,
        app_env="testing",
        oauth_state_secret="test-state-secret",
        backend_base_url="http://testserver",
        frontend_url="http://frontend.test",
        google_client_id="google-client",
        google_client_secret="google-secret",
        microsoft_client_id="ms-client",
        microsoft_client_secret="ms-secret",
        database_path=str(tmp_path / "sync.db"),
        local_database_path=str(tmp_path / "local.db"),
        background_sync_enabled=False,
    )


@pytest.fixture
def sync_db(tmp_path):
    return SyncDatabase(str(tmp_path / "sync.db"), encryption_key=Fernet.generate_key())


@pytest.fixture
def local_store(tmp_path):
    return SQLiteLocalStore(str(tmp_path / "local.db"))


@pytest.fixture
def sample_user_id():
    """Sample user ID for testing."""
    return "user-42"


@pytest.fixture
def fake_google():
    return FakeProvider(SyncProvider.GOOGLE)


@pytest.fixture
def fake_microsoft():
    return FakeProvider(SyncProvider.MICROSOFT)


@pytest.fixture
def fake_providers(fake_google, fake_microsoft):
    return {SyncProvider.GOOGLE: fake_google, SyncProvider.MICROSOFT: fake_microsoft}


@pytest.fixture
def rule_calls():
    return []


@pytest.fixture
def reconciler(sync_db, local_store, fake_providers, rule_calls):
    async def record_rule(event_id, user_id, trigger_type, selected_rule_ids):
        rule_calls.append((event_id, user_id, trigger_type, selected_rule_ids))

    return Reconciler(sync_db, local_store, fake_providers, rule_trigger=record_rule)


@pytest.fixture
def token_handler():
    """Mutable handler for the mocked provider HTTP transport."""
    state = {"handler": lambda request: httpx.Response(404, json={"error": "not mocked"})}
    return state


@pytest.fixture
def http_client(token_handler):
    transport = httpx.MockTransport(lambda request: token_handler["handler"](request))
    return httpx.AsyncClient(transport=transport)


@pytest.fixture
def token_manager(settings, sync_db, http_client):
    return TokenManager(settings, sync_db, http_client)


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def sync_service(settings, sync_db, local_store, token_manager, fake_providers, reconciler, reporter):
    return CalendarSyncService(
        settings=settings,
        sync_db=sync_db,
        local_store=local_store,
        token_manager=token_manager,
        providers=fake_providers,
        reconciler=reconciler,
        error_reporter=reporter,
    )


@pytest.fixture
def google_connection(sync_db, sample_user_id):
    """Active Google connection with a non-expiring token."""
    return sync_db.upsert_connection(
        user_id=sample_user_id,
        provider=SyncProvider.GOOGLE,
        provider_account_id="google-account",
        access_token="access-1",
        refresh_token="refresh-1",
        token_expires_at=None,
    )


@pytest.fixture
def synced_calendar(sync_db, local_store, google_connection, sample_user_id):
    """Primary Google calendar mirrored by a fresh local calendar."""
    mirror = local_store.create_calendar(LocalCalendar(owner_id=sample_user_id, name="Work"))
    return sync_db.create_synced_calendar(SyncedCalendar(
        sync_connection_id=google_connection.id,
        local_calendar_id=mirror.id,
        external_calendar_id="primary",
        external_calendar_name="Primary",
        bidirectional_sync=True,
    ))


@pytest.fixture
def tomorrow():
    return utc_now().date() + timedelta(days=1)
