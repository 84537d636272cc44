"""
Main calendar synchronization service.

Coordinates OAuth connections, calendar selection and reconciliation
passes between the local store and external providers.
"""

import asyncio
from datetime import timedelta
from time import time
from typing import Optional, List, Dict, Any, Set

import structlog

from calsync.config import Settings
from calsync.errors import (
    ConnectionNotFound,
    ProviderAuthError,
    UnsupportedProvider,
)
from calsync.models.calendar_sync import (
    CalendarSelection,
    ExternalCalendar,
    LocalCalendar,
    SyncConnection,
    SyncedCalendar,
    SyncLog,
    SyncProvider,
    SyncStatus,
)
from calsync.services.error_reporter import ErrorReporter
from calsync.services.local_store import LocalEventStore
from calsync.services.providers.base import CalendarProvider
from calsync.services.reconciler import Reconciler
from calsync.services.sync_database import SyncDatabase
from calsync.services.token_manager import TokenManager
from calsync.utils.timezones import safe_user_timezone, utc_now

logger = structlog.get_logger()

PROVIDER_LABELS = {
    SyncProvider.GOOGLE: "Google",
    SyncProvider.MICROSOFT: "Microsoft",
}


def parse_provider(value: str) -> SyncProvider:
    try:
        return SyncProvider(value.lower())
    except ValueError:
        raise UnsupportedProvider(value) from None


class CalendarSyncService:
    """Service for synchronizing calendars with external providers."""

    def __init__(
        self,
        settings: Settings,
        sync_db: SyncDatabase,
        local_store: LocalEventStore,
        token_manager: TokenManager,
        providers: Dict[SyncProvider, CalendarProvider],
        reconciler: Reconciler,
        error_reporter: Optional[ErrorReporter] = None,
    ):
        self.settings = settings
        self.sync_db = sync_db
        self.local_store = local_store
        self.tokens = token_manager
        self.providers = providers
        self.reconciler = reconciler
        self.error_reporter = error_reporter or ErrorReporter()

        # Connection ids with a pass in flight (single process only)
        self._active_connection_ids: Set[int] = set()

    def _adapter(self, provider: SyncProvider) -> CalendarProvider:
        adapter = self.providers.get(provider)
        if adapter is None:
            raise UnsupportedProvider(str(provider))
        return adapter

    def user_timezone_for(self, user_id: str) -> str:
        return safe_user_timezone(self.local_store.get_user_timezone(user_id))

    def _require_connection(self, user_id: str, provider: SyncProvider) -> SyncConnection:
        connection = self.sync_db.get_user_connection(user_id, provider)
        if connection is None or connection.status != SyncStatus.ACTIVE:
            raise ConnectionNotFound(user_id, provider.value)
        return connection

    def is_syncing(self, connection_id: int) -> bool:
        return connection_id in self._active_connection_ids

    # ==================== OAuth ====================

    def get_auth_url(self, provider: SyncProvider, user_id: str) -> str:
        return self.tokens.build_authorization_url(provider, user_id)

    async def handle_oauth_callback(self, provider: SyncProvider, code: str, state: str) -> SyncConnection:
        """
        Complete the OAuth flow and store the connection as active.

        Raises:
            InvalidOAuthState: State was not issued by us
            AuthExchangeFailed: Provider rejected the code
        """
        user_id = self.tokens.parse_state(state)
        tokens = await self.tokens.exchange_code(provider, code)

        connection = self.sync_db.upsert_connection(
            user_id=user_id,
            provider=provider,
            provider_account_id=tokens.provider_account_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=tokens.expires_at,
        )
        logger.info("oauth_callback_completed",
                    user_id=user_id,
                    provider=provider.value,
                    connection_id=connection.id)
        return connection

    # ==================== Calendars ====================

    async def list_calendars(self, user_id: str, provider: SyncProvider) -> List[ExternalCalendar]:
        connection = self._require_connection(user_id, provider)
        await self.tokens.ensure_fresh_token(connection)
        return await self._adapter(provider).list_calendars(connection)

    async def connect_calendars(
        self,
        user_id: str,
        provider: SyncProvider,
        selections: List[CalendarSelection],
    ) -> List[SyncedCalendar]:
        """
        Opt calendars into sync and run one pass.

        Re-selecting a synced calendar only updates its settings and, when
        a different local name is given, renames the local mirror.
        """
        connection = self._require_connection(user_id, provider)
        await self.tokens.ensure_fresh_token(connection)
        adapter = self._adapter(provider)

        result = []
        for selection in selections:
            existing = self.sync_db.get_synced_calendar_by_external_id(
                connection.id, selection.external_calendar_id
            )

            if existing:
                self.sync_db.update_synced_calendar_settings(
                    existing.id,
                    bidirectional_sync=selection.bidirectional_sync,
                    trigger_automation_rules=selection.trigger_automation_rules,
                    selected_rule_ids=selection.selected_rule_ids,
                )
                mirror = self.local_store.get_calendar(existing.local_calendar_id)
                if mirror and selection.local_name and mirror.name != selection.local_name:
                    self.local_store.rename_calendar(mirror.id, selection.local_name)
                    logger.info("local_mirror_renamed",
                                synced_calendar_id=existing.id,
                                local_calendar_id=mirror.id,
                                name=selection.local_name)
                result.append(self.sync_db.get_synced_calendar(existing.id))
                continue

            external_name = await adapter.get_calendar_name(connection, selection.external_calendar_id)
            mirror = self.local_store.create_calendar(LocalCalendar(
                owner_id=user_id,
                name=selection.local_name or external_name,
                description=f"Synced from {PROVIDER_LABELS[provider]}",
            ))
            result.append(self.sync_db.create_synced_calendar(SyncedCalendar(
                sync_connection_id=connection.id,
                local_calendar_id=mirror.id,
                external_calendar_id=selection.external_calendar_id,
                external_calendar_name=external_name,
                bidirectional_sync=selection.bidirectional_sync,
                trigger_automation_rules=selection.trigger_automation_rules,
                selected_rule_ids=selection.selected_rule_ids,
            )))

        logger.info("calendars_connected",
                    user_id=user_id,
                    provider=provider.value,
                    count=len(result))

        await self.sync_connection(connection, trigger="connect")
        return result

    # ==================== Sync passes ====================

    async def sync_connection(self, connection: SyncConnection, trigger: str = "tick") -> Optional[SyncLog]:
        """
        Run one reconciliation pass over every synced calendar of a connection.

        Returns None without doing anything if a pass for the same
        connection is already running.
        """
        if connection.id in self._active_connection_ids:
            logger.info("calendar_sync_already_running",
                        connection_id=connection.id,
                        user_id=connection.user_id,
                        trigger=trigger)
            return None

        self._active_connection_ids.add(connection.id)
        try:
            return await self._run_pass(connection, trigger)
        finally:
            self._active_connection_ids.discard(connection.id)

    async def _run_pass(self, connection: SyncConnection, trigger: str) -> SyncLog:
        start_time = time()
        log = logger.bind(connection_id=connection.id,
                          user_id=connection.user_id,
                          provider=connection.provider.value,
                          trigger=trigger)
        log.info("calendar_sync_started")

        sync_log = SyncLog(
            user_id=connection.user_id,
            connection_id=connection.id,
            trigger=trigger,
            created_at=utc_now(),
        )
        await self.tokens.ensure_fresh_token(connection)
        user_timezone = self.user_timezone_for(connection.user_id)

        calendars = self.sync_db.get_synced_calendars(connection.id)
        auth_failures = 0
        last_error: Optional[str] = None

        for synced_calendar in calendars:
            try:
                report = await self.reconciler.reconcile_calendar(
                    connection,
                    synced_calendar,
                    user_timezone,
                    trigger_automation=(trigger == "connect"),
                )
            except ProviderAuthError as e:
                auth_failures += 1
                sync_log.calendars_failed += 1
                last_error = str(e)
                log.warning("calendar_sync_unauthorized",
                            synced_calendar_id=synced_calendar.id,
                            external_calendar_id=synced_calendar.external_calendar_id,
                            status_code=e.status_code)
                continue
            except Exception as e:
                sync_log.calendars_failed += 1
                last_error = str(e)
                log.error("calendar_sync_failed",
                          synced_calendar_id=synced_calendar.id,
                          external_calendar_id=synced_calendar.external_calendar_id,
                          error=str(e),
                          exc_info=True)
                continue

            sync_log.calendars_synced += 1
            sync_log.events_imported += report.imported
            sync_log.events_updated += report.updated
            sync_log.events_deleted += report.deleted_local
            sync_log.events_exported += report.exported
            sync_log.events_updated_external += report.updated_external
            sync_log.events_deleted_external += report.deleted_external
            sync_log.errors += report.errors

        if calendars and auth_failures == len(calendars):
            self.sync_db.update_connection_status(connection.id, SyncStatus.ERROR)
            connection.status = SyncStatus.ERROR
            log.warning("sync_connection_marked_error", failed_calendars=auth_failures)

        synced_at = utc_now()
        self.sync_db.update_connection_last_sync(connection.id, synced_at)
        connection.last_sync_at = synced_at

        sync_log.errors += sync_log.calendars_failed
        sync_log.error_message = last_error
        sync_log.duration_seconds = time() - start_time
        sync_log.id = self.sync_db.create_sync_log(sync_log)

        log.info("calendar_sync_completed",
                 calendars=len(calendars),
                 failed=sync_log.calendars_failed,
                 imported=sync_log.events_imported,
                 exported=sync_log.events_exported,
                 duration=sync_log.duration_seconds)
        return sync_log

    async def force_sync(self, user_id: str) -> List[SyncLog]:
        """
        Sync every active connection of the user now, ignoring the poll interval.

        Raises:
            ConnectionNotFound: The user has no active connection
        """
        connections = self.sync_db.get_user_connections(user_id, active_only=True)
        if not connections:
            raise ConnectionNotFound(user_id)

        logs = []
        for connection in connections:
            result = await self.sync_connection(connection, trigger="force")
            if result:
                logs.append(result)
        return logs

    def _is_due(self, connection: SyncConnection) -> bool:
        if connection.last_sync_at is None:
            return True
        interval = timedelta(minutes=self.settings.sync_poll_interval_minutes)
        return utc_now() - connection.last_sync_at >= interval

    async def tick(self) -> int:
        """
        Sync every active connection whose last pass is older than the poll interval.

        Returns:
            Number of passes started
        """
        due = [c for c in self.sync_db.get_active_connections() if self._is_due(c)]
        if not due:
            return 0

        logger.info("sync_tick", due_connections=len(due))
        results = await asyncio.gather(
            *(self.sync_connection(connection, trigger="tick") for connection in due),
            return_exceptions=True,
        )

        started = 0
        for connection, result in zip(due, results):
            if isinstance(result, BaseException):
                self.error_reporter.report(result, "sync_tick",
                                           connection_id=connection.id,
                                           user_id=connection.user_id)
            elif result is not None:
                started += 1
        return started

    async def run_background_sync(self, stop_event: asyncio.Event, initial_delay: float = 0):
        """Call tick() periodically until stop_event is set."""
        if initial_delay:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=initial_delay)
                return
            except asyncio.TimeoutError:
                pass

        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error("sync_task_error", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.settings.sync_tick_seconds)
            except asyncio.TimeoutError:
                continue

    # ==================== Disconnect ====================

    async def disconnect(self, user_id: str, provider: Optional[SyncProvider] = None) -> int:
        """
        Disconnect one provider (or all) for a user.

        Local mirror calendars, mappings and synced calendars are deleted;
        tokens are cleared and the connection is marked inactive.

        Returns:
            Number of connections disconnected
        """
        if provider:
            connection = self.sync_db.get_user_connection(user_id, provider)
            connections = [connection] if connection else []
        else:
            connections = self.sync_db.get_user_connections(user_id, active_only=False)

        for connection in connections:
            for synced_calendar in self.sync_db.get_synced_calendars(connection.id):
                self.local_store.delete_calendar(synced_calendar.local_calendar_id)
                self.sync_db.delete_synced_calendar(synced_calendar.id)
            self.sync_db.deactivate_connection(connection.id)

            logger.info("sync_connection_disconnected",
                        user_id=user_id,
                        provider=connection.provider.value,
                        connection_id=connection.id)

        return len(connections)

    # ==================== Status ====================

    async def get_sync_status(self, user_id: str) -> Dict[str, Any]:
        """Per-provider connection state, available calendars and synced calendars."""
        providers = []

        for provider in SyncProvider:
            connection = self.sync_db.get_user_connection(user_id, provider)
            connected = connection is not None and connection.status == SyncStatus.ACTIVE
            calendars: List[ExternalCalendar] = []
            synced: List[SyncedCalendar] = []

            if connected:
                synced = self.sync_db.get_synced_calendars(connection.id)
                try:
                    await self.tokens.ensure_fresh_token(connection)
                    calendars = await self._adapter(provider).list_calendars(connection)
                except Exception as e:
                    self.error_reporter.report(e, "sync_status_calendars",
                                               user_id=user_id,
                                               provider=provider.value)

            providers.append({
                "provider": provider.value,
                "isConnected": connected,
                "status": connection.status.value if connection else SyncStatus.INACTIVE.value,
                "lastSyncAt": connection.last_sync_at.isoformat() if connection and connection.last_sync_at else None,
                "isSyncing": bool(connection and self.is_syncing(connection.id)),
                "calendars": [c.model_dump() for c in calendars],
                "syncedCalendars": [
                    {
                        "id": s.id,
                        "localCalendarId": s.local_calendar_id,
                        "externalCalendarId": s.external_calendar_id,
                        "externalCalendarName": s.external_calendar_name,
                        "bidirectionalSync": s.bidirectional_sync,
                        "triggerAutomationRules": s.trigger_automation_rules,
                        "lastSyncAt": s.last_sync_at.isoformat() if s.last_sync_at else None,
                    }
                    for s in synced
                ],
            })

        return {"providers": providers}


# Global sync service instance (initialized in main.py)
calendar_sync_service: Optional[CalendarSyncService] = None


def init_calendar_sync_service(service: CalendarSyncService) -> CalendarSyncService:
    """Install the global sync service instance."""
    global calendar_sync_service
    calendar_sync_service = service
    logger.info("calendar_sync_service_initialized")
    return calendar_sync_service


def get_calendar_sync_service() -> Optional[CalendarSyncService]:
    return calendar_sync_service
