"""
Reconciliation of one synced calendar between a provider and the local store.

Conflict policy: a change is applied in a direction only when its
modification instant is newer than both timestamps stored on the mapping.
The mapping timestamps are advanced after every write so that our own
writes are never read back as fresh edits.
"""

from typing import Optional, List, Dict, Set, Callable, Awaitable, Any

import structlog
from pydantic import BaseModel

from calsync.errors import MappingConflict, ProviderWriteFailed
from calsync.models.calendar_sync import (
    LocalEvent,
    SyncConnection,
    SyncedCalendar,
    SyncEventMapping,
    SyncProvider,
)
from calsync.schemas.events import CanonicalEvent
from calsync.services.local_store import LocalEventStore
from calsync.services.providers.base import CalendarProvider
from calsync.services.sync_database import SyncDatabase
from calsync.utils.timezones import utc_now

logger = structlog.get_logger()

# triggerRules(event_id, user_id, trigger_type, selected_rule_ids)
RuleTrigger = Callable[[int, str, str, Optional[List[int]]], Awaitable[Any]]

IMPORT_TRIGGER_TYPES = ("event.created", "calendar.imported")


class CalendarSyncReport(BaseModel):
    """Counts for one calendar reconciliation pass."""
    imported: int = 0
    updated: int = 0
    deleted_local: int = 0
    exported: int = 0
    updated_external: int = 0
    deleted_external: int = 0
    skipped: int = 0
    errors: int = 0
    cursor_reset: bool = False

    @property
    def writes(self) -> int:
        return (self.imported + self.updated + self.deleted_local
                + self.exported + self.updated_external + self.deleted_external)


def canonical_from_local(event: LocalEvent) -> CanonicalEvent:
    return CanonicalEvent(
        title=event.title,
        description=event.description,
        location=event.location,
        all_day=event.is_all_day,
        start_date=event.start_date,
        start_time=None if event.is_all_day else event.start_time,
        end_date=event.end_date,
        end_time=None if event.is_all_day else event.end_time,
        original_date=event.original_date,
        last_modified=event.updated_at or utc_now(),
    )


def local_fields_from_canonical(event: CanonicalEvent) -> Dict[str, Any]:
    """Local event fields owned by the sync engine."""
    return {
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "is_all_day": event.all_day,
        "start_date": event.start_date,
        "start_time": None if event.all_day else event.start_time,
        "end_date": event.end_date,
        "end_time": None if event.all_day else event.end_time,
        "recurrence_id": event.recurrence_parent_id,
        "original_date": event.original_date,
    }


def is_newer_than_both(instant, mapping: SyncEventMapping) -> bool:
    return instant > mapping.last_modified_external and instant > mapping.last_modified_local


class Reconciler:
    """Applies external changes locally and pushes local changes out."""

    def __init__(
        self,
        sync_db: SyncDatabase,
        local_store: LocalEventStore,
        providers: Dict[SyncProvider, CalendarProvider],
        rule_trigger: Optional[RuleTrigger] = None,
    ):
        self.sync_db = sync_db
        self.local_store = local_store
        self.providers = providers
        self.rule_trigger = rule_trigger

    async def reconcile_calendar(
        self,
        connection: SyncConnection,
        synced_calendar: SyncedCalendar,
        user_timezone: str,
        trigger_automation: bool = False,
    ) -> CalendarSyncReport:
        """
        Run one full reconciliation pass for a synced calendar.

        Args:
            connection: Active provider connection
            synced_calendar: Calendar to reconcile
            user_timezone: Zone civil dates and times are rendered in
            trigger_automation: Fire automation rules for imported events
                (only when the calendar has them enabled)

        Returns:
            Per-calendar counts

        Raises:
            ProviderFetchFailed: The external change fetch failed; nothing was written
        """
        adapter = self.providers[connection.provider]
        report = CalendarSyncReport()
        log = logger.bind(connection_id=connection.id,
                          synced_calendar_id=synced_calendar.id,
                          provider=connection.provider.value)

        fetch = await adapter.fetch_events(
            connection,
            synced_calendar.external_calendar_id,
            cursor=synced_calendar.sync_token,
            user_timezone=user_timezone,
        )
        report.cursor_reset = fetch.cursor_reset

        mappings: Dict[str, SyncEventMapping] = {
            m.external_event_id: m for m in self.sync_db.get_mappings(synced_calendar.id)
        }
        touched: Set[int] = set()

        # ==================== External deletions ====================

        for external_id in fetch.deleted_ids:
            mapping = mappings.pop(external_id, None)
            if mapping is None:
                continue
            try:
                self.local_store.delete_event(mapping.local_event_id)
                self.sync_db.delete_mapping(mapping.id)
                touched.add(mapping.local_event_id)
                report.deleted_local += 1
            except Exception as e:
                log.error("external_deletion_failed",
                          external_event_id=external_id,
                          local_event_id=mapping.local_event_id,
                          error=str(e),
                          exc_info=True)
                report.errors += 1

        # ==================== External creates / updates ====================

        for event in fetch.events:
            mapping = mappings.get(event.external_id)
            try:
                if mapping is None:
                    created = await self._import_event(
                        adapter, connection, synced_calendar, event, user_timezone, trigger_automation, report
                    )
                    if created:
                        mappings[event.external_id] = created
                        touched.add(created.local_event_id)
                    continue

                if not is_newer_than_both(event.last_modified, mapping):
                    report.skipped += 1
                    continue

                event = await adapter.enrich_event(
                    connection, synced_calendar.external_calendar_id, event, user_timezone
                )
                local = self.local_store.update_event(mapping.local_event_id, local_fields_from_canonical(event))
                if local is None:
                    # Local copy vanished; rebuild it from the external event
                    log.warning("stale_mapping_recreated",
                                external_event_id=event.external_id,
                                local_event_id=mapping.local_event_id)
                    self.sync_db.delete_mapping(mapping.id)
                    del mappings[event.external_id]
                    created = await self._import_event(
                        adapter, connection, synced_calendar, event, user_timezone, trigger_automation, report
                    )
                    if created:
                        mappings[event.external_id] = created
                        touched.add(created.local_event_id)
                    continue

                self.sync_db.update_mapping_timestamps(
                    mapping.id,
                    last_modified_local=local.updated_at,
                    last_modified_external=event.last_modified,
                )
                mappings[event.external_id] = mapping.model_copy(update={
                    "last_modified_local": local.updated_at,
                    "last_modified_external": event.last_modified,
                })
                touched.add(local.id)
                report.updated += 1
                log.info("event_updated_from_external",
                         external_event_id=event.external_id,
                         local_event_id=local.id)
            except Exception as e:
                log.error("external_event_apply_failed",
                          external_event_id=event.external_id,
                          local_event_id=mapping.local_event_id if mapping else None,
                          error=str(e),
                          exc_info=True)
                report.errors += 1

        # ==================== Local -> external ====================

        if synced_calendar.bidirectional_sync:
            await self._push_local_changes(adapter, connection, synced_calendar, user_timezone,
                                           mappings, touched, report)

        # ==================== Cursor ====================

        if fetch.next_cursor:
            next_cursor = fetch.next_cursor
        elif fetch.cursor_reset:
            next_cursor = None
        else:
            next_cursor = synced_calendar.sync_token
        self.sync_db.update_sync_state(synced_calendar.id, next_cursor, utc_now())

        log.info("calendar_reconciled", **report.model_dump())
        return report

    async def _import_event(
        self,
        adapter: CalendarProvider,
        connection: SyncConnection,
        synced_calendar: SyncedCalendar,
        event: CanonicalEvent,
        user_timezone: str,
        trigger_automation: bool,
        report: CalendarSyncReport,
    ) -> Optional[SyncEventMapping]:
        event = await adapter.enrich_event(connection, synced_calendar.external_calendar_id, event, user_timezone)

        local = self.local_store.create_event(LocalEvent(
            calendar_id=synced_calendar.local_calendar_id,
            created_by=connection.user_id,
            **local_fields_from_canonical(event),
        ))

        now = utc_now()
        try:
            mapping = self.sync_db.create_mapping(SyncEventMapping(
                synced_calendar_id=synced_calendar.id,
                local_event_id=local.id,
                external_event_id=event.external_id,
                last_modified_local=now,
                last_modified_external=now,
            ))
        except MappingConflict:
            # A concurrent pass imported the same event first
            self.local_store.delete_event(local.id)
            logger.info("duplicate_import_discarded",
                        connection_id=connection.id,
                        synced_calendar_id=synced_calendar.id,
                        external_event_id=event.external_id,
                        local_event_id=local.id)
            report.skipped += 1
            return None
        except Exception:
            # Unmapped local copy would be exported as a new external event
            self.local_store.delete_event(local.id)
            raise

        report.imported += 1
        logger.info("event_imported_from_external",
                    connection_id=connection.id,
                    synced_calendar_id=synced_calendar.id,
                    external_event_id=event.external_id,
                    local_event_id=local.id)

        if trigger_automation and synced_calendar.trigger_automation_rules:
            await self._trigger_rules(local.id, connection.user_id, synced_calendar)
        return mapping

    async def _trigger_rules(self, event_id: int, user_id: str, synced_calendar: SyncedCalendar):
        if self.rule_trigger is None:
            return
        selected = synced_calendar.selected_rule_ids or None
        for trigger_type in IMPORT_TRIGGER_TYPES:
            try:
                await self.rule_trigger(event_id, user_id, trigger_type, selected)
            except Exception as e:
                logger.warning("automation_trigger_failed",
                               local_event_id=event_id,
                               trigger_type=trigger_type,
                               error=str(e),
                               exc_info=True)

    async def _push_local_changes(
        self,
        adapter: CalendarProvider,
        connection: SyncConnection,
        synced_calendar: SyncedCalendar,
        user_timezone: str,
        mappings: Dict[str, SyncEventMapping],
        touched: Set[int],
        report: CalendarSyncReport,
    ):
        calendar_id = synced_calendar.external_calendar_id
        by_local_id = {m.local_event_id: m for m in mappings.values()}

        window_start, window_end = adapter.sync_window()
        local_events = self.local_store.list_events(
            synced_calendar.local_calendar_id, window_start.date(), window_end.date()
        )

        for local in local_events:
            if local.id in touched or local.is_recurrence_template:
                continue
            mapping = by_local_id.get(local.id)
            try:
                if mapping is None:
                    await self.push_new_event(adapter, connection, synced_calendar, local, user_timezone)
                    report.exported += 1
                elif is_newer_than_both(local.updated_at, mapping):
                    await self.push_event_update(adapter, connection, synced_calendar, local, mapping, user_timezone)
                    report.updated_external += 1
            except Exception as e:
                logger.error("local_event_push_failed",
                             connection_id=connection.id,
                             synced_calendar_id=synced_calendar.id,
                             local_event_id=local.id,
                             external_event_id=mapping.external_event_id if mapping else None,
                             error=str(e),
                             exc_info=not isinstance(e, ProviderWriteFailed))
                report.errors += 1

        existing_ids = self.local_store.list_event_ids(synced_calendar.local_calendar_id)
        for mapping in list(mappings.values()):
            if mapping.local_event_id in existing_ids:
                continue
            try:
                await adapter.delete_event(connection, calendar_id, mapping.external_event_id)
                self.sync_db.delete_mapping(mapping.id)
                del mappings[mapping.external_event_id]
                report.deleted_external += 1
                logger.info("external_event_deleted",
                            connection_id=connection.id,
                            synced_calendar_id=synced_calendar.id,
                            external_event_id=mapping.external_event_id,
                            local_event_id=mapping.local_event_id)
            except ProviderWriteFailed as e:
                # Mapping stays so the next pass retries
                logger.error("external_event_delete_failed",
                             connection_id=connection.id,
                             synced_calendar_id=synced_calendar.id,
                             external_event_id=mapping.external_event_id,
                             local_event_id=mapping.local_event_id,
                             status_code=e.status_code,
                             error=str(e))
                report.errors += 1

    # ==================== Single-event push (shared with hooks) ====================

    async def push_new_event(
        self,
        adapter: CalendarProvider,
        connection: SyncConnection,
        synced_calendar: SyncedCalendar,
        local: LocalEvent,
        user_timezone: str,
    ) -> Optional[SyncEventMapping]:
        """Create the external copy of a local event and map it."""
        result = await adapter.push_event(
            connection, synced_calendar.external_calendar_id, canonical_from_local(local), user_timezone
        )
        try:
            return self.sync_db.create_mapping(SyncEventMapping(
                synced_calendar_id=synced_calendar.id,
                local_event_id=local.id,
                external_event_id=result.external_id,
                last_modified_local=local.updated_at or utc_now(),
                last_modified_external=result.last_modified,
            ))
        except MappingConflict:
            # Another writer exported this event first; drop our copy
            logger.info("duplicate_export_discarded",
                        connection_id=connection.id,
                        synced_calendar_id=synced_calendar.id,
                        local_event_id=local.id,
                        external_event_id=result.external_id)
            await adapter.delete_event(connection, synced_calendar.external_calendar_id, result.external_id)
            return None

    async def push_event_update(
        self,
        adapter: CalendarProvider,
        connection: SyncConnection,
        synced_calendar: SyncedCalendar,
        local: LocalEvent,
        mapping: SyncEventMapping,
        user_timezone: str,
    ):
        """Send a local edit to the mapped external event and advance the ledger."""
        result = await adapter.push_event(
            connection,
            synced_calendar.external_calendar_id,
            canonical_from_local(local),
            user_timezone,
            external_id=mapping.external_event_id,
        )
        self.sync_db.update_mapping_timestamps(
            mapping.id,
            last_modified_local=local.updated_at,
            last_modified_external=result.last_modified,
        )
