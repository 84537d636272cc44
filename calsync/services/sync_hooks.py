"""
Hooks for pushing local event changes to external calendars.

Called by the host application after it creates, updates or deletes an
event in a calendar that may be synced.
"""

import asyncio
from typing import Set

import structlog

from calsync.models.calendar_sync import LocalEvent
from calsync.services import calendar_sync_service as sync_service_module
from calsync.services.reconciler import is_newer_than_both

logger = structlog.get_logger()

# Keeps fire-and-forget tasks alive until they finish
_background_tasks: Set[asyncio.Task] = set()


async def on_local_event_created(event: LocalEvent):
    """
    Export a newly created local event to every bidirectional synced calendar.

    Args:
        event: Local event as stored (must carry id and calendar_id)
    """
    await _push_to_targets(event, "event_create")


async def on_local_event_updated(event: LocalEvent):
    """
    Export a local edit. Unmapped events are created externally; mapped
    events are pushed only when the edit is newer than both ledger stamps.
    """
    await _push_to_targets(event, "event_update")


async def _push_to_targets(event: LocalEvent, action: str):
    service = sync_service_module.get_calendar_sync_service()
    if not service or event.id is None:
        return
    if event.is_recurrence_template:
        return

    try:
        targets = service.sync_db.get_push_targets(event.calendar_id)
    except Exception as e:
        service.error_reporter.report(e, action, local_event_id=event.id, local_calendar_id=event.calendar_id)
        return
    if not targets:
        return

    logger.info("exporting_local_event",
                action=action,
                local_event_id=event.id,
                targets_count=len(targets))

    for synced_calendar, connection in targets:
        try:
            await service.tokens.ensure_fresh_token(connection)
            adapter = service.providers[connection.provider]
            user_timezone = service.user_timezone_for(connection.user_id)

            mapping = service.sync_db.get_mapping_by_local_id(synced_calendar.id, event.id)
            if mapping is None:
                await service.reconciler.push_new_event(
                    adapter, connection, synced_calendar, event, user_timezone
                )
                logger.info("local_event_exported",
                            synced_calendar_id=synced_calendar.id,
                            local_event_id=event.id)
            elif event.updated_at and is_newer_than_both(event.updated_at, mapping):
                await service.reconciler.push_event_update(
                    adapter, connection, synced_calendar, event, mapping, user_timezone
                )
                logger.info("local_event_update_exported",
                            synced_calendar_id=synced_calendar.id,
                            local_event_id=event.id,
                            external_event_id=mapping.external_event_id)
        except Exception as e:
            service.error_reporter.report(e, action,
                                          connection_id=connection.id,
                                          synced_calendar_id=synced_calendar.id,
                                          local_event_id=event.id)


async def on_local_event_deleted(event: LocalEvent):
    """
    Delete the external copies of a deleted local event.

    On a failed external delete the mapping is kept so the next sync
    pass retries it.
    """
    service = sync_service_module.get_calendar_sync_service()
    if not service or event.id is None:
        return

    try:
        targets = service.sync_db.get_push_targets(event.calendar_id)
    except Exception as e:
        service.error_reporter.report(e, "event_delete", local_event_id=event.id,
                                      local_calendar_id=event.calendar_id)
        return

    for synced_calendar, connection in targets:
        try:
            mapping = service.sync_db.get_mapping_by_local_id(synced_calendar.id, event.id)
            if mapping is None:
                continue
            await service.tokens.ensure_fresh_token(connection)
            adapter = service.providers[connection.provider]
            await adapter.delete_event(connection, synced_calendar.external_calendar_id, mapping.external_event_id)
            service.sync_db.delete_mapping(mapping.id)
            logger.info("local_event_deletion_exported",
                        synced_calendar_id=synced_calendar.id,
                        local_event_id=event.id,
                        external_event_id=mapping.external_event_id)
        except Exception as e:
            service.error_reporter.report(e, "event_delete",
                                          connection_id=connection.id,
                                          synced_calendar_id=synced_calendar.id,
                                          local_event_id=event.id)


def _schedule(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def trigger_local_event_created(event: LocalEvent) -> asyncio.Task:
    """Trigger export in background (non-blocking)."""
    return _schedule(on_local_event_created(event))


def trigger_local_event_updated(event: LocalEvent) -> asyncio.Task:
    """Trigger export in background (non-blocking)."""
    return _schedule(on_local_event_updated(event))


def trigger_local_event_deleted(event: LocalEvent) -> asyncio.Task:
    """Trigger export in background (non-blocking)."""
    return _schedule(on_local_event_deleted(event))
