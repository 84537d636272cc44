"""Tests for local change hooks."""

import sqlite3

import pytest

from calsync.models.calendar_sync import LocalEvent, RecurrenceType
from calsync.services import calendar_sync_service as sync_service_module
from calsync.services import sync_hooks


@pytest.fixture
def installed_service(sync_service, monkeypatch):
    monkeypatch.setattr(sync_service_module, "calendar_sync_service", sync_service)
    return sync_service


@pytest.fixture
def local_event(local_store, synced_calendar, tomorrow):
    return local_store.create_event(LocalEvent(
        calendar_id=synced_calendar.local_calendar_id,
        title="Planning",
        start_date=tomorrow,
        start_time="15:00",
        end_date=tomorrow,
        end_time="16:00",
    ))


class TestLocalEventHooks:

    @pytest.mark.asyncio
    async def test_created_event_is_exported(self, installed_service, sync_db, fake_google,
                                             synced_calendar, local_event):
        await sync_hooks.on_local_event_created(local_event)

        mapping = sync_db.get_mapping_by_local_id(synced_calendar.id, local_event.id)
        assert mapping is not None
        assert fake_google.events[mapping.external_event_id].title == "Planning"

    @pytest.mark.asyncio
    async def test_update_without_changes_is_not_pushed(self, installed_service, fake_google, local_event):
        await sync_hooks.on_local_event_created(local_event)
        await sync_hooks.on_local_event_updated(local_event)

        assert len(fake_google.push_calls) == 1

    @pytest.mark.asyncio
    async def test_update_pushes_newer_edit(self, installed_service, sync_db, local_store, fake_google,
                                            synced_calendar, local_event):
        await sync_hooks.on_local_event_created(local_event)
        edited = local_store.update_event(local_event.id, {"title": "Planning v2"})

        await sync_hooks.on_local_event_updated(edited)

        mapping = sync_db.get_mapping_by_local_id(synced_calendar.id, local_event.id)
        assert fake_google.push_calls[-1]["external_id"] == mapping.external_event_id
        assert fake_google.events[mapping.external_event_id].title == "Planning v2"

    @pytest.mark.asyncio
    async def test_update_of_unmapped_event_creates_it(self, installed_service, sync_db, synced_calendar, local_event):
        await sync_hooks.on_local_event_updated(local_event)

        assert sync_db.get_mapping_by_local_id(synced_calendar.id, local_event.id) is not None

    @pytest.mark.asyncio
    async def test_deleted_event_removed_externally(self, installed_service, sync_db, local_store, fake_google,
                                                    synced_calendar, local_event):
        await sync_hooks.on_local_event_created(local_event)
        mapping = sync_db.get_mapping_by_local_id(synced_calendar.id, local_event.id)
        local_store.delete_event(local_event.id)

        await sync_hooks.on_local_event_deleted(local_event)

        assert fake_google.delete_calls == [mapping.external_event_id]
        assert sync_db.get_mapping_by_local_id(synced_calendar.id, local_event.id) is None

    @pytest.mark.asyncio
    async def test_failed_delete_is_reported_and_mapping_kept(self, installed_service, sync_db, fake_google,
                                                              reporter, synced_calendar, local_event):
        await sync_hooks.on_local_event_created(local_event)
        fake_google.fail_delete = True

        await sync_hooks.on_local_event_deleted(local_event)

        assert sync_db.get_mapping_by_local_id(synced_calendar.id, local_event.id) is not None
        assert reporter.reports[0][1] == "event_delete"

    @pytest.mark.asyncio
    async def test_recurrence_template_ignored(self, installed_service, local_store, fake_google,
                                               synced_calendar, tomorrow):
        template = local_store.create_event(LocalEvent(
            calendar_id=synced_calendar.local_calendar_id, title="Every Monday", start_date=tomorrow,
            recurrence_type=RecurrenceType.WEEKLY,
        ))

        await sync_hooks.on_local_event_created(template)

        assert fake_google.push_calls == []

    @pytest.mark.asyncio
    async def test_read_only_calendar_ignored(self, installed_service, sync_db, fake_google,
                                              synced_calendar, local_event):
        sync_db.update_synced_calendar_settings(synced_calendar.id, False, False, [])

        await sync_hooks.on_local_event_created(local_event)

        assert fake_google.push_calls == []

    @pytest.mark.asyncio
    async def test_push_failure_is_swallowed(self, installed_service, fake_google, reporter, local_event):
        async def broken_push(*args, **kwargs):
            raise RuntimeError("provider down")

        fake_google.push_event = broken_push

        await sync_hooks.on_local_event_created(local_event)

        assert len(reporter.reports) == 1
        assert reporter.reports[0][1] == "event_create"

    @pytest.mark.asyncio
    async def test_no_service_is_noop(self, monkeypatch, local_event):
        monkeypatch.setattr(sync_service_module, "calendar_sync_service", None)

        await sync_hooks.on_local_event_created(local_event)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("hook,action", [
        ("on_local_event_created", "event_create"),
        ("on_local_event_updated", "event_update"),
        ("on_local_event_deleted", "event_delete"),
    ])
    async def test_target_lookup_failure_is_swallowed(self, installed_service, sync_db, reporter,
                                                      local_event, monkeypatch, hook, action):
        def locked(local_calendar_id):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(sync_db, "get_push_targets", locked)

        await getattr(sync_hooks, hook)(local_event)

        assert len(reporter.reports) == 1
        assert isinstance(reporter.reports[0][0], sqlite3.OperationalError)
        assert reporter.reports[0][1] == action


class TestFireAndForget:

    @pytest.mark.asyncio
    async def test_trigger_schedules_task(self, installed_service, sync_db, synced_calendar, local_event):
        task = sync_hooks.trigger_local_event_created(local_event)
        assert task in sync_hooks._background_tasks

        await task

        assert sync_db.get_mapping_by_local_id(synced_calendar.id, local_event.id) is not None

    @pytest.mark.asyncio
    async def test_triggered_task_never_fails(self, installed_service, sync_db, local_event, monkeypatch):
        def locked(local_calendar_id):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(sync_db, "get_push_targets", locked)

        task = sync_hooks.trigger_local_event_deleted(local_event)
        await task

        assert task.exception() is None
