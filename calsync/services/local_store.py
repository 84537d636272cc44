"""
Local calendar store used by the sync engine.

The engine only talks to LocalEventStore. SQLiteLocalStore is the
bundled implementation; a host application can plug its own CRUD
service in instead.
"""

import sqlite3
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Optional, List, Set, Dict, Any
from pathlib import Path
import structlog

from calsync.models.calendar_sync import LocalCalendar, LocalEvent, RecurrenceType
from calsync.utils.timezones import utc_now

logger = structlog.get_logger()

# Fields the sync engine is allowed to overwrite on a local event
SYNCED_EVENT_FIELDS = (
    "title", "description", "location", "is_all_day",
    "start_date", "start_time", "end_date", "end_time",
    "recurrence_id", "original_date",
)


class LocalEventStore(ABC):
    """Calendar/event CRUD the sync engine depends on."""

    @abstractmethod
    def get_user_timezone(self, user_id: str) -> Optional[str]:
        ...

    @abstractmethod
    def create_calendar(self, calendar: LocalCalendar) -> LocalCalendar:
        ...

    @abstractmethod
    def get_calendar(self, calendar_id: int) -> Optional[LocalCalendar]:
        ...

    @abstractmethod
    def rename_calendar(self, calendar_id: int, name: str):
        ...

    @abstractmethod
    def delete_calendar(self, calendar_id: int):
        """Delete a calendar and all of its events."""

    @abstractmethod
    def create_event(self, event: LocalEvent) -> LocalEvent:
        ...

    @abstractmethod
    def update_event(self, event_id: int, changes: Dict[str, Any]) -> Optional[LocalEvent]:
        """Apply field changes and bump updated_at. Returns None if the event is gone."""

    @abstractmethod
    def delete_event(self, event_id: int) -> bool:
        ...

    @abstractmethod
    def get_event(self, event_id: int) -> Optional[LocalEvent]:
        ...

    @abstractmethod
    def list_events(self, calendar_id: int, window_start: date, window_end: date) -> List[LocalEvent]:
        """Events of a calendar overlapping [window_start, window_end]."""

    @abstractmethod
    def list_event_ids(self, calendar_id: int) -> Set[int]:
        ...


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SQLiteLocalStore(LocalEventStore):
    """SQLite-backed local calendars and events."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_database(self):
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_settings (
                    user_id TEXT PRIMARY KEY,
                    timezone TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS calendars (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    color TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    calendar_id INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    location TEXT,

                    is_all_day INTEGER DEFAULT 0,
                    start_date TEXT NOT NULL,
                    start_time TEXT,
                    end_date TEXT,
                    end_time TEXT,

                    recurrence_type TEXT DEFAULT 'none',
                    parent_event_id INTEGER,
                    recurrence_id TEXT,
                    original_date TEXT,

                    color TEXT,
                    created_by TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    FOREIGN KEY (calendar_id) REFERENCES calendars(id) ON DELETE CASCADE
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_calendar_start
                ON events(calendar_id, start_date)
            """)
            conn.commit()

    # ==================== Users ====================

    def get_user_timezone(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT timezone FROM user_settings WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row["timezone"] if row else None

    def set_user_timezone(self, user_id: str, timezone: str):
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO user_settings (user_id, timezone) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET timezone = excluded.timezone
            """, (user_id, timezone))
            conn.commit()

    # ==================== Calendars ====================

    def create_calendar(self, calendar: LocalCalendar) -> LocalCalendar:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO calendars (owner_id, name, description, color) VALUES (?, ?, ?, ?)",
                (calendar.owner_id, calendar.name, calendar.description, calendar.color),
            )
            conn.commit()
            calendar_id = cursor.lastrowid

        logger.info("local_calendar_created", calendar_id=calendar_id, owner_id=calendar.owner_id)
        return calendar.model_copy(update={"id": calendar_id})

    def get_calendar(self, calendar_id: int) -> Optional[LocalCalendar]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM calendars WHERE id = ?", (calendar_id,)).fetchone()
        if not row:
            return None
        return LocalCalendar(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            description=row["description"],
            color=row["color"],
        )

    def rename_calendar(self, calendar_id: int, name: str):
        with self._connect() as conn:
            conn.execute("UPDATE calendars SET name = ? WHERE id = ?", (name, calendar_id))
            conn.commit()

    def delete_calendar(self, calendar_id: int):
        with self._connect() as conn:
            conn.execute("DELETE FROM calendars WHERE id = ?", (calendar_id,))
            conn.commit()

        logger.info("local_calendar_deleted", calendar_id=calendar_id)

    # ==================== Events ====================

    def _row_to_event(self, row: sqlite3.Row) -> LocalEvent:
        return LocalEvent(
            id=row["id"],
            calendar_id=row["calendar_id"],
            title=row["title"],
            description=row["description"],
            location=row["location"],
            is_all_day=bool(row["is_all_day"]),
            start_date=date.fromisoformat(row["start_date"]),
            start_time=row["start_time"],
            end_date=date.fromisoformat(row["end_date"]) if row["end_date"] else None,
            end_time=row["end_time"],
            recurrence_type=RecurrenceType(row["recurrence_type"] or "none"),
            parent_event_id=row["parent_event_id"],
            recurrence_id=row["recurrence_id"],
            original_date=date.fromisoformat(row["original_date"]) if row["original_date"] else None,
            color=row["color"],
            created_by=row["created_by"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def create_event(self, event: LocalEvent) -> LocalEvent:
        now = utc_now()

        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT INTO events (
                    calendar_id, title, description, location,
                    is_all_day, start_date, start_time, end_date, end_time,
                    recurrence_type, parent_event_id, recurrence_id, original_date,
                    color, created_by, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                event.calendar_id, event.title, event.description, event.location,
                1 if event.is_all_day else 0,
                event.start_date.isoformat(), event.start_time,
                event.end_date.isoformat() if event.end_date else None, event.end_time,
                event.recurrence_type.value, event.parent_event_id, event.recurrence_id,
                event.original_date.isoformat() if event.original_date else None,
                event.color, event.created_by, _iso(now), _iso(now)
            ))
            conn.commit()
            event_id = cursor.lastrowid

        return event.model_copy(update={"id": event_id, "created_at": now, "updated_at": now})

    def update_event(self, event_id: int, changes: Dict[str, Any]) -> Optional[LocalEvent]:
        current = self.get_event(event_id)
        if current is None:
            return None

        allowed = {k: v for k, v in changes.items() if k in SYNCED_EVENT_FIELDS}
        updated = current.model_copy(update={**allowed, "updated_at": utc_now()})

        with self._connect() as conn:
            conn.execute("""
                UPDATE events
                SET title = ?, description = ?, location = ?,
                    is_all_day = ?, start_date = ?, start_time = ?, end_date = ?, end_time = ?,
                    recurrence_id = ?, original_date = ?, updated_at = ?
                WHERE id = ?
            """, (
                updated.title, updated.description, updated.location,
                1 if updated.is_all_day else 0,
                updated.start_date.isoformat(), updated.start_time,
                updated.end_date.isoformat() if updated.end_date else None, updated.end_time,
                updated.recurrence_id,
                updated.original_date.isoformat() if updated.original_date else None,
                _iso(updated.updated_at), event_id
            ))
            conn.commit()

        return updated

    def delete_event(self, event_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM events WHERE id = ?", (event_id,))
            conn.commit()
            return cursor.rowcount > 0

    def get_event(self, event_id: int) -> Optional[LocalEvent]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return self._row_to_event(row) if row else None

    def list_events(self, calendar_id: int, window_start: date, window_end: date) -> List[LocalEvent]:
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM events
                WHERE calendar_id = ?
                  AND start_date <= ?
                  AND COALESCE(end_date, start_date) >= ?
                ORDER BY start_date, id
            """, (calendar_id, window_end.isoformat(), window_start.isoformat())).fetchall()
        return [self._row_to_event(row) for row in rows]

    def list_event_ids(self, calendar_id: int) -> Set[int]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id FROM events WHERE calendar_id = ?", (calendar_id,)).fetchall()
        return {row["id"] for row in rows}
