"""
SQLite database service for calendar synchronization state.

Holds provider connections, synced calendars, event mappings and sync logs.
OAuth tokens are encrypted with Fernet before they touch the disk.
"""

import sqlite3
import json
from datetime import datetime
from typing import Optional, List, Tuple
from pathlib import Path
import structlog
from cryptography.fernet import Fernet

from calsync.errors import MappingConflict
from calsync.models.calendar_sync import (
    SyncConnection,
    SyncedCalendar,
    SyncEventMapping,
    SyncLog,
    SyncProvider,
    SyncStatus,
)
from calsync.utils.timezones import utc_now

logger = structlog.get_logger()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SyncDatabase:
    """SQLite database for managing external calendar sync."""

    def __init__(
        self,
        db_path: str,
        encryption_key_path: Optional[str] = None,
        encryption_key: Optional[bytes] = None,
    ):
        self.db_path = db_path
        self.encryption_key_path = encryption_key_path
        self.encryption_key = encryption_key or self._get_or_create_encryption_key()
        self.cipher = Fernet(self.encryption_key)
        self._init_database()

    def _get_or_create_encryption_key(self) -> bytes:
        """Get or create encryption key for OAuth tokens."""
        key_path = Path(self.encryption_key_path or Path(self.db_path).with_suffix(".key"))

        if key_path.exists():
            return key_path.read_bytes()

        key = Fernet.generate_key()
        key_path.parent.mkdir(parents=True, exist_ok=True)
        key_path.write_bytes(key)
        key_path.chmod(0o600)  # Restrict permissions
        logger.info("encryption_key_generated", path=str(key_path))
        return key

    def _encrypt(self, data: Optional[str]) -> Optional[str]:
        """Encrypt sensitive data."""
        if data is None:
            return None
        return self.cipher.encrypt(data.encode()).decode()

    def _decrypt(self, encrypted_data: Optional[str]) -> Optional[str]:
        """Decrypt sensitive data."""
        if encrypted_data is None:
            return None
        return self.cipher.decrypt(encrypted_data.encode()).decode()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_database(self):
        """Initialize database schema."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_connections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    provider_account_id TEXT NOT NULL,

                    access_token TEXT,
                    refresh_token TEXT,
                    token_expires_at TEXT,

                    status TEXT NOT NULL DEFAULT 'active',
                    last_sync_at TEXT,

                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    UNIQUE(user_id, provider)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS synced_calendars (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sync_connection_id INTEGER NOT NULL,
                    local_calendar_id INTEGER NOT NULL,

                    external_calendar_id TEXT NOT NULL,
                    external_calendar_name TEXT NOT NULL,

                    bidirectional_sync INTEGER DEFAULT 1,
                    sync_token TEXT,
                    last_sync_at TEXT,

                    trigger_automation_rules INTEGER DEFAULT 0,
                    selected_rule_ids TEXT,

                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    FOREIGN KEY (sync_connection_id) REFERENCES sync_connections(id) ON DELETE CASCADE,
                    UNIQUE(sync_connection_id, external_calendar_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_event_mappings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    synced_calendar_id INTEGER NOT NULL,

                    local_event_id INTEGER NOT NULL,
                    external_event_id TEXT NOT NULL,

                    last_modified_local TEXT NOT NULL,
                    last_modified_external TEXT NOT NULL,

                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    FOREIGN KEY (synced_calendar_id) REFERENCES synced_calendars(id) ON DELETE CASCADE,
                    UNIQUE(synced_calendar_id, external_event_id),
                    UNIQUE(synced_calendar_id, local_event_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    connection_id INTEGER NOT NULL,

                    sync_trigger TEXT NOT NULL,
                    calendars_synced INTEGER DEFAULT 0,
                    calendars_failed INTEGER DEFAULT 0,
                    events_imported INTEGER DEFAULT 0,
                    events_updated INTEGER DEFAULT 0,
                    events_deleted INTEGER DEFAULT 0,
                    events_exported INTEGER DEFAULT 0,
                    events_updated_external INTEGER DEFAULT 0,
                    events_deleted_external INTEGER DEFAULT 0,
                    errors INTEGER DEFAULT 0,

                    error_message TEXT,
                    duration_seconds REAL DEFAULT 0,

                    created_at TEXT NOT NULL,

                    FOREIGN KEY (connection_id) REFERENCES sync_connections(id) ON DELETE CASCADE
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_connections_user
                ON sync_connections(user_id)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_synced_calendars_local
                ON synced_calendars(local_calendar_id)
            """)

            conn.commit()
            logger.info("sync_database_initialized", db_path=self.db_path)

    # ==================== Connections ====================

    def _row_to_connection(self, row: sqlite3.Row) -> SyncConnection:
        return SyncConnection(
            id=row["id"],
            user_id=row["user_id"],
            provider=SyncProvider(row["provider"]),
            provider_account_id=row["provider_account_id"],
            access_token=self._decrypt(row["access_token"]),
            refresh_token=self._decrypt(row["refresh_token"]),
            token_expires_at=_dt(row["token_expires_at"]),
            status=SyncStatus(row["status"]),
            last_sync_at=_dt(row["last_sync_at"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    def upsert_connection(
        self,
        user_id: str,
        provider: SyncProvider,
        provider_account_id: str,
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime],
    ) -> SyncConnection:
        """
        Create the (user, provider) connection or re-activate the existing one.

        An existing refresh token is kept when the provider did not issue a new one.
        """
        now = _iso(utc_now())

        with self._connect() as conn:
            conn.execute("""
                INSERT INTO sync_connections (
                    user_id, provider, provider_account_id,
                    access_token, refresh_token, token_expires_at,
                    status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, provider) DO UPDATE SET
                    provider_account_id = excluded.provider_account_id,
                    access_token = excluded.access_token,
                    refresh_token = COALESCE(excluded.refresh_token, sync_connections.refresh_token),
                    token_expires_at = excluded.token_expires_at,
                    status = excluded.status,
                    updated_at = excluded.updated_at
            """, (
                user_id, provider.value, provider_account_id,
                self._encrypt(access_token), self._encrypt(refresh_token),
                _iso(token_expires_at), SyncStatus.ACTIVE.value, now, now
            ))
            conn.commit()

        connection = self.get_user_connection(user_id, provider)
        logger.info("sync_connection_saved",
                    connection_id=connection.id,
                    user_id=user_id,
                    provider=provider.value)
        return connection

    def get_connection(self, connection_id: int) -> Optional[SyncConnection]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_connections WHERE id = ?", (connection_id,)
            ).fetchone()
        return self._row_to_connection(row) if row else None

    def get_user_connection(self, user_id: str, provider: SyncProvider) -> Optional[SyncConnection]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_connections WHERE user_id = ? AND provider = ?",
                (user_id, provider.value),
            ).fetchone()
        return self._row_to_connection(row) if row else None

    def get_user_connections(self, user_id: str, active_only: bool = True) -> List[SyncConnection]:
        """Get all provider connections for a user."""
        query = "SELECT * FROM sync_connections WHERE user_id = ?"
        params: list = [user_id]
        if active_only:
            query += " AND status = ?"
            params.append(SyncStatus.ACTIVE.value)

        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [self._row_to_connection(row) for row in rows]

    def get_active_connections(self) -> List[SyncConnection]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_connections WHERE status = ? ORDER BY id",
                (SyncStatus.ACTIVE.value,),
            ).fetchall()
        return [self._row_to_connection(row) for row in rows]

    def update_connection_tokens(
        self,
        connection_id: int,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None
    ):
        """Update OAuth tokens. A missing refresh token or expiry keeps the stored one."""
        with self._connect() as conn:
            conn.execute("""
                UPDATE sync_connections
                SET access_token = ?,
                    refresh_token = COALESCE(?, refresh_token),
                    token_expires_at = COALESCE(?, token_expires_at),
                    updated_at = ?
                WHERE id = ?
            """, (
                self._encrypt(access_token),
                self._encrypt(refresh_token),
                _iso(expires_at),
                _iso(utc_now()),
                connection_id
            ))
            conn.commit()

        logger.info("connection_tokens_updated", connection_id=connection_id)

    def update_connection_status(self, connection_id: int, status: SyncStatus):
        with self._connect() as conn:
            conn.execute(
                "UPDATE sync_connections SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, _iso(utc_now()), connection_id),
            )
            conn.commit()

    def update_connection_last_sync(self, connection_id: int, synced_at: datetime):
        with self._connect() as conn:
            conn.execute(
                "UPDATE sync_connections SET last_sync_at = ?, updated_at = ? WHERE id = ?",
                (_iso(synced_at), _iso(utc_now()), connection_id),
            )
            conn.commit()

    def deactivate_connection(self, connection_id: int):
        """Clear tokens and sync state; the row stays so a reconnect reuses it."""
        with self._connect() as conn:
            conn.execute("""
                UPDATE sync_connections
                SET access_token = NULL, refresh_token = NULL, token_expires_at = NULL,
                    last_sync_at = NULL, status = ?, updated_at = ?
                WHERE id = ?
            """, (SyncStatus.INACTIVE.value, _iso(utc_now()), connection_id))
            conn.commit()

        logger.info("sync_connection_deactivated", connection_id=connection_id)

    # ==================== Synced Calendars ====================

    def _row_to_calendar(self, row: sqlite3.Row) -> SyncedCalendar:
        return SyncedCalendar(
            id=row["id"],
            sync_connection_id=row["sync_connection_id"],
            local_calendar_id=row["local_calendar_id"],
            external_calendar_id=row["external_calendar_id"],
            external_calendar_name=row["external_calendar_name"],
            bidirectional_sync=bool(row["bidirectional_sync"]),
            sync_token=row["sync_token"],
            last_sync_at=_dt(row["last_sync_at"]),
            trigger_automation_rules=bool(row["trigger_automation_rules"]),
            selected_rule_ids=json.loads(row["selected_rule_ids"]) if row["selected_rule_ids"] else [],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    def create_synced_calendar(self, calendar: SyncedCalendar) -> SyncedCalendar:
        now = utc_now()

        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT INTO synced_calendars (
                    sync_connection_id, local_calendar_id,
                    external_calendar_id, external_calendar_name,
                    bidirectional_sync, sync_token, last_sync_at,
                    trigger_automation_rules, selected_rule_ids,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                calendar.sync_connection_id, calendar.local_calendar_id,
                calendar.external_calendar_id, calendar.external_calendar_name,
                1 if calendar.bidirectional_sync else 0,
                calendar.sync_token, _iso(calendar.last_sync_at),
                1 if calendar.trigger_automation_rules else 0,
                json.dumps(calendar.selected_rule_ids),
                _iso(now), _iso(now)
            ))
            conn.commit()
            calendar_id = cursor.lastrowid

        logger.info("synced_calendar_created",
                    synced_calendar_id=calendar_id,
                    connection_id=calendar.sync_connection_id,
                    external_calendar_id=calendar.external_calendar_id)
        return calendar.model_copy(update={"id": calendar_id, "created_at": now, "updated_at": now})

    def get_synced_calendar(self, synced_calendar_id: int) -> Optional[SyncedCalendar]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM synced_calendars WHERE id = ?", (synced_calendar_id,)
            ).fetchone()
        return self._row_to_calendar(row) if row else None

    def get_synced_calendar_by_external_id(
        self, connection_id: int, external_calendar_id: str
    ) -> Optional[SyncedCalendar]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT * FROM synced_calendars
                WHERE sync_connection_id = ? AND external_calendar_id = ?
            """, (connection_id, external_calendar_id)).fetchone()
        return self._row_to_calendar(row) if row else None

    def get_synced_calendars(self, connection_id: int) -> List[SyncedCalendar]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM synced_calendars WHERE sync_connection_id = ? ORDER BY id",
                (connection_id,),
            ).fetchall()
        return [self._row_to_calendar(row) for row in rows]

    def get_push_targets(self, local_calendar_id: int) -> List[Tuple[SyncedCalendar, SyncConnection]]:
        """Bidirectional synced calendars mirrored by a local calendar, with their active connections."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT sc.id AS synced_calendar_id, c.id AS connection_id
                FROM synced_calendars sc
                JOIN sync_connections c ON c.id = sc.sync_connection_id
                WHERE sc.local_calendar_id = ?
                  AND sc.bidirectional_sync = 1
                  AND c.status = ?
                ORDER BY sc.id
            """, (local_calendar_id, SyncStatus.ACTIVE.value)).fetchall()

        targets = []
        for row in rows:
            calendar = self.get_synced_calendar(row["synced_calendar_id"])
            connection = self.get_connection(row["connection_id"])
            if calendar and connection:
                targets.append((calendar, connection))
        return targets

    def update_synced_calendar_settings(
        self,
        synced_calendar_id: int,
        bidirectional_sync: bool,
        trigger_automation_rules: bool,
        selected_rule_ids: List[int],
    ):
        with self._connect() as conn:
            conn.execute("""
                UPDATE synced_calendars
                SET bidirectional_sync = ?, trigger_automation_rules = ?,
                    selected_rule_ids = ?, updated_at = ?
                WHERE id = ?
            """, (
                1 if bidirectional_sync else 0,
                1 if trigger_automation_rules else 0,
                json.dumps(selected_rule_ids),
                _iso(utc_now()),
                synced_calendar_id
            ))
            conn.commit()

    def update_sync_state(self, synced_calendar_id: int, sync_token: Optional[str], synced_at: datetime):
        """Store the provider cursor (None clears it) and the last sync time."""
        with self._connect() as conn:
            conn.execute("""
                UPDATE synced_calendars
                SET sync_token = ?, last_sync_at = ?, updated_at = ?
                WHERE id = ?
            """, (sync_token, _iso(synced_at), _iso(utc_now()), synced_calendar_id))
            conn.commit()

    def delete_synced_calendar(self, synced_calendar_id: int):
        """Delete a synced calendar (cascades to its mappings)."""
        with self._connect() as conn:
            conn.execute("DELETE FROM synced_calendars WHERE id = ?", (synced_calendar_id,))
            conn.commit()

        logger.info("synced_calendar_deleted", synced_calendar_id=synced_calendar_id)

    # ==================== Event Mappings ====================

    def _row_to_mapping(self, row: sqlite3.Row) -> SyncEventMapping:
        return SyncEventMapping(
            id=row["id"],
            synced_calendar_id=row["synced_calendar_id"],
            local_event_id=row["local_event_id"],
            external_event_id=row["external_event_id"],
            last_modified_local=_dt(row["last_modified_local"]),
            last_modified_external=_dt(row["last_modified_external"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    def create_mapping(self, mapping: SyncEventMapping) -> SyncEventMapping:
        """
        Insert an event mapping.

        Raises:
            MappingConflict: The external or local event is already mapped in this calendar
        """
        now = utc_now()

        try:
            with self._connect() as conn:
                cursor = conn.execute("""
                    INSERT INTO sync_event_mappings (
                        synced_calendar_id, local_event_id, external_event_id,
                        last_modified_local, last_modified_external,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    mapping.synced_calendar_id, mapping.local_event_id, mapping.external_event_id,
                    _iso(mapping.last_modified_local), _iso(mapping.last_modified_external),
                    _iso(now), _iso(now)
                ))
                conn.commit()
                mapping_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise MappingConflict(
                mapping.synced_calendar_id, mapping.external_event_id, str(mapping.local_event_id)
            ) from e

        return mapping.model_copy(update={"id": mapping_id, "created_at": now, "updated_at": now})

    def get_mappings(self, synced_calendar_id: int) -> List[SyncEventMapping]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_event_mappings WHERE synced_calendar_id = ? ORDER BY id",
                (synced_calendar_id,),
            ).fetchall()
        return [self._row_to_mapping(row) for row in rows]

    def get_mapping_by_external_id(
        self, synced_calendar_id: int, external_event_id: str
    ) -> Optional[SyncEventMapping]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT * FROM sync_event_mappings
                WHERE synced_calendar_id = ? AND external_event_id = ?
            """, (synced_calendar_id, external_event_id)).fetchone()
        return self._row_to_mapping(row) if row else None

    def get_mapping_by_local_id(self, synced_calendar_id: int, local_event_id: int) -> Optional[SyncEventMapping]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT * FROM sync_event_mappings
                WHERE synced_calendar_id = ? AND local_event_id = ?
            """, (synced_calendar_id, local_event_id)).fetchone()
        return self._row_to_mapping(row) if row else None

    def update_mapping_timestamps(
        self,
        mapping_id: int,
        last_modified_local: Optional[datetime] = None,
        last_modified_external: Optional[datetime] = None,
    ):
        """Advance the reconciliation ledger. None keeps the stored value."""
        with self._connect() as conn:
            conn.execute("""
                UPDATE sync_event_mappings
                SET last_modified_local = COALESCE(?, last_modified_local),
                    last_modified_external = COALESCE(?, last_modified_external),
                    updated_at = ?
                WHERE id = ?
            """, (_iso(last_modified_local), _iso(last_modified_external), _iso(utc_now()), mapping_id))
            conn.commit()

    def delete_mapping(self, mapping_id: int):
        with self._connect() as conn:
            conn.execute("DELETE FROM sync_event_mappings WHERE id = ?", (mapping_id,))
            conn.commit()

    # ==================== Sync Logs ====================

    def create_sync_log(self, sync_log: SyncLog) -> int:
        """Create sync log entry."""
        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT INTO sync_logs (
                    user_id, connection_id, sync_trigger,
                    calendars_synced, calendars_failed,
                    events_imported, events_updated, events_deleted,
                    events_exported, events_updated_external, events_deleted_external,
                    errors, error_message, duration_seconds, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                sync_log.user_id, sync_log.connection_id, sync_log.trigger,
                sync_log.calendars_synced, sync_log.calendars_failed,
                sync_log.events_imported, sync_log.events_updated, sync_log.events_deleted,
                sync_log.events_exported, sync_log.events_updated_external,
                sync_log.events_deleted_external,
                sync_log.errors, sync_log.error_message, sync_log.duration_seconds,
                _iso(sync_log.created_at)
            ))
            conn.commit()
            return cursor.lastrowid

    def get_recent_logs(self, connection_id: int, limit: int = 20) -> List[SyncLog]:
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM sync_logs WHERE connection_id = ?
                ORDER BY id DESC LIMIT ?
            """, (connection_id, limit)).fetchall()

        return [
            SyncLog(
                id=row["id"],
                user_id=row["user_id"],
                connection_id=row["connection_id"],
                trigger=row["sync_trigger"],
                calendars_synced=row["calendars_synced"],
                calendars_failed=row["calendars_failed"],
                events_imported=row["events_imported"],
                events_updated=row["events_updated"],
                events_deleted=row["events_deleted"],
                events_exported=row["events_exported"],
                events_updated_external=row["events_updated_external"],
                events_deleted_external=row["events_deleted_external"],
                errors=row["errors"],
                error_message=row["error_message"],
                duration_seconds=row["duration_seconds"],
                created_at=_dt(row["created_at"]),
            )
            for row in rows
        ]
