"""
Database models for external calendar synchronization.
"""

from datetime import datetime, date
from typing import Optional, List
from pydantic import BaseModel, Field
from enum import Enum


class SyncProvider(str, Enum):
    """Supported external calendar providers."""
    GOOGLE = "google"
    MICROSOFT = "microsoft"


class SyncStatus(str, Enum):
    """Lifecycle state of a provider connection."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class RecurrenceType(str, Enum):
    """Local recurrence pattern. Anything but NONE without a parent is a template."""
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SyncConnection(BaseModel):
    """OAuth connection between a user and one provider account."""
    id: Optional[int] = None
    user_id: str
    provider: SyncProvider
    provider_account_id: str

    # OAuth tokens (encrypted at rest)
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    status: SyncStatus = SyncStatus.ACTIVE
    last_sync_at: Optional[datetime] = None

    # Metadata
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SyncedCalendar(BaseModel):
    """External calendar the user opted into, mirrored by one local calendar."""
    id: Optional[int] = None
    sync_connection_id: int
    local_calendar_id: int

    external_calendar_id: str
    external_calendar_name: str

    bidirectional_sync: bool = True
    sync_token: Optional[str] = None  # Opaque provider cursor
    last_sync_at: Optional[datetime] = None

    # Automation settings for imported events
    trigger_automation_rules: bool = False
    selected_rule_ids: List[int] = Field(default_factory=list)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SyncEventMapping(BaseModel):
    """Link between one local event and one external event."""
    id: Optional[int] = None
    synced_calendar_id: int
    local_event_id: int
    external_event_id: str

    # Conflict-resolution ledger
    last_modified_local: datetime
    last_modified_external: datetime

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SyncLog(BaseModel):
    """Log of one connection sync pass for debugging."""
    id: Optional[int] = None
    user_id: str
    connection_id: int

    trigger: str  # "tick", "force", "connect"
    calendars_synced: int = 0
    calendars_failed: int = 0
    events_imported: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    events_exported: int = 0
    events_updated_external: int = 0
    events_deleted_external: int = 0
    errors: int = 0

    error_message: Optional[str] = None
    duration_seconds: float = 0

    created_at: datetime


class ExternalCalendar(BaseModel):
    """Calendar as listed by a provider."""
    id: str
    name: str
    description: Optional[str] = None
    primary: bool = False
    access_role: Optional[str] = None


class CalendarSelection(BaseModel):
    """One calendar picked by the user in connect_calendars."""
    external_calendar_id: str = Field(..., alias="calendarId")
    local_name: Optional[str] = Field(None, alias="localName", description="Name of the local mirror calendar")
    bidirectional_sync: bool = Field(True, alias="bidirectionalSync")
    trigger_automation_rules: bool = Field(False, alias="triggerAutomationRules")
    selected_rule_ids: List[int] = Field(default_factory=list, alias="selectedRuleIds")

    model_config = {"populate_by_name": True}


# ==================== Local store ====================

class LocalCalendar(BaseModel):
    """Calendar in the local store."""
    id: Optional[int] = None
    owner_id: str
    name: str
    description: Optional[str] = None
    color: str = "#3b82f6"


class LocalEvent(BaseModel):
    """Event in the local store. Dates and times are civil values in the user's zone."""
    id: Optional[int] = None
    calendar_id: int
    title: str
    description: Optional[str] = None
    location: Optional[str] = None

    is_all_day: bool = False
    start_date: date
    start_time: Optional[str] = None  # "HH:MM"
    end_date: Optional[date] = None
    end_time: Optional[str] = None

    recurrence_type: RecurrenceType = RecurrenceType.NONE
    parent_event_id: Optional[int] = None
    recurrence_id: Optional[str] = None  # External series id for imported instances
    original_date: Optional[date] = None

    color: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_recurrence_template(self) -> bool:
        return self.recurrence_type != RecurrenceType.NONE and self.parent_event_id is None
