"""Event schemas exchanged between providers and the reconciler."""

from datetime import datetime, date
from typing import Optional, List, Dict, Any, Literal
from pydantic import BaseModel, ConfigDict, Field

from calsync.models.calendar_sync import SyncProvider


class CanonicalEvent(BaseModel):
    """Provider-agnostic event. Civil dates and times are in the user's timezone."""

    external_id: Optional[str] = Field(None, description="Provider event id")
    title: str = Field("Untitled Event", description="Event title/summary")
    description: Optional[str] = Field(None, description="Event description/notes")
    location: Optional[str] = Field(None, description="Event location")

    all_day: bool = False
    start_date: date
    start_time: Optional[str] = Field(None, description="HH:MM, None for all-day")
    end_date: Optional[date] = Field(None, description="Inclusive end date")
    end_time: Optional[str] = None

    recurrence_parent_id: Optional[str] = Field(None, description="Provider id of the series master")
    original_date: Optional[date] = Field(None, description="Original date of a recurrence instance")

    last_modified: datetime

    needs_details: bool = Field(False, exclude=True, description="Payload was truncated; adapter can re-fetch it")


# ==================== Provider payloads ====================

class GoogleDateTime(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    date: Optional[str] = None
    date_time: Optional[str] = Field(None, alias="dateTime")
    time_zone: Optional[str] = Field(None, alias="timeZone")


class GoogleEvent(BaseModel):
    """Raw Google Calendar event."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    provider: Literal[SyncProvider.GOOGLE] = SyncProvider.GOOGLE

    id: str
    status: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start: Optional[GoogleDateTime] = None
    end: Optional[GoogleDateTime] = None
    updated: Optional[str] = None
    recurring_event_id: Optional[str] = Field(None, alias="recurringEventId")
    original_start_time: Optional[GoogleDateTime] = Field(None, alias="originalStartTime")

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"


class MicrosoftDateTime(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    date_time: Optional[str] = Field(None, alias="dateTime")
    time_zone: Optional[str] = Field(None, alias="timeZone")


class MicrosoftItemBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    content_type: Optional[str] = Field(None, alias="contentType")
    content: Optional[str] = None


class MicrosoftLocation(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    display_name: Optional[str] = Field(None, alias="displayName")


class MicrosoftEvent(BaseModel):
    """Raw Microsoft Graph event (delta item)."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    provider: Literal[SyncProvider.MICROSOFT] = SyncProvider.MICROSOFT

    id: str
    subject: Optional[str] = None
    body: Optional[MicrosoftItemBody] = None
    body_preview: Optional[str] = Field(None, alias="bodyPreview")
    location: Optional[MicrosoftLocation] = None
    start: Optional[MicrosoftDateTime] = None
    end: Optional[MicrosoftDateTime] = None
    is_all_day: bool = Field(False, alias="isAllDay")
    is_cancelled: bool = Field(False, alias="isCancelled")
    last_modified_date_time: Optional[str] = Field(None, alias="lastModifiedDateTime")
    original_start_time_zone: Optional[str] = Field(None, alias="originalStartTimeZone")
    original_end_time_zone: Optional[str] = Field(None, alias="originalEndTimeZone")
    series_master_id: Optional[str] = Field(None, alias="seriesMasterId")
    original_start: Optional[str] = Field(None, alias="originalStart")
    event_type: Optional[str] = Field(None, alias="type")
    removed: Optional[Dict[str, Any]] = Field(None, alias="@removed")

    @property
    def is_removed(self) -> bool:
        return self.removed is not None


# ==================== Adapter results ====================

class FetchResult(BaseModel):
    """Outcome of one fetch_events call."""
    events: List[CanonicalEvent] = Field(default_factory=list)
    deleted_ids: List[str] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    cursor_reset: bool = Field(False, description="Stored cursor was rejected and a full fetch ran instead")


class PushResult(BaseModel):
    """Outcome of creating or updating an external event."""
    external_id: str
    last_modified: datetime
