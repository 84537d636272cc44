"""External calendar provider adapters."""

from typing import Dict

from calsync.config import Settings
from calsync.models.calendar_sync import SyncProvider
from calsync.services.providers.base import CalendarProvider
from calsync.services.providers.google import GoogleCalendarProvider
from calsync.services.providers.microsoft import MicrosoftCalendarProvider
from calsync.services.token_manager import TokenManager


def build_providers(token_manager: TokenManager, settings: Settings) -> Dict[SyncProvider, CalendarProvider]:
    """Adapter registry keyed by provider."""
    return {
        SyncProvider.GOOGLE: GoogleCalendarProvider(token_manager, settings),
        SyncProvider.MICROSOFT: MicrosoftCalendarProvider(token_manager, settings),
    }


__all__ = [
    "CalendarProvider",
    "GoogleCalendarProvider",
    "MicrosoftCalendarProvider",
    "build_providers",
]
