"""
API endpoints for external calendar synchronization.
"""

from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
import structlog

from calsync.config import settings
from calsync.errors import (
    CalendarSyncError,
    ConnectionNotFound,
    InvalidOAuthState,
    UnsupportedProvider,
)
from calsync.models.calendar_sync import CalendarSelection, SyncProvider
from calsync.services import calendar_sync_service as sync_service_module
from calsync.services.calendar_sync_service import CalendarSyncService, parse_provider

logger = structlog.get_logger()

router = APIRouter(prefix="/calendar-sync", tags=["Calendar Sync"])


# ==================== Request/Response Models ====================

class SyncRequest(BaseModel):
    """Calendars to opt into sync for one provider."""
    provider: str
    calendars: List[CalendarSelection] = Field(default_factory=list)


class AuthUrlResponse(BaseModel):
    auth_url: str = Field(..., alias="authUrl")

    model_config = {"populate_by_name": True}


def get_sync_service() -> CalendarSyncService:
    service = sync_service_module.get_calendar_sync_service()
    if not service:
        raise HTTPException(status_code=503, detail="Calendar sync service not initialized")
    return service


def _provider_or_400(value: str) -> SyncProvider:
    try:
        return parse_provider(value)
    except UnsupportedProvider as e:
        raise HTTPException(status_code=400, detail=str(e))


def _frontend_redirect(**params: str) -> RedirectResponse:
    base = settings.frontend_url.rstrip("/")
    return RedirectResponse(url=f"{base}/calendar-sync?{urlencode(params)}")


# ==================== Status ====================

@router.get("/status")
async def get_status(
    user_id: str = Query(...),
    service: CalendarSyncService = Depends(get_sync_service),
):
    """Connection state and calendars for every provider."""
    return await service.get_sync_status(user_id)


# ==================== OAuth Flow ====================

@router.get("/auth/{provider}", response_model=AuthUrlResponse, response_model_by_alias=True)
async def get_auth_url(
    provider: str,
    user_id: str = Query(...),
    service: CalendarSyncService = Depends(get_sync_service),
):
    """
    Build the provider consent URL.

    Args:
        provider: "google" or "microsoft"
        user_id: Local user id, carried through the signed state

    Returns:
        {"authUrl": ...}
    """
    sync_provider = _provider_or_400(provider)
    auth_url = service.get_auth_url(sync_provider, user_id)
    logger.info("oauth_started", user_id=user_id, provider=sync_provider.value)
    return AuthUrlResponse(auth_url=auth_url)


@router.get("/callback/{provider}")
async def oauth_callback(
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    service: CalendarSyncService = Depends(get_sync_service),
):
    """OAuth redirect target. Always answers with a redirect to the frontend."""
    try:
        sync_provider = parse_provider(provider)
    except UnsupportedProvider:
        logger.warning("oauth_callback_invalid_provider", provider=provider)
        return _frontend_redirect(error="invalid_provider", details=provider)

    if error:
        logger.warning("oauth_authorization_denied", provider=sync_provider.value, error=error)
        return _frontend_redirect(error="authorization_denied", details=error)

    if not code or not state:
        return _frontend_redirect(error="invalid_state", details="Missing code or state parameter")

    try:
        await service.handle_oauth_callback(sync_provider, code, state)
    except InvalidOAuthState as e:
        logger.warning("oauth_invalid_state", provider=sync_provider.value)
        return _frontend_redirect(error="invalid_state", details=str(e))
    except Exception as e:
        logger.error("oauth_callback_failed",
                     provider=sync_provider.value,
                     error=str(e),
                     exc_info=True)
        return _frontend_redirect(error="sync_failed", details=str(e))

    return _frontend_redirect(success="connected")


# ==================== Calendars ====================

@router.get("/calendars/{provider}")
async def list_calendars(
    provider: str,
    user_id: str = Query(...),
    service: CalendarSyncService = Depends(get_sync_service),
):
    """External calendars of a connected provider account."""
    sync_provider = _provider_or_400(provider)
    try:
        calendars = await service.list_calendars(user_id, sync_provider)
    except ConnectionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CalendarSyncError as e:
        logger.error("list_calendars_failed", user_id=user_id, provider=provider, error=str(e))
        raise HTTPException(status_code=502, detail=str(e))

    return {"calendars": [c.model_dump() for c in calendars]}


@router.post("/sync")
async def connect_calendars(
    request: SyncRequest,
    user_id: str = Query(...),
    service: CalendarSyncService = Depends(get_sync_service),
):
    """Opt the selected calendars into sync and run the first pass."""
    sync_provider = _provider_or_400(request.provider)
    try:
        synced = await service.connect_calendars(user_id, sync_provider, request.calendars)
    except ConnectionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CalendarSyncError as e:
        logger.error("connect_calendars_failed", user_id=user_id, provider=request.provider, error=str(e))
        raise HTTPException(status_code=502, detail=str(e))

    return {
        "success": True,
        "syncedCalendars": [s.model_dump(mode="json") for s in synced],
    }


@router.post("/force")
async def force_sync(
    user_id: str = Query(...),
    service: CalendarSyncService = Depends(get_sync_service),
):
    """Sync all active connections of the user now."""
    try:
        logs = await service.force_sync(user_id)
    except ConnectionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {"success": True, "logs": [log.model_dump(mode="json") for log in logs]}


# ==================== Disconnect ====================

@router.post("/disconnect")
async def disconnect_all(
    user_id: str = Query(...),
    service: CalendarSyncService = Depends(get_sync_service),
):
    """Disconnect every provider of the user."""
    count = await service.disconnect(user_id)
    return {"success": True, "disconnected": count}


@router.post("/disconnect/{provider}")
async def disconnect_provider(
    provider: str,
    user_id: str = Query(...),
    service: CalendarSyncService = Depends(get_sync_service),
):
    """Disconnect one provider."""
    sync_provider = _provider_or_400(provider)
    count = await service.disconnect(user_id, sync_provider)
    return {"success": True, "disconnected": count}
