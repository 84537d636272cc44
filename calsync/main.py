"""Main FastAPI application."""

import asyncio
from pathlib import Path
from typing import Optional

import httpx
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calsync.config import settings
from calsync.routers import calendar_sync
from calsync.services.calendar_sync_service import CalendarSyncService, init_calendar_sync_service
from calsync.services.error_reporter import ErrorReporter
from calsync.services.local_store import SQLiteLocalStore
from calsync.services.providers import build_providers
from calsync.services.reconciler import Reconciler
from calsync.services.sync_database import SyncDatabase
from calsync.services.token_manager import TokenManager
from calsync.utils.logger import setup_logging


# Setup logging
setup_logging(settings.log_level, settings.json_logs)
logger = structlog.get_logger()

# Create FastAPI application
app = FastAPI(
    title="calsync",
    description="Bidirectional calendar sync with Google Calendar and Microsoft Graph",
    version="0.1.0",
)

# Parse CORS origins from config (comma-separated string)
allowed_origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
allowed_origins.append(settings.frontend_url)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(calendar_sync.router)

_http_client: Optional[httpx.AsyncClient] = None
_sync_task: Optional[asyncio.Task] = None
_sync_stop = asyncio.Event()


def build_calendar_sync_service(http_client: httpx.AsyncClient) -> CalendarSyncService:
    """Wire storage, token manager, adapters and reconciler from settings."""
    Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
    Path(settings.local_database_path).parent.mkdir(parents=True, exist_ok=True)

    sync_db = SyncDatabase(settings.database_path, encryption_key_path=settings.encryption_key_path)
    local_store = SQLiteLocalStore(settings.local_database_path)
    token_manager = TokenManager(settings, sync_db, http_client)
    providers = build_providers(token_manager, settings)

    return CalendarSyncService(
        settings=settings,
        sync_db=sync_db,
        local_store=local_store,
        token_manager=token_manager,
        providers=providers,
        reconciler=Reconciler(sync_db, local_store, providers),
        error_reporter=ErrorReporter(),
    )


@app.on_event("startup")
async def startup_event():
    """Application startup event."""
    global _http_client, _sync_task

    logger.info(
        "application_started",
        environment=settings.app_env,
        google_configured=settings.google_configured,
        microsoft_configured=settings.microsoft_configured,
    )

    _http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    service = init_calendar_sync_service(build_calendar_sync_service(_http_client))

    if settings.background_sync_enabled:
        _sync_stop.clear()
        _sync_task = asyncio.create_task(
            service.run_background_sync(_sync_stop, initial_delay=settings.sync_startup_delay_seconds)
        )
        logger.info("background_sync_task_started",
                    tick_seconds=settings.sync_tick_seconds,
                    poll_interval_minutes=settings.sync_poll_interval_minutes)
    else:
        logger.warning("background_sync_disabled")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event - stop the sync loop and close connections."""
    logger.info("application_shutdown_started")

    if _sync_task:
        _sync_stop.set()
        try:
            await asyncio.wait_for(_sync_task, timeout=10)
        except asyncio.TimeoutError:
            _sync_task.cancel()
            logger.warning("background_sync_task_cancelled")

    if _http_client:
        await _http_client.aclose()

    logger.info("application_shutdown_completed")


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "calsync.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
