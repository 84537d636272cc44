"""Application configuration."""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
import secrets
import structlog

logger = structlog.get_logger()

DEFAULT_LOOKBACK_DAYS = 90
DEFAULT_LOOKAHEAD_DAYS = 365
DEFAULT_POLL_INTERVAL_MINUTES = 5


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: str = "development"
    log_level: str = "INFO"
    json_logs: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    backend_base_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"
    cors_origins: str = ""

    # Google Calendar OAuth
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: Optional[str] = None

    # Microsoft Graph OAuth
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_redirect_uri: Optional[str] = None
    microsoft_tenant_id: str = "common"

    # Sync window and scheduling
    sync_lookback_days: int = DEFAULT_LOOKBACK_DAYS
    sync_lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS
    sync_poll_interval_minutes: int = DEFAULT_POLL_INTERVAL_MINUTES
    sync_tick_seconds: int = 60
    sync_startup_delay_seconds: int = 30
    background_sync_enabled: bool = True

    # Provider HTTP
    http_timeout_seconds: float = 20.0

    # Security
    oauth_state_secret: str = ""

    # Storage
    database_path: str = "/var/lib/calsync/sync.db"
    encryption_key_path: str = "/var/lib/calsync/sync_encryption.key"
    local_database_path: str = "/var/lib/calsync/local.db"

    @field_validator("sync_lookback_days", mode="after")
    @classmethod
    def _positive_lookback(cls, value: int) -> int:
        return value if value > 0 else DEFAULT_LOOKBACK_DAYS

    @field_validator("sync_lookahead_days", mode="after")
    @classmethod
    def _positive_lookahead(cls, value: int) -> int:
        return value if value > 0 else DEFAULT_LOOKAHEAD_DAYS

    @field_validator("sync_poll_interval_minutes", mode="after")
    @classmethod
    def _positive_interval(cls, value: int) -> int:
        return value if value > 0 else DEFAULT_POLL_INTERVAL_MINUTES

    @field_validator("http_timeout_seconds", mode="after")
    @classmethod
    def _clamp_timeout(cls, value: float) -> float:
        # Provider gateways cut requests off well before 30s
        return min(max(value, 10.0), 30.0)

    def __init__(self, **kwargs):
        """Initialize settings and fill derived defaults."""
        super().__init__(**kwargs)

        if not self.oauth_state_secret:
            if self.app_env == "production":
                raise ValueError(
                    "OAUTH_STATE_SECRET must be set in production. "
                    "Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
                )
            self.oauth_state_secret = secrets.token_urlsafe(32)
            logger.warning("oauth_state_secret_generated",
                           message="Using a per-process secret; OAuth callbacks will not survive restarts")

        base = self.backend_base_url.rstrip("/")
        if not self.google_redirect_uri:
            self.google_redirect_uri = f"{base}/calendar-sync/callback/google"
        if not self.microsoft_redirect_uri:
            self.microsoft_redirect_uri = f"{base}/calendar-sync/callback/microsoft"

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def microsoft_configured(self) -> bool:
        return bool(self.microsoft_client_id and self.microsoft_client_secret)


# Global settings instance
settings = Settings()
