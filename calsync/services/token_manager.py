"""
OAuth token lifecycle for Google Calendar and Microsoft Graph connections.
"""

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from urllib.parse import urlencode

import httpx
import structlog
from pydantic import BaseModel

from calsync.config import Settings
from calsync.errors import (
    AuthExchangeFailed,
    InvalidOAuthState,
    TokenRefreshFailed,
    UnsupportedProvider,
)
from calsync.models.calendar_sync import SyncConnection, SyncProvider, SyncStatus
from calsync.services.sync_database import SyncDatabase
from calsync.utils.timezones import utc_now

logger = structlog.get_logger()

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v1/userinfo?alt=json"
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/userinfo.profile",
]

MICROSOFT_LOGIN_BASE = "https://login.microsoftonline.com"
MICROSOFT_USERINFO_URL = "https://graph.microsoft.com/v1.0/me"
MICROSOFT_SCOPES = [
    "https://graph.microsoft.com/calendars.readwrite",
    "offline_access",
]

STATE_PREFIX = "sync-"
REFRESH_BUFFER = timedelta(seconds=60)


class TokenExchangeResult(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    provider_account_id: str


class TokenManager:
    """Builds consent URLs, exchanges codes and keeps access tokens fresh."""

    def __init__(self, settings: Settings, sync_db: SyncDatabase, http_client: httpx.AsyncClient):
        self.settings = settings
        self.sync_db = sync_db
        self.http = http_client

    # ==================== OAuth Flow ====================

    def _client_credentials(self, provider: SyncProvider) -> Dict[str, str]:
        if provider == SyncProvider.GOOGLE:
            return {
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "redirect_uri": self.settings.google_redirect_uri,
            }
        if provider == SyncProvider.MICROSOFT:
            return {
                "client_id": self.settings.microsoft_client_id,
                "client_secret": self.settings.microsoft_client_secret,
                "redirect_uri": self.settings.microsoft_redirect_uri,
            }
        raise UnsupportedProvider(str(provider))

    def _token_url(self, provider: SyncProvider) -> str:
        if provider == SyncProvider.GOOGLE:
            return GOOGLE_TOKEN_URL
        return f"{MICROSOFT_LOGIN_BASE}/{self.settings.microsoft_tenant_id}/oauth2/v2.0/token"

    def _sign(self, user_id: str, nonce: str) -> str:
        digest = hmac.new(
            self.settings.oauth_state_secret.encode(),
            f"{user_id}:{nonce}".encode(),
            hashlib.sha256,
        ).hexdigest()
        return digest[:16]

    def build_state(self, user_id: str) -> str:
        """State of the form sync-{user_id}-{nonce}{signature}."""
        nonce = secrets.token_hex(8)
        return f"{STATE_PREFIX}{user_id}-{nonce}{self._sign(user_id, nonce)}"

    def parse_state(self, state: Optional[str]) -> str:
        """
        Verify an OAuth state value and return the user id it carries.

        Raises:
            InvalidOAuthState: Malformed state or bad signature
        """
        if not state or not state.startswith(STATE_PREFIX):
            raise InvalidOAuthState("Missing or malformed state parameter")

        user_id, sep, token = state[len(STATE_PREFIX):].rpartition("-")
        if not sep or not user_id or len(token) != 32:
            raise InvalidOAuthState("Missing or malformed state parameter")

        nonce, signature = token[:16], token[16:]
        if not hmac.compare_digest(signature, self._sign(user_id, nonce)):
            raise InvalidOAuthState("State signature mismatch")
        return user_id

    def build_authorization_url(self, provider: SyncProvider, user_id: str) -> str:
        """
        Generate the provider consent URL.

        Args:
            provider: Target provider
            user_id: Local user id, carried through the signed state

        Returns:
            Authorization URL to redirect user to
        """
        credentials = self._client_credentials(provider)
        params = {
            "client_id": credentials["client_id"],
            "redirect_uri": credentials["redirect_uri"],
            "response_type": "code",
            "state": self.build_state(user_id),
        }

        if provider == SyncProvider.GOOGLE:
            params["scope"] = " ".join(GOOGLE_SCOPES)
            params["access_type"] = "offline"  # Request refresh token
            params["prompt"] = "consent"  # Force consent to get refresh token
            base = GOOGLE_AUTH_URL
        else:
            params["scope"] = " ".join(MICROSOFT_SCOPES)
            params["response_mode"] = "query"
            base = f"{MICROSOFT_LOGIN_BASE}/{self.settings.microsoft_tenant_id}/oauth2/v2.0/authorize"

        logger.info("oauth_url_generated", provider=provider.value, user_id=user_id)
        return f"{base}?{urlencode(params)}"

    async def exchange_code(self, provider: SyncProvider, code: str) -> TokenExchangeResult:
        """
        Exchange authorization code for tokens and resolve the provider account id.

        Raises:
            AuthExchangeFailed: Token endpoint or userinfo request was rejected
        """
        credentials = self._client_credentials(provider)
        data = {
            "code": code,
            "client_id": credentials["client_id"],
            "client_secret": credentials["client_secret"],
            "redirect_uri": credentials["redirect_uri"],
            "grant_type": "authorization_code",
        }

        try:
            response = await self.http.post(self._token_url(provider), data=data)
        except httpx.HTTPError as e:
            raise AuthExchangeFailed(provider.value, None, str(e)) from e

        if not response.is_success:
            logger.error("oauth_token_exchange_failed",
                         provider=provider.value,
                         status_code=response.status_code,
                         body=response.text)
            raise AuthExchangeFailed(provider.value, response.status_code, response.text)

        tokens = response.json()
        access_token = tokens.get("access_token")
        if not access_token:
            raise AuthExchangeFailed(provider.value, response.status_code, "Missing access_token in response")

        userinfo_url = GOOGLE_USERINFO_URL if provider == SyncProvider.GOOGLE else MICROSOFT_USERINFO_URL
        try:
            info_response = await self.http.get(
                userinfo_url, headers={"Authorization": f"Bearer {access_token}"}
            )
        except httpx.HTTPError as e:
            raise AuthExchangeFailed(provider.value, None, str(e)) from e

        if not info_response.is_success:
            logger.warning("oauth_userinfo_failed",
                           provider=provider.value,
                           status_code=info_response.status_code,
                           body=info_response.text)
            raise AuthExchangeFailed(provider.value, info_response.status_code, info_response.text)

        expires_in = tokens.get("expires_in")
        result = TokenExchangeResult(
            access_token=access_token,
            refresh_token=tokens.get("refresh_token"),
            expires_at=utc_now() + timedelta(seconds=int(expires_in)) if expires_in else None,
            provider_account_id=str(info_response.json().get("id", "")),
        )

        logger.info("oauth_tokens_exchanged",
                    provider=provider.value,
                    expires_in=expires_in,
                    has_refresh_token=bool(result.refresh_token))
        return result

    # ==================== Refresh ====================

    async def ensure_fresh_token(self, connection: SyncConnection) -> SyncConnection:
        """Refresh the access token when it expires within the next 60 seconds."""
        expires_at = connection.token_expires_at
        if expires_at is None or expires_at - utc_now() > REFRESH_BUFFER:
            return connection

        if not connection.refresh_token:
            logger.warning("token_expiring_without_refresh_token",
                           connection_id=connection.id,
                           provider=connection.provider.value)
            return connection

        return await self.refresh(connection)

    async def _request_refresh(self, connection: SyncConnection) -> Dict[str, Any]:
        credentials = self._client_credentials(connection.provider)
        data = {
            "client_id": credentials["client_id"],
            "client_secret": credentials["client_secret"],
            "refresh_token": connection.refresh_token,
            "grant_type": "refresh_token",
        }
        if connection.provider == SyncProvider.MICROSOFT:
            data["scope"] = " ".join(MICROSOFT_SCOPES)

        try:
            response = await self.http.post(self._token_url(connection.provider), data=data)
        except httpx.HTTPError as e:
            raise TokenRefreshFailed(connection.provider.value, None, str(e)) from e

        if not response.is_success:
            revoked = response.status_code == 400 and "invalid_grant" in response.text
            raise TokenRefreshFailed(connection.provider.value, response.status_code, response.text, revoked=revoked)

        tokens = response.json()
        if not tokens.get("access_token"):
            raise TokenRefreshFailed(connection.provider.value, response.status_code, "Missing access_token in response")
        return tokens

    async def refresh(self, connection: SyncConnection) -> SyncConnection:
        """
        Refresh the connection's access token.

        The connection is updated in place and persisted. On failure it is
        returned unchanged; the caller's next request will fail on its own.
        A revoked grant moves the connection to error until the user
        authorizes again.
        """
        if not connection.refresh_token:
            logger.warning("token_refresh_skipped_no_refresh_token", connection_id=connection.id)
            return connection

        try:
            tokens = await self._request_refresh(connection)
        except TokenRefreshFailed as e:
            logger.warning("token_refresh_failed",
                           connection_id=connection.id,
                           provider=e.provider,
                           status_code=e.status_code,
                           revoked=e.revoked,
                           error=e.body)
            if e.revoked:
                self.sync_db.update_connection_status(connection.id, SyncStatus.ERROR)
                connection.status = SyncStatus.ERROR
            return connection

        expires_in = tokens.get("expires_in")
        connection.access_token = tokens["access_token"]
        if tokens.get("refresh_token"):
            connection.refresh_token = tokens["refresh_token"]
        if expires_in:
            connection.token_expires_at = utc_now() + timedelta(seconds=int(expires_in))

        self.sync_db.update_connection_tokens(
            connection.id,
            access_token=connection.access_token,
            refresh_token=tokens.get("refresh_token"),
            expires_at=connection.token_expires_at,
        )
        logger.info("token_refreshed", connection_id=connection.id, provider=connection.provider.value)
        return connection

    # ==================== Authorized requests ====================

    async def authorized_fetch(
        self,
        connection: SyncConnection,
        method: str,
        url: str,
        **kwargs
    ) -> httpx.Response:
        """
        Send a bearer-authenticated request.

        A 401 triggers exactly one refresh and one retry.
        """
        headers = dict(kwargs.pop("headers", None) or {})

        headers["Authorization"] = f"Bearer {connection.access_token}"
        response = await self.http.request(method, url, headers=headers, **kwargs)
        if response.status_code != 401:
            return response

        if not connection.refresh_token:
            logger.warning("provider_unauthorized_no_refresh_token", connection_id=connection.id, url=url)
            return response

        previous_token = connection.access_token
        await self.refresh(connection)
        if connection.access_token == previous_token:
            return response

        headers["Authorization"] = f"Bearer {connection.access_token}"
        retry = await self.http.request(method, url, headers=headers, **kwargs)
        if retry.status_code == 401:
            logger.warning("provider_unauthorized_after_refresh", connection_id=connection.id, url=url)
        return retry
