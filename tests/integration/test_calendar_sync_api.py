"""Tests for the calendar sync HTTP API."""

from urllib.parse import urlparse, parse_qs

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from calsync.config import settings as app_settings
from calsync.models.calendar_sync import SyncProvider, SyncStatus
from calsync.routers import calendar_sync
from calsync.services import calendar_sync_service as sync_service_module


@pytest.fixture
def app():
    app = FastAPI()
    app.include_router(calendar_sync.router)
    return app


@pytest.fixture
def client(app, sync_service, monkeypatch):
    """Test client with the sync service installed."""
    monkeypatch.setattr(sync_service_module, "calendar_sync_service", sync_service)
    return TestClient(app, follow_redirects=False)


def _redirect_params(response):
    location = response.headers["location"]
    assert location.startswith(f"{app_settings.frontend_url.rstrip('/')}/calendar-sync?")
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


class TestServiceAvailability:

    def test_returns_503_without_service(self, app, monkeypatch, sample_user_id):
        monkeypatch.setattr(sync_service_module, "calendar_sync_service", None)
        client = TestClient(app)

        response = client.get("/calendar-sync/status", params={"user_id": sample_user_id})

        assert response.status_code == 503


class TestOAuthEndpoints:

    def test_auth_url(self, client, sync_service, sample_user_id):
        response = client.get("/calendar-sync/auth/google", params={"user_id": sample_user_id})

        assert response.status_code == 200
        auth_url = response.json()["authUrl"]
        state = parse_qs(urlparse(auth_url).query)["state"][0]
        assert sync_service.tokens.parse_state(state) == sample_user_id

    def test_auth_url_unknown_provider(self, client, sample_user_id):
        response = client.get("/calendar-sync/auth/yahoo", params={"user_id": sample_user_id})

        assert response.status_code == 400

    def test_callback_success(self, client, sync_service, sync_db, token_handler, sample_user_id):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 3600})
            return httpx.Response(200, json={"id": "ms-account"})

        token_handler["handler"] = handler
        state = sync_service.tokens.build_state(sample_user_id)

        response = client.get("/calendar-sync/callback/microsoft", params={"code": "c", "state": state})

        assert response.status_code in (302, 307)
        assert _redirect_params(response) == {"success": "connected"}
        assert sync_db.get_user_connection(sample_user_id, SyncProvider.MICROSOFT).status == SyncStatus.ACTIVE

    def test_callback_denied(self, client):
        response = client.get("/calendar-sync/callback/google", params={"error": "access_denied"})

        params = _redirect_params(response)
        assert params["error"] == "authorization_denied"
        assert params["details"] == "access_denied"

    def test_callback_invalid_provider(self, client):
        response = client.get("/calendar-sync/callback/yahoo", params={"code": "c", "state": "s"})

        assert _redirect_params(response)["error"] == "invalid_provider"

    def test_callback_forged_state(self, client):
        response = client.get("/calendar-sync/callback/google",
                              params={"code": "c", "state": "sync-intruder-" + "a" * 32})

        assert _redirect_params(response)["error"] == "invalid_state"

    def test_callback_exchange_failure(self, client, sync_service, token_handler, sample_user_id):
        token_handler["handler"] = lambda request: httpx.Response(400, json={"error": "invalid_grant"})
        state = sync_service.tokens.build_state(sample_user_id)

        response = client.get("/calendar-sync/callback/google", params={"code": "c", "state": state})

        assert _redirect_params(response)["error"] == "sync_failed"


class TestSyncEndpoints:

    def test_status(self, client, google_connection, sample_user_id):
        response = client.get("/calendar-sync/status", params={"user_id": sample_user_id})

        assert response.status_code == 200
        providers = {p["provider"]: p for p in response.json()["providers"]}
        assert providers["google"]["isConnected"] is True
        assert providers["microsoft"]["isConnected"] is False

    def test_list_calendars(self, client, google_connection, sample_user_id):
        response = client.get("/calendar-sync/calendars/google", params={"user_id": sample_user_id})

        assert response.status_code == 200
        assert response.json()["calendars"][0]["id"] == "primary"

    def test_list_calendars_not_connected(self, client, sample_user_id):
        response = client.get("/calendar-sync/calendars/microsoft", params={"user_id": sample_user_id})

        assert response.status_code == 404

    def test_connect_calendars(self, client, fake_google, google_connection, sample_user_id, tomorrow):
        fake_google.external_create("Standup", tomorrow)

        response = client.post(
            "/calendar-sync/sync",
            params={"user_id": sample_user_id},
            json={
                "provider": "google",
                "calendars": [{"calendarId": "primary", "localName": "Work", "bidirectionalSync": True}],
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["syncedCalendars"][0]["external_calendar_id"] == "primary"

    def test_force_without_connection(self, client):
        response = client.post("/calendar-sync/force", params={"user_id": "nobody"})

        assert response.status_code == 404

    def test_force(self, client, google_connection, synced_calendar, sample_user_id):
        response = client.post("/calendar-sync/force", params={"user_id": sample_user_id})

        assert response.status_code == 200
        assert response.json()["logs"][0]["trigger"] == "force"

    def test_disconnect_provider(self, client, sync_db, google_connection, synced_calendar, sample_user_id):
        response = client.post("/calendar-sync/disconnect/google", params={"user_id": sample_user_id})

        assert response.json() == {"success": True, "disconnected": 1}
        assert sync_db.get_connection(google_connection.id).status == SyncStatus.INACTIVE

    def test_disconnect_all(self, client, sync_db, google_connection, sample_user_id):
        response = client.post("/calendar-sync/disconnect", params={"user_id": sample_user_id})

        assert response.json()["disconnected"] == 1
        assert sync_db.get_active_connections() == []
