"""
Integration tests for the connectors API.

Tests the full API endpoints for:
- Starting an OAuth flow
- The provider callback redirect (success and every failure reason)
- Connector status, probe and disconnect
- Tenant context enforcement
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from connector_vault.api.routes.connectors import router
from connector_vault.config.oauth_providers import ConnectorProvider
from connector_vault.credentials.store import CredentialStore, OAuthTokens
from connector_vault.database.session import get_db_session
from connector_vault.models.connector_credential import ConnectorCredential
from connector_vault.platform.errors import CORRELATION_HEADER, ErrorHandlerMiddleware
from connector_vault.platform.tenant_context import TenantContext
from connector_vault.services.connector_oauth_service import RefreshLocks

TENANT_CONTEXT_PATH = "connector_vault.api.routes.connectors.get_tenant_context"


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def app(db_session, oauth_settings, cipher, signer, nonce_registry, http_client):
    """Create a test FastAPI app with connector state wired in."""
    app = FastAPI()
    app.add_middleware(ErrorHandlerMiddleware)
    app.include_router(router)

    app.state.oauth_settings = oauth_settings
    app.state.cipher = cipher
    app.state.state_signer = signer
    app.state.nonce_registry = nonce_registry
    app.state.http_client = http_client
    app.state.refresh_locks = RefreshLocks()

    app.dependency_overrides[get_db_session] = lambda: db_session
    return app


@pytest.fixture
def client(app):
    """Create a test client."""
    return TestClient(app)


@pytest.fixture
def tenant_context(tenant_id):
    return TenantContext(tenant_id=tenant_id, user_id="user-123", roles=["merchant_admin"])


@pytest.fixture
def as_tenant(tenant_context):
    with patch(TENANT_CONTEXT_PATH, return_value=tenant_context):
        yield tenant_context


def _start_flow(client, provider="google_calendar"):
    response = client.get(f"/api/connectors/oauth/authorize/{provider}")
    assert response.status_code == 200
    return parse_qs(urlparse(response.json()["auth_url"]).query)["state"][0]


def _callback(client, provider, **params):
    return client.get(
        f"/api/connectors/oauth/callback/{provider}",
        params=params,
        follow_redirects=False,
    )


def _redirect_params(response):
    location = urlparse(response.headers["location"])
    return location.path, {k: v[0] for k, v in parse_qs(location.query).items()}


# =============================================================================
# Authorize
# =============================================================================


class TestAuthorize:

    def test_returns_auth_url(self, client, as_tenant):
        response = client.get("/api/connectors/oauth/authorize/hubspot")

        assert response.status_code == 200
        data = response.json()
        assert data["provider"] == "hubspot"
        assert data["auth_url"].startswith("https://app.hubspot.com/oauth/authorize?")
        assert data["message"] == "Redirect user to auth_url to complete OAuth flow"
        assert data["nonce"]

    def test_requires_tenant_context(self, client):
        response = client.get("/api/connectors/oauth/authorize/hubspot")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_ERROR"
        assert CORRELATION_HEADER in response.headers

    def test_unknown_provider(self, client, as_tenant):
        response = client.get("/api/connectors/oauth/authorize/zoho")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_service_not_initialised(self, client, app, as_tenant):
        app.state.cipher = None

        response = client.get("/api/connectors/oauth/authorize/hubspot")

        assert response.status_code == 503


# =============================================================================
# Callback
# =============================================================================


class TestCallback:

    def test_success_redirect(self, client, as_tenant, db_session, tenant_id):
        state = _start_flow(client)

        response = _callback(client, "google_calendar", code="valid-code", state=state)

        assert response.status_code == 302
        path, params = _redirect_params(response)
        assert path == "/admin/connectors"
        assert params == {"success": "true", "provider": "google_calendar"}
        active = db_session.query(ConnectorCredential).filter(
            ConnectorCredential.tenant_id == tenant_id,
            ConnectorCredential.is_active.is_(True),
        ).all()
        assert len(active) == 1

    def test_callback_does_not_need_tenant_context(self, client, as_tenant):
        state = _start_flow(client)

        # The callback route never consults the session; tenant comes from state
        with patch(TENANT_CONTEXT_PATH, side_effect=AssertionError("not used")):
            response = _callback(client, "google_calendar", code="valid-code", state=state)

        assert _redirect_params(response)[1]["success"] == "true"

    def test_provider_error(self, client):
        response = _callback(client, "google_calendar", error="access_denied")

        assert response.status_code == 302
        assert _redirect_params(response)[1] == {"error": "access_denied"}

    def test_missing_code(self, client, as_tenant):
        state = _start_flow(client)

        response = _callback(client, "google_calendar", state=state)

        assert _redirect_params(response)[1] == {"error": "missing_authorization_code"}

    def test_invalid_state(self, client):
        response = _callback(client, "google_calendar", code="c", state="forged:state:value:1:sig")

        assert _redirect_params(response)[1] == {"error": "invalid_or_expired_state"}

    def test_provider_mismatch(self, client, as_tenant):
        state = _start_flow(client, "google_calendar")

        response = _callback(client, "salesforce", code="c", state=state)

        assert _redirect_params(response)[1] == {"error": "provider_mismatch"}

    def test_replay(self, client, as_tenant):
        state = _start_flow(client)
        _callback(client, "google_calendar", code="c", state=state)

        response = _callback(client, "google_calendar", code="c", state=state)

        assert _redirect_params(response)[1] == {"error": "nonce_validation_failed"}

    def test_exchange_failure(self, client, as_tenant, provider_api):
        provider_api.respond_token(400, error="invalid_grant")
        state = _start_flow(client)

        response = _callback(client, "google_calendar", code="c", state=state)

        assert _redirect_params(response)[1] == {"error": "oauth_callback_failed"}

    def test_unexpected_error_redirects_generic_reason(self, client, as_tenant):
        state = _start_flow(client)

        with patch(
            "connector_vault.services.connector_oauth_service.ConnectorOAuthService.complete_callback",
            side_effect=RuntimeError("boom"),
        ):
            response = _callback(client, "google_calendar", code="c", state=state)

        assert response.status_code == 302
        assert _redirect_params(response)[1] == {"error": "oauth_callback_failed"}
        assert "boom" not in response.headers["location"]

    def test_redirect_appends_to_existing_query(self, client, app, oauth_settings):
        app.state.oauth_settings = replace(oauth_settings, app_connectors_url="/settings?tab=connectors")

        response = _callback(client, "google_calendar", error="access_denied")

        assert response.headers["location"] == "/settings?tab=connectors&error=access_denied"

    def test_malformed_token_response(self, client, as_tenant, provider_api):
        provider_api.respond_token_body(b'["not", "an", "object"]')
        state = _start_flow(client)

        response = _callback(client, "google_calendar", code="c", state=state)

        assert response.status_code == 302
        assert _redirect_params(response)[1] == {"error": "oauth_callback_failed"}

    def test_unicode_digit_timestamp_in_state(self, client):
        response = _callback(client, "google_calendar", code="c", state="google_calendar:t:n:\u00b2:sig")

        assert _redirect_params(response)[1] == {"error": "invalid_or_expired_state"}


# =============================================================================
# Status, probe and disconnect
# =============================================================================


def _connect(db_session, tenant_id, cipher, provider, expires_in=timedelta(hours=1)):
    store = CredentialStore(db_session, tenant_id, cipher)
    tokens = OAuthTokens(
        access_token="stored-access",
        refresh_token="stored-refresh",
        expires_at=datetime.now(timezone.utc) + expires_in,
    )
    return asyncio.run(store.replace_active(provider, tokens))


class TestConnectorConfig:

    def test_lists_every_provider(self, client, as_tenant, db_session, tenant_id, cipher):
        _connect(db_session, tenant_id, cipher, ConnectorProvider.PIPEDRIVE)

        response = client.get("/api/connectors/config")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        connectors = {c["provider"]: c for c in data["connectors"]}
        assert connectors["pipedrive"]["connected"] is True
        assert connectors["pipedrive"]["last_tested"] is not None
        assert connectors["hubspot"]["connected"] is False
        assert {p["provider"] for p in data["available_providers"]} == {p.value for p in ConnectorProvider}

    def test_no_token_values_in_response(self, client, as_tenant, db_session, tenant_id, cipher):
        _connect(db_session, tenant_id, cipher, ConnectorProvider.PIPEDRIVE)

        response = client.get("/api/connectors/config")

        assert "stored-access" not in response.text
        assert "stored-refresh" not in response.text

    def test_requires_tenant_context(self, client):
        assert client.get("/api/connectors/config").status_code == 401

    def test_malformed_refresh_response_reports_disconnected(
        self, client, as_tenant, db_session, tenant_id, cipher, provider_api
    ):
        provider_api.respond_token_body(b'["not", "an", "object"]')
        _connect(db_session, tenant_id, cipher, ConnectorProvider.PIPEDRIVE, expires_in=timedelta(minutes=1))

        response = client.get("/api/connectors/config")

        assert response.status_code == 200
        connectors = {c["provider"]: c for c in response.json()["connectors"]}
        assert connectors["pipedrive"]["connected"] is False

    def test_unhandled_error_hides_details(self, client, as_tenant):
        with patch(
            "connector_vault.services.connector_oauth_service.ConnectorOAuthService.get_connector_status",
            side_effect=RuntimeError("connection string postgres://user:pw@db"),
        ):
            response = client.get("/api/connectors/config", headers={CORRELATION_HEADER: "corr-123"})

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert error["details"] == {"correlation_id": "corr-123"}
        assert "postgres" not in response.text
        assert response.headers[CORRELATION_HEADER] == "corr-123"


class TestConnectionProbe:

    def test_connected(self, client, as_tenant, db_session, tenant_id, cipher):
        _connect(db_session, tenant_id, cipher, ConnectorProvider.SALESFORCE)

        response = client.post("/api/connectors/test/salesforce")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["provider"] == "salesforce"
        assert data["timestamp"]

    def test_not_connected(self, client, as_tenant):
        response = client.post("/api/connectors/test/salesforce")

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error"] == "No valid configuration found"

    def test_probe_rejected(self, client, as_tenant, db_session, tenant_id, cipher, provider_api):
        provider_api.probe_status = 403
        _connect(db_session, tenant_id, cipher, ConnectorProvider.HUBSPOT)

        response = client.post("/api/connectors/test/hubspot")

        assert response.json()["success"] is False


class TestDisconnect:

    def test_disconnect_then_again(self, client, as_tenant, db_session, tenant_id, cipher):
        _connect(db_session, tenant_id, cipher, ConnectorProvider.HUBSPOT)

        first = client.delete("/api/connectors/hubspot")
        second = client.delete("/api/connectors/hubspot")

        assert first.status_code == 200
        assert first.json()["message"] == "hubspot disconnected successfully"
        assert second.status_code == 200
        assert second.json()["success"] is True
        assert second.json()["message"] == "hubspot was not connected"

    def test_unknown_provider(self, client, as_tenant):
        assert client.delete("/api/connectors/zoho").status_code == 400

    def test_other_tenant_unaffected(
        self, client, as_tenant, db_session, other_tenant_id, cipher
    ):
        _connect(db_session, other_tenant_id, cipher, ConnectorProvider.HUBSPOT)

        response = client.delete("/api/connectors/hubspot")

        assert response.json()["message"] == "hubspot was not connected"
        assert CredentialStore(db_session, other_tenant_id, cipher).get_active(ConnectorProvider.HUBSPOT) is not None
