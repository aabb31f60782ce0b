"""Shared fixtures for connector vault tests."""

import json
import uuid
from typing import List, Optional
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from connector_vault.config.oauth_providers import (
    ConnectorProvider,
    OAuthSettings,
    build_provider_config,
)
from connector_vault.credentials.encryption import TenantCipher
from connector_vault.credentials.nonce_registry import InMemoryNonceRegistry
from connector_vault.credentials.oauth_state import OAuthStateSigner
from connector_vault.db_base import Base
from connector_vault.platform.secrets import MasterSecret
from connector_vault.services.connector_oauth_service import ConnectorOAuthService


# =============================================================================
# Secrets and crypto
# =============================================================================


@pytest.fixture
def master_secret():
    return MasterSecret(value=b"test-master-secret-for-connector-vault-32b")


@pytest.fixture
def other_master_secret():
    return MasterSecret(value=b"a-completely-different-master-secret-value")


@pytest.fixture
def cipher(master_secret):
    return TenantCipher(master_secret)


@pytest.fixture
def signer(master_secret):
    return OAuthStateSigner(master_secret)


@pytest.fixture
def nonce_registry():
    return InMemoryNonceRegistry()


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_session():
    """Create in-memory SQLite database for testing."""
    # StaticPool + check_same_thread=False so TestClient threads share the DB
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Import model to register with Base
    from connector_vault.models.connector_credential import ConnectorCredential  # noqa: F401

    Base.metadata.create_all(bind=engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def tenant_id():
    """Generate unique tenant ID."""
    return f"tenant-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def other_tenant_id():
    """Second tenant ID for isolation tests."""
    return f"tenant-b-{uuid.uuid4().hex[:8]}"


# =============================================================================
# Provider configuration and fake provider API
# =============================================================================


@pytest.fixture
def oauth_settings():
    providers = {
        provider: build_provider_config(
            provider,
            client_id=f"{provider.value}-client-id",
            client_secret=f"{provider.value}-client-secret",
            frontend_url="https://app.example.com",
        )
        for provider in ConnectorProvider
    }
    return OAuthSettings(
        providers=providers,
        app_connectors_url="/admin/connectors",
        http_timeout_seconds=5.0,
    )


class FakeProviderAPI:
    """
    httpx.MockTransport handler standing in for provider token and API endpoints.

    Token endpoint requests are recorded with their decoded form body.
    Queue responses with respond_token(); the default is a fresh token set.
    """

    def __init__(self):
        self.token_requests: List[dict] = []
        self.api_requests: List[httpx.Request] = []
        self._token_responses: List[httpx.Response] = []
        self._token_error: Optional[Exception] = None
        self.probe_status = 200

    def respond_token(self, status_code: int = 200, **payload) -> None:
        self._token_responses.append(
            httpx.Response(status_code, content=json.dumps(payload).encode("utf-8"),
                           headers={"Content-Type": "application/json"})
        )

    def respond_token_body(self, content: bytes, status_code: int = 200) -> None:
        """Queue a token response with an arbitrary body."""
        self._token_responses.append(
            httpx.Response(status_code, content=content, headers={"Content-Type": "application/json"})
        )

    def fail_token_with(self, error: Exception) -> None:
        self._token_error = error

    def refresh_calls(self) -> List[dict]:
        return [r for r in self.token_requests if r.get("grant_type") == "refresh_token"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if "token" in request.url.path:
            form = {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}
            self.token_requests.append(form)
            if self._token_error is not None:
                raise self._token_error
            if self._token_responses:
                return self._token_responses.pop(0)
            n = len(self.token_requests)
            return httpx.Response(
                200,
                json={
                    "access_token": f"access-{n}",
                    "refresh_token": f"refresh-{n}",
                    "expires_in": 3600,
                    "token_type": "Bearer",
                },
            )

        self.api_requests.append(request)
        return httpx.Response(self.probe_status, json={"ok": self.probe_status == 200})


@pytest.fixture
def provider_api():
    return FakeProviderAPI()


@pytest.fixture
def http_client(provider_api):
    return httpx.AsyncClient(transport=httpx.MockTransport(provider_api.handler))


@pytest.fixture
def oauth_service(db_session, oauth_settings, cipher, signer, nonce_registry, http_client):
    return ConnectorOAuthService(
        db_session=db_session,
        settings=oauth_settings,
        cipher=cipher,
        signer=signer,
        nonce_registry=nonce_registry,
        http_client=http_client,
    )
