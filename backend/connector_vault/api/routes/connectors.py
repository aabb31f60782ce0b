"""
Connector API routes: OAuth connect, status, probe and disconnect.

SECURITY:
- All routes except the OAuth callback require tenant context
- The callback takes the tenant from the signed state, never from the query
- Callback failures redirect with a fixed reason code only
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse

from connector_vault.api.dependencies.connectors import get_connector_service
from connector_vault.api.schemas.connectors import (
    AuthorizeResponse,
    AvailableProvider,
    ConnectionTestResponse,
    ConnectorConfigResponse,
    ConnectorStatusResponse,
    DisconnectResponse,
)
from connector_vault.config.oauth_providers import ConnectorProvider, UnsupportedProviderError
from connector_vault.platform.errors import ValidationError
from connector_vault.platform.tenant_context import get_tenant_context
from connector_vault.services.connector_oauth_service import (
    ConnectorOAuthService,
    OAuthCallbackError,
    ProviderNotConfiguredError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/connectors", tags=["connectors"])

CALLBACK_FAILED_REASON = "oauth_callback_failed"


def _parse_provider(provider: str) -> ConnectorProvider:
    try:
        return ConnectorProvider.parse(provider)
    except UnsupportedProviderError:
        raise ValidationError(f"Unsupported provider: {provider}") from None


def _connectors_redirect(base_url: str, **params: str) -> RedirectResponse:
    separator = "&" if "?" in base_url else "?"
    return RedirectResponse(
        url=f"{base_url}{separator}{urlencode(params)}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/oauth/authorize/{provider}", response_model=AuthorizeResponse)
async def authorize(
    provider: str,
    request: Request,
    service: ConnectorOAuthService = Depends(get_connector_service),
):
    """
    Start an OAuth flow for the authenticated tenant.

    The frontend sends the browser to auth_url.
    """
    tenant_ctx = get_tenant_context(request)
    connector = _parse_provider(provider)

    try:
        auth_request = service.initiate(tenant_ctx.tenant_id, connector)
    except ProviderNotConfiguredError:
        raise ValidationError(f"Provider is not configured: {connector.value}") from None

    return AuthorizeResponse(
        auth_url=auth_request.auth_url,
        provider=auth_request.provider,
        nonce=auth_request.nonce,
        message="Redirect user to auth_url to complete OAuth flow",
    )


@router.get("/oauth/callback/{provider}")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None, description="Authorization code"),
    state: Optional[str] = Query(None, description="Signed OAuth state"),
    error: Optional[str] = Query(None, description="Provider error"),
    service: ConnectorOAuthService = Depends(get_connector_service),
):
    """
    Complete an OAuth flow and redirect back to the connectors page.

    Success: ?success=true&provider=<provider>
    Failure: ?error=<reason_code>
    """
    base_url = service.settings.app_connectors_url

    try:
        await service.complete_callback(provider, code, state, error)
    except OAuthCallbackError as e:
        logger.info(
            "OAuth callback rejected",
            extra={"provider": provider, "reason_code": e.reason_code},
        )
        return _connectors_redirect(base_url, error=e.reason_code)
    except Exception as e:
        logger.exception(
            "Unexpected OAuth callback error",
            extra={"provider": provider, "error_type": type(e).__name__},
        )
        return _connectors_redirect(base_url, error=CALLBACK_FAILED_REASON)

    return _connectors_redirect(base_url, success="true", provider=provider)


@router.get("/config", response_model=ConnectorConfigResponse)
async def get_connector_config(
    request: Request,
    service: ConnectorOAuthService = Depends(get_connector_service),
):
    """Connection status of every provider plus the provider catalogue."""
    tenant_ctx = get_tenant_context(request)
    statuses = await service.get_connector_status(tenant_ctx.tenant_id)

    logger.info(
        "Listed connector status",
        extra={
            "tenant_id": tenant_ctx.tenant_id,
            "connected": sum(1 for s in statuses if s.connected),
        },
    )

    return ConnectorConfigResponse(
        success=True,
        connectors=[
            ConnectorStatusResponse(
                provider=s.provider,
                name=s.name,
                type=s.type,
                connected=s.connected,
                last_tested=s.last_tested,
                error=s.error,
            )
            for s in statuses
        ],
        available_providers=[
            AvailableProvider(**p) for p in service.get_available_providers()
        ],
    )


@router.post("/test/{provider}", response_model=ConnectionTestResponse)
async def test_connector(
    provider: str,
    request: Request,
    service: ConnectorOAuthService = Depends(get_connector_service),
):
    """Probe the provider with the tenant's stored tokens."""
    tenant_ctx = get_tenant_context(request)
    connector = _parse_provider(provider)

    result = await service.test_connection(tenant_ctx.tenant_id, connector)
    return ConnectionTestResponse(
        success=result.success,
        provider=connector.value,
        error=result.error,
        timestamp=datetime.now(timezone.utc),
    )


@router.delete("/{provider}", response_model=DisconnectResponse)
async def disconnect_connector(
    provider: str,
    request: Request,
    service: ConnectorOAuthService = Depends(get_connector_service),
):
    """Disconnect a provider. Safe to call when nothing is connected."""
    tenant_ctx = get_tenant_context(request)
    connector = _parse_provider(provider)

    count = service.disconnect(tenant_ctx.tenant_id, connector)
    return DisconnectResponse(
        success=True,
        provider=connector.value,
        message=(
            f"{connector.value} disconnected successfully"
            if count
            else f"{connector.value} was not connected"
        ),
    )
