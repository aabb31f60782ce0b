"""
Provider adapters for connected calendar and CRM accounts.

Each adapter performs a lightweight, read-only capability probe with the
tenant's access token so the connectors page can show whether a connection
actually works. Adapter selection dispatches over ConnectorProvider.

SECURITY:
- Access tokens are only placed in the Authorization header
- Provider response bodies are not logged
"""

import abc
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Type

import httpx

from connector_vault.config.oauth_providers import (
    ConnectorProvider,
    ConnectorType,
    PROVIDER_DEFINITIONS,
)
from connector_vault.credentials.store import DecryptedCredential

logger = logging.getLogger(__name__)


@dataclass
class ConnectionTestResult:
    """Outcome of a connection probe."""
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"success": self.success, "error": self.error}


class ConnectorError(Exception):
    """Base exception for provider API errors."""

    def __init__(self, message: str, code: str, provider: str):
        self.code = code
        self.provider = provider
        super().__init__(message)


class ConnectorAuthError(ConnectorError):
    """Provider rejected the access token."""

    def __init__(self, provider: str):
        super().__init__(f"Authentication failed for {provider}", "AUTH_ERROR", provider)


class ConnectorRateLimitError(ConnectorError):
    """Provider rate limit hit."""

    def __init__(self, provider: str, retry_after: Optional[int] = None):
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {provider}", "RATE_LIMIT", provider)


class ConnectorAdapter(abc.ABC):
    """Base adapter bound to one decrypted credential."""

    provider: ConnectorProvider
    probe_url: str

    def __init__(self, credential: DecryptedCredential, http_client: httpx.AsyncClient):
        if credential.provider != self.provider:
            raise ValueError(
                f"{type(self).__name__} cannot use a {credential.provider.value} credential"
            )
        self.credential = credential
        self.http = http_client

    @property
    def type(self) -> ConnectorType:
        return PROVIDER_DEFINITIONS[self.provider].type

    @property
    def tenant_id(self) -> str:
        return self.credential.tenant_id

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credential.tokens.access_token}",
            "Accept": "application/json",
        }

    def _check_response(self, response: httpx.Response) -> None:
        if response.status_code in (401, 403):
            raise ConnectorAuthError(self.provider.value)
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise ConnectorRateLimitError(
                self.provider.value,
                int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.is_error:
            raise ConnectorError(
                f"{self.provider.value} API returned {response.status_code}",
                f"HTTP_{response.status_code}",
                self.provider.value,
            )

    async def _probe(self) -> None:
        response = await self.http.get(self.probe_url, headers=self._headers())
        self._check_response(response)

    async def test_connection(self) -> ConnectionTestResult:
        """
        Probe the provider with the stored access token.

        Never raises; failures come back as success=False.
        """
        if not self.credential.tokens.access_token:
            return ConnectionTestResult(success=False, error="Missing access token")

        try:
            await self._probe()
        except ConnectorError as e:
            logger.warning(
                "Connector probe failed",
                extra={
                    "tenant_id": self.tenant_id,
                    "provider": self.provider.value,
                    "error_code": e.code,
                },
            )
            return ConnectionTestResult(success=False, error=str(e))
        except httpx.TimeoutException:
            logger.warning(
                "Connector probe timed out",
                extra={"tenant_id": self.tenant_id, "provider": self.provider.value},
            )
            return ConnectionTestResult(success=False, error=f"{self.provider.value} did not respond in time")
        except httpx.HTTPError as e:
            logger.warning(
                "Connector probe transport error",
                extra={
                    "tenant_id": self.tenant_id,
                    "provider": self.provider.value,
                    "error_type": type(e).__name__,
                },
            )
            return ConnectionTestResult(success=False, error=f"Could not reach {self.provider.value}")

        return ConnectionTestResult(success=True)


class GoogleCalendarAdapter(ConnectorAdapter):
    provider = ConnectorProvider.GOOGLE_CALENDAR
    probe_url = "https://www.googleapis.com/calendar/v3/users/me/calendarList?maxResults=1"


class SalesforceAdapter(ConnectorAdapter):
    provider = ConnectorProvider.SALESFORCE
    probe_url = "https://login.salesforce.com/services/oauth2/userinfo"


class HubSpotAdapter(ConnectorAdapter):
    provider = ConnectorProvider.HUBSPOT
    probe_url = "https://api.hubapi.com/crm/v3/objects/contacts?limit=1"


class PipedriveAdapter(ConnectorAdapter):
    provider = ConnectorProvider.PIPEDRIVE
    probe_url = "https://api.pipedrive.com/v1/users/me"


ADAPTERS: Dict[ConnectorProvider, Type[ConnectorAdapter]] = {
    ConnectorProvider.GOOGLE_CALENDAR: GoogleCalendarAdapter,
    ConnectorProvider.SALESFORCE: SalesforceAdapter,
    ConnectorProvider.HUBSPOT: HubSpotAdapter,
    ConnectorProvider.PIPEDRIVE: PipedriveAdapter,
}


def create_adapter(
    credential: DecryptedCredential,
    http_client: httpx.AsyncClient,
) -> ConnectorAdapter:
    """Return the adapter for the credential's provider."""
    return ADAPTERS[credential.provider](credential, http_client)
