"""
OAuth provider configuration for calendar and CRM connectors.

Providers form a closed set (ConnectorProvider). Static endpoint data lives
in PROVIDER_DEFINITIONS; client credentials and redirect URIs come from the
deployment environment and are resolved once, at startup, by
load_oauth_settings(). The resulting OAuthSettings is passed explicitly into
ConnectorOAuthService.

Environment variables:
- GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET        (google_calendar)
- SALESFORCE_CLIENT_ID / SALESFORCE_CLIENT_SECRET
- HUBSPOT_CLIENT_ID / HUBSPOT_CLIENT_SECRET
- PIPEDRIVE_CLIENT_ID / PIPEDRIVE_CLIENT_SECRET
- FRONTEND_URL                 base for redirect URIs (default http://localhost:5000)
- CONNECTOR_REDIRECT_PATH      callback path prefix (default /api/connectors/oauth/callback)
- APP_CONNECTORS_URL           where the browser lands after a callback (default /admin/connectors)
- OAUTH_STATE_MAX_AGE_SECONDS  state/nonce validity window (default 3600)
- OAUTH_HTTP_TIMEOUT_SECONDS   provider HTTP timeout (default 15)
"""

import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DEFAULT_FRONTEND_URL = "http://localhost:5000"
DEFAULT_REDIRECT_PATH = "/api/connectors/oauth/callback"
DEFAULT_APP_CONNECTORS_URL = "/admin/connectors"
DEFAULT_STATE_MAX_AGE_SECONDS = 3600
DEFAULT_HTTP_TIMEOUT_SECONDS = 15.0


class UnsupportedProviderError(ValueError):
    """Provider name is not one of the supported connectors."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unsupported OAuth provider: {provider}")


class ConnectorType(str, enum.Enum):
    """Connector category."""
    CALENDAR = "calendar"
    CRM = "crm"


class ConnectorProvider(str, enum.Enum):
    """Supported OAuth connector providers."""
    GOOGLE_CALENDAR = "google_calendar"
    SALESFORCE = "salesforce"
    HUBSPOT = "hubspot"
    PIPEDRIVE = "pipedrive"

    @classmethod
    def parse(cls, value: Union[str, "ConnectorProvider"]) -> "ConnectorProvider":
        """Resolve a provider name, raising UnsupportedProviderError."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnsupportedProviderError(str(value)) from None


@dataclass(frozen=True)
class ProviderDefinition:
    """Static, non-secret provider data."""
    name: str
    type: ConnectorType
    auth_url: str
    token_url: str
    scopes: Tuple[str, ...]
    env_prefix: str


PROVIDER_DEFINITIONS: Dict[ConnectorProvider, ProviderDefinition] = {
    ConnectorProvider.GOOGLE_CALENDAR: ProviderDefinition(
        name="Google Calendar",
        type=ConnectorType.CALENDAR,
        auth_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        scopes=(
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/calendar.events",
        ),
        env_prefix="GOOGLE",
    ),
    ConnectorProvider.SALESFORCE: ProviderDefinition(
        name="Salesforce",
        type=ConnectorType.CRM,
        auth_url="https://login.salesforce.com/services/oauth2/authorize",
        token_url="https://login.salesforce.com/services/oauth2/token",
        scopes=("api", "refresh_token"),
        env_prefix="SALESFORCE",
    ),
    ConnectorProvider.HUBSPOT: ProviderDefinition(
        name="HubSpot",
        type=ConnectorType.CRM,
        auth_url="https://app.hubspot.com/oauth/authorize",
        token_url="https://api.hubapi.com/oauth/v1/token",
        scopes=("contacts", "content", "oauth"),
        env_prefix="HUBSPOT",
    ),
    ConnectorProvider.PIPEDRIVE: ProviderDefinition(
        name="Pipedrive",
        type=ConnectorType.CRM,
        auth_url="https://oauth.pipedrive.com/oauth/authorize",
        token_url="https://oauth.pipedrive.com/oauth/token",
        scopes=("deals:read", "contacts:read", "deals:write", "contacts:write"),
        env_prefix="PIPEDRIVE",
    ),
}


@dataclass(frozen=True)
class ProviderConfig:
    """
    Resolved provider configuration.

    SECURITY: repr excludes client_secret.
    """
    provider: ConnectorProvider
    name: str
    type: ConnectorType
    auth_url: str
    token_url: str
    scopes: Tuple[str, ...]
    client_id: str
    client_secret: str = field(repr=False)
    redirect_uri: str

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass(frozen=True)
class OAuthSettings:
    """All connector OAuth settings, built once at process start."""
    providers: Dict[ConnectorProvider, ProviderConfig]
    app_connectors_url: str = DEFAULT_APP_CONNECTORS_URL
    state_max_age_seconds: int = DEFAULT_STATE_MAX_AGE_SECONDS
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.http_timeout_seconds <= 0:
            raise ValueError("http_timeout_seconds must be positive")
        if self.http_timeout_seconds >= self.state_max_age_seconds:
            raise ValueError("http_timeout_seconds must be shorter than the state window")

    def get(self, provider: Union[str, "ConnectorProvider"]) -> ProviderConfig:
        """Return the config for a provider, raising UnsupportedProviderError."""
        return self.providers[ConnectorProvider.parse(provider)]

    def configured_providers(self) -> List[ConnectorProvider]:
        return [p for p, cfg in self.providers.items() if cfg.is_configured]


def build_provider_config(
    provider: ConnectorProvider,
    client_id: str,
    client_secret: str,
    frontend_url: str = DEFAULT_FRONTEND_URL,
    redirect_path: str = DEFAULT_REDIRECT_PATH,
) -> ProviderConfig:
    """Combine the static definition with deployment credentials."""
    definition = PROVIDER_DEFINITIONS[provider]
    return ProviderConfig(
        provider=provider,
        name=definition.name,
        type=definition.type,
        auth_url=definition.auth_url,
        token_url=definition.token_url,
        scopes=definition.scopes,
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=f"{frontend_url.rstrip('/')}{redirect_path}/{provider.value}",
    )


def load_oauth_settings(environ: Optional[Dict[str, str]] = None) -> OAuthSettings:
    """
    Build OAuthSettings from the environment.

    Providers without client credentials are still listed (so status pages
    can show them) but report is_configured=False.
    """
    env = os.environ if environ is None else environ
    frontend_url = env.get("FRONTEND_URL", DEFAULT_FRONTEND_URL)
    redirect_path = env.get("CONNECTOR_REDIRECT_PATH", DEFAULT_REDIRECT_PATH)

    providers = {}
    for provider, definition in PROVIDER_DEFINITIONS.items():
        providers[provider] = build_provider_config(
            provider,
            client_id=env.get(f"{definition.env_prefix}_CLIENT_ID", ""),
            client_secret=env.get(f"{definition.env_prefix}_CLIENT_SECRET", ""),
            frontend_url=frontend_url,
            redirect_path=redirect_path,
        )

    settings = OAuthSettings(
        providers=providers,
        app_connectors_url=env.get("APP_CONNECTORS_URL", DEFAULT_APP_CONNECTORS_URL),
        state_max_age_seconds=int(
            env.get("OAUTH_STATE_MAX_AGE_SECONDS", DEFAULT_STATE_MAX_AGE_SECONDS)
        ),
        http_timeout_seconds=float(
            env.get("OAUTH_HTTP_TIMEOUT_SECONDS", DEFAULT_HTTP_TIMEOUT_SECONDS)
        ),
    )

    logger.info(
        "OAuth provider settings loaded",
        extra={
            "configured_providers": [p.value for p in settings.configured_providers()],
            "unconfigured_providers": [
                p.value for p in providers if p not in settings.configured_providers()
            ],
        },
    )
    return settings
