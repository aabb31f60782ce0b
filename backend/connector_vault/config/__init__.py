"""Configuration module for connector OAuth settings."""

from connector_vault.config.oauth_providers import (
    ConnectorProvider,
    ConnectorType,
    OAuthSettings,
    ProviderConfig,
    UnsupportedProviderError,
    build_provider_config,
    load_oauth_settings,
)

__all__ = [
    "ConnectorProvider",
    "ConnectorType",
    "OAuthSettings",
    "ProviderConfig",
    "UnsupportedProviderError",
    "build_provider_config",
    "load_oauth_settings",
]
