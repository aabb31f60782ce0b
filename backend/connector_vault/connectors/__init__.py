"""Provider adapters for connected calendar and CRM accounts."""

from connector_vault.connectors.adapters import (
    ConnectionTestResult,
    ConnectorAdapter,
    ConnectorAuthError,
    ConnectorError,
    ConnectorRateLimitError,
    create_adapter,
)

__all__ = [
    "ConnectionTestResult",
    "ConnectorAdapter",
    "ConnectorAuthError",
    "ConnectorError",
    "ConnectorRateLimitError",
    "create_adapter",
]
