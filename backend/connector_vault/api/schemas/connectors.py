"""
Schemas for the connectors API.

SECURITY: No schema here carries token values or client secrets.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


# =============================================================================
# Response Models
# =============================================================================

class AuthorizeResponse(BaseModel):
    """Response for starting an OAuth flow."""

    auth_url: str
    provider: str
    nonce: str
    message: str


class AvailableProvider(BaseModel):
    """A provider this deployment supports."""

    provider: str
    name: str
    type: str
    configured: bool


class ConnectorStatusResponse(BaseModel):
    """Connection status of one provider for the tenant."""

    provider: str
    name: str
    type: str
    connected: bool
    last_tested: Optional[datetime] = None
    error: Optional[str] = None


class ConnectorConfigResponse(BaseModel):
    """Response for the connectors page."""

    success: bool
    connectors: List[ConnectorStatusResponse]
    available_providers: List[AvailableProvider]


class ConnectionTestResponse(BaseModel):
    """Response for a connection probe."""

    success: bool
    provider: str
    error: Optional[str] = None
    timestamp: datetime


class DisconnectResponse(BaseModel):
    """Response for disconnecting a provider."""

    success: bool
    provider: str
    message: str
