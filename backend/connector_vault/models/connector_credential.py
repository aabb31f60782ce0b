"""
ConnectorCredential model - encrypted OAuth tokens per tenant and provider.

Row shape:
    {id, tenant_id, connector_type, is_active, config, created_at, updated_at}

config is a JSON object:
    {
        "access_token": <EncryptedBlob>,
        "refresh_token": <EncryptedBlob> | absent,
        "expires_at": ISO-8601 | absent,
        "scope": str | absent,
        "token_type": "Bearer",
    }

SECURITY REQUIREMENTS:
- Token fields in config are tenant-scoped encrypted blobs; NEVER log them
- All access is tenant-scoped
- Rows are never hard-deleted; disconnect/refresh set is_active=False so
  the history stays available for audit

At most one active row per (tenant_id, connector_type) is maintained by
CredentialStore, not by a database constraint.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB

from connector_vault.db_base import Base
from connector_vault.models.base import TenantScopedMixin, TimestampMixin

# Use JSONB for PostgreSQL, JSON for other databases (testing)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class DeactivationReason:
    """Why a credential row stopped being active."""
    REPLACED = "replaced"
    REFRESHED = "refreshed"
    REFRESH_FAILED = "refresh_failed"
    DISCONNECTED = "disconnected"
    EXPIRED = "expired"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConnectorCredential(Base, TimestampMixin, TenantScopedMixin):
    """
    Encrypted connector configuration for one tenant and provider.

    SECURITY:
    - config["access_token"] and config["refresh_token"] are encrypted
    - Tokens are NEVER exposed in API responses, repr or logs
    """

    __tablename__ = "connector_configs"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)",
    )

    connector_type = Column(
        String(50),
        nullable=False,
        comment="Provider key (google_calendar, salesforce, hubspot, pipedrive)",
    )

    is_active = Column(
        Boolean,
        default=True,
        nullable=False,
        comment="Only active rows are used; inactive rows are history",
    )

    # SECURITY: contains encrypted token blobs. NEVER log this value.
    config = Column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Encrypted tokens plus non-secret token metadata",
    )

    deactivated_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the row was marked inactive",
    )
    deactivation_reason = Column(
        String(50),
        nullable=True,
        comment="replaced, refreshed, refresh_failed, disconnected, expired",
    )

    __table_args__ = (
        Index("ix_connector_configs_tenant_type_active", "tenant_id", "connector_type", "is_active"),
    )

    def __repr__(self) -> str:
        """Safe repr - NEVER include token values."""
        return (
            f"<ConnectorCredential("
            f"id={self.id}, "
            f"tenant_id={self.tenant_id}, "
            f"connector_type={self.connector_type}, "
            f"is_active={self.is_active})>"
        )

    @property
    def expires_at(self) -> Optional[datetime]:
        """Access token expiry, if the provider reported one."""
        raw = (self.config or {}).get("expires_at")
        if not raw:
            return None
        return _as_utc(datetime.fromisoformat(raw))

    @property
    def has_refresh_token(self) -> bool:
        return bool((self.config or {}).get("refresh_token"))
