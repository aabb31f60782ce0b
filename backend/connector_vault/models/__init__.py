"""
Database models for connector credentials.

Tenant-scoped models inherit from TenantScopedMixin.
"""

from connector_vault.models.base import TimestampMixin, TenantScopedMixin
from connector_vault.models.connector_credential import ConnectorCredential, DeactivationReason

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "ConnectorCredential",
    "DeactivationReason",
]
