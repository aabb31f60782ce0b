"""
Common model mixins.

Tenant-scoped models inherit TenantScopedMixin; tenant_id is always taken
from the authenticated tenant context, never from client input.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """created_at / updated_at columns maintained by the ORM."""

    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        comment="Row creation time",
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        comment="Last modification time",
    )


class TenantScopedMixin:
    """Owning tenant for tenant-isolated rows."""

    tenant_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Tenant identifier from the authenticated session",
    )
