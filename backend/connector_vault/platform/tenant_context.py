"""
Tenant context for connector routes.

Authentication happens upstream (session middleware or API gateway). That
layer places a TenantContext on request.state.tenant_context; routes read it
with get_tenant_context(request).

SECURITY: tenant_id is ONLY ever taken from the authenticated context,
never from query parameters or the request body.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import Request

from connector_vault.platform.errors import AuthenticationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantContext:
    """Authenticated tenant for the current request."""
    tenant_id: str
    user_id: Optional[str] = None
    roles: List[str] = field(default_factory=list)


def get_tenant_context(request: Request) -> TenantContext:
    """
    Return the tenant context attached by the authentication layer.

    Raises:
        AuthenticationError: If no tenant context is present (401)
    """
    ctx = getattr(request.state, "tenant_context", None)
    if ctx is None or not getattr(ctx, "tenant_id", None):
        logger.warning(
            "Request without tenant context",
            extra={"path": request.url.path, "method": request.method},
        )
        raise AuthenticationError("Tenant context required")
    return ctx
