"""
Token refresh job: cron job that refreshes connector tokens before expiry.

Refreshing ahead of time means request paths rarely hit an on-demand refresh
in ensure_valid_tokens(). A rejected refresh deactivates the credential; the
tenant has to reconnect that provider.

CONSTRAINTS:
- Operates cross-tenant, but each tenant is processed through its own
  tenant-scoped CredentialStore
- Token values are never logged

Run as a cron job (every 10 minutes):
    python -m connector_vault.workers.token_refresh_job

Environment variables:
- TOKEN_REFRESH_WINDOW_MINUTES   refresh tokens expiring within (default 30)
"""

import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from connector_vault.config.oauth_providers import OAuthSettings, load_oauth_settings
from connector_vault.credentials.encryption import TenantCipher
from connector_vault.credentials.nonce_registry import InMemoryNonceRegistry
from connector_vault.credentials.oauth_state import OAuthStateSigner
from connector_vault.credentials.redaction import setup_credential_logging
from connector_vault.credentials.store import CredentialStore
from connector_vault.database.session import get_session_factory
from connector_vault.platform.secrets import MasterSecret, load_master_secret
from connector_vault.services.connector_oauth_service import (
    DEFAULT_SCHEDULED_REFRESH_MINUTES,
    ConnectorOAuthService,
    RefreshResultStatus,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

TOKEN_REFRESH_WINDOW_MINUTES = int(
    os.getenv("TOKEN_REFRESH_WINDOW_MINUTES", DEFAULT_SCHEDULED_REFRESH_MINUTES)
)


@dataclass
class RefreshStats:
    """Statistics from a token refresh run."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    tenants_processed: int = 0
    refreshed: int = 0
    failed: int = 0
    not_possible: int = 0
    errors: list = field(default_factory=list)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        duration = None
        if self.completed_at:
            duration = (self.completed_at - self.started_at).total_seconds()

        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "tenants_processed": self.tenants_processed,
            "refreshed": self.refreshed,
            "failed": self.failed,
            "not_possible": self.not_possible,
            "error_count": len(self.errors),
            "duration_seconds": duration,
        }


async def run_refresh(
    db_session: Session,
    service_factory: Callable[[Session], ConnectorOAuthService],
    within_minutes: int = TOKEN_REFRESH_WINDOW_MINUTES,
) -> RefreshStats:
    """
    Refresh expiring tokens for every tenant with an active credential.

    A failure for one tenant is recorded and does not stop the run.
    """
    stats = RefreshStats()
    service = service_factory(db_session)

    for tenant_id in CredentialStore.tenants_with_active_credentials(db_session):
        try:
            results = await service.refresh_expiring_credentials(tenant_id, within_minutes)
        except Exception as exc:
            db_session.rollback()
            stats.errors.append(tenant_id)
            logger.error(
                "Token refresh failed for tenant",
                extra={"tenant_id": tenant_id, "error_type": type(exc).__name__},
                exc_info=True,
            )
            continue

        stats.tenants_processed += 1
        for result in results:
            if result.status == RefreshResultStatus.SUCCESS:
                stats.refreshed += 1
            elif result.status == RefreshResultStatus.FAILED:
                stats.failed += 1
            elif result.status == RefreshResultStatus.NOT_POSSIBLE:
                stats.not_possible += 1

    stats.completed_at = datetime.now(timezone.utc)
    return stats


def _build_service_factory(
    master: MasterSecret,
    settings: OAuthSettings,
    http_client: httpx.AsyncClient,
) -> Callable[[Session], ConnectorOAuthService]:
    cipher = TenantCipher(master)
    signer = OAuthStateSigner(master, max_age_seconds=settings.state_max_age_seconds)
    # Refresh never touches nonces
    nonces = InMemoryNonceRegistry(max_age_seconds=settings.state_max_age_seconds)

    def factory(db_session: Session) -> ConnectorOAuthService:
        return ConnectorOAuthService(
            db_session=db_session,
            settings=settings,
            cipher=cipher,
            signer=signer,
            nonce_registry=nonces,
            http_client=http_client,
        )

    return factory


async def _run() -> RefreshStats:
    master = load_master_secret()
    settings = load_oauth_settings()
    session = get_session_factory()()
    try:
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as http_client:
            factory = _build_service_factory(master, settings, http_client)
            return await run_refresh(session, factory)
    finally:
        session.close()


def main():
    """Entry point for the token refresh job."""
    setup_credential_logging()
    logger.info(
        "Token Refresh Job starting",
        extra={"window_minutes": TOKEN_REFRESH_WINDOW_MINUTES},
    )

    try:
        stats = asyncio.run(_run())
        logger.info("Token Refresh Job stats", extra=stats.to_dict())
    except Exception as exc:
        logger.error(
            "Token Refresh Job failed",
            extra={"error_type": type(exc).__name__},
            exc_info=True,
        )
        sys.exit(1)

    logger.info("Token Refresh Job finished")


if __name__ == "__main__":
    main()
