"""
Credential storage service for connector OAuth tokens.

SECURITY REQUIREMENTS:
- Tokens are encrypted with the tenant-scoped cipher before storage
- No plaintext tokens outside process memory
- Tenant-scoped access only (tenant_id from the authenticated session)
- Logical delete only: rows are marked inactive, never removed

Consistency:
- replace_active() deactivates the previous active row(s) and inserts the
  new row in ONE transaction, so readers never see two active rows written
  by this store
- Readers still prefer the most recently created active row, which keeps
  them correct if rows were written by another process without a
  transaction

Usage:
    store = CredentialStore(db_session, tenant_id, cipher)

    credential = await store.replace_active(ConnectorProvider.HUBSPOT, tokens)
    decrypted = await store.decrypt(credential)
    store.deactivate_all(ConnectorProvider.HUBSPOT, DeactivationReason.DISCONNECTED)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from connector_vault.config.oauth_providers import ConnectorProvider
from connector_vault.credentials.encryption import TenantCipher
from connector_vault.credentials.redaction import AuditEventType, CredentialAuditLogger, mask_token
from connector_vault.models.connector_credential import ConnectorCredential, DeactivationReason

logger = logging.getLogger(__name__)


class CredentialStoreError(Exception):
    """Base exception for credential store errors."""
    pass


@dataclass
class OAuthTokens:
    """
    Plaintext tokens as returned by a provider.

    SECURITY: repr excludes token values.
    """
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    token_type: str = "Bearer"


@dataclass
class DecryptedCredential:
    """An active credential with tokens decrypted in memory."""
    credential_id: str
    tenant_id: str
    provider: ConnectorProvider
    tokens: OAuthTokens
    created_at: Optional[datetime] = None

    @property
    def expires_at(self) -> Optional[datetime]:
        return self.tokens.expires_at


class CredentialStore:
    """
    Tenant-scoped store for ConnectorCredential rows.

    All queries filter on the tenant_id given at construction.
    """

    def __init__(self, db_session: Session, tenant_id: str, cipher: TenantCipher):
        """
        Args:
            db_session: Database session
            tenant_id: Tenant ID from the authenticated session
            cipher: Tenant-scoped cipher

        Raises:
            ValueError: If tenant_id is not provided
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        self.db = db_session
        self.tenant_id = tenant_id
        self.cipher = cipher
        self.audit = CredentialAuditLogger(tenant_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _active_query(self, provider: Optional[ConnectorProvider] = None):
        stmt = select(ConnectorCredential).where(
            ConnectorCredential.tenant_id == self.tenant_id,
            ConnectorCredential.is_active.is_(True),
        )
        if provider is not None:
            stmt = stmt.where(ConnectorCredential.connector_type == provider.value)
        return stmt.order_by(ConnectorCredential.created_at.desc())

    def get_active(self, provider: ConnectorProvider) -> Optional[ConnectorCredential]:
        """Return the most recently created active row for a provider."""
        return self.db.execute(self._active_query(provider)).scalars().first()

    def list_active(self, provider: Optional[ConnectorProvider] = None) -> List[ConnectorCredential]:
        """Return all active rows (newest first), optionally for one provider."""
        return list(self.db.execute(self._active_query(provider)).scalars().all())

    def list_history(self, provider: ConnectorProvider) -> List[ConnectorCredential]:
        """Return every row, active or not, for a provider (newest first)."""
        stmt = (
            select(ConnectorCredential)
            .where(
                ConnectorCredential.tenant_id == self.tenant_id,
                ConnectorCredential.connector_type == provider.value,
            )
            .order_by(ConnectorCredential.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def replace_active(
        self,
        provider: ConnectorProvider,
        tokens: OAuthTokens,
        reason: str = DeactivationReason.REPLACED,
    ) -> ConnectorCredential:
        """
        Encrypt tokens and make them the single active credential.

        Args:
            provider: Connector provider
            tokens: Plaintext tokens from the provider
            reason: Deactivation reason recorded on the superseded rows

        Returns:
            The new active ConnectorCredential

        Raises:
            CredentialStoreError: If the write fails (nothing is committed)
        """
        config = {
            "access_token": await self.cipher.encrypt_token(tokens.access_token, self.tenant_id),
            "token_type": tokens.token_type or "Bearer",
        }
        if tokens.refresh_token:
            config["refresh_token"] = await self.cipher.encrypt_token(
                tokens.refresh_token, self.tenant_id
            )
        if tokens.expires_at:
            config["expires_at"] = tokens.expires_at.astimezone(timezone.utc).isoformat()
        if tokens.scope:
            config["scope"] = tokens.scope

        try:
            superseded = self.list_active(provider)
            now = datetime.now(timezone.utc)
            for old in superseded:
                old.is_active = False
                old.deactivated_at = now
                old.deactivation_reason = reason

            credential = ConnectorCredential(
                tenant_id=self.tenant_id,
                connector_type=provider.value,
                is_active=True,
                config=config,
            )
            self.db.add(credential)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Failed to store connector credential",
                extra={
                    "tenant_id": self.tenant_id,
                    "provider": provider.value,
                    "error_type": type(e).__name__,
                },
            )
            raise CredentialStoreError("Failed to store connector credential") from e

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            provider=provider.value,
            credential_id=credential.id,
            metadata={
                "superseded_ids": [old.id for old in superseded],
                "superseded_reason": reason if superseded else None,
                "expires_at": config.get("expires_at"),
                "has_refresh_token": tokens.refresh_token is not None,
                "access_token_masked": mask_token(tokens.access_token),
            },
        )

        logger.info(
            "Connector credential stored",
            extra={
                "credential_id": credential.id,
                "tenant_id": self.tenant_id,
                "provider": provider.value,
                "superseded": len(superseded),
            },
        )
        return credential

    def deactivate(self, credential: ConnectorCredential, reason: str) -> ConnectorCredential:
        """Mark a single row inactive. No-op if it is already inactive."""
        if credential.tenant_id != self.tenant_id:
            raise CredentialStoreError("Credential does not belong to tenant")
        if not credential.is_active:
            return credential

        credential.is_active = False
        credential.deactivated_at = datetime.now(timezone.utc)
        credential.deactivation_reason = reason
        self._commit("deactivate")

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_REVOKED,
            provider=credential.connector_type,
            credential_id=credential.id,
            metadata={"reason": reason},
        )
        return credential

    def deactivate_all(self, provider: ConnectorProvider, reason: str) -> int:
        """
        Mark every active row for a provider inactive.

        Idempotent: returns 0 when nothing was active.
        """
        active = self.list_active(provider)
        if not active:
            return 0

        now = datetime.now(timezone.utc)
        for credential in active:
            credential.is_active = False
            credential.deactivated_at = now
            credential.deactivation_reason = reason
        self._commit("deactivate_all")

        for credential in active:
            self.audit.log(
                event_type=AuditEventType.CREDENTIAL_REVOKED,
                provider=provider.value,
                credential_id=credential.id,
                metadata={"reason": reason},
            )

        logger.info(
            "Connector credentials deactivated",
            extra={
                "tenant_id": self.tenant_id,
                "provider": provider.value,
                "count": len(active),
                "reason": reason,
            },
        )
        return len(active)

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Credential store commit failed",
                extra={"tenant_id": self.tenant_id, "operation": operation},
            )
            raise CredentialStoreError(f"Credential store {operation} failed") from e

    # ------------------------------------------------------------------
    # Decryption
    # ------------------------------------------------------------------

    async def decrypt(self, credential: ConnectorCredential) -> DecryptedCredential:
        """
        Decrypt a stored row.

        SECURITY: the returned tokens must NEVER be logged.

        Raises:
            DecryptionError: If a token blob cannot be decrypted for this tenant
        """
        config = credential.config or {}
        access_token = await self.cipher.decrypt_token(config.get("access_token", ""), self.tenant_id)
        refresh_token = None
        if config.get("refresh_token"):
            refresh_token = await self.cipher.decrypt_token(config["refresh_token"], self.tenant_id)

        return DecryptedCredential(
            credential_id=credential.id,
            tenant_id=self.tenant_id,
            provider=ConnectorProvider.parse(credential.connector_type),
            tokens=OAuthTokens(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=credential.expires_at,
                scope=config.get("scope"),
                token_type=config.get("token_type", "Bearer"),
            ),
            created_at=credential.created_at,
        )

    # ------------------------------------------------------------------
    # Cross-tenant helpers (workers only)
    # ------------------------------------------------------------------

    @staticmethod
    def tenants_with_active_credentials(db_session: Session) -> List[str]:
        """Distinct tenant ids owning at least one active row."""
        stmt = (
            select(ConnectorCredential.tenant_id)
            .where(ConnectorCredential.is_active.is_(True))
            .distinct()
        )
        return list(db_session.execute(stmt).scalars().all())
