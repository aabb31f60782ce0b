"""
Credentials module for tenant-scoped connector secrets.

This module provides:
- Per-tenant key derivation and AES-256-GCM encryption of stored tokens
- HMAC-signed, time-boxed OAuth state
- One-time-use nonce registry for replay protection
- Encrypted, tenant-scoped credential storage
- Audit logging with automatic redaction

SECURITY:
- Tokens are encrypted at rest with a key derived from the master secret
- Tokens NEVER appear in logs or API responses
- Cross-tenant decryption fails before any key derivation

Usage:
    from connector_vault.credentials import TenantCipher, CredentialStore

    cipher = TenantCipher(load_master_secret())
    store = CredentialStore(db_session, tenant_id, cipher)
"""

from connector_vault.credentials.encryption import (
    DecryptionError,
    EncryptionError,
    TenantCipher,
)
from connector_vault.credentials.key_derivation import derive_tenant_key, tenant_tag
from connector_vault.credentials.nonce_registry import (
    InMemoryNonceRegistry,
    NonceEntry,
    NonceRegistry,
    RedisNonceRegistry,
    create_nonce_registry,
)
from connector_vault.credentials.oauth_state import (
    OAuthStateSigner,
    OAuthStateValidation,
    generate_nonce,
)
from connector_vault.credentials.redaction import (
    AuditEventType,
    CredentialAuditLogger,
    mask_token,
    redact_credential_data,
)
from connector_vault.credentials.store import (
    CredentialStore,
    CredentialStoreError,
    DecryptedCredential,
    OAuthTokens,
)

__all__ = [
    # Encryption
    "TenantCipher",
    "EncryptionError",
    "DecryptionError",
    "derive_tenant_key",
    "tenant_tag",
    # OAuth state
    "OAuthStateSigner",
    "OAuthStateValidation",
    "generate_nonce",
    # Nonces
    "NonceRegistry",
    "NonceEntry",
    "InMemoryNonceRegistry",
    "RedisNonceRegistry",
    "create_nonce_registry",
    # Store
    "CredentialStore",
    "CredentialStoreError",
    "DecryptedCredential",
    "OAuthTokens",
    # Redaction & Audit
    "AuditEventType",
    "CredentialAuditLogger",
    "mask_token",
    "redact_credential_data",
]
