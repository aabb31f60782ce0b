"""
Tenant-scoped credential encryption.

Implements AES-256-GCM encryption with a per-tenant key for storing OAuth
tokens at rest.

Blob layout (base64-encoded):

    salt (16) || iv (16) || tenant_tag (8) || ciphertext + GCM tag (>= 16)

SECURITY:
- Fresh random salt and IV for every encryption; an IV is never reused
- The tenant tag is compared (timing-safe) BEFORE any key derivation, so a
  cross-tenant decrypt fails fast and deterministically
- The tenant tag and tenant id are bound into the GCM associated data
- Every decrypt failure surfaces as the same generic DecryptionError; the
  specific reason is only logged at DEBUG level

Usage:
    cipher = TenantCipher(load_master_secret())

    blob = await cipher.encrypt_token("ya29.xxx", tenant_id)
    token = await cipher.decrypt_token(blob, tenant_id)
"""

import asyncio
import base64
import binascii
import hmac
import logging
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from connector_vault.credentials.key_derivation import (
    SALT_SIZE,
    TENANT_TAG_SIZE,
    derive_tenant_key,
    tenant_tag,
)
from connector_vault.platform.secrets import MasterSecret

logger = logging.getLogger(__name__)


IV_SIZE = 16   # GCM accepts 8-128 byte nonces; 16 keeps the blob layout fixed
GCM_TAG_SIZE = 16
HEADER_SIZE = SALT_SIZE + IV_SIZE + TENANT_TAG_SIZE
MIN_BLOB_SIZE = HEADER_SIZE + GCM_TAG_SIZE

GENERIC_DECRYPT_MESSAGE = "Failed to decrypt credential"


class EncryptionError(Exception):
    """Raised when encryption fails."""
    pass


class DecryptionError(Exception):
    """
    Raised when decryption fails.

    Deliberately carries no detail about which check failed.
    """

    def __init__(self, message: str = GENERIC_DECRYPT_MESSAGE):
        super().__init__(message)


class TenantCipher:
    """
    AES-256-GCM cipher keyed per tenant.

    The master secret is fixed at construction; keys are derived per call
    with a fresh salt.
    """

    def __init__(self, master: MasterSecret):
        if not master or not master.value:
            raise ValueError("master secret is required")
        self._master = master

    @staticmethod
    def _associated_data(tag: bytes, tenant_id: str) -> bytes:
        return tag + tenant_id.encode("utf-8")

    def encrypt(self, plaintext: str, tenant_id: str) -> str:
        """
        Encrypt plaintext for a tenant.

        Args:
            plaintext: Value to encrypt (e.g. an access token)
            tenant_id: Owning tenant

        Returns:
            Base64-encoded blob safe for database storage

        Raises:
            ValueError: If plaintext or tenant_id is empty
            EncryptionError: If encryption fails
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty value")
        if not tenant_id:
            raise ValueError("tenant_id is required")

        try:
            salt = secrets.token_bytes(SALT_SIZE)
            iv = secrets.token_bytes(IV_SIZE)
            tag = tenant_tag(self._master, tenant_id)
            key = derive_tenant_key(self._master, tenant_id, salt)

            ciphertext = AESGCM(key).encrypt(
                iv,
                plaintext.encode("utf-8"),
                self._associated_data(tag, tenant_id),
            )
        except Exception as e:
            logger.error(
                "Tenant encryption failed",
                extra={"tenant_id": tenant_id, "error_type": type(e).__name__},
            )
            raise EncryptionError("Failed to encrypt credential") from e

        return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str, tenant_id: str) -> str:
        """
        Decrypt a blob produced by encrypt() for the same tenant.

        Args:
            blob: Base64-encoded blob
            tenant_id: Tenant claimed by the caller

        Returns:
            Decrypted plaintext (NEVER log this)

        Raises:
            DecryptionError: On malformed input, tenant mismatch or
                authentication failure
        """
        if not blob or not tenant_id:
            self._reject(tenant_id, "empty_input")

        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError):
            self._reject(tenant_id, "invalid_encoding")

        if len(raw) < MIN_BLOB_SIZE:
            self._reject(tenant_id, "too_short")

        salt = raw[:SALT_SIZE]
        iv = raw[SALT_SIZE:SALT_SIZE + IV_SIZE]
        stored_tag = raw[SALT_SIZE + IV_SIZE:HEADER_SIZE]
        ciphertext = raw[HEADER_SIZE:]

        expected_tag = tenant_tag(self._master, tenant_id)
        if not hmac.compare_digest(stored_tag, expected_tag):
            self._reject(tenant_id, "tenant_mismatch")

        key = derive_tenant_key(self._master, tenant_id, salt)
        try:
            plaintext = AESGCM(key).decrypt(
                iv,
                ciphertext,
                self._associated_data(expected_tag, tenant_id),
            )
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            self._reject(tenant_id, "authentication_failed")

    async def encrypt_token(self, plaintext: str, tenant_id: str) -> str:
        """Encrypt in a worker thread so scrypt does not block the event loop."""
        return await asyncio.to_thread(self.encrypt, plaintext, tenant_id)

    async def decrypt_token(self, blob: str, tenant_id: str) -> str:
        """Decrypt in a worker thread so scrypt does not block the event loop."""
        return await asyncio.to_thread(self.decrypt, blob, tenant_id)

    @staticmethod
    def _reject(tenant_id: str, reason: str) -> None:
        # Reason stays server-side; callers only ever see the generic error.
        logger.debug(
            "Tenant decryption rejected",
            extra={"tenant_id": tenant_id, "reason": reason},
        )
        raise DecryptionError()
