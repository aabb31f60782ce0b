"""
Tenant key derivation.

Every tenant gets its own AES-256 key, derived on demand from the master
secret. Derived keys are never stored.

Two stages:
1. key_material = HMAC-SHA256(master, "tenant:" + tenant_id)
2. key = scrypt(key_material, salt, n=2**14, r=8, p=1, length=32)

SECURITY:
- scrypt is deliberately slow; call it off the event loop (see
  TenantCipher.encrypt_token)
- Neither key material nor derived keys are ever logged
"""

import hashlib
import hmac

from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from connector_vault.platform.secrets import MasterSecret

SALT_SIZE = 16       # bytes, fresh per encryption
KEY_SIZE = 32        # 256 bits for AES-256
TENANT_TAG_SIZE = 8  # bytes of the tenant HMAC stored in each blob

SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1

def tenant_key_material(master: MasterSecret, tenant_id: str) -> bytes:
    """Return HMAC-SHA256(master, "tenant:" + tenant_id)."""
    return hmac.new(
        master.value,
        f"tenant:{tenant_id}".encode("utf-8"),
        hashlib.sha256,
    ).digest()

def tenant_tag(master: MasterSecret, tenant_id: str) -> bytes:
    """
    Return the 8-byte tenant identity tag.

    Independent of any salt, so it can be checked before deriving a key.
    """
    return tenant_key_material(master, tenant_id)[:TENANT_TAG_SIZE]

def derive_tenant_key(master: MasterSecret, tenant_id: str, salt: bytes) -> bytes:
    """
    Derive the 32-byte encryption key for a tenant.

    Deterministic for a given (master, tenant_id, salt).

    Args:
        master: Process master secret
        tenant_id: Tenant identifier
        salt: 16-byte random salt

    Returns:
        32-byte key

    Raises:
        ValueError: If tenant_id is empty or salt has the wrong size
    """
    if not tenant_id:
        raise ValueError("tenant_id is required")
    if len(salt) != SALT_SIZE:
        raise ValueError(f"salt must be {SALT_SIZE} bytes, got {len(salt)}")

    kdf = Scrypt(salt=salt, length=KEY_SIZE, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(tenant_key_material(master, tenant_id))
