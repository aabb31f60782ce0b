"""
Tenant-scoped encryption tests.

CRITICAL: These tests verify:
1. Each tenant gets a distinct derived key
2. Encryption round-trip works for the owning tenant
3. Another tenant can NEVER decrypt a blob, not even to garbage
4. Salt and IV are fresh for every encryption
5. Every decrypt failure raises the same generic DecryptionError
"""

import base64
import logging

import pytest

from connector_vault.credentials.encryption import (
    GENERIC_DECRYPT_MESSAGE,
    HEADER_SIZE,
    IV_SIZE,
    MIN_BLOB_SIZE,
    DecryptionError,
    TenantCipher,
)
from connector_vault.credentials.key_derivation import (
    KEY_SIZE,
    SALT_SIZE,
    TENANT_TAG_SIZE,
    derive_tenant_key,
    tenant_tag,
)
from connector_vault.platform.secrets import MasterSecret

FIXED_SALT = b"\x01" * SALT_SIZE


# ============================================================================
# TEST SUITE: KEY DERIVATION
# ============================================================================

class TestKeyDerivation:
    """Test per-tenant key derivation."""

    def test_distinct_tenants_get_distinct_keys(self, master_secret):
        """CRITICAL: Same salt, different tenants -> different keys."""
        key_a = derive_tenant_key(master_secret, "tenant-a", FIXED_SALT)
        key_b = derive_tenant_key(master_secret, "tenant-b", FIXED_SALT)

        assert key_a != key_b

    def test_derivation_is_deterministic(self, master_secret):
        assert derive_tenant_key(master_secret, "tenant-a", FIXED_SALT) == derive_tenant_key(
            master_secret, "tenant-a", FIXED_SALT
        )

    def test_key_is_256_bits(self, master_secret):
        assert len(derive_tenant_key(master_secret, "tenant-a", FIXED_SALT)) == KEY_SIZE

    def test_salt_changes_key(self, master_secret):
        other_salt = b"\x02" * SALT_SIZE
        assert derive_tenant_key(master_secret, "tenant-a", FIXED_SALT) != derive_tenant_key(
            master_secret, "tenant-a", other_salt
        )

    def test_master_secret_changes_key(self, master_secret, other_master_secret):
        assert derive_tenant_key(master_secret, "tenant-a", FIXED_SALT) != derive_tenant_key(
            other_master_secret, "tenant-a", FIXED_SALT
        )

    def test_empty_tenant_rejected(self, master_secret):
        with pytest.raises(ValueError, match="tenant_id"):
            derive_tenant_key(master_secret, "", FIXED_SALT)

    def test_wrong_salt_size_rejected(self, master_secret):
        with pytest.raises(ValueError, match="salt"):
            derive_tenant_key(master_secret, "tenant-a", b"short")

    def test_tenant_tag_is_eight_bytes_and_tenant_specific(self, master_secret):
        tag_a = tenant_tag(master_secret, "tenant-a")
        tag_b = tenant_tag(master_secret, "tenant-b")

        assert len(tag_a) == TENANT_TAG_SIZE
        assert tag_a != tag_b
        assert tag_a == tenant_tag(master_secret, "tenant-a")


# ============================================================================
# TEST SUITE: ENCRYPTION ROUND-TRIP
# ============================================================================

class TestEncryptionRoundTrip:
    """Test encryption and decryption for the owning tenant."""

    @pytest.mark.asyncio
    async def test_encrypt_decrypt_roundtrip(self, cipher, tenant_id):
        """CRITICAL: Encrypted tokens can be decrypted back to original."""
        plaintext = "test_access_token_not_real_xxxxx"

        blob = await cipher.encrypt_token(plaintext, tenant_id)
        decrypted = await cipher.decrypt_token(blob, tenant_id)

        assert decrypted == plaintext
        assert plaintext not in blob

    @pytest.mark.parametrize("plaintext", [
        "x",
        "unicode-é中文-token",
        "a" * 4096,
        "colons:and=equals&symbols",
    ])
    def test_roundtrip_various_plaintexts(self, cipher, tenant_id, plaintext):
        assert cipher.decrypt(cipher.encrypt(plaintext, tenant_id), tenant_id) == plaintext

    def test_blob_layout(self, cipher, tenant_id, master_secret):
        plaintext = "layout-check"
        raw = base64.b64decode(cipher.encrypt(plaintext, tenant_id))

        assert len(raw) == HEADER_SIZE + len(plaintext.encode()) + 16
        stored_tag = raw[SALT_SIZE + IV_SIZE:HEADER_SIZE]
        assert stored_tag == tenant_tag(master_secret, tenant_id)

    def test_same_plaintext_encrypts_differently(self, cipher, tenant_id):
        """CRITICAL: Fresh salt and IV on every call."""
        blob_1 = cipher.encrypt("same-token", tenant_id)
        blob_2 = cipher.encrypt("same-token", tenant_id)

        assert blob_1 != blob_2
        raw_1 = base64.b64decode(blob_1)
        raw_2 = base64.b64decode(blob_2)
        assert raw_1[:SALT_SIZE] != raw_2[:SALT_SIZE]
        assert raw_1[SALT_SIZE:SALT_SIZE + IV_SIZE] != raw_2[SALT_SIZE:SALT_SIZE + IV_SIZE]

    def test_empty_plaintext_rejected(self, cipher, tenant_id):
        with pytest.raises(ValueError):
            cipher.encrypt("", tenant_id)

    def test_empty_tenant_rejected(self, cipher):
        with pytest.raises(ValueError):
            cipher.encrypt("token", "")

    def test_missing_master_secret_rejected(self):
        with pytest.raises(ValueError):
            TenantCipher(MasterSecret(value=b""))


# ============================================================================
# TEST SUITE: DECRYPTION FAILURES
# ============================================================================

class TestDecryptionFailures:
    """Every failure is the same generic DecryptionError."""

    @pytest.mark.asyncio
    async def test_cross_tenant_decrypt_fails(self, cipher, tenant_id, other_tenant_id):
        """CRITICAL: Tenant B can never decrypt tenant A's blob."""
        blob = await cipher.encrypt_token("tenant-a-secret-token", tenant_id)

        with pytest.raises(DecryptionError):
            await cipher.decrypt_token(blob, other_tenant_id)

    def test_cross_tenant_fails_before_key_derivation(self, cipher, tenant_id, other_tenant_id, monkeypatch):
        blob = cipher.encrypt("token", tenant_id)

        def fail_if_called(*args, **kwargs):
            raise AssertionError("key derivation must not run on tenant mismatch")

        monkeypatch.setattr("connector_vault.credentials.encryption.derive_tenant_key", fail_if_called)
        with pytest.raises(DecryptionError):
            cipher.decrypt(blob, other_tenant_id)

    def test_different_master_secret_fails(self, cipher, other_master_secret, tenant_id):
        blob = cipher.encrypt("token", tenant_id)

        with pytest.raises(DecryptionError):
            TenantCipher(other_master_secret).decrypt(blob, tenant_id)

    def test_tampered_ciphertext_fails(self, cipher, tenant_id):
        raw = bytearray(base64.b64decode(cipher.encrypt("token-to-tamper", tenant_id)))
        raw[-1] ^= 0x01
        tampered = base64.b64encode(bytes(raw)).decode()

        with pytest.raises(DecryptionError):
            cipher.decrypt(tampered, tenant_id)

    def test_tampered_iv_fails(self, cipher, tenant_id):
        raw = bytearray(base64.b64decode(cipher.encrypt("token-to-tamper", tenant_id)))
        raw[SALT_SIZE] ^= 0x01
        tampered = base64.b64encode(bytes(raw)).decode()

        with pytest.raises(DecryptionError):
            cipher.decrypt(tampered, tenant_id)

    def test_too_short_blob_fails(self, cipher, tenant_id):
        short = base64.b64encode(b"\x00" * (MIN_BLOB_SIZE - 1)).decode()

        with pytest.raises(DecryptionError):
            cipher.decrypt(short, tenant_id)

    @pytest.mark.parametrize("blob", ["", "not base64 at all!!", "@@@@"])
    def test_malformed_blob_fails(self, cipher, tenant_id, blob):
        with pytest.raises(DecryptionError):
            cipher.decrypt(blob, tenant_id)

    def test_errors_are_indistinguishable(self, cipher, tenant_id, other_tenant_id):
        """Mismatch, tamper and malformed input give the same message."""
        blob = cipher.encrypt("token", tenant_id)
        raw = bytearray(base64.b64decode(blob))
        raw[-1] ^= 0x01

        messages = set()
        for bad_blob, bad_tenant in [
            (blob, other_tenant_id),
            (base64.b64encode(bytes(raw)).decode(), tenant_id),
            ("garbage", tenant_id),
        ]:
            with pytest.raises(DecryptionError) as exc_info:
                cipher.decrypt(bad_blob, bad_tenant)
            messages.add(str(exc_info.value))

        assert messages == {GENERIC_DECRYPT_MESSAGE}

    def test_failure_reason_only_logged_at_debug(self, cipher, tenant_id, other_tenant_id, caplog):
        blob = cipher.encrypt("token", tenant_id)

        with caplog.at_level(logging.DEBUG, logger="connector_vault.credentials.encryption"):
            with pytest.raises(DecryptionError):
                cipher.decrypt(blob, other_tenant_id)

        records = [r for r in caplog.records if r.name == "connector_vault.credentials.encryption"]
        assert records
        assert all(r.levelno == logging.DEBUG for r in records)
        assert records[-1].reason == "tenant_mismatch"
