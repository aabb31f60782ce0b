"""
Signed OAuth state for connector authorization flows.

State format (colon-joined):

    provider:tenant_id:nonce:timestamp_ms:signature

signature = unpadded base64url HMAC-SHA256(master, "provider:tenant_id:nonce:timestamp_ms")

SECURITY:
- tenant_id and provider are inside the signed payload; a state is only
  valid for the pair it was issued to
- Signatures are compared in constant time
- A valid state is not enough to complete a flow: the nonce must also be
  live in the NonceRegistry
"""

import base64
import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from connector_vault.platform.secrets import MasterSecret

logger = logging.getLogger(__name__)

STATE_MAX_AGE_SECONDS = 60 * 60
NONCE_BYTES = 32
STATE_FIELD_COUNT = 5


@dataclass(frozen=True)
class OAuthStateValidation:
    """Parsed state plus validity. Never raised, always returned."""
    provider: str
    tenant_id: str
    nonce: str
    timestamp: int
    valid: bool

    @classmethod
    def invalid(cls) -> "OAuthStateValidation":
        return cls(provider="", tenant_id="", nonce="", timestamp=0, valid=False)


def generate_nonce() -> str:
    """Return a URL-safe nonce carrying 32 bytes of entropy."""
    return secrets.token_urlsafe(NONCE_BYTES)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _signature(master: MasterSecret, payload: str) -> str:
    digest = hmac.new(master.value, payload.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class OAuthStateSigner:
    """Signs and validates OAuth state tokens with the master secret."""

    def __init__(
        self,
        master: MasterSecret,
        max_age_seconds: int = STATE_MAX_AGE_SECONDS,
    ):
        self._master = master
        self.max_age_seconds = max_age_seconds

    def sign_state(
        self,
        tenant_id: str,
        provider: str,
        nonce: str,
        now_ms: Optional[int] = None,
    ) -> str:
        """
        Build a signed state for (tenant, provider, nonce).

        Raises:
            ValueError: If a field is empty or contains ':'
        """
        for name, value in (("tenant_id", tenant_id), ("provider", provider), ("nonce", nonce)):
            if not value:
                raise ValueError(f"{name} is required")
            if ":" in value:
                raise ValueError(f"{name} must not contain ':'")

        timestamp = now_ms if now_ms is not None else _now_ms()
        payload = f"{provider}:{tenant_id}:{nonce}:{timestamp}"
        return f"{payload}:{_signature(self._master, payload)}"

    def validate_state(self, state: Optional[str], now_ms: Optional[int] = None) -> OAuthStateValidation:
        """
        Verify signature and age of a state token.

        Never raises: malformed, tampered or expired input gives valid=False.
        """
        if not state or not isinstance(state, str):
            return OAuthStateValidation.invalid()

        parts = state.split(":")
        if len(parts) != STATE_FIELD_COUNT:
            return OAuthStateValidation.invalid()

        provider, tenant_id, nonce, timestamp_str, signature = parts
        if not (timestamp_str.isascii() and timestamp_str.isdigit()):
            return OAuthStateValidation.invalid()
        timestamp = int(timestamp_str)

        expected = _signature(self._master, f"{provider}:{tenant_id}:{nonce}:{timestamp_str}")
        if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
            logger.debug(
                "OAuth state signature mismatch",
                extra={"provider": provider, "tenant_id": tenant_id},
            )
            return OAuthStateValidation(provider, tenant_id, nonce, timestamp, valid=False)

        age_ms = (now_ms if now_ms is not None else _now_ms()) - timestamp
        fresh = 0 <= age_ms < self.max_age_seconds * 1000

        return OAuthStateValidation(provider, tenant_id, nonce, timestamp, valid=fresh)
