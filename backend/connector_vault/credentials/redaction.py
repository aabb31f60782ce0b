"""
Credential redaction and audit logging utilities.

SECURITY REQUIREMENTS:
- Tokens NEVER appear in logs (access_token, refresh_token, code, state signature)
- Nonces appear only truncated to 8 characters
- ALLOWED in logs: tenant_id, provider, credential_id
- All credential lifecycle operations emit an audit event

Audit Events:
- oauth.initiated
- oauth.replay_rejected
- credential.stored
- credential.refreshed
- credential.revoked
- credential.error

Usage:
    from connector_vault.credentials.redaction import CredentialAuditLogger, AuditEventType

    audit = CredentialAuditLogger(tenant_id)
    audit.log(
        event_type=AuditEventType.CREDENTIAL_STORED,
        credential_id=cred.id,
        provider="google_calendar",
    )
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from connector_vault.platform.secrets import (
    REDACTED_VALUE,
    SECRET_VALUE_PATTERNS,
    is_secret_key,
    mask_secret,
)

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = "connector_vault.audit"

TOKEN_SUFFIX_LENGTH = 8
NONCE_PREFIX_LENGTH = 8


class AuditEventType(str, Enum):
    """Connector credential audit event types."""
    OAUTH_INITIATED = "oauth.initiated"
    OAUTH_REPLAY_REJECTED = "oauth.replay_rejected"
    CREDENTIAL_STORED = "credential.stored"
    CREDENTIAL_REFRESHED = "credential.refreshed"
    CREDENTIAL_REVOKED = "credential.revoked"
    CREDENTIAL_ERROR = "credential.error"


# Additional patterns specific to connector credentials
CREDENTIAL_SECRET_PATTERNS = [
    re.compile(r"(pat-[a-z]{2,3}\d?-[a-f0-9\-]{20,})"),  # HubSpot private app tokens
    re.compile(r"(v1:[A-Za-z0-9_\-]{20,})"),  # Pipedrive OAuth tokens
]

# Keys that look secret-ish but are safe metadata
ALLOWED_KEYS = frozenset({
    "tenant_id", "provider", "credential_id", "connector_type", "token_type",
    "insecure_dev_secret", "has_refresh_token", "access_token_masked",
})


def mask_token(token: Optional[str]) -> str:
    """Mask a token, keeping only a fixed 8-character suffix."""
    return mask_secret(token, visible_suffix=TOKEN_SUFFIX_LENGTH)


def truncate_nonce(nonce: Optional[str]) -> str:
    """Truncate a nonce for logging."""
    if not nonce:
        return ""
    return f"{nonce[:NONCE_PREFIX_LENGTH]}..."


def is_credential_secret_key(key: str) -> bool:
    """
    Check if a key name indicates a credential secret.

    Extends platform-level secret detection with OAuth-specific names.
    """
    if key in ALLOWED_KEYS:
        return False
    if is_secret_key(key):
        return True

    key_lower = key.lower()
    credential_patterns = ["token", "secret", "credential", "bearer", "signature", "authorization_code"]
    return any(pattern in key_lower for pattern in credential_patterns)


def redact_credential_value(value: Any) -> Any:
    """Redact secret patterns from a single value."""
    if not isinstance(value, str):
        return value

    result = value
    for pattern in CREDENTIAL_SECRET_PATTERNS:
        result = pattern.sub(REDACTED_VALUE, result)
    for pattern in SECRET_VALUE_PATTERNS:
        result = pattern.sub(REDACTED_VALUE, result)
    return result


def redact_credential_data(data: Any, _depth: int = 0) -> Any:
    """
    Recursively redact credential secrets from a data structure.

    Usage:
        safe_data = redact_credential_data({"access_token": "ya29.xxx", "provider": "hubspot"})
    """
    if _depth > 10:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if is_credential_secret_key(str(key)):
                result[key] = REDACTED_VALUE
            else:
                result[key] = redact_credential_data(value, _depth + 1)
        return result

    if isinstance(data, list):
        return [redact_credential_data(item, _depth + 1) for item in data]

    return redact_credential_value(data)


class CredentialAuditLogger:
    """
    Structured audit sink for credential operations.

    Events are emitted on the "connector_vault.audit" logger; deployments
    route that logger to their audit store.
    """

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def log(
        self,
        event_type: AuditEventType,
        provider: str,
        credential_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        level: int = logging.INFO,
    ) -> Dict[str, Any]:
        """
        Emit an audit event.

        SECURITY: metadata is redacted; never pass tokens in it.

        Returns:
            The audit record that was emitted
        """
        safe_metadata = redact_credential_data(metadata) if metadata else {}

        audit_record = {
            "event_type": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tenant_id": self.tenant_id,
            "provider": provider,
            "credential_id": credential_id,
            "audit_metadata": safe_metadata,
        }

        self.logger.log(level, f"Credential audit: {event_type.value}", extra=audit_record)
        return audit_record

    def log_error(
        self,
        provider: str,
        error: str,
        credential_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Emit a credential.error event with a redacted error message."""
        return self.log(
            event_type=AuditEventType.CREDENTIAL_ERROR,
            provider=provider,
            credential_id=credential_id,
            metadata={"error": redact_credential_value(error)},
            level=logging.WARNING,
        )


class CredentialLoggingFilter(logging.Filter):
    """
    Logging filter that redacts credential secrets from log records.

    Usage:
        handler.addFilter(CredentialLoggingFilter())
    """

    # LogRecord attributes that must never be rewritten
    _RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys())

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_credential_value(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_credential_data(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(redact_credential_value(arg) for arg in record.args)

        for key in list(record.__dict__.keys()):
            if key in self._RESERVED:
                continue
            value = getattr(record, key)
            if is_credential_secret_key(key):
                setattr(record, key, REDACTED_VALUE)
            elif isinstance(value, (str, dict, list)):
                setattr(record, key, redact_credential_data(value))

        return True


def setup_credential_logging() -> None:
    """
    Install the redaction filter on the root handlers and connector loggers.

    Logger filters do not apply to child loggers, so the root handlers get
    the filter too. Safe to call more than once.

    Call once during application startup.
    """
    targets = list(logging.getLogger().handlers)
    targets += [
        logging.getLogger(name)
        for name in ("connector_vault", AUDIT_LOGGER_NAME)
    ]
    for target in targets:
        if not any(isinstance(f, CredentialLoggingFilter) for f in target.filters):
            target.addFilter(CredentialLoggingFilter())

    logger.info("Credential logging configured with redaction filter")
