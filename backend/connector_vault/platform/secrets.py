"""
Platform secrets: master secret loading and secret redaction helpers.

The master secret is the single process-wide root for every tenant key,
tenant tag and OAuth state signature. It is read once at startup and is
immutable afterwards.

SECURITY REQUIREMENTS:
- The master secret is NEVER logged, persisted, or returned to callers
- Production deployments MUST set TENANT_SECRETS_MASTER_KEY
- Non-production deployments may fall back to a development default, which
  is logged loudly on every load so it can never be mistaken for production
- Secret-looking keys and values are redacted before anything is logged

Usage:
    from connector_vault.platform.secrets import load_master_secret

    master = load_master_secret()  # raises ConfigurationError in production
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

MASTER_SECRET_ENV_VARS = ("TENANT_SECRETS_MASTER_KEY", "API_KEY_MASTER_KEY")

# Development-only fallback. NEVER valid in production.
DEV_MASTER_SECRET = "dev-tenant-secrets-master-key-change-in-production"

PRODUCTION_ENVIRONMENTS = frozenset({"production", "prod"})

REDACTED_VALUE = "[REDACTED]"

# Key names that indicate a secret value
SECRET_PATTERNS = [
    re.compile(r"(password|passwd|pwd)", re.IGNORECASE),
    re.compile(r"(secret|private[_-]?key)", re.IGNORECASE),
    re.compile(r"(access[_-]?token|refresh[_-]?token|id[_-]?token)", re.IGNORECASE),
    re.compile(r"(api[_-]?key|apikey)", re.IGNORECASE),
    re.compile(r"(authorization|bearer)", re.IGNORECASE),
    re.compile(r"(client[_-]?secret|master[_-]?key)", re.IGNORECASE),
]

# Value shapes that look like secrets regardless of key name
SECRET_VALUE_PATTERNS = [
    re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(r"(ya29\.[A-Za-z0-9_\-]+)"),  # Google OAuth access tokens
    re.compile(r"(1//[A-Za-z0-9_\-]{20,})"),  # Google refresh tokens
    re.compile(r"(00D[A-Za-z0-9]{12,}![A-Za-z0-9_.]+)"),  # Salesforce session ids
]


class ConfigurationError(Exception):
    """Fatal misconfiguration detected at startup."""

    def __init__(self, message: str, setting: Optional[str] = None):
        self.setting = setting
        super().__init__(message)


@dataclass(frozen=True)
class MasterSecret:
    """
    Process-wide master secret.

    SECURITY: repr never includes the value.
    """
    value: bytes
    is_insecure_default: bool = False

    def __repr__(self) -> str:
        return f"<MasterSecret(insecure_default={self.is_insecure_default})>"


def is_production(environment: Optional[str] = None) -> bool:
    """Return True if the given (or configured) environment is production."""
    env = environment if environment is not None else os.getenv("ENVIRONMENT", "development")
    return env.strip().lower() in PRODUCTION_ENVIRONMENTS


def load_master_secret(environment: Optional[str] = None) -> MasterSecret:
    """
    Load the master secret from the environment.

    Call this once during application startup and pass the result to the
    components that need it.

    Args:
        environment: Deployment environment name (default: ENVIRONMENT env var)

    Returns:
        MasterSecret

    Raises:
        ConfigurationError: If no master secret is set in production
    """
    for env_var in MASTER_SECRET_ENV_VARS:
        value = os.getenv(env_var)
        if value:
            logger.info(
                "Master secret loaded",
                extra={"source": env_var, "insecure_dev_secret": False},
            )
            return MasterSecret(value=value.encode("utf-8"))

    if is_production(environment):
        logger.critical(
            "Master secret missing in production",
            extra={"expected_env_vars": list(MASTER_SECRET_ENV_VARS)},
        )
        raise ConfigurationError(
            "TENANT_SECRETS_MASTER_KEY environment variable is required in production.",
            setting="TENANT_SECRETS_MASTER_KEY",
        )

    logger.warning(
        "!!! INSECURE DEVELOPMENT MASTER SECRET IN USE !!! "
        "Set TENANT_SECRETS_MASTER_KEY before deploying.",
        extra={"insecure_dev_secret": True},
    )
    return MasterSecret(value=DEV_MASTER_SECRET.encode("utf-8"), is_insecure_default=True)


def mask_secret(value: Optional[str], visible_suffix: int = 8) -> str:
    """
    Mask a secret for logging, keeping a fixed-length suffix.

    Values no longer than the suffix are fully masked.
    """
    if not value:
        return ""
    if len(value) <= visible_suffix:
        return "*" * len(value)
    return "*" * (len(value) - visible_suffix) + value[-visible_suffix:]


def is_secret_key(key: str) -> bool:
    """Check whether a key name indicates a secret value."""
    return any(pattern.search(key) for pattern in SECRET_PATTERNS)
