"""
Connector OAuth service: credential lifecycle for calendar/CRM connectors.

Lifecycle per (tenant, provider):

    NONE -> AUTH_INITIATED -> (callback) -> AUTHORIZED -> (time passes)
         -> NEAR_EXPIRY -> REFRESHING -> AUTHORIZED | REVOKED

Flow:
1. initiate(): signed state + registered nonce -> provider authorization URL
2. complete_callback(): validate state, consume nonce, exchange code,
   encrypt and store tokens (previous active row deactivated)
3. ensure_valid_tokens(): refresh transparently within 5 minutes of expiry;
   a rejected refresh deactivates the credential (re-authorization needed)
4. disconnect(): deactivate all active rows (idempotent)

SECURITY:
- Callback failures surface only as a fixed reason code; details stay in
  server logs
- Authorization codes are single-use; a failed or timed-out exchange is
  never retried
- Tokens are never logged; nonces are logged truncated
"""

import asyncio
import enum
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from connector_vault.config.oauth_providers import (
    ConnectorProvider,
    OAuthSettings,
    ProviderConfig,
    UnsupportedProviderError,
)
from connector_vault.connectors.adapters import (
    ConnectionTestResult,
    ConnectorError,
    create_adapter,
)
from connector_vault.credentials.encryption import DecryptionError, EncryptionError, TenantCipher
from connector_vault.credentials.nonce_registry import NonceRegistry
from connector_vault.credentials.oauth_state import OAuthStateSigner, generate_nonce
from connector_vault.credentials.redaction import (
    AuditEventType,
    CredentialAuditLogger,
    redact_credential_value,
    truncate_nonce,
)
from connector_vault.credentials.store import (
    CredentialStore,
    CredentialStoreError,
    DecryptedCredential,
    OAuthTokens,
)
from connector_vault.models.connector_credential import ConnectorCredential, DeactivationReason

logger = logging.getLogger(__name__)

# Refresh tokens that expire within this window
REFRESH_WINDOW = timedelta(minutes=5)
DEFAULT_SCHEDULED_REFRESH_MINUTES = 30

# Longest provider error body kept in server logs
MAX_LOGGED_ERROR_BODY = 500


# =============================================================================
# Errors
# =============================================================================


class OAuthCallbackError(Exception):
    """
    OAuth callback failed.

    reason_code is the only thing that reaches the browser.
    """

    reason_code = "oauth_callback_failed"

    def __init__(self, message: str, reason_code: Optional[str] = None):
        if reason_code is not None:
            self.reason_code = reason_code
        super().__init__(message)


class ProviderAuthorizationError(OAuthCallbackError):
    """Provider redirected back with an error parameter."""

    def __init__(self, provider_error: str):
        super().__init__(f"Provider returned error: {provider_error}", reason_code=provider_error)


class MissingAuthorizationCodeError(OAuthCallbackError):
    reason_code = "missing_authorization_code"


class OAuthStateError(OAuthCallbackError):
    """Signature mismatch, expired or malformed state."""
    reason_code = "invalid_or_expired_state"


class ProviderMismatchError(OAuthCallbackError):
    reason_code = "provider_mismatch"


class OAuthReplayError(OAuthCallbackError):
    """Nonce missing, already consumed, or bound to another tenant/provider."""
    reason_code = "nonce_validation_failed"


class ProviderExchangeError(OAuthCallbackError):
    """Token endpoint returned an error, timed out or was unreachable."""
    reason_code = "oauth_callback_failed"


class RefreshFailure(Exception):
    """Refresh grant rejected or failed. Never surfaced synchronously to users."""
    pass


class ProviderNotConfiguredError(ValueError):
    """Provider has no client credentials in this deployment."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"OAuth provider is not configured: {provider}")


# =============================================================================
# Data classes
# =============================================================================


class ConnectionState(str, enum.Enum):
    """Lifecycle state of a (tenant, provider) connection."""
    NONE = "none"
    AUTH_INITIATED = "auth_initiated"
    AUTHORIZED = "authorized"
    NEAR_EXPIRY = "near_expiry"
    REFRESHING = "refreshing"
    REVOKED = "revoked"


class RefreshResultStatus(str, enum.Enum):
    """Result status for refresh operations."""
    SUCCESS = "success"
    NOT_NEEDED = "not_needed"
    NOT_POSSIBLE = "not_possible"
    FAILED = "failed"


@dataclass
class RefreshResult:
    """
    Result of a token refresh operation.

    SECURITY: Does NOT include token values.
    """
    status: RefreshResultStatus
    credential_id: str
    provider: str
    new_expires_at: Optional[datetime] = None
    error_message: Optional[str] = None


@dataclass
class AuthorizationRequest:
    """Where to send the browser to start an OAuth flow."""
    auth_url: str
    provider: str
    nonce: str


@dataclass
class ConnectorStatus:
    """Per-provider status for the connectors page."""
    provider: str
    name: str
    type: str
    connected: bool
    last_tested: Optional[datetime] = None
    error: Optional[str] = None


class RefreshLocks:
    """
    Process-wide asyncio locks keyed by (tenant_id, provider).

    Concurrent ensure_valid_tokens() calls for one pair share a single
    refresh instead of each spending the refresh token.

    Entries are weak: a lock is dropped once no caller holds or waits on it.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, tenant_id: str, provider: ConnectorProvider) -> asyncio.Lock:
        key = (tenant_id, provider.value)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Service
# =============================================================================


class ConnectorOAuthService:
    """
    Orchestrates connector authorization, token storage and refresh.

    Shared, process-wide collaborators (cipher, signer, nonce registry, HTTP
    client, refresh locks) are injected; the database session is per request.
    """

    def __init__(
        self,
        db_session: Session,
        settings: OAuthSettings,
        cipher: TenantCipher,
        signer: OAuthStateSigner,
        nonce_registry: NonceRegistry,
        http_client: httpx.AsyncClient,
        refresh_locks: Optional[RefreshLocks] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db_session
        self.settings = settings
        self.cipher = cipher
        self.signer = signer
        self.nonces = nonce_registry
        self.http = http_client
        self.refresh_locks = refresh_locks or RefreshLocks()
        self._now = clock

    def _store(self, tenant_id: str) -> CredentialStore:
        return CredentialStore(self.db, tenant_id, self.cipher)

    # ------------------------------------------------------------------
    # Provider listing
    # ------------------------------------------------------------------

    def get_available_providers(self) -> List[Dict[str, Any]]:
        """List supported providers and whether this deployment configured them."""
        return [
            {
                "provider": config.provider.value,
                "name": config.name,
                "type": config.type.value,
                "configured": config.is_configured,
            }
            for config in self.settings.providers.values()
        ]

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def initiate(self, tenant_id: str, provider: Union[str, ConnectorProvider]) -> AuthorizationRequest:
        """
        Start an OAuth flow.

        Args:
            tenant_id: Tenant from the authenticated session
            provider: Provider to connect

        Returns:
            AuthorizationRequest with the provider URL and the nonce

        Raises:
            UnsupportedProviderError: Unknown provider
            ProviderNotConfiguredError: Missing client credentials
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        config = self.settings.get(provider)
        if not config.is_configured:
            raise ProviderNotConfiguredError(config.provider.value)

        nonce = generate_nonce()
        state = self.signer.sign_state(tenant_id, config.provider.value, nonce)
        self.nonces.register(nonce, tenant_id, config.provider.value)

        params = {
            "client_id": config.client_id,
            "response_type": "code",
            "redirect_uri": config.redirect_uri,
            "scope": " ".join(config.scopes),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        auth_url = f"{config.auth_url}?{urlencode(params)}"

        CredentialAuditLogger(tenant_id).log(
            event_type=AuditEventType.OAUTH_INITIATED,
            provider=config.provider.value,
            metadata={"nonce_prefix": truncate_nonce(nonce), "state": ConnectionState.AUTH_INITIATED.value},
        )
        logger.info(
            "OAuth flow initiated",
            extra={
                "tenant_id": tenant_id,
                "provider": config.provider.value,
                "nonce_prefix": truncate_nonce(nonce),
            },
        )

        return AuthorizationRequest(auth_url=auth_url, provider=config.provider.value, nonce=nonce)

    async def complete_callback(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
    ) -> ConnectorCredential:
        """
        Complete an OAuth flow from the provider redirect.

        Args:
            provider: Provider from the callback path
            code: Authorization code
            state: Signed state issued by initiate()
            error: Provider error parameter, if any

        Returns:
            The new active ConnectorCredential

        Raises:
            OAuthCallbackError: One subclass per failure reason; the
                reason_code attribute is safe to show to the user
        """
        if error:
            logger.warning("OAuth provider returned error", extra={"provider": provider, "provider_error": error})
            raise ProviderAuthorizationError(error)

        if not code:
            logger.warning("OAuth callback missing authorization code", extra={"provider": provider})
            raise MissingAuthorizationCodeError("Missing authorization code")

        validation = self.signer.validate_state(state)
        if not validation.valid:
            logger.warning(
                "OAuth state invalid or expired",
                extra={"provider": provider, "state_provider": validation.provider},
            )
            raise OAuthStateError("Invalid or expired state")

        if validation.provider != provider:
            logger.warning(
                "OAuth provider mismatch",
                extra={
                    "provider": provider,
                    "state_provider": validation.provider,
                    "tenant_id": validation.tenant_id,
                },
            )
            raise ProviderMismatchError("Provider does not match state")

        try:
            connector = ConnectorProvider.parse(provider)
        except UnsupportedProviderError:
            raise OAuthStateError("State issued for unsupported provider") from None

        tenant_id = validation.tenant_id
        entry = self.nonces.consume(validation.nonce)
        if entry is None or entry.tenant_id != tenant_id or entry.provider != provider:
            logger.warning(
                "OAuth nonce validation failed - possible replay",
                extra={
                    "provider": provider,
                    "tenant_id": tenant_id,
                    "nonce_prefix": truncate_nonce(validation.nonce),
                    "nonce_found": entry is not None,
                },
            )
            CredentialAuditLogger(tenant_id).log(
                event_type=AuditEventType.OAUTH_REPLAY_REJECTED,
                provider=provider,
                metadata={"nonce_prefix": truncate_nonce(validation.nonce)},
                level=logging.WARNING,
            )
            raise OAuthReplayError("Nonce validation failed")

        tokens = await self.exchange_code_for_tokens(connector, code)

        try:
            credential = await self._store(tenant_id).replace_active(connector, tokens)
        except (CredentialStoreError, EncryptionError) as e:
            logger.error(
                "Failed to persist connector tokens",
                extra={"provider": provider, "tenant_id": tenant_id, "error_type": type(e).__name__},
            )
            raise OAuthCallbackError("Failed to store tokens") from e

        logger.info(
            "Connector authorized",
            extra={
                "provider": provider,
                "tenant_id": tenant_id,
                "credential_id": credential.id,
                "state": ConnectionState.AUTHORIZED.value,
            },
        )
        return credential

    # ------------------------------------------------------------------
    # Provider token endpoint
    # ------------------------------------------------------------------

    async def _post_token_endpoint(self, config: ProviderConfig, data: Dict[str, str]) -> Dict[str, Any]:
        response = await self.http.post(
            config.token_url,
            data=data,
            headers={"Accept": "application/json"},
            timeout=self.settings.http_timeout_seconds,
        )
        if response.is_error:
            logger.error(
                "Provider token endpoint returned error",
                extra={
                    "provider": config.provider.value,
                    "status_code": response.status_code,
                    "grant_type": data.get("grant_type"),
                    "provider_error": redact_credential_value(response.text[:MAX_LOGGED_ERROR_BODY]),
                },
            )
            raise httpx.HTTPStatusError(
                f"Token endpoint returned {response.status_code}",
                request=response.request,
                response=response,
            )

        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("Token response is not a JSON object")
        return payload

    def _tokens_from_response(self, payload: Dict[str, Any], fallback_refresh: Optional[str] = None) -> OAuthTokens:
        access_token = payload.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise ValueError("Token response missing access_token")
        refresh_token = payload.get("refresh_token")
        if refresh_token is not None and not isinstance(refresh_token, str):
            raise ValueError("Token response has a malformed refresh_token")

        expires_at = None
        expires_in = payload.get("expires_in")
        if expires_in:
            expires_at = self._now() + timedelta(seconds=int(expires_in))

        return OAuthTokens(
            access_token=access_token,
            refresh_token=refresh_token or fallback_refresh,
            expires_at=expires_at,
            scope=payload.get("scope"),
            token_type=payload.get("token_type") or "Bearer",
        )

    async def exchange_code_for_tokens(self, provider: ConnectorProvider, code: str) -> OAuthTokens:
        """
        Exchange an authorization code (grant_type=authorization_code).

        Not retried: authorization codes are single-use.

        Raises:
            ProviderExchangeError: Non-2xx, timeout, transport or payload error
        """
        config = self.settings.get(provider)
        try:
            payload = await self._post_token_endpoint(
                config,
                {
                    "client_id": config.client_id,
                    "client_secret": config.client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": config.redirect_uri,
                },
            )
            return self._tokens_from_response(payload)
        except httpx.TimeoutException as e:
            logger.error("OAuth token exchange timed out", extra={"provider": provider.value})
            raise ProviderExchangeError("Token exchange timed out") from e
        except (httpx.HTTPError, ValueError, TypeError, OverflowError) as e:
            logger.error(
                "OAuth token exchange failed",
                extra={"provider": provider.value, "error_type": type(e).__name__},
            )
            raise ProviderExchangeError("Token exchange failed") from e

    async def refresh_tokens(self, provider: ConnectorProvider, refresh_token: str) -> OAuthTokens:
        """
        Run the refresh grant. Keeps the old refresh token if none is returned.

        Raises:
            RefreshFailure: Grant rejected, timed out or malformed
        """
        config = self.settings.get(provider)
        try:
            payload = await self._post_token_endpoint(
                config,
                {
                    "client_id": config.client_id,
                    "client_secret": config.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
            return self._tokens_from_response(payload, fallback_refresh=refresh_token)
        except (httpx.HTTPError, ValueError, TypeError, OverflowError) as e:
            raise RefreshFailure(f"Token refresh failed for {provider.value}: {type(e).__name__}") from e

    # ------------------------------------------------------------------
    # Token use
    # ------------------------------------------------------------------

    def _needs_refresh(self, expires_at: Optional[datetime]) -> bool:
        if expires_at is None:
            return False
        return expires_at <= self._now() + REFRESH_WINDOW

    async def _refresh_credential(
        self,
        store: CredentialStore,
        credential: ConnectorCredential,
        decrypted: DecryptedCredential,
    ) -> Optional[DecryptedCredential]:
        """REFRESHING -> AUTHORIZED on success, REVOKED (deactivated) on failure."""
        provider = decrypted.provider
        logger.info(
            "Refreshing connector tokens",
            extra={
                "tenant_id": store.tenant_id,
                "provider": provider.value,
                "credential_id": credential.id,
                "state": ConnectionState.REFRESHING.value,
            },
        )

        try:
            tokens = await self.refresh_tokens(provider, decrypted.tokens.refresh_token)
        except RefreshFailure as e:
            logger.error(
                "Connector token refresh failed; credential deactivated",
                extra={
                    "tenant_id": store.tenant_id,
                    "provider": provider.value,
                    "credential_id": credential.id,
                    "state": ConnectionState.REVOKED.value,
                },
            )
            store.audit.log_error(provider=provider.value, error=str(e), credential_id=credential.id)
            store.deactivate(credential, DeactivationReason.REFRESH_FAILED)
            return None

        new_credential = await store.replace_active(provider, tokens, reason=DeactivationReason.REFRESHED)
        store.audit.log(
            event_type=AuditEventType.CREDENTIAL_REFRESHED,
            provider=provider.value,
            credential_id=new_credential.id,
            metadata={
                "previous_credential_id": credential.id,
                "new_expires_at": tokens.expires_at.isoformat() if tokens.expires_at else None,
            },
        )
        return DecryptedCredential(
            credential_id=new_credential.id,
            tenant_id=store.tenant_id,
            provider=provider,
            tokens=tokens,
            created_at=new_credential.created_at,
        )

    async def ensure_valid_tokens(
        self,
        tenant_id: str,
        provider: Union[str, ConnectorProvider],
    ) -> Optional[DecryptedCredential]:
        """
        Return usable tokens, refreshing them if they expire within 5 minutes.

        Returns None when the connector must be re-authorized: no active
        credential, undecryptable credential, refresh rejected (credential is
        deactivated), or expired with no refresh token.
        """
        connector = ConnectorProvider.parse(provider)
        store = self._store(tenant_id)

        async with self.refresh_locks.get(tenant_id, connector):
            # Read inside the lock: a concurrent caller may have just refreshed.
            credential = store.get_active(connector)
            if credential is None:
                return None

            try:
                decrypted = await store.decrypt(credential)
            except DecryptionError:
                logger.error(
                    "Stored connector credential could not be decrypted",
                    extra={"tenant_id": tenant_id, "provider": connector.value, "credential_id": credential.id},
                )
                return None

            if not self._needs_refresh(decrypted.expires_at):
                return decrypted

            if not decrypted.tokens.refresh_token:
                if decrypted.expires_at <= self._now():
                    logger.info(
                        "Connector token expired with no refresh token",
                        extra={"tenant_id": tenant_id, "provider": connector.value, "credential_id": credential.id},
                    )
                    return None
                return decrypted

            return await self._refresh_credential(store, credential, decrypted)

    async def refresh_expiring_credentials(
        self,
        tenant_id: str,
        within_minutes: int = DEFAULT_SCHEDULED_REFRESH_MINUTES,
    ) -> List[RefreshResult]:
        """
        Refresh every active credential of a tenant expiring within the window.

        SCHEDULED REFRESH: called by the token refresh worker so tokens rarely
        need an on-demand refresh mid-request.
        """
        store = self._store(tenant_id)
        threshold = self._now() + timedelta(minutes=within_minutes)
        results: List[RefreshResult] = []

        for credential in store.list_active():
            expires_at = credential.expires_at
            if expires_at is None or expires_at > threshold:
                continue
            if not credential.has_refresh_token:
                results.append(RefreshResult(
                    status=RefreshResultStatus.NOT_POSSIBLE,
                    credential_id=credential.id,
                    provider=credential.connector_type,
                    error_message="No refresh token",
                ))
                continue

            try:
                connector = ConnectorProvider.parse(credential.connector_type)
                async with self.refresh_locks.get(tenant_id, connector):
                    current = store.get_active(connector)
                    if current is None or current.id != credential.id:
                        results.append(RefreshResult(
                            status=RefreshResultStatus.NOT_NEEDED,
                            credential_id=credential.id,
                            provider=credential.connector_type,
                        ))
                        continue
                    decrypted = await store.decrypt(current)
                    refreshed = await self._refresh_credential(store, current, decrypted)
            except (UnsupportedProviderError, DecryptionError, CredentialStoreError) as e:
                logger.error(
                    "Failed to refresh credential in batch",
                    extra={
                        "credential_id": credential.id,
                        "tenant_id": tenant_id,
                        "error_type": type(e).__name__,
                    },
                )
                results.append(RefreshResult(
                    status=RefreshResultStatus.FAILED,
                    credential_id=credential.id,
                    provider=credential.connector_type,
                    error_message=type(e).__name__,
                ))
                continue

            if refreshed is None:
                results.append(RefreshResult(
                    status=RefreshResultStatus.FAILED,
                    credential_id=credential.id,
                    provider=credential.connector_type,
                    error_message="Refresh rejected by provider",
                ))
            else:
                results.append(RefreshResult(
                    status=RefreshResultStatus.SUCCESS,
                    credential_id=refreshed.credential_id,
                    provider=credential.connector_type,
                    new_expires_at=refreshed.expires_at,
                ))

        logger.info(
            "Completed scheduled token refresh",
            extra={
                "tenant_id": tenant_id,
                "total": len(results),
                "success": sum(1 for r in results if r.status == RefreshResultStatus.SUCCESS),
                "failed": sum(1 for r in results if r.status == RefreshResultStatus.FAILED),
            },
        )
        return results

    # ------------------------------------------------------------------
    # Disconnect, probes and status
    # ------------------------------------------------------------------

    def disconnect(self, tenant_id: str, provider: Union[str, ConnectorProvider]) -> int:
        """Deactivate every active credential for the pair. Idempotent."""
        connector = ConnectorProvider.parse(provider)
        count = self._store(tenant_id).deactivate_all(connector, DeactivationReason.DISCONNECTED)
        logger.info(
            "Connector disconnected",
            extra={"tenant_id": tenant_id, "provider": connector.value, "deactivated": count},
        )
        return count

    async def test_connection(
        self,
        tenant_id: str,
        provider: Union[str, ConnectorProvider],
    ) -> ConnectionTestResult:
        """ensure_valid_tokens() followed by the provider's capability probe."""
        connector = ConnectorProvider.parse(provider)
        try:
            credential = await self.ensure_valid_tokens(tenant_id, connector)
            if credential is None:
                return ConnectionTestResult(success=False, error="No valid configuration found")
            return await create_adapter(credential, self.http).test_connection()
        except (CredentialStoreError, ConnectorError) as e:
            logger.error(
                "Connection test failed",
                extra={"tenant_id": tenant_id, "provider": connector.value, "error_type": type(e).__name__},
            )
            return ConnectionTestResult(success=False, error="Connection test failed")

    def get_connection_state(self, tenant_id: str, provider: Union[str, ConnectorProvider]) -> ConnectionState:
        """Derive the persisted lifecycle state for a pair."""
        connector = ConnectorProvider.parse(provider)
        store = self._store(tenant_id)
        active = store.get_active(connector)
        if active is None:
            return ConnectionState.REVOKED if store.list_history(connector) else ConnectionState.NONE
        if self._needs_refresh(active.expires_at):
            return ConnectionState.NEAR_EXPIRY
        return ConnectionState.AUTHORIZED

    async def get_connector_status(self, tenant_id: str) -> List[ConnectorStatus]:
        """Status of every provider for a tenant, probing connected ones."""
        store = self._store(tenant_id)
        active_types = {c.connector_type for c in store.list_active()}

        statuses = []
        for provider, config in self.settings.providers.items():
            status = ConnectorStatus(
                provider=provider.value,
                name=config.name,
                type=config.type.value,
                connected=False,
            )
            if provider.value in active_types:
                result = await self.test_connection(tenant_id, provider)
                status.connected = result.success
                status.last_tested = self._now()
                status.error = result.error
            statuses.append(status)
        return statuses
