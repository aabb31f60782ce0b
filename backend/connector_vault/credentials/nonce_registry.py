"""
One-time-use nonce registry for OAuth state replay protection.

Each authorization flow registers a nonce bound to (tenant_id, provider).
The callback consumes it exactly once; a second consume of the same nonce
returns None. Entries older than the state window are swept.

Backends:
- InMemoryNonceRegistry: process-local dict, single-instance deployments only
  (does not survive restarts or span replicas)
- RedisNonceRegistry: SET NX EX + GETDEL, safe across replicas

Key schema (Redis):
- oauth:nonce:{nonce} -> JSON {tenant_id, provider, created_at}
"""

import abc
import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

import redis

from connector_vault.credentials.oauth_state import STATE_MAX_AGE_SECONDS
from connector_vault.credentials.redaction import truncate_nonce

logger = logging.getLogger(__name__)

REDIS_KEY_PREFIX = "oauth:nonce:"


@dataclass(frozen=True)
class NonceEntry:
    """A registered nonce. created_at is epoch seconds."""
    tenant_id: str
    provider: str
    created_at: float


class NonceRegistry(abc.ABC):
    """TTL-capable set-if-absent / get-and-delete store for OAuth nonces."""

    def __init__(self, max_age_seconds: int = STATE_MAX_AGE_SECONDS):
        self.max_age_seconds = max_age_seconds

    @abc.abstractmethod
    def register(self, nonce: str, tenant_id: str, provider: str) -> NonceEntry:
        """
        Register a nonce.

        Raises:
            ValueError: If the nonce is already registered
        """

    @abc.abstractmethod
    def consume(self, nonce: str) -> Optional[NonceEntry]:
        """Atomically take a nonce. Returns None if missing, used or stale."""

    @abc.abstractmethod
    def sweep(self) -> int:
        """Remove stale entries. Returns the number removed."""


class InMemoryNonceRegistry(NonceRegistry):
    """
    Process-local registry guarded by a lock.

    consume() and sweep() share the lock, so a sweep can never remove an
    entry while it is being consumed.
    """

    def __init__(self, max_age_seconds: int = STATE_MAX_AGE_SECONDS, clock=time.time):
        super().__init__(max_age_seconds)
        self._clock = clock
        self._entries: Dict[str, NonceEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def register(self, nonce: str, tenant_id: str, provider: str) -> NonceEntry:
        if not nonce:
            raise ValueError("nonce is required")
        entry = NonceEntry(tenant_id=tenant_id, provider=provider, created_at=self._clock())
        with self._lock:
            if nonce in self._entries:
                raise ValueError("nonce already registered")
            self._entries[nonce] = entry
        return entry

    def consume(self, nonce: str) -> Optional[NonceEntry]:
        if not nonce:
            return None
        with self._lock:
            entry = self._entries.pop(nonce, None)
        if entry is None:
            return None
        if self._clock() - entry.created_at >= self.max_age_seconds:
            logger.info("Stale OAuth nonce consumed", extra={"nonce_prefix": truncate_nonce(nonce)})
            return None
        return entry

    def sweep(self) -> int:
        cutoff = self._clock() - self.max_age_seconds
        with self._lock:
            stale = [n for n, e in self._entries.items() if e.created_at <= cutoff]
            for nonce in stale:
                del self._entries[nonce]
        if stale:
            logger.info("Swept stale OAuth nonces", extra={"removed": len(stale)})
        return len(stale)


class RedisNonceRegistry(NonceRegistry):
    """
    Redis-backed registry for multi-instance deployments.

    Redis failures are NOT swallowed: a nonce that cannot be recorded or
    checked must fail the flow closed.
    """

    def __init__(self, redis_client: redis.Redis, max_age_seconds: int = STATE_MAX_AGE_SECONDS):
        super().__init__(max_age_seconds)
        self._redis = redis_client

    def register(self, nonce: str, tenant_id: str, provider: str) -> NonceEntry:
        if not nonce:
            raise ValueError("nonce is required")
        entry = NonceEntry(tenant_id=tenant_id, provider=provider, created_at=time.time())
        payload = json.dumps({
            "tenant_id": entry.tenant_id,
            "provider": entry.provider,
            "created_at": entry.created_at,
        })
        stored = self._redis.set(
            f"{REDIS_KEY_PREFIX}{nonce}", payload, nx=True, ex=self.max_age_seconds
        )
        if not stored:
            raise ValueError("nonce already registered")
        return entry

    def consume(self, nonce: str) -> Optional[NonceEntry]:
        if not nonce:
            return None
        raw = self._redis.getdel(f"{REDIS_KEY_PREFIX}{nonce}")
        if raw is None:
            return None
        data = json.loads(raw)
        return NonceEntry(
            tenant_id=data["tenant_id"],
            provider=data["provider"],
            created_at=float(data["created_at"]),
        )

    def sweep(self) -> int:
        # Redis expires entries itself.
        return 0


def create_nonce_registry(
    backend: str = "memory",
    redis_url: Optional[str] = None,
    max_age_seconds: int = STATE_MAX_AGE_SECONDS,
) -> NonceRegistry:
    """
    Build the configured nonce registry.

    Args:
        backend: "memory" or "redis"
        redis_url: Redis URL (required for the redis backend)
        max_age_seconds: Entry lifetime, same as the OAuth state window
    """
    if backend == "redis":
        if not redis_url:
            raise ValueError("redis_url is required for the redis nonce registry")
        logger.info("Using Redis nonce registry")
        client = redis.Redis.from_url(redis_url, decode_responses=True)
        return RedisNonceRegistry(client, max_age_seconds=max_age_seconds)

    if backend != "memory":
        raise ValueError(f"Unknown nonce registry backend: {backend}")

    logger.warning(
        "Using in-memory nonce registry; OAuth flows will not survive restarts "
        "or work across multiple instances"
    )
    return InMemoryNonceRegistry(max_age_seconds=max_age_seconds)


async def run_periodic_sweep(registry: NonceRegistry, interval_seconds: float) -> None:
    """Sweep the registry every interval until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            registry.sweep()
        except Exception:
            logger.error("Nonce sweep failed", exc_info=True)
