"""
FastAPI application for the connector vault.

Startup (lifespan):
1. Load the master secret (fails fast in production if it is missing)
2. Load provider settings
3. Build the cipher, state signer and nonce registry
4. Start the periodic nonce sweep
5. Open the shared httpx.AsyncClient

Environment variables:
- NONCE_REGISTRY_BACKEND         "memory" (default) or "redis"
- REDIS_URL                      required for the redis backend
- NONCE_SWEEP_INTERVAL_SECONDS   default 300

Run locally:
    python -m connector_vault.main
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from connector_vault.api.routes.connectors import router as connectors_router
from connector_vault.config.oauth_providers import load_oauth_settings
from connector_vault.credentials.encryption import TenantCipher
from connector_vault.credentials.nonce_registry import create_nonce_registry, run_periodic_sweep
from connector_vault.credentials.oauth_state import OAuthStateSigner
from connector_vault.credentials.redaction import setup_credential_logging
from connector_vault.platform.errors import ErrorHandlerMiddleware
from connector_vault.platform.secrets import load_master_secret
from connector_vault.services.connector_oauth_service import RefreshLocks

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 300


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    setup_credential_logging()

    master = load_master_secret()
    settings = load_oauth_settings()

    registry = create_nonce_registry(
        backend=os.getenv("NONCE_REGISTRY_BACKEND", "memory"),
        redis_url=os.getenv("REDIS_URL"),
        max_age_seconds=settings.state_max_age_seconds,
    )
    sweep_interval = float(
        os.getenv("NONCE_SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL_SECONDS)
    )

    app.state.oauth_settings = settings
    app.state.cipher = TenantCipher(master)
    app.state.state_signer = OAuthStateSigner(master, max_age_seconds=settings.state_max_age_seconds)
    app.state.nonce_registry = registry
    app.state.refresh_locks = RefreshLocks()
    app.state.http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    sweep_task = asyncio.create_task(run_periodic_sweep(registry, sweep_interval))
    logger.info(
        "Connector vault started",
        extra={
            "nonce_backend": type(registry).__name__,
            "sweep_interval_seconds": sweep_interval,
            "insecure_dev_secret": master.is_insecure_default,
        },
    )

    try:
        yield
    finally:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
        await app.state.http_client.aclose()
        logger.info("Connector vault stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Connector Vault",
        description="Tenant-scoped OAuth connectors for calendar and CRM providers",
        lifespan=lifespan,
    )
    app.add_middleware(ErrorHandlerMiddleware)
    app.include_router(connectors_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "connector_vault.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
