"""
Dependency that builds a ConnectorOAuthService for the current request.

Process-wide collaborators are created once in the app lifespan and kept on
app.state; only the database session is per request.
"""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from connector_vault.database.session import get_db_session
from connector_vault.platform.errors import ServiceUnavailableError
from connector_vault.services.connector_oauth_service import ConnectorOAuthService


def get_connector_service(
    request: Request,
    db_session: Session = Depends(get_db_session),
) -> ConnectorOAuthService:
    state = request.app.state
    if getattr(state, "cipher", None) is None:
        raise ServiceUnavailableError("Connector service not initialised")

    return ConnectorOAuthService(
        db_session=db_session,
        settings=state.oauth_settings,
        cipher=state.cipher,
        signer=state.state_signer,
        nonce_registry=state.nonce_registry,
        http_client=state.http_client,
        refresh_locks=state.refresh_locks,
    )
