"""
Database session management.

One engine per process, created lazily from DATABASE_URL. Routes use the
get_db_session() dependency; workers use get_session_factory() directly.
"""

import os
from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from connector_vault.platform.errors import ServiceUnavailableError


def get_database_url() -> str:
    """
    Read DATABASE_URL, normalising Heroku-style postgres:// URLs.

    Raises:
        ValueError: If DATABASE_URL is not set
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_engine(get_database_url(), pool_pre_ping=True)


def get_session_factory() -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def get_db_session() -> Iterator[Session]:
    """FastAPI dependency yielding a request-scoped session."""
    try:
        session_factory = get_session_factory()
    except ValueError:
        raise ServiceUnavailableError("Database not configured") from None

    session = session_factory()
    try:
        yield session
    finally:
        session.close()
