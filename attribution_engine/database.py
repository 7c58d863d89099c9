"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine, the session factory used by the run
    controller's worker pool, and a FastAPI dependency for the trigger API.

WHY:
    - Workers open one session per conversion so a failed conversion never
      poisons a sibling's transaction.
    - The API only needs short-lived sessions to read settings/summaries and
      record runs.

USAGE:
    # Workers / scripts
    from attribution_engine.database import SessionLocal, get_sync_session

    with get_sync_session() as db:
        store = AttributionStore(db)

    # FastAPI
    @router.get("/settings")
    def read_settings(db: Session = Depends(get_db)):
        ...

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - attribution_engine/services/attribution/run_controller.py (session_factory consumer)
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    from attribution_engine.utils.env import load_env_file, require_env

    if not os.getenv("DATABASE_URL"):
        # Attempt to load from local .env for developer convenience
        load_env_file()

    database_url = require_env("DATABASE_URL")

    # Heroku-style URL
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# Connection pool sized for the attribution worker pool:
# - pool_size: one connection per concurrent conversion worker plus API headroom
# - max_overflow: bursts while a full-tenant recompute runs next to the hourly batch
# - pool_recycle: recreate connections after 1 hour to prevent stale connections
# - pool_pre_ping: check connection health before use
#
# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# =============================================================================
# BASE MODEL (imported from models for single registry)
# =============================================================================

from .models import Base  # noqa: E402


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    Example:
        with get_sync_session() as db:
            tenants = db.query(Tenant).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
