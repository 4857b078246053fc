"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory that back the
    document store.

WHY:
    The pipeline is request-scoped; each store operation opens a short-lived
    session from SessionLocal, so connection pooling lives here.

USAGE:
    from leadsignal.database import SessionLocal
    from leadsignal.services.document_store import SqlDocumentStore

    store = SqlDocumentStore(SessionLocal)

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - leadsignal/services/document_store.py (main consumer)
"""

import logging
import os

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    A local .env never overrides variables that are already exported.

    Returns:
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        if load_dotenv(override=False):
            logger.info("[DATABASE] Loaded local .env file (existing variables were NOT overwritten)")
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in leadsignal.models to ensure a single registry across the app
from .models import Base  # noqa: E402


def init_db() -> None:
    """Create tables that do not exist yet.

    Production schemas are managed by Alembic; this is for SQLite dev setups.
    """
    Base.metadata.create_all(bind=engine)
