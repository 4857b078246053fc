#!/usr/bin/env python3
"""
LeadSignal API Startup Script

Starts the LeadSignal FastAPI server for local development. With a SQLite
DATABASE_URL the documents table is created on startup; other databases are
migrated with Alembic.
"""

import logging
import os
import sys
from pathlib import Path

import uvicorn

logger = logging.getLogger(__name__)


def main():
    """Start the LeadSignal API server."""
    logging.basicConfig(level=logging.INFO)

    env_file = Path(".env")
    if not env_file.exists() and not os.getenv("DATABASE_URL"):
        logger.warning(
            "[STARTUP] No .env file and no DATABASE_URL. "
            "Create backend/.env with at least DATABASE_URL=sqlite:///./leadsignal.db"
        )

    from leadsignal.database import DATABASE_URL, init_db

    if DATABASE_URL.startswith("sqlite"):
        init_db()
        logger.info("[STARTUP] SQLite schema ready")

    logger.info("[STARTUP] Docs at http://localhost:8000/docs")

    try:
        uvicorn.run(
            "leadsignal.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["leadsignal"],
            log_level="info"
        )
    except KeyboardInterrupt:
        logger.info("[STARTUP] Shutting down LeadSignal API server")
    except Exception as e:
        logger.error(f"[STARTUP] Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
