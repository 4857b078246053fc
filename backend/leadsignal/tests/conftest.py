"""Pytest configuration for leadsignal integration tests

WHAT: Provides shared fixtures for HTTP endpoint and store-level tests
WHY: Ensures consistent test setup, database isolation, and vendor isolation
REFERENCES:
    - leadsignal/main.py: FastAPI application
    - leadsignal/deps.py: Dependency injection
    - leadsignal/services/document_store.py: SqlDocumentStore
"""

import os
from typing import Callable, Generator, List

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
import sys
from pathlib import Path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

WEBHOOK_SECRET = "test-postmark-secret"


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture
def settings():
    """Settings with no vendor credentials and no .env lookup."""
    from leadsignal.deps import Settings

    return Settings(
        _env_file=None,
        POSTMARK_WEBHOOK_SECRET=WEBHOOK_SECRET,
        GA4_MEASUREMENT_ID=None,
        GA4_API_SECRET=None,
        GADS_CUSTOMER_ID=None,
        GADS_DEV_TOKEN=None,
        GADS_CONVERSION_ACTION_ID=None,
        GADS_ACCESS_TOKEN=None,
        META_PIXEL_ID=None,
        META_ACCESS_TOKEN=None,
        RATE_LIMIT_EVENTS_PER_MINUTE=1000,
        RATE_LIMIT_LEADS_PER_MINUTE=1000,
    )


@pytest.fixture
def vendor_settings(settings):
    """Settings with every vendor configured and enabled."""
    return settings.model_copy(update={
        "GA4_MEASUREMENT_ID": "G-TEST123",
        "GA4_API_SECRET": "ga4-secret",
        "GADS_CUSTOMER_ID": "123-456-7890",
        "GADS_DEV_TOKEN": "dev-token",
        "GADS_CONVERSION_ACTION_ID": "987654",
        "GADS_ACCESS_TOKEN": "ya29.test",
        "META_PIXEL_ID": "111222333",
        "META_ACCESS_TOKEN": "meta-token",
        "GA4_FORWARDING_ENABLED": True,
        "GADS_FORWARDING_ENABLED": True,
        "META_FORWARDING_ENABLED": True,
    })


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared across sessions (StaticPool)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from leadsignal.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(bind=test_db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def store(session_factory):
    from leadsignal.services.document_store import SqlDocumentStore

    return SqlDocumentStore(session_factory)


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def rate_limiter():
    from leadsignal.services.rate_limiter import InMemoryRateLimiter

    return InMemoryRateLimiter()


@pytest.fixture
def app(settings, store, rate_limiter):
    """FastAPI app wired to the test store, settings and limiter."""
    from leadsignal.deps import get_document_store, get_rate_limiter, get_settings
    from leadsignal.main import create_app

    test_app = create_app()
    test_app.dependency_overrides[get_settings] = lambda: settings
    test_app.dependency_overrides[get_document_store] = lambda: store
    test_app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    return test_app


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    yield TestClient(app)


# ============================================================================
# Vendor Fixtures
# ============================================================================

class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: List[httpx.Request] = []

        def recording_handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(recording_handler)


@pytest.fixture
def vendor_transport():
    """Accepts every vendor call with a 200."""
    return RecordingTransport(lambda request: httpx.Response(200, json={"events_received": 1}))


@pytest.fixture
def make_transport():
    """Factory: make_transport(handler) -> RecordingTransport."""
    return RecordingTransport
