"""Pytest configuration for storesync integration tests

WHAT: Shared fixtures for service-level and HTTP endpoint tests
WHY: Every test gets its own SQLite file database so separate sessions (poll
     run vs. concurrent webhook, request vs. background task) see each
     other's commits the way they would against Postgres.
REFERENCES:
    - storesync/main.py: FastAPI application
    - storesync/database.py: Session factory and dependencies
    - storesync/deps.py: Settings
"""

import os
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from fastapi.testclient import TestClient

# Set test environment before any storesync import
# Must be URL-safe base64-encoded 32-byte string (storesync.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("WEBHOOK_SHARED_SECRET", "test-webhook-secret")
os.environ.setdefault("ADMIN_SECRET_KEY", "test-admin-key")

WEBHOOK_SECRET = os.environ["WEBHOOK_SHARED_SECRET"]
ADMIN_KEY = os.environ["ADMIN_SECRET_KEY"]


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine(tmp_path):
    """File-backed SQLite engine with all tables created."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'storesync_test.db'}",
        connect_args={"check_same_thread": False},
    )

    from storesync.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Settings with fast retries so backoff tests never wait on real time."""
    from storesync.deps import Settings

    return Settings(
        WEBHOOK_SHARED_SECRET=WEBHOOK_SECRET,
        ADMIN_SECRET_KEY=ADMIN_KEY,
        RETRY_MAX_ATTEMPTS=3,
        RETRY_BASE_DELAY_SECONDS=0.01,
        RETRY_MAX_DELAY_SECONDS=0.05,
        RETRY_JITTER=0.0,
        POLL_PAGE_SIZE=2,
        POLL_MAX_PAGES=10,
    )


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def tenant(test_db_session):
    """Active tenant with a syncable credential."""
    from storesync.services.tenant_service import onboard_tenant

    return onboard_tenant(
        test_db_session,
        name="Acme Store",
        shop_domain="acme.myshopify.com",
        access_token="shpat_acme_test",
    )


@pytest.fixture
def other_tenant(test_db_session):
    """Second tenant (for isolation tests)."""
    from storesync.services.tenant_service import onboard_tenant

    return onboard_tenant(
        test_db_session,
        name="Globex Store",
        shop_domain="globex.myshopify.com",
        access_token="shpat_globex_test",
    )


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(session_factory, settings):
    """FastAPI app wired to the test database and settings."""
    from storesync.main import create_app
    from storesync.database import get_db, get_session_factory
    from storesync.deps import get_settings

    test_app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_session_factory] = lambda: session_factory
    test_app.dependency_overrides[get_settings] = lambda: settings

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}

