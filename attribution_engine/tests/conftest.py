"""Pytest configuration for attribution integration tests

WHAT: Provides shared fixtures for store, run controller and HTTP endpoint tests
WHY: Ensures consistent test setup, database isolation, and seed data
REFERENCES:
    - attribution_engine/main.py: FastAPI application
    - attribution_engine/database.py: Database configuration
    - attribution_engine/deps.py: Dependency injection
"""

import os
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment (database.py reads DATABASE_URL at import time)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine."""
    # StaticPool: the TestClient runs requests on another thread and must see the same database
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from attribution_engine.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """Session factory on a file-backed SQLite database.

    The run controller opens one session per conversion on pool threads, so it
    needs a real file rather than a single shared in-memory connection.
    """
    from attribution_engine.database import Base

    db_file = tmp_path / "attribution_runs.db"
    engine = create_engine(
        f"sqlite:///{db_file}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    yield SessionLocal

    engine.dispose()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session):
    """Create FastAPI test application."""
    from attribution_engine.main import create_app

    test_app = create_app()

    # Override database dependency
    from attribution_engine.database import get_db

    def override_get_db():
        try:
            yield test_db_session
        finally:
            test_db_session.close()

    test_app.dependency_overrides[get_db] = override_get_db

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def controller_settings():
    """Application settings for the run controller without reading the environment."""
    return SimpleNamespace(
        ATTRIBUTION_MAX_WORKERS=1,
        ATTRIBUTION_STALE_PROCESSING_MINUTES=30,
        ATTRIBUTION_MAX_RETRIES=3,
        ATTRIBUTION_RETRY_BASE_SECONDS=0,
        ATTRIBUTION_DEFAULT_LOOKBACK_HOURS=24,
        ATTRIBUTION_RECENT_DAYS=3,
        ATTRIBUTION_UNATTRIBUTED_MAX_AGE_HOURS=72,
        ATTRIBUTION_UNATTRIBUTED_BATCH_SIZE=50,
    )


# ============================================================================
# Model Fixtures
# ============================================================================

def seed_tenant(db: Session, name: str = "Test Tenant"):
    from attribution_engine.models import Tenant

    tenant = Tenant(id=uuid.uuid4(), name=name, created_at=datetime.utcnow())
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant


def seed_touchpoint(db: Session, tenant_id, occurred_at: datetime, channel: str = "google", **values):
    from attribution_engine.models import Touchpoint

    values.setdefault("visitor_id", "visitor-1")
    values.setdefault("touchpoint_type", "click")
    touchpoint = Touchpoint(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        occurred_at=occurred_at,
        channel=channel,
        **values,
    )
    db.add(touchpoint)
    db.commit()
    db.refresh(touchpoint)
    return touchpoint


def seed_conversion(db: Session, tenant_id, converted_at: datetime, revenue="100.00", **values):
    from attribution_engine.models import Conversion

    values.setdefault("visitor_id", "visitor-1")
    values.setdefault("order_id", f"order-{uuid.uuid4().hex[:8]}")
    conversion = Conversion(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        converted_at=converted_at,
        revenue=Decimal(revenue) if revenue is not None else None,
        **values,
    )
    db.add(conversion)
    db.commit()
    db.refresh(conversion)
    return conversion


@pytest.fixture
def seed():
    """Seed helpers usable with any session (in-memory or file-backed)."""
    return SimpleNamespace(
        tenant=seed_tenant,
        touchpoint=seed_touchpoint,
        conversion=seed_conversion,
    )


@pytest.fixture
def test_tenant(test_db_session):
    """Create test tenant."""
    return seed_tenant(test_db_session)


@pytest.fixture
def three_touch_journey(test_db_session, test_tenant):
    """Instagram -5d, Google -2d, Direct -1h before a $100 conversion yesterday."""
    converted_at = datetime.utcnow().replace(microsecond=0) - timedelta(days=1)
    touchpoints = [
        seed_touchpoint(test_db_session, test_tenant.id, converted_at - timedelta(days=5), "instagram", platform="meta"),
        seed_touchpoint(test_db_session, test_tenant.id, converted_at - timedelta(days=2), "google", platform="google"),
        seed_touchpoint(test_db_session, test_tenant.id, converted_at - timedelta(hours=1), "direct"),
    ]
    conversion = seed_conversion(test_db_session, test_tenant.id, converted_at)
    return SimpleNamespace(tenant=test_tenant, touchpoints=touchpoints, conversion=conversion)
