"""
Pytest configuration and shared fixtures.

Provides:
- SQLite in-memory database with transaction rollback per test
- The packaged tier catalog as a standalone (non-singleton) instance
- Settings and in-memory data source factories
- Autouse reset of process-wide singletons
"""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENV", "test")

import retailvis.config as config_package
import retailvis.models  # noqa: F401  registers tables on Base.metadata
from retailvis.config.settings import EntitlementSettings, reset_entitlement_settings
from retailvis.db_base import Base
from retailvis.entitlements.cache import reset_resolution_cache
from retailvis.entitlements.catalog import TierCatalog, reset_tier_catalog
from retailvis.entitlements.datasource import InMemoryDataSource
from retailvis.entitlements.models import (
    SubscriptionStatus,
    TenantSubscription,
    UsageSnapshot,
)

TIERS_PATH = Path(config_package.__file__).parent / "tiers.yml"

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Singletons
# =============================================================================

@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch):
    """Every test starts from a clean environment and fresh singletons."""
    for name in (
        "REDIS_URL",
        "ENTITLEMENT_LIMIT_FAIL_OPEN",
        "ENTITLEMENT_TENANT_OVERRIDE_WITHOUT_PLATFORM",
        "ENTITLEMENT_EXPIRED_GRACE_DAYS",
        "ENTITLEMENT_CACHE_TTL",
        "ENTITLEMENT_UPGRADE_URL",
        "ENTITLEMENT_TIERS_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_entitlement_settings()
    reset_tier_catalog()
    reset_resolution_cache()
    yield
    reset_entitlement_settings()
    reset_tier_catalog()
    reset_resolution_cache()


# =============================================================================
# Catalog / settings
# =============================================================================

@pytest.fixture(scope="session")
def tiers_config() -> dict:
    with open(TIERS_PATH) as f:
        return yaml.safe_load(f)


@pytest.fixture
def catalog(tiers_config) -> TierCatalog:
    return TierCatalog.from_dict(tiers_config)


@pytest.fixture
def settings() -> EntitlementSettings:
    """Defaults with caching off so every evaluation reads fresh."""
    return EntitlementSettings(cache_ttl_seconds=0)


@pytest.fixture
def now() -> datetime:
    return NOW


# =============================================================================
# In-memory data
# =============================================================================

@pytest.fixture
def make_tenant(now):
    """
    Factory for TenantSubscription records.

    Usage:
        tenant = make_tenant("t1", tier="starter", status="trial", trial_days=-1)
    """
    def _make(
        tenant_id: str = "tenant-1",
        tier: str = "professional",
        status: str = SubscriptionStatus.ACTIVE.value,
        trial_days=None,
        subscription_days=None,
        organization_id=None,
        frozen: bool = False,
    ) -> TenantSubscription:
        return TenantSubscription(
            tenant_id=tenant_id,
            tier=tier,
            status=status,
            trial_ends_at=now + timedelta(days=trial_days) if trial_days is not None else None,
            subscription_ends_at=(
                now + timedelta(days=subscription_days)
                if subscription_days is not None
                else None
            ),
            organization_id=organization_id,
            frozen=frozen,
        )
    return _make


@pytest.fixture
def data_source() -> InMemoryDataSource:
    return InMemoryDataSource()


@pytest.fixture
def usage():
    def _usage(skus: int, locations: int = 1) -> UsageSnapshot:
        return UsageSnapshot(sku_count=skus, location_count=locations)
    return _usage


# =============================================================================
# Database
# =============================================================================

@pytest.fixture(scope="session")
def db_engine():
    """SQLite in-memory engine shared across the session."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    Tests flush, never commit; everything is rolled back afterwards.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=connection)
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
