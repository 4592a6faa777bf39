"""
Pytest Configuration and Shared Fixtures

Provides common fixtures and configuration for all test modules.

Every test that touches the database gets its own SQLite file under
tmp_path, so background threads (recompute dispatcher, job pools) share
it the same way they share PostgreSQL in production.
"""

import pytest

from fastapi.testclient import TestClient

from thanalytica.cache.config import CacheConfig
from thanalytica.container import build_container
from thanalytica.database.session import create_db_engine
from thanalytica.utils.config import Settings

from helpers import FakeClock, START_TIME, seed_history


# ============================================================================
# Clock
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START_TIME)


# ============================================================================
# Services
# ============================================================================

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'thanalytica_test.db'}",
        SCHEDULER_ENABLED=False,
        RECOMPUTE_MAX_WORKERS=2,
        ENGINE_MAX_WORKERS=2,
        RETRY_AFTER_SECONDS=30,
        DAILY_JOB_PARALLELISM=2,
        CORRELATION_JOB_PARALLELISM=2,
    )


@pytest.fixture
def cache_config() -> CacheConfig:
    return CacheConfig(enabled=True, http_cache_enabled=True, compact_on_cleanup=True)


@pytest.fixture
def db_engine(settings):
    engine = create_db_engine(settings.DATABASE_URL)
    yield engine
    engine.dispose()


@pytest.fixture
def container(settings, db_engine, clock, cache_config):
    services = build_container(
        settings=settings,
        db_engine=db_engine,
        clock=clock,
        cache_config=cache_config,
    )
    yield services
    services.close()


@pytest.fixture
def cache_service(container):
    return container.cache


@pytest.fixture
def raw_data(container):
    return container.raw_data


@pytest.fixture
def client(container):
    from api.app import create_app

    return TestClient(create_app(container=container))


# ============================================================================
# Data
# ============================================================================

@pytest.fixture
def seeded_user(raw_data, clock) -> str:
    """User with ten days of healthy history ending today."""
    seed_history(raw_data, clock, "user_123", days=10)
    return "user_123"
