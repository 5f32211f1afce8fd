"""
Test Configuration and Fixtures
Version: 1.0
"""

import os

# Safe settings before any application module is imported
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("TIMEZONE", "Asia/Tokyo")
os.environ.setdefault("BOKUN_ACCESS_KEY", "test-access-key")
os.environ.setdefault("BOKUN_SECRET_KEY", "test-secret-key")

from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import NOW, FakeCacheStore, FakeCatalog, FakeLocalStore, FakeRemote


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def local_store():
    return FakeLocalStore()


@pytest.fixture
def cache_store():
    store = FakeCacheStore()
    store.mark_synced()
    return store


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def mock_redis():
    """Mock Redis client."""
    redis = MagicMock()
    redis.ping = AsyncMock(return_value=True)
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.eval = AsyncMock(return_value=1)
    redis.publish = AsyncMock(return_value=1)
    redis.aclose = AsyncMock()
    return redis
