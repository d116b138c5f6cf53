"""Shared pytest fixtures."""

import pytest

from service_router.cache import IDENTITY_CACHE, TOPOLOGY_CACHE

from helpers import RecordingStore


@pytest.fixture(autouse=True)
def reset_caches():
    """The identity and topology caches are process-wide; isolate every test."""
    IDENTITY_CACHE.clear()
    TOPOLOGY_CACHE.clear()
    yield
    IDENTITY_CACHE.clear()
    TOPOLOGY_CACHE.clear()


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()
