"""Project-level pytest configuration and shared fixtures."""

import pytest

from unipost.config import Config, RetryConfig
from unipost.content.permissions import StaticAdminPolicy
from unipost.content.service import ContentService
from unipost.storage.memory_store import MemoryBlobStore


@pytest.fixture
def config():
    """Memory-backed config without conflict backoff so tests never sleep."""
    config = Config()
    config.store.backend = "memory"
    config.retry = RetryConfig(max_attempts=3, initial_backoff=0.0)
    config.admins = ["root"]
    return config


@pytest.fixture
def memory_store():
    return MemoryBlobStore()


@pytest.fixture
def service_factory(config):
    """Build a ContentService over a fresh (or given) memory store."""
    def factory(store=None, **kwargs) -> ContentService:
        kwargs.setdefault("config", config)
        kwargs.setdefault("policy", StaticAdminPolicy(config.admins))
        return ContentService(store or MemoryBlobStore(), **kwargs)

    return factory


@pytest.fixture
def service(memory_store, service_factory):
    return service_factory(memory_store)
