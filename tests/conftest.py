"""Pytest configuration and fixtures for batchlock tests"""

import pytest

from batchlock.core.config import LockConfig
from batchlock.core.locks.backends import InMemoryCoordinationClient, InMemoryCoordinationService
from batchlock.core.locks.manager import LockManager
from batchlock.core.locks.models import LockableItem

TEST_NAMESPACE = "/test/files"


@pytest.fixture(autouse=True)
def _clear_backend_env(monkeypatch):
    """Keep a developer's BATCHLOCK_* environment out of the tests"""
    for name in ("BATCHLOCK_BACKEND", "BATCHLOCK_ZK_HOSTS", "BATCHLOCK_NAMESPACE", "BATCHLOCK_CAP_MODE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def service():
    """A coordination service shared by every manager in one test"""
    return InMemoryCoordinationService()


@pytest.fixture
def lock_config():
    return LockConfig(namespace=TEST_NAMESPACE, backend="memory")


@pytest.fixture
def make_manager(service, lock_config):
    """Factory for open managers sharing the test's coordination service"""
    managers = []

    def _make(config=None):
        manager = LockManager(config or lock_config, client=InMemoryCoordinationClient(service))
        manager.open()
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        manager.close()


@pytest.fixture
def manager(make_manager):
    return make_manager()


@pytest.fixture
def items():
    """Lockable items with ids 1..5"""
    return [LockableItem(i) for i in range(1, 6)]
