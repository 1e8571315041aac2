"""
batchlock - non-blocking batch distributed locks over a coordination service

Acquires mutual-exclusion locks on caller-identified resources in batches,
keeps a thread-safe registry of the locks held by this process and removes
every coordination node when a lock is released.
"""

__version__ = "1.0.0"

from batchlock.core.config import BatchLockConfig, LockConfig
from batchlock.core.exceptions import (
    BatchLockError,
    ConfigurationError,
    CoordinationConnectionError,
    CoordinationError,
    CoordinationNodeNotEmptyError,
    LockManagerNotOpenError,
)
from batchlock.core.locks import (
    InMemoryCoordinationClient,
    InMemoryCoordinationService,
    Lockable,
    LockableItem,
    LockHandle,
    LockManager,
    LockRegistry,
    UnlockResult,
    UnlockStatus,
    ZooKeeperCoordinationClient,
    create_coordination_client,
)
from batchlock.core.logging import setup_logging

__all__ = [
    "__version__",
    "BatchLockConfig",
    "BatchLockError",
    "ConfigurationError",
    "CoordinationConnectionError",
    "CoordinationError",
    "CoordinationNodeNotEmptyError",
    "InMemoryCoordinationClient",
    "InMemoryCoordinationService",
    "LockConfig",
    "LockHandle",
    "LockManager",
    "LockManagerNotOpenError",
    "LockRegistry",
    "Lockable",
    "LockableItem",
    "UnlockResult",
    "UnlockStatus",
    "ZooKeeperCoordinationClient",
    "create_coordination_client",
    "setup_logging",
]
