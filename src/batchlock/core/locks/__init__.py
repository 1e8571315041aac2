"""Locking subsystem for cross-process coordination.

This package centralizes batch lock acquisition/release behind coordination
backend abstractions so application modules can use a stable API.
"""

from batchlock.core.locks.backends import (
    CoordinationClient,
    InMemoryCoordinationClient,
    InMemoryCoordinationService,
    Mutex,
    ZooKeeperCoordinationClient,
)
from batchlock.core.locks.manager import LockManager, create_coordination_client
from batchlock.core.locks.models import (
    Lockable,
    LockableItem,
    LockHandle,
    UnlockResult,
    UnlockStatus,
    make_lock_path,
)
from batchlock.core.locks.registry import LockRegistry

__all__ = [
    "CoordinationClient",
    "InMemoryCoordinationClient",
    "InMemoryCoordinationService",
    "LockHandle",
    "LockManager",
    "LockRegistry",
    "Lockable",
    "LockableItem",
    "Mutex",
    "UnlockResult",
    "UnlockStatus",
    "ZooKeeperCoordinationClient",
    "create_coordination_client",
    "make_lock_path",
]
