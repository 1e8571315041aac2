"""Thread-safe registry of the locks this process currently holds."""

from __future__ import annotations

import threading

from batchlock.core.locks.models import LockHandle


class LockRegistry:
    """Mapping ``id -> LockHandle`` guarded by a re-entrant lock.

    The registry is the only local source of truth about held locks. At most
    one handle per id is stored; removal is by handle identity so a stale
    handle never evicts a newer holder of the same id.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._handles: dict[int, LockHandle] = {}

    def add(self, handle: LockHandle) -> bool:
        """Store the handle; returns False if its id is already registered."""
        with self._lock:
            if handle.id in self._handles:
                return False
            self._handles[handle.id] = handle
            return True

    def discard(self, handle: LockHandle) -> bool:
        """Remove the handle if it is the one registered for its id."""
        with self._lock:
            current = self._handles.get(handle.id)
            if current is not handle:
                return False
            del self._handles[handle.id]
            return True

    def get(self, lock_id: int) -> LockHandle | None:
        with self._lock:
            return self._handles.get(lock_id)

    def ids(self) -> set[int]:
        with self._lock:
            return set(self._handles)

    def snapshot(self) -> list[LockHandle]:
        """Copy of the registered handles, safe to iterate while others mutate."""
        with self._lock:
            return list(self._handles.values())

    def __contains__(self, lock_id: object) -> bool:
        with self._lock:
            return lock_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
