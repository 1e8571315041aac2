"""Lock value types: lockable resources, handles and unlock outcomes."""

from __future__ import annotations

import operator
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from batchlock.core.locks.backends import Mutex


def _utcnow() -> datetime:
    return datetime.now(UTC)


def make_lock_path(namespace: str, lock_id: int) -> str:
    """Join a namespace and a lock id into a coordination node path.

    Raises:
        TypeError: If ``lock_id`` is not an integer
    """
    if isinstance(lock_id, bool):
        raise TypeError(f"lock id must be an integer, got {lock_id!r}")
    return f"{namespace.rstrip('/')}/{operator.index(lock_id)}"


@runtime_checkable
class Lockable(Protocol):
    """Any resource exposing a stable integer identity usable as a lock key.

    The id is normally the resource's primary key. It links the resource to
    its lock without the lock holding more than a reference to it.
    """

    @property
    def id(self) -> int: ...


@dataclass(frozen=True)
class LockableItem:
    """Minimal ``Lockable`` for callers that only have an id."""

    id: int


class LockHandle:
    """A held lock: the locked resource, its mutex and when it was acquired.

    The handle exclusively owns the mutex for the resource's locked lifetime.
    Two handles compare equal when they lock the same id.
    """

    __slots__ = ("_lockable", "_mutex", "_path", "_created_at", "_release_lock", "_released")

    def __init__(self, lockable: Lockable, mutex: Mutex, path: str, created_at: datetime | None = None):
        self._lockable = lockable
        self._mutex = mutex
        self._path = path
        self._created_at = created_at or _utcnow()
        self._release_lock = threading.Lock()
        self._released = False

    @property
    def id(self) -> int:
        return self._lockable.id

    @property
    def lockable(self) -> Lockable:
        return self._lockable

    @property
    def mutex(self) -> Mutex:
        return self._mutex

    @property
    def path(self) -> str:
        return self._path

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def released(self) -> bool:
        with self._release_lock:
            return self._released

    def age_seconds(self, now: datetime | None = None) -> float:
        return ((now or _utcnow()) - self._created_at).total_seconds()

    def claim_release(self) -> bool:
        """Claim the right to release the mutex; only the first call wins."""
        with self._release_lock:
            if self._released:
                return False
            self._released = True
            return True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LockHandle):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"LockHandle(id={self.id}, path={self._path!r}, created_at={self._created_at.isoformat()})"


class UnlockStatus(Enum):
    """Outcome of a single unlock request."""

    RELEASED = "released"  # mutex released and node path deleted
    RELEASE_FAILED = "release_failed"  # mutex release raised; path left in place
    DELETE_FAILED = "delete_failed"  # mutex released but the node path could not be deleted
    NOT_HELD = "not_held"  # handle was already released earlier


@dataclass(frozen=True)
class UnlockResult:
    """What happened when a handle was unlocked.

    The registry entry is gone in every case; ``error`` carries the
    exception for the failure statuses.
    """

    lock_id: int
    status: UnlockStatus
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.status is UnlockStatus.RELEASED
