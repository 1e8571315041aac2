"""Coordination service backends.

Design principles:
- Lock ownership is defined by the coordination service, never by local state.
- A mutex is bound to one node path; holding it means owning the lowest
  sequential contender node under that path.
- Backend failures surface as ``CoordinationError`` so the manager can treat
  every backend the same way.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
import uuid
from typing import Protocol

from kazoo.client import KazooClient
from kazoo.exceptions import KazooException, LockTimeout, NoNodeError, NotEmptyError
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.retry import KazooRetry

from batchlock.core.config import RetryConfig
from batchlock.core.exceptions import (
    CoordinationConnectionError,
    CoordinationError,
    CoordinationNodeNotEmptyError,
)

_LOCK_NODE_PREFIX = "lock-"


class Mutex(Protocol):
    """Distributed mutual-exclusion primitive bound to one node path."""

    path: str

    def try_acquire(self, timeout: float) -> bool:
        """Try to take the mutex, waiting at most ``timeout`` seconds."""

    def release(self) -> None:
        """Release the mutex; raises CoordinationError when it is not held."""


class CoordinationClient(Protocol):
    """Connection lifecycle and mutex factory over hierarchical paths."""

    name: str

    @property
    def connected(self) -> bool: ...

    def connect(self) -> None:
        """Block until connected; raises CoordinationConnectionError on failure."""

    def create_mutex(self, path: str) -> Mutex:
        """Create (but do not acquire) a mutex for ``path``."""

    def delete_path(self, path: str, delete_children: bool = True) -> bool:
        """Delete ``path``; returns False when it did not exist.

        With ``delete_children`` the session's own residual child nodes are
        removed first. Children owned by other sessions are never touched; if
        any remain, ``CoordinationNodeNotEmptyError`` is raised.
        """

    def exists(self, path: str) -> bool:
        """Return whether a node exists at ``path``."""

    def close(self) -> None:
        """Close the session. Safe to call more than once."""


# ==================== ZOOKEEPER ====================


def build_kazoo_retry(retry: RetryConfig) -> KazooRetry:
    """Exponential backoff policy equivalent to ``RetryConfig``."""
    return KazooRetry(
        max_tries=retry.max_retries,
        delay=retry.base_delay,
        backoff=2,
        max_delay=retry.max_delay,
    )


class ZooKeeperMutex:
    """Mutex backed by the kazoo ``Lock`` recipe."""

    def __init__(self, lock, path: str):
        self._lock = lock
        self.path = path

    def try_acquire(self, timeout: float) -> bool:
        try:
            if timeout <= 0:
                return bool(self._lock.acquire(blocking=False))
            return bool(self._lock.acquire(blocking=True, timeout=timeout))
        except LockTimeout:
            return False
        except KazooException as e:
            raise CoordinationError(
                "Mutex acquire failed", operation="acquire", path=self.path, original_error=e, details=str(e)
            ) from e

    def release(self) -> None:
        try:
            released = self._lock.release()
        except KazooException as e:
            raise CoordinationError(
                "Mutex release failed", operation="release", path=self.path, original_error=e, details=str(e)
            ) from e
        if not released:
            raise CoordinationError("Mutex is not held", operation="release", path=self.path)


class ZooKeeperCoordinationClient:
    """Coordination client for Apache ZooKeeper, built on kazoo."""

    name = "zookeeper"

    def __init__(
        self,
        hosts: str,
        *,
        connect_timeout: float,
        session_timeout: float,
        retry: RetryConfig | None = None,
        identifier: str | None = None,
        logger: logging.Logger | None = None,
    ):
        retry = retry or RetryConfig()
        self.hosts = hosts
        self.connect_timeout = connect_timeout
        self.identifier = identifier or str(uuid.uuid4())
        self.logger = logger or logging.getLogger(__name__)
        self._closed = False
        self._client = KazooClient(
            hosts=hosts,
            timeout=session_timeout,
            connection_retry=build_kazoo_retry(retry),
            command_retry=build_kazoo_retry(retry),
        )

    @property
    def connected(self) -> bool:
        return bool(self._client.connected)

    def connect(self) -> None:
        try:
            self._client.start(timeout=self.connect_timeout)
        except KazooTimeoutError as e:
            raise CoordinationConnectionError(
                "Cannot connect to ZooKeeper",
                operation="connect",
                details=f"no connection to {self.hosts} within {self.connect_timeout}s",
                original_error=e,
            ) from e
        self._log_server_version()

    def _log_server_version(self) -> None:
        try:
            version = self._client.server_version()
        except KazooException as e:
            self.logger.debug("Could not read ZooKeeper server version: %s", e)
            return
        version_text = ".".join(str(part) for part in version)
        if tuple(version[:2]) == (3, 4):
            self.logger.info("Connected to ZooKeeper %s (3.4 compatibility mode)", version_text)
        else:
            self.logger.info("Connected to ZooKeeper %s", version_text)

    def create_mutex(self, path: str) -> ZooKeeperMutex:
        return ZooKeeperMutex(self._client.Lock(path, identifier=self.identifier), path)

    def delete_path(self, path: str, delete_children: bool = True) -> bool:
        try:
            if delete_children:
                self._delete_own_children(path)
            self._client.delete(path)
        except NoNodeError:
            return False
        except NotEmptyError as e:
            raise CoordinationNodeNotEmptyError(
                "Node has children", operation="delete", path=path, original_error=e
            ) from e
        except KazooException as e:
            raise CoordinationError(
                "Node delete failed", operation="delete", path=path, original_error=e, details=str(e)
            ) from e
        return True

    def _delete_own_children(self, path: str) -> None:
        client_id = self._client.client_id
        if not client_id:
            return
        session_id = client_id[0]
        for child in self._client.get_children(path):
            child_path = f"{path}/{child}"
            stat = self._client.exists(child_path)
            if stat is None or stat.ephemeralOwner != session_id:
                continue
            try:
                self._client.delete(child_path)
            except NoNodeError:
                continue

    def exists(self, path: str) -> bool:
        try:
            return self._client.exists(path) is not None
        except KazooException as e:
            raise CoordinationError("Node lookup failed", operation="exists", path=path, original_error=e) from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._client.stop()
        finally:
            self._client.close()


# ==================== IN-MEMORY ====================


class InMemoryCoordinationService:
    """Process-local node tree with ZooKeeper-like lock recipe semantics.

    Several ``InMemoryCoordinationClient`` sessions can share one service,
    each behaving like a separate process. Ephemeral nodes disappear when
    the session that created them closes.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._children: dict[str, set[str]] = {"/": set()}
        self._owners: dict[str, int | None] = {"/": None}
        self._sequence = itertools.count(1)
        self._session_ids = itertools.count(1)
        self._live_sessions: set[int] = set()

    def open_session(self) -> int:
        with self._lock:
            session_id = next(self._session_ids)
            self._live_sessions.add(session_id)
            return session_id

    def close_session(self, session_id: int) -> None:
        with self._lock:
            self._live_sessions.discard(session_id)
            owned = [path for path, owner in self._owners.items() if owner == session_id]
            for path in sorted(owned, key=len, reverse=True):
                self._remove(path)

    def is_live(self, session_id: int | None) -> bool:
        with self._lock:
            return session_id in self._live_sessions

    def create(self, path: str, *, session_id: int | None = None, sequential: bool = False) -> str:
        """Create ``path`` (parents included); ephemeral when ``session_id`` is given."""
        with self._lock:
            if sequential:
                path = f"{path}{next(self._sequence):010d}"
            parent = _parent_of(path)
            if parent not in self._owners:
                self.create(parent)
            if path in self._owners:
                if sequential:
                    raise CoordinationError("Node already exists", operation="create", path=path)
                return path
            self._owners[path] = session_id
            self._children[path] = set()
            self._children[parent].add(path.rsplit("/", 1)[1])
            return path

    def delete(self, path: str) -> bool:
        """Delete a childless node; returns False when it does not exist."""
        with self._lock:
            if path not in self._owners:
                return False
            if self._children[path]:
                raise CoordinationNodeNotEmptyError("Node has children", operation="delete", path=path)
            self._remove(path)
            return True

    def delete_children_owned_by(self, path: str, session_id: int) -> int:
        """Remove the children of ``path`` created by ``session_id``."""
        with self._lock:
            owned = [
                f"{path}/{child}"
                for child in self._children.get(path, ())
                if self._owners.get(f"{path}/{child}") == session_id
            ]
            for child_path in owned:
                self._remove(child_path)
            return len(owned)

    def exists(self, path: str) -> bool:
        with self._lock:
            return path in self._owners

    def children(self, path: str) -> list[str]:
        with self._lock:
            return sorted(self._children.get(path, ()))

    def paths(self, prefix: str = "/") -> list[str]:
        """All node paths at or below ``prefix`` (the root itself excluded)."""
        with self._lock:
            base = prefix.rstrip("/")
            return sorted(p for p in self._owners if p != "/" and (p == base or p.startswith(base + "/")))

    def holder_of(self, path: str) -> str | None:
        """Full path of the contender node currently holding the lock at ``path``."""
        with self._lock:
            contenders = [c for c in self._children.get(path, ()) if c.startswith(_LOCK_NODE_PREFIX)]
            if not contenders:
                return None
            return f"{path}/{min(contenders, key=_sequence_of)}"

    def _remove(self, path: str) -> None:
        for child in list(self._children.get(path, ())):
            self._remove(f"{path}/{child}")
        self._children.pop(path, None)
        self._owners.pop(path, None)
        parent = _parent_of(path)
        if parent in self._children:
            self._children[parent].discard(path.rsplit("/", 1)[1])


def _parent_of(path: str) -> str:
    parent = path.rsplit("/", 1)[0]
    return parent or "/"


def _sequence_of(node_name: str) -> int:
    return int(node_name[len(_LOCK_NODE_PREFIX):])


class InMemoryMutex:
    """Lock recipe over ``InMemoryCoordinationService``.

    Acquisition creates an ephemeral sequential contender node; the lowest
    sequence number holds the lock. A failed attempt removes its node.
    """

    poll_interval_seconds = 0.01

    def __init__(self, service: InMemoryCoordinationService, session_id: int, path: str):
        self._service = service
        self._session_id = session_id
        self.path = path
        self._node: str | None = None

    @property
    def is_acquired(self) -> bool:
        return self._node is not None

    def try_acquire(self, timeout: float) -> bool:
        if self._node is not None:
            return True
        if not self._service.is_live(self._session_id):
            raise CoordinationError("Session is closed", operation="acquire", path=self.path)

        deadline = time.monotonic() + max(0.0, timeout)
        node = self._service.create(
            f"{self.path}/{_LOCK_NODE_PREFIX}", session_id=self._session_id, sequential=True
        )
        while True:
            holder = self._service.holder_of(self.path)
            if holder == node:
                self._node = node
                return True
            if holder is None or not self._service.exists(node):
                raise CoordinationError("Contender node vanished", operation="acquire", path=node)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._service.delete(node)
                return False
            time.sleep(min(self.poll_interval_seconds, remaining))

    def release(self) -> None:
        node = self._node
        if node is None:
            raise CoordinationError("Mutex is not held", operation="release", path=self.path)
        self._node = None
        if not self._service.delete(node):
            raise CoordinationError("Lock node already gone", operation="release", path=node)


class InMemoryCoordinationClient:
    """Coordination session against an ``InMemoryCoordinationService``."""

    name = "memory"

    def __init__(self, service: InMemoryCoordinationService | None = None):
        self.service = service or InMemoryCoordinationService()
        self._session_id: int | None = None

    @property
    def connected(self) -> bool:
        return self.service.is_live(self._session_id)

    def connect(self) -> None:
        if self._session_id is None:
            self._session_id = self.service.open_session()

    def _require_session(self, operation: str, path: str) -> int:
        if self._session_id is None or not self.service.is_live(self._session_id):
            raise CoordinationError("Not connected", operation=operation, path=path)
        return self._session_id

    def create_mutex(self, path: str) -> InMemoryMutex:
        return InMemoryMutex(self.service, self._require_session("create_mutex", path), path)

    def delete_path(self, path: str, delete_children: bool = True) -> bool:
        session_id = self._require_session("delete", path)
        if delete_children:
            self.service.delete_children_owned_by(path, session_id)
        return self.service.delete(path)

    def exists(self, path: str) -> bool:
        self._require_session("exists", path)
        return self.service.exists(path)

    def close(self) -> None:
        if self._session_id is None:
            return
        session_id = self._session_id
        self._session_id = None
        self.service.close_session(session_id)
