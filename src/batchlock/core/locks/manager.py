"""Lock manager orchestrating batch acquisition, release and lifecycle."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from batchlock.core.config import LockConfig
from batchlock.core.constants import (
    BACKEND_AUTO,
    BACKEND_MEMORY,
    BACKEND_ZOOKEEPER,
    CAP_MODE_INCLUSIVE,
    DEFAULT_ACQUIRE_TIMEOUT,
    DEFAULT_LOCK_BACKEND_ENV,
    ID_LOCK_STRIPES,
)
from batchlock.core.exceptions import (
    CoordinationConnectionError,
    CoordinationError,
    CoordinationNodeNotEmptyError,
    LockManagerNotOpenError,
)
from batchlock.core.locks.backends import (
    CoordinationClient,
    InMemoryCoordinationClient,
    InMemoryCoordinationService,
    ZooKeeperCoordinationClient,
)
from batchlock.core.locks.models import Lockable, LockHandle, UnlockResult, UnlockStatus, make_lock_path
from batchlock.core.locks.registry import LockRegistry
from batchlock.core.logging import with_log_context


def create_coordination_client(
    backend_name: str | None = None,
    config: LockConfig | None = None,
    *,
    service: InMemoryCoordinationService | None = None,
    logger: logging.Logger | None = None,
) -> CoordinationClient:
    """Create a coordination client from an explicit name or the environment.

    ``auto`` picks ZooKeeper when hosts are configured and falls back to the
    in-memory backend otherwise. ``service`` is shared by in-memory clients.
    """
    log = logger or logging.getLogger(__name__)
    config = config or LockConfig()
    requested = (backend_name or os.environ.get(DEFAULT_LOCK_BACKEND_ENV) or config.backend or BACKEND_AUTO)
    requested = requested.strip().lower()

    if requested == BACKEND_AUTO:
        if config.hosts:
            return create_coordination_client(BACKEND_ZOOKEEPER, config, service=service, logger=log)
        log.warning("No coordination hosts configured; using in-memory lock backend")
        return InMemoryCoordinationClient(service)

    if requested == BACKEND_ZOOKEEPER:
        if not config.hosts:
            log.warning("ZooKeeper backend requested without hosts; falling back to in-memory backend")
            return InMemoryCoordinationClient(service)
        return ZooKeeperCoordinationClient(
            config.hosts_string,
            connect_timeout=config.connect_timeout,
            session_timeout=config.session_timeout,
            retry=config.retry,
            logger=log,
        )

    if requested == BACKEND_MEMORY:
        return InMemoryCoordinationClient(service)

    log.warning("Unknown lock backend '%s'; falling back to auto selection", requested)
    return create_coordination_client(BACKEND_AUTO, config, service=service, logger=log)


class LockManager:
    """Non-blocking batch lock manager for one lock namespace.

    Usage::

        with LockManager(config) as manager:
            with manager.locked_batch(files, batch_size=10) as handles:
                process(handles)
    """

    def __init__(
        self,
        config: LockConfig | None = None,
        *,
        client: CoordinationClient | None = None,
        logger: logging.Logger | None = None,
    ):
        self.config = config or LockConfig()
        self.namespace = self.config.namespace
        self.logger = with_log_context(logger or logging.getLogger(__name__), namespace=self.namespace)
        self.acquire_timeout = DEFAULT_ACQUIRE_TIMEOUT

        self._client = client
        self._owns_client = client is None
        self._registry = LockRegistry()
        self._state_lock = threading.RLock()
        self._id_locks = tuple(threading.Lock() for _ in range(ID_LOCK_STRIPES))
        self._open = False

    @property
    def client(self) -> CoordinationClient | None:
        return self._client

    @property
    def registry(self) -> LockRegistry:
        return self._registry

    @property
    def is_open(self) -> bool:
        with self._state_lock:
            return self._open

    def __enter__(self) -> LockManager:
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        """Connect to the coordination service and start with an empty registry.

        Blocks until connected. A connection failure or an interrupt leaves
        the manager closed and is re-raised to the caller.
        """
        with self._state_lock:
            if self._open:
                return
            self.logger.info("Starting initialization of the lock manager")
            if self._client is None:
                self._client = create_coordination_client(config=self.config, logger=self.logger)
            self._registry = LockRegistry()
            try:
                self._client.connect()
            except CoordinationConnectionError:
                self.logger.error("Cannot connect to the coordination service", exc_info=True)
                self._close_client()
                raise
            except KeyboardInterrupt:
                self.logger.error("Interrupted while connecting to the coordination service")
                self._close_client()
                raise
            self._open = True
            self.logger.info("Completed initialization of the lock manager (backend=%s)", self._client.name)

    def close(self) -> None:
        """Release every held lock, then close the coordination session."""
        with self._state_lock:
            was_open = self._open
            self._open = False
        if was_open:
            self.unlock_all()
        self._close_client()

    def _close_client(self) -> None:
        client = self._client
        if client is None:
            return
        try:
            client.close()
        except Exception:
            self.logger.error("Error while closing the coordination client", exc_info=True)
        if self._owns_client:
            self._client = None

    def _id_lock(self, lock_id: int) -> threading.Lock:
        return self._id_locks[hash(lock_id) % len(self._id_locks)]

    def lock_batch(self, desired: Iterable[Lockable], batch_size: int) -> set[LockHandle]:
        """Lock, without blocking, up to ``batch_size`` of the desired resources.

        Resources are tried in order. Anything already locked elsewhere, or
        failing with a coordination error, is left out of the result; absence
        from the returned set means "not obtained", never an error.

        Args:
            desired: Resources to lock, in priority order
            batch_size: Number of locks wanted

        Returns:
            Handles for the resources that were effectively locked
        """
        if batch_size < 0:
            raise ValueError(f"batch_size must not be negative, got {batch_size}")
        with self._state_lock:
            if not self._open or self._client is None:
                raise LockManagerNotOpenError(self.namespace)
            client = self._client

        desired = list(desired)
        limit = batch_size + 1 if self.config.cap_mode == CAP_MODE_INCLUSIVE else batch_size
        effectively_locked: set[LockHandle] = set()

        for to_lock in desired:
            if len(effectively_locked) >= limit or not self.is_open:
                break
            if not isinstance(to_lock, Lockable):
                self.logger.warning("Skipping object without a lock id: %r", to_lock)
                continue
            try:
                lock_path = make_lock_path(self.namespace, to_lock.id)
            except TypeError:
                self.logger.warning("Skipping object with a non-integer lock id: %r", to_lock)
                continue
            handle = self._try_lock(client, to_lock, lock_path)
            if handle is not None:
                effectively_locked.add(handle)

        self.logger.info(
            "%d object(s) were requested to lock. %d were effectively locked.",
            len(desired),
            len(effectively_locked),
        )
        return effectively_locked

    def _try_lock(self, client: CoordinationClient, to_lock: Lockable, lock_path: str) -> LockHandle | None:
        with self._id_lock(to_lock.id):
            try:
                mutex = client.create_mutex(lock_path)
                acquired = mutex.try_acquire(self.acquire_timeout)
            except Exception:
                self.logger.error("Cannot lock path %s", lock_path, exc_info=True)
                return None

            if not acquired:
                self.logger.warning(
                    "Object was not locked. Object id is %d, lock path is %s.", to_lock.id, lock_path
                )
                return None

            handle = LockHandle(to_lock, mutex, lock_path)
            # Registration and close() exchange the open flag under the same lock,
            # so a handle is either drained by close() or never registered.
            with self._state_lock:
                still_open = self._open
                registered = still_open and self._registry.add(handle)
            if registered:
                return handle

            if still_open:
                self.logger.warning("Lock #%d is already registered; releasing duplicate mutex", to_lock.id)
            else:
                self.logger.warning("Manager closed while locking #%d; releasing its mutex", to_lock.id)
            try:
                mutex.release()
            except Exception:
                self.logger.error("Cannot release mutex for %s", lock_path, exc_info=True)
            return None

    def unlock(self, handle: LockHandle) -> UnlockResult:
        """Release the handle's mutex and delete its node path.

        The path is kept when another contender already sits under it; that
        holder's own unlock removes it later.

        The registry entry is removed whatever happens, so local state never
        claims a lock the process can no longer act on. Never raises; the
        outcome is returned and logged.
        """
        if not handle.claim_release():
            self._registry.discard(handle)
            self.logger.debug("Lock #%d was already released", handle.id)
            return UnlockResult(handle.id, UnlockStatus.NOT_HELD)

        result: UnlockResult
        with self._id_lock(handle.id):
            try:
                result = self._release_and_delete(handle)
            finally:
                self._registry.discard(handle)

        self.logger.info(
            "The lock #%d was requested to be unlocked. Success = %s", handle.id, result.success
        )
        return result

    def _release_and_delete(self, handle: LockHandle) -> UnlockResult:
        try:
            handle.mutex.release()
        except Exception as e:
            self.logger.error("Can't unlock lock #%d", handle.id, exc_info=True)
            return UnlockResult(handle.id, UnlockStatus.RELEASE_FAILED, e)

        client = self._client
        try:
            if client is None:
                raise CoordinationError("No coordination client", operation="delete", path=handle.path)
            client.delete_path(handle.path, delete_children=True)
        except CoordinationNodeNotEmptyError:
            self.logger.info("Lock path %s still has other contenders; leaving it in place", handle.path)
        except Exception as e:
            self.logger.error("Can't delete lock path %s", handle.path, exc_info=True)
            return UnlockResult(handle.id, UnlockStatus.DELETE_FAILED, e)
        return UnlockResult(handle.id, UnlockStatus.RELEASED)

    def unlock_all(self, handles: Iterable[LockHandle] | None = None) -> list[UnlockResult]:
        """Unlock the given handles, or every registered handle when omitted.

        Each handle is attempted independently; a failure does not stop the rest.
        """
        targets = self._registry.snapshot() if handles is None else list(handles)
        return [self.unlock(handle) for handle in targets]

    @contextmanager
    def locked_batch(self, desired: Iterable[Lockable], batch_size: int) -> Iterator[set[LockHandle]]:
        """Context manager around ``lock_batch`` that always unlocks on exit."""
        handles = self.lock_batch(desired, batch_size)
        try:
            yield handles
        finally:
            self.unlock_all(handles)

    def held_ids(self) -> set[int]:
        return self._registry.ids()

    def stale_handles(self, max_age_seconds: float | None = None) -> list[LockHandle]:
        """Handles held longer than the configured lock max-age.

        Reporting only: stale handles are not released.
        """
        threshold = self.config.lock_max_age if max_age_seconds is None else max_age_seconds
        return [handle for handle in self._registry.snapshot() if handle.age_seconds() > threshold]
