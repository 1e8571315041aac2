"""Tests for coordination backends and backend selection."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock, Mock, call, patch

import pytest
from kazoo.exceptions import ConnectionLoss, LockTimeout, NoNodeError, NotEmptyError
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.retry import KazooRetry

import batchlock.core.locks.backends as backends_module
from batchlock.core.config import LockConfig, RetryConfig
from batchlock.core.exceptions import CoordinationConnectionError, CoordinationError, CoordinationNodeNotEmptyError
from batchlock.core.locks.backends import (
    InMemoryCoordinationClient,
    InMemoryCoordinationService,
    ZooKeeperCoordinationClient,
    ZooKeeperMutex,
    build_kazoo_retry,
)
from batchlock.core.locks.manager import create_coordination_client


@pytest.fixture
def connected_client():
    client = InMemoryCoordinationClient(InMemoryCoordinationService())
    client.connect()
    yield client
    client.close()


class TestInMemoryMutex:
    def test_first_contender_holds_and_second_fails(self, connected_client):
        other = InMemoryCoordinationClient(connected_client.service)
        other.connect()

        first = connected_client.create_mutex("/locks/1")
        second = other.create_mutex("/locks/1")

        assert first.try_acquire(0) is True
        assert second.try_acquire(0) is False
        # The failed contender removes its own node.
        assert len(connected_client.service.children("/locks/1")) == 1

    def test_release_lets_next_contender_in(self, connected_client):
        first = connected_client.create_mutex("/locks/1")
        second = connected_client.create_mutex("/locks/1")

        first.try_acquire(0)
        first.release()

        assert second.try_acquire(0) is True
        assert connected_client.exists("/locks/1")

    def test_mutex_instances_are_not_reentrant_across_instances(self, connected_client):
        first = connected_client.create_mutex("/locks/1")
        second = connected_client.create_mutex("/locks/1")

        assert first.try_acquire(0) is True
        assert second.try_acquire(0) is False

    def test_release_without_acquire_raises(self, connected_client):
        mutex = connected_client.create_mutex("/locks/1")
        with pytest.raises(CoordinationError, match="not held"):
            mutex.release()

    def test_timed_acquire_waits_for_release(self, connected_client):
        holder = connected_client.create_mutex("/locks/1")
        waiter = connected_client.create_mutex("/locks/1")
        holder.try_acquire(0)

        assert waiter.try_acquire(0.05) is False
        holder.release()
        assert waiter.try_acquire(0.05) is True

    def test_session_close_drops_ephemeral_nodes(self):
        service = InMemoryCoordinationService()
        holder = InMemoryCoordinationClient(service)
        contender = InMemoryCoordinationClient(service)
        holder.connect()
        contender.connect()
        holder.create_mutex("/locks/1").try_acquire(0)

        holder.close()

        assert service.children("/locks/1") == []
        assert contender.create_mutex("/locks/1").try_acquire(0) is True

    def test_operations_after_close_raise(self, connected_client):
        connected_client.close()
        with pytest.raises(CoordinationError, match="Not connected"):
            connected_client.create_mutex("/locks/1")


class TestInMemoryService:
    def test_delete_removes_own_residual_children_only(self, connected_client):
        service = connected_client.service
        service.create("/locks/1/lock-", session_id=connected_client._session_id, sequential=True)

        with pytest.raises(CoordinationNodeNotEmptyError, match="children"):
            connected_client.delete_path("/locks/1", delete_children=False)
        assert connected_client.delete_path("/locks/1", delete_children=True) is True
        assert service.paths("/locks") == ["/locks"]

    def test_delete_keeps_node_held_by_another_session(self, connected_client):
        other = InMemoryCoordinationClient(connected_client.service)
        other.connect()
        other_mutex = other.create_mutex("/locks/1")
        assert other_mutex.try_acquire(0) is True

        with pytest.raises(CoordinationNodeNotEmptyError):
            connected_client.delete_path("/locks/1")

        assert other_mutex.is_acquired
        assert connected_client.service.holder_of("/locks/1") is not None
        other_mutex.release()
        assert connected_client.delete_path("/locks/1") is True

    def test_delete_missing_path_returns_false(self, connected_client):
        assert connected_client.delete_path("/missing") is False

    def test_create_builds_parents(self):
        service = InMemoryCoordinationService()
        service.create("/a/b/c")
        assert service.paths("/a") == ["/a", "/a/b", "/a/b/c"]


class TestZooKeeperClient:
    @pytest.fixture
    def kazoo(self):
        with patch.object(backends_module, "KazooClient") as kazoo_cls:
            yield kazoo_cls

    def _client(self, **kwargs) -> ZooKeeperCoordinationClient:
        return ZooKeeperCoordinationClient(
            "zk1:2181,zk2:2181",
            connect_timeout=kwargs.pop("connect_timeout", 5.0),
            session_timeout=kwargs.pop("session_timeout", 10.0),
            **kwargs,
        )

    def test_builds_kazoo_client_with_retry_policy(self, kazoo):
        self._client(retry=RetryConfig(base_delay_ms=500, max_retries=4))

        _, kwargs = kazoo.call_args
        assert kwargs["hosts"] == "zk1:2181,zk2:2181"
        assert kwargs["timeout"] == 10.0
        assert isinstance(kwargs["connection_retry"], KazooRetry)
        assert kwargs["command_retry"].max_tries == 4
        assert kwargs["command_retry"].delay == 0.5

    def test_connect_blocks_with_timeout(self, kazoo):
        kazoo.return_value.server_version.return_value = (3, 8, 4)
        client = self._client(connect_timeout=7.0)

        client.connect()

        kazoo.return_value.start.assert_called_once_with(timeout=7.0)

    def test_connect_timeout_raises_connection_error(self, kazoo):
        kazoo.return_value.start.side_effect = KazooTimeoutError("Connection time-out")
        client = self._client()

        with pytest.raises(CoordinationConnectionError, match="Cannot connect to ZooKeeper"):
            client.connect()

    def test_logs_zookeeper_34_compatibility(self, kazoo, caplog):
        kazoo.return_value.server_version.return_value = (3, 4, 14)
        client = self._client(logger=logging.getLogger("test.zk"))

        with caplog.at_level("INFO"):
            client.connect()

        assert "3.4 compatibility mode" in caplog.text

    def test_create_mutex_uses_lock_recipe(self, kazoo):
        client = self._client(identifier="worker-1")

        mutex = client.create_mutex("/app/files/5")

        kazoo.return_value.Lock.assert_called_once_with("/app/files/5", identifier="worker-1")
        assert mutex.path == "/app/files/5"

    def test_delete_path_removes_only_own_children_then_node(self, kazoo):
        zk = kazoo.return_value
        zk.client_id = (42, b"secret")
        zk.get_children.return_value = ["a__lock__0000000001", "b__lock__0000000002"]
        zk.exists.side_effect = [Mock(ephemeralOwner=42), Mock(ephemeralOwner=7)]
        client = self._client()

        assert client.delete_path("/app/files/5") is True

        assert zk.delete.call_args_list == [
            call("/app/files/5/a__lock__0000000001"),
            call("/app/files/5"),
        ]

    def test_delete_path_without_children_flag_skips_child_scan(self, kazoo):
        client = self._client()

        client.delete_path("/app/files/5", delete_children=False)

        kazoo.return_value.get_children.assert_not_called()
        kazoo.return_value.delete.assert_called_once_with("/app/files/5")

    def test_delete_with_foreign_contender_raises_not_empty(self, kazoo):
        kazoo.return_value.client_id = None
        kazoo.return_value.delete.side_effect = NotEmptyError()

        with pytest.raises(CoordinationNodeNotEmptyError):
            self._client().delete_path("/app/files/5")

    def test_delete_missing_path_returns_false(self, kazoo):
        kazoo.return_value.delete.side_effect = NoNodeError()
        assert self._client().delete_path("/app/files/5") is False

    def test_delete_errors_are_wrapped(self, kazoo):
        kazoo.return_value.delete.side_effect = NotEmptyError()
        with pytest.raises(CoordinationError):
            self._client().delete_path("/app/files/5", delete_children=False)

    def test_exists(self, kazoo):
        kazoo.return_value.exists.side_effect = [MagicMock(), None]
        client = self._client()
        assert client.exists("/app/files/5") is True
        assert client.exists("/app/files/6") is False

    def test_close_is_idempotent(self, kazoo):
        client = self._client()

        client.close()
        client.close()

        kazoo.return_value.stop.assert_called_once_with()
        kazoo.return_value.close.assert_called_once_with()


class TestZooKeeperMutex:
    def test_zero_timeout_is_a_single_non_blocking_attempt(self):
        lock = MagicMock()
        lock.acquire.return_value = False

        assert ZooKeeperMutex(lock, "/app/files/1").try_acquire(0) is False
        lock.acquire.assert_called_once_with(blocking=False)

    def test_positive_timeout_blocks_up_to_timeout(self):
        lock = MagicMock()
        lock.acquire.return_value = True

        assert ZooKeeperMutex(lock, "/app/files/1").try_acquire(2.5) is True
        lock.acquire.assert_called_once_with(blocking=True, timeout=2.5)

    def test_lock_timeout_means_not_acquired(self):
        lock = MagicMock()
        lock.acquire.side_effect = LockTimeout()
        assert ZooKeeperMutex(lock, "/app/files/1").try_acquire(1.0) is False

    def test_kazoo_errors_are_wrapped(self):
        lock = MagicMock()
        lock.acquire.side_effect = ConnectionLoss()
        with pytest.raises(CoordinationError) as exc_info:
            ZooKeeperMutex(lock, "/app/files/1").try_acquire(0)
        assert exc_info.value.operation == "acquire"
        assert exc_info.value.path == "/app/files/1"

    def test_release_of_unheld_lock_raises(self):
        lock = MagicMock()
        lock.release.return_value = False
        with pytest.raises(CoordinationError, match="not held"):
            ZooKeeperMutex(lock, "/app/files/1").release()


def test_build_kazoo_retry_uses_exponential_backoff():
    retry = build_kazoo_retry(RetryConfig())
    assert retry.max_tries == 3
    assert retry.delay == 1.0
    assert retry.backoff == 2


class TestCreateCoordinationClient:
    def test_auto_without_hosts_uses_memory(self, caplog):
        with caplog.at_level("WARNING"):
            client = create_coordination_client("auto", LockConfig())
        assert isinstance(client, InMemoryCoordinationClient)
        assert "in-memory" in caplog.text

    def test_auto_with_hosts_uses_zookeeper(self):
        with patch.object(backends_module, "KazooClient"):
            client = create_coordination_client("auto", LockConfig(hosts="zk1:2181"))
        assert isinstance(client, ZooKeeperCoordinationClient)

    def test_zookeeper_without_hosts_falls_back(self):
        assert isinstance(create_coordination_client("zookeeper", LockConfig()), InMemoryCoordinationClient)

    def test_memory_shares_given_service(self):
        service = InMemoryCoordinationService()
        client = create_coordination_client("memory", service=service)
        assert client.service is service

    def test_unknown_backend_falls_back_to_auto(self, caplog):
        with caplog.at_level("WARNING"):
            client = create_coordination_client("etcd", LockConfig())
        assert isinstance(client, InMemoryCoordinationClient)
        assert "Unknown lock backend 'etcd'" in caplog.text

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("BATCHLOCK_BACKEND", "memory")
        with patch.object(backends_module, "KazooClient") as kazoo_cls:
            client = create_coordination_client(config=LockConfig(hosts="zk1:2181"))
        assert isinstance(client, InMemoryCoordinationClient)
        kazoo_cls.assert_not_called()
