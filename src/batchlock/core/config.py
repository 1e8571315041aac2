"""Configuration dataclasses for batchlock.

These dataclasses centralize all configuration options for type safety
and easy testing. They can be built from the environment (optionally
seeded from a ``.env`` file) or constructed directly in code.
"""

from __future__ import annotations

import math
import os
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from batchlock.core.constants import (
    BACKEND_AUTO,
    CAP_MODE_STRICT,
    CAP_MODES,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_LOCK_MAX_AGE,
    DEFAULT_NAMESPACE,
    DEFAULT_RETRY_BASE_DELAY_MS,
    DEFAULT_RETRY_MAX_DELAY,
    DEFAULT_RETRY_MAX_RETRIES,
    DEFAULT_SESSION_TIMEOUT,
    ENV_VAR_MAPPING,
    VALID_LOG_LEVELS,
)
from batchlock.core.exceptions import ConfigurationError

_HOST_PORT_PATTERN = re.compile(r"^(?:[^\s:@/]+@)?(?:\[[0-9A-Fa-f:.]+\]|[A-Za-z0-9._-]+)(?::(\d{1,5}))?$")


def parse_hosts(value: str | list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
    """Split and validate a coordination endpoint list.

    Accepts a comma-separated string or a sequence of ``host:port`` entries.
    An optional chroot suffix on the last entry (``host:2181/chroot``) is kept.

    Raises:
        ConfigurationError: If any entry is malformed or a port is out of range
    """
    if value is None:
        return ()
    raw_entries = value.split(",") if isinstance(value, str) else list(value)
    hosts: list[str] = []
    for index, raw in enumerate(raw_entries):
        entry = str(raw).strip()
        if not entry:
            continue
        host_part = entry
        if index == len(raw_entries) - 1 and "/" in entry:
            host_part = entry.split("/", 1)[0]
        match = _HOST_PORT_PATTERN.match(host_part)
        if match is None:
            raise ConfigurationError("Invalid coordination host", field="hosts", details=entry)
        port = match.group(1)
        if port is not None and not 0 < int(port) < 65536:
            raise ConfigurationError("Coordination host port out of range", field="hosts", details=entry)
        hosts.append(entry)
    return tuple(hosts)


def normalize_namespace(namespace: str) -> str:
    """Return an absolute namespace path without a trailing slash."""
    value = (namespace or "").strip()
    if not value.startswith("/"):
        raise ConfigurationError("Lock namespace must be an absolute path", field="namespace", details=value)
    value = re.sub(r"/{2,}", "/", value)
    if len(value) > 1:
        value = value.rstrip("/")
    if value == "/":
        raise ConfigurationError("Lock namespace must not be the root node", field="namespace", details=value)
    return value


@dataclass
class RetryConfig:
    """Configuration for coordination retries with exponential backoff.

    Attributes:
        base_delay_ms: Initial sleep between retries in milliseconds (default: 1000)
        max_retries: Maximum number of retry attempts (default: 3)
        max_delay: Maximum backoff sleep in seconds (default: 30.0)
    """

    base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS
    max_retries: int = DEFAULT_RETRY_MAX_RETRIES
    max_delay: float = DEFAULT_RETRY_MAX_DELAY

    @property
    def base_delay(self) -> float:
        return self.base_delay_ms / 1000.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_delay_ms": self.base_delay_ms,
            "max_retries": self.max_retries,
            "max_delay": self.max_delay,
        }


@dataclass
class LockConfig:
    """Configuration for one lock namespace.

    Attributes:
        hosts: Coordination endpoints as ``host:port`` entries
        namespace: Root path under which every lock of this domain lives
        lock_max_age: Age in seconds after which a handle is reported as stale (reserved)
        cap_mode: ``strict`` caps a batch at batch_size; ``inclusive`` allows one extra lock
        backend: Coordination backend name (auto, zookeeper, memory)
        connect_timeout: Seconds ``open()`` waits for the first connection
        session_timeout: Coordination session timeout in seconds
    """

    hosts: tuple[str, ...] = ()
    namespace: str = DEFAULT_NAMESPACE
    lock_max_age: int = DEFAULT_LOCK_MAX_AGE
    cap_mode: str = CAP_MODE_STRICT
    backend: str = BACKEND_AUTO
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    session_timeout: float = DEFAULT_SESSION_TIMEOUT
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        self.hosts = parse_hosts(self.hosts)
        self.namespace = normalize_namespace(self.namespace)
        self.cap_mode = (self.cap_mode or CAP_MODE_STRICT).strip().lower()
        if self.cap_mode not in CAP_MODES:
            raise ConfigurationError(
                f"Unknown cap mode '{self.cap_mode}'", field="cap_mode", details=f"expected one of {CAP_MODES}"
            )
        self.backend = (self.backend or BACKEND_AUTO).strip().lower()
        if self.lock_max_age < 0:
            raise ConfigurationError("Lock max-age must not be negative", field="lock_max_age")
        for name in ("connect_timeout", "session_timeout"):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise ConfigurationError(
                    f"{name} must be a positive number of seconds", field=name, details=repr(value)
                )

    @property
    def hosts_string(self) -> str:
        """Endpoint list in the comma-separated form coordination clients expect."""
        return ",".join(self.hosts)


@dataclass
class LogConfig:
    """Configuration for logging behavior.

    Attributes:
        level: Logging level string (default: "INFO")
        format: "text" or "json" (default: "text")
        file: Optional log file path; console only when unset
    """

    level: str = "INFO"
    format: str = "text"
    file: str | None = None


@dataclass
class BatchLockConfig:
    """Master configuration: one lock namespace plus logging."""

    lock: LockConfig = field(default_factory=LockConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_env(
        cls,
        env_file: str | Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> BatchLockConfig:
        """Build configuration from environment variables.

        When ``environ`` is not given, an optional ``.env`` file is loaded
        first (existing variables win) and ``os.environ`` is read.
        """
        if environ is None:
            load_dotenv(dotenv_path=env_file, override=False)
            environ = os.environ

        def _get(key: str) -> str | None:
            value = environ.get(ENV_VAR_MAPPING[key])
            if value is None or not value.strip():
                return None
            return value.strip()

        retry = RetryConfig(
            base_delay_ms=_env_number(_get("retry_base_delay_ms"), int, "retry_base_delay_ms", DEFAULT_RETRY_BASE_DELAY_MS),
            max_retries=_env_number(_get("retry_max_retries"), int, "retry_max_retries", DEFAULT_RETRY_MAX_RETRIES),
        )
        lock = LockConfig(
            hosts=parse_hosts(_get("hosts")),
            namespace=_get("namespace") or DEFAULT_NAMESPACE,
            lock_max_age=_env_number(_get("lock_max_age"), int, "lock_max_age", DEFAULT_LOCK_MAX_AGE),
            cap_mode=_get("cap_mode") or CAP_MODE_STRICT,
            backend=_get("backend") or BACKEND_AUTO,
            connect_timeout=_env_number(_get("connect_timeout"), float, "connect_timeout", DEFAULT_CONNECT_TIMEOUT),
            session_timeout=_env_number(_get("session_timeout"), float, "session_timeout", DEFAULT_SESSION_TIMEOUT),
            retry=retry,
        )
        log_level = (_get("log_level") or "INFO").upper()
        if log_level not in VALID_LOG_LEVELS:
            raise ConfigurationError(f"Invalid log level '{log_level}'", field="log_level")
        log_format = (_get("log_format") or "text").lower()
        if log_format not in ("text", "json"):
            raise ConfigurationError(f"Invalid log format '{log_format}'", field="log_format")

        return cls(lock=lock, log=LogConfig(level=log_level, format=log_format))


def _env_number(value: str | None, cast: Callable[[str], Any], field_name: str, default: Any) -> Any:
    """Parse a numeric setting, raising ConfigurationError when invalid."""
    if value is None:
        return default
    try:
        parsed = cast(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid value for {ENV_VAR_MAPPING[field_name]}", field=field_name, details=repr(value)
        ) from e
    if isinstance(parsed, float) and not math.isfinite(parsed):
        raise ConfigurationError(
            f"Invalid value for {ENV_VAR_MAPPING[field_name]}", field=field_name, details=repr(value)
        )
    if parsed < 0:
        raise ConfigurationError(
            f"{ENV_VAR_MAPPING[field_name]} must not be negative", field=field_name, details=repr(value)
        )
    return parsed
