"""Core module - configuration, errors, logging and the locking subsystem.

- Custom exceptions
- Configuration dataclasses
- Constants and defaults
- Logging helpers
"""

from batchlock.core.config import (
    BatchLockConfig,
    LockConfig,
    LogConfig,
    RetryConfig,
)
from batchlock.core.exceptions import (
    BatchLockError,
    ConfigurationError,
    CoordinationConnectionError,
    CoordinationError,
    CoordinationNodeNotEmptyError,
    LockManagerNotOpenError,
)
from batchlock.core.logging import setup_logging, with_log_context

__all__ = [
    # Exceptions
    "BatchLockError",
    "ConfigurationError",
    "CoordinationError",
    "CoordinationConnectionError",
    "CoordinationNodeNotEmptyError",
    "LockManagerNotOpenError",
    # Config dataclasses
    "BatchLockConfig",
    "LockConfig",
    "LogConfig",
    "RetryConfig",
    # Logging
    "setup_logging",
    "with_log_context",
]
