"""Custom exceptions for batchlock.

All exception classes carry a short message plus optional details so that
log lines and tracebacks explain what failed and against which resource.
"""


class BatchLockError(Exception):
    """Base exception for all batchlock errors."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(BatchLockError):
    """Exception raised for invalid configuration values.

    Examples:
        - Malformed coordination host list
        - Relative lock namespace
        - Non-numeric timeout or max-age
    """

    def __init__(self, message: str, field: str | None = None, details: str | None = None):
        self.field = field
        super().__init__(message, details)


class CoordinationError(BatchLockError):
    """Exception raised when a coordination service call fails.

    Wraps backend-specific errors with the operation and path involved.
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        path: str | None = None,
        details: str | None = None,
        original_error: Exception | None = None,
    ):
        self.operation = operation
        self.path = path
        self.original_error = original_error
        super().__init__(message, details)

    def __str__(self) -> str:
        parts = [self.message]
        if self.operation:
            parts.append(f"during {self.operation}")
        if self.path:
            parts.append(f"on {self.path}")
        if self.details:
            parts.append(self.details)
        return " - ".join(parts)


class CoordinationConnectionError(CoordinationError):
    """Raised when the coordination service cannot be reached.

    Fatal during ``LockManager.open()``: the manager is left closed.
    """


class CoordinationNodeNotEmptyError(CoordinationError):
    """Raised when a node cannot be deleted because other contenders remain under it."""


class LockManagerNotOpenError(BatchLockError):
    """Raised when locks are requested from a manager that is not open."""

    def __init__(self, namespace: str):
        self.namespace = namespace
        super().__init__(
            f"Lock manager for namespace '{namespace}' is not open",
            "call open() or use the manager as a context manager first",
        )
