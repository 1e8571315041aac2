"""Constants and default values for batchlock.

This module centralizes the defaults and environment variable names used
by the configuration layer and the lock backends.
"""

# ==================== COORDINATION DEFAULTS ====================

# Root namespace under which locks of one domain are created
DEFAULT_NAMESPACE: str = "/app/files"

# Initial sleep between connection/command retries, in milliseconds
DEFAULT_RETRY_BASE_DELAY_MS: int = 1000
# Maximum number of retries for connection/command failures
DEFAULT_RETRY_MAX_RETRIES: int = 3
# Cap on a single backoff sleep, in seconds
DEFAULT_RETRY_MAX_DELAY: float = 30.0

DEFAULT_CONNECT_TIMEOUT: float = 15.0  # seconds to wait for the first connection
DEFAULT_SESSION_TIMEOUT: float = 10.0  # coordination session timeout in seconds

# Reserved: handles older than this are reported by stale_handles(), never evicted
DEFAULT_LOCK_MAX_AGE: int = 3600

# Default wait for a single acquire attempt in batch mode ("try once, fail fast")
DEFAULT_ACQUIRE_TIMEOUT: float = 0.0

# ==================== BATCH CAPPING ====================

CAP_MODE_STRICT: str = "strict"
CAP_MODE_INCLUSIVE: str = "inclusive"
CAP_MODES: tuple[str, ...] = (CAP_MODE_STRICT, CAP_MODE_INCLUSIVE)

# ==================== BACKENDS ====================

BACKEND_AUTO: str = "auto"
BACKEND_ZOOKEEPER: str = "zookeeper"
BACKEND_MEMORY: str = "memory"
BACKEND_NAMES: tuple[str, ...] = (BACKEND_AUTO, BACKEND_ZOOKEEPER, BACKEND_MEMORY)

# Number of striped per-id locks a manager uses to serialize acquire/release of one id
ID_LOCK_STRIPES: int = 64

# ==================== LOGGING ====================

LOG_FILE_MAX_BYTES: int = 10 * 1024 * 1024  # 10MB
LOG_FILE_BACKUP_COUNT: int = 5
VALID_LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# ==================== ENVIRONMENT ====================

ENV_VAR_MAPPING: dict[str, str] = {
    "hosts": "BATCHLOCK_ZK_HOSTS",
    "namespace": "BATCHLOCK_NAMESPACE",
    "lock_max_age": "BATCHLOCK_LOCK_MAX_AGE",
    "cap_mode": "BATCHLOCK_CAP_MODE",
    "backend": "BATCHLOCK_BACKEND",
    "connect_timeout": "BATCHLOCK_CONNECT_TIMEOUT",
    "session_timeout": "BATCHLOCK_SESSION_TIMEOUT",
    "retry_base_delay_ms": "BATCHLOCK_RETRY_BASE_DELAY_MS",
    "retry_max_retries": "BATCHLOCK_RETRY_MAX_RETRIES",
    "log_level": "LOG_LEVEL",
    "log_format": "LOG_FORMAT",
}

DEFAULT_LOCK_BACKEND_ENV: str = ENV_VAR_MAPPING["backend"]
