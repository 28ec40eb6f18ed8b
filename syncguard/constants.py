"""
syncguard Global Constants

Centralized location for system-wide defaults used across the package.
"""

from datetime import datetime, timezone

# Cache
DEFAULT_CACHE_TTL_SECONDS = 300

# Remote I/O deadlines
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0
DEFAULT_WRITE_TIMEOUT_SECONDS = 10.0

# Retry policy
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 30.0
MAX_RETRIES_CREATE_UPDATE = 2
MAX_RETRIES_DELETE = 1

# Undo
DEFAULT_UNDO_WINDOW_SECONDS = 5.0

# Audit
DEFAULT_AUDIT_WRITE_TIMEOUT_SECONDS = 2.0
DEFAULT_ACTOR_ID = "system"

# Record payloads
DEFAULT_ID_FIELD = "id"


# Timestamp Functions
def get_current_timestamp() -> datetime:
    """Get current timestamp with UTC timezone.

    Returns:
        datetime: Current UTC timestamp
    """
    return datetime.now(timezone.utc)


# Application Constants
APP_NAME = "syncguard"
APP_VERSION = "0.1.0"
