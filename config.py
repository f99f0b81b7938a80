import os
import uuid

# =============================================================================
# ReadMeABook process settings
# Runtime-tunable values (download client, directories, e-book sidecar) live
# in the configuration table, see config_service.py. Everything here is read
# from the environment once at import.
# =============================================================================

MASKED_SECRET = "••••••••"


def _env_int(name, default, minimum=0):
    try:
        return max(minimum, int(os.getenv(name, str(default))))
    except ValueError:
        return default


DB_PATH = os.getenv("RMAB_DB_PATH", "/data/readmeabook/readmeabook.db")
LOG_LEVEL = os.getenv("RMAB_LOG_LEVEL", "INFO").upper()

# Job queue
JOB_MAX_RETRIES = _env_int("RMAB_JOB_MAX_RETRIES", 2)
JOB_RETRY_BACKOFF_SEC = _env_int("RMAB_JOB_RETRY_BACKOFF_SEC", 60, minimum=1)
JOB_WORKERS = _env_int("RMAB_JOB_WORKERS", 4, minimum=1)
JOB_POLL_INTERVAL_SEC = _env_int("RMAB_JOB_POLL_INTERVAL_SEC", 1, minimum=1)

# Download monitoring
MONITOR_POLL_INTERVAL_SEC = _env_int("RMAB_MONITOR_POLL_INTERVAL_SEC", 10, minimum=1)
MONITOR_MAX_POLLS = _env_int("RMAB_MONITOR_MAX_POLLS", 8640, minimum=1)

# Awaiting-import sweep
RETRY_IMPORTS_INTERVAL_SEC = _env_int("RMAB_RETRY_IMPORTS_INTERVAL_SEC", 900, minimum=10)
RETRY_IMPORTS_BATCH = _env_int("RMAB_RETRY_IMPORTS_BATCH", 50, minimum=1)

# Direct downloads
DIRECT_CONNECT_TIMEOUT_SEC = _env_int("RMAB_DIRECT_CONNECT_TIMEOUT_SEC", 15, minimum=1)
DIRECT_READ_TIMEOUT_SEC = _env_int("RMAB_DIRECT_READ_TIMEOUT_SEC", 300, minimum=1)
USER_AGENT = os.getenv(
    "RMAB_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
)

# Authentication
API_KEY = os.getenv("API_KEY", "")
SECRET_KEY = os.getenv("SECRET_KEY", "") or str(uuid.uuid4())


def has_auth():
    """Return True if API-key authentication is configured."""
    return bool(API_KEY)


def truthy(value):
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")
