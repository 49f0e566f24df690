"""LMS Log Explorer configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default

# Default locations (callers normally pass resolved paths explicitly)
HOME_DIR = Path.home()
DATA_DIR = HOME_DIR / ".lms-log-explorer"
LOG_ROOT = Path(os.path.expanduser(os.getenv("LMS_LOG_ROOT", str(HOME_DIR / ".lmstudio" / "server-logs"))))

# Database
DB_PATH = Path(os.path.expanduser(os.getenv("LMS_INDEX_DB_PATH", str(DATA_DIR / "index.sqlite"))))
DB_BUSY_TIMEOUT_MS = _env_int("LMS_INDEX_BUSY_TIMEOUT_MS", 5000)

# Indexing tuning
YIELD_EVERY_LINES = max(1, _env_int("LMS_INDEX_YIELD_EVERY_LINES", 250))
CHECKSUM_CHUNK_BYTES = max(4096, _env_int("LMS_INDEX_CHECKSUM_CHUNK_BYTES", 1024 * 1024))
INDEX_DEBUG = _env_bool("LMS_INDEX_DEBUG", False)
OPERATION_HISTORY = max(1, _env_int("LMS_INDEX_OPERATION_HISTORY", 20))
WATCH_DEBOUNCE_MS = _env_int("LMS_WATCH_DEBOUNCE_MS", 1600)

# Observability
OTEL_ENABLED = _env_bool("LMS_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("LMS_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("LMS_OTEL_SERVICE_NAME", "lms-log-explorer")
PROM_PORT = _env_int("LMS_PROM_PORT", 0)
