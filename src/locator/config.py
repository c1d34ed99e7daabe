"""Configuration management."""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
# Try to load from standard locations
env_paths = [
    Path("/var/lib/locator/.env"),  # Production location
    Path(".env"),  # Current directory
    Path(__file__).parent.parent.parent / ".env",  # Project root
]
for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break
else:
    # Fallback: try default load_dotenv() behavior
    load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


# Base directory for data
DATA_DIR = Path(os.getenv("DATA_DIR", "/var/lib/locator"))
try:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
except (PermissionError, OSError):
    # Fallback to temp directory if we don't have permissions (e.g., during tests)
    import tempfile
    DATA_DIR = Path(tempfile.gettempdir()) / "locator-test"
    DATA_DIR.mkdir(parents=True, exist_ok=True)

# Database path (durable key/value storage for the position cache)
DB_PATH = DATA_DIR / "locator.db"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Timezone used when rendering timestamps in status reports
TZ = os.getenv("TZ", "UTC")

# Position cache
CACHE_MAX_SIZE = int(os.getenv("CACHE_MAX_SIZE", "100"))
CACHE_TTL_MS = int(os.getenv("CACHE_TTL_MS", str(5 * 60 * 1000)))
CACHE_PERSISTENCE_ENABLED = _env_bool("CACHE_PERSISTENCE_ENABLED", "true")
CACHE_STORAGE_KEY = "location_cache"
CACHE_CLEANUP_INTERVAL_MS = 60 * 60 * 1000  # flush runs at twice this interval
CACHE_COMPRESSION_THRESHOLD = 10 * 1024  # characters
CACHE_KEY_PRECISION = 4  # decimal places for lat/lon (~11 m cells)

# Strategy selection weights
STRATEGY_ADAPTIVE_SELECTION = _env_bool("STRATEGY_ADAPTIVE_SELECTION", "true")
STRATEGY_PERFORMANCE_WEIGHT = 0.4
STRATEGY_ACCURACY_WEIGHT = 0.3
STRATEGY_POWER_WEIGHT = 0.3
STRATEGY_SUCCESS_RATE_THRESHOLD = 0.8
STRATEGY_RESPONSE_TIME_THRESHOLD_MS = 3000
STRATEGY_ACCURACY_SCALE_METERS = 1000  # accuracy at or above this scores zero

# Moving-average blend for strategy metrics: new = old + factor * (sample - old)
# 0.5 reproduces new = (old + sample) / 2
METRIC_SMOOTHING_FACTOR = 0.5

# Error recovery
RECOVERY_MAX_RETRIES = int(os.getenv("RECOVERY_MAX_RETRIES", "3"))
RECOVERY_RETRY_DELAY_MS = 1000
RECOVERY_BACKOFF = os.getenv("RECOVERY_BACKOFF", "exponential")
RECOVERY_FALLBACK = os.getenv("RECOVERY_FALLBACK", "cache")
RECOVERY_ERROR_THRESHOLD = 5
RECOVERY_STALE_AFTER_MS = 5 * 60 * 1000

# Performance history kept by the strategy optimizer
PERFORMANCE_HISTORY_MAX = 1000
PERFORMANCE_HISTORY_KEEP = 500

# Fetch profiles: (high_accuracy, timeout_ms, maximum_age_ms)
STRATEGY_PROFILES = {
    "high_accuracy": (True, 15000, 0),
    "balanced": (True, 10000, 60 * 1000),
    "low_power": (False, 8000, 5 * 60 * 1000),
    "cache_first": (False, 5000, 10 * 60 * 1000),
}

# Static power-efficiency coefficient per strategy
STRATEGY_POWER_EFFICIENCY = {
    "high_accuracy": 0.3,
    "balanced": 0.6,
    "low_power": 0.9,
    "cache_first": 1.0,
}

# Accuracy warning threshold (meters)
ACCURACY_WARNING_THRESHOLD = 500

# Privacy
LOCATION_ENCRYPTION_KEY = os.getenv("LOCATION_ENCRYPTION_KEY")  # urlsafe base64, 32 bytes
PRIVACY_ENCRYPTION_ENABLED = _env_bool("PRIVACY_ENCRYPTION_ENABLED", "true")
PRIVACY_MASKING_ENABLED = _env_bool("PRIVACY_MASKING_ENABLED", "true")
PRIVACY_MASKING_ACCURACY_METERS = 1000
PRIVACY_ACCESS_CONTROL_ENABLED = _env_bool("PRIVACY_ACCESS_CONTROL_ENABLED", "true")
PRIVACY_ACCESS_LEVEL = os.getenv("PRIVACY_ACCESS_LEVEL", "moderate")
PRIVACY_AUDIT_ENABLED = _env_bool("PRIVACY_AUDIT_ENABLED", "true")
PRIVACY_FUZZING_ENABLED = _env_bool("PRIVACY_FUZZING_ENABLED", "true")
PRIVACY_FUZZING_RADIUS_METERS = 50
PRIVACY_DATA_RETENTION_MS = 7 * 24 * 60 * 60 * 1000
PRIVACY_AUDIT_CAPACITY = 10000
PRIVACY_RETENTION_INTERVAL_MS = 24 * 60 * 60 * 1000

# Monitoring
ERROR_TRACKER_MAX = 1000
ERROR_TRACKER_KEEP = 500
ERROR_REPORT_WINDOW_MS = 24 * 60 * 60 * 1000
USAGE_REQUESTS_MAX = 10000
USAGE_CACHE_MAX = 5000
USAGE_WINDOW_MS = 7 * 24 * 60 * 60 * 1000

# Nominatim reverse geocoding API
NOMINATIM_ENABLED = _env_bool("NOMINATIM_ENABLED", "true")
NOMINATIM_API_URL = os.getenv("NOMINATIM_API_URL", "https://nominatim.openstreetmap.org/reverse")
NOMINATIM_RATE_LIMIT_SECONDS = 1  # Nominatim requires max 1 request per second
NOMINATIM_TIMEOUT = 5  # seconds
NOMINATIM_LANGUAGE = os.getenv("NOMINATIM_LANGUAGE", "en")

# Fixed device position for hosts without a positioning primitive
DEVICE_LAT = os.getenv("DEVICE_LAT")
DEVICE_LON = os.getenv("DEVICE_LON")
DEVICE_ACCURACY = float(os.getenv("DEVICE_ACCURACY", "50"))

# Project information
PROJECT_NAME = "Location Ecosystem"
