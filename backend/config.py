import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("GEOATTEND_DB_PATH", BASE_DIR / "database" / "geoattend.db"))
SIGNING_KEY = os.getenv("GEOATTEND_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("GEOATTEND_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("GEOATTEND_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, minimum: int = 0) -> int:
    if not value:
        return fallback
    try:
        return max(minimum, int(value.strip()))
    except ValueError:
        return fallback


def _parse_float(value: str | None, fallback: float) -> float:
    if not value:
        return fallback
    try:
        return float(value.strip())
    except ValueError:
        return fallback


def _parse_ratio(value: str | None, fallback: float) -> float:
    return min(1.0, max(0.0, _parse_float(value, fallback)))


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("GEOATTEND_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("GEOATTEND_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("GEOATTEND_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("GEOATTEND_CORS_ALLOW_CREDENTIALS"), True)

# Rotating QR token
QR_REFRESH_INTERVAL_MS = _parse_int(os.getenv("GEOATTEND_QR_REFRESH_INTERVAL_MS"), 10_000, minimum=1)
TOKEN_GRACE_MS = _parse_int(os.getenv("GEOATTEND_TOKEN_GRACE_MS"), 5_000)
COUNTDOWN_TICK_SECONDS = _parse_float(os.getenv("GEOATTEND_COUNTDOWN_TICK_SECONDS"), 1.0)
PRESENTER_LOCATION_MAX_AGE_MS = _parse_int(
    os.getenv("GEOATTEND_PRESENTER_LOCATION_MAX_AGE_MS"),
    QR_REFRESH_INTERVAL_MS * 2,
    minimum=1,
)

# Geofence
MAX_ATTENDEE_DISTANCE_METERS = _parse_float(os.getenv("GEOATTEND_MAX_ATTENDEE_DISTANCE_METERS"), 50.0)
MAX_PRESENTER_DRIFT_METERS = _parse_float(os.getenv("GEOATTEND_MAX_PRESENTER_DRIFT_METERS"), 100.0)

# Confidence gate (accept >= ACCEPT, one retry offered for RETRY <= c < ACCEPT)
ACCEPT_THRESHOLD = _parse_ratio(os.getenv("GEOATTEND_ACCEPT_THRESHOLD"), 0.9)
RETRY_THRESHOLD = min(
    ACCEPT_THRESHOLD,
    _parse_ratio(os.getenv("GEOATTEND_RETRY_THRESHOLD"), 0.75),
)

# Timetable
DEFAULT_CLASS_DURATION_MINUTES = _parse_int(
    os.getenv("GEOATTEND_DEFAULT_CLASS_DURATION_MINUTES"), 45, minimum=1
)
MAX_ENTRIES_PER_DAY = _parse_int(os.getenv("GEOATTEND_MAX_ENTRIES_PER_DAY"), 7, minimum=1)

# Ledger
PURGE_BATCH_SIZE = _parse_int(os.getenv("GEOATTEND_PURGE_BATCH_SIZE"), 500, minimum=1)

# External biometric matcher
MATCHER_URL = os.getenv("GEOATTEND_MATCHER_URL", "").strip()
MATCHER_API_KEY = os.getenv("GEOATTEND_MATCHER_API_KEY", "").strip()
MATCHER_TIMEOUT_SECONDS = _parse_float(os.getenv("GEOATTEND_MATCHER_TIMEOUT_SECONDS"), 30.0)
