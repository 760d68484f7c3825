from fastapi import APIRouter

from backend.config import (
    ACCEPT_THRESHOLD,
    COUNTDOWN_TICK_SECONDS,
    DEFAULT_CLASS_DURATION_MINUTES,
    MAX_ATTENDEE_DISTANCE_METERS,
    MAX_ENTRIES_PER_DAY,
    MAX_PRESENTER_DRIFT_METERS,
    PURGE_BATCH_SIZE,
    QR_REFRESH_INTERVAL_MS,
    RETRY_THRESHOLD,
    TOKEN_GRACE_MS,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/protocol")
def protocol_config():
    return {
        "qr_refresh_interval_ms": QR_REFRESH_INTERVAL_MS,
        "token_grace_ms": TOKEN_GRACE_MS,
        "countdown_tick_seconds": COUNTDOWN_TICK_SECONDS,
        "max_attendee_distance_meters": MAX_ATTENDEE_DISTANCE_METERS,
        "max_presenter_drift_meters": MAX_PRESENTER_DRIFT_METERS,
        "accept_threshold": ACCEPT_THRESHOLD,
        "retry_threshold": RETRY_THRESHOLD,
        "default_class_duration_minutes": DEFAULT_CLASS_DURATION_MINUTES,
        "max_entries_per_day": MAX_ENTRIES_PER_DAY,
        "purge_batch_size": PURGE_BATCH_SIZE,
    }
