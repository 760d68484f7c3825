class AttendanceError(Exception):
    """Base for protocol failures surfaced verbatim to the caller."""

    code = "error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def as_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class MalformedToken(AttendanceError):
    code = "malformed_token"


class TokenExpired(AttendanceError):
    code = "token_expired"


class TooFar(AttendanceError):
    code = "too_far"
    status_code = 403

    def __init__(self, message: str, distance_meters: float | None = None):
        super().__init__(message)
        self.distance_meters = distance_meters


class PresenterDriftExceeded(TooFar):
    code = "presenter_drift"


class NoMatch(AttendanceError):
    code = "no_match"
    status_code = 401


class LowConfidence(AttendanceError):
    code = "low_confidence"
    status_code = 401


class NoActiveClass(AttendanceError):
    code = "no_active_class"
    status_code = 409


class StoreUnavailable(AttendanceError):
    code = "store_unavailable"
    status_code = 503


class PermissionDenied(AttendanceError):
    code = "permission_denied"
    status_code = 403


class ExternalServiceUnavailable(AttendanceError):
    code = "external_service_unavailable"
    status_code = 502


class LocationUnavailable(ExternalServiceUnavailable):
    code = "location_unavailable"


class SessionNotActive(AttendanceError):
    code = "session_not_active"
    status_code = 409


class VerificationInProgress(AttendanceError):
    code = "verification_in_progress"
    status_code = 409


class NoPendingScan(AttendanceError):
    code = "no_pending_scan"
    status_code = 409


class VerificationCancelled(AttendanceError):
    code = "verification_cancelled"
    status_code = 409


class ScheduleConflict(AttendanceError):
    code = "schedule_conflict"
    status_code = 409
