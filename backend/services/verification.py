import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Protocol

from pydantic import ValidationError

from backend.config import (
    ACCEPT_THRESHOLD,
    MAX_ATTENDEE_DISTANCE_METERS,
    QR_REFRESH_INTERVAL_MS,
    RETRY_THRESHOLD,
    TOKEN_GRACE_MS,
)
from backend.errors import (
    AttendanceError,
    LowConfidence,
    MalformedToken,
    NoActiveClass,
    NoMatch,
    NoPendingScan,
    TokenExpired,
    TooFar,
    VerificationCancelled,
    VerificationInProgress,
)
from backend.geo import within
from backend.schemas import (
    AttendanceRecord,
    Attendee,
    Location,
    SessionToken,
    TimetableEntry,
    VerificationResult,
)
from backend.services.schedule import find_active_entry
from backend.services.token_session import Clock, epoch_ms

logger = logging.getLogger(__name__)

LocationProvider = Callable[[], Awaitable[Location]]
TimetableSource = Callable[[Attendee], Awaitable[list[TimetableEntry]]]


class Matcher(Protocol):
    async def verify(self, reference: str, live: bytes) -> VerificationResult: ...


class Ledger(Protocol):
    async def insert(self, record: AttendanceRecord) -> AttendanceRecord: ...


class VerificationState(str, Enum):
    IDLE = "idle"
    TOKEN_SCANNED = "token_scanned"
    LOCATION_CHECKED = "location_checked"
    AWAITING_BIOMETRIC = "awaiting_biometric"
    RESOLVED = "resolved"


class Decision(str, Enum):
    ACCEPT = "accept"
    RETRY = "retry"
    REJECT = "reject"


def _percent(value: float) -> int:
    return round(value * 100)


def parse_token(raw: str | bytes) -> SessionToken:
    try:
        return SessionToken.model_validate_json(raw)
    except ValidationError as exc:
        raise MalformedToken("Invalid QR code data.") from exc


def check_freshness(
    token: SessionToken,
    now_ms: int,
    *,
    refresh_interval_ms: int = QR_REFRESH_INTERVAL_MS,
    grace_ms: int = TOKEN_GRACE_MS,
) -> int:
    age = now_ms - token.issued_at
    if age > refresh_interval_ms + grace_ms:
        raise TokenExpired("QR code has expired. Please scan a new one.")
    return age


def check_distance(
    token: SessionToken,
    attendee_location: Location,
    *,
    max_distance_meters: float = MAX_ATTENDEE_DISTANCE_METERS,
) -> float:
    ok, distance = within(token.location, attendee_location, max_distance_meters)
    if not ok:
        raise TooFar(
            f"You are {round(distance)}m away. You must be within {max_distance_meters:g}m.",
            distance_meters=distance,
        )
    return distance


def decide(
    result: VerificationResult,
    retry_used: bool,
    *,
    accept_threshold: float = ACCEPT_THRESHOLD,
    retry_threshold: float = RETRY_THRESHOLD,
) -> Decision:
    if result.match and result.confidence >= accept_threshold:
        return Decision.ACCEPT
    if result.match and result.confidence >= retry_threshold and not retry_used:
        return Decision.RETRY
    return Decision.REJECT


def rejection(result: VerificationResult, accept_threshold: float = ACCEPT_THRESHOLD) -> AttendanceError:
    confidence = _percent(result.confidence)
    if not result.match:
        return NoMatch(
            "Face not recognized. The system could not confirm your identity. "
            f"(Confidence: {confidence}%)"
        )
    return LowConfidence(
        f"Face match confidence was too low ({confidence}%). "
        f"Required: {_percent(accept_threshold)}%. "
        "Please ensure your face is clear and in good lighting."
    )


@dataclass
class VerificationAttempt:
    attendee: Attendee
    attempt_id: str = field(default_factory=lambda: secrets.token_hex(8))
    state: VerificationState = VerificationState.IDLE
    token: SessionToken | None = None
    distance_meters: float | None = None
    result: VerificationResult | None = None
    retry_used: bool = False
    busy: bool = False
    cancelled: bool = False
    succeeded: bool | None = None
    message: str = ""

    def as_dict(self) -> dict:
        return {
            "attempt_id": self.attempt_id,
            "state": self.state.value,
            "retry_used": self.retry_used,
            "distance_meters": self.distance_meters,
            "succeeded": self.succeeded,
            "message": self.message,
        }


@dataclass
class VerificationOutcome:
    decision: Decision
    message: str
    attempt: VerificationAttempt
    record: AttendanceRecord | None = None


class VerificationPipeline:
    """
    Attendee-side verification, one attempt per attendee at a time:

        Idle -> TokenScanned -> LocationChecked -> AwaitingBiometric -> Resolved

    A confidence between the retry and accept thresholds earns exactly one
    more capture per scan. Every failure resolves the attempt without writing;
    an accepted capture writes one attendance record. A fresh scan replaces an
    idle attempt (and its retry state) but is refused while an external call
    for that attendee is still pending.
    """

    def __init__(
        self,
        matcher: Matcher,
        ledger: Ledger,
        timetable_source: TimetableSource,
        clock: Clock = datetime.now,
        *,
        accept_threshold: float = ACCEPT_THRESHOLD,
        retry_threshold: float = RETRY_THRESHOLD,
        refresh_interval_ms: int = QR_REFRESH_INTERVAL_MS,
        grace_ms: int = TOKEN_GRACE_MS,
        max_distance_meters: float = MAX_ATTENDEE_DISTANCE_METERS,
    ):
        self.matcher = matcher
        self.ledger = ledger
        self.timetable_source = timetable_source
        self.accept_threshold = accept_threshold
        self.retry_threshold = min(retry_threshold, accept_threshold)
        self.refresh_interval_ms = refresh_interval_ms
        self.grace_ms = grace_ms
        self.max_distance_meters = max_distance_meters
        self._clock = clock
        self._attempts: dict[str, VerificationAttempt] = {}

    def current(self, attendee_id: str) -> VerificationAttempt | None:
        return self._attempts.get(attendee_id)

    def cancel(self, attendee_id: str) -> bool:
        """Drop the attendee's attempt; a pending call finishes without effect."""
        attempt = self._attempts.pop(attendee_id, None)
        if attempt is None:
            return False
        attempt.cancelled = True
        attempt.state = VerificationState.RESOLVED
        attempt.succeeded = False
        attempt.message = "Verification was cancelled."
        return True

    async def scan(
        self,
        attendee: Attendee,
        raw_token: str | bytes,
        locate: LocationProvider,
    ) -> VerificationAttempt:
        existing = self._attempts.get(attendee.uid)
        if existing is not None and existing.busy:
            raise VerificationInProgress("A verification is already in progress. Please wait for it to finish.")
        if existing is not None:
            existing.cancelled = True

        attempt = VerificationAttempt(attendee=attendee)
        self._attempts[attendee.uid] = attempt
        attempt.busy = True
        try:
            attempt.token = parse_token(raw_token)
            check_freshness(
                attempt.token,
                epoch_ms(self._clock()),
                refresh_interval_ms=self.refresh_interval_ms,
                grace_ms=self.grace_ms,
            )
            attempt.state = VerificationState.TOKEN_SCANNED

            location = await locate()
            self._ensure_live(attempt)
            attempt.distance_meters = check_distance(
                attempt.token,
                location,
                max_distance_meters=self.max_distance_meters,
            )
            attempt.state = VerificationState.LOCATION_CHECKED

            attempt.state = VerificationState.AWAITING_BIOMETRIC
            attempt.message = "Location verified. Please confirm your identity."
            return attempt
        except AttendanceError as exc:
            self._resolve(attempt, False, exc.message)
            raise
        finally:
            attempt.busy = False

    async def submit_capture(self, attendee: Attendee, live_image: bytes) -> VerificationOutcome:
        attempt = self._attempts.get(attendee.uid)
        if attempt is None or attempt.state is not VerificationState.AWAITING_BIOMETRIC:
            raise NoPendingScan("Session data not found. Please scan the QR code again.")
        if attempt.busy:
            raise VerificationInProgress("A verification is already in progress. Please wait for it to finish.")

        attempt.busy = True
        try:
            result = await self.matcher.verify(attendee.reference_face, live_image)
            self._ensure_live(attempt)
            attempt.result = result

            decision = decide(
                result,
                attempt.retry_used,
                accept_threshold=self.accept_threshold,
                retry_threshold=self.retry_threshold,
            )
            if decision is Decision.RETRY:
                attempt.retry_used = True
                attempt.message = (
                    f"Almost there! Confidence is {_percent(result.confidence)}%. "
                    f"The minimum required is {_percent(self.accept_threshold)}%. "
                    "Please try again in better lighting."
                )
                return VerificationOutcome(decision, attempt.message, attempt)
            if decision is Decision.REJECT:
                raise rejection(result, self.accept_threshold)

            now = self._clock()
            entry = find_active_entry(await self.timetable_source(attendee), now)
            self._ensure_live(attempt)
            if entry is None:
                raise NoActiveClass("No class scheduled at this time.")

            record = await self.ledger.insert(
                AttendanceRecord(
                    attendee_id=attendee.uid,
                    attendee_name=attendee.name,
                    subject=entry.subject,
                    date=now.date().isoformat(),
                    status="present",
                )
            )
            message = f"Attendance marked for {entry.subject}!"
            self._resolve(attempt, True, message)
            logger.info("Attendance marked for %s in %s", attendee.uid, entry.subject)
            return VerificationOutcome(decision, message, attempt, record)
        except AttendanceError as exc:
            self._resolve(attempt, False, exc.message)
            logger.info("Verification for %s failed: %s", attendee.uid, exc.code)
            raise
        finally:
            attempt.busy = False

    def _ensure_live(self, attempt: VerificationAttempt) -> None:
        if attempt.cancelled:
            raise VerificationCancelled("Verification was cancelled.")

    def _resolve(self, attempt: VerificationAttempt, succeeded: bool, message: str) -> None:
        if attempt.cancelled and attempt.state is VerificationState.RESOLVED:
            return
        attempt.state = VerificationState.RESOLVED
        attempt.succeeded = succeeded
        attempt.message = message
        if self._attempts.get(attempt.attendee.uid) is attempt:
            del self._attempts[attempt.attendee.uid]
