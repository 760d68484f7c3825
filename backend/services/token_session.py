import logging
import secrets
from datetime import datetime
from enum import Enum
from typing import Callable

from backend.errors import SessionNotActive
from backend.schemas import Location, SessionToken

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class SessionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class TokenSession:
    """
    Presenter-side token state: Idle -> Active(location, issued_at) -> Idle.

    ``anchor`` is the location passed to start() and stays fixed for the life
    of the session; refresh() only replaces the advertised location. Every
    emitted token carries a fresh nonce so two emissions never render the
    same barcode.
    """

    def __init__(self, session_id: str | None = None, clock: Clock = datetime.now):
        self.session_id = session_id or secrets.token_hex(8)
        self.state = SessionState.IDLE
        self.anchor: Location | None = None
        self.location: Location | None = None
        self.issued_at: int | None = None
        self._clock = clock
        self._token: SessionToken | None = None
        self._stop_listeners: list[Callable[[], None]] = []

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    @property
    def token(self) -> SessionToken | None:
        return self._token

    def add_stop_listener(self, listener: Callable[[], None]) -> None:
        self._stop_listeners.append(listener)

    def start(self, location: Location) -> SessionToken:
        if self.active:
            logger.info("Session %s re-anchored by a new start", self.session_id)
        self.state = SessionState.ACTIVE
        self.anchor = location
        self.location = location
        self.issued_at = epoch_ms(self._clock())
        return self._emit()

    def refresh(self, location: Location) -> SessionToken:
        if not self.active or self.issued_at is None:
            raise SessionNotActive("No active session to refresh.")
        # issued_at must strictly increase even if the clock stalls or steps back
        self.issued_at = max(epoch_ms(self._clock()), self.issued_at + 1)
        self.location = location
        return self._emit()

    def stop(self) -> None:
        if not self.active:
            return
        self.state = SessionState.IDLE
        self.anchor = None
        self.location = None
        self.issued_at = None
        self._token = None
        for listener in self._stop_listeners:
            listener()
        logger.info("Session %s stopped", self.session_id)

    def _emit(self) -> SessionToken:
        self._token = SessionToken(
            location=self.location,
            issued_at=self.issued_at,
            nonce=secrets.token_hex(8),
        )
        return self._token
