import logging
from datetime import datetime
from typing import Awaitable, Callable

from backend.config import MAX_PRESENTER_DRIFT_METERS, PRESENTER_LOCATION_MAX_AGE_MS
from backend.errors import LocationUnavailable, PresenterDriftExceeded, SessionNotActive
from backend.geo import within
from backend.schemas import Location, SessionToken
from backend.services.token_session import Clock, TokenSession, epoch_ms

logger = logging.getLogger(__name__)

LocationProvider = Callable[[], Awaitable[Location]]


class ReportedLocation:
    """Latest position pushed by the presenter's device, sampled on each tick."""

    def __init__(self, clock: Clock = datetime.now, max_age_ms: int = PRESENTER_LOCATION_MAX_AGE_MS):
        self.max_age_ms = max_age_ms
        self._clock = clock
        self._fix: tuple[Location, int] | None = None

    def report(self, location: Location) -> None:
        self._fix = (location, epoch_ms(self._clock()))

    async def __call__(self) -> Location:
        if self._fix is None:
            raise LocationUnavailable("Could not update location: no position has been reported yet.")
        location, reported_at = self._fix
        if epoch_ms(self._clock()) - reported_at > self.max_age_ms:
            raise LocationUnavailable(
                "Could not update location: the last reported position is stale. "
                "Please ensure location services are enabled."
            )
        return location


class GeofenceMonitor:
    def __init__(
        self,
        session: TokenSession,
        locate: LocationProvider,
        max_drift_meters: float = MAX_PRESENTER_DRIFT_METERS,
    ):
        self.session = session
        self.locate = locate
        self.max_drift_meters = max_drift_meters

    async def tick(self) -> SessionToken:
        """
        Sample the presenter, compare against the anchor and either refresh the
        token or force the session to stop. Raises PresenterDriftExceeded on stop.
        """
        if not self.session.active:
            raise SessionNotActive("Session is not active.")

        location = await self.locate()
        # stopped while we were waiting on the sample
        if not self.session.active or self.session.anchor is None:
            raise SessionNotActive("Session is not active.")

        ok, distance = within(self.session.anchor, location, self.max_drift_meters)
        if not ok:
            self.session.stop()
            logger.warning(
                "Session %s stopped: presenter drifted %.1fm (limit %.1fm)",
                self.session.session_id,
                distance,
                self.max_drift_meters,
            )
            raise PresenterDriftExceeded(
                f"Session stopped: You moved more than {self.max_drift_meters:g}m "
                "from your starting location.",
                distance_meters=distance,
            )

        return self.session.refresh(location)
