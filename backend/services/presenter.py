import asyncio
import logging
from datetime import datetime
from typing import Callable

from backend.config import COUNTDOWN_TICK_SECONDS, QR_REFRESH_INTERVAL_MS
from backend.errors import (
    AttendanceError,
    ExternalServiceUnavailable,
    PermissionDenied,
    PresenterDriftExceeded,
    SessionNotActive,
)
from backend.schemas import Location, SessionToken
from backend.services.geofence import GeofenceMonitor, ReportedLocation
from backend.services.token_session import Clock, TokenSession

logger = logging.getLogger(__name__)

EventListener = Callable[[str, object], None]


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class PresenterSessionRunner:
    """
    Scheduling loop for one presenter session: a refresh timer driving the
    geofence monitor and an independent countdown timer for display. Both
    timers are cancelled whenever the session stops, however it stops.
    """

    def __init__(
        self,
        session: TokenSession,
        monitor: GeofenceMonitor,
        *,
        refresh_interval_ms: int = QR_REFRESH_INTERVAL_MS,
        countdown_tick_seconds: float = COUNTDOWN_TICK_SECONDS,
        on_event: EventListener | None = None,
    ):
        self.session = session
        self.monitor = monitor
        self.refresh_interval = refresh_interval_ms / 1000
        self.countdown_tick = countdown_tick_seconds
        self.countdown = 0
        self.last_error: AttendanceError | None = None
        self._on_event = on_event
        self._tasks: list[asyncio.Task] = []
        session.add_stop_listener(self._cancel_timers)

    @property
    def timers_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def countdown_seconds(self) -> float:
        return self.countdown * self.countdown_tick

    def start(self, location: Location) -> SessionToken:
        # needs a running loop: timers are tasks on it
        self._cancel_timers()
        token = self.session.start(location)
        self.last_error = None
        self._reset_countdown()
        self._tasks = [
            asyncio.create_task(self._refresh_loop(), name=f"refresh-{self.session.session_id}"),
            asyncio.create_task(self._countdown_loop(), name=f"countdown-{self.session.session_id}"),
        ]
        logger.info("Session %s started", self.session.session_id)
        self._emit("started", token)
        return token

    async def stop(self) -> None:
        current = _current_task()
        pending = [task for task in self._tasks if task is not current]
        self.session.stop()
        self._cancel_timers()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        self._emit("stopped", None)

    async def _refresh_loop(self) -> None:
        while self.session.active:
            await asyncio.sleep(self.refresh_interval)
            try:
                token = await self.monitor.tick()
            except PresenterDriftExceeded as exc:
                # monitor already stopped the session, which cancelled the countdown
                self.last_error = exc
                self._emit("drift", exc)
                return
            except SessionNotActive:
                return
            except (ExternalServiceUnavailable, PermissionDenied) as exc:
                logger.warning("Session %s location refresh failed: %s", self.session.session_id, exc.message)
                self.last_error = exc
                self._emit("location_error", exc)
                continue
            self.last_error = None
            self._reset_countdown()
            self._emit("refreshed", token)

    async def _countdown_loop(self) -> None:
        while self.session.active:
            await asyncio.sleep(self.countdown_tick)
            self.countdown = max(0, self.countdown - 1)

    def _reset_countdown(self) -> None:
        self.countdown = max(1, round(self.refresh_interval / self.countdown_tick))

    def _cancel_timers(self) -> None:
        current = _current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

    def _emit(self, kind: str, payload: object) -> None:
        if self._on_event is not None:
            self._on_event(kind, payload)


class SessionRegistry:
    """Active presenter sessions, keyed by presenter id. Owned by the app."""

    def __init__(self, clock: Clock = datetime.now, **runner_options):
        self._clock = clock
        self._runner_options = runner_options
        self._runners: dict[str, PresenterSessionRunner] = {}
        self._feeds: dict[str, ReportedLocation] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def location_feed(self, presenter_id: str) -> ReportedLocation:
        feed = self._feeds.get(presenter_id)
        if feed is None:
            feed = self._feeds[presenter_id] = ReportedLocation(clock=self._clock)
        return feed

    def get(self, presenter_id: str) -> PresenterSessionRunner | None:
        return self._runners.get(presenter_id)

    def _lock(self, presenter_id: str) -> asyncio.Lock:
        lock = self._locks.get(presenter_id)
        if lock is None:
            lock = self._locks[presenter_id] = asyncio.Lock()
        return lock

    async def start(self, presenter_id: str, location: Location) -> PresenterSessionRunner:
        # start/stop for one presenter never interleave across the awaits below
        async with self._lock(presenter_id):
            await self._stop_runner(presenter_id)
            feed = self.location_feed(presenter_id)
            feed.report(location)

            session = TokenSession(clock=self._clock)
            monitor = GeofenceMonitor(session, feed)
            runner = PresenterSessionRunner(session, monitor, **self._runner_options)
            runner.start(location)
            self._runners[presenter_id] = runner
            return runner

    async def stop(self, presenter_id: str) -> bool:
        async with self._lock(presenter_id):
            return await self._stop_runner(presenter_id)

    async def _stop_runner(self, presenter_id: str) -> bool:
        runner = self._runners.pop(presenter_id, None)
        if runner is None:
            return False
        was_active = runner.session.active
        await runner.stop()
        return was_active

    async def shutdown(self) -> None:
        for presenter_id in list(self._runners):
            await self.stop(presenter_id)
