import logging
import sqlite3
from typing import Callable

from backend.errors import AttendanceError, PermissionDenied, StoreUnavailable
from backend.schemas import AttendanceRecord, Attendee, Presenter, TimetableEntry
from database import db

logger = logging.getLogger(__name__)


def _store_call(feed: str, fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except sqlite3.Error as exc:
        logger.error("Loading %s failed: %s", feed, exc)
        raise StoreUnavailable(f"Unable to load {feed}. The store is unavailable.") from exc


def load_timetable(member: Presenter | Attendee) -> list[TimetableEntry]:
    return _store_call("timetable", db.list_timetable, member.department)


def load_roster(member: Presenter | Attendee) -> list[Attendee]:
    if not isinstance(member, Presenter):
        raise PermissionDenied("Permission denied: Unable to load students. Check your account permissions.")
    return _store_call("students", db.list_attendees, member.department)


def load_attendance(
    member: Presenter | Attendee,
    *,
    attendee_id: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
) -> list[AttendanceRecord]:
    if isinstance(member, Presenter):
        return _store_call(
            "attendance",
            db.list_attendance_records,
            subjects=member.subjects,
            attendee_id=attendee_id,
            start_date=start_date,
            end_date=end_date,
        )
    if attendee_id and attendee_id != member.uid:
        raise PermissionDenied("Permission denied: Unable to load attendance. Check your account permissions.")
    return _store_call(
        "attendance",
        db.list_attendance_records,
        attendee_id=member.uid,
        start_date=start_date,
        end_date=end_date,
    )


def _serialize(items) -> list[dict]:
    return [item.public() if isinstance(item, Attendee) else item.model_dump() for item in items]


PRESENTER_FEEDS: dict[str, Callable] = {
    "timetable": load_timetable,
    "roster": load_roster,
    "attendance": load_attendance,
}
ATTENDEE_FEEDS: dict[str, Callable] = {
    "timetable": load_timetable,
    "attendance": load_attendance,
}


def load_feeds(member: Presenter | Attendee) -> dict[str, dict]:
    """
    Load every feed for the member's role. A failing feed carries its own
    error and does not stop the others from loading.
    """
    loaders = PRESENTER_FEEDS if isinstance(member, Presenter) else ATTENDEE_FEEDS
    feeds = {}
    for name, loader in loaders.items():
        try:
            feeds[name] = {"items": _serialize(loader(member)), "error": None}
        except AttendanceError as exc:
            logger.warning("Feed %s failed: %s", name, exc.message)
            feeds[name] = {"items": [], "error": exc.message}
    return feeds
