import logging
from datetime import datetime
from typing import Iterable, NamedTuple

from backend.config import DEFAULT_CLASS_DURATION_MINUTES
from backend.schemas import TimetableEntry

logger = logging.getLogger(__name__)

DAYS_OF_WEEK = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


class ScheduleStatus(NamedTuple):
    current_id: str | None
    next_id: str | None


class _Span(NamedTuple):
    start: int
    end: int
    entry: TimetableEntry


def day_label(moment: datetime) -> str:
    # datetime.weekday() counts from Monday
    return DAYS_OF_WEEK[(moment.weekday() + 1) % 7]


def minute_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def parse_clock(value: str | None) -> int:
    """Parse ``HH:MM`` (trailing seconds tolerated) into minutes from midnight."""
    parts = (value or "").strip().split(":")
    if len(parts) < 2:
        raise ValueError(f"Bad time: {value!r}")
    hours, minutes = int(parts[0]), int(parts[1])
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"Bad time: {value!r}")
    return hours * 60 + minutes


def effective_duration(duration) -> int:
    try:
        minutes = int(duration)
    except (TypeError, ValueError):
        return DEFAULT_CLASS_DURATION_MINUTES
    return minutes if minutes > 0 else DEFAULT_CLASS_DURATION_MINUTES


def _spans_for_day(entries: Iterable[TimetableEntry], day: str) -> list[_Span]:
    spans = []
    for entry in entries:
        if entry.day != day:
            continue
        try:
            start = parse_clock(entry.start_time)
        except ValueError:
            logger.warning("Skipping timetable entry %s with bad start time %r", entry.id, entry.start_time)
            continue
        spans.append(_Span(start, start + effective_duration(entry.duration_minutes), entry))
    spans.sort(key=lambda span: span.start)
    return spans


def find_active_entry(entries: Iterable[TimetableEntry], now: datetime) -> TimetableEntry | None:
    now_minutes = minute_of_day(now)
    for span in _spans_for_day(entries, day_label(now)):
        if span.start <= now_minutes < span.end:
            return span.entry
    return None


def compute_status(entries: Iterable[TimetableEntry], now: datetime) -> ScheduleStatus:
    """
    Current class: today's entry whose [start, start + duration) holds ``now``.
    Next class: the earliest later start today, otherwise the first entry of the
    next non-empty day, scanning forward and wrapping around to today next week.
    """
    entries = list(entries)
    today = day_label(now)
    now_minutes = minute_of_day(now)

    current = find_active_entry(entries, now)
    next_id = None
    for span in _spans_for_day(entries, today):
        if span.start > now_minutes:
            next_id = span.entry.id
            break

    if next_id is None:
        today_index = DAYS_OF_WEEK.index(today)
        for offset in range(1, 8):
            spans = _spans_for_day(entries, DAYS_OF_WEEK[(today_index + offset) % 7])
            if spans:
                next_id = spans[0].entry.id
                break

    return ScheduleStatus(current.id if current else None, next_id)


def find_conflict(
    entries: Iterable[TimetableEntry],
    *,
    day: str,
    start_time: str,
    duration_minutes: int,
    exclude_id: str | None = None,
) -> TimetableEntry | None:
    """Return the first same-day entry whose interval overlaps the candidate."""
    new_start = parse_clock(start_time)
    new_end = new_start + effective_duration(duration_minutes)
    for span in _spans_for_day(entries, day):
        if exclude_id and span.entry.id == exclude_id:
            continue
        if new_start < span.end and span.start < new_end:
            return span.entry
    return None
