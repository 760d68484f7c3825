from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.config import DEFAULT_CLASS_DURATION_MINUTES, MAX_ENTRIES_PER_DAY
from backend.errors import ScheduleConflict
from backend.schemas import Attendee, Presenter, TimetableEntry
from backend.security import current_member, require_presenter
from backend.services.feeds import load_timetable
from backend.services.schedule import DAYS_OF_WEEK, compute_status, day_label, find_conflict, parse_clock
from database.db import (
    add_timetable_entry,
    delete_timetable_entry,
    get_timetable_entry,
    list_timetable,
    update_timetable_entry,
)

router = APIRouter()


class TimetablePayload(BaseModel):
    day: str
    start_time: str
    subject: str
    duration_minutes: int = DEFAULT_CLASS_DURATION_MINUTES


def _clean(payload: TimetablePayload, presenter: Presenter) -> TimetablePayload:
    day = payload.day.strip().capitalize()
    subject = payload.subject.strip()
    if day not in DAYS_OF_WEEK:
        raise HTTPException(status_code=400, detail=f"Day must be one of {', '.join(DAYS_OF_WEEK)}.")
    try:
        minutes = parse_clock(payload.start_time)
    except ValueError:
        minutes = None
    if minutes is None or not subject or payload.duration_minutes <= 0:
        raise HTTPException(status_code=400, detail="Time, Subject, and a valid Duration are required.")
    if subject not in presenter.subjects:
        raise HTTPException(status_code=400, detail="Subject is not assigned to your profile.")
    return TimetablePayload(
        day=day,
        start_time=f"{minutes // 60:02d}:{minutes % 60:02d}",
        subject=subject,
        duration_minutes=payload.duration_minutes,
    )


def _check_overlap(entries: list[TimetableEntry], payload: TimetablePayload, exclude_id: str | None = None):
    clash = find_conflict(
        entries,
        day=payload.day,
        start_time=payload.start_time,
        duration_minutes=payload.duration_minutes,
        exclude_id=exclude_id,
    )
    if clash is not None:
        raise ScheduleConflict(f'Conflict: This overlaps with "{clash.subject}" at {clash.start_time}.')


def _own_entry(entry_id: str, presenter: Presenter) -> TimetableEntry:
    entry = get_timetable_entry(entry_id)
    if entry is None or entry.department != presenter.department:
        raise HTTPException(status_code=404, detail="Timetable entry not found.")
    return entry


@router.get("/timetable")
def timetable(member: Presenter | Attendee = Depends(current_member)):
    return [e.model_dump() for e in load_timetable(member)]


@router.get("/timetable/status")
def timetable_status(member: Presenter | Attendee = Depends(current_member)):
    now = datetime.now()
    status = compute_status(load_timetable(member), now)
    return {
        "current_id": status.current_id,
        "next_id": status.next_id,
        "day": day_label(now),
        "time": now.strftime("%H:%M"),
    }


@router.post("/timetable", status_code=201)
def create_entry(payload: TimetablePayload, presenter: Presenter = Depends(require_presenter)):
    clean = _clean(payload, presenter)
    entries = list_timetable(presenter.department)

    same_day = [e for e in entries if e.day == clean.day]
    if len(same_day) >= MAX_ENTRIES_PER_DAY:
        raise HTTPException(
            status_code=400,
            detail=f"Maximum of {MAX_ENTRIES_PER_DAY} classes per day reached for {clean.day}.",
        )
    _check_overlap(entries, clean)

    entry = add_timetable_entry(
        day=clean.day,
        start_time=clean.start_time,
        subject=clean.subject,
        duration_minutes=clean.duration_minutes,
        owner_id=presenter.uid,
        owner_name=presenter.name,
        department=presenter.department,
    )
    return entry.model_dump()


@router.put("/timetable/{entry_id}")
def update_entry(entry_id: str, payload: TimetablePayload, presenter: Presenter = Depends(require_presenter)):
    existing = _own_entry(entry_id, presenter)
    clean = _clean(payload, presenter)
    _check_overlap(list_timetable(presenter.department), clean, exclude_id=existing.id)

    updated = existing.model_copy(
        update={
            "day": clean.day,
            "start_time": clean.start_time,
            "subject": clean.subject,
            "duration_minutes": clean.duration_minutes,
            "owner_id": presenter.uid,
            "owner_name": presenter.name,
        }
    )
    if not update_timetable_entry(updated):
        raise HTTPException(status_code=404, detail="Timetable entry not found.")
    return updated.model_dump()


@router.delete("/timetable/{entry_id}")
def delete_entry(entry_id: str, presenter: Presenter = Depends(require_presenter)):
    existing = _own_entry(entry_id, presenter)
    if not delete_timetable_entry(existing.id):
        raise HTTPException(status_code=404, detail="Timetable entry not found.")
    return {"ok": True, "deleted": existing.id}
