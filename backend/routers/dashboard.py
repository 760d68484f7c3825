from datetime import datetime

from fastapi import APIRouter, Depends

from backend.schemas import Attendee, Presenter, TimetableEntry
from backend.security import current_member
from backend.services.feeds import load_feeds
from backend.services.schedule import compute_status

router = APIRouter()


@router.get("/dashboard")
def dashboard(member: Presenter | Attendee = Depends(current_member)):
    feeds = load_feeds(member)
    # a failed timetable feed has no items, so the schedule is simply empty
    entries = [TimetableEntry.model_validate(item) for item in feeds["timetable"]["items"]]
    status = compute_status(entries, datetime.now())
    return {
        "role": member.kind,
        "profile": member.public(),
        "schedule": {"current_id": status.current_id, "next_id": status.next_id},
        "feeds": feeds,
    }
