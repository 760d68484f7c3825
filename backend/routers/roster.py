import logging

from fastapi import APIRouter, Depends, HTTPException

from backend.schemas import Attendee, Presenter
from backend.security import require_presenter
from backend.services.feeds import load_roster
from database.db import delete_attendee, get_member

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/roster")
def roster(presenter: Presenter = Depends(require_presenter)):
    return [a.public() for a in load_roster(presenter)]


@router.delete("/roster/{uid}")
def remove_attendee(uid: str, presenter: Presenter = Depends(require_presenter)):
    member = get_member(uid)
    if not isinstance(member, Attendee) or member.department != presenter.department:
        raise HTTPException(status_code=404, detail="Student not found.")
    if not delete_attendee(uid):
        raise HTTPException(status_code=404, detail="Student not found.")
    logger.info("Attendee %s removed by %s", uid, presenter.uid)
    return {"ok": True, "deleted": uid}
