import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, Field

from backend.dependencies import get_ledger, get_pipeline
from backend.errors import MalformedToken, PermissionDenied
from backend.imaging import ALLOWED_IMAGE_TYPES, decode_image, decode_qr
from backend.schemas import AttendanceRecord, Attendee, Location, Presenter
from backend.security import current_member, require_attendee, require_presenter
from backend.services.feeds import load_attendance
from backend.services.ledger import AttendanceLedgerOps
from backend.services.verification import Decision, VerificationPipeline
from database.db import get_attendance_record, get_member

logger = logging.getLogger(__name__)

router = APIRouter()


class ScanPayload(BaseModel):
    token: str
    location: Location


class ManualMark(BaseModel):
    attendee_id: str
    subject: str
    status: Literal["present", "absent"] = "present"


class DeleteRequest(BaseModel):
    ids: list[str] = Field(default_factory=list)


def _tally(records: list[AttendanceRecord], key) -> list[dict]:
    groups: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    for r in records:
        counts = groups[key(r)]
        counts[1] += 1
        if r.status == "present":
            counts[0] += 1
    return [
        {"key": k, "present": present, "total": total, "percentage": _percentage(present, total)}
        for k, (present, total) in sorted(groups.items())
    ]


def _percentage(present: int, total: int) -> float:
    return round(present * 100 / total, 1) if total else 0.0


async def _read_image(file: UploadFile) -> bytes:
    if file.content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")
    return await file.read()


# -----------------------------
# Verification (attendee)
# -----------------------------
@router.post("/attendance/scan")
async def scan_token(
    payload: ScanPayload,
    attendee: Attendee = Depends(require_attendee),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    async def locate() -> Location:
        return payload.location

    attempt = await pipeline.scan(attendee, payload.token, locate)
    return attempt.as_dict()


@router.post("/attendance/scan/image")
async def scan_token_image(
    file: UploadFile = File(...),
    lat: float = Form(..., ge=-90, le=90),
    lon: float = Form(..., ge=-180, le=180),
    attendee: Attendee = Depends(require_attendee),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    data = await _read_image(file)
    try:
        text = await asyncio.to_thread(decode_qr, data)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid image data.")
    if not text:
        raise MalformedToken("No QR code found in the image.")

    location = Location(lat=lat, lon=lon)

    async def locate() -> Location:
        return location

    attempt = await pipeline.scan(attendee, text, locate)
    return attempt.as_dict()


@router.post("/attendance/verify")
async def verify_face(
    file: UploadFile = File(...),
    attendee: Attendee = Depends(require_attendee),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    data = await _read_image(file)
    try:
        await asyncio.to_thread(decode_image, data)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid image data.")

    outcome = await pipeline.submit_capture(attendee, data)
    return {
        "decision": outcome.decision.value,
        "message": outcome.message,
        "retry_available": outcome.decision is Decision.RETRY,
        "attempt": outcome.attempt.as_dict(),
        "record": outcome.record.model_dump() if outcome.record else None,
    }


@router.delete("/attendance/scan")
async def cancel_scan(
    attendee: Attendee = Depends(require_attendee),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    return {"ok": True, "cancelled": pipeline.cancel(attendee.uid)}


# -----------------------------
# Records + Summary
# -----------------------------
@router.get("/attendance")
def attendance(
    attendee_id: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    member: Presenter | Attendee = Depends(current_member),
):
    records = load_attendance(member, attendee_id=attendee_id, start_date=start_date, end_date=end_date)
    return [r.model_dump() for r in records]


@router.get("/attendance/summary")
def summary(
    start_date: str | None = None,
    end_date: str | None = None,
    member: Presenter | Attendee = Depends(current_member),
):
    records = load_attendance(member, start_date=start_date, end_date=end_date)
    present = sum(1 for r in records if r.status == "present")
    return {
        "present": present,
        "total": len(records),
        "percentage": _percentage(present, len(records)),
        "by_attendee": _tally(records, lambda r: r.attendee_id),
        "by_subject": _tally(records, lambda r: r.subject),
    }


# -----------------------------
# Presenter overrides + deletes
# -----------------------------
@router.post("/attendance/manual", status_code=201)
async def manual_mark(
    payload: ManualMark,
    presenter: Presenter = Depends(require_presenter),
    ledger: AttendanceLedgerOps = Depends(get_ledger),
):
    subject = payload.subject.strip()
    if subject not in presenter.subjects:
        raise PermissionDenied("Permission denied: you can only mark attendance for your own subjects.")

    attendee = await asyncio.to_thread(get_member, payload.attendee_id)
    if not isinstance(attendee, Attendee) or attendee.department != presenter.department:
        raise HTTPException(status_code=404, detail="Student not found.")

    record = await ledger.insert(
        AttendanceRecord(
            attendee_id=attendee.uid,
            attendee_name=attendee.name,
            subject=subject,
            date=datetime.now().date().isoformat(),
            status=payload.status,
        )
    )
    logger.info("Manual %s mark for %s in %s", record.status, attendee.uid, subject)
    return record.model_dump()


@router.post("/attendance/delete")
async def delete_records(
    payload: DeleteRequest,
    presenter: Presenter = Depends(require_presenter),
    ledger: AttendanceLedgerOps = Depends(get_ledger),
):
    requested = list(dict.fromkeys(i for i in payload.ids if i))
    if not requested:
        return {"ok": True, "deleted": 0, "skipped": 0}

    # only records of the presenter's own subjects are deletable
    owned = {r.id for r in await asyncio.to_thread(load_attendance, presenter)}
    ids = [i for i in requested if i in owned]
    deleted = await ledger.delete_many(ids)
    return {"ok": True, "deleted": deleted, "skipped": len(requested) - len(ids)}


@router.post("/attendance/purge")
async def purge_records(
    presenter: Presenter = Depends(require_presenter),
    ledger: AttendanceLedgerOps = Depends(get_ledger),
):
    if not presenter.subjects:
        raise PermissionDenied("Operation cancelled: no subjects are assigned to your profile.")
    report = await ledger.purge_by_subjects(presenter.subjects)
    logger.info("Purge for %s deleted %d of %d records", presenter.uid, report.deleted, report.matched)
    return report.as_dict()


@router.delete("/attendance/{record_id}")
async def delete_record(
    record_id: str,
    presenter: Presenter = Depends(require_presenter),
    ledger: AttendanceLedgerOps = Depends(get_ledger),
):
    record = await asyncio.to_thread(get_attendance_record, record_id)
    if record is None or record.subject not in presenter.subjects:
        raise HTTPException(status_code=404, detail="Attendance record not found.")
    deleted = await ledger.delete_one(record_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Attendance record not found.")
    return {"ok": True, "deleted": record_id}
