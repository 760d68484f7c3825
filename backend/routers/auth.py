import base64
import binascii
import sqlite3
import time
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from backend.imaging import decode_image
from backend.schemas import Attendee, Presenter
from backend.security import current_member, issue_session_token
from backend.services.matcher import strip_data_url
from database.db import create_member, create_tables, verify_member_credentials

router = APIRouter()


class MemberLogin(BaseModel):
    email: str
    password: str


class MemberRegister(BaseModel):
    email: str
    password: str
    role: Literal["presenter", "attendee"]
    name: str
    department: str
    subjects: list[str] = Field(default_factory=list)
    roll_no: str | None = None
    reference_face: str | None = None  # base64 JPG/PNG, data URL allowed
    profile_picture: str | None = None


def _token_response(member: Presenter | Attendee) -> dict:
    token, claims = issue_session_token(member.uid, role=member.kind)
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "uid": claims["sub"],
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
        "profile": member.public(),
    }


def _check_reference_face(value: str | None) -> str:
    if not value or not value.strip():
        raise HTTPException(status_code=400, detail="A reference face image is required.")
    try:
        raw = base64.b64decode(strip_data_url(value.strip()), validate=True)
        decode_image(raw)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Reference face must be a JPG/PNG image.")
    return value.strip()


@router.post("/auth/register", status_code=201)
def register(payload: MemberRegister):
    name = payload.name.strip()
    department = payload.department.strip()
    if not name or not department:
        raise HTTPException(status_code=400, detail="Name and department are required.")
    if len(payload.password.strip()) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters.")

    subjects = list(dict.fromkeys(s.strip() for s in payload.subjects if s.strip()))
    profile: dict = {
        "kind": payload.role,
        "name": name,
        "department": department,
        "subjects": subjects,
    }
    if payload.role == "attendee":
        roll_no = (payload.roll_no or "").strip()
        if not roll_no:
            raise HTTPException(status_code=400, detail="Roll number is required.")
        profile["roll_no"] = roll_no
        profile["reference_face"] = _check_reference_face(payload.reference_face)
    else:
        profile["profile_picture"] = payload.profile_picture

    try:
        member = create_member(payload.email, payload.password, profile)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Email is already registered.")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return _token_response(member)


@router.post("/auth/login")
def login(payload: MemberLogin):
    email = payload.email.strip()
    password = payload.password.strip()

    if not email:
        raise HTTPException(status_code=400, detail="Email is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        member = verify_member_credentials(email, password)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup/lifespan skipped).
        try:
            create_tables()
            member = verify_member_credentials(email, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not member:
        raise HTTPException(status_code=401, detail="Invalid email or password.")

    return _token_response(member)


@router.get("/auth/me")
def auth_me(member: Presenter | Attendee = Depends(current_member)):
    return {"role": member.kind, "profile": member.public()}
