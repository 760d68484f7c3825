import base64
import sqlite3
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db
from backend.imaging import render_qr_png
from backend.schemas import VerificationResult
from backend.services.matcher import BiometricMatcher
from backend.services.schedule import day_label, minute_of_day

ROOM = {"lat": 12.9716, "lon": 77.5946}
NEXT_DOOR = {"lat": 12.97175, "lon": 77.5946}
FAR_AWAY = {"lat": 12.9816, "lon": 77.5946}


class FakeMatcher:
    def __init__(self, *results):
        self.results = [VerificationResult(match=m, confidence=c) for m, c in results]

    async def verify(self, reference, live):
        return self.results.pop(0)


@pytest.fixture()
def client(temp_db):
    with TestClient(main.app) as c:
        yield c


def _register(client, payload: dict) -> dict:
    res = client.post("/auth/register", json=payload)
    assert res.status_code == 201, res.text
    body = res.json()
    return {"uid": body["uid"], "headers": {"Authorization": f"Bearer {body['access_token']}"}}


def _presenter_payload(**overrides) -> dict:
    payload = {
        "email": "meera@college.edu",
        "password": "secret123",
        "role": "presenter",
        "name": "Meera Iyer",
        "department": "CSE",
        "subjects": ["Maths", "Physics"],
    }
    payload.update(overrides)
    return payload


def _attendee_payload(png_bytes: bytes, **overrides) -> dict:
    payload = {
        "email": "asha@college.edu",
        "password": "secret123",
        "role": "attendee",
        "name": "Asha Rao",
        "department": "CSE",
        "roll_no": "CSE-001",
        "reference_face": "data:image/png;base64," + base64.b64encode(png_bytes).decode("ascii"),
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def presenter(client):
    return _register(client, _presenter_payload())


@pytest.fixture()
def attendee(client, png_bytes):
    return _register(client, _attendee_payload(png_bytes))


def _add_current_class(client, presenter, subject: str = "Maths") -> dict:
    now = datetime.now()
    start = max(0, minute_of_day(now) - 5)
    res = client.post(
        "/timetable",
        json={
            "day": day_label(now),
            "start_time": f"{start // 60:02d}:{start % 60:02d}",
            "subject": subject,
            "duration_minutes": 60,
        },
        headers=presenter["headers"],
    )
    assert res.status_code == 201, res.text
    return res.json()


def _start_session(client, presenter) -> str:
    res = client.post("/sessions/start", json={"location": ROOM}, headers=presenter["headers"])
    assert res.status_code == 200, res.text
    return res.json()["qr_value"]


def _face(png_bytes):
    return {"file": ("face.png", png_bytes, "image/png")}


# -----------------------------
# Basics + auth
# -----------------------------
def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_protocol_config_reports_constants(client):
    body = client.get("/config/protocol").json()
    assert body["qr_refresh_interval_ms"] == config.QR_REFRESH_INTERVAL_MS
    assert body["token_grace_ms"] == config.TOKEN_GRACE_MS
    assert body["max_attendee_distance_meters"] == config.MAX_ATTENDEE_DISTANCE_METERS
    assert body["retry_threshold"] <= body["accept_threshold"]
    assert body["purge_batch_size"] == config.PURGE_BATCH_SIZE


def test_login_and_me(client, attendee):
    res = client.post("/auth/login", json={"email": "ASHA@college.edu", "password": "secret123"})
    assert res.status_code == 200
    body = res.json()
    assert body["role"] == "attendee"
    assert body["token_type"] == "bearer"

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.json()["profile"]["roll_no"] == "CSE-001"
    assert "reference_face" not in me.json()["profile"]


def test_login_rejects_invalid_credentials(client, attendee):
    res = client.post("/auth/login", json={"email": "asha@college.edu", "password": "wrong-pass"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid email or password."

    res = client.post("/auth/login", json={"email": " ", "password": "x"})
    assert res.status_code == 400


def test_register_validation(client, png_bytes):
    res = client.post("/auth/register", json=_attendee_payload(png_bytes, reference_face=None))
    assert res.status_code == 400

    bad_face = base64.b64encode(b"definitely not an image").decode("ascii")
    res = client.post("/auth/register", json=_attendee_payload(png_bytes, reference_face=bad_face))
    assert res.status_code == 400
    assert res.json()["detail"] == "Reference face must be a JPG/PNG image."

    res = client.post("/auth/register", json=_attendee_payload(png_bytes, roll_no=" "))
    assert res.status_code == 400

    res = client.post("/auth/register", json=_presenter_payload(password="123"))
    assert res.status_code == 400

    _register(client, _presenter_payload())
    res = client.post("/auth/register", json=_presenter_payload(email="MEERA@college.edu"))
    assert res.status_code == 409


def test_requires_bearer_token(client):
    assert client.get("/auth/me").status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Basic abc"}).status_code == 401


def test_role_guards(client, presenter, attendee):
    res = client.post("/sessions/start", json={"location": ROOM}, headers=attendee["headers"])
    assert res.status_code == 403
    assert res.json()["code"] == "permission_denied"

    assert client.get("/roster", headers=attendee["headers"]).status_code == 403
    assert client.post("/attendance/purge", headers=attendee["headers"]).status_code == 403

    res = client.post("/attendance/scan", json={"token": "{}", "location": ROOM}, headers=presenter["headers"])
    assert res.status_code == 403


# -----------------------------
# Timetable
# -----------------------------
def test_timetable_crud_and_conflicts(client, presenter, attendee):
    headers = presenter["headers"]
    res = client.post(
        "/timetable",
        json={"day": "monday", "start_time": "9:00", "subject": "Maths", "duration_minutes": 60},
        headers=headers,
    )
    assert res.status_code == 201
    maths = res.json()
    assert maths["day"] == "Monday"
    assert maths["start_time"] == "09:00"
    assert maths["owner_name"] == "Meera Iyer"

    res = client.post(
        "/timetable",
        json={"day": "Monday", "start_time": "09:30", "subject": "Physics"},
        headers=headers,
    )
    assert res.status_code == 409
    assert res.json() == {"detail": 'Conflict: This overlaps with "Maths" at 09:00.', "code": "schedule_conflict"}

    res = client.post(
        "/timetable",
        json={"day": "Monday", "start_time": "10:00", "subject": "Physics"},
        headers=headers,
    )
    assert res.status_code == 201
    physics = res.json()
    assert physics["duration_minutes"] == config.DEFAULT_CLASS_DURATION_MINUTES

    # editing an entry never conflicts with itself
    res = client.put(
        f"/timetable/{maths['id']}",
        json={"day": "Monday", "start_time": "09:15", "subject": "Maths", "duration_minutes": 45},
        headers=headers,
    )
    assert res.status_code == 200
    assert res.json()["id"] == maths["id"]

    res = client.put(
        f"/timetable/{maths['id']}",
        json={"day": "Monday", "start_time": "09:30", "subject": "Maths", "duration_minutes": 60},
        headers=headers,
    )
    assert res.status_code == 409

    listing = client.get("/timetable", headers=attendee["headers"]).json()
    assert sorted(e["subject"] for e in listing) == ["Maths", "Physics"]

    assert client.delete(f"/timetable/{physics['id']}", headers=headers).status_code == 200
    assert client.delete(f"/timetable/{physics['id']}", headers=headers).status_code == 404


@pytest.mark.parametrize(
    "payload",
    [
        {"day": "Monday", "start_time": "25:00", "subject": "Maths"},
        {"day": "Monday", "start_time": "", "subject": "Maths"},
        {"day": "Monday", "start_time": "09:00", "subject": " "},
        {"day": "Monday", "start_time": "09:00", "subject": "Maths", "duration_minutes": 0},
        {"day": "Someday", "start_time": "09:00", "subject": "Maths"},
        {"day": "Monday", "start_time": "09:00", "subject": "Biology"},
    ],
)
def test_timetable_validation(client, presenter, payload):
    res = client.post("/timetable", json=payload, headers=presenter["headers"])
    assert res.status_code == 400


def test_timetable_caps_classes_per_day(client, presenter):
    for hour in range(8, 8 + config.MAX_ENTRIES_PER_DAY):
        res = client.post(
            "/timetable",
            json={"day": "Friday", "start_time": f"{hour:02d}:00", "subject": "Maths", "duration_minutes": 50},
            headers=presenter["headers"],
        )
        assert res.status_code == 201

    res = client.post(
        "/timetable",
        json={"day": "Friday", "start_time": "20:00", "subject": "Maths"},
        headers=presenter["headers"],
    )
    assert res.status_code == 400
    assert "Maximum" in res.json()["detail"]


def test_timetable_is_scoped_to_department(client, presenter):
    entry = client.post(
        "/timetable",
        json={"day": "Tuesday", "start_time": "09:00", "subject": "Maths"},
        headers=presenter["headers"],
    ).json()
    outsider = _register(client, _presenter_payload(email="ravi@college.edu", department="ECE"))

    assert client.get("/timetable", headers=outsider["headers"]).json() == []
    assert client.delete(f"/timetable/{entry['id']}", headers=outsider["headers"]).status_code == 404


def test_timetable_status(client, presenter):
    entry = _add_current_class(client, presenter)
    body = client.get("/timetable/status", headers=presenter["headers"]).json()
    assert body["current_id"] == entry["id"]


# -----------------------------
# Presenter session
# -----------------------------
def test_session_lifecycle(client, presenter):
    headers = presenter["headers"]
    assert client.get("/sessions/current", headers=headers).json()["active"] is False

    started = client.post("/sessions/start", json={"location": ROOM}, headers=headers).json()
    assert started["active"] is True
    assert started["token"]["location"] == ROOM
    assert started["anchor"] == ROOM

    current = client.get("/sessions/current", headers=headers).json()
    assert current["session_id"] == started["session_id"]
    assert current["qr_value"] == started["qr_value"]

    res = client.post("/sessions/location", json={"location": NEXT_DOOR}, headers=headers)
    assert res.json() == {"ok": True}

    qr = client.get("/sessions/current/qr.png", headers=headers)
    assert qr.status_code == 200
    assert qr.headers["content-type"] == "image/png"
    assert qr.content.startswith(b"\x89PNG")

    assert client.post("/sessions/stop", headers=headers).json() == {"ok": True, "stopped": True}
    assert client.get("/sessions/current", headers=headers).json()["active"] is False
    assert client.get("/sessions/current/qr.png", headers=headers).status_code == 404
    assert client.post("/sessions/stop", headers=headers).json()["stopped"] is False


# -----------------------------
# Attendee verification
# -----------------------------
def test_scan_and_verify_marks_attendance(client, presenter, attendee, png_bytes):
    _add_current_class(client, presenter)
    qr_value = _start_session(client, presenter)
    client.app.state.pipeline.matcher = FakeMatcher((True, 0.96))

    res = client.post("/attendance/scan", json={"token": qr_value, "location": NEXT_DOOR}, headers=attendee["headers"])
    assert res.status_code == 200
    assert res.json()["state"] == "awaiting_biometric"
    assert 0 < res.json()["distance_meters"] < 50

    res = client.post("/attendance/verify", files=_face(png_bytes), headers=attendee["headers"])
    assert res.status_code == 200
    body = res.json()
    assert body["decision"] == "accept"
    assert body["message"] == "Attendance marked for Maths!"
    assert body["record"]["attendee_id"] == attendee["uid"]

    records = client.get("/attendance", headers=presenter["headers"]).json()
    assert [r["subject"] for r in records] == ["Maths"]
    assert client.get("/attendance", headers=attendee["headers"]).json() == records

    summary = client.get("/attendance/summary", headers=presenter["headers"]).json()
    assert summary["present"] == 1 and summary["percentage"] == 100.0
    assert summary["by_subject"] == [{"key": "Maths", "present": 1, "total": 1, "percentage": 100.0}]

    # the attempt is resolved; a second capture needs a new scan
    res = client.post("/attendance/verify", files=_face(png_bytes), headers=attendee["headers"])
    assert res.status_code == 409
    assert res.json()["code"] == "no_pending_scan"


def test_verify_offers_one_retry(client, presenter, attendee, png_bytes):
    _add_current_class(client, presenter)
    qr_value = _start_session(client, presenter)
    client.app.state.pipeline.matcher = FakeMatcher((True, 0.8), (True, 0.8))

    client.post("/attendance/scan", json={"token": qr_value, "location": ROOM}, headers=attendee["headers"])
    first = client.post("/attendance/verify", files=_face(png_bytes), headers=attendee["headers"])
    assert first.status_code == 200
    assert first.json()["decision"] == "retry"
    assert first.json()["retry_available"] is True

    second = client.post("/attendance/verify", files=_face(png_bytes), headers=attendee["headers"])
    assert second.status_code == 401
    assert second.json()["code"] == "low_confidence"
    assert client.get("/attendance", headers=attendee["headers"]).json() == []


def test_scan_rejects_bad_tokens_and_distance(client, presenter, attendee):
    qr_value = _start_session(client, presenter)
    headers = attendee["headers"]

    res = client.post("/attendance/scan", json={"token": "hello", "location": ROOM}, headers=headers)
    assert res.status_code == 400
    assert res.json() == {"detail": "Invalid QR code data.", "code": "malformed_token"}

    stale = '{"location":{"lat":12.9716,"lon":77.5946},"issuedAt":1000}'
    res = client.post("/attendance/scan", json={"token": stale, "location": ROOM}, headers=headers)
    assert res.json()["code"] == "token_expired"

    res = client.post("/attendance/scan", json={"token": qr_value, "location": FAR_AWAY}, headers=headers)
    assert res.status_code == 403
    assert res.json()["code"] == "too_far"


def test_scan_from_uploaded_qr_image(client, presenter, attendee, png_bytes):
    qr_value = _start_session(client, presenter)

    res = client.post(
        "/attendance/scan/image",
        data={"lat": str(ROOM["lat"]), "lon": str(ROOM["lon"])},
        files={"file": ("qr.png", render_qr_png(qr_value), "image/png")},
        headers=attendee["headers"],
    )
    assert res.status_code == 200
    assert res.json()["state"] == "awaiting_biometric"

    res = client.post(
        "/attendance/scan/image",
        data={"lat": str(ROOM["lat"]), "lon": str(ROOM["lon"])},
        files={"file": ("photo.png", png_bytes, "image/png")},
        headers=attendee["headers"],
    )
    assert res.status_code == 400
    assert res.json()["code"] == "malformed_token"


def test_verify_requires_image_and_configured_matcher(client, presenter, attendee, png_bytes):
    _add_current_class(client, presenter)
    qr_value = _start_session(client, presenter)
    client.app.state.pipeline.matcher = BiometricMatcher(url="")
    client.post("/attendance/scan", json={"token": qr_value, "location": ROOM}, headers=attendee["headers"])

    res = client.post(
        "/attendance/verify",
        files={"file": ("face.gif", b"GIF89a", "image/gif")},
        headers=attendee["headers"],
    )
    assert res.status_code == 400

    res = client.post("/attendance/verify", files=_face(png_bytes), headers=attendee["headers"])
    assert res.status_code == 502
    assert res.json()["code"] == "external_service_unavailable"


def test_cancel_scan(client, presenter, attendee, png_bytes):
    qr_value = _start_session(client, presenter)
    client.post("/attendance/scan", json={"token": qr_value, "location": ROOM}, headers=attendee["headers"])

    assert client.delete("/attendance/scan", headers=attendee["headers"]).json() == {"ok": True, "cancelled": True}
    res = client.post("/attendance/verify", files=_face(png_bytes), headers=attendee["headers"])
    assert res.json()["code"] == "no_pending_scan"


# -----------------------------
# Ledger operations
# -----------------------------
def _mark(client, presenter, attendee, subject: str):
    res = client.post(
        "/attendance/manual",
        json={"attendee_id": attendee["uid"], "subject": subject},
        headers=presenter["headers"],
    )
    assert res.status_code == 201, res.text
    return res.json()


def test_manual_mark_rules(client, presenter, attendee):
    record = _mark(client, presenter, attendee, "Maths")
    assert record["status"] == "present"
    assert record["attendee_name"] == "Asha Rao"

    res = client.post(
        "/attendance/manual",
        json={"attendee_id": attendee["uid"], "subject": "Biology"},
        headers=presenter["headers"],
    )
    assert res.status_code == 403

    res = client.post(
        "/attendance/manual",
        json={"attendee_id": "missing", "subject": "Maths"},
        headers=presenter["headers"],
    )
    assert res.status_code == 404


def test_attendee_sees_only_own_records(client, presenter, attendee, png_bytes):
    other = _register(client, _attendee_payload(png_bytes, email="kiran@college.edu", roll_no="CSE-002"))
    _mark(client, presenter, attendee, "Maths")
    _mark(client, presenter, other, "Maths")

    assert len(client.get("/attendance", headers=presenter["headers"]).json()) == 2
    assert len(client.get("/attendance", headers=attendee["headers"]).json()) == 1
    res = client.get(f"/attendance?attendee_id={other['uid']}", headers=attendee["headers"])
    assert res.status_code == 403


def test_delete_single_and_batch(client, presenter, attendee):
    first = _mark(client, presenter, attendee, "Maths")
    second = _mark(client, presenter, attendee, "Physics")
    third = _mark(client, presenter, attendee, "Physics")

    assert client.delete(f"/attendance/{first['id']}", headers=presenter["headers"]).status_code == 200
    assert client.delete(f"/attendance/{first['id']}", headers=presenter["headers"]).status_code == 404

    res = client.post("/attendance/delete", json={"ids": []}, headers=presenter["headers"])
    assert res.json() == {"ok": True, "deleted": 0, "skipped": 0}

    res = client.post(
        "/attendance/delete",
        json={"ids": [second["id"], third["id"], second["id"]]},
        headers=presenter["headers"],
    )
    assert res.json() == {"ok": True, "deleted": 2, "skipped": 0}
    assert client.get("/attendance", headers=presenter["headers"]).json() == []


def test_delete_is_scoped_to_presenter_subjects(client, presenter, attendee):
    record = _mark(client, presenter, attendee, "Maths")
    outsider = _register(
        client, _presenter_payload(email="ravi@college.edu", department="ECE", subjects=["Circuits"])
    )

    assert client.get("/attendance", headers=outsider["headers"]).json() == []
    assert client.delete(f"/attendance/{record['id']}", headers=outsider["headers"]).status_code == 404

    res = client.post("/attendance/delete", json={"ids": [record["id"]]}, headers=outsider["headers"])
    assert res.json() == {"ok": True, "deleted": 0, "skipped": 1}

    assert [r["id"] for r in client.get("/attendance", headers=presenter["headers"]).json()] == [record["id"]]


def test_purge_by_presenter_subjects(client, presenter, attendee):
    for subject in ("Maths", "Maths", "Physics"):
        _mark(client, presenter, attendee, subject)

    res = client.post("/attendance/purge", headers=presenter["headers"])
    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is True
    assert body["matched"] == 3 and body["deleted"] == 3
    assert client.get("/attendance", headers=presenter["headers"]).json() == []

    idle = _register(client, _presenter_payload(email="idle@college.edu", subjects=[]))
    res = client.post("/attendance/purge", headers=idle["headers"])
    assert res.status_code == 403


# -----------------------------
# Roster + dashboard
# -----------------------------
def test_roster_delete_removes_attendee_and_records(client, presenter, attendee):
    _mark(client, presenter, attendee, "Maths")
    roster = client.get("/roster", headers=presenter["headers"]).json()
    assert [s["roll_no"] for s in roster] == ["CSE-001"]
    assert "reference_face" not in roster[0]

    assert client.delete(f"/roster/{attendee['uid']}", headers=presenter["headers"]).status_code == 200
    assert client.get("/roster", headers=presenter["headers"]).json() == []
    assert client.get("/attendance", headers=presenter["headers"]).json() == []
    assert client.get("/auth/me", headers=attendee["headers"]).status_code == 401
    assert client.delete(f"/roster/{attendee['uid']}", headers=presenter["headers"]).status_code == 404


def test_dashboard_feeds_by_role(client, presenter, attendee):
    entry = _add_current_class(client, presenter)
    _mark(client, presenter, attendee, "Maths")

    body = client.get("/dashboard", headers=attendee["headers"]).json()
    assert body["role"] == "attendee"
    assert sorted(body["feeds"]) == ["attendance", "timetable"]
    assert body["schedule"]["current_id"] == entry["id"]
    assert all(feed["error"] is None for feed in body["feeds"].values())
    assert [e["id"] for e in body["feeds"]["timetable"]["items"]] == [entry["id"]]
    assert len(body["feeds"]["attendance"]["items"]) == 1

    body = client.get("/dashboard", headers=presenter["headers"]).json()
    assert sorted(body["feeds"]) == ["attendance", "roster", "timetable"]
    assert all(feed["error"] is None for feed in body["feeds"].values())
    assert [s["uid"] for s in body["feeds"]["roster"]["items"]] == [attendee["uid"]]


def test_dashboard_feed_failure_is_scoped(client, presenter, attendee, monkeypatch):
    _add_current_class(client, presenter)
    _mark(client, presenter, attendee, "Maths")

    def locked(_department):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "list_timetable", locked)

    body = client.get("/dashboard", headers=presenter["headers"]).json()
    assert body["feeds"]["timetable"] == {
        "items": [],
        "error": "Unable to load timetable. The store is unavailable.",
    }
    assert body["schedule"] == {"current_id": None, "next_id": None}
    assert body["feeds"]["roster"]["error"] is None
    assert [s["uid"] for s in body["feeds"]["roster"]["items"]] == [attendee["uid"]]
    assert body["feeds"]["attendance"]["error"] is None
    assert len(body["feeds"]["attendance"]["items"]) == 1
