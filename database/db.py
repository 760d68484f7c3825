import hashlib
import hmac
import json
import secrets
import sqlite3
import uuid

from backend.config import DB_PATH
from backend.schemas import (
    MEMBER_ADAPTER,
    AttendanceRecord,
    Attendee,
    Presenter,
    TimetableEntry,
)


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def _new_id() -> str:
    return uuid.uuid4().hex


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    # Directory: one JSON profile document per user id
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS members (
        uid TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL,              -- presenter | attendee
        department TEXT NOT NULL,
        profile TEXT NOT NULL,           -- JSON document
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS timetable (
        id TEXT PRIMARY KEY,
        day TEXT NOT NULL,               -- Sunday..Saturday
        start_time TEXT NOT NULL,        -- HH:MM
        subject TEXT NOT NULL,
        duration_minutes INTEGER,
        owner_id TEXT,
        owner_name TEXT,
        department TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    # Append-only ledger; duplicates for the same subject/day are allowed
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance (
        id TEXT PRIMARY KEY,
        attendee_id TEXT NOT NULL,
        attendee_name TEXT NOT NULL,
        subject TEXT NOT NULL,
        date TEXT NOT NULL,              -- YYYY-MM-DD
        status TEXT NOT NULL DEFAULT 'present',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_timetable_department ON timetable(department)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_attendee ON attendance(attendee_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_date ON attendance(date)")

    conn.commit()
    conn.close()


# -----------------------------
# Members (directory)
# -----------------------------
def create_member(email: str, password: str, profile: dict) -> Presenter | Attendee:
    clean_email = email.strip()
    clean_password = password.strip()
    if not clean_email or not clean_password:
        raise ValueError("Email and password are required.")

    member = MEMBER_ADAPTER.validate_python({**profile, "uid": _new_id(), "email": clean_email})

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO members (uid, email, password_hash, role, department, profile)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            member.uid,
            clean_email,
            _hash_password(clean_password),
            member.kind,
            member.department,
            member.model_dump_json(),
        ),
    )
    conn.commit()
    conn.close()
    return member


def _member_from_row(profile_json: str) -> Presenter | Attendee:
    return MEMBER_ADAPTER.validate_python(json.loads(profile_json))


def get_member(uid: str) -> Presenter | Attendee | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT profile FROM members WHERE uid = ?", (uid,))
    row = cur.fetchone()
    conn.close()
    return _member_from_row(row[0]) if row else None


def verify_member_credentials(email: str, password: str) -> Presenter | Attendee | None:
    clean_email = email.strip()
    clean_password = password.strip()
    if not clean_email or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT password_hash, profile
        FROM members
        WHERE email = ? COLLATE NOCASE
        """,
        (clean_email,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    password_hash, profile_json = row
    if not _verify_password(clean_password, password_hash):
        return None
    return _member_from_row(profile_json)


def list_attendees(department: str) -> list[Attendee]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT profile
        FROM members
        WHERE role = 'attendee' AND department = ?
        ORDER BY email
        """,
        (department,),
    )
    rows = cur.fetchall()
    conn.close()
    return [_member_from_row(r[0]) for r in rows]


def delete_attendee(uid: str) -> bool:
    """Remove an attendee profile and every attendance record they own."""
    conn = connect_db()
    try:
        with conn:
            cur = conn.execute(
                "DELETE FROM members WHERE uid = ? AND role = 'attendee'",
                (uid,),
            )
            if cur.rowcount == 0:
                return False
            conn.execute("DELETE FROM attendance WHERE attendee_id = ?", (uid,))
        return True
    finally:
        conn.close()


# -----------------------------
# Timetable
# -----------------------------
_TIMETABLE_COLUMNS = "id, day, start_time, subject, duration_minutes, owner_id, owner_name, department"


def _entry_from_row(row) -> TimetableEntry:
    return TimetableEntry(
        id=row[0],
        day=row[1],
        start_time=row[2],
        subject=row[3],
        duration_minutes=row[4],
        owner_id=row[5],
        owner_name=row[6],
        department=row[7],
    )


def list_timetable(department: str) -> list[TimetableEntry]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_TIMETABLE_COLUMNS}
        FROM timetable
        WHERE department = ?
        ORDER BY day, start_time
        """,
        (department,),
    )
    rows = cur.fetchall()
    conn.close()
    return [_entry_from_row(r) for r in rows]


def get_timetable_entry(entry_id: str) -> TimetableEntry | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT {_TIMETABLE_COLUMNS} FROM timetable WHERE id = ?", (entry_id,))
    row = cur.fetchone()
    conn.close()
    return _entry_from_row(row) if row else None


def add_timetable_entry(
    *,
    day: str,
    start_time: str,
    subject: str,
    duration_minutes: int,
    owner_id: str,
    owner_name: str,
    department: str,
) -> TimetableEntry:
    entry = TimetableEntry(
        id=_new_id(),
        day=day,
        start_time=start_time,
        subject=subject,
        duration_minutes=duration_minutes,
        owner_id=owner_id,
        owner_name=owner_name,
        department=department,
    )
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        INSERT INTO timetable ({_TIMETABLE_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.id,
            entry.day,
            entry.start_time,
            entry.subject,
            entry.duration_minutes,
            entry.owner_id,
            entry.owner_name,
            entry.department,
        ),
    )
    conn.commit()
    conn.close()
    return entry


def update_timetable_entry(entry: TimetableEntry) -> bool:
    # id and department are fixed once created
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE timetable
        SET day = ?, start_time = ?, subject = ?, duration_minutes = ?,
            owner_id = ?, owner_name = ?
        WHERE id = ?
        """,
        (
            entry.day,
            entry.start_time,
            entry.subject,
            entry.duration_minutes,
            entry.owner_id,
            entry.owner_name,
            entry.id,
        ),
    )
    updated = cur.rowcount > 0
    conn.commit()
    conn.close()
    return updated


def delete_timetable_entry(entry_id: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM timetable WHERE id = ?", (entry_id,))
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


# -----------------------------
# Attendance ledger
# -----------------------------
_ATTENDANCE_COLUMNS = "id, attendee_id, attendee_name, subject, date, status"


def _record_from_row(row) -> AttendanceRecord:
    return AttendanceRecord(
        id=row[0],
        attendee_id=row[1],
        attendee_name=row[2],
        subject=row[3],
        date=row[4],
        status=row[5],
    )


def get_attendance_record(record_id: str) -> AttendanceRecord | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT {_ATTENDANCE_COLUMNS} FROM attendance WHERE id = ?", (record_id,))
    row = cur.fetchone()
    conn.close()
    return _record_from_row(row) if row else None


def insert_attendance_record(record: AttendanceRecord) -> AttendanceRecord:
    saved = record.model_copy(update={"id": _new_id()})
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        INSERT INTO attendance ({_ATTENDANCE_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            saved.id,
            saved.attendee_id,
            saved.attendee_name,
            saved.subject,
            saved.date,
            saved.status,
        ),
    )
    conn.commit()
    conn.close()
    return saved


def list_attendance_records(
    *,
    attendee_id: str | None = None,
    subjects: list[str] | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
) -> list[AttendanceRecord]:
    where = []
    params: list = []
    if attendee_id:
        where.append("attendee_id = ?")
        params.append(attendee_id)
    if start_date:
        where.append("date >= ?")
        params.append(start_date)
    if end_date:
        where.append("date <= ?")
        params.append(end_date)

    clause = f"WHERE {' AND '.join(where)}" if where else ""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_ATTENDANCE_COLUMNS}
        FROM attendance
        {clause}
        ORDER BY date DESC, created_at DESC
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()

    records = [_record_from_row(r) for r in rows]
    if subjects is not None:
        # filtered here rather than with IN (...) so large subject sets stay cheap
        wanted = set(subjects)
        records = [r for r in records if r.subject in wanted]
    return records


def delete_attendance_record(record_id: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM attendance WHERE id = ?", (record_id,))
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


def delete_attendance_batch(record_ids: list[str]) -> int:
    """Delete the given ids in a single transaction; all or nothing."""
    if not record_ids:
        return 0
    conn = connect_db()
    try:
        with conn:
            cur = conn.executemany(
                "DELETE FROM attendance WHERE id = ?",
                [(record_id,) for record_id in record_ids],
            )
            return cur.rowcount
    finally:
        conn.close()
