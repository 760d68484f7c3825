import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
)
from backend.errors import AttendanceError, StoreUnavailable
from backend.routers import attendance, auth, core, dashboard, roster, sessions, timetable
from backend.schemas import Attendee, TimetableEntry
from backend.services.ledger import AttendanceLedgerOps
from backend.services.matcher import BiometricMatcher
from backend.services.presenter import SessionRegistry
from backend.services.verification import VerificationPipeline
from database.db import create_tables, list_timetable

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("geoattend")


async def attendee_timetable(attendee: Attendee) -> list[TimetableEntry]:
    try:
        return await asyncio.to_thread(list_timetable, attendee.department)
    except sqlite3.Error as exc:
        logger.error("Timetable lookup failed: %s", exc)
        raise StoreUnavailable("Unable to load timetable. The store is unavailable.") from exc


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    ledger = AttendanceLedgerOps()
    app.state.ledger = ledger
    app.state.sessions = SessionRegistry()
    app.state.pipeline = VerificationPipeline(BiometricMatcher(), ledger, attendee_timetable)
    logger.info("GeoAttend API ready")
    yield
    await app.state.sessions.shutdown()
    logger.info("GeoAttend API stopped")


app = FastAPI(title="GeoAttend API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


@app.exception_handler(AttendanceError)
async def attendance_error_handler(_request: Request, exc: AttendanceError):
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


app.include_router(core.router)
app.include_router(auth.router)
app.include_router(sessions.router)
app.include_router(attendance.router)
app.include_router(timetable.router)
app.include_router(roster.router)
app.include_router(dashboard.router)
