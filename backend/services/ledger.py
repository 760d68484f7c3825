import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field

from backend.config import PURGE_BATCH_SIZE
from backend.errors import StoreUnavailable
from backend.schemas import AttendanceRecord
from database import db

logger = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    index: int
    size: int
    ok: bool
    error: str | None = None


@dataclass
class PurgeReport:
    matched: int = 0
    batches: list[BatchOutcome] = field(default_factory=list)

    @property
    def deleted(self) -> int:
        return sum(b.size for b in self.batches if b.ok)

    @property
    def failed(self) -> list[BatchOutcome]:
        return [b for b in self.batches if not b.ok]

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_dict(self) -> dict:
        return {
            "ok": self.ok,
            "matched": self.matched,
            "deleted": self.deleted,
            "batches": [
                {"index": b.index, "size": b.size, "ok": b.ok, "error": b.error}
                for b in self.batches
            ],
        }


class AttendanceLedgerOps:
    """
    Create/delete operations over the attendance store.

    ``store`` exposes insert_attendance_record, delete_attendance_record,
    delete_attendance_batch and list_attendance_records; the default is the
    SQLite adapter in database.db. Store calls run off the event loop.
    """

    def __init__(self, store=db, batch_size: int = PURGE_BATCH_SIZE):
        self.store = store
        self.batch_size = batch_size

    async def _call(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            logger.error("Attendance store call %s failed: %s", getattr(fn, "__name__", fn), exc)
            raise StoreUnavailable("Attendance store is unavailable. Please retry.") from exc

    async def insert(self, record: AttendanceRecord) -> AttendanceRecord:
        # no dedup: repeat marks for the same subject/day are kept
        return await self._call(self.store.insert_attendance_record, record)

    async def delete_one(self, record_id: str) -> bool:
        if not record_id:
            raise ValueError("Record ID is required for deletion.")
        return await self._call(self.store.delete_attendance_record, record_id)

    async def delete_many(self, record_ids: list[str]) -> int:
        ids = list(dict.fromkeys(r for r in record_ids if r))
        if not ids:
            return 0
        return await self._call(self.store.delete_attendance_batch, ids)

    async def purge_by_subjects(self, subjects: list[str]) -> PurgeReport:
        """
        Delete every record whose subject is in ``subjects``.

        The whole ledger is read and filtered here, then the matches are
        deleted in fixed-size batches committed concurrently. A failed batch
        is reported; batches that committed are not rolled back.
        """
        wanted = {s for s in subjects if s}
        if not wanted:
            return PurgeReport()

        records = await self._call(self.store.list_attendance_records)
        ids = [r.id for r in records if r.subject in wanted and r.id]
        if not ids:
            logger.info("Purge matched no attendance records")
            return PurgeReport()

        chunks = [ids[i : i + self.batch_size] for i in range(0, len(ids), self.batch_size)]
        results = await asyncio.gather(
            *(self._call(self.store.delete_attendance_batch, chunk) for chunk in chunks),
            return_exceptions=True,
        )

        report = PurgeReport(matched=len(ids))
        for index, (chunk, result) in enumerate(zip(chunks, results), start=1):
            if isinstance(result, Exception):
                logger.error("Purge batch %d/%d failed: %s", index, len(chunks), result)
                report.batches.append(BatchOutcome(index, len(chunk), False, str(result)))
            elif isinstance(result, BaseException):
                raise result
            else:
                report.batches.append(BatchOutcome(index, len(chunk), True))
        return report
