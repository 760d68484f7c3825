from datetime import datetime, timedelta

import cv2
import numpy as np
import pytest

import backend.config as config
import database.db as db


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def clock():
    # a Wednesday
    return FakeClock(datetime(2024, 5, 15, 10, 30))


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    test_db = tmp_path / "geoattend_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def png_bytes():
    frame = np.full((48, 48, 3), 200, dtype=np.uint8)
    cv2.circle(frame, (24, 24), 12, (40, 40, 40), -1)
    ok, buf = cv2.imencode(".png", frame)
    assert ok
    return buf.tobytes()
