from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from attendance_backend.database import DatabaseManager, DirectoryService, ScanService, SessionManager


class FakeClock:
    """Settable clock returning naive UTC datetimes."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def set(self, hour: int, minute: int = 0, second: int = 0):
        self.now = self.now.replace(hour=hour, minute=minute, second=second, microsecond=0)

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 9, 2, 10, 0, 0))


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(db_path=tmp_path / "attendance.db")
    assert manager.initialize()
    yield manager
    manager.close()


@pytest.fixture
def directory(db):
    return DirectoryService(db)


@pytest.fixture
def sessions(db, clock):
    return SessionManager(db, clock=clock)


@pytest.fixture
def scans(db, sessions, clock):
    return ScanService(db, session_manager=sessions, clock=clock)


@pytest.fixture
def campus(directory):
    """One lecturer, two courses (CS205 requires enrollment) and three students."""
    lecturer = directory.add_lecturer("SMAF/0001", "Ada", "Okafor", department="Computer Science")
    cs101 = directory.add_course("CS101", "Introduction to Computing", lecturer_id=lecturer["id"])
    cs205 = directory.add_course("CS205", "Data Structures", lecturer_id=lecturer["id"], enrollment_required=True)
    amina = directory.add_student("S001", "Amina", "Bello", rfid_tag="AB12CD")
    chidi = directory.add_student("S002", "Chidi", "Eze", rfid_tag="EF34GH")
    grace = directory.add_student("S003", "Grace", "Adeyemi", rfid_tag="IJ56KL")

    return SimpleNamespace(
        lecturer=lecturer,
        cs101=cs101,
        cs205=cs205,
        amina=amina,
        chidi=chidi,
        grace=grace
    )
