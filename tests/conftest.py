"""
Shared fixtures: a controllable clock and a logger that records what it emits
"""

import logging
import uuid
from datetime import datetime, timezone, timedelta

import pytest


class ManualClock:
    """Clock that only moves when told to"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


class RecordingHandler(logging.Handler):
    """Keeps every record for assertions"""

    def __init__(self):
        super().__init__(logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)

    def actions(self):
        return [getattr(r, 'action', None) for r in self.records]


@pytest.fixture
def clock():
    """Manual clock starting at 2024-01-01T00:00:00Z"""
    return ManualClock(datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def log_handler():
    return RecordingHandler()


@pytest.fixture
def recording_logger(log_handler):
    """Isolated logger wired to log_handler"""
    logger = logging.getLogger(f"tests.{uuid.uuid4().hex}")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.addHandler(log_handler)
    yield logger
    logger.removeHandler(log_handler)


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    """Each storage-backed test runs against the in-memory and SQLite backends"""
    from secure_banking.storage import InMemoryStorage, SQLiteStorage

    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "test.db")
    yield backend
    backend.close()
