"""Shared fixtures for the pipeline test suite.

Every test gets a fresh temp-file SQLite DatabaseManager, plus factories
for appointments and outcomes bound to a fixed clock.
"""
import os
import shutil
import tempfile
from datetime import date, datetime

import pytest

from database import DatabaseManager
from pipeline.auditor import ConsistencyAuditor
from pipeline.orchestrator import OutcomeOrchestrator, OutcomeParams

FIXED_NOW = datetime(2024, 1, 28, 10, 0, 0)
CLASS_DATE = date(2024, 1, 28)


class MutableClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def temp_db():
    """Yield a fresh DatabaseManager bound to a temp SQLite database."""
    temp_dir = tempfile.mkdtemp(prefix="pipeline-tests-")
    db_path = os.path.join(temp_dir, "test.db")
    manager = DatabaseManager(database_url=f"sqlite:///{db_path}")
    manager.create_tables()

    try:
        yield manager
    finally:
        manager.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def clock():
    """Clock pinned to 2024-01-28 10:00."""
    return MutableClock(FIXED_NOW)


@pytest.fixture
def orchestrator(temp_db, clock):
    return OutcomeOrchestrator(temp_db, clock=clock)


@pytest.fixture
def auditor(temp_db, clock):
    return ConsistencyAuditor(temp_db, max_workers=2, clock=clock)


@pytest.fixture
def make_appointment(temp_db):
    """Factory: create an appointment with sensible defaults, return its ID."""
    def _make(**overrides):
        data = {
            "member_name": "Jordan Lee",
            "class_date": CLASS_DATE,
            "class_time": "09:00",
            "class_start_at": datetime(2024, 1, 28, 9, 0),
            "lead_source": "Instagram DM",
            "booked_by": "Sam",
            "intro_owner": "Sam",
            "coach_name": "Riley",
            "phone": "5552013344",
            "email": "jordan@example.com",
        }
        data.update(overrides)
        return temp_db.create_appointment(data)

    return _make


@pytest.fixture
def apply(orchestrator):
    """Factory: apply a raw result to an appointment, return OutcomeResult."""
    def _apply(appointment_id, new_result, **overrides):
        params = {
            "appointment_id": appointment_id,
            "member_name": "Jordan Lee",
            "attempt_date": CLASS_DATE,
            "new_result": new_result,
            "editor": "Sam",
            "source_label": "test_suite",
        }
        params.update(overrides)
        return orchestrator.apply_outcome(OutcomeParams(**params))

    return _apply
