"""Shared test fixtures for Coedit.

Provides in-memory SQLite engine, repositories, a ManualClock, and the
services built on them. Nothing here reads the system clock.
"""

from datetime import datetime, timedelta, timezone

import pytest
import tenacity

from coedit.clock import ManualClock
from coedit.engine.locks import FieldLockManager
from coedit.engine.temporal import TemporalValidator
from coedit.models.config import CoeditConfig
from coedit.models.time_entry import TimeEntry, TimeEntryStatus
from coedit.operations.time_tracking import TimeTrackingService
from coedit.storage.engine import create_coedit_engine, create_session_factory, init_db
from coedit.storage.feed import ChangeFeed
from coedit.storage.sqlite import (
    SqliteFieldValueRepository,
    SqliteLockRepository,
    SqliteTimeEntryRepository,
    StoreCaller,
)
from coedit.workspace import Workspace

T0 = datetime(2025, 5, 13, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created."""
    eng = create_coedit_engine(":memory:")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def config() -> CoeditConfig:
    return CoeditConfig()


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def caller(session_factory) -> StoreCaller:
    return StoreCaller(session_factory, wait=tenacity.wait_none())


@pytest.fixture
def lock_repo(caller, feed) -> SqliteLockRepository:
    return SqliteLockRepository(caller, feed)


@pytest.fixture
def entry_repo(caller, feed) -> SqliteTimeEntryRepository:
    return SqliteTimeEntryRepository(caller, feed)


@pytest.fixture
def field_repo(caller, clock) -> SqliteFieldValueRepository:
    return SqliteFieldValueRepository(caller, clock.now)


@pytest.fixture
def lock_manager(lock_repo, clock, config) -> FieldLockManager:
    return FieldLockManager(lock_repo, clock, config)


@pytest.fixture
def validator(entry_repo, clock, config) -> TemporalValidator:
    return TemporalValidator(entry_repo, clock, config)


@pytest.fixture
def service(entry_repo, validator, clock, config) -> TimeTrackingService:
    return TimeTrackingService(entry_repo, validator, clock, config)


@pytest.fixture
def workspace(clock):
    """In-memory Workspace driven by the ManualClock."""
    ws = Workspace.open(":memory:", clock=clock, retry_wait=tenacity.wait_none())
    yield ws
    ws.close()


# ------------------------------------------------------------------
# Shared test helpers
# ------------------------------------------------------------------

def make_entry(
    entry_id: str,
    start: datetime,
    end: datetime | None = None,
    *,
    user_id: str = "user-1",
    organization_id: str = "org-1",
    created_at: datetime | None = None,
    notes: str | None = None,
) -> TimeEntry:
    """Build a TimeEntry; completed when ``end`` is given, else active."""
    return TimeEntry(
        id=entry_id,
        user_id=user_id,
        organization_id=organization_id,
        start_time=start,
        end_time=end,
        status=TimeEntryStatus.COMPLETED if end is not None else TimeEntryStatus.ACTIVE,
        work_date=start.date().isoformat(),
        created_at=created_at or start,
        updated_at=created_at or start,
        notes=notes,
    )


def hours(n: float) -> timedelta:
    return timedelta(hours=n)
