"""Tests for SQLAlchemy ORM schema.

Covers:
- All tables are created
- Schema version is recorded by init_db
- LockRow composite PK
- Partial unique index: one active time entry per user
- Indexes exist on expected columns
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import inspect, select
from sqlalchemy.exc import IntegrityError

from coedit.models.time_entry import TimeEntryStatus
from coedit.storage.engine import SCHEMA_VERSION, init_db
from coedit.storage.schema import CoeditMetaRow, LockRow, TimeEntryRow

NOW = datetime(2025, 5, 13, 9, 0)


def _entry_row(entry_id: str, user_id: str = "user-1", status=TimeEntryStatus.ACTIVE) -> TimeEntryRow:
    return TimeEntryRow(
        id=entry_id,
        user_id=user_id,
        organization_id="org-1",
        start_time=NOW,
        end_time=None if status is TimeEntryStatus.ACTIVE else NOW + timedelta(hours=1),
        status=status,
        work_date="2025-05-13",
        created_at=NOW,
        updated_at=NOW,
    )


class TestTableCreation:
    def test_all_tables_exist(self, engine):
        inspector = inspect(engine)
        table_names = set(inspector.get_table_names())
        expected = {"locks", "field_values", "time_entries", "_coedit_meta"}
        assert expected <= table_names, f"Missing tables: {expected - table_names}"

    def test_meta_has_schema_version(self, session_factory):
        with session_factory() as session:
            row = session.execute(
                select(CoeditMetaRow).where(CoeditMetaRow.key == "schema_version")
            ).scalar_one()
        assert row.value == SCHEMA_VERSION

    def test_init_db_is_idempotent(self, engine, session_factory):
        init_db(engine)
        with session_factory() as session:
            rows = session.execute(select(CoeditMetaRow)).scalars().all()
        assert len(rows) == 1


class TestLockRow:
    def test_composite_primary_key(self, session_factory):
        with session_factory() as session:
            for owner in ("entry-1", "entry-2"):
                session.add(LockRow(
                    container_id="shoot-1", field_owner_id=owner, holder_id="ana",
                    holder_display_name="Ana", lease_id=f"lease-{owner}",
                    acquired_at=NOW, expires_at=NOW + timedelta(seconds=45), version=1,
                ))
            session.commit()

            session.add(LockRow(
                container_id="shoot-1", field_owner_id="entry-1", holder_id="ben",
                holder_display_name="Ben", lease_id="other",
                acquired_at=NOW, expires_at=NOW + timedelta(seconds=45), version=1,
            ))
            with pytest.raises(IntegrityError):
                session.commit()


class TestTimeEntryRow:
    def test_one_active_entry_per_user(self, session_factory):
        with session_factory() as session:
            session.add(_entry_row("a"))
            session.commit()
            session.add(_entry_row("b"))
            with pytest.raises(IntegrityError):
                session.commit()

    def test_completed_entries_are_not_limited(self, session_factory):
        with session_factory() as session:
            session.add(_entry_row("a"))
            session.add(_entry_row("b", status=TimeEntryStatus.COMPLETED))
            session.add(_entry_row("c", status=TimeEntryStatus.COMPLETED))
            session.add(_entry_row("d", user_id="user-2"))
            session.commit()
            count = len(session.execute(select(TimeEntryRow)).scalars().all())
        assert count == 4

    def test_status_round_trips_as_enum(self, session_factory):
        with session_factory() as session:
            session.add(_entry_row("a"))
            session.commit()
        with session_factory() as session:
            row = session.get(TimeEntryRow, "a")
        assert row.status is TimeEntryStatus.ACTIVE


class TestIndexes:
    def test_expected_indexes(self, engine):
        inspector = inspect(engine)
        lock_indexes = {ix["name"] for ix in inspector.get_indexes("locks")}
        entry_indexes = {ix["name"] for ix in inspector.get_indexes("time_entries")}
        assert "ix_locks_container_expiry" in lock_indexes
        assert {"ix_time_entries_user_date", "uq_time_entries_one_active"} <= entry_indexes
