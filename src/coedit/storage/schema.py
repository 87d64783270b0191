"""SQLAlchemy ORM schema for Coedit.

Defines all database tables: locks, field_values, time_entries, _coedit_meta.

IMPORTANT: TimeEntryStatus is imported from the domain models -- it is NOT
redefined here. The ORM uses the same Python enum.

SQLite drops tzinfo on round trips; every datetime column stores naive UTC
and the repositories re-attach UTC when building domain models.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from coedit.models.time_entry import TimeEntryStatus


class Base(DeclarativeBase):
    """Base class for all Coedit ORM models."""

    pass


class LockRow(Base):
    """One field lease. Composite key (container_id, field_owner_id).

    ``version`` is bumped on every write and used as the compare-and-set
    token: writers update/delete only the version they read.
    """

    __tablename__ = "locks"

    container_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    field_owner_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    holder_id: Mapped[str] = mapped_column(String(255), nullable=False)
    holder_display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    lease_id: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_locks_container_expiry", "container_id", "expires_at"),
    )


class FieldValueRow(Base):
    """Persisted value of one editable field (what autosave writes)."""

    __tablename__ = "field_values"

    container_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    field_owner_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload_json: Mapped[dict] = mapped_column(JSON, nullable=False)  # {"value": ...}
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_by: Mapped[str] = mapped_column(String(255), nullable=False)


class TimeEntryRow(Base):
    """One clock-in/clock-out record.

    The partial unique index allows at most one active entry per user,
    so two racing clock-ins cannot both be stored.
    """

    __tablename__ = "time_entries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[TimeEntryStatus] = mapped_column(nullable=False)
    work_date: Mapped[str] = mapped_column(String(10), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    session_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_time_entries_user_date", "user_id", "work_date"),
        Index(
            "uq_time_entries_one_active",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )


class CoeditMetaRow(Base):
    """Key-value metadata for the Coedit database itself (e.g., schema version)."""

    __tablename__ = "_coedit_meta"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
