"""Time entry domain models for Coedit.

TimeEntry is the SDK-facing model of one clock-in/clock-out record.
ValidationResult carries the outcome of a temporal check; EntryResult
carries the outcome of a time-tracking state transition.

Named ValidationResult / ValidationErrorKind (not ValidationError) to
avoid collision with pydantic.ValidationError.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel


class TimeEntryStatus(str, enum.Enum):
    """Lifecycle status of a time entry."""

    ACTIVE = "active"
    COMPLETED = "completed"

    def __str__(self) -> str:
        return self.value


class TimeEntry(BaseModel):
    """One clock-in/clock-out (or manually entered) record for one user."""

    model_config = {"frozen": True}

    id: str
    user_id: str
    organization_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    status: TimeEntryStatus
    work_date: str
    created_at: datetime
    updated_at: datetime
    session_ref: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status is TimeEntryStatus.ACTIVE

    def duration(self, now: datetime | None = None) -> timedelta:
        """Elapsed time; active entries are measured up to ``now``."""
        end = self.end_time
        if end is None:
            if now is None:
                return timedelta(0)
            end = now
        return max(end - self.start_time, timedelta(0))

    def format_duration(self, now: datetime | None = None) -> str:
        total = int(self.duration(now).total_seconds())
        return f"{total // 3600}h {(total % 3600) // 60}m"

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap test against ``[start, end)``.

        Entries without an end time never overlap.
        """
        if self.end_time is None:
            return False
        return start < self.end_time and end > self.start_time

    def __str__(self) -> str:
        end = self.end_time.strftime("%H:%M") if self.end_time else "..."
        return f"{self.id[:8]} {self.work_date} {self.start_time.strftime('%H:%M')}-{end} ({self.status})"


class ValidationErrorKind(str, enum.Enum):
    """Why a proposed time entry change was rejected."""

    NON_POSITIVE_DURATION = "non_positive_duration"
    EXCEEDS_MAX_DURATION = "exceeds_max_duration"
    TOO_SHORT = "too_short"
    FUTURE_TIME = "future_time"
    TOO_LONG = "too_long"
    OVERLAPS = "overlaps"
    OUTSIDE_EDIT_WINDOW = "outside_edit_window"
    ACTIVE_ENTRY_EXISTS = "active_entry_exists"
    NO_ACTIVE_ENTRY = "no_active_entry"
    NOT_ACTIVE = "not_active"
    NOT_FOUND = "not_found"
    NOT_OWNER = "not_owner"
    ABORT_DISABLED = "abort_disabled"
    INSERT_REJECTED = "insert_rejected"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ValidationResult:
    """Result of one temporal validation.

    Attributes:
        error: The failure kind, or None if validation passed.
        message: Human-readable explanation suitable for the user.
        conflicts: For OVERLAPS, the conflicting entries in start order.
    """

    error: ValidationErrorKind | None = None
    message: str | None = None
    conflicts: tuple[TimeEntry, ...] = field(default=())

    @property
    def passed(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls) -> ValidationResult:
        return _PASSED

    @classmethod
    def fail(
        cls,
        error: ValidationErrorKind,
        message: str,
        conflicts: tuple[TimeEntry, ...] | list[TimeEntry] = (),
    ) -> ValidationResult:
        return cls(error=error, message=message, conflicts=tuple(conflicts))

    def __bool__(self) -> bool:
        return self.passed

    def __repr__(self) -> str:
        if self.passed:
            return "ValidationResult(passed)"
        extra = f" conflicts={len(self.conflicts)}" if self.conflicts else ""
        return f"ValidationResult({self.error.value}{extra})"

    def __str__(self) -> str:
        return "passed" if self.passed else (self.message or self.error.value)


_PASSED = ValidationResult()


@dataclass(frozen=True)
class EntryResult:
    """Outcome of a time-tracking operation.

    ``entry`` is the entry as stored after the operation (the removed entry
    for deletes); ``validation`` explains a rejection.
    """

    entry: TimeEntry | None = None
    validation: ValidationResult = _PASSED

    @property
    def ok(self) -> bool:
        return self.validation.passed

    @property
    def error(self) -> ValidationErrorKind | None:
        return self.validation.error

    @classmethod
    def rejected(cls, validation: ValidationResult) -> EntryResult:
        return cls(validation=validation)
