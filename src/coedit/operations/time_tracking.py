"""Time tracking operations: the TimeEntry state machine.

    none --clock_in--> active --clock_out--> completed --update_entry--> completed
                         |                        |
                         +--abort_active--> deleted <--delete_entry--+

Every transition is guarded by the TemporalValidator before anything is
written. Rejections come back as EntryResult values carrying a
ValidationResult; store outages raise StoreUnavailableError.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING

from coedit.engine.temporal import normalize_notes
from coedit.models.time_entry import (
    EntryResult,
    TimeEntry,
    TimeEntryStatus,
    ValidationErrorKind,
    ValidationResult,
)

if TYPE_CHECKING:
    from coedit.clock import Clock
    from coedit.engine.temporal import TemporalValidator
    from coedit.models.config import CoeditConfig
    from coedit.storage.repositories import TimeEntryRepository

logger = logging.getLogger(__name__)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _reject(kind: ValidationErrorKind, message: str) -> EntryResult:
    return EntryResult.rejected(ValidationResult.fail(kind, message))


_ACTIVE_EXISTS_MSG = "You already have an active time entry. Please clock out first."


class TimeTrackingService:
    """Clock-in/clock-out and manual time entry management for users."""

    def __init__(
        self,
        repo: TimeEntryRepository,
        validator: TemporalValidator,
        clock: Clock,
        config: CoeditConfig,
    ) -> None:
        self._repo = repo
        self._validator = validator
        self._clock = clock
        self._config = config

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current_entry(self, user_id: str) -> TimeEntry | None:
        """The user's active entry, if clocked in."""
        active = self._repo.find_active(user_id)
        return active[0] if active else None

    def entries_between(self, user_id: str, first_date: date, last_date: date) -> list[TimeEntry]:
        """All entries whose work date falls in ``[first_date, last_date]``."""
        if last_date < first_date:
            return []
        days = (last_date - first_date).days
        dates = [(first_date + timedelta(days=i)).isoformat() for i in range(days + 1)]
        return list(self._repo.list_for_user(user_id, work_dates=dates))

    def total_duration(self, entries: list[TimeEntry]) -> timedelta:
        """Summed duration; active entries count up to now."""
        now = self._clock.now()
        return sum((e.duration(now) for e in entries), timedelta(0))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def clock_in(
        self,
        user_id: str,
        organization_id: str,
        *,
        session_ref: str | None = None,
        notes: str | None = None,
    ) -> EntryResult:
        """Start an active entry now. At most one active entry per user."""
        check = self._validator.validate_notes(notes)
        if not check:
            return EntryResult.rejected(check)
        if self.current_entry(user_id) is not None:
            return _reject(ValidationErrorKind.ACTIVE_ENTRY_EXISTS, _ACTIVE_EXISTS_MSG)

        now = self._clock.now()
        entry = TimeEntry(
            id=uuid.uuid4().hex,
            user_id=user_id,
            organization_id=organization_id,
            start_time=now,
            status=TimeEntryStatus.ACTIVE,
            work_date=self._validator.work_date(now),
            created_at=now,
            updated_at=now,
            session_ref=session_ref,
            notes=normalize_notes(notes),
        )
        if not self._repo.insert(entry):
            # Lost a race with another device clocking in.
            return _reject(ValidationErrorKind.ACTIVE_ENTRY_EXISTS, _ACTIVE_EXISTS_MSG)
        logger.info("User %s clocked in (entry %s)", user_id, entry.id)
        return EntryResult(entry=entry)

    def clock_out(
        self,
        user_id: str,
        *,
        notes: str | None = None,
        at: datetime | None = None,
    ) -> EntryResult:
        """Complete the user's active entry at ``at`` (default: now)."""
        check = self._validator.validate_notes(notes)
        if not check:
            return EntryResult.rejected(check)
        active = self.current_entry(user_id)
        if active is None:
            return _reject(
                ValidationErrorKind.NO_ACTIVE_ENTRY,
                "No active time entry found. Please clock in first.",
            )

        end = _utc(at) if at is not None else self._clock.now()
        check = self._validator.validate_interval(active.start_time, end)
        if not check:
            return EntryResult.rejected(check)
        check = self._validator.check_overlaps(user_id, active.start_time, end, exclude_entry_id=active.id)
        if not check:
            return EntryResult.rejected(check)

        completed = active.model_copy(update={
            "end_time": end,
            "status": TimeEntryStatus.COMPLETED,
            "updated_at": self._clock.now(),
            "notes": normalize_notes(notes) or active.notes,
        })
        if not self._repo.update(completed):
            return _reject(ValidationErrorKind.NOT_FOUND, "Active time entry disappeared before clock-out")
        logger.info("User %s clocked out (entry %s, %s)", user_id, completed.id, completed.format_duration())
        return EntryResult(entry=completed)

    def create_manual_entry(
        self,
        user_id: str,
        organization_id: str,
        start: datetime,
        end: datetime,
        *,
        session_ref: str | None = None,
        notes: str | None = None,
    ) -> EntryResult:
        """Record a completed entry after the fact."""
        start, end = _utc(start), _utc(end)
        for check in (
            self._validator.validate_interval(start, end),
            self._validator.validate_notes(notes),
        ):
            if not check:
                return EntryResult.rejected(check)
        check = self._validator.check_overlaps(user_id, start, end)
        if not check:
            return EntryResult.rejected(check)

        now = self._clock.now()
        entry = TimeEntry(
            id=uuid.uuid4().hex,
            user_id=user_id,
            organization_id=organization_id,
            start_time=start,
            end_time=end,
            status=TimeEntryStatus.COMPLETED,
            work_date=self._validator.work_date(start),
            created_at=now,
            updated_at=now,
            session_ref=session_ref,
            notes=normalize_notes(notes),
        )
        if not self._repo.insert(entry):
            return _reject(ValidationErrorKind.INSERT_REJECTED, f"Time entry {entry.id} could not be saved")
        logger.info("User %s added manual entry %s (%s)", user_id, entry.id, entry.format_duration())
        return EntryResult(entry=entry)

    def update_entry(
        self,
        entry_id: str,
        user_id: str,
        start: datetime,
        end: datetime,
        *,
        session_ref: str | None = None,
        notes: str | None = None,
    ) -> EntryResult:
        """Edit a completed entry's interval, session and notes.

        Blank notes clear the stored notes.
        """
        found = self._owned_entry(entry_id, user_id)
        if isinstance(found, EntryResult):
            return found
        entry = found
        if not self._validator.can_mutate(entry):
            return _reject(
                ValidationErrorKind.OUTSIDE_EDIT_WINDOW,
                f"This time entry cannot be edited (either it's active or outside the "
                f"{self._config.edit_window.days}-day edit window)",
            )
        start, end = _utc(start), _utc(end)
        for check in (
            self._validator.validate_interval(start, end),
            self._validator.validate_notes(notes),
        ):
            if not check:
                return EntryResult.rejected(check)
        check = self._validator.check_overlaps(user_id, start, end, exclude_entry_id=entry.id)
        if not check:
            return EntryResult.rejected(check)

        updated = entry.model_copy(update={
            "start_time": start,
            "end_time": end,
            "work_date": self._validator.work_date(start),
            "session_ref": session_ref,
            "notes": normalize_notes(notes),
            "updated_at": self._clock.now(),
        })
        if not self._repo.update(updated):
            return _reject(ValidationErrorKind.NOT_FOUND, f"Time entry {entry_id} no longer exists")
        logger.info("User %s updated entry %s", user_id, entry_id)
        return EntryResult(entry=updated)

    def edit_active_start(self, entry_id: str, user_id: str, proposed_start: datetime) -> EntryResult:
        """Correct the clock-in time of an active entry."""
        found = self._owned_entry(entry_id, user_id)
        if isinstance(found, EntryResult):
            return found
        proposed_start = _utc(proposed_start)
        check = self._validator.can_edit_active_start(found, proposed_start)
        if not check:
            return EntryResult.rejected(check)

        updated = found.model_copy(update={
            "start_time": proposed_start,
            "work_date": self._validator.work_date(proposed_start),
            "updated_at": self._clock.now(),
        })
        if not self._repo.update(updated):
            return _reject(ValidationErrorKind.NOT_FOUND, f"Time entry {entry_id} no longer exists")
        logger.info("User %s moved clock-in of entry %s to %s", user_id, entry_id, proposed_start.isoformat())
        return EntryResult(entry=updated)

    def delete_entry(self, entry_id: str, user_id: str) -> EntryResult:
        """Delete a completed entry within the edit window."""
        found = self._owned_entry(entry_id, user_id)
        if isinstance(found, EntryResult):
            return found
        if not self._validator.can_mutate(found):
            return _reject(
                ValidationErrorKind.OUTSIDE_EDIT_WINDOW,
                f"This time entry cannot be deleted (either it's active or outside the "
                f"{self._config.edit_window.days}-day edit window)",
            )
        if not self._repo.delete(entry_id):
            return _reject(ValidationErrorKind.NOT_FOUND, f"Time entry {entry_id} no longer exists")
        logger.info("User %s deleted entry %s", user_id, entry_id)
        return EntryResult(entry=found)

    def abort_active(self, user_id: str) -> EntryResult:
        """Discard the user's active entry without completing it."""
        if not self._config.allow_active_abort:
            return _reject(ValidationErrorKind.ABORT_DISABLED, "Active entries cannot be discarded")
        active = self.current_entry(user_id)
        if active is None:
            return _reject(ValidationErrorKind.NO_ACTIVE_ENTRY, "No active time entry to discard")
        if not self._repo.delete(active.id):
            return _reject(ValidationErrorKind.NOT_FOUND, f"Time entry {active.id} no longer exists")
        logger.info("User %s discarded active entry %s", user_id, active.id)
        return EntryResult(entry=active)

    def _owned_entry(self, entry_id: str, user_id: str) -> TimeEntry | EntryResult:
        entry = self._repo.get(entry_id)
        if entry is None:
            return _reject(ValidationErrorKind.NOT_FOUND, f"Time entry {entry_id} not found")
        if entry.user_id != user_id:
            return _reject(ValidationErrorKind.NOT_OWNER, "Only the owner may change this time entry")
        return entry
