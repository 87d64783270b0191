"""Temporal validator: business rules for time entry intervals.

Pure checks (interval bounds, notes length, edit windows) plus one
store-backed query (find_overlaps). Every check returns a
ValidationResult; nothing here writes to the store.

Intervals are half-open, ``[start, end)``: two entries that merely touch
at an endpoint do not overlap.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING

from coedit.models.time_entry import (
    TimeEntry,
    TimeEntryStatus,
    ValidationErrorKind,
    ValidationResult,
)

if TYPE_CHECKING:
    from coedit.clock import Clock
    from coedit.models.config import CoeditConfig
    from coedit.storage.repositories import TimeEntryRepository

logger = logging.getLogger(__name__)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _hours(delta: timedelta) -> str:
    hours = delta.total_seconds() / 3600
    return f"{hours:g}"


def normalize_notes(text: str | None) -> str | None:
    """Trim notes; blank or whitespace-only notes become None."""
    if text is None:
        return None
    trimmed = text.strip()
    return trimmed or None


class TemporalValidator:
    """Evaluates whether a proposed time entry change may be committed."""

    def __init__(self, repo: TimeEntryRepository, clock: Clock, config: CoeditConfig) -> None:
        self._repo = repo
        self._clock = clock
        self._config = config

    # ------------------------------------------------------------------
    # Pure checks
    # ------------------------------------------------------------------

    def validate_interval(self, start: datetime, end: datetime) -> ValidationResult:
        """Check a completed interval: positive, bounded, not in the future.

        Checked in order: NON_POSITIVE_DURATION, EXCEEDS_MAX_DURATION,
        TOO_SHORT (only when a minimum is configured), FUTURE_TIME.
        """
        start, end = _utc(start), _utc(end)
        if end <= start:
            return ValidationResult.fail(
                ValidationErrorKind.NON_POSITIVE_DURATION,
                "End time must be after start time",
            )
        duration = end - start
        if duration > self._config.max_entry_duration:
            return ValidationResult.fail(
                ValidationErrorKind.EXCEEDS_MAX_DURATION,
                f"Time entry cannot exceed {_hours(self._config.max_entry_duration)} hours",
            )
        minimum = self._config.min_entry_duration
        if minimum and duration < minimum:
            return ValidationResult.fail(
                ValidationErrorKind.TOO_SHORT,
                f"Time entry must be at least {int(minimum.total_seconds())} seconds long",
            )
        if end > self._clock.now():
            return ValidationResult.fail(
                ValidationErrorKind.FUTURE_TIME,
                "Time entries cannot end in the future",
            )
        return ValidationResult.ok()

    def validate_notes(self, text: str | None) -> ValidationResult:
        """Notes are optional; non-blank notes are bounded in length."""
        notes = normalize_notes(text)
        if notes is not None and len(notes) > self._config.notes_max_length:
            return ValidationResult.fail(
                ValidationErrorKind.TOO_LONG,
                f"Notes cannot exceed {self._config.notes_max_length} characters",
            )
        return ValidationResult.ok()

    def can_mutate(self, entry: TimeEntry, now: datetime | None = None) -> bool:
        """Completed entries may be edited or deleted within the edit window."""
        if entry.status is TimeEntryStatus.ACTIVE:
            return False
        now = now or self._clock.now()
        return now - entry.created_at <= self._config.edit_window

    # ------------------------------------------------------------------
    # Store-backed checks
    # ------------------------------------------------------------------

    def work_date(self, moment: datetime) -> str:
        """Calendar date of a moment in the configured time zone."""
        return _utc(moment).astimezone(self._config.zone).date().isoformat()

    def find_overlaps(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        exclude_entry_id: str | None = None,
    ) -> list[TimeEntry]:
        """Completed entries of ``user_id`` overlapping ``[start, end)``.

        Looks at every work date the interval touches, widened backwards by
        the maximum entry duration so that an entry which started the day
        before (and runs into the interval) is seen too.
        """
        start, end = _utc(start), _utc(end)
        dates = self._dates_between(start - self._config.max_entry_duration, end)
        candidates = self._repo.list_for_user(
            user_id,
            work_dates=dates,
            status=TimeEntryStatus.COMPLETED,
        )
        conflicts = [
            entry
            for entry in candidates
            if entry.id != exclude_entry_id and entry.overlaps(start, end)
        ]
        conflicts.sort(key=lambda e: (e.start_time, e.id))
        if conflicts:
            logger.debug(
                "Interval %s..%s for %s overlaps %d entr%s",
                start.isoformat(), end.isoformat(), user_id,
                len(conflicts), "y" if len(conflicts) == 1 else "ies",
            )
        return conflicts

    def check_overlaps(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        exclude_entry_id: str | None = None,
    ) -> ValidationResult:
        """find_overlaps() as a ValidationResult (OVERLAPS with conflicts)."""
        conflicts = self.find_overlaps(user_id, start, end, exclude_entry_id)
        if not conflicts:
            return ValidationResult.ok()
        return ValidationResult.fail(
            ValidationErrorKind.OVERLAPS,
            f"This time entry overlaps with {len(conflicts)} existing "
            f"entr{'y' if len(conflicts) == 1 else 'ies'}",
            conflicts,
        )

    def can_edit_active_start(
        self,
        entry: TimeEntry,
        proposed_start: datetime,
        now: datetime | None = None,
    ) -> ValidationResult:
        """Whether an active entry's start time may move to ``proposed_start``.

        Requires: the entry is active, the new start is not in the future,
        the entry was created within the active edit window, and
        ``[proposed_start, now)`` does not overlap completed entries.
        """
        proposed_start = _utc(proposed_start)
        now = now or self._clock.now()
        if entry.status is not TimeEntryStatus.ACTIVE:
            return ValidationResult.fail(
                ValidationErrorKind.NOT_ACTIVE,
                "Entry is not currently active",
            )
        if proposed_start > now:
            return ValidationResult.fail(
                ValidationErrorKind.FUTURE_TIME,
                "Clock-in time cannot be in the future",
            )
        if now - entry.created_at > self._config.active_edit_window:
            return ValidationResult.fail(
                ValidationErrorKind.OUTSIDE_EDIT_WINDOW,
                f"Clock-in time can only be adjusted within "
                f"{_hours(self._config.active_edit_window)} hours of clocking in",
            )
        if proposed_start == now:
            return ValidationResult.ok()
        return self.check_overlaps(entry.user_id, proposed_start, now, exclude_entry_id=entry.id)

    def _dates_between(self, first: datetime, last: datetime) -> list[str]:
        zone = self._config.zone
        return _date_range(first.astimezone(zone).date(), last.astimezone(zone).date())


def _date_range(first: date, last: date) -> list[str]:
    days = (last - first).days
    return [(first + timedelta(days=i)).isoformat() for i in range(days + 1)]
