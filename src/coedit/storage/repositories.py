"""Abstract repository interfaces for Coedit storage.

Defines ABC interfaces for the document store the core depends on. No
SQLAlchemy imports here -- pure abstract contracts returning domain models.

Concrete implementations are in sqlite.py. Every method is one round trip
to the store and may raise StoreUnavailableError once retries are
exhausted.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    from coedit.models.lock import Lock, LockKey
    from coedit.models.time_entry import TimeEntry, TimeEntryStatus
    from coedit.storage.feed import Subscription


class LockRepository(ABC):
    """Abstract interface for lease record storage.

    Writes are atomic compare-and-set operations: insert succeeds only if no
    record exists for the key; compare_and_set and delete succeed only if the
    stored version still equals the version the caller read.
    """

    @abstractmethod
    def get(self, key: LockKey) -> Lock | None:
        """Get the lock record for a key (expired or not). None if absent."""
        ...

    @abstractmethod
    def insert(self, lock: Lock) -> bool:
        """Create the record if absent. Returns False if one already exists."""
        ...

    @abstractmethod
    def compare_and_set(self, lock: Lock, expected_version: int) -> bool:
        """Replace the record if its stored version equals expected_version.

        The stored version becomes ``lock.version``. Returns False if the
        record is gone or was changed by someone else.
        """
        ...

    @abstractmethod
    def delete(self, key: LockKey, expected_version: int | None = None) -> bool:
        """Delete the record, optionally only at expected_version.

        Returns True if a row was deleted; deleting an absent or
        changed-since record returns False and is never an error.
        """
        ...

    @abstractmethod
    def list_for_container(self, container_id: str) -> Sequence[Lock]:
        """All lock records under a container (including expired ones)."""
        ...

    @abstractmethod
    def subscribe(self, container_id: str) -> Subscription[list[Lock]]:
        """Subscribe to snapshots of a container's lock records."""
        ...


class FieldValueRepository(ABC):
    """Abstract interface for persisted field values."""

    @abstractmethod
    def get(self, key: LockKey) -> Any:
        """Get the stored value for a field (None if never written)."""
        ...

    @abstractmethod
    def put(self, key: LockKey, value: Any, updated_by: str) -> None:
        """Create or replace the stored value for a field."""
        ...


class TimeEntryRepository(ABC):
    """Abstract interface for time entry storage."""

    @abstractmethod
    def get(self, entry_id: str) -> TimeEntry | None:
        """Get an entry by id. Returns None if not found."""
        ...

    @abstractmethod
    def insert(self, entry: TimeEntry) -> bool:
        """Store a new entry.

        Returns False when the store rejects it because the user already
        has an active entry.
        """
        ...

    @abstractmethod
    def update(self, entry: TimeEntry) -> bool:
        """Replace an existing entry. Returns False if it no longer exists."""
        ...

    @abstractmethod
    def delete(self, entry_id: str) -> bool:
        """Delete an entry. Returns False if it did not exist."""
        ...

    @abstractmethod
    def find_active(self, user_id: str) -> Sequence[TimeEntry]:
        """Active entries of a user (at most one in a consistent store)."""
        ...

    @abstractmethod
    def list_for_user(
        self,
        user_id: str,
        *,
        work_dates: Sequence[str] | None = None,
        status: TimeEntryStatus | None = None,
    ) -> Sequence[TimeEntry]:
        """Entries of a user, optionally filtered, ordered by start time."""
        ...

    @abstractmethod
    def subscribe(self, user_id: str) -> Subscription[list[TimeEntry]]:
        """Subscribe to snapshots of a user's entries."""
        ...
