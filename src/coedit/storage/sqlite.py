"""SQLAlchemy implementations of repository interfaces.

All repositories use SQLAlchemy 2.0-style queries (select()/update()/delete()
+ session.execute()). Unlike a long-lived unit of work, the store is treated
as remote: each repository call opens its own short session and commits it,
so every call is one atomic round trip.

Transient failures (OperationalError, pool timeouts) are retried with
exponential backoff via tenacity. When retries are exhausted the call
raises StoreUnavailableError.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Sequence, TypeVar

import tenacity
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from coedit.exceptions import StoreUnavailableError
from coedit.models.lock import Lock, LockKey
from coedit.models.time_entry import TimeEntry, TimeEntryStatus
from coedit.storage.feed import ChangeFeed, Subscription
from coedit.storage.repositories import (
    FieldValueRepository,
    LockRepository,
    TimeEntryRepository,
)
from coedit.storage.schema import FieldValueRow, LockRow, TimeEntryRow

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRORS = (OperationalError, PoolTimeoutError)


def _is_retryable(exc: BaseException) -> bool:
    """Retryable: locked database, dropped connection, pool exhaustion.

    Not retryable: integrity violations and programming errors.
    """
    return isinstance(exc, _TRANSIENT_ERRORS)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class StoreCaller:
    """Runs one store round trip in its own transaction, with retry.

    Shared by all repositories of a store so they agree on retry policy.
    When the engine hands every thread the same connection (an in-memory
    SQLite database on StaticPool), calls are serialized so one thread's
    commit or rollback never lands on another thread's statements.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        max_retries: int = 3,
        wait: tenacity.wait.wait_base | None = None,
    ) -> None:
        self._session_factory = session_factory
        bind = session_factory.kw.get("bind")
        self._serial = threading.RLock() if isinstance(getattr(bind, "pool", None), StaticPool) else None
        self._max_retries = max_retries
        self._wait = wait if wait is not None else (
            tenacity.wait_exponential(multiplier=0.05, min=0.05, max=2)
            + tenacity.wait_random(0, 0.05)
        )

    @property
    def serialized(self) -> bool:
        """True when calls take turns on a single shared connection."""
        return self._serial is not None

    def run(self, operation: str, fn: Callable[[Session], T]) -> T:
        """Execute ``fn(session)`` in a transaction, retrying transient errors.

        Raises:
            StoreUnavailableError: After max_retries failed attempts.
            IntegrityError: Propagated unchanged (never retried).
        """
        retryer = tenacity.Retrying(
            retry=tenacity.retry_if_exception(_is_retryable),
            wait=self._wait,
            stop=tenacity.stop_after_attempt(self._max_retries),
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            return retryer(self._run_once, fn)
        except _TRANSIENT_ERRORS as exc:
            raise StoreUnavailableError(operation, self._max_retries, exc) from exc

    def _run_once(self, fn: Callable[[Session], T]) -> T:
        if self._serial is None:
            return self._transaction(fn)
        with self._serial:
            return self._transaction(fn)

    def _transaction(self, fn: Callable[[Session], T]) -> T:
        with self._session_factory() as session:
            with session.begin():
                return fn(session)


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------


def _row_to_lock(row: LockRow) -> Lock:
    return Lock(
        container_id=row.container_id,
        field_owner_id=row.field_owner_id,
        holder_id=row.holder_id,
        holder_display_name=row.holder_display_name,
        lease_id=row.lease_id,
        acquired_at=_as_utc(row.acquired_at),
        expires_at=_as_utc(row.expires_at),
        version=row.version,
    )


def _lock_topic(container_id: str) -> str:
    return f"locks:{container_id}"


class SqliteLockRepository(LockRepository):
    """SQLAlchemy implementation of lease record storage.

    Compare-and-set is a single conditional UPDATE/DELETE on the version
    column; create-if-absent is an INSERT guarded by the primary key.
    """

    def __init__(self, caller: StoreCaller, feed: ChangeFeed) -> None:
        self._caller = caller
        self._feed = feed

    def get(self, key: LockKey) -> Lock | None:
        def _get(session: Session) -> Lock | None:
            row = session.get(LockRow, (key.container_id, key.field_owner_id))
            return _row_to_lock(row) if row is not None else None

        return self._caller.run("lock get", _get)

    def insert(self, lock: Lock) -> bool:
        def _insert(session: Session) -> None:
            session.add(
                LockRow(
                    container_id=lock.container_id,
                    field_owner_id=lock.field_owner_id,
                    holder_id=lock.holder_id,
                    holder_display_name=lock.holder_display_name,
                    lease_id=lock.lease_id,
                    acquired_at=_to_db(lock.acquired_at),
                    expires_at=_to_db(lock.expires_at),
                    version=lock.version,
                )
            )
            session.flush()

        try:
            self._caller.run("lock insert", _insert)
        except IntegrityError:
            return False
        self._feed.publish(_lock_topic(lock.container_id))
        return True

    def compare_and_set(self, lock: Lock, expected_version: int) -> bool:
        def _cas(session: Session) -> int:
            stmt = (
                update(LockRow)
                .where(
                    LockRow.container_id == lock.container_id,
                    LockRow.field_owner_id == lock.field_owner_id,
                    LockRow.version == expected_version,
                )
                .values(
                    holder_id=lock.holder_id,
                    holder_display_name=lock.holder_display_name,
                    lease_id=lock.lease_id,
                    acquired_at=_to_db(lock.acquired_at),
                    expires_at=_to_db(lock.expires_at),
                    version=lock.version,
                )
                .execution_options(synchronize_session=False)
            )
            return session.execute(stmt).rowcount

        swapped = self._caller.run("lock compare_and_set", _cas) == 1
        if swapped:
            self._feed.publish(_lock_topic(lock.container_id))
        return swapped

    def delete(self, key: LockKey, expected_version: int | None = None) -> bool:
        def _delete(session: Session) -> int:
            stmt = delete(LockRow).where(
                LockRow.container_id == key.container_id,
                LockRow.field_owner_id == key.field_owner_id,
            )
            if expected_version is not None:
                stmt = stmt.where(LockRow.version == expected_version)
            return session.execute(
                stmt.execution_options(synchronize_session=False)
            ).rowcount

        deleted = self._caller.run("lock delete", _delete) > 0
        if deleted:
            self._feed.publish(_lock_topic(key.container_id))
        return deleted

    def list_for_container(self, container_id: str) -> list[Lock]:
        def _list(session: Session) -> list[Lock]:
            stmt = (
                select(LockRow)
                .where(LockRow.container_id == container_id)
                .order_by(LockRow.field_owner_id)
            )
            return [_row_to_lock(r) for r in session.execute(stmt).scalars()]

        return self._caller.run("lock list", _list)

    def subscribe(self, container_id: str) -> Subscription[list[Lock]]:
        return self._feed.subscribe(
            _lock_topic(container_id),
            lambda: self.list_for_container(container_id),
        )


# ---------------------------------------------------------------------------
# Field values
# ---------------------------------------------------------------------------


class SqliteFieldValueRepository(FieldValueRepository):
    """SQLAlchemy implementation of persisted field values."""

    def __init__(self, caller: StoreCaller, clock: Callable[[], datetime]) -> None:
        self._caller = caller
        self._now = clock

    def get(self, key: LockKey) -> Any:
        def _get(session: Session) -> Any:
            row = session.get(FieldValueRow, (key.container_id, key.field_owner_id))
            return row.payload_json.get("value") if row is not None else None

        return self._caller.run("field get", _get)

    def put(self, key: LockKey, value: Any, updated_by: str) -> None:
        now = _to_db(self._now())

        def _put(session: Session) -> None:
            row = session.get(FieldValueRow, (key.container_id, key.field_owner_id))
            if row is None:
                session.add(
                    FieldValueRow(
                        container_id=key.container_id,
                        field_owner_id=key.field_owner_id,
                        payload_json={"value": value},
                        updated_at=now,
                        updated_by=updated_by,
                    )
                )
            else:
                row.payload_json = {"value": value}
                row.updated_at = now
                row.updated_by = updated_by

        self._caller.run("field put", _put)


# ---------------------------------------------------------------------------
# Time entries
# ---------------------------------------------------------------------------


def _row_to_entry(row: TimeEntryRow) -> TimeEntry:
    return TimeEntry(
        id=row.id,
        user_id=row.user_id,
        organization_id=row.organization_id,
        start_time=_as_utc(row.start_time),
        end_time=_as_utc(row.end_time),
        status=row.status,
        work_date=row.work_date,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
        session_ref=row.session_ref,
        notes=row.notes,
    )


def _apply_entry(row: TimeEntryRow, entry: TimeEntry) -> None:
    row.user_id = entry.user_id
    row.organization_id = entry.organization_id
    row.start_time = _to_db(entry.start_time)
    row.end_time = _to_db(entry.end_time)
    row.status = entry.status
    row.work_date = entry.work_date
    row.created_at = _to_db(entry.created_at)
    row.updated_at = _to_db(entry.updated_at)
    row.session_ref = entry.session_ref
    row.notes = entry.notes


def _entry_topic(user_id: str) -> str:
    return f"entries:{user_id}"


class SqliteTimeEntryRepository(TimeEntryRepository):
    """SQLAlchemy implementation of time entry storage.

    insert() relies on the partial unique index over active entries, so the
    single-active-entry rule holds even for racing clock-ins.
    """

    def __init__(self, caller: StoreCaller, feed: ChangeFeed) -> None:
        self._caller = caller
        self._feed = feed

    def get(self, entry_id: str) -> TimeEntry | None:
        def _get(session: Session) -> TimeEntry | None:
            row = session.get(TimeEntryRow, entry_id)
            return _row_to_entry(row) if row is not None else None

        return self._caller.run("entry get", _get)

    def insert(self, entry: TimeEntry) -> bool:
        def _insert(session: Session) -> None:
            row = TimeEntryRow(id=entry.id)
            _apply_entry(row, entry)
            session.add(row)
            session.flush()

        try:
            self._caller.run("entry insert", _insert)
        except IntegrityError:
            logger.info("Rejected insert of entry %s for user %s", entry.id, entry.user_id)
            return False
        self._feed.publish(_entry_topic(entry.user_id))
        return True

    def update(self, entry: TimeEntry) -> bool:
        def _update(session: Session) -> bool:
            row = session.get(TimeEntryRow, entry.id)
            if row is None:
                return False
            _apply_entry(row, entry)
            return True

        updated = self._caller.run("entry update", _update)
        if updated:
            self._feed.publish(_entry_topic(entry.user_id))
        return updated

    def delete(self, entry_id: str) -> bool:
        def _delete(session: Session) -> str | None:
            row = session.get(TimeEntryRow, entry_id)
            if row is None:
                return None
            session.delete(row)
            return row.user_id

        user_id = self._caller.run("entry delete", _delete)
        if user_id is None:
            return False
        self._feed.publish(_entry_topic(user_id))
        return True

    def find_active(self, user_id: str) -> list[TimeEntry]:
        return list(self.list_for_user(user_id, status=TimeEntryStatus.ACTIVE))

    def list_for_user(
        self,
        user_id: str,
        *,
        work_dates: Sequence[str] | None = None,
        status: TimeEntryStatus | None = None,
    ) -> list[TimeEntry]:
        def _list(session: Session) -> list[TimeEntry]:
            stmt = select(TimeEntryRow).where(TimeEntryRow.user_id == user_id)
            if work_dates is not None:
                stmt = stmt.where(TimeEntryRow.work_date.in_(list(work_dates)))
            if status is not None:
                stmt = stmt.where(TimeEntryRow.status == status)
            stmt = stmt.order_by(TimeEntryRow.start_time, TimeEntryRow.id)
            return [_row_to_entry(r) for r in session.execute(stmt).scalars()]

        return self._caller.run("entry list", _list)

    def subscribe(self, user_id: str) -> Subscription[list[TimeEntry]]:
        return self._feed.subscribe(
            _entry_topic(user_id),
            lambda: self.list_for_user(user_id),
        )
