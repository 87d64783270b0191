"""Autosave coordinator: debounced, lease-gated writes of edited fields.

One coordinator serves one local editor (``holder_id``) and may track
several fields at once. For each field:

- every local edit (re)starts a trailing-edge debounce timer, so a burst of
  edits produces a single write carrying the last value;
- before writing, the coordinator checks that the lease is still held;
  if it is not, the write is suppressed, the field fails closed, and the
  unsaved value is handed to ``on_lost_edit`` instead of being dropped;
- writes for one field never overlap: a timer fire waits for the previous
  write of that field to settle.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable

from coedit.engine.locks import LeaseRenewer
from coedit.exceptions import (
    EditSessionError,
    LeaseLostError,
    LeaseNotHeldError,
    StoreUnavailableError,
)
from coedit.models.lock import LockError, LockKey, LockResult

if TYPE_CHECKING:
    from coedit.clock import Scheduler, TimerHandle
    from coedit.engine.locks import FieldLockManager

logger = logging.getLogger(__name__)

FieldWriter = Callable[[LockKey, Any], None]
LostEditCallback = Callable[[LockKey, Any, str], None]


@dataclass
class _FieldSession:
    key: LockKey
    last_persisted: Any
    pending: Any = None
    has_pending: bool = False
    in_flight: Any = None
    has_in_flight: bool = False
    timer: TimerHandle | None = None
    failed_reason: str | None = None
    renewer: LeaseRenewer | None = None
    writes: int = 0
    write_lock: threading.Lock = field(default_factory=threading.Lock)


class AutosaveCoordinator:
    """Coalesces rapid local edits into delayed writes, gated by the lease.

    Args:
        lock_manager: Consulted before every write.
        scheduler: Runs debounce timers (and lease renewals).
        writer: Persists ``(key, value)``; raising StoreUnavailableError
            fails the field closed.
        holder_id: Identity of the local editor.
        debounce_delay: Quiet period before a write.
        on_lost_edit: Called with ``(key, unsaved_value, reason)`` when a
            value cannot be persisted because the lease or store was lost.
        renew_leases: Keep each session's lease alive with a LeaseRenewer
            (on by default).
        lease_duration / renew_interval: Renewal settings when
            renew_leases is set (default: the lock manager's lease and a
            third of it).
    """

    def __init__(
        self,
        lock_manager: FieldLockManager,
        scheduler: Scheduler,
        writer: FieldWriter,
        holder_id: str,
        *,
        debounce_delay: timedelta = timedelta(milliseconds=500),
        on_lost_edit: LostEditCallback | None = None,
        renew_leases: bool = True,
        lease_duration: timedelta | None = None,
        renew_interval: timedelta | None = None,
    ) -> None:
        self._locks = lock_manager
        self._scheduler = scheduler
        self._writer = writer
        self._holder_id = holder_id
        self._delay = debounce_delay.total_seconds()
        self._on_lost_edit = on_lost_edit
        self._renew_leases = renew_leases
        self._lease_duration = lease_duration if lease_duration is not None else lock_manager.default_lease
        self._renew_interval = renew_interval or self._lease_duration / 3
        self._sessions: dict[LockKey, _FieldSession] = {}
        self._lock = threading.RLock()

    @property
    def holder_id(self) -> str:
        return self._holder_id

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def begin_session(self, key: LockKey, initial_value: Any) -> None:
        """Start tracking edits of a field whose lease is already held.

        Raises:
            LeaseNotHeldError: If the lock manager does not confirm the lease.
            EditSessionError: If a session for the key is already open.
        """
        key = LockKey(*key)
        if not self._locks.is_held(key.container_id, key.field_owner_id, self._holder_id):
            raise LeaseNotHeldError(key, self._holder_id)
        with self._lock:
            if key in self._sessions:
                raise EditSessionError(f"Editing session for {key} is already open")
            session = _FieldSession(key=key, last_persisted=initial_value)
            if self._renew_leases:
                session.renewer = LeaseRenewer(
                    self._locks,
                    self._scheduler,
                    key,
                    self._holder_id,
                    lease_duration=self._lease_duration,
                    interval=self._renew_interval,
                    on_lost=self._on_renewal_failed,
                )
            self._sessions[key] = session
        if session.renewer is not None:
            session.renewer.start()
        logger.debug("Began editing %s as %s", key, self._holder_id)

    def on_value_changed(self, key: LockKey, new_value: Any) -> None:
        """Record a local edit and (re)start the debounce timer.

        Raises:
            EditSessionError: If no session is open for the key.
            LeaseLostError: If the session has failed closed.
        """
        with self._lock:
            session = self._session(key)
            if session.failed_reason is not None:
                raise LeaseLostError(session.key, session.failed_reason)
            if session.timer is not None:
                session.timer.cancel()
                session.timer = None
            stored = session.in_flight if session.has_in_flight else session.last_persisted
            if new_value == stored:
                # Back to what the store holds (or is about to): nothing left to write.
                session.pending = None
                session.has_pending = False
                return
            session.pending = new_value
            session.has_pending = True
            session.timer = self._scheduler.call_later(
                self._delay, lambda: self._on_timer(session)
            )

    def end_session(self, key: LockKey) -> LockResult:
        """Flush any pending write synchronously, then release the lease.

        Returns the lock manager's release result. A failed flush is
        reported through on_lost_edit; the lease is released regardless.
        """
        with self._lock:
            session = self._session(key)
            if session.timer is not None:
                session.timer.cancel()
                session.timer = None
        if session.renewer is not None:
            session.renewer.stop()
        try:
            self._flush(session)
        finally:
            with self._lock:
                self._sessions.pop(session.key, None)
            result = self._locks.release(session.key.container_id, session.key.field_owner_id, self._holder_id)
        if not result.ok:
            logger.info("Release of %s after editing reported %s", session.key, result.error)
        return result

    def fail_closed(self, key: LockKey, reason: str) -> None:
        """Stop accepting edits for a field; report any unsaved value."""
        key = LockKey(*key)
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return
            if session.timer is not None:
                session.timer.cancel()
                session.timer = None
        if session.renewer is not None:
            session.renewer.stop()
        with session.write_lock:
            self._mark_failed(session, reason)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def is_active(self, key: LockKey) -> bool:
        with self._lock:
            session = self._sessions.get(LockKey(*key))
            return session is not None and session.failed_reason is None

    def has_pending(self, key: LockKey) -> bool:
        with self._lock:
            return self._session(key).has_pending

    def write_count(self, key: LockKey) -> int:
        with self._lock:
            return self._session(key).writes

    def last_persisted(self, key: LockKey) -> Any:
        with self._lock:
            return self._session(key).last_persisted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _session(self, key: LockKey) -> _FieldSession:
        session = self._sessions.get(LockKey(*key))
        if session is None:
            raise EditSessionError(f"No editing session is open for {LockKey(*key)}")
        return session

    def _on_timer(self, session: _FieldSession) -> None:
        with self._lock:
            session.timer = None
        self._flush(session)

    def _on_renewal_failed(self, key: LockKey, error: LockError) -> None:
        self.fail_closed(key, f"lease renewal failed ({error})")

    def _flush(self, session: _FieldSession) -> None:
        # write_lock keeps writes for one field strictly sequential.
        with session.write_lock:
            with self._lock:
                if not session.has_pending or session.failed_reason is not None:
                    return
                value = session.pending
                session.pending = None
                session.has_pending = False
                session.in_flight = value
                session.has_in_flight = True

            key = session.key
            try:
                held = self._lease_held(key)
                if held:
                    self._writer(key, value)
            except StoreUnavailableError as exc:
                self._abandon_write(session, value, f"store unavailable ({exc})")
                return
            if not held:
                self._abandon_write(session, value, "lease no longer held")
                return

            with self._lock:
                session.last_persisted = value
                session.in_flight = None
                session.has_in_flight = False
                session.writes += 1
            logger.debug("Autosaved %s (write #%d)", key, session.writes)

            try:
                still_held = self._lease_held(key)
            except StoreUnavailableError as exc:
                self._mark_failed(session, f"store unavailable ({exc})")
                return
            if not still_held:
                self._mark_failed(session, "lease lost during write")

    def _lease_held(self, key: LockKey) -> bool:
        return self._locks.is_held(key.container_id, key.field_owner_id, self._holder_id)

    def _abandon_write(self, session: _FieldSession, value: Any, reason: str) -> None:
        """Put an unwritten value back as pending, then fail closed."""
        with self._lock:
            session.in_flight = None
            session.has_in_flight = False
            if not session.has_pending:
                session.pending = value
                session.has_pending = True
        self._mark_failed(session, reason)

    def _mark_failed(self, session: _FieldSession, reason: str) -> None:
        """Fail the field closed. Caller holds session.write_lock."""
        with self._lock:
            if session.failed_reason is not None:
                return
            session.failed_reason = reason
            unsaved = session.pending
            had_pending = session.has_pending
            session.pending = None
            session.has_pending = False
        logger.warning("Autosave for %s failed closed: %s", session.key, reason)
        if session.renewer is not None:
            session.renewer.stop()
        if had_pending and self._on_lost_edit is not None:
            self._on_lost_edit(session.key, unsaved, reason)
