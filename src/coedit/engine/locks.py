"""Field lock manager: lease-based exclusive editing rights.

One lock record exists per (container_id, field_owner_id). A lock is a
time-bounded lease: once ``expires_at`` passes, every reader treats it as
absent and any party may reclaim it. All writes go through the store's
compare-and-set primitives, so two competing acquires for the same key can
never both succeed -- the loser re-reads and sees the winner's lease.

Contention (ALREADY_LOCKED), lost leases (NOT_HOLDER) and an unreachable
store (STORE_UNAVAILABLE) are returned as LockResult values, never raised.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Iterator

from coedit.exceptions import StoreUnavailableError
from coedit.models.lock import Lock, LockError, LockKey, LockResult, LockToken

if TYPE_CHECKING:
    from coedit.clock import Clock, Scheduler, TimerHandle
    from coedit.models.config import CoeditConfig
    from coedit.storage.repositories import LockRepository

logger = logging.getLogger(__name__)


def _token(lock: Lock) -> LockToken:
    return LockToken(
        key=lock.key,
        holder_id=lock.holder_id,
        lease_id=lock.lease_id,
        expires_at=lock.expires_at,
    )


class ActiveLockView:
    """Restartable, lazy view of the unexpired locks under a container.

    Each iteration reads a fresh snapshot from the store, so iterating
    twice may give different results. ``watch()`` follows the store's
    subscription and yields the active set after every change.
    """

    def __init__(self, repo: LockRepository, clock: Clock, container_id: str) -> None:
        self._repo = repo
        self._clock = clock
        self._container_id = container_id

    @property
    def container_id(self) -> str:
        return self._container_id

    def __iter__(self) -> Iterator[Lock]:
        now = self._clock.now()
        for lock in self._repo.list_for_container(self._container_id):
            if not lock.is_expired(now):
                yield lock

    def holders(self) -> dict[str, str]:
        """Map field_owner_id -> holder display name for active locks."""
        return {lock.field_owner_id: lock.holder_display_name for lock in self}

    def watch(self, timeout: float | None = None) -> Iterator[list[Lock]]:
        """Yield the active locks now and after every change to the container.

        Stops when no change arrives within ``timeout`` seconds (never, if
        None). Closing the generator closes the subscription.
        """
        with self._repo.subscribe(self._container_id) as sub:
            while True:
                snapshot = sub.next(timeout)
                if snapshot is None:
                    return
                now = self._clock.now()
                yield [lock for lock in snapshot if not lock.is_expired(now)]


class FieldLockManager:
    """Grants, renews, and revokes field editing leases.

    Constructed explicitly and injected into each editing session; tests
    may run any number of isolated managers side by side.

    Usage::

        result = locks.acquire("shoot-1", "entry-7", "user-42", "Ana")
        if result.ok:
            ...edit...
            locks.release("shoot-1", "entry-7", "user-42")
        else:
            show(f"Being edited by {result.error.holder_display_name}")
    """

    def __init__(self, repo: LockRepository, clock: Clock, config: CoeditConfig) -> None:
        self._repo = repo
        self._clock = clock
        self._config = config

    @property
    def default_lease(self) -> timedelta:
        return self._config.lease_duration

    # ------------------------------------------------------------------
    # Lease lifecycle
    # ------------------------------------------------------------------

    def acquire(
        self,
        container_id: str,
        field_owner_id: str,
        holder_id: str,
        holder_display_name: str = "",
        lease_duration: timedelta | None = None,
    ) -> LockResult:
        """Acquire (or idempotently renew) the lease on a field.

        Absent or expired lock: a new lease is created atomically.
        Unexpired lock held by ``holder_id``: its expiry is extended.
        Unexpired lock held by someone else: ALREADY_LOCKED.

        Raises:
            ValueError: If ``lease_duration`` is zero or negative.
        """
        key = LockKey(container_id, field_owner_id)
        lease = self._lease(lease_duration)
        try:
            current: Lock | None = None
            for _ in range(self._config.cas_max_attempts):
                now = self._clock.now()
                current = self._repo.get(key)

                if current is None:
                    fresh = self._new_lock(key, holder_id, holder_display_name, now, lease, version=1)
                    if self._repo.insert(fresh):
                        logger.debug("Granted %s to %s until %s", key, holder_id, fresh.expires_at)
                        return LockResult.success(_token(fresh))
                    continue

                if current.is_expired(now):
                    reclaimed = self._new_lock(
                        key, holder_id, holder_display_name, now, lease,
                        version=current.version + 1,
                    )
                    if self._repo.compare_and_set(reclaimed, current.version):
                        logger.debug(
                            "Reclaimed expired %s from %s for %s", key, current.holder_id, holder_id
                        )
                        return LockResult.success(_token(reclaimed))
                    continue

                if current.holder_id != holder_id:
                    return LockResult.failure(LockError.already_locked(current.holder_display_name))

                extended = current.model_copy(update={
                    "holder_display_name": holder_display_name or current.holder_display_name,
                    "expires_at": max(current.expires_at, now + lease),
                    "version": current.version + 1,
                })
                if self._repo.compare_and_set(extended, current.version):
                    logger.debug("Re-acquired %s for %s until %s", key, holder_id, extended.expires_at)
                    return LockResult.success(_token(extended))

            # Every attempt lost a race; report whoever holds it now.
            latest = self._repo.get(key)
            if latest is not None and latest.holder_id == holder_id and not latest.is_expired(self._clock.now()):
                return LockResult.success(_token(latest))
            name = latest.holder_display_name if latest is not None else ""
            logger.info("Gave up acquiring %s after %d attempts", key, self._config.cas_max_attempts)
            return LockResult.failure(LockError.already_locked(name))
        except StoreUnavailableError as exc:
            logger.warning("Store unavailable while acquiring %s: %s", key, exc)
            return LockResult.failure(LockError.store_unavailable(str(exc)))

    def renew(
        self,
        container_id: str,
        field_owner_id: str,
        holder_id: str,
        lease_duration: timedelta | None = None,
    ) -> LockResult:
        """Extend a held lease. Never shortens ``expires_at``.

        Fails with NOT_HOLDER when the lock is gone, expired, or held by
        someone else -- a lease that lapsed is lost even if nobody has
        reclaimed it yet.
        """
        key = LockKey(container_id, field_owner_id)
        lease = self._lease(lease_duration)
        try:
            for _ in range(self._config.cas_max_attempts):
                now = self._clock.now()
                current = self._repo.get(key)
                if current is None or current.holder_id != holder_id:
                    return LockResult.failure(LockError.not_holder(f"Lease on {key} is held by someone else or was released"))
                if current.is_expired(now):
                    return LockResult.failure(LockError.not_holder(f"Lease on {key} expired at {current.expires_at.isoformat()}"))

                renewed = current.model_copy(update={
                    "expires_at": max(current.expires_at, now + lease),
                    "version": current.version + 1,
                })
                if self._repo.compare_and_set(renewed, current.version):
                    logger.debug("Renewed %s for %s until %s", key, holder_id, renewed.expires_at)
                    return LockResult.success(_token(renewed))
            return LockResult.failure(LockError.not_holder(f"Lease on {key} kept changing during renewal"))
        except StoreUnavailableError as exc:
            logger.warning("Store unavailable while renewing %s: %s", key, exc)
            return LockResult.failure(LockError.store_unavailable(str(exc)))

    def release(self, container_id: str, field_owner_id: str, holder_id: str) -> LockResult:
        """Delete the lease if held by ``holder_id``.

        Releasing an absent lock succeeds. An expired lock held by someone
        else counts as absent and is left for sweep_stale().
        """
        key = LockKey(container_id, field_owner_id)
        try:
            for _ in range(self._config.cas_max_attempts):
                current = self._repo.get(key)
                if current is None:
                    return LockResult.success()
                if current.holder_id != holder_id:
                    if current.is_expired(self._clock.now()):
                        return LockResult.success()
                    return LockResult.failure(LockError.not_holder(f"Lease on {key} is held by {current.holder_display_name or current.holder_id}"))
                if self._repo.delete(key, expected_version=current.version):
                    logger.info("Released %s held by %s", key, holder_id)
                    return LockResult.success()
            return LockResult.failure(LockError.not_holder(f"Lease on {key} kept changing during release"))
        except StoreUnavailableError as exc:
            logger.warning("Store unavailable while releasing %s: %s", key, exc)
            return LockResult.failure(LockError.store_unavailable(str(exc)))

    # ------------------------------------------------------------------
    # Observation and cleanup
    # ------------------------------------------------------------------

    def check(self, container_id: str, field_owner_id: str) -> Lock | None:
        """The unexpired lock on a field, or None."""
        lock = self._repo.get(LockKey(container_id, field_owner_id))
        if lock is None or lock.is_expired(self._clock.now()):
            return None
        return lock

    def is_held(self, container_id: str, field_owner_id: str, holder_id: str) -> bool:
        lock = self.check(container_id, field_owner_id)
        return lock is not None and lock.holder_id == holder_id

    def list_active(self, container_id: str) -> ActiveLockView:
        """Lazy, restartable view of the container's unexpired locks."""
        return ActiveLockView(self._repo, self._clock, container_id)

    def sweep_stale(self, container_id: str) -> int:
        """Delete every lock under the container whose lease has expired.

        Each delete is conditional on the version that was read, so a lock
        renewed or reclaimed in the meantime survives, and a lock another
        sweeper already removed is skipped. Returns the number deleted.
        """
        now = self._clock.now()
        deleted = 0
        for lock in self._repo.list_for_container(container_id):
            if lock.expires_at < now and self._repo.delete(lock.key, expected_version=lock.version):
                deleted += 1
        if deleted:
            logger.info("Swept %d stale lock(s) under %s", deleted, container_id)
        return deleted

    def _lease(self, lease_duration: timedelta | None) -> timedelta:
        if lease_duration is None:
            return self.default_lease
        if lease_duration <= timedelta(0):
            raise ValueError(f"Lease duration must be positive, got {lease_duration}")
        return lease_duration

    @staticmethod
    def _new_lock(
        key: LockKey,
        holder_id: str,
        holder_display_name: str,
        now: datetime,
        lease: timedelta,
        *,
        version: int,
    ) -> Lock:
        return Lock(
            container_id=key.container_id,
            field_owner_id=key.field_owner_id,
            holder_id=holder_id,
            holder_display_name=holder_display_name,
            lease_id=uuid.uuid4().hex,
            acquired_at=now,
            expires_at=now + lease,
            version=version,
        )


class LeaseRenewer:
    """Keeps one held lease alive by renewing it on a fixed cadence.

    Renews every ``lease_duration * renew_fraction``. The first failed
    renewal stops the renewer and calls ``on_lost(key, error)``.
    """

    def __init__(
        self,
        manager: FieldLockManager,
        scheduler: Scheduler,
        key: LockKey,
        holder_id: str,
        *,
        lease_duration: timedelta,
        interval: timedelta,
        on_lost: Callable[[LockKey, LockError], None],
    ) -> None:
        self._manager = manager
        self._scheduler = scheduler
        self._key = key
        self._holder_id = holder_id
        self._lease_duration = lease_duration
        self._interval = interval
        self._on_lost = on_lost
        self._lock = threading.Lock()
        self._timer: TimerHandle | None = None
        self._running = False
        self.renewals = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._schedule()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _schedule(self) -> None:
        self._timer = self._scheduler.call_later(self._interval.total_seconds(), self._tick)

    def _tick(self) -> None:
        with self._lock:
            if not self._running:
                return
        result = self._manager.renew(
            self._key.container_id,
            self._key.field_owner_id,
            self._holder_id,
            self._lease_duration,
        )
        with self._lock:
            if not self._running:
                return
            if result.ok:
                self.renewals += 1
                self._schedule()
                return
            self._running = False
            self._timer = None
        logger.warning("Lost lease on %s: %s", self._key, result.error)
        self._on_lost(self._key, result.error)
