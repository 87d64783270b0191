"""Tests for FieldLockManager, ActiveLockView and LeaseRenewer.

Covers:
- acquire on absent, expired, own and foreign locks
- renew extends and never shortens; fails once the lease lapsed
- release semantics, including expired foreign locks
- sweep_stale deletes only expired locks and is idempotent
- lease exclusivity under random operation sequences (hypothesis)
- simultaneous acquires from threads against a file-backed store
"""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest
import tenacity
from hypothesis import given, settings, HealthCheck

from coedit.clock import ManualClock
from coedit.engine.locks import FieldLockManager, LeaseRenewer
from coedit.models.config import CoeditConfig
from coedit.models.lock import LockErrorKind, LockKey
from coedit.storage.engine import create_coedit_engine, create_session_factory, init_db
from coedit.storage.feed import ChangeFeed
from coedit.storage.sqlite import SqliteLockRepository, StoreCaller
from tests.conftest import T0
from tests.strategies import lock_ops

KEY = LockKey("shoot1", "entry7")
LEASE = timedelta(seconds=45)


def _acquire(manager, holder, name=None, lease=None):
    return manager.acquire(KEY.container_id, KEY.field_owner_id, holder, name or holder.title(), lease)


# ---------------------------------------------------------------------------
# acquire
# ---------------------------------------------------------------------------


class TestAcquire:
    def test_acquire_absent(self, lock_manager, clock):
        result = _acquire(lock_manager, "ana")
        assert result.ok
        assert result.token.key == KEY
        assert result.token.holder_id == "ana"
        assert result.token.expires_at == clock.now() + LEASE

    def test_foreign_lock_reports_holder_name(self, lock_manager):
        _acquire(lock_manager, "ana", "Ana Lima")
        result = _acquire(lock_manager, "ben")
        assert not result.ok
        assert result.error.kind is LockErrorKind.ALREADY_LOCKED
        assert result.error.holder_display_name == "Ana Lima"

    def test_reacquire_by_holder_extends(self, lock_manager, clock):
        first = _acquire(lock_manager, "ana")
        clock.advance(10)
        second = _acquire(lock_manager, "ana")
        assert second.ok
        assert second.token.lease_id == first.token.lease_id
        assert second.token.expires_at == clock.now() + LEASE

    def test_reacquire_with_shorter_lease_never_shortens(self, lock_manager):
        first = _acquire(lock_manager, "ana")
        second = _acquire(lock_manager, "ana", lease=timedelta(seconds=5))
        assert second.token.expires_at == first.token.expires_at

    def test_expired_lock_is_reclaimed(self, lock_manager, clock):
        first = _acquire(lock_manager, "ana")
        clock.advance(LEASE)
        result = _acquire(lock_manager, "ben")
        assert result.ok
        assert result.token.holder_id == "ben"
        assert result.token.lease_id != first.token.lease_id

    def test_lock_still_held_just_before_expiry(self, lock_manager, clock):
        _acquire(lock_manager, "ana")
        clock.advance(LEASE - timedelta(milliseconds=1))
        assert _acquire(lock_manager, "ben").error.kind is LockErrorKind.ALREADY_LOCKED

    def test_custom_lease_duration(self, lock_manager, clock):
        result = _acquire(lock_manager, "ana", lease=timedelta(seconds=5))
        assert result.token.expires_at == clock.now() + timedelta(seconds=5)

    @pytest.mark.parametrize("lease", [timedelta(0), timedelta(seconds=-5)])
    def test_non_positive_lease_rejected(self, lock_manager, lease):
        with pytest.raises(ValueError):
            _acquire(lock_manager, "ana", lease=lease)
        assert lock_manager.check(*KEY) is None

    def test_independent_fields(self, lock_manager):
        assert lock_manager.acquire("shoot1", "entry7", "ana", "Ana").ok
        assert lock_manager.acquire("shoot1", "entry8", "ben", "Ben").ok
        assert lock_manager.acquire("shoot2", "entry7", "ben", "Ben").ok


# ---------------------------------------------------------------------------
# renew / release
# ---------------------------------------------------------------------------


class TestRenew:
    def test_renew_extends(self, lock_manager, clock):
        first = _acquire(lock_manager, "ana")
        clock.advance(30)
        result = lock_manager.renew(*KEY, "ana")
        assert result.ok
        assert result.token.expires_at == clock.now() + LEASE
        assert result.token.expires_at > first.token.expires_at

    def test_renew_never_shortens(self, lock_manager):
        first = _acquire(lock_manager, "ana")
        result = lock_manager.renew(*KEY, "ana", timedelta(seconds=1))
        assert result.token.expires_at == first.token.expires_at

    def test_renew_by_other_holder(self, lock_manager):
        _acquire(lock_manager, "ana")
        result = lock_manager.renew(*KEY, "ben")
        assert result.error.kind is LockErrorKind.NOT_HOLDER

    def test_renew_absent(self, lock_manager):
        assert lock_manager.renew(*KEY, "ana").error.kind is LockErrorKind.NOT_HOLDER

    def test_renew_after_expiry_fails(self, lock_manager, clock):
        _acquire(lock_manager, "ana")
        clock.advance(LEASE + timedelta(seconds=1))
        assert lock_manager.renew(*KEY, "ana").error.kind is LockErrorKind.NOT_HOLDER

    def test_renew_with_non_positive_lease_rejected(self, lock_manager):
        first = _acquire(lock_manager, "ana")
        with pytest.raises(ValueError):
            lock_manager.renew(*KEY, "ana", timedelta(0))
        assert lock_manager.check(*KEY).expires_at == first.token.expires_at


class TestRelease:
    def test_release_then_other_acquires_immediately(self, lock_manager):
        _acquire(lock_manager, "ana")
        assert lock_manager.release(*KEY, "ana").ok
        assert _acquire(lock_manager, "ben").ok

    def test_release_absent_is_ok(self, lock_manager):
        assert lock_manager.release(*KEY, "ana").ok

    def test_release_foreign_lock_refused(self, lock_manager):
        _acquire(lock_manager, "ana")
        result = lock_manager.release(*KEY, "ben")
        assert result.error.kind is LockErrorKind.NOT_HOLDER
        assert lock_manager.is_held(*KEY, "ana")

    def test_release_expired_foreign_lock_is_ok(self, lock_manager, lock_repo, clock):
        _acquire(lock_manager, "ana")
        clock.advance(LEASE)
        assert lock_manager.release(*KEY, "ben").ok
        # Left in place for sweep_stale.
        assert lock_repo.get(KEY) is not None


# ---------------------------------------------------------------------------
# observation and cleanup
# ---------------------------------------------------------------------------


class TestObservation:
    def test_check_and_is_held(self, lock_manager, clock):
        assert lock_manager.check(*KEY) is None
        _acquire(lock_manager, "ana")
        assert lock_manager.check(*KEY).holder_id == "ana"
        assert lock_manager.is_held(*KEY, "ana")
        assert not lock_manager.is_held(*KEY, "ben")
        clock.advance(LEASE)
        assert lock_manager.check(*KEY) is None
        assert not lock_manager.is_held(*KEY, "ana")

    def test_list_active_is_restartable(self, lock_manager, clock):
        lock_manager.acquire("shoot1", "entry1", "ana", "Ana", timedelta(seconds=10))
        lock_manager.acquire("shoot1", "entry2", "ben", "Ben")
        view = lock_manager.list_active("shoot1")
        assert [lock.field_owner_id for lock in view] == ["entry1", "entry2"]
        clock.advance(10)
        assert [lock.field_owner_id for lock in view] == ["entry2"]
        assert view.holders() == {"entry2": "Ben"}

    def test_watch_yields_after_changes(self, lock_manager):
        view = lock_manager.list_active("shoot1")
        stream = view.watch(timeout=0)
        assert next(stream) == []
        lock_manager.acquire("shoot1", "entry1", "ana", "Ana")
        assert [lock.holder_id for lock in next(stream)] == ["ana"]
        lock_manager.release("shoot1", "entry1", "ana")
        assert next(stream) == []
        with pytest.raises(StopIteration):
            next(stream)

    def test_watch_closes_subscription(self, lock_manager, feed):
        stream = lock_manager.list_active("shoot1").watch(timeout=0)
        next(stream)
        assert feed.subscriber_count("locks:shoot1") == 1
        stream.close()
        assert feed.subscriber_count("locks:shoot1") == 0


class TestSweep:
    def test_sweep_deletes_only_expired(self, lock_manager, lock_repo, clock):
        lock_manager.acquire("shoot1", "entry1", "ana", "Ana", timedelta(seconds=10))
        lock_manager.acquire("shoot1", "entry2", "ben", "Ben", timedelta(seconds=60))
        clock.advance(11)
        assert lock_manager.sweep_stale("shoot1") == 1
        remaining = [lock.field_owner_id for lock in lock_repo.list_for_container("shoot1")]
        assert remaining == ["entry2"]

    def test_sweep_twice_equals_once(self, lock_manager, lock_repo, clock):
        for owner in ("entry1", "entry2", "entry3"):
            lock_manager.acquire("shoot1", owner, "ana", "Ana", timedelta(seconds=5))
        clock.advance(6)
        assert lock_manager.sweep_stale("shoot1") == 3
        assert lock_manager.sweep_stale("shoot1") == 0
        assert lock_repo.list_for_container("shoot1") == []

    def test_sweep_other_container_untouched(self, lock_manager, lock_repo, clock):
        lock_manager.acquire("shoot2", "entry1", "ana", "Ana", timedelta(seconds=5))
        clock.advance(6)
        assert lock_manager.sweep_stale("shoot1") == 0
        assert len(lock_repo.list_for_container("shoot2")) == 1


# ---------------------------------------------------------------------------
# properties
# ---------------------------------------------------------------------------


class TestLeaseProperties:
    @given(ops=lock_ops)
    @settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_successful_grants_never_overlap(self, ops, lock_repo):
        clock = ManualClock(T0)
        # Fresh key per example; the repository fixture is shared across examples.
        key = LockKey("prop", uuid.uuid4().hex)
        manager = FieldLockManager(lock_repo, clock, CoeditConfig())
        granted: dict[str, datetime] = {}

        def assert_exclusive(holder):
            now = clock.now()
            others = [h for h, expires in granted.items() if h != holder and expires > now]
            assert others == [], f"{holder} granted while {others} still hold a lease"

        for op, holder, lease_s, advance_s in ops:
            lease = timedelta(seconds=lease_s)
            if op == "acquire":
                result = manager.acquire(*key, holder, holder, lease)
                if result.ok:
                    assert_exclusive(holder)
                    granted[holder] = result.token.expires_at
            elif op == "renew":
                before = lock_repo.get(key)
                result = manager.renew(*key, holder, lease)
                if result.ok:
                    assert_exclusive(holder)
                    assert result.token.expires_at >= before.expires_at
                    granted[holder] = result.token.expires_at
            elif op == "release":
                if manager.release(*key, holder).ok:
                    granted.pop(holder, None)
            else:
                manager.sweep_stale(key.container_id)
            clock.advance(advance_s)

    @given(ops=lock_ops)
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_sweep_is_idempotent(self, ops, lock_repo):
        clock = ManualClock(T0)
        container = f"sweep-{uuid.uuid4().hex}"
        manager = FieldLockManager(lock_repo, clock, CoeditConfig())
        for i, (_, holder, lease_s, advance_s) in enumerate(ops):
            manager.acquire(container, f"field-{i % 4}", holder, holder, timedelta(seconds=lease_s))
            clock.advance(advance_s)
        manager.sweep_stale(container)
        snapshot = lock_repo.list_for_container(container)
        assert manager.sweep_stale(container) == 0
        assert lock_repo.list_for_container(container) == snapshot


# ---------------------------------------------------------------------------
# LeaseRenewer
# ---------------------------------------------------------------------------


class TestLeaseRenewer:
    def test_keeps_lease_alive(self, lock_manager, clock):
        _acquire(lock_manager, "ana")
        lost = []
        renewer = LeaseRenewer(
            lock_manager, clock, KEY, "ana",
            lease_duration=LEASE, interval=LEASE / 3,
            on_lost=lambda key, error: lost.append(error),
        )
        renewer.start()
        clock.advance(timedelta(minutes=5))
        assert lock_manager.is_held(*KEY, "ana")
        assert renewer.renewals == 20
        assert lost == []
        renewer.stop()
        clock.advance(LEASE)
        assert not lock_manager.is_held(*KEY, "ana")

    def test_reports_lost_lease(self, lock_manager, lock_repo, clock):
        _acquire(lock_manager, "ana")
        lost = []
        renewer = LeaseRenewer(
            lock_manager, clock, KEY, "ana",
            lease_duration=LEASE, interval=LEASE / 3,
            on_lost=lambda key, error: lost.append((key, error)),
        )
        renewer.start()
        lock_repo.delete(KEY)  # e.g. an admin force-release
        clock.advance(LEASE / 3)
        assert len(lost) == 1
        assert lost[0][0] == KEY
        assert lost[0][1].kind is LockErrorKind.NOT_HOLDER
        assert not renewer.running
        assert clock.pending == 0


# ---------------------------------------------------------------------------
# concurrency
# ---------------------------------------------------------------------------


class TestConcurrentAcquire:
    @pytest.fixture
    def file_manager_factory(self, tmp_path):
        engine = create_coedit_engine(str(tmp_path / "locks.db"))
        init_db(engine)
        session_factory = create_session_factory(engine)
        clock = ManualClock(T0)
        feed = ChangeFeed()

        def factory():
            caller = StoreCaller(session_factory, max_retries=10, wait=tenacity.wait_fixed(0.01))
            return FieldLockManager(SqliteLockRepository(caller, feed), clock, CoeditConfig())

        yield factory
        engine.dispose()

    def test_two_devices_same_instant(self, file_manager_factory):
        devices = [file_manager_factory(), file_manager_factory()]
        barrier = threading.Barrier(2)

        def attempt(i):
            barrier.wait()
            return devices[i].acquire("shoot1", "entry7", f"device-{i}", f"Device {i}")

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(attempt, range(2)))

        winners = [r for r in results if r.ok]
        losers = [r for r in results if not r.ok]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].error.kind is LockErrorKind.ALREADY_LOCKED

    def test_many_contenders_one_winner(self, file_manager_factory):
        n = 8
        managers = [file_manager_factory() for _ in range(n)]
        barrier = threading.Barrier(n)

        def attempt(i):
            barrier.wait()
            return managers[i].acquire("shoot1", "entry9", f"device-{i}", f"Device {i}")

        with ThreadPoolExecutor(max_workers=n) as pool:
            results = list(pool.map(attempt, range(n)))

        assert sum(1 for r in results if r.ok) == 1
        assert all(r.error.kind is LockErrorKind.ALREADY_LOCKED for r in results if not r.ok)
