"""Injectable wall clock and timer scheduler.

Lease expiry and debounce scheduling never read system time directly:
every component receives a Clock (``now()``) and a Scheduler
(``call_later()``). Production code uses SystemClock + ThreadingScheduler;
tests use ManualClock, which is both, and only moves when told to.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class Clock(Protocol):
    """Source of the current time (timezone-aware, UTC)."""

    def now(self) -> datetime: ...


@runtime_checkable
class TimerHandle(Protocol):
    """Handle to a scheduled callback."""

    def cancel(self) -> None: ...


@runtime_checkable
class Scheduler(Protocol):
    """Runs a callback once after a delay given in seconds."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class SystemClock:
    """Clock backed by the system wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ThreadingScheduler:
    """Scheduler backed by daemon ``threading.Timer`` threads."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(delay, 0.0), callback)
        timer.daemon = True
        timer.start()
        return timer


class _ManualTimer:
    def __init__(self, due: datetime, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Deterministic clock and scheduler for tests and simulations.

    Time only moves on ``advance()`` / ``set()``. Callbacks scheduled via
    ``call_later()`` run synchronously, in due-time order (ties broken by
    scheduling order), inside the ``advance()`` call that reaches them. A
    callback that schedules another callback within the advanced window
    also runs before ``advance()`` returns.

    Usage::

        clock = ManualClock(datetime(2025, 5, 13, 9, 0, tzinfo=timezone.utc))
        clock.call_later(0.5, flush)
        clock.advance(timedelta(seconds=1))   # flush() ran at 09:00:00.5
    """

    def __init__(self, start: datetime | None = None) -> None:
        if start is None:
            start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._queue: list[tuple[datetime, int, _ManualTimer]] = []
        self._seq = itertools.count()
        self._lock = threading.RLock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        with self._lock:
            timer = _ManualTimer(self._now + timedelta(seconds=max(delay, 0.0)), callback)
            heapq.heappush(self._queue, (timer.due, next(self._seq), timer))
            return timer

    def advance(self, delta: timedelta | float) -> None:
        """Move time forward, running every callback that falls due."""
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        if delta < timedelta(0):
            raise ValueError(f"Cannot move a clock backwards (delta={delta})")
        self._run_until(self.now() + delta)

    def set(self, moment: datetime) -> None:
        """Jump to an absolute time (must not be in the past)."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        if moment < self.now():
            raise ValueError(f"Cannot move a clock backwards to {moment.isoformat()}")
        self._run_until(moment)

    @property
    def pending(self) -> int:
        """Number of scheduled, not yet cancelled callbacks."""
        with self._lock:
            return sum(1 for _, _, t in self._queue if not t.cancelled)

    def _run_until(self, target: datetime) -> None:
        while True:
            with self._lock:
                while self._queue and self._queue[0][2].cancelled:
                    heapq.heappop(self._queue)
                if not self._queue or self._queue[0][0] > target:
                    self._now = target
                    return
                due, _, timer = heapq.heappop(self._queue)
                self._now = max(self._now, due)
            # Run outside the lock so callbacks may schedule more work.
            timer.callback()
