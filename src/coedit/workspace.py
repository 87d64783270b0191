"""Workspace: one store plus the services that share it.

The explicit wiring point for an application. A Workspace owns the SQLAlchemy
engine, the change feed and the repositories, and hands out the lock manager,
temporal validator, time tracking service and per-editor autosave
coordinators built on top of them. Each Workspace is fully isolated; tests
open as many as they like.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

import tenacity

from coedit.clock import Clock, Scheduler, SystemClock, ThreadingScheduler
from coedit.engine.autosave import AutosaveCoordinator, LostEditCallback
from coedit.engine.locks import FieldLockManager
from coedit.engine.temporal import TemporalValidator
from coedit.models.config import CoeditConfig
from coedit.models.lock import LockKey
from coedit.operations.time_tracking import TimeTrackingService
from coedit.storage.engine import create_coedit_engine, create_session_factory, init_db
from coedit.storage.feed import ChangeFeed
from coedit.storage.sqlite import (
    SqliteFieldValueRepository,
    SqliteLockRepository,
    SqliteTimeEntryRepository,
    StoreCaller,
)

logger = logging.getLogger(__name__)


class Workspace:
    """Entry point wiring storage, locks, autosave and time tracking.

    Create via :meth:`Workspace.open`; use as a context manager to dispose
    the engine on exit::

        with Workspace.open("coedit.db") as ws:
            result = ws.locks.acquire("shoot-1", "entry-7", "user-42", "Ana")
    """

    def __init__(
        self,
        *,
        engine: Any,
        config: CoeditConfig,
        clock: Clock,
        scheduler: Scheduler,
        caller: StoreCaller,
        feed: ChangeFeed,
    ) -> None:
        self._engine = engine
        self._config = config
        self._clock = clock
        self._scheduler = scheduler
        self._caller = caller
        self._feed = feed
        self._closed = False

        self.lock_repo = SqliteLockRepository(caller, feed)
        self.entry_repo = SqliteTimeEntryRepository(caller, feed)
        self.fields = SqliteFieldValueRepository(caller, clock.now)

        self.locks = FieldLockManager(self.lock_repo, clock, config)
        self.validator = TemporalValidator(self.entry_repo, clock, config)
        self.time_tracking = TimeTrackingService(self.entry_repo, self.validator, clock, config)

    @classmethod
    def open(
        cls,
        path: str | None = None,
        *,
        config: CoeditConfig | None = None,
        url: str | None = None,
        clock: Clock | None = None,
        scheduler: Scheduler | None = None,
        retry_wait: tenacity.wait.wait_base | None = None,
    ) -> Workspace:
        """Open (or create) a workspace database.

        Args:
            path: SQLite path or ``":memory:"``. Defaults to ``config.db_path``.
            config: Settings; defaults to ``CoeditConfig()``.
            url: Full SQLAlchemy URL; overrides *path* and ``config.db_url``.
            clock: Time source; defaults to SystemClock.
            scheduler: Timer source; defaults to ThreadingScheduler, or to
                *clock* itself when the clock can also schedule (ManualClock).
            retry_wait: tenacity wait strategy for store retries (tests pass
                ``tenacity.wait_none()``).

        Returns:
            A ready-to-use Workspace.
        """
        config = config or CoeditConfig()
        clock = clock or SystemClock()
        if scheduler is None:
            scheduler = clock if isinstance(clock, Scheduler) else ThreadingScheduler()

        db_path = path if path is not None else config.db_path
        engine = create_coedit_engine(db_path, url=url or config.db_url)
        init_db(engine)
        caller = StoreCaller(
            create_session_factory(engine),
            max_retries=config.store_max_retries,
            wait=retry_wait,
        )
        logger.debug("Opened workspace at %s", url or config.db_url or db_path)
        return cls(
            engine=engine,
            config=config,
            clock=clock,
            scheduler=scheduler,
            caller=caller,
            feed=ChangeFeed(),
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> CoeditConfig:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    def autosave(
        self,
        holder_id: str,
        *,
        writer: Any = None,
        on_lost_edit: LostEditCallback | None = None,
        debounce_delay: timedelta | None = None,
        renew_leases: bool = True,
    ) -> AutosaveCoordinator:
        """Autosave coordinator for one local editor.

        Writes go to the workspace's field value store unless a *writer*
        ``(key, value) -> None`` is given.
        """
        if writer is None:
            def writer(key: LockKey, value: Any) -> None:
                self.fields.put(key, value, updated_by=holder_id)

        return AutosaveCoordinator(
            self.locks,
            self._scheduler,
            writer,
            holder_id,
            debounce_delay=debounce_delay or self._config.debounce_delay,
            on_lost_edit=on_lost_edit,
            renew_leases=renew_leases,
            lease_duration=self._config.lease_duration,
            renew_interval=self._config.renew_interval,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Dispose the engine. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._engine.dispose()

    def __enter__(self) -> Workspace:
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Workspace(db='{self._engine.url}')"
