"""Coedit: consistency layer for collaborative field editing.

Lease-based field locks, debounced lease-gated autosave, and temporal
validation of time entries over a shared document store.
"""

from coedit._version import __version__

# Core entry point
from coedit.workspace import Workspace

# Configuration
from coedit.models.config import CoeditConfig

# Time sources
from coedit.clock import Clock, ManualClock, Scheduler, SystemClock, ThreadingScheduler

# Locks
from coedit.models.lock import Lock, LockError, LockErrorKind, LockKey, LockResult, LockToken
from coedit.engine.locks import ActiveLockView, FieldLockManager, LeaseRenewer

# Autosave
from coedit.engine.autosave import AutosaveCoordinator

# Time entries
from coedit.models.time_entry import (
    EntryResult,
    TimeEntry,
    TimeEntryStatus,
    ValidationErrorKind,
    ValidationResult,
)
from coedit.engine.temporal import TemporalValidator, normalize_notes
from coedit.operations.time_tracking import TimeTrackingService

# Exceptions
from coedit.exceptions import (
    CoeditError,
    ConfigError,
    EditSessionError,
    LeaseLostError,
    LeaseNotHeldError,
    StoreUnavailableError,
)

__all__ = [
    "__version__",
    "Workspace",
    "CoeditConfig",
    "Clock",
    "ManualClock",
    "Scheduler",
    "SystemClock",
    "ThreadingScheduler",
    "Lock",
    "LockError",
    "LockErrorKind",
    "LockKey",
    "LockResult",
    "LockToken",
    "ActiveLockView",
    "FieldLockManager",
    "LeaseRenewer",
    "AutosaveCoordinator",
    "EntryResult",
    "TimeEntry",
    "TimeEntryStatus",
    "ValidationErrorKind",
    "ValidationResult",
    "TemporalValidator",
    "normalize_notes",
    "TimeTrackingService",
    "CoeditError",
    "ConfigError",
    "EditSessionError",
    "LeaseLostError",
    "LeaseNotHeldError",
    "StoreUnavailableError",
]
