"""Coedit exception hierarchy.

All Coedit-specific exceptions inherit from CoeditError.

Lock contention and validation failures are NOT exceptions -- they are
returned as LockResult / ValidationResult values. Exceptions here cover
infrastructure failures and misuse of the editing-session API.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from coedit.models.lock import LockKey


class CoeditError(Exception):
    """Base exception for all Coedit errors."""


class ConfigError(CoeditError):
    """Raised when configuration values cannot be loaded or are invalid."""


class StoreUnavailableError(CoeditError):
    """Raised when the document store stays unreachable after all retries."""

    def __init__(self, operation: str, attempts: int, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        msg = f"Store unavailable during {operation} after {attempts} attempt(s)"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class EditSessionError(CoeditError):
    """Raised when the autosave API is used outside a valid editing session."""


class LeaseNotHeldError(EditSessionError):
    """Raised when an editing session is started without holding the lease."""

    def __init__(self, key: LockKey, holder_id: str) -> None:
        self.key = key
        self.holder_id = holder_id
        super().__init__(
            f"Cannot begin editing {key}: lease is not held by '{holder_id}'. "
            f"Acquire the field lock first."
        )


class LeaseLostError(EditSessionError):
    """Raised when edits arrive for a field whose session has failed closed."""

    def __init__(self, key: LockKey, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"Editing session for {key} is closed: {reason}")
