"""Lock domain models for Coedit.

Lock is the SDK-facing view of one lease record in the store.
LockResult is what every FieldLockManager operation returns: contention
and lost leases are ordinary outcomes, reported as LockError values.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import NamedTuple

from pydantic import BaseModel, ValidationInfo, field_validator


class LockKey(NamedTuple):
    """Composite key of a lock: one editable field within one container."""

    container_id: str
    field_owner_id: str

    def __str__(self) -> str:
        return f"{self.container_id}/{self.field_owner_id}"


class Lock(BaseModel):
    """A lease record: exclusive editing rights over one field.

    Not an ORM model -- used for data transfer only.
    """

    model_config = {"frozen": True}

    container_id: str
    field_owner_id: str
    holder_id: str
    holder_display_name: str = ""
    lease_id: str
    acquired_at: datetime
    expires_at: datetime
    version: int = 1

    @field_validator("expires_at")
    @classmethod
    def _expires_after_acquired(cls, v: datetime, info: ValidationInfo) -> datetime:
        acquired = info.data.get("acquired_at")
        if acquired is not None and v < acquired:
            raise ValueError("expires_at must not precede acquired_at")
        return v

    @property
    def key(self) -> LockKey:
        return LockKey(self.container_id, self.field_owner_id)

    def is_expired(self, now: datetime) -> bool:
        """A lock is expired (treated as absent) once ``now`` reaches expires_at."""
        return now >= self.expires_at

    def remaining(self, now: datetime) -> float:
        """Seconds of lease left (0 when expired)."""
        return max((self.expires_at - now).total_seconds(), 0.0)

    def __repr__(self) -> str:
        return (
            f"Lock({self.key} holder={self.holder_id!r} "
            f"expires={self.expires_at.isoformat()} v{self.version})"
        )


@dataclass(frozen=True)
class LockToken:
    """Proof of a granted lease, returned by a successful acquire/renew."""

    key: LockKey
    holder_id: str
    lease_id: str
    expires_at: datetime


class LockErrorKind(str, enum.Enum):
    """Why a lock operation did not succeed."""

    ALREADY_LOCKED = "already_locked"
    NOT_HOLDER = "not_holder"
    STORE_UNAVAILABLE = "store_unavailable"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class LockError:
    """A lock operation outcome other than success.

    Attributes:
        kind: The failure category.
        holder_display_name: Display name of the current holder, set for
            ALREADY_LOCKED so the UI can say "being edited by X".
        detail: Human-readable explanation.
    """

    kind: LockErrorKind
    holder_display_name: str | None = None
    detail: str = ""

    @classmethod
    def already_locked(cls, holder_display_name: str) -> LockError:
        return cls(
            LockErrorKind.ALREADY_LOCKED,
            holder_display_name=holder_display_name,
            detail=f"Field is being edited by {holder_display_name or 'another user'}",
        )

    @classmethod
    def not_holder(cls, detail: str = "Lease is not held by this holder") -> LockError:
        return cls(LockErrorKind.NOT_HOLDER, detail=detail)

    @classmethod
    def store_unavailable(cls, detail: str) -> LockError:
        return cls(LockErrorKind.STORE_UNAVAILABLE, detail=detail)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}" if self.detail else self.kind.value


@dataclass(frozen=True)
class LockResult:
    """Outcome of acquire/renew/release.

    Exactly one of ``token`` (on acquire/renew success) or ``error`` is
    meaningful; release success carries neither.
    """

    token: LockToken | None = None
    error: LockError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, token: LockToken | None = None) -> LockResult:
        return cls(token=token)

    @classmethod
    def failure(cls, error: LockError) -> LockResult:
        return cls(error=error)

    def __repr__(self) -> str:
        if self.ok:
            return f"LockResult(ok token={self.token.lease_id[:8] if self.token else None})"
        return f"LockResult(failed {self.error})"
