"""Configuration model for Coedit.

CoeditConfig holds lease, debounce, and time-entry policy settings shared by
the lock manager, autosave coordinator, temporal validator, and storage.
"""

from __future__ import annotations

import os
from datetime import timedelta
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from coedit.exceptions import ConfigError

ENV_PREFIX = "COEDIT_"

_DURATION_FIELDS = frozenset({
    "lease_duration",
    "debounce_delay",
    "max_entry_duration",
    "min_entry_duration",
    "edit_window",
    "active_edit_window",
})


class CoeditConfig(BaseModel):
    """Per-workspace configuration.

    Durations accept ``timedelta`` values or numbers of seconds.
    """

    model_config = {"frozen": True}

    db_path: str = ":memory:"
    db_url: Optional[str] = None

    # Field locks
    lease_duration: timedelta = timedelta(seconds=45)
    renew_fraction: float = 1 / 3
    cas_max_attempts: int = 5

    # Autosave
    debounce_delay: timedelta = timedelta(milliseconds=500)

    # Time entries
    max_entry_duration: timedelta = timedelta(hours=24)
    min_entry_duration: timedelta = timedelta(0)  # 0 = disabled
    notes_max_length: int = 500
    edit_window: timedelta = timedelta(days=30)
    active_edit_window: timedelta = timedelta(hours=48)
    timezone: str = "UTC"
    allow_active_abort: bool = True

    # Store
    store_max_retries: int = 3

    @field_validator("lease_duration", "debounce_delay", "max_entry_duration", "edit_window", "active_edit_window")
    @classmethod
    def _positive_duration(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("duration must be positive")
        return v

    @field_validator("min_entry_duration")
    @classmethod
    def _non_negative_duration(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("duration must not be negative")
        return v

    @field_validator("renew_fraction")
    @classmethod
    def _fraction(cls, v: float) -> float:
        if not 0 < v < 1:
            raise ValueError("renew_fraction must be between 0 and 1 (exclusive)")
        return v

    @field_validator("cas_max_attempts", "store_max_retries", "notes_max_length")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown time zone {v!r}") from exc
        return v

    @model_validator(mode="after")
    def _min_below_max(self) -> CoeditConfig:
        if self.min_entry_duration >= self.max_entry_duration:
            raise ValueError("min_entry_duration must be shorter than max_entry_duration")
        return self

    @property
    def renew_interval(self) -> timedelta:
        """How often a held lease is renewed."""
        return self.lease_duration * self.renew_fraction

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: object) -> CoeditConfig:
        """Build a config from ``COEDIT_*`` environment variables.

        ``COEDIT_LEASE_DURATION=60`` sets a 60 second lease. Explicit keyword
        overrides win over the environment.

        Raises:
            ConfigError: If a variable cannot be parsed or fails validation.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for name in cls.model_fields:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if name in _DURATION_FIELDS:
                try:
                    values[name] = timedelta(seconds=float(raw))
                except ValueError:
                    raise ConfigError(
                        f"{ENV_PREFIX}{name.upper()} must be a number of seconds, got {raw!r}"
                    ) from None
            else:
                values[name] = raw
        values.update(overrides)
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
