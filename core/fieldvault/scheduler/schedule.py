"""
Persisted schedule state.

Created with defaults on first run, changed by user preference updates
and by the scheduler recording when each trigger last ran.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from ..config import DAY, OfflineConfig, SchedulerConfig, SyncConfig
from ..models import _enum, _optional, _require


class Cadence(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


CADENCE_SECONDS = {
    Cadence.DAILY: DAY,
    Cadence.WEEKLY: 7 * DAY,
    Cadence.MONTHLY: 30 * DAY,
}


class ValidationStatus(str, Enum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"


@dataclass(frozen=True)
class Schedule:
    """When each periodic trigger is due.

    Attributes:
        daily: Daily backups enabled
        weekly: Weekly backups enabled
        monthly: Monthly backups enabled
        sync_interval_seconds: Interval between scheduled syncs
        validation_interval_seconds: Interval between scheduled validations
        drain_interval_seconds: Interval between offline queue drains
        last_backup_at: Last successful scheduled or manual backup (Unix ms)
        last_sync_at: Last sync attempt (Unix ms)
        last_validation_at: Last validation (Unix ms)
        validation_status: Outcome of the last validation
    """

    daily: bool = True
    weekly: bool = True
    monthly: bool = True
    sync_interval_seconds: int = 4 * 60 * 60
    validation_interval_seconds: int = DAY
    drain_interval_seconds: int = 5 * 60
    last_backup_at: int | None = None
    last_sync_at: int | None = None
    last_validation_at: int | None = None
    validation_status: ValidationStatus = ValidationStatus.PENDING

    @classmethod
    def defaults(
        cls,
        scheduler: SchedulerConfig,
        sync: SyncConfig,
        offline: OfflineConfig,
    ) -> Schedule:
        return cls(
            daily=scheduler.daily,
            weekly=scheduler.weekly,
            monthly=scheduler.monthly,
            sync_interval_seconds=sync.interval_seconds,
            validation_interval_seconds=scheduler.validation_interval_seconds,
            drain_interval_seconds=offline.drain_interval_seconds,
        )

    @property
    def enabled_cadences(self) -> list[Cadence]:
        flags = {Cadence.DAILY: self.daily, Cadence.WEEKLY: self.weekly, Cadence.MONTHLY: self.monthly}
        return [cadence for cadence, enabled in flags.items() if enabled]

    @property
    def backup_interval_seconds(self) -> int | None:
        """Shortest enabled backup cadence, or None when backups are off."""
        enabled = self.enabled_cadences
        if not enabled:
            return None
        return min(CADENCE_SECONDS[c] for c in enabled)

    def backup_due(self, now: int) -> bool:
        interval = self.backup_interval_seconds
        if interval is None:
            return False
        return _elapsed(self.last_backup_at, now, interval)

    def sync_due(self, now: int) -> bool:
        return _elapsed(self.last_sync_at, now, self.sync_interval_seconds)

    def validation_due(self, now: int) -> bool:
        if self.validation_status == ValidationStatus.PENDING:
            return True
        return _elapsed(self.last_validation_at, now, self.validation_interval_seconds)

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_enabled": {
                Cadence.DAILY.value: self.daily,
                Cadence.WEEKLY.value: self.weekly,
                Cadence.MONTHLY.value: self.monthly,
            },
            "intervals": {
                "sync_seconds": self.sync_interval_seconds,
                "validation_seconds": self.validation_interval_seconds,
                "drain_seconds": self.drain_interval_seconds,
            },
            "last_backup_at": self.last_backup_at,
            "last_sync_at": self.last_sync_at,
            "last_validation_at": self.last_validation_at,
            "validation_status": self.validation_status.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Schedule:
        where = "schedule"
        enabled = _require(data, "backup_enabled", dict, where)
        intervals = _require(data, "intervals", dict, where)
        return cls(
            daily=_require(enabled, Cadence.DAILY.value, bool, where),
            weekly=_require(enabled, Cadence.WEEKLY.value, bool, where),
            monthly=_require(enabled, Cadence.MONTHLY.value, bool, where),
            sync_interval_seconds=_require(intervals, "sync_seconds", int, where),
            validation_interval_seconds=_require(intervals, "validation_seconds", int, where),
            drain_interval_seconds=_require(intervals, "drain_seconds", int, where),
            last_backup_at=_optional(data, "last_backup_at", int, where),
            last_sync_at=_optional(data, "last_sync_at", int, where),
            last_validation_at=_optional(data, "last_validation_at", int, where),
            validation_status=_enum(ValidationStatus, data, "validation_status", where),
        )


def _elapsed(last: int | None, now: int, interval_seconds: float) -> bool:
    return last is None or now - last >= interval_seconds * 1000
