"""
Record types for the FieldVault durability core.

Every record that is persisted under one of the logical keys
(``backup.current``, ``backup.history``, ``version.history``,
``sync.state``, ``offline.queue``) is defined here with a
``to_dict()``/``from_dict()`` pair.

Invariants:
    - Records are immutable; owners publish replacements, never mutate
    - ``from_dict`` validates every field and raises SerializationError
      on any missing or mistyped value
    - All timestamps are Unix milliseconds

How to change safely:
    - Add new fields with defaults and accept their absence in from_dict
    - Never rename a persisted field, old keys must still decode
"""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from .errors import SerializationError


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return int(time.time() * 1000)


def _require(data: Mapping[str, Any], name: str, types: type | tuple[type, ...], where: str) -> Any:
    if not isinstance(data, Mapping):
        raise SerializationError(f"{where}: expected an object, got {type(data).__name__}")
    if name not in data:
        raise SerializationError(f"{where}: missing field '{name}'")
    value = data[name]
    # bool is an int subclass; never accept it where a number is expected
    if isinstance(value, bool) and bool not in (types if isinstance(types, tuple) else (types,)):
        raise SerializationError(f"{where}: field '{name}' has invalid type bool")
    if not isinstance(value, types):
        raise SerializationError(
            f"{where}: field '{name}' has invalid type {type(value).__name__}"
        )
    return value


def _optional(data: Mapping[str, Any], name: str, types: type | tuple[type, ...], where: str) -> Any:
    if data.get(name) is None:
        return None
    return _require(data, name, types, where)


def _enum(enum_cls: type[Enum], data: Mapping[str, Any], name: str, where: str) -> Any:
    raw = _require(data, name, str, where)
    try:
        return enum_cls(raw)
    except ValueError:
        raise SerializationError(f"{where}: field '{name}' has unknown value '{raw}'")


# ---------------------------------------------------------------------------
# Snapshots and backup history
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Snapshot:
    """A complete, immutable point-in-time copy of the application data.

    Attributes:
        timestamp: When the snapshot was taken (Unix ms)
        payload: Named collections, opaque to the core
        schema_version: Version of the payload layout (``x.y.z``)
    """

    timestamp: int
    payload: dict[str, Any]
    schema_version: str

    def copy(self) -> Snapshot:
        """Return a deep copy so callers can never reach shared state."""
        return Snapshot(
            timestamp=self.timestamp,
            payload=copy.deepcopy(self.payload),
            schema_version=self.schema_version,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "schema_version": self.schema_version,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Snapshot:
        where = "snapshot"
        return cls(
            timestamp=_require(data, "timestamp", int, where),
            payload=dict(_require(data, "payload", dict, where)),
            schema_version=_require(data, "schema_version", str, where),
        )


class BackupOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class BackupHistoryEntry:
    """One attempt to take a snapshot, successful or not.

    Attributes:
        id: Unique entry identifier
        timestamp: When the attempt was made (Unix ms)
        size_bytes: Encoded snapshot size (0 for failed attempts)
        schema_version: Payload schema version
        outcome: success or failed
        error_detail: Failure description for failed attempts
    """

    id: str
    timestamp: int
    size_bytes: int
    schema_version: str
    outcome: BackupOutcome
    error_detail: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == BackupOutcome.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "size_bytes": self.size_bytes,
            "schema_version": self.schema_version,
            "outcome": self.outcome.value,
            "error_detail": self.error_detail,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BackupHistoryEntry:
        where = "backup history entry"
        return cls(
            id=_require(data, "id", str, where),
            timestamp=_require(data, "timestamp", int, where),
            size_bytes=_require(data, "size_bytes", int, where),
            schema_version=_require(data, "schema_version", str, where),
            outcome=_enum(BackupOutcome, data, "outcome", where),
            error_detail=_optional(data, "error_detail", str, where),
        )


@dataclass(frozen=True)
class BackupMetrics:
    """Aggregate statistics over the retained backup history."""

    total_backups: int = 0
    successful_backups: int = 0
    failed_backups: int = 0
    last_backup_at: int | None = None
    last_successful_backup_at: int | None = None
    total_size_bytes: int = 0
    success_ratio: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_backups": self.total_backups,
            "successful_backups": self.successful_backups,
            "failed_backups": self.failed_backups,
            "last_backup_at": self.last_backup_at,
            "last_successful_backup_at": self.last_successful_backup_at,
            "total_size_bytes": self.total_size_bytes,
            "success_ratio": round(self.success_ratio, 3),
        }


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class Origin(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


def _name_set(data: Mapping[str, Any], name: str, where: str) -> frozenset[str]:
    values = _require(data, name, list, where)
    if not all(isinstance(v, str) for v in values):
        raise SerializationError(f"{where}: field '{name}' must contain only strings")
    return frozenset(values)


@dataclass(frozen=True)
class VersionDelta:
    """Entity classes (collection names) touched by a change."""

    added: frozenset[str] = frozenset()
    removed: frozenset[str] = frozenset()
    updated: frozenset[str] = frozenset()

    @classmethod
    def of(
        cls,
        added: Any = (),
        removed: Any = (),
        updated: Any = (),
    ) -> VersionDelta:
        """Build a delta from any iterables of collection names."""
        return cls(frozenset(added), frozenset(removed), frozenset(updated))

    @classmethod
    def between(cls, before: Mapping[str, Any], after: Mapping[str, Any]) -> VersionDelta:
        """Compute the delta that turns payload ``before`` into ``after``."""
        before_keys = set(before)
        after_keys = set(after)
        return cls(
            added=frozenset(after_keys - before_keys),
            removed=frozenset(before_keys - after_keys),
            updated=frozenset(k for k in before_keys & after_keys if before[k] != after[k]),
        )

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.updated)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": sorted(self.added),
            "removed": sorted(self.removed),
            "updated": sorted(self.updated),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VersionDelta:
        where = "version delta"
        return cls(
            added=_name_set(data, "added", where),
            removed=_name_set(data, "removed", where),
            updated=_name_set(data, "updated", where),
        )


@dataclass(frozen=True)
class VersionRecord:
    """A logged change between two snapshots.

    Attributes:
        id: Unique version identifier
        timestamp: When the version was recorded (Unix ms)
        schema_version: Schema version of the associated snapshot
        delta: Entity classes changed relative to the previous snapshot
        sync_status: Whether this version has reached the remote store
        origin: local (recorded on device) or remote (pulled from the remote)
        snapshot: Full snapshot in force after this change, used for revert
        superseded: True when conflict resolution picked the other side
        reverted_from: Version id this record reverted to, if any
    """

    id: str
    timestamp: int
    schema_version: str
    delta: VersionDelta
    sync_status: SyncStatus = SyncStatus.PENDING
    origin: Origin = Origin.LOCAL
    snapshot: Snapshot | None = None
    superseded: bool = False
    reverted_from: str | None = None

    def to_dict(self, include_snapshot: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "schema_version": self.schema_version,
            "delta": self.delta.to_dict(),
            "sync_status": self.sync_status.value,
            "origin": self.origin.value,
            "superseded": self.superseded,
            "reverted_from": self.reverted_from,
        }
        if include_snapshot:
            data["snapshot"] = self.snapshot.to_dict() if self.snapshot else None
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VersionRecord:
        where = "version record"
        raw_snapshot = _optional(data, "snapshot", dict, where)
        return cls(
            id=_require(data, "id", str, where),
            timestamp=_require(data, "timestamp", int, where),
            schema_version=_require(data, "schema_version", str, where),
            delta=VersionDelta.from_dict(_require(data, "delta", dict, where)),
            sync_status=_enum(SyncStatus, data, "sync_status", where),
            origin=_enum(Origin, data, "origin", where),
            snapshot=Snapshot.from_dict(raw_snapshot) if raw_snapshot is not None else None,
            superseded=bool(data.get("superseded", False)),
            reverted_from=_optional(data, "reverted_from", str, where),
        )


# ---------------------------------------------------------------------------
# Sync state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncState:
    """Singleton synchronization state owned by the SyncCoordinator."""

    last_sync_timestamp: int | None = None
    remote_snapshot_id: str | None = None
    status: SyncStatus = SyncStatus.PENDING
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_sync_timestamp": self.last_sync_timestamp,
            "remote_snapshot_id": self.remote_snapshot_id,
            "status": self.status.value,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SyncState:
        where = "sync state"
        return cls(
            last_sync_timestamp=_optional(data, "last_sync_timestamp", int, where),
            remote_snapshot_id=_optional(data, "remote_snapshot_id", str, where),
            status=_enum(SyncStatus, data, "status", where),
            last_error=_optional(data, "last_error", str, where),
        )


# ---------------------------------------------------------------------------
# Offline operations
# ---------------------------------------------------------------------------


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class OfflineOperation:
    """A queued mutation awaiting application.

    Attributes:
        id: Unique operation identifier
        kind: create, update or delete
        target_collection: Collection the mutation applies to
        payload: Mutation data (for update/delete it carries the record ``id``)
        status: Lifecycle status
        attempt_count: Number of failed attempts so far
        last_attempt_at: When the last attempt finished (Unix ms)
        last_error: Error message from the last failed attempt
        created_at: When the operation was enqueued (Unix ms)
    """

    id: str
    kind: OperationKind
    target_collection: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: OperationStatus = OperationStatus.PENDING
    attempt_count: int = 0
    last_attempt_at: int | None = None
    last_error: str | None = None
    created_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "target_collection": self.target_collection,
            "payload": self.payload,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "last_attempt_at": self.last_attempt_at,
            "last_error": self.last_error,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OfflineOperation:
        where = "offline operation"
        return cls(
            id=_require(data, "id", str, where),
            kind=_enum(OperationKind, data, "kind", where),
            target_collection=_require(data, "target_collection", str, where),
            payload=dict(_require(data, "payload", dict, where)),
            status=_enum(OperationStatus, data, "status", where),
            attempt_count=_require(data, "attempt_count", int, where),
            last_attempt_at=_optional(data, "last_attempt_at", int, where),
            last_error=_optional(data, "last_error", str, where),
            created_at=_require(data, "created_at", int, where),
        )
