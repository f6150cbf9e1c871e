"""
Version ledger.

Records what changed between successive snapshots. Records are kept
oldest to newest internally and returned newest first.

Persisted key:
    version.history - list of VersionRecord, oldest first

Invariants:
    - History is append-only; revert and reconcile add records, they never
      delete one (only the cap evicts the oldest)
    - Every record stores a full copy of the snapshot in force after its
      change, so revert_to() needs no delta replay
    - Record timestamps never decrease
    - Conflict resolution is last-writer-wins by timestamp; a tie keeps the
      local record
    - A revert that cannot be recorded leaves the data as it was

How to change safely:
    - Keep mutations under the writer lock and publish a new tuple
    - Listeners run outside the lock; never call back into the ledger
      from one while holding the lock
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from typing import Awaitable, Callable, Iterable

from ..errors import (
    ConflictDetectedError,
    FieldVaultError,
    NotFoundError,
    SerializationError,
)
from ..models import Origin, Snapshot, SyncStatus, VersionDelta, VersionRecord, now_ms
from ..notify import EventKind, LoggingNotificationSink, NotificationSink
from ..snapshot.store import SnapshotStore
from ..storage.base import VERSION_HISTORY, KeyValueStore, encode_json, load_json

logger = logging.getLogger(__name__)

VersionListener = Callable[[VersionRecord], Awaitable[None]]


class VersionLedger:
    """Bounded history of version records.

    Attributes:
        kv: Key-value store for persisted state
        snapshot_store: Source of the snapshot attached to each record
        max_versions: Maximum retained records

    Example:
        >>> ledger = VersionLedger(kv, store)
        >>> await ledger.load()
        >>> record = await ledger.record_version(VersionDelta.of(added=["favorites"]))
        >>> await ledger.revert_to(record.id)
    """

    def __init__(
        self,
        kv: KeyValueStore,
        snapshot_store: SnapshotStore,
        max_versions: int = 10,
        notifier: NotificationSink | None = None,
    ) -> None:
        if max_versions < 1:
            raise ValueError("max_versions must be at least 1")
        self.kv = kv
        self.snapshot_store = snapshot_store
        self.max_versions = max_versions
        self.notifier = notifier or LoggingNotificationSink()

        self._lock = asyncio.Lock()
        self._records: tuple[VersionRecord, ...] = ()
        self._listeners: list[VersionListener] = []

    def add_listener(self, listener: VersionListener) -> None:
        """Register a coroutine called after each new local version."""
        self._listeners.append(listener)

    async def load(self) -> None:
        """Hydrate the ledger from persisted state."""
        data = await load_json(self.kv, VERSION_HISTORY)
        records: tuple[VersionRecord, ...] = ()
        if data is not None:
            try:
                if not isinstance(data, list):
                    raise SerializationError("version history is not a list", key=VERSION_HISTORY)
                records = tuple(VersionRecord.from_dict(item) for item in data)
            except SerializationError as e:
                logger.error(
                    "Version history is unreadable, treating as absent",
                    extra={"key": VERSION_HISTORY, "error": str(e)},
                )
                records = ()
        self._records = records[-self.max_versions :]
        logger.info("Version ledger loaded", extra={"versions": len(self._records)})

    async def record_version(
        self,
        delta: VersionDelta,
        origin: Origin = Origin.LOCAL,
        sync_status: SyncStatus = SyncStatus.PENDING,
    ) -> VersionRecord:
        """Append a record for the current snapshot.

        Raises:
            NoBackupFoundError: If no snapshot exists yet
            StorageError: If the history cannot be persisted
        """
        snapshot = await self.snapshot_store.get_snapshot()
        async with self._lock:
            record = VersionRecord(
                id=uuid.uuid4().hex,
                timestamp=self._next_timestamp(),
                schema_version=snapshot.schema_version,
                delta=delta,
                sync_status=sync_status,
                origin=origin,
                snapshot=snapshot,
            )
            await self._publish(self._records + (record,))

        logger.info(
            "Recorded version",
            extra={"version_id": record.id, "origin": origin.value, **delta.to_dict()},
        )
        self.notifier.notify(
            EventKind.VERSION_RECORDED,
            {"version_id": record.id, "origin": origin.value},
        )
        if origin == Origin.LOCAL:
            await self._fire(record)
        return record

    async def ensure_initial_version(self) -> VersionRecord | None:
        """Record a baseline version when a snapshot exists but the ledger is empty."""
        current = self.snapshot_store.current
        if self._records or current is None:
            return None
        logger.info("Recording baseline version for existing snapshot")
        return await self.record_version(VersionDelta.of(added=current.payload.keys()))

    async def get_history(self, limit: int | None = None) -> list[VersionRecord]:
        """Return records newest first, at most ``limit`` of them."""
        newest_first = list(reversed(self._records))
        if limit is None:
            return newest_first
        return newest_first[: max(limit, 0)]

    async def get_version(self, version_id: str) -> VersionRecord:
        """Look up a retained record.

        Raises:
            NotFoundError: If no retained record has this id
        """
        for record in self._records:
            if record.id == version_id:
                return record
        raise NotFoundError(f"Version not found: {version_id}", details={"version_id": version_id})

    def has_version(self, version_id: str) -> bool:
        return any(record.id == version_id for record in self._records)

    def latest(self) -> VersionRecord | None:
        """Newest record that was not superseded by conflict resolution."""
        for record in reversed(self._records):
            if not record.superseded:
                return record
        return self._records[-1] if self._records else None

    async def mark_sync_status(
        self,
        status: SyncStatus,
        where: Iterable[SyncStatus] | None = None,
        ids: Iterable[str] | None = None,
    ) -> int:
        """Set the sync status on matching records.

        Args:
            status: New sync status
            where: Only records currently in one of these statuses
            ids: Only records with these ids

        Returns:
            Number of records changed

        A persist failure is logged, not raised; the in-memory records stay
        updated and are written with the next successful change.
        """
        where_set = set(where) if where is not None else None
        id_set = set(ids) if ids is not None else None

        async with self._lock:
            changed = 0
            updated = []
            for record in self._records:
                if (
                    record.sync_status != status
                    and (where_set is None or record.sync_status in where_set)
                    and (id_set is None or record.id in id_set)
                ):
                    record = dataclasses.replace(record, sync_status=status)
                    changed += 1
                updated.append(record)
            if changed:
                try:
                    await self._publish(tuple(updated))
                except FieldVaultError as e:
                    self._records = tuple(updated)
                    logger.error(
                        "Failed to persist version sync status",
                        extra={"key": VERSION_HISTORY, "error": str(e)},
                    )
        return changed

    async def revert_to(self, version_id: str) -> VersionRecord:
        """Restore the snapshot of a retained version and record the revert.

        The revert is appended as a new local change; the reverted-to record
        and everything after it stay in the history.

        Raises:
            NotFoundError: If the version is not retained or carries no snapshot
            ValidationFailedError: If the stored snapshot is structurally invalid
            ProviderUnavailableError: If the data provider cannot be written
            StorageError: If the revert cannot be recorded; the restore is
                rolled back
        """
        target = await self.get_version(version_id)
        if target.snapshot is None:
            raise NotFoundError(
                f"Version {version_id} has no stored snapshot",
                details={"version_id": version_id},
            )

        current = self.snapshot_store.current
        before = current.payload if current is not None else {}
        recorded: list[VersionRecord] = []

        async def append_revert(restored: Snapshot) -> None:
            async with self._lock:
                record = VersionRecord(
                    id=uuid.uuid4().hex,
                    timestamp=self._next_timestamp(),
                    schema_version=restored.schema_version,
                    delta=VersionDelta.between(before, restored.payload),
                    origin=Origin.LOCAL,
                    snapshot=restored,
                    reverted_from=version_id,
                )
                await self._publish(self._records + (record,))
            recorded.append(record)

        await self.snapshot_store.restore_snapshot(target.snapshot, then=append_revert)
        record = recorded[0]

        logger.info(
            "Reverted to version",
            extra={"version_id": record.id, "reverted_from": version_id},
        )
        self.notifier.notify(
            EventKind.VERSION_REVERTED,
            {"version_id": record.id, "reverted_from": version_id},
        )
        await self._fire(record)
        return record

    async def reconcile(self, local: VersionRecord, remote: VersionRecord) -> VersionRecord:
        """Resolve diverging local and remote versions, last writer wins.

        The later timestamp is authoritative; on a tie the local record wins.
        The losing record is kept but marked superseded. A remote record not
        yet in the ledger is appended. When the remote wins and carries a
        snapshot, that snapshot is restored and the ledger is updated under
        the same restore; a failed ledger write rolls the restore back.

        Returns:
            The authoritative record as stored in the ledger
        """
        remote_wins = remote.timestamp > local.timestamp
        winner_origin = Origin.REMOTE if remote_wins else Origin.LOCAL

        loser_id = local.id if remote_wins else remote.id
        winner_id = remote.id if remote_wins else local.id

        async def mark_loser(*_: Snapshot) -> None:
            async with self._lock:
                records = [
                    dataclasses.replace(r, superseded=True) if r.id == loser_id else r
                    for r in self._records
                ]
                if not any(r.id == remote.id for r in records):
                    records.append(
                        dataclasses.replace(
                            remote,
                            origin=Origin.REMOTE,
                            superseded=not remote_wins,
                        )
                    )
                await self._publish(tuple(records))

        if remote_wins and remote.snapshot is not None:
            await self.snapshot_store.restore_snapshot(remote.snapshot, then=mark_loser)
        else:
            await mark_loser()
        winner = next((r for r in self._records if r.id == winner_id), None)

        if winner is None:
            # the local record was evicted by the cap before reconciling
            winner = local

        conflict = ConflictDetectedError(
            "Local and remote versions diverged",
            local_id=local.id,
            remote_id=remote.id,
            winner=winner_origin.value,
        )
        logger.warning(
            conflict.message,
            extra={
                "local_id": local.id,
                "local_timestamp": local.timestamp,
                "remote_id": remote.id,
                "remote_timestamp": remote.timestamp,
                "winner": winner_origin.value,
            },
        )
        self.notifier.notify(EventKind.CONFLICT_RESOLVED, conflict.to_dict())
        return winner

    def _next_timestamp(self) -> int:
        ts = now_ms()
        if self._records and self._records[-1].timestamp > ts:
            return self._records[-1].timestamp
        return ts

    async def _publish(self, records: tuple[VersionRecord, ...]) -> None:
        records = records[-self.max_versions :]
        payload = [r.to_dict() for r in records]
        await self.kv.put(VERSION_HISTORY, encode_json(payload, VERSION_HISTORY))
        self._records = records

    async def _fire(self, record: VersionRecord) -> None:
        for listener in list(self._listeners):
            try:
                await listener(record)
            except Exception:
                logger.error(
                    "Version listener failed",
                    exc_info=True,
                    extra={"version_id": record.id},
                )
