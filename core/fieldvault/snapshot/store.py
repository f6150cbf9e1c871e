"""
Snapshot store for FieldVault.

The SnapshotStore reads the application collections from the data
provider, serializes them into the current snapshot slot and keeps a
bounded audit trail of every attempt.

Persisted keys:
    backup.current  - encoded current snapshot
    backup.history  - list of BackupHistoryEntry, newest first

Invariants:
    - The current snapshot is replaced by publishing a new object; readers
      never observe a half-written snapshot
    - A failed create still appends a ``failed`` history entry
    - History is capped; insert-then-truncate evicts the oldest entry
    - A restore either replaces every collection or none, and is never
      interrupted by cancellation once it has started writing
    - A restore follow-up that fails rolls back the provider and the
      current slot together

How to change safely:
    - Keep create/restore under the writer lock
    - Test restore with provider write failures before changing rollback
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable

from ..errors import (
    FieldVaultError,
    NoBackupFoundError,
    ProviderUnavailableError,
    SerializationError,
)
from ..models import (
    BackupHistoryEntry,
    BackupMetrics,
    BackupOutcome,
    Snapshot,
    now_ms,
)
from ..notify import EventKind, LoggingNotificationSink, NotificationSink
from ..provider.base import DataProvider, check_collections
from ..storage.base import (
    BACKUP_CURRENT,
    BACKUP_HISTORY,
    KeyValueStore,
    encode_json,
    load_json,
)
from .codec import decode_snapshot, encode_snapshot

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Owns the current snapshot and the backup history.

    Attributes:
        kv: Key-value store for persisted state
        provider: Data provider supplying the collections
        history_cap: Maximum retained history entries
        schema_version: Schema version stamped on new snapshots

    Example:
        >>> store = SnapshotStore(kv, provider)
        >>> await store.load()
        >>> entry = await store.create_snapshot()
        >>> snapshot = await store.get_snapshot()
    """

    def __init__(
        self,
        kv: KeyValueStore,
        provider: DataProvider,
        history_cap: int = 7,
        schema_version: str = "1.0.0",
        notifier: NotificationSink | None = None,
    ) -> None:
        """Initialize the snapshot store.

        Args:
            kv: Key-value store for persisted state
            provider: Data provider supplying the collections
            history_cap: Maximum retained history entries
            schema_version: Schema version stamped on new snapshots
            notifier: Sink for user-facing events
        """
        if history_cap < 1:
            raise ValueError("history_cap must be at least 1")
        self.kv = kv
        self.provider = provider
        self.history_cap = history_cap
        self.schema_version = schema_version
        self.notifier = notifier or LoggingNotificationSink()

        self._lock = asyncio.Lock()
        self._current: Snapshot | None = None
        self._history: tuple[BackupHistoryEntry, ...] = ()

    async def load(self) -> None:
        """Hydrate the current snapshot and history from persisted state.

        Undecodable keys are logged and treated as absent.
        """
        raw = await self.kv.get(BACKUP_CURRENT)
        current = None
        if raw is not None:
            try:
                current = decode_snapshot(raw)
            except SerializationError as e:
                logger.error(
                    "Current snapshot is unreadable, treating as absent",
                    extra={"key": BACKUP_CURRENT, "error": str(e)},
                )

        history: tuple[BackupHistoryEntry, ...] = ()
        data = await load_json(self.kv, BACKUP_HISTORY)
        if data is not None:
            try:
                if not isinstance(data, list):
                    raise SerializationError("backup history is not a list", key=BACKUP_HISTORY)
                history = tuple(BackupHistoryEntry.from_dict(item) for item in data)
            except SerializationError as e:
                logger.error(
                    "Backup history is unreadable, treating as absent",
                    extra={"key": BACKUP_HISTORY, "error": str(e)},
                )

        self._current = current
        self._history = history[: self.history_cap]
        logger.info(
            "Snapshot store loaded",
            extra={"has_snapshot": current is not None, "history_entries": len(self._history)},
        )

    @property
    def current(self) -> Snapshot | None:
        """The current snapshot without copying, or None."""
        return self._current

    async def create_snapshot(self) -> BackupHistoryEntry:
        """Take a new snapshot of the data provider.

        Returns:
            The history entry for the successful snapshot

        Raises:
            ProviderUnavailableError: If the provider cannot be read
            SerializationError: If the collections cannot be encoded
            StorageError: If the snapshot cannot be persisted

        Each failure still appends a ``failed`` history entry. The previous
        snapshot stays current because it is only replaced after a
        successful write.
        """
        async with self._lock:
            entry_id = uuid.uuid4().hex
            timestamp = now_ms()

            try:
                collections = await self.provider.read_all()
            except ProviderUnavailableError as e:
                await self._record_failure(entry_id, timestamp, e)
                raise
            except Exception as e:
                error = ProviderUnavailableError(f"Data provider read failed: {e}")
                await self._record_failure(entry_id, timestamp, error)
                raise error from e

            snapshot = Snapshot(
                timestamp=timestamp,
                payload=collections,
                schema_version=self.schema_version,
            )

            try:
                raw = encode_snapshot(snapshot)
                await self.kv.put(BACKUP_CURRENT, raw)
            except FieldVaultError as e:
                await self._record_failure(entry_id, timestamp, e)
                raise

            self._current = snapshot
            entry = BackupHistoryEntry(
                id=entry_id,
                timestamp=timestamp,
                size_bytes=len(raw),
                schema_version=self.schema_version,
                outcome=BackupOutcome.SUCCESS,
            )
            await self._append_history(entry)

        logger.info(
            "Created snapshot",
            extra={"entry_id": entry_id, "size_bytes": entry.size_bytes},
        )
        self.notifier.notify(
            EventKind.BACKUP_CREATED,
            {"entry_id": entry_id, "size_bytes": entry.size_bytes},
        )
        return entry

    async def get_snapshot(self) -> Snapshot:
        """Return the current snapshot.

        Raises:
            NoBackupFoundError: If no snapshot has been taken yet
        """
        current = self._current
        if current is None:
            raise NoBackupFoundError()
        return current.copy()

    async def restore_snapshot(
        self,
        snapshot: Snapshot,
        then: Callable[[Snapshot], Awaitable[Any]] | None = None,
    ) -> None:
        """Push a snapshot's collections back into the data provider.

        The write is all-or-nothing. Once started it is shielded from
        cancellation; if persisting the new current slot fails afterwards,
        the provider is rolled back to the collections it held before.

        Args:
            snapshot: Snapshot to restore
            then: Optional follow-up run under the writer lock with the
                restored snapshot. If it raises, the provider and the
                current slot are rolled back and the error propagates.

        Raises:
            ValidationFailedError: If a required collection is missing or malformed
            SerializationError: If the snapshot cannot be encoded
            ProviderUnavailableError: If the provider write fails
        """
        check_collections(snapshot.payload, self.provider.required_collections)
        staged = snapshot.copy()
        raw = encode_snapshot(staged)
        await asyncio.shield(self._restore_locked(staged, raw, then))
        self.notifier.notify(
            EventKind.RESTORE_COMPLETED,
            {"snapshot_timestamp": staged.timestamp},
        )

    async def _restore_locked(
        self,
        snapshot: Snapshot,
        raw: bytes,
        then: Callable[[Snapshot], Awaitable[Any]] | None,
    ) -> None:
        async with self._lock:
            previous = await self.provider.read_all()
            previous_current = self._current
            await self.provider.write_all(snapshot.payload)
            try:
                await self.kv.put(BACKUP_CURRENT, raw)
            except FieldVaultError as e:
                logger.error(
                    "Failed to persist restored snapshot, rolling back provider",
                    extra={"error": str(e)},
                )
                await self.provider.write_all(previous)
                raise
            self._current = snapshot
            if then is not None:
                try:
                    await then(snapshot.copy())
                except Exception as e:
                    logger.error(
                        "Restore follow-up failed, rolling back",
                        extra={"error": str(e)},
                    )
                    await self._roll_back(previous, previous_current)
                    raise

        logger.info(
            "Restored snapshot",
            extra={
                "snapshot_timestamp": snapshot.timestamp,
                "collections": sorted(snapshot.payload),
            },
        )

    async def _roll_back(
        self,
        collections: dict[str, Any],
        current: Snapshot | None,
    ) -> None:
        await self.provider.write_all(collections)
        if current is None:
            await self.kv.delete(BACKUP_CURRENT)
        else:
            await self.kv.put(BACKUP_CURRENT, encode_snapshot(current))
        self._current = current

    async def delete_snapshot(self) -> None:
        """Clear the current snapshot and the history. Idempotent."""
        async with self._lock:
            await self.kv.delete(BACKUP_CURRENT)
            await self.kv.delete(BACKUP_HISTORY)
            self._current = None
            self._history = ()
        logger.info("Deleted snapshot and backup history")
        self.notifier.notify(EventKind.BACKUP_DELETED, {})

    async def get_history(self, limit: int | None = None) -> list[BackupHistoryEntry]:
        """Return history entries, newest first, at most ``limit`` of them."""
        history = self._history
        if limit is None:
            return list(history)
        return list(history[: max(limit, 0)])

    async def get_metrics(self) -> BackupMetrics:
        """Aggregate counts, size and success ratio over the retained history."""
        history = self._history
        if not history:
            return BackupMetrics()
        successful = [h for h in history if h.succeeded]
        return BackupMetrics(
            total_backups=len(history),
            successful_backups=len(successful),
            failed_backups=len(history) - len(successful),
            last_backup_at=history[0].timestamp,
            last_successful_backup_at=successful[0].timestamp if successful else None,
            total_size_bytes=sum(h.size_bytes for h in history),
            success_ratio=len(successful) / len(history),
        )

    async def _record_failure(self, entry_id: str, timestamp: int, error: Exception) -> None:
        entry = BackupHistoryEntry(
            id=entry_id,
            timestamp=timestamp,
            size_bytes=0,
            schema_version=self.schema_version,
            outcome=BackupOutcome.FAILED,
            error_detail=str(error),
        )
        await self._append_history(entry)
        logger.error(
            "Failed to create snapshot",
            extra={"entry_id": entry_id, "error": str(error)},
        )
        self.notifier.notify(
            EventKind.BACKUP_FAILED,
            {"entry_id": entry_id, "error": str(error)},
        )

    async def _append_history(self, entry: BackupHistoryEntry) -> None:
        history = ((entry,) + self._history)[: self.history_cap]
        self._history = history
        payload: list[dict[str, Any]] = [h.to_dict() for h in history]
        try:
            await self.kv.put(BACKUP_HISTORY, encode_json(payload, BACKUP_HISTORY))
        except FieldVaultError as e:
            logger.error(
                "Failed to persist backup history",
                extra={"key": BACKUP_HISTORY, "error": str(e)},
            )
