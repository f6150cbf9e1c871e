"""
Sync coordinator.

State machine:

    pending -> synced     push (or remote adoption) succeeded
    pending -> failed     transport failure or timeout
    failed  -> pending    next sync attempt
    synced  -> pending    a new local version was recorded

Persisted key:
    sync.state - SyncState

Sync flow:
    1. Require a current snapshot
    2. Pull the remote version metadata (bounded by a timeout)
    3. If the remote holds a version this device has never seen, reconcile
       it against the local head (last writer wins); a winning remote
       snapshot is applied locally and the cycle ends as synced
    4. Otherwise push the current snapshot and mark the versions it covers
       synced; a local version recorded while the push was in flight keeps
       the state pending

Invariants:
    - sync() never raises for transport, provider or storage failures; they
      become status=failed with last_error
    - Every transport call is bounded by timeout_seconds; a timeout is a
      transport failure
    - At most one sync runs at a time

How to change safely:
    - Keep state changes going through _set_state()
    - restore_from_remote() propagates errors, the caller owns the local
      fallback
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any, Awaitable, TypeVar

from ..errors import FieldVaultError, NotFoundError, SerializationError, TransportUnreachableError
from ..models import Origin, Snapshot, SyncState, SyncStatus, VersionDelta, VersionRecord, now_ms
from ..notify import EventKind, LoggingNotificationSink, NotificationSink
from ..snapshot.store import SnapshotStore
from ..storage.base import SYNC_STATE, KeyValueStore, encode_json, load_json
from ..transport.base import RemoteVersionMeta, SyncTransport
from ..version.ledger import VersionLedger

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncCoordinator:
    """Synchronizes the current snapshot with the remote store.

    Example:
        >>> coordinator = SyncCoordinator(kv, store, transport, ledger)
        >>> await coordinator.load()
        >>> state = await coordinator.sync()
        >>> state.status
        <SyncStatus.SYNCED: 'synced'>
    """

    def __init__(
        self,
        kv: KeyValueStore,
        snapshot_store: SnapshotStore,
        transport: SyncTransport,
        ledger: VersionLedger | None = None,
        timeout_seconds: float = 30.0,
        notifier: NotificationSink | None = None,
    ) -> None:
        self.kv = kv
        self.snapshot_store = snapshot_store
        self.transport = transport
        self.ledger = ledger
        self.timeout_seconds = timeout_seconds
        self.notifier = notifier or LoggingNotificationSink()

        self._lock = asyncio.Lock()
        self._state_lock = asyncio.Lock()
        self._state = SyncState()

        if ledger is not None:
            ledger.add_listener(self._on_version_recorded)

    async def load(self) -> None:
        data = await load_json(self.kv, SYNC_STATE)
        state = SyncState()
        if data is not None:
            try:
                state = SyncState.from_dict(data)
            except SerializationError as e:
                logger.error(
                    "Sync state is unreadable, treating as absent",
                    extra={"key": SYNC_STATE, "error": str(e)},
                )
        self._state = state
        logger.info("Sync state loaded", extra={"status": state.status.value})

    async def get_state(self) -> SyncState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    async def sync(self) -> SyncState:
        """Run one sync cycle.

        Returns:
            The resulting SyncState (synced, failed, or pending when a local
            version was recorded while the push was in flight)

        Raises:
            NoBackupFoundError: If there is no snapshot to sync
        """
        async with self._lock:
            await self.snapshot_store.get_snapshot()

            if self._state.status == SyncStatus.FAILED:
                await self._set_state(status=SyncStatus.PENDING)

            try:
                if self.ledger is not None and self.ledger.latest() is None:
                    await self.ledger.ensure_initial_version()

                remote = await self._pull_or_none()
                if remote is not None and await self._adopt_if_newer(*remote):
                    return self._state

                await self._push()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._fail(e)

            return self._state

    async def restore_from_remote(self) -> Snapshot:
        """Pull the remote snapshot and apply it locally.

        Returns:
            The applied snapshot

        Raises:
            TransportUnreachableError: If the remote cannot be reached in time
            NotFoundError: If the remote holds no snapshot
            ValidationFailedError: If the remote snapshot is structurally invalid
            ProviderUnavailableError: If the data provider cannot be written
        """
        async with self._lock:
            snapshot, meta = await self._bounded(self.transport.pull(), "pull")
            current = self.snapshot_store.current
            before = current.payload if current is not None else {}
            await self.snapshot_store.restore_snapshot(snapshot)

            if self.ledger is not None:
                await self.ledger.record_version(
                    VersionDelta.between(before, snapshot.payload),
                    origin=Origin.REMOTE,
                    sync_status=SyncStatus.SYNCED,
                )
            await self._set_state(
                status=SyncStatus.SYNCED,
                last_sync_timestamp=now_ms(),
                remote_snapshot_id=meta.remote_id,
                last_error=None,
            )

        logger.info("Restored from remote", extra={"remote_id": meta.remote_id})
        return snapshot

    async def _pull_or_none(self) -> tuple[Snapshot, RemoteVersionMeta] | None:
        try:
            return await self._bounded(self.transport.pull(), "pull")
        except NotFoundError:
            logger.debug("Remote holds no snapshot yet")
            return None

    async def _adopt_if_newer(self, remote_snapshot: Snapshot, meta: RemoteVersionMeta) -> bool:
        """Reconcile a remote version this device has not seen.

        Returns True when the remote won and was applied locally.
        """
        if self.ledger is None:
            return False
        remote_id = meta.version_id or meta.remote_id
        if self.ledger.has_version(remote_id):
            return False
        local = self.ledger.latest()
        if local is None:
            return False

        remote_record = VersionRecord(
            id=remote_id,
            timestamp=meta.timestamp,
            schema_version=meta.schema_version,
            delta=meta.delta,
            sync_status=SyncStatus.SYNCED,
            origin=Origin.REMOTE,
            snapshot=remote_snapshot,
        )
        winner = await self.ledger.reconcile(local, remote_record)
        if winner.origin != Origin.REMOTE:
            return False

        await self._set_state(
            status=SyncStatus.SYNCED,
            last_sync_timestamp=now_ms(),
            remote_snapshot_id=meta.remote_id,
            last_error=None,
        )
        logger.info("Adopted newer remote version", extra={"remote_id": meta.remote_id})
        self.notifier.notify(
            EventKind.SYNC_COMPLETED,
            {"direction": "pull", "remote_id": meta.remote_id},
        )
        return True

    async def _push(self) -> None:
        snapshot = await self.snapshot_store.get_snapshot()
        head = None
        pushed_ids: set[str] = set()
        if self.ledger is not None:
            head = self.ledger.latest()
            pushed_ids = {r.id for r in await self.ledger.get_history()}

        remote_id = await self._bounded(self.transport.push(snapshot, head), "push")

        stale = False
        if self.ledger is not None:
            await self.ledger.mark_sync_status(
                SyncStatus.SYNCED,
                where=(SyncStatus.PENDING, SyncStatus.FAILED),
                ids=pushed_ids,
            )
            stale = any(
                r.origin == Origin.LOCAL and r.id not in pushed_ids
                for r in await self.ledger.get_history()
            )
        await self._set_state(
            status=SyncStatus.PENDING if stale else SyncStatus.SYNCED,
            last_sync_timestamp=now_ms(),
            remote_snapshot_id=remote_id,
            last_error=None,
        )
        logger.info("Sync completed", extra={"remote_id": remote_id, "stale": stale})
        self.notifier.notify(
            EventKind.SYNC_COMPLETED,
            {"direction": "push", "remote_id": remote_id},
        )

    async def _fail(self, error: Exception) -> None:
        message = str(error) or type(error).__name__
        await self._set_state(status=SyncStatus.FAILED, last_error=message)
        if self.ledger is not None:
            await self.ledger.mark_sync_status(SyncStatus.FAILED, where=(SyncStatus.PENDING,))

        if isinstance(error, FieldVaultError):
            logger.warning(
                "Sync failed",
                extra={"error": message, "error_code": error.code},
            )
        else:
            logger.error("Sync failed unexpectedly", exc_info=True, extra={"error": message})
        self.notifier.notify(EventKind.SYNC_FAILED, {"error": message})

    async def _bounded(self, call: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TransportUnreachableError(
                f"Transport {operation} timed out after {self.timeout_seconds}s",
                timed_out=True,
            ) from e

    async def _on_version_recorded(self, record: VersionRecord) -> None:
        if record.origin == Origin.LOCAL and self._state.status == SyncStatus.SYNCED:
            await self._set_state(status=SyncStatus.PENDING)
            logger.debug("Remote is stale after local version", extra={"version_id": record.id})

    async def _set_state(self, **changes: Any) -> None:
        async with self._state_lock:
            state = dataclasses.replace(self._state, **changes)
            self._state = state
            try:
                await self.kv.put(SYNC_STATE, encode_json(state.to_dict(), SYNC_STATE))
            except FieldVaultError as e:
                logger.error(
                    "Failed to persist sync state",
                    extra={"key": SYNC_STATE, "error": str(e)},
                )
