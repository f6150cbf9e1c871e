"""
Scheduler: the only process-wide active component.

Each tick evaluates independent triggers and launches the due ones as
their own tasks, so a slow sync never delays a backup:

    backup        shortest enabled cadence (daily/weekly/monthly) elapsed,
                  checked every backup_check_seconds
    sync          every sync_interval_seconds (4 h by default)
    validation    every validation_interval_seconds, and right after each
                  backup (validation_status=pending)
    drain         every drain_interval_seconds, and on down -> up
    connectivity  probe every connectivity_probe_seconds

Persisted key:
    schedule.config - Schedule

Invariants:
    - At most one in-flight run per trigger; a due trigger that is still
      running is skipped for this tick, never queued
    - Failures inside a scheduled trigger are logged and swallowed at the
      trigger boundary; the loop keeps running
    - User-initiated operations (backup_now, sync_now, restore_latest,
      update_schedule) propagate typed errors to the caller
    - An invalid validation schedules one corrective backup; another is
      not attempted until a validation passes, and none while every
      backup cadence is disabled

How to change safely:
    - Never mutate another component's state directly, go through its
      public operations
    - Keep new triggers behind _launch() so the in-flight guard applies
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

from ..config import SchedulerConfig
from ..errors import FieldVaultError, NotFoundError, SerializationError, TransportUnreachableError
from ..models import BackupHistoryEntry, Snapshot, SyncState, VersionDelta, now_ms
from ..notify import EventKind, LoggingNotificationSink, NotificationSink
from ..offline.queue import DrainResult, OfflineQueue
from ..snapshot.store import SnapshotStore
from ..storage.base import SCHEDULE_CONFIG, KeyValueStore, encode_json, load_json
from ..sync.coordinator import SyncCoordinator
from ..validate.validator import IntegrityValidator, ValidationResult
from ..version.ledger import VersionLedger
from .connectivity import ConnectivityMonitor
from .schedule import Schedule, ValidationStatus

logger = logging.getLogger(__name__)


class Trigger(str, Enum):
    BACKUP = "backup"
    SYNC = "sync"
    VALIDATION = "validation"
    DRAIN = "drain"
    CONNECTIVITY = "connectivity"


_USER_FIELDS = {
    "daily",
    "weekly",
    "monthly",
    "sync_interval_seconds",
    "validation_interval_seconds",
    "drain_interval_seconds",
}


class Scheduler:
    """Drives backup, sync, validation and drain on their cadences.

    Attributes:
        snapshot_store: Backup target
        validator: Integrity validator for the current snapshot
        ledger: Version ledger receiving a record per backup
        coordinator: Sync coordinator
        queue: Offline queue
        connectivity: Optional connectivity monitor

    Example:
        >>> scheduler = Scheduler(kv, store, validator, ledger, coordinator, queue)
        >>> await scheduler.load()
        >>> task = asyncio.create_task(scheduler.start())
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        kv: KeyValueStore,
        snapshot_store: SnapshotStore,
        validator: IntegrityValidator,
        ledger: VersionLedger,
        coordinator: SyncCoordinator,
        queue: OfflineQueue,
        config: SchedulerConfig | None = None,
        default_schedule: Schedule | None = None,
        connectivity: ConnectivityMonitor | None = None,
        notifier: NotificationSink | None = None,
    ) -> None:
        self.kv = kv
        self.snapshot_store = snapshot_store
        self.validator = validator
        self.ledger = ledger
        self.coordinator = coordinator
        self.queue = queue
        self.config = config or SchedulerConfig()
        self.connectivity = connectivity
        self.notifier = notifier or LoggingNotificationSink()

        self._default_schedule = default_schedule or Schedule()
        self._schedule = self._default_schedule
        self._schedule_lock = asyncio.Lock()
        self._in_flight: dict[Trigger, asyncio.Task] = {}
        self._last_run: dict[Trigger, int] = {}
        self._corrective_backup_pending = False
        self._running = False
        self._wakeup = asyncio.Event()

        if connectivity is not None:
            connectivity.add_listener(self._on_connectivity_change)

    # ---------------------------------------------------------------------
    # State
    # ---------------------------------------------------------------------

    async def load(self) -> None:
        """Load the persisted schedule, creating it with defaults on first run."""
        data = await load_json(self.kv, SCHEDULE_CONFIG)
        schedule = None
        if data is not None:
            try:
                schedule = Schedule.from_dict(data)
            except SerializationError as e:
                logger.error(
                    "Schedule is unreadable, falling back to defaults",
                    extra={"key": SCHEDULE_CONFIG, "error": str(e)},
                )
        if schedule is None:
            schedule = self._default_schedule
            await self._persist(schedule)
        self._schedule = schedule
        logger.info("Schedule loaded", extra={"schedule": schedule.to_dict()})

    @property
    def schedule(self) -> Schedule:
        return self._schedule

    def in_flight(self, trigger: Trigger) -> bool:
        task = self._in_flight.get(trigger)
        return task is not None and not task.done()

    async def update_schedule(self, **changes: Any) -> Schedule:
        """Apply user preference changes.

        Raises:
            ValueError: On an unknown field or a non-positive interval
            StorageError: If the schedule cannot be persisted
        """
        unknown = set(changes) - _USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown schedule fields: {sorted(unknown)}")
        for name, value in changes.items():
            if name.endswith("_seconds"):
                if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                    raise ValueError(f"{name} must be a positive integer")
            if name in {"daily", "weekly", "monthly"} and not isinstance(value, bool):
                raise ValueError(f"{name} must be a boolean")

        async with self._schedule_lock:
            schedule = dataclasses.replace(self._schedule, **changes)
            await self.kv.put(SCHEDULE_CONFIG, encode_json(schedule.to_dict(), SCHEDULE_CONFIG))
            self._schedule = schedule
        logger.info("Schedule updated", extra={"changes": changes})
        return schedule

    async def _update(self, **changes: Any) -> None:
        async with self._schedule_lock:
            schedule = dataclasses.replace(self._schedule, **changes)
            self._schedule = schedule
            await self._persist(schedule)

    async def _persist(self, schedule: Schedule) -> None:
        try:
            await self.kv.put(SCHEDULE_CONFIG, encode_json(schedule.to_dict(), SCHEDULE_CONFIG))
        except FieldVaultError as e:
            logger.error(
                "Failed to persist schedule",
                extra={"key": SCHEDULE_CONFIG, "error": str(e)},
            )

    # ---------------------------------------------------------------------
    # Loop
    # ---------------------------------------------------------------------

    async def start(self) -> None:
        """Run the scheduler loop until stop() is called."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True
        logger.info("Starting scheduler", extra={"tick_seconds": self.config.tick_seconds})
        try:
            while self._running:
                await self.tick()
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.tick_seconds)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Scheduler cancelled")
        finally:
            self._running = False

    async def stop(self, grace_seconds: float = 5.0) -> None:
        """Stop the loop and wait briefly for in-flight triggers."""
        self._running = False
        self._wakeup.set()
        tasks = [t for t in self._in_flight.values() if not t.done()]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def tick(self, now: int | None = None) -> list[asyncio.Task]:
        """Launch every due trigger that is not already in flight.

        Args:
            now: Current time in Unix ms (defaults to wall clock)

        Returns:
            Tasks launched by this tick
        """
        now = now if now is not None else now_ms()
        schedule = self._schedule
        launched: list[asyncio.Task] = []

        def launch(trigger: Trigger, factory: Callable[[], Awaitable[Any]]) -> None:
            task = self._launch(trigger, factory)
            if task is not None:
                launched.append(task)

        backup_due = False
        if self._interval_elapsed(Trigger.BACKUP, now, self.config.backup_check_seconds):
            self._last_run[Trigger.BACKUP] = now
            backup_due = schedule.backup_due(now)
            if backup_due:
                launch(Trigger.BACKUP, lambda: self._backup_cycle(now))

        if schedule.sync_due(now):
            launch(Trigger.SYNC, lambda: self._sync_cycle(now))

        # a backup in flight triggers validation itself once it completes
        if schedule.validation_due(now) and not backup_due and not self.in_flight(Trigger.BACKUP):
            launch(Trigger.VALIDATION, lambda: self._validation_cycle(now))

        if self._interval_elapsed(Trigger.DRAIN, now, schedule.drain_interval_seconds):
            launch(Trigger.DRAIN, lambda: self._drain_cycle(now))

        if self.connectivity is not None and self._interval_elapsed(
            Trigger.CONNECTIVITY, now, self.config.connectivity_probe_seconds
        ):
            launch(Trigger.CONNECTIVITY, lambda: self._probe_cycle(now))

        return launched

    async def wait_idle(self) -> None:
        """Wait until every in-flight trigger has finished."""
        while True:
            tasks = [t for t in self._in_flight.values() if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def _interval_elapsed(self, trigger: Trigger, now: int, interval_seconds: float) -> bool:
        last = self._last_run.get(trigger)
        return last is None or now - last >= interval_seconds * 1000

    def _launch(
        self,
        trigger: Trigger,
        factory: Callable[[], Awaitable[Any]],
    ) -> asyncio.Task | None:
        if self.in_flight(trigger):
            logger.debug("Trigger still in flight, skipping", extra={"trigger": trigger.value})
            return None
        task = asyncio.create_task(self._guarded(trigger, factory), name=f"fieldvault-{trigger.value}")
        self._in_flight[trigger] = task
        return task

    async def _guarded(self, trigger: Trigger, factory: Callable[[], Awaitable[Any]]) -> None:
        try:
            await factory()
        except asyncio.CancelledError:
            logger.info("Trigger cancelled", extra={"trigger": trigger.value})
            raise
        except Exception as e:
            logger.error(
                "Scheduled trigger failed",
                exc_info=True,
                extra={"trigger": trigger.value, "error": str(e)},
            )

    # ---------------------------------------------------------------------
    # Trigger bodies
    # ---------------------------------------------------------------------

    async def _backup_cycle(self, now: int) -> BackupHistoryEntry:
        before = self.snapshot_store.current
        entry = await self.snapshot_store.create_snapshot()
        after = self.snapshot_store.current

        if after is not None:
            delta = VersionDelta.between(before.payload if before else {}, after.payload)
            if before is None or not delta.is_empty or self.ledger.latest() is None:
                await self.ledger.record_version(delta)

        await self._update(
            last_backup_at=now,
            validation_status=ValidationStatus.PENDING,
        )
        self._launch(Trigger.VALIDATION, lambda: self._validation_cycle(now_ms()))
        return entry

    async def _sync_cycle(self, now: int) -> SyncState | None:
        if self.snapshot_store.current is None:
            logger.debug("No snapshot yet, skipping sync")
            return None
        state = await self.coordinator.sync()
        await self._update(last_sync_at=now)
        return state

    async def _validation_cycle(self, now: int) -> ValidationResult:
        result = await self.validator.validate_current(self.snapshot_store)
        status = ValidationStatus.VALID if result.is_valid else ValidationStatus.INVALID
        await self._update(last_validation_at=now, validation_status=status)

        detail = {
            "errors": [e.code.value for e in result.errors],
            "warnings": [w.code.value for w in result.warnings],
            "size_bytes": result.performance.size_bytes,
        }
        if result.is_valid:
            self._corrective_backup_pending = False
            self.notifier.notify(EventKind.VALIDATION_PASSED, detail)
            return result

        logger.warning("Validation failed", extra=detail)
        self.notifier.notify(EventKind.VALIDATION_FAILED, detail)
        if self._schedule.backup_interval_seconds is None:
            logger.info("Backups are disabled, skipping corrective backup")
        elif not self._corrective_backup_pending:
            task = self._launch(Trigger.BACKUP, lambda: self._backup_cycle(now_ms()))
            if task is not None:
                self._corrective_backup_pending = True
                logger.info("Scheduled corrective backup after failed validation")
        return result

    async def _drain_cycle(self, now: int) -> DrainResult:
        self._last_run[Trigger.DRAIN] = now
        return await self.queue.drain()

    async def _probe_cycle(self, now: int) -> bool:
        self._last_run[Trigger.CONNECTIVITY] = now
        if self.connectivity is None:
            return True
        return await self.connectivity.probe()

    async def _on_connectivity_change(self, online: bool) -> None:
        if not online:
            return
        logger.info("Back online, draining queue and syncing")
        self._launch(Trigger.DRAIN, lambda: self._drain_cycle(now_ms()))
        self._launch(Trigger.SYNC, lambda: self._sync_cycle(now_ms()))

    # ---------------------------------------------------------------------
    # User-initiated operations
    # ---------------------------------------------------------------------

    async def backup_now(self) -> BackupHistoryEntry:
        """Take a backup immediately.

        Raises:
            ProviderUnavailableError: If the data provider cannot be read
            SerializationError: If the collections cannot be encoded
        """
        return await self._backup_cycle(now_ms())

    async def sync_now(self) -> SyncState:
        """Sync immediately.

        Raises:
            NoBackupFoundError: If there is no snapshot to sync
        """
        state = await self.coordinator.sync()
        await self._update(last_sync_at=now_ms())
        return state

    async def validate_now(self) -> ValidationResult:
        return await self._validation_cycle(now_ms())

    async def restore_latest(self) -> tuple[str, Snapshot]:
        """Restore from the remote, falling back to the local snapshot.

        Returns:
            ("remote" | "local", restored snapshot)

        Raises:
            NoBackupFoundError: If the remote is unavailable and there is no local snapshot
        """
        try:
            snapshot = await self.coordinator.restore_from_remote()
            return "remote", snapshot
        except (TransportUnreachableError, NotFoundError) as e:
            logger.warning(
                "Remote restore unavailable, falling back to local snapshot",
                extra={"error": str(e)},
            )

        snapshot = await self.snapshot_store.get_snapshot()
        before = await self.snapshot_store.provider.read_all()
        await self.snapshot_store.restore_snapshot(snapshot)
        await self.ledger.record_version(VersionDelta.between(before, snapshot.payload))
        return "local", snapshot
