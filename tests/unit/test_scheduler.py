"""
Unit tests for the scheduler and the schedule record.

Tests cover:
- Schedule due-checks and persistence
- Trigger launching and the per-trigger in-flight guard
- Validation after backup and the single corrective backup
- Backups taken while a sync is in flight
- Reconnect draining and syncing
- User-initiated restore with local fallback
"""

import asyncio

import pytest

from core.fieldvault.config import (
    DAY,
    FieldVaultConfig,
    OfflineConfig,
    SchedulerConfig,
    StorageBackend,
    StorageConfig,
    SyncConfig,
)
from core.fieldvault.errors import NoBackupFoundError, SerializationError
from core.fieldvault.main import FieldVault
from core.fieldvault.models import OperationKind, SyncStatus, now_ms
from core.fieldvault.provider.memory import InMemoryDataProvider
from core.fieldvault.scheduler import Schedule, Trigger, ValidationStatus
from core.fieldvault.storage.base import SCHEDULE_CONFIG
from core.fieldvault.storage.memory import InMemoryKeyValueStore
from core.fieldvault.transport.memory import InMemoryTransport


def make_vault(latency_seconds=0.0, **scheduler_overrides):
    config = FieldVaultConfig(
        storage=StorageConfig(backend=StorageBackend.MEMORY),
        sync=SyncConfig(timeout_seconds=2.0),
        offline=OfflineConfig(retry_delay_seconds=0),
        scheduler=SchedulerConfig(**scheduler_overrides),
    )
    provider = InMemoryDataProvider(
        {
            "favorites": [{"id": "f1"}],
            "detections": {"d1": {"pest": "aphid"}},
            "history": [{"id": "h1"}],
        }
    )
    return FieldVault(
        config,
        kv=InMemoryKeyValueStore(),
        provider=provider,
        transport=InMemoryTransport(latency_seconds=latency_seconds),
    )


def names(tasks):
    return {task.get_name() for task in tasks}


class TestSchedule:
    """Tests for the persisted schedule record."""

    def test_backup_interval_is_shortest_enabled(self):
        assert Schedule().backup_interval_seconds == DAY
        assert Schedule(daily=False).backup_interval_seconds == 7 * DAY
        assert Schedule(daily=False, weekly=False, monthly=False).backup_interval_seconds is None

    def test_due_checks(self):
        now = 10 * DAY * 1000
        schedule = Schedule(
            last_backup_at=now - DAY * 1000,
            last_sync_at=now - 1000,
            last_validation_at=now - 1000,
            validation_status=ValidationStatus.VALID,
        )

        assert schedule.backup_due(now)
        assert not schedule.sync_due(now)
        assert not schedule.validation_due(now)

    def test_pending_validation_is_due(self):
        schedule = Schedule(last_validation_at=now_ms())
        assert schedule.validation_due(now_ms())

    def test_disabled_backups_never_due(self):
        schedule = Schedule(daily=False, weekly=False, monthly=False)
        assert not schedule.backup_due(now_ms())

    def test_from_dict_rejects_malformed(self):
        with pytest.raises(SerializationError):
            Schedule.from_dict({"backup_enabled": {"daily": "yes"}})


class TestScheduleState:
    @pytest.mark.asyncio
    async def test_load_persists_defaults(self):
        vault = make_vault(daily=False)
        await vault.open()

        assert await vault.kv.get(SCHEDULE_CONFIG) is not None
        assert not vault.scheduler.schedule.daily
        assert vault.scheduler.schedule.sync_interval_seconds == vault.config.sync.interval_seconds

    @pytest.mark.asyncio
    async def test_update_schedule(self):
        vault = make_vault()
        await vault.open()

        schedule = await vault.scheduler.update_schedule(weekly=False, sync_interval_seconds=60)

        assert not schedule.weekly
        assert schedule.sync_interval_seconds == 60
        await vault.scheduler.load()
        assert vault.scheduler.schedule == schedule

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes",
        [
            {"hourly": True},
            {"sync_interval_seconds": 0},
            {"drain_interval_seconds": True},
            {"daily": "yes"},
        ],
    )
    async def test_update_schedule_rejects_invalid(self, changes):
        vault = make_vault()
        await vault.open()

        with pytest.raises(ValueError):
            await vault.scheduler.update_schedule(**changes)


class TestTriggers:
    """Tests for tick() and the trigger bodies."""

    @pytest.mark.asyncio
    async def test_first_tick_backs_up_and_validates(self):
        vault = make_vault()
        await vault.open()
        now = now_ms()

        tasks = await vault.scheduler.tick(now)
        await vault.scheduler.wait_idle()

        assert "fieldvault-backup" in names(tasks)
        assert "fieldvault-drain" in names(tasks)
        # validation follows the backup instead of running beside it
        assert "fieldvault-validation" not in names(tasks)
        schedule = vault.scheduler.schedule
        assert schedule.last_backup_at == now
        assert schedule.validation_status == ValidationStatus.VALID
        assert len(await vault.ledger.get_history()) == 1

    @pytest.mark.asyncio
    async def test_backup_check_interval(self):
        vault = make_vault()
        await vault.open()
        now = now_ms()
        await vault.scheduler.tick(now)
        await vault.scheduler.wait_idle()

        tasks = await vault.scheduler.tick(now + 1000)
        await vault.scheduler.wait_idle()

        assert "fieldvault-backup" not in names(tasks)
        assert len(await vault.snapshot_store.get_history()) == 1

    @pytest.mark.asyncio
    async def test_in_flight_trigger_is_skipped(self):
        vault = make_vault(latency_seconds=0.2)
        await vault.open()
        await vault.scheduler.backup_now()
        await vault.scheduler.wait_idle()
        now = now_ms()

        first = await vault.scheduler.tick(now)
        assert vault.scheduler.in_flight(Trigger.SYNC)
        second = await vault.scheduler.tick(now)
        await vault.scheduler.wait_idle()

        assert "fieldvault-sync" in names(first)
        assert "fieldvault-sync" not in names(second)
        assert vault.transport.push_count == 1

    @pytest.mark.asyncio
    async def test_unchanged_backup_records_no_version(self):
        vault = make_vault()
        await vault.open()

        await vault.scheduler.backup_now()
        await vault.scheduler.backup_now()
        assert len(await vault.ledger.get_history()) == 1

        vault.provider.set_collection("favorites", [])
        await vault.scheduler.backup_now()
        await vault.scheduler.wait_idle()

        history = await vault.ledger.get_history()
        assert len(history) == 2
        assert history[0].delta.updated == frozenset({"favorites"})

    @pytest.mark.asyncio
    async def test_failed_validation_triggers_corrective_backup(self):
        vault = make_vault()
        await vault.open()

        result = await vault.scheduler.validate_now()
        await vault.scheduler.wait_idle()

        assert not result.is_valid
        assert vault.snapshot_store.current is not None
        assert vault.scheduler.schedule.validation_status == ValidationStatus.VALID

    @pytest.mark.asyncio
    async def test_corrective_backup_attempted_once(self):
        vault = make_vault()
        await vault.open()
        vault.provider.fail_next_reads(10)

        await vault.scheduler.validate_now()
        await vault.scheduler.wait_idle()
        await vault.scheduler.validate_now()
        await vault.scheduler.wait_idle()

        history = await vault.snapshot_store.get_history()
        assert len(history) == 1
        assert not history[0].succeeded
        assert vault.scheduler.schedule.validation_status == ValidationStatus.INVALID

    @pytest.mark.asyncio
    async def test_no_corrective_backup_when_backups_disabled(self):
        vault = make_vault(daily=False, weekly=False, monthly=False)
        await vault.open()

        await vault.scheduler.validate_now()
        await vault.scheduler.wait_idle()

        assert vault.snapshot_store.current is None
        assert await vault.snapshot_store.get_history() == []
        assert vault.scheduler.schedule.validation_status == ValidationStatus.INVALID

    @pytest.mark.asyncio
    async def test_sync_skipped_without_snapshot(self):
        vault = make_vault(daily=False, weekly=False, monthly=False)
        await vault.open()

        await vault.scheduler.tick(now_ms())
        await vault.scheduler.wait_idle()

        assert vault.transport.push_count == 0


class TestConnectivity:
    @pytest.mark.asyncio
    async def test_reconnect_drains_and_syncs(self):
        vault = make_vault()
        await vault.open()
        vault.transport.set_reachable(False)
        assert not await vault.connectivity.probe()

        outcome, op = await vault.submit_mutation(
            OperationKind.CREATE, "favorites", {"id": "f2", "record": {"name": "basil"}}
        )
        assert outcome == "queued"

        vault.transport.set_reachable(True)
        assert await vault.connectivity.probe()
        await vault.scheduler.wait_idle()

        assert await vault.queue.get_pending() == []
        favorites = (await vault.provider.read_all())["favorites"]
        assert {"id": "f2", "name": "basil"} in favorites
        assert vault.transport.push_count == 1

    @pytest.mark.asyncio
    async def test_online_mutation_is_applied(self):
        vault = make_vault()
        await vault.open()

        outcome, _ = await vault.submit_mutation(OperationKind.DELETE, "favorites", {"id": "f1"})

        assert outcome == "applied"
        assert (await vault.provider.read_all())["favorites"] == []
        assert await vault.queue.get_pending() == []


class TestRestoreLatest:
    @pytest.mark.asyncio
    async def test_falls_back_to_local(self):
        vault = make_vault()
        await vault.open()
        await vault.scheduler.backup_now()
        vault.provider.set_collection("favorites", [])

        source, snapshot = await vault.scheduler.restore_latest()

        assert source == "local"
        assert (await vault.provider.read_all())["favorites"] == [{"id": "f1"}]

    @pytest.mark.asyncio
    async def test_unreachable_remote_falls_back(self):
        vault = make_vault()
        await vault.open()
        await vault.scheduler.backup_now()
        vault.transport.set_reachable(False)

        source, _ = await vault.scheduler.restore_latest()

        assert source == "local"

    @pytest.mark.asyncio
    async def test_prefers_remote(self):
        vault = make_vault()
        await vault.open()
        await vault.scheduler.backup_now()
        await vault.scheduler.sync_now()

        source, snapshot = await vault.scheduler.restore_latest()

        assert source == "remote"
        assert snapshot.payload["favorites"] == [{"id": "f1"}]

    @pytest.mark.asyncio
    async def test_nothing_to_restore(self):
        vault = make_vault()
        await vault.open()

        with pytest.raises(NoBackupFoundError):
            await vault.scheduler.restore_latest()


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        vault = make_vault(tick_seconds=0.01)
        await vault.open()

        task = asyncio.create_task(vault.scheduler.start())
        await asyncio.sleep(0.05)
        await vault.scheduler.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert vault.snapshot_store.current is not None
        assert not vault.scheduler.in_flight(Trigger.BACKUP)


class TestConcurrentTriggers:
    """A backup landing while a sync is on the wire."""

    @pytest.mark.asyncio
    async def test_backup_completes_while_sync_in_flight(self):
        vault = make_vault(latency_seconds=0.2)
        await vault.open()
        await vault.scheduler.backup_now()

        sync = asyncio.create_task(vault.scheduler.sync_now())
        while vault.transport.pull_count == 0:
            await asyncio.sleep(0.01)

        vault.provider.set_collection("favorites", [{"id": "f1"}, {"id": "f2"}])
        entry = await vault.scheduler.backup_now()

        assert entry.succeeded
        assert vault.coordinator.is_syncing

        state = await sync
        assert state.status == SyncStatus.PENDING

        state = await vault.scheduler.sync_now()
        assert state.status == SyncStatus.SYNCED
        remote, _ = await vault.transport.pull()
        assert remote.payload["favorites"] == [{"id": "f1"}, {"id": "f2"}]

        await vault.scheduler.wait_idle()
