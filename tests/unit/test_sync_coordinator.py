"""
Unit tests for the sync coordinator.

Tests cover:
- Push of the current snapshot and version status updates
- Transport failures and timeouts becoming status=failed
- Staleness after a new local version
- A local version recorded while a push is in flight
- Adoption of a newer remote version (last writer wins)
- Restore from the remote
"""

import asyncio

import pytest

from core.fieldvault.errors import (
    NoBackupFoundError,
    NotFoundError,
    TransportUnreachableError,
)
from core.fieldvault.models import (
    Origin,
    Snapshot,
    SyncStatus,
    VersionDelta,
    now_ms,
)
from core.fieldvault.provider.memory import InMemoryDataProvider
from core.fieldvault.snapshot.store import SnapshotStore
from core.fieldvault.storage.base import SYNC_STATE
from core.fieldvault.storage.memory import InMemoryKeyValueStore
from core.fieldvault.sync import SyncCoordinator
from core.fieldvault.transport.base import RemoteVersionMeta
from core.fieldvault.transport.memory import InMemoryTransport
from core.fieldvault.version import VersionLedger


def collections(favorites):
    return {
        "favorites": [{"id": f} for f in favorites],
        "detections": {},
        "history": [],
    }


class Harness:
    def __init__(self, latency_seconds=0.0, timeout_seconds=5.0):
        self.kv = InMemoryKeyValueStore()
        self.provider = InMemoryDataProvider(collections(["local"]))
        self.store = SnapshotStore(self.kv, self.provider)
        self.ledger = VersionLedger(self.kv, self.store)
        self.transport = InMemoryTransport(latency_seconds=latency_seconds)
        self.coordinator = SyncCoordinator(
            self.kv,
            self.store,
            self.transport,
            ledger=self.ledger,
            timeout_seconds=timeout_seconds,
        )


@pytest.fixture
def harness():
    return Harness()


class TestPush:
    """Tests for pushing local state."""

    @pytest.mark.asyncio
    async def test_sync_requires_snapshot(self, harness):
        with pytest.raises(NoBackupFoundError):
            await harness.coordinator.sync()

    @pytest.mark.asyncio
    async def test_first_sync_pushes_and_marks_synced(self, harness):
        await harness.store.create_snapshot()

        state = await harness.coordinator.sync()

        assert state.status == SyncStatus.SYNCED
        assert state.last_error is None
        assert state.last_sync_timestamp is not None
        assert state.remote_snapshot_id == harness.transport.remote_meta.remote_id
        assert harness.transport.push_count == 1
        history = await harness.ledger.get_history()
        assert len(history) == 1
        assert history[0].sync_status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_pushed_meta_carries_head_version(self, harness):
        await harness.store.create_snapshot()
        await harness.coordinator.sync()

        head = harness.ledger.latest()
        meta = harness.transport.remote_meta
        assert meta.version_id == head.id
        assert meta.timestamp == head.timestamp

    @pytest.mark.asyncio
    async def test_second_sync_pushes_again(self, harness):
        """A remote version this device pushed is not reconciled."""
        await harness.store.create_snapshot()
        await harness.coordinator.sync()

        state = await harness.coordinator.sync()

        assert state.status == SyncStatus.SYNCED
        assert harness.transport.push_count == 2
        assert not any(r.superseded for r in await harness.ledger.get_history())

    @pytest.mark.asyncio
    async def test_state_is_persisted(self, harness):
        await harness.store.create_snapshot()
        await harness.coordinator.sync()

        reloaded = SyncCoordinator(harness.kv, harness.store, harness.transport)
        await reloaded.load()

        assert (await reloaded.get_state()).status == SyncStatus.SYNCED
        assert await harness.kv.get(SYNC_STATE) is not None


class TestFailures:
    """Transport failures never raise out of sync()."""

    @pytest.mark.asyncio
    async def test_unreachable_becomes_failed(self, harness):
        await harness.store.create_snapshot()
        harness.transport.set_reachable(False)

        state = await harness.coordinator.sync()

        assert state.status == SyncStatus.FAILED
        assert "unreachable" in state.last_error.lower()
        history = await harness.ledger.get_history()
        assert all(r.sync_status == SyncStatus.FAILED for r in history)

    @pytest.mark.asyncio
    async def test_timeout_becomes_failed(self):
        harness = Harness(latency_seconds=0.2, timeout_seconds=0.05)
        await harness.store.create_snapshot()

        state = await harness.coordinator.sync()

        assert state.status == SyncStatus.FAILED
        assert "timed out" in state.last_error

    @pytest.mark.asyncio
    async def test_recovers_after_failures(self, harness):
        """Repeated failures leave backups intact; the next good sync recovers."""
        await harness.store.create_snapshot()
        harness.transport.set_reachable(False)
        for _ in range(3):
            state = await harness.coordinator.sync()
            assert state.status == SyncStatus.FAILED

        assert len(await harness.store.get_history()) == 1
        assert (await harness.store.get_snapshot()).payload == collections(["local"])

        harness.transport.set_reachable(True)
        state = await harness.coordinator.sync()

        assert state.status == SyncStatus.SYNCED
        assert state.last_error is None
        history = await harness.ledger.get_history()
        assert all(r.sync_status == SyncStatus.SYNCED for r in history)


class TestStaleness:
    @pytest.mark.asyncio
    async def test_local_version_marks_remote_stale(self, harness):
        await harness.store.create_snapshot()
        await harness.coordinator.sync()

        await harness.ledger.record_version(VersionDelta.of(updated=["favorites"]))

        assert (await harness.coordinator.get_state()).status == SyncStatus.PENDING

    @pytest.mark.asyncio
    async def test_remote_version_keeps_synced(self, harness):
        await harness.store.create_snapshot()
        await harness.coordinator.sync()

        await harness.ledger.record_version(
            VersionDelta.of(updated=["favorites"]),
            origin=Origin.REMOTE,
            sync_status=SyncStatus.SYNCED,
        )

        assert (await harness.coordinator.get_state()).status == SyncStatus.SYNCED


class TestPushInFlight:
    """Versions recorded while a push is on the wire."""

    @pytest.mark.asyncio
    async def test_version_recorded_during_push_stays_pending(self):
        harness = Harness(latency_seconds=0.2)
        await harness.store.create_snapshot()
        first = await harness.ledger.record_version(VersionDelta.of(added=["favorites"]))

        task = asyncio.create_task(harness.coordinator.sync())
        while harness.transport.pull_count == 0:
            await asyncio.sleep(0.01)

        harness.provider.set_collection("favorites", [{"id": "newer"}])
        await harness.store.create_snapshot()
        newer = await harness.ledger.record_version(VersionDelta.of(updated=["favorites"]))

        state = await task

        assert state.status == SyncStatus.PENDING
        assert (await harness.ledger.get_version(first.id)).sync_status == SyncStatus.SYNCED
        assert (await harness.ledger.get_version(newer.id)).sync_status == SyncStatus.PENDING
        remote, meta = await harness.transport.pull()
        assert remote.payload == collections(["local"])
        assert meta.version_id == first.id

        state = await harness.coordinator.sync()

        assert state.status == SyncStatus.SYNCED
        remote, meta = await harness.transport.pull()
        assert remote.payload == collections(["newer"])
        assert meta.version_id == newer.id
        assert all(r.sync_status == SyncStatus.SYNCED for r in await harness.ledger.get_history())


class TestRemoteAdoption:
    """Reconciliation with versions pushed by another device."""

    def seed(self, harness, timestamp):
        snapshot = Snapshot(
            timestamp=timestamp,
            payload=collections(["remote"]),
            schema_version="1.0.0",
        )
        meta = RemoteVersionMeta(
            remote_id="remote-obj-1",
            version_id="other-device-v1",
            timestamp=timestamp,
            schema_version="1.0.0",
            delta=VersionDelta.of(updated=["favorites"]),
        )
        harness.transport.seed_remote(snapshot, meta)

    @pytest.mark.asyncio
    async def test_newer_remote_is_adopted(self, harness):
        await harness.store.create_snapshot()
        await harness.ledger.ensure_initial_version()
        self.seed(harness, now_ms() + 60_000)

        state = await harness.coordinator.sync()

        assert state.status == SyncStatus.SYNCED
        assert state.remote_snapshot_id == "remote-obj-1"
        assert harness.transport.push_count == 0
        assert (await harness.provider.read_all())["favorites"] == [{"id": "remote"}]
        head = harness.ledger.latest()
        assert head.id == "other-device-v1"
        assert head.origin == Origin.REMOTE

    @pytest.mark.asyncio
    async def test_older_remote_loses_and_local_is_pushed(self, harness):
        await harness.store.create_snapshot()
        await harness.ledger.ensure_initial_version()
        self.seed(harness, 1_000)

        state = await harness.coordinator.sync()

        assert state.status == SyncStatus.SYNCED
        assert harness.transport.push_count == 1
        assert (await harness.provider.read_all())["favorites"] == [{"id": "local"}]
        loser = await harness.ledger.get_version("other-device-v1")
        assert loser.superseded
        assert harness.transport.remote_meta.version_id == harness.ledger.latest().id
        assert harness.ledger.latest().origin == Origin.LOCAL


class TestRestoreFromRemote:
    @pytest.mark.asyncio
    async def test_empty_remote(self, harness):
        with pytest.raises(NotFoundError):
            await harness.coordinator.restore_from_remote()

    @pytest.mark.asyncio
    async def test_unreachable_remote(self, harness):
        harness.transport.set_reachable(False)
        with pytest.raises(TransportUnreachableError):
            await harness.coordinator.restore_from_remote()

    @pytest.mark.asyncio
    async def test_restore_applies_and_records(self, harness):
        await harness.store.create_snapshot()
        await harness.coordinator.sync()
        harness.provider.set_collection("favorites", [])

        snapshot = await harness.coordinator.restore_from_remote()

        assert snapshot.payload == collections(["local"])
        assert (await harness.provider.read_all())["favorites"] == [{"id": "local"}]
        head = harness.ledger.latest()
        assert head.origin == Origin.REMOTE
        assert head.sync_status == SyncStatus.SYNCED
        assert (await harness.coordinator.get_state()).status == SyncStatus.SYNCED
