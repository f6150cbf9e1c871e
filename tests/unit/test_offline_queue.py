"""
Unit tests for the offline queue and its provider handler.

Tests cover:
- FIFO application and per-collection blocking
- Retry counting, backoff and terminal failure
- retry_failed / clear_failed
- Crash recovery of in-flight operations
- Concurrent drain skipping and cancellation
- Applying create/update/delete to provider collections
"""

import asyncio

import pytest

from core.fieldvault.errors import NotFoundError, ValidationFailedError
from core.fieldvault.models import OperationKind, OperationStatus
from core.fieldvault.offline import OfflineQueue, ProviderOperationHandler
from core.fieldvault.provider.memory import InMemoryDataProvider
from core.fieldvault.snapshot.store import SnapshotStore
from core.fieldvault.storage.base import OFFLINE_QUEUE, StorageError, encode_json
from core.fieldvault.storage.memory import InMemoryKeyValueStore
from core.fieldvault.version import VersionLedger


class FlakyHandler:
    """Handler that fails a fixed number of times, then succeeds."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []

    async def __call__(self, op):
        self.calls.append(op.id)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("network down")


def make_queue(handler, kv=None, **kwargs):
    kwargs.setdefault("retry_delay_seconds", 0)
    return OfflineQueue(
        kv or InMemoryKeyValueStore(),
        handlers={kind: handler for kind in OperationKind},
        **kwargs,
    )


class TestEnqueueAndDrain:
    """Tests for basic queueing and FIFO order."""

    @pytest.mark.asyncio
    async def test_enqueue_is_persisted(self):
        kv = InMemoryKeyValueStore()
        queue = make_queue(FlakyHandler(), kv=kv)

        op = await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1"})

        reloaded = make_queue(FlakyHandler(), kv=kv)
        await reloaded.load()
        assert [o.id for o in await reloaded.get_pending()] == [op.id]

    @pytest.mark.asyncio
    async def test_enqueue_persist_failure_raises(self):
        kv = InMemoryKeyValueStore()
        kv.fail_writes(OFFLINE_QUEUE)
        queue = make_queue(FlakyHandler(), kv=kv)

        with pytest.raises(StorageError):
            await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1"})

        assert await queue.get_pending() == []

    @pytest.mark.asyncio
    async def test_drain_applies_in_order(self):
        handler = FlakyHandler()
        queue = make_queue(handler)
        ops = [
            await queue.enqueue(OperationKind.CREATE, "favorites", {"id": str(i)})
            for i in range(3)
        ]

        result = await queue.drain()

        assert handler.calls == [op.id for op in ops]
        assert result.attempted == 3
        assert result.completed == 3
        assert result.remaining == 0
        assert await queue.get_pending() == []

    @pytest.mark.asyncio
    async def test_failure_blocks_same_collection_only(self):
        """A failed op holds back later ops on its collection, not others."""

        async def handler(op):
            if op.payload["id"] == "bad":
                raise RuntimeError("rejected")

        queue = make_queue(handler)
        bad = await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "bad"})
        held = await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "later"})
        other = await queue.enqueue(OperationKind.CREATE, "history", {"id": "h1"})

        result = await queue.drain()

        assert result.attempted == 2
        assert result.completed == 1
        pending = {op.id: op for op in await queue.get_pending()}
        assert set(pending) == {bad.id, held.id}
        assert pending[held.id].attempt_count == 0
        assert other.id not in pending

    @pytest.mark.asyncio
    async def test_missing_handler_counts_as_failure(self):
        queue = OfflineQueue(InMemoryKeyValueStore(), retry_delay_seconds=0)
        op = await queue.enqueue(OperationKind.DELETE, "favorites", {"id": "f1"})

        await queue.drain()

        updated = await queue.get(op.id)
        assert updated.attempt_count == 1
        assert "No handler" in updated.last_error

    @pytest.mark.asyncio
    async def test_collection_handler_preferred(self):
        general = FlakyHandler()
        specific = FlakyHandler()
        queue = make_queue(general)
        queue.register_handler(OperationKind.CREATE, specific, collection="history")
        await queue.enqueue(OperationKind.CREATE, "history", {"id": "h1"})
        await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1"})

        await queue.drain()

        assert len(specific.calls) == 1
        assert len(general.calls) == 1


class TestRetries:
    """Retry counting and terminal failure."""

    @pytest.mark.asyncio
    async def test_succeeds_on_last_allowed_attempt(self):
        """Failing max_retries - 1 times then succeeding completes the op."""
        handler = FlakyHandler(failures=2)
        queue = make_queue(handler, max_retries=3)
        await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1"})

        for _ in range(3):
            await queue.drain()

        assert len(handler.calls) == 3
        assert await queue.get_pending() == []
        assert await queue.get_failed() == []

    @pytest.mark.asyncio
    async def test_exhausts_after_max_retries(self):
        """Failing max_retries times makes the op terminally failed."""
        handler = FlakyHandler(failures=10)
        queue = make_queue(handler, max_retries=3)
        op = await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1"})

        results = [await queue.drain() for _ in range(5)]

        assert len(handler.calls) == 3
        assert results[2].failed == 1
        assert results[3].attempted == 0
        failed = await queue.get_failed()
        assert [f.id for f in failed] == [op.id]
        assert failed[0].attempt_count == 3
        assert failed[0].last_error == "network down"

    @pytest.mark.asyncio
    async def test_terminal_failure_unblocks_collection(self):
        handler = FlakyHandler(failures=1)
        queue = make_queue(handler, max_retries=1)
        first = await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1"})
        second = await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f2"})

        result = await queue.drain()

        assert result.failed == 1
        assert result.completed == 1
        assert handler.calls == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_backoff_delays_retry(self):
        handler = FlakyHandler(failures=1)
        queue = make_queue(handler, retry_delay_seconds=10)
        op = await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1"})

        await queue.drain()
        failed_at = (await queue.get(op.id)).last_attempt_at

        early = await queue.drain(now=failed_at + 5_000)
        assert early.attempted == 0

        due = await queue.drain(now=failed_at + 10_000)
        assert due.completed == 1

    @pytest.mark.asyncio
    async def test_retry_failed_requeues(self):
        handler = FlakyHandler(failures=1)
        queue = make_queue(handler, max_retries=1)
        op = await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1"})
        await queue.drain()

        requeued = await queue.retry_failed(op.id)

        assert requeued.status == OperationStatus.PENDING
        assert requeued.attempt_count == 0
        assert (await queue.drain()).completed == 1

    @pytest.mark.asyncio
    async def test_retry_unknown_failed(self):
        queue = make_queue(FlakyHandler())
        op = await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1"})

        with pytest.raises(NotFoundError):
            await queue.retry_failed(op.id)
        with pytest.raises(NotFoundError):
            await queue.retry_failed("missing")

    @pytest.mark.asyncio
    async def test_clear_failed(self):
        queue = make_queue(FlakyHandler(failures=2), max_retries=1)
        first = await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1"})
        await queue.enqueue(OperationKind.CREATE, "history", {"id": "h1"})
        await queue.drain()
        assert len(await queue.get_failed()) == 2

        assert await queue.clear_failed(first.id) == 1
        assert await queue.clear_failed() == 1
        assert await queue.clear_failed() == 0


class TestRecoveryAndConcurrency:
    @pytest.mark.asyncio
    async def test_load_requeues_in_flight(self):
        kv = InMemoryKeyValueStore()
        queue = make_queue(FlakyHandler(), kv=kv)
        op = await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1"})
        data = [dict(op.to_dict(), status="in_flight")]
        await kv.put(OFFLINE_QUEUE, encode_json(data, OFFLINE_QUEUE))

        reloaded = make_queue(FlakyHandler(), kv=kv)
        await reloaded.load()

        assert (await reloaded.get(op.id)).status == OperationStatus.PENDING

    @pytest.mark.asyncio
    async def test_corrupt_queue_loads_empty(self):
        kv = InMemoryKeyValueStore()
        kv.corrupt(OFFLINE_QUEUE)
        queue = make_queue(FlakyHandler(), kv=kv)

        await queue.load()

        assert await queue.get_pending() == []

    @pytest.mark.asyncio
    async def test_concurrent_drain_is_skipped(self):
        release = asyncio.Event()

        async def handler(op):
            await release.wait()

        queue = make_queue(handler)
        await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1"})

        first = asyncio.create_task(queue.drain())
        await asyncio.sleep(0)
        assert queue.is_draining

        second = await queue.drain()
        assert second.skipped
        assert second.remaining == 1

        release.set()
        assert (await first).completed == 1

    @pytest.mark.asyncio
    async def test_cancelled_drain_keeps_operation(self):
        async def handler(op):
            await asyncio.sleep(10)

        queue = make_queue(handler)
        op = await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1"})

        task = asyncio.create_task(queue.drain())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        current = await queue.get(op.id)
        assert current.status == OperationStatus.PENDING
        assert current.attempt_count == 0
        assert not queue.is_draining


class TestProviderOperationHandler:
    """Applying mutations to provider collections."""

    @pytest.fixture
    def provider(self):
        return InMemoryDataProvider(
            {
                "favorites": [{"id": "f1", "name": "tomato"}],
                "detections": {"d1": {"pest": "aphid"}},
                "history": [],
            }
        )

    @pytest.fixture
    def kv(self):
        return InMemoryKeyValueStore()

    @pytest.fixture
    def store(self, kv, provider):
        return SnapshotStore(kv, provider)

    @pytest.fixture
    def ledger(self, kv, store):
        return VersionLedger(kv, store)

    @pytest.fixture
    def queue(self, kv, provider, store, ledger):
        handler = ProviderOperationHandler(provider, store, ledger)
        return make_queue(handler, kv=kv)

    @pytest.mark.asyncio
    async def test_create_appends_and_records_version(self, queue, provider, store, ledger):
        await queue.enqueue(
            OperationKind.CREATE, "favorites", {"id": "f2", "record": {"name": "basil"}}
        )

        assert (await queue.drain()).completed == 1

        favorites = (await provider.read_all())["favorites"]
        assert favorites[-1] == {"id": "f2", "name": "basil"}
        assert (await store.get_snapshot()).payload["favorites"] == favorites
        head = ledger.latest()
        assert head.delta.added == frozenset({"favorites"})

    @pytest.mark.asyncio
    async def test_update_merges(self, queue, provider):
        await queue.enqueue(
            OperationKind.UPDATE, "favorites", {"id": "f1", "record": {"note": "ripe"}}
        )
        await queue.drain()

        assert (await provider.read_all())["favorites"] == [
            {"id": "f1", "name": "tomato", "note": "ripe"}
        ]

    @pytest.mark.asyncio
    async def test_update_missing_record_fails(self, provider, store):
        handler = ProviderOperationHandler(provider, store)
        queue = make_queue(handler)
        op = await queue.enqueue(
            OperationKind.UPDATE, "favorites", {"id": "nope", "record": {"x": 1}}
        )

        await queue.drain()

        assert (await queue.get(op.id)).attempt_count == 1

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, provider, store):
        handler = ProviderOperationHandler(provider, store)
        queue = make_queue(handler)
        await queue.enqueue(OperationKind.DELETE, "favorites", {"id": "f1"})
        await queue.enqueue(OperationKind.DELETE, "favorites", {"id": "f1"})

        result = await queue.drain()

        assert result.completed == 2
        assert (await provider.read_all())["favorites"] == []

    @pytest.mark.asyncio
    async def test_map_collection(self, provider, store):
        handler = ProviderOperationHandler(provider, store)
        queue = make_queue(handler)
        await queue.enqueue(
            OperationKind.CREATE, "detections", {"id": "d2", "record": {"pest": "mite"}}
        )
        await queue.enqueue(
            OperationKind.UPDATE, "detections", {"id": "d1", "record": {"confidence": 0.8}}
        )
        await queue.drain()

        assert (await provider.read_all())["detections"] == {
            "d1": {"pest": "aphid", "confidence": 0.8},
            "d2": {"pest": "mite"},
        }

    @pytest.mark.asyncio
    async def test_unknown_collection_and_missing_id(self, provider, store):
        handler = ProviderOperationHandler(provider, store)
        unknown = await make_queue(handler).enqueue(OperationKind.CREATE, "crops", {"id": "c1"})
        no_id = await make_queue(handler).enqueue(OperationKind.CREATE, "favorites", {})

        with pytest.raises(ValidationFailedError):
            await handler(unknown)
        with pytest.raises(ValidationFailedError):
            await handler(no_id)
