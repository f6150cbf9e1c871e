"""
Offline operation queue.

Durable FIFO of mutations generated while the device cannot reach the
remote store (or while sync is failed). drain() replays them through
handlers registered per (kind, collection).

Persisted key:
    offline.queue - list of OfflineOperation, FIFO order

Lifecycle:
    pending -> in_flight -> (removed)              handler succeeded
    pending -> in_flight -> pending                failed, attempts < max_retries
    pending -> in_flight -> failed (terminal)      failed, attempts >= max_retries
    failed  -> pending                             retry_failed()

Invariants:
    - Operations are applied one at a time in enqueue order
    - A pending operation that fails or is still backing off blocks every
      later operation on the same collection for the rest of the pass
    - Terminal failures are never retried by drain(); only retry_failed()
      or clear_failed() touch them
    - At most one drain runs at a time; a concurrent call is skipped
    - An operation left in_flight by a crash is pending again after load()

How to change safely:
    - Keep every transition going through _replace()/_publish()
    - Test with handlers that fail a fixed number of times
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from ..errors import FieldVaultError, NotFoundError, RetryExhaustedError, SerializationError
from ..models import OfflineOperation, OperationKind, OperationStatus, now_ms
from ..notify import EventKind, LoggingNotificationSink, NotificationSink
from ..storage.base import OFFLINE_QUEUE, KeyValueStore, encode_json, load_json

logger = logging.getLogger(__name__)

OperationHandler = Callable[[OfflineOperation], Awaitable[Any]]


@dataclass(frozen=True)
class DrainResult:
    """Summary of one drain pass."""

    attempted: int = 0
    completed: int = 0
    failed: int = 0
    remaining: int = 0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


class OfflineQueue:
    """Durable queue of offline mutations.

    Example:
        >>> queue = OfflineQueue(kv, max_retries=3)
        >>> queue.register_handler(OperationKind.CREATE, handler)
        >>> await queue.enqueue(OperationKind.CREATE, "favorites", {"id": "f1", "record": {...}})
        >>> result = await queue.drain()
    """

    def __init__(
        self,
        kv: KeyValueStore,
        handlers: Mapping[OperationKind, OperationHandler] | None = None,
        max_retries: int = 3,
        retry_delay_seconds: float = 10.0,
        retry_backoff_max_seconds: float = 300.0,
        notifier: NotificationSink | None = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.kv = kv
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.retry_backoff_max_seconds = retry_backoff_max_seconds
        self.notifier = notifier or LoggingNotificationSink()

        self._handlers: dict[tuple[OperationKind, str | None], OperationHandler] = {}
        for kind, handler in (handlers or {}).items():
            self.register_handler(kind, handler)

        self._ops: tuple[OfflineOperation, ...] = ()
        self._draining = False

    def register_handler(
        self,
        kind: OperationKind,
        handler: OperationHandler,
        collection: str | None = None,
    ) -> None:
        """Register a handler for a kind, optionally only for one collection.

        A collection-specific handler takes precedence over the kind-wide one.
        """
        self._handlers[(kind, collection)] = handler

    def _handler_for(self, op: OfflineOperation) -> OperationHandler | None:
        return self._handlers.get((op.kind, op.target_collection)) or self._handlers.get(
            (op.kind, None)
        )

    @property
    def is_draining(self) -> bool:
        return self._draining

    async def load(self) -> None:
        data = await load_json(self.kv, OFFLINE_QUEUE)
        ops: tuple[OfflineOperation, ...] = ()
        if data is not None:
            try:
                if not isinstance(data, list):
                    raise SerializationError("offline queue is not a list", key=OFFLINE_QUEUE)
                ops = tuple(OfflineOperation.from_dict(item) for item in data)
            except SerializationError as e:
                logger.error(
                    "Offline queue is unreadable, treating as absent",
                    extra={"key": OFFLINE_QUEUE, "error": str(e)},
                )
                ops = ()

        interrupted = [op.id for op in ops if op.status == OperationStatus.IN_FLIGHT]
        if interrupted:
            logger.warning(
                "Requeueing operations interrupted mid-drain",
                extra={"operation_ids": interrupted},
            )
            ops = tuple(
                dataclasses.replace(op, status=OperationStatus.PENDING)
                if op.status == OperationStatus.IN_FLIGHT
                else op
                for op in ops
            )
        self._ops = ops
        logger.info(
            "Offline queue loaded",
            extra={
                "pending": sum(1 for op in ops if op.status == OperationStatus.PENDING),
                "failed": sum(1 for op in ops if op.status == OperationStatus.FAILED),
            },
        )

    async def enqueue(
        self,
        kind: OperationKind,
        target_collection: str,
        payload: dict[str, Any] | None = None,
    ) -> OfflineOperation:
        """Append a pending operation.

        Raises:
            SerializationError: If the payload is not JSON-encodable
            StorageError: If the queue cannot be persisted
        """
        op = OfflineOperation(
            id=uuid.uuid4().hex,
            kind=kind,
            target_collection=target_collection,
            payload=dict(payload or {}),
            created_at=now_ms(),
        )
        await self._publish(self._ops + (op,), strict=True)
        logger.info(
            "Operation queued",
            extra={"operation_id": op.id, "kind": kind.value, "collection": target_collection},
        )
        return op

    async def drain(self, now: int | None = None) -> DrainResult:
        """Apply pending operations in FIFO order.

        Args:
            now: Current time in Unix ms, used for retry backoff

        Returns:
            DrainResult; ``skipped`` is True if another drain was running
        """
        if self._draining:
            logger.debug("Drain already in flight, skipping")
            return DrainResult(skipped=True, remaining=len(await self.get_pending()))

        self._draining = True
        attempted = completed = failed = 0
        blocked: set[str] = set()
        try:
            for op_id in [op.id for op in self._ops if op.status == OperationStatus.PENDING]:
                op = self._find(op_id)
                if op is None or op.status != OperationStatus.PENDING:
                    continue
                if op.target_collection in blocked:
                    continue
                current = now if now is not None else now_ms()
                if not self._eligible(op, current):
                    blocked.add(op.target_collection)
                    continue

                attempted += 1
                outcome = await self._attempt(op)
                if outcome is None:
                    completed += 1
                elif outcome.status == OperationStatus.FAILED:
                    failed += 1
                else:
                    blocked.add(op.target_collection)
        finally:
            self._draining = False

        remaining = len(await self.get_pending())
        if attempted:
            logger.info(
                "Drain finished",
                extra={
                    "attempted": attempted,
                    "completed": completed,
                    "failed": failed,
                    "remaining": remaining,
                },
            )
        return DrainResult(
            attempted=attempted,
            completed=completed,
            failed=failed,
            remaining=remaining,
        )

    async def _attempt(self, op: OfflineOperation) -> OfflineOperation | None:
        """Run one operation. Returns None on success, else the updated operation."""
        await self._replace(dataclasses.replace(op, status=OperationStatus.IN_FLIGHT))

        handler = self._handler_for(op)
        try:
            if handler is None:
                raise NotFoundError(
                    f"No handler for {op.kind.value} on '{op.target_collection}'"
                )
            await handler(op)
        except asyncio.CancelledError:
            # cancelled mid-attempt; the operation stays queued
            await self._replace(dataclasses.replace(op, status=OperationStatus.PENDING))
            raise
        except Exception as e:
            return await self._record_failure(op, e)

        await self._publish(tuple(o for o in self._ops if o.id != op.id))
        logger.info(
            "Operation applied",
            extra={"operation_id": op.id, "kind": op.kind.value, "collection": op.target_collection},
        )
        return None

    async def _record_failure(self, op: OfflineOperation, error: Exception) -> OfflineOperation:
        attempts = op.attempt_count + 1
        exhausted = attempts >= self.max_retries
        updated = dataclasses.replace(
            op,
            status=OperationStatus.FAILED if exhausted else OperationStatus.PENDING,
            attempt_count=attempts,
            last_attempt_at=now_ms(),
            last_error=str(error) or type(error).__name__,
        )
        await self._replace(updated)

        if exhausted:
            exhausted_error = RetryExhaustedError(
                f"Operation {op.id} failed after {attempts} attempts: {updated.last_error}",
                operation_id=op.id,
                attempts=attempts,
            )
            logger.error(
                exhausted_error.message,
                extra={"operation_id": op.id, "collection": op.target_collection},
            )
            self.notifier.notify(EventKind.OPERATION_FAILED, exhausted_error.to_dict())
        else:
            logger.warning(
                "Operation failed, will retry",
                extra={
                    "operation_id": op.id,
                    "attempt_count": attempts,
                    "error": updated.last_error,
                },
            )
        return updated

    def _eligible(self, op: OfflineOperation, now: int) -> bool:
        if op.attempt_count == 0 or op.last_attempt_at is None:
            return True
        delay = min(
            self.retry_delay_seconds * (2 ** (op.attempt_count - 1)),
            self.retry_backoff_max_seconds,
        )
        return now - op.last_attempt_at >= delay * 1000

    async def get_pending(self) -> list[OfflineOperation]:
        return [op for op in self._ops if op.status in (OperationStatus.PENDING, OperationStatus.IN_FLIGHT)]

    async def get_failed(self) -> list[OfflineOperation]:
        return [op for op in self._ops if op.status == OperationStatus.FAILED]

    async def get(self, operation_id: str) -> OfflineOperation:
        op = self._find(operation_id)
        if op is None:
            raise NotFoundError(f"Operation not found: {operation_id}")
        return op

    async def retry_failed(self, operation_id: str) -> OfflineOperation:
        """Return a terminally failed operation to pending with a fresh attempt count.

        Raises:
            NotFoundError: If no failed operation has this id
        """
        op = self._find(operation_id)
        if op is None or op.status != OperationStatus.FAILED:
            raise NotFoundError(f"Failed operation not found: {operation_id}")
        updated = dataclasses.replace(
            op,
            status=OperationStatus.PENDING,
            attempt_count=0,
            last_attempt_at=None,
        )
        await self._replace(updated, strict=True)
        logger.info("Failed operation requeued", extra={"operation_id": operation_id})
        return updated

    async def clear_failed(self, operation_id: str | None = None) -> int:
        """Remove one terminally failed operation, or all of them.

        Returns:
            Number of operations removed
        """
        keep = tuple(
            op
            for op in self._ops
            if op.status != OperationStatus.FAILED
            or (operation_id is not None and op.id != operation_id)
        )
        removed = len(self._ops) - len(keep)
        if removed:
            await self._publish(keep, strict=True)
            logger.info("Cleared failed operations", extra={"removed": removed})
        return removed

    def _find(self, operation_id: str) -> OfflineOperation | None:
        for op in self._ops:
            if op.id == operation_id:
                return op
        return None

    async def _replace(self, updated: OfflineOperation, strict: bool = False) -> None:
        await self._publish(
            tuple(updated if op.id == updated.id else op for op in self._ops),
            strict=strict,
        )

    async def _publish(self, ops: tuple[OfflineOperation, ...], strict: bool = False) -> None:
        raw = encode_json([op.to_dict() for op in ops], OFFLINE_QUEUE)
        if strict:
            await self.kv.put(OFFLINE_QUEUE, raw)
            self._ops = ops
            return
        self._ops = ops
        try:
            await self.kv.put(OFFLINE_QUEUE, raw)
        except FieldVaultError as e:
            logger.error(
                "Failed to persist offline queue",
                extra={"key": OFFLINE_QUEUE, "error": str(e)},
            )
