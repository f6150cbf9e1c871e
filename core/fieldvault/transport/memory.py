"""
In-memory transport for testing.

Simulates a remote snapshot store with controllable reachability,
latency and failures.

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with SyncTransport protocol
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from ..errors import NotFoundError, TransportUnreachableError
from ..models import Snapshot, VersionRecord
from .base import RemoteVersionMeta, build_meta

logger = logging.getLogger(__name__)


class InMemoryTransport:
    """SyncTransport backed by a process-local "remote".

    Example:
        >>> transport = InMemoryTransport()
        >>> transport.fail_next(3)
        >>> await transport.push(snapshot)  # raises TransportUnreachableError
    """

    def __init__(self, latency_seconds: float = 0.0) -> None:
        self.latency_seconds = latency_seconds
        self._remote: tuple[Snapshot, RemoteVersionMeta] | None = None
        self._reachable = True
        self._failures_remaining = 0
        self.push_count = 0
        self.pull_count = 0

    async def _call(self, operation: str) -> None:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if not self._reachable:
            raise TransportUnreachableError(f"Remote unreachable during {operation}")
        if self._failures_remaining:
            self._failures_remaining -= 1
            raise TransportUnreachableError(f"Injected failure during {operation}")

    async def push(self, snapshot: Snapshot, version: VersionRecord | None = None) -> str:
        await self._call("push")
        remote_id = uuid.uuid4().hex
        self._remote = (snapshot.copy(), build_meta(remote_id, snapshot, version))
        self.push_count += 1
        logger.debug("Snapshot pushed", extra={"remote_id": remote_id})
        return remote_id

    async def pull(self) -> tuple[Snapshot, RemoteVersionMeta]:
        await self._call("pull")
        self.pull_count += 1
        if self._remote is None:
            raise NotFoundError("Remote holds no snapshot")
        snapshot, meta = self._remote
        return snapshot.copy(), meta

    async def is_reachable(self) -> bool:
        return self._reachable

    async def close(self) -> None:
        logger.debug("InMemoryTransport closed")

    # Testing helpers

    def set_reachable(self, reachable: bool) -> None:
        """Simulate the network going down or coming back."""
        self._reachable = reachable

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` push/pull calls fail."""
        self._failures_remaining = count

    def seed_remote(self, snapshot: Snapshot, meta: RemoteVersionMeta) -> None:
        """Place a snapshot on the remote as if another device pushed it."""
        self._remote = (snapshot.copy(), meta)

    @property
    def remote_meta(self) -> RemoteVersionMeta | None:
        return self._remote[1] if self._remote else None
