"""
In-memory key-value store for testing.

Invariants:
    - All data is lost on process exit
    - put() publishes a new value in one step, readers never see a partial one

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with KeyValueStore protocol
"""

from __future__ import annotations

import asyncio
import logging

from .base import StorageError

logger = logging.getLogger(__name__)


class InMemoryKeyValueStore:
    """In-memory implementation of KeyValueStore.

    Example:
        >>> kv = InMemoryKeyValueStore()
        >>> await kv.put("sync.state", b"{}")
    """

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = asyncio.Lock()
        self._fail_writes: set[str] = set()
        self.write_count = 0

    async def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def put(self, key: str, value: bytes) -> None:
        async with self._lock:
            if key in self._fail_writes:
                raise StorageError(f"Injected write failure for '{key}'")
            self._data[key] = bytes(value)
            self.write_count += 1

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return sorted(self._data)

    async def close(self) -> None:
        logger.debug("InMemoryKeyValueStore closed")

    def fail_writes(self, key: str, enabled: bool = True) -> None:
        """Make writes to a key fail (testing helper)."""
        if enabled:
            self._fail_writes.add(key)
        else:
            self._fail_writes.discard(key)

    def corrupt(self, key: str, raw: bytes = b"\x00not-json") -> None:
        """Overwrite a key with undecodable bytes (testing helper)."""
        self._data[key] = raw
