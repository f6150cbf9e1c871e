"""
SQLite key-value store for FieldVault.

One row per logical key in a single ``kv`` table. Each put() is an UPSERT in
its own transaction, so a key is always either the old or the new value.

Table schema:
    kv:
        - key TEXT PRIMARY KEY
        - value BLOB
        - updated_at INTEGER (Unix ms)

Invariants:
    - All operations are atomic (single statement, autocommit)
    - Connection is opened per operation; SQLite handles file locking

How to change safely:
    - Schema migrations must be backward compatible
    - Test with a database written by the previous release
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .base import StorageError

logger = logging.getLogger(__name__)


class SqliteKeyValueStore:
    """SQLite-backed implementation of KeyValueStore.

    Example:
        >>> kv = SqliteKeyValueStore("/var/lib/fieldvault/fieldvault.db")
        >>> await kv.put("backup.current", b"{...}")
    """

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()
        self._initialized = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._initialized:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value BLOB NOT NULL,
                        updated_at INTEGER NOT NULL
                    )
                    """
                )
                self._initialized = True
            yield conn
        finally:
            conn.close()

    async def get(self, key: str) -> bytes | None:
        try:
            with self._get_connection() as conn:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read '{key}': {e}") from e
        return bytes(row[0]) if row else None

    async def put(self, key: str, value: bytes) -> None:
        async with self._lock:
            try:
                with self._get_connection() as conn:
                    conn.execute(
                        "INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?) "
                        "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                        "updated_at = excluded.updated_at",
                        (key, sqlite3.Binary(value), int(time.time() * 1000)),
                    )
            except sqlite3.Error as e:
                raise StorageError(f"Failed to write '{key}': {e}") from e

    async def delete(self, key: str) -> None:
        async with self._lock:
            try:
                with self._get_connection() as conn:
                    conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            except sqlite3.Error as e:
                raise StorageError(f"Failed to delete '{key}': {e}") from e

    async def keys(self) -> list[str]:
        try:
            with self._get_connection() as conn:
                rows = conn.execute("SELECT key FROM kv ORDER BY key").fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list keys: {e}") from e
        return [row[0] for row in rows]

    async def close(self) -> None:
        logger.debug("SqliteKeyValueStore closed", extra={"db_path": str(self.db_path)})
