"""
SQLite-backed data provider.

Stores each application collection as one JSON document row so that a
restore can replace all of them inside a single transaction.

Table schema:
    collections:
        - name TEXT PRIMARY KEY
        - shape TEXT ('list' or 'map')
        - body_json TEXT
        - updated_at INTEGER (Unix ms)

Invariants:
    - write_all() runs in one BEGIN IMMEDIATE transaction; on any error the
      transaction is rolled back and the previous collections remain
    - Missing rows read back as empty collections of the declared shape
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Mapping

from ..errors import ProviderUnavailableError, SerializationError
from .base import DEFAULT_COLLECTIONS, CollectionShape, check_collections

logger = logging.getLogger(__name__)


class SqliteDataProvider:
    """DataProvider persisting collections in SQLite.

    Example:
        >>> provider = SqliteDataProvider("/var/lib/fieldvault/appdata.db")
        >>> await provider.write_all({"favorites": [], "detections": {}, "history": []})
    """

    def __init__(
        self,
        db_path: str,
        required: Mapping[str, CollectionShape] | None = None,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._required = dict(required if required is not None else DEFAULT_COLLECTIONS)
        self._lock = asyncio.Lock()

    @property
    def required_collections(self) -> Mapping[str, CollectionShape]:
        return self._required

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
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS collections (
                    name TEXT PRIMARY KEY,
                    shape TEXT NOT NULL,
                    body_json TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            yield conn
        finally:
            conn.close()

    async def read_all(self) -> dict[str, Any]:
        try:
            with self._get_connection() as conn:
                rows = conn.execute("SELECT name, body_json FROM collections").fetchall()
        except sqlite3.Error as e:
            raise ProviderUnavailableError(f"Failed to read collections: {e}") from e

        data: dict[str, Any] = {name: shape.empty() for name, shape in self._required.items()}
        for name, body in rows:
            try:
                data[name] = json.loads(body)
            except json.JSONDecodeError as e:
                raise ProviderUnavailableError(f"Collection '{name}' is corrupt: {e}") from e
        return data

    async def write_all(self, collections: Mapping[str, Any]) -> None:
        check_collections(collections, self._required)
        now = int(time.time() * 1000)
        rows = []
        for name, value in collections.items():
            shape = self._required.get(name)
            if shape is None:
                shape = CollectionShape.LIST if isinstance(value, list) else CollectionShape.MAP
            try:
                body = json.dumps(value)
            except (TypeError, ValueError) as e:
                raise SerializationError(f"Collection '{name}' is not JSON-encodable: {e}") from e
            rows.append((name, shape.value, body, now))

        async with self._lock:
            try:
                with self._get_connection() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        conn.execute("DELETE FROM collections")
                        conn.executemany(
                            "INSERT INTO collections (name, shape, body_json, updated_at) "
                            "VALUES (?, ?, ?, ?)",
                            rows,
                        )
                        conn.execute("COMMIT")
                    except BaseException:
                        conn.execute("ROLLBACK")
                        raise
            except sqlite3.Error as e:
                raise ProviderUnavailableError(f"Failed to write collections: {e}") from e

        logger.debug("Collections written", extra={"collections": sorted(collections)})
