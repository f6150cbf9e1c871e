"""
Key-value persistence protocol for FieldVault.

Each component persists its state under one logical key:

    backup.current    SnapshotStore  (current snapshot)
    backup.history    SnapshotStore  (backup history entries)
    version.history   VersionLedger  (version records)
    sync.state        SyncCoordinator
    offline.queue     OfflineQueue
    schedule.config   Scheduler

Invariants:
    - put() replaces the whole value of a key atomically
    - There is no cross-key transaction; readers must tolerate a key that
      reflects an older write than a related key
    - Values are opaque bytes (UTF-8 JSON in practice)

How to change safely:
    - New backends must implement the KeyValueStore protocol
    - Never rename a key without a read fallback for the old name
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..errors import FieldVaultError, SerializationError

if TYPE_CHECKING:
    from ..config import FieldVaultConfig

logger = logging.getLogger(__name__)

BACKUP_CURRENT = "backup.current"
BACKUP_HISTORY = "backup.history"
VERSION_HISTORY = "version.history"
SYNC_STATE = "sync.state"
OFFLINE_QUEUE = "offline.queue"
SCHEDULE_CONFIG = "schedule.config"

ALL_KEYS = (
    BACKUP_CURRENT,
    BACKUP_HISTORY,
    VERSION_HISTORY,
    SYNC_STATE,
    OFFLINE_QUEUE,
    SCHEDULE_CONFIG,
)


class StorageError(FieldVaultError):
    """Persistence backend failed."""

    code_default = "STORAGE_ERROR"


@runtime_checkable
class KeyValueStore(Protocol):
    """Protocol for persisted component state.

    Example:
        >>> kv = SqliteKeyValueStore("/var/lib/fieldvault/fieldvault.db")
        >>> await kv.put("sync.state", b'{"status": "pending"}')
        >>> await kv.get("sync.state")
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the stored value, or None if the key is absent.

        Raises:
            StorageError: If the backend cannot be read
        """
        ...

    @abstractmethod
    async def put(self, key: str, value: bytes) -> None:
        """Replace the value of a key.

        Raises:
            StorageError: If the backend cannot be written
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key. Deleting an absent key is not an error."""
        ...

    @abstractmethod
    async def keys(self) -> list[str]:
        """List stored keys."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...


def encode_json(value: Any, key: str) -> bytes:
    """Encode a JSON-compatible value for storage.

    Raises:
        SerializationError: If the value is not JSON-encodable
    """
    try:
        return json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Failed to encode '{key}': {e}", key=key) from e


def decode_json(raw: bytes, key: str) -> Any:
    """Decode a stored value.

    Raises:
        SerializationError: If the value is not valid UTF-8 JSON
    """
    try:
        return json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise SerializationError(f"Failed to decode '{key}': {e}", key=key) from e


async def load_json(kv: KeyValueStore, key: str) -> Any | None:
    """Read and decode a key, treating an undecodable value as absent.

    A persisted key that cannot be decoded has no other source of truth, so
    it is logged at ERROR and reported as missing rather than raised.
    """
    raw = await kv.get(key)
    if raw is None:
        return None
    try:
        return decode_json(raw, key)
    except SerializationError as e:
        logger.error(
            "Persisted key is unreadable, treating as absent",
            extra={"key": key, "error": str(e)},
        )
        return None


def create_kv_store(config: "FieldVaultConfig") -> KeyValueStore:
    """Factory function to create a key-value store from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from pathlib import Path

    from ..config import StorageBackend
    from .memory import InMemoryKeyValueStore
    from .sqlite import SqliteKeyValueStore

    if config.storage.backend == StorageBackend.SQLITE:
        return SqliteKeyValueStore(
            str(Path(config.storage.data_dir) / config.storage.db_filename),
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
    elif config.storage.backend == StorageBackend.MEMORY:
        return InMemoryKeyValueStore()
    else:
        raise ValueError(f"Unsupported storage backend: {config.storage.backend}")
