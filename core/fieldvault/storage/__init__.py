"""
Persistence for FieldVault component state.

This module provides a pluggable key-value backend supporting:
- SQLite (default, on-device)
- In-memory (for testing)

Invariants:
    - Each logical key is written whole, never patched
    - No cross-key transactions
"""

from .base import (
    ALL_KEYS,
    BACKUP_CURRENT,
    BACKUP_HISTORY,
    OFFLINE_QUEUE,
    SCHEDULE_CONFIG,
    SYNC_STATE,
    VERSION_HISTORY,
    KeyValueStore,
    StorageError,
    create_kv_store,
    decode_json,
    encode_json,
    load_json,
)
from .memory import InMemoryKeyValueStore
from .sqlite import SqliteKeyValueStore

__all__ = [
    # Protocol and helpers
    "KeyValueStore",
    "StorageError",
    "encode_json",
    "decode_json",
    "load_json",
    # Keys
    "ALL_KEYS",
    "BACKUP_CURRENT",
    "BACKUP_HISTORY",
    "VERSION_HISTORY",
    "SYNC_STATE",
    "OFFLINE_QUEUE",
    "SCHEDULE_CONFIG",
    # Factory
    "create_kv_store",
    # Implementations
    "SqliteKeyValueStore",
    "InMemoryKeyValueStore",
]
