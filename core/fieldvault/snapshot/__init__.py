"""
Snapshot module for FieldVault.

This module owns the single "current backup" slot and the bounded backup
history:
- Periodic snapshots of the application collections
- Atomic restore back into the data provider
- Backup audit trail and metrics

Invariants:
    - Exactly one current snapshot; it is replaced, never mutated
    - Every create attempt appends a history entry, including failures
"""

from .codec import decode_snapshot, encode_snapshot
from .store import SnapshotStore

__all__ = ["SnapshotStore", "encode_snapshot", "decode_snapshot"]
