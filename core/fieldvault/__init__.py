"""
FieldVault - device-local data durability and synchronization core.

This package keeps the application's favorites/detections/history data
safe on a device that is often offline:
- Periodic snapshots into a single current backup slot with a bounded history
- A linear version history with revert
- Best-effort sync of the current snapshot to a remote store
- A durable offline queue with bounded retry
- Integrity validation that decides whether a snapshot can be trusted

Architecture:
                        ┌─────────────────────────┐
                        │        Scheduler        │
                        └──┬──────┬──────┬─────┬──┘
                 backup    │ sync │ valid│drain│
                           ▼      ▼      ▼     ▼
    ┌──────────────┐  ┌─────────┐ ┌──────────┐ ┌────────────┐
    │ DataProvider │◀─│Snapshot │ │Integrity │ │  Offline   │
    │ (collections)│  │  Store  │ │Validator │ │   Queue    │
    └──────────────┘  └────┬────┘ └──────────┘ └────────────┘
                           │
                      ┌────▼────┐      ┌─────────────┐      ┌───────────┐
                      │ Version │◀─────│    Sync     │─────▶│ Transport │
                      │ Ledger  │      │ Coordinator │      │ (S3/mem)  │
                      └─────────┘      └─────────────┘      └───────────┘

    All components persist their state through one KeyValueStore under
    independent logical keys (backup.current, backup.history,
    version.history, sync.state, offline.queue, schedule.config).

Invariants:
    - Each component exclusively owns its persisted key(s)
    - Writers publish fully-built immutable values; readers never see a
      half-written snapshot
    - Sync and scheduled-trigger failures never block local backups

How to change safely:
    - Record fields may be added with defaults, never renamed
    - New collaborators go behind the existing protocols

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
