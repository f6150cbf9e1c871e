"""
Sync coordinator for FieldVault.

Drives the current snapshot to and from the remote store and owns the
pending/synced/failed state machine.
"""

from .coordinator import SyncCoordinator

__all__ = ["SyncCoordinator"]
