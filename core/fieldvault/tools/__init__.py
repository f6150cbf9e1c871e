"""
CLI tools for FieldVault administration.

This module provides command-line tools for:
- backup/restore: Take or restore snapshots
- history/metrics/versions: Inspect backup and version history
- sync/queue/drain: Drive synchronization and the offline queue

Invariants:
    - Tools work against the same persisted state as the running service
    - User-initiated failures are reported with a non-zero exit code
"""

from .admin import AdminCLI

__all__ = ["AdminCLI"]
