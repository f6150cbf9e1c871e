"""
Scheduler for FieldVault.

One background loop owns "what runs when": backups on their cadence,
periodic sync and validation, offline queue draining and connectivity
probing.
"""

from .connectivity import ConnectivityMonitor
from .schedule import CADENCE_SECONDS, Cadence, Schedule, ValidationStatus
from .scheduler import Scheduler, Trigger

__all__ = [
    "Scheduler",
    "Trigger",
    "Schedule",
    "Cadence",
    "CADENCE_SECONDS",
    "ValidationStatus",
    "ConnectivityMonitor",
]
