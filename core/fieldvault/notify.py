"""
Notification sink for surfacing outcomes to a user interface.

Sinks are fire-and-forget: ``notify`` never raises into the core.
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from enum import Enum
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    BACKUP_CREATED = "backup_created"
    BACKUP_FAILED = "backup_failed"
    BACKUP_DELETED = "backup_deleted"
    RESTORE_COMPLETED = "restore_completed"
    RESTORE_FAILED = "restore_failed"
    VERSION_RECORDED = "version_recorded"
    VERSION_REVERTED = "version_reverted"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    CONFLICT_RESOLVED = "conflict_resolved"
    VALIDATION_PASSED = "validation_passed"
    VALIDATION_FAILED = "validation_failed"
    OPERATION_FAILED = "operation_failed"
    CONNECTIVITY_CHANGED = "connectivity_changed"


@runtime_checkable
class NotificationSink(Protocol):
    @abstractmethod
    def notify(self, kind: EventKind, detail: dict[str, Any]) -> None:
        """Surface an event. Must not raise."""
        ...


_FAILURE_KINDS = {
    EventKind.BACKUP_FAILED,
    EventKind.RESTORE_FAILED,
    EventKind.SYNC_FAILED,
    EventKind.VALIDATION_FAILED,
    EventKind.OPERATION_FAILED,
}


class LoggingNotificationSink:
    """Sink that writes every event to the log.

    Failures are logged at WARNING, everything else at INFO.
    """

    def __init__(self, logger_name: str = "fieldvault.events") -> None:
        self._logger = logging.getLogger(logger_name)

    def notify(self, kind: EventKind, detail: dict[str, Any]) -> None:
        level = logging.WARNING if kind in _FAILURE_KINDS else logging.INFO
        self._logger.log(level, kind.value, extra={"event": kind.value, "detail": detail})
