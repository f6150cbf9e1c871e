"""
Offline operation queue for FieldVault.

Mutations made while the remote store is unreachable (or sync is failed)
are queued durably and replayed in order once connectivity returns.
"""

from .handlers import ProviderOperationHandler
from .queue import DrainResult, OfflineQueue, OperationHandler

__all__ = ["OfflineQueue", "DrainResult", "OperationHandler", "ProviderOperationHandler"]
