"""
Network transports for remote synchronization.

This module provides a pluggable transport interface supporting:
- S3 / MinIO (production)
- In-memory (for testing)

Invariants:
    - Every call may fail with TransportUnreachableError
    - Callers bound every call with a timeout
"""

from .base import RemoteVersionMeta, SyncTransport, build_meta, create_transport
from .memory import InMemoryTransport
from .s3 import S3Transport

__all__ = [
    # Protocol and types
    "SyncTransport",
    "RemoteVersionMeta",
    "build_meta",
    # Factory
    "create_transport",
    # Implementations
    "InMemoryTransport",
    "S3Transport",
]
