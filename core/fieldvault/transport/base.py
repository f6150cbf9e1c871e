"""
Network transport protocol for remote synchronization.

The transport moves snapshots between the device and the remote store.
Network partitioning is assumed to be common: every call may fail with
TransportUnreachableError, and callers bound every call with a timeout.

Invariants:
    - push() returns only after the remote has acknowledged the snapshot
    - pull() returns the most recently pushed snapshot with its metadata
    - pull() on an empty remote raises NotFoundError, not
      TransportUnreachableError

How to change safely:
    - Protocol changes require updating all implementations
    - Add manifest fields, never remove them; old devices still pull
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Protocol, runtime_checkable

from ..models import VersionDelta, _optional, _require

if TYPE_CHECKING:
    from ..config import FieldVaultConfig
    from ..models import Snapshot, VersionRecord


@dataclass(frozen=True)
class RemoteVersionMeta:
    """Version metadata stored next to each remote snapshot.

    Attributes:
        remote_id: Identifier assigned by the remote store
        version_id: Local version id that produced the snapshot, if any
        timestamp: When that version was recorded (Unix ms)
        schema_version: Snapshot schema version
        delta: Entity classes changed by that version
        checksum: Content checksum of the stored snapshot
    """

    remote_id: str
    version_id: str | None
    timestamp: int
    schema_version: str
    delta: VersionDelta = field(default_factory=VersionDelta)
    checksum: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "remote_id": self.remote_id,
            "version_id": self.version_id,
            "timestamp": self.timestamp,
            "schema_version": self.schema_version,
            "delta": self.delta.to_dict(),
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RemoteVersionMeta:
        where = "remote version meta"
        raw_delta = _optional(data, "delta", dict, where)
        return cls(
            remote_id=_require(data, "remote_id", str, where),
            version_id=_optional(data, "version_id", str, where),
            timestamp=_require(data, "timestamp", int, where),
            schema_version=_require(data, "schema_version", str, where),
            delta=VersionDelta.from_dict(raw_delta) if raw_delta else VersionDelta(),
            checksum=_optional(data, "checksum", str, where),
        )


@runtime_checkable
class SyncTransport(Protocol):
    """Protocol for remote snapshot stores.

    Example:
        >>> transport = S3Transport(config.s3)
        >>> remote_id = await transport.push(snapshot, version)
        >>> snapshot, meta = await transport.pull()
    """

    @abstractmethod
    async def push(self, snapshot: "Snapshot", version: "VersionRecord | None" = None) -> str:
        """Upload a snapshot and its version metadata.

        Returns:
            Remote identifier of the stored snapshot

        Raises:
            TransportUnreachableError: If the remote cannot be reached
        """
        ...

    @abstractmethod
    async def pull(self) -> tuple["Snapshot", RemoteVersionMeta]:
        """Download the latest remote snapshot with its metadata.

        Raises:
            NotFoundError: If the remote holds no snapshot yet
            TransportUnreachableError: If the remote cannot be reached
            SerializationError: If the remote snapshot cannot be decoded
        """
        ...

    @abstractmethod
    async def is_reachable(self) -> bool:
        """Cheap connectivity probe. Never raises."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        ...


def build_meta(
    remote_id: str,
    snapshot: "Snapshot",
    version: "VersionRecord | None",
    checksum: str | None = None,
) -> RemoteVersionMeta:
    """Describe a pushed snapshot, timestamped by the version that produced it."""
    return RemoteVersionMeta(
        remote_id=remote_id,
        version_id=version.id if version else None,
        timestamp=version.timestamp if version else snapshot.timestamp,
        schema_version=snapshot.schema_version,
        delta=version.delta if version else VersionDelta(),
        checksum=checksum,
    )


def create_transport(config: "FieldVaultConfig") -> SyncTransport:
    """Factory function to create a transport from configuration.

    Raises:
        ValueError: If transport is not supported
    """
    from ..config import TransportBackend
    from .memory import InMemoryTransport
    from .s3 import S3Transport

    if config.sync.transport == TransportBackend.S3:
        return S3Transport(config.s3)
    elif config.sync.transport == TransportBackend.MEMORY:
        return InMemoryTransport()
    else:
        raise ValueError(f"Unsupported transport: {config.sync.transport}")
