"""
Data provider protocol.

The data provider owns the live application collections (favorites,
detections, history). The durability core only reads them to take a
snapshot and writes them back to restore one.

Invariants:
    - read_all() returns a fresh copy; callers may keep it
    - write_all() is all-or-nothing: either every collection is replaced
      or none is
    - required_collections never changes during the life of a provider

How to change safely:
    - Adding a required collection invalidates older snapshots, bump the
      snapshot schema version at the same time
"""

from __future__ import annotations

from abc import abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping, Protocol, runtime_checkable

from ..errors import ValidationFailedError

if TYPE_CHECKING:
    from ..config import FieldVaultConfig


class CollectionShape(str, Enum):
    """Expected JSON shape of a collection."""

    LIST = "list"
    MAP = "map"

    def matches(self, value: Any) -> bool:
        if self is CollectionShape.LIST:
            return isinstance(value, list)
        return isinstance(value, dict)

    def empty(self) -> Any:
        return [] if self is CollectionShape.LIST else {}


DEFAULT_COLLECTIONS: dict[str, CollectionShape] = {
    "favorites": CollectionShape.LIST,
    "detections": CollectionShape.MAP,
    "history": CollectionShape.LIST,
}


@runtime_checkable
class DataProvider(Protocol):
    """Source of the application state that gets snapshotted."""

    @property
    @abstractmethod
    def required_collections(self) -> Mapping[str, CollectionShape]:
        """Collections every snapshot must contain, with their shape."""
        ...

    @abstractmethod
    async def read_all(self) -> dict[str, Any]:
        """Read every collection.

        Raises:
            ProviderUnavailableError: If the data cannot be read
        """
        ...

    @abstractmethod
    async def write_all(self, collections: Mapping[str, Any]) -> None:
        """Replace every collection in one all-or-nothing write.

        Raises:
            ProviderUnavailableError: If the write fails (nothing is changed)
            ValidationFailedError: If a required collection is missing or malformed
        """
        ...


def check_collections(
    collections: Mapping[str, Any],
    required: Mapping[str, CollectionShape],
) -> None:
    """Reject a write that would leave a required collection missing or malformed.

    Raises:
        ValidationFailedError: Listing every defect found
    """
    errors = []
    for name, shape in required.items():
        if name not in collections:
            errors.append(f"Missing collection '{name}'")
        elif not shape.matches(collections[name]):
            errors.append(f"Collection '{name}' is not a {shape.value}")
    if errors:
        raise ValidationFailedError("Collections cannot be written", errors=errors)


def create_provider(config: "FieldVaultConfig") -> DataProvider:
    """Factory function to create the data provider from configuration.

    The memory backend pairs with an in-memory provider; sqlite stores the
    collections in their own database file next to the key-value store.
    """
    from pathlib import Path

    from ..config import StorageBackend
    from .memory import InMemoryDataProvider
    from .sqlite import SqliteDataProvider

    if config.storage.backend == StorageBackend.SQLITE:
        return SqliteDataProvider(
            str(Path(config.storage.data_dir) / config.storage.data_filename),
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
    elif config.storage.backend == StorageBackend.MEMORY:
        return InMemoryDataProvider()
    else:
        raise ValueError(f"Unsupported storage backend: {config.storage.backend}")
