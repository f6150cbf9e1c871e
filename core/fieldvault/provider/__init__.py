"""
Data provider implementations.

The provider exposes the live favorites/detections/history collections to
the snapshot store and accepts them back on restore.
"""

from .base import (
    DEFAULT_COLLECTIONS,
    CollectionShape,
    DataProvider,
    check_collections,
    create_provider,
)
from .memory import InMemoryDataProvider
from .sqlite import SqliteDataProvider

__all__ = [
    "DataProvider",
    "CollectionShape",
    "DEFAULT_COLLECTIONS",
    "check_collections",
    "create_provider",
    "InMemoryDataProvider",
    "SqliteDataProvider",
]
