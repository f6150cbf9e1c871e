"""
In-memory data provider for testing and local development.

Writes are staged into a new dict and swapped in one assignment, so a
failed write leaves the previous collections untouched.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Mapping

from ..errors import ProviderUnavailableError
from .base import DEFAULT_COLLECTIONS, CollectionShape, check_collections

logger = logging.getLogger(__name__)


class InMemoryDataProvider:
    """DataProvider holding collections in process memory.

    Example:
        >>> provider = InMemoryDataProvider({"favorites": ["aphid"]})
        >>> await provider.read_all()
        {'favorites': ['aphid'], 'detections': {}, 'history': []}
    """

    def __init__(
        self,
        collections: Mapping[str, Any] | None = None,
        required: Mapping[str, CollectionShape] | None = None,
    ) -> None:
        self._required = dict(required if required is not None else DEFAULT_COLLECTIONS)
        data = {name: shape.empty() for name, shape in self._required.items()}
        data.update(copy.deepcopy(dict(collections or {})))
        self._data: dict[str, Any] = data
        self._fail_reads = 0
        self._fail_writes = 0
        self.write_count = 0

    @property
    def required_collections(self) -> Mapping[str, CollectionShape]:
        return self._required

    async def read_all(self) -> dict[str, Any]:
        if self._fail_reads:
            self._fail_reads -= 1
            raise ProviderUnavailableError("Data provider read failed")
        return copy.deepcopy(self._data)

    async def write_all(self, collections: Mapping[str, Any]) -> None:
        check_collections(collections, self._required)
        staged = copy.deepcopy(dict(collections))
        if self._fail_writes:
            self._fail_writes -= 1
            raise ProviderUnavailableError("Data provider write failed")
        self._data = staged
        self.write_count += 1

    def fail_next_reads(self, count: int = 1) -> None:
        """Make the next ``count`` reads fail (testing helper)."""
        self._fail_reads = count

    def fail_next_writes(self, count: int = 1) -> None:
        """Make the next ``count`` writes fail (testing helper)."""
        self._fail_writes = count

    def set_collection(self, name: str, value: Any) -> None:
        """Replace one collection directly (testing helper)."""
        self._data[name] = copy.deepcopy(value)

    def drop_collection(self, name: str) -> None:
        """Remove one collection directly (testing helper)."""
        self._data.pop(name, None)
