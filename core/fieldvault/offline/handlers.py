"""
Operation handlers that apply offline mutations to the data provider.

Payload layout:
    {"id": "<record id>", "record": {...}}

List collections hold records carrying an ``id`` field; map collections
are keyed by record id.
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import NotFoundError, ValidationFailedError
from ..models import OfflineOperation, OperationKind, VersionDelta
from ..provider.base import DataProvider
from ..snapshot.store import SnapshotStore
from ..version.ledger import VersionLedger

logger = logging.getLogger(__name__)


def _record_id(op: OfflineOperation) -> str:
    record_id = op.payload.get("id")
    if not isinstance(record_id, str) or not record_id:
        raise ValidationFailedError(f"Operation {op.id} has no record id")
    return record_id


def _apply_to_list(items: list[Any], op: OfflineOperation, record_id: str) -> list[Any]:
    index = next(
        (i for i, item in enumerate(items) if isinstance(item, dict) and item.get("id") == record_id),
        None,
    )
    if op.kind == OperationKind.CREATE:
        record = {**op.payload.get("record", {}), "id": record_id}
        if index is None:
            return items + [record]
        # replaying a create that already landed
        return items[:index] + [record] + items[index + 1 :]
    if op.kind == OperationKind.UPDATE:
        if index is None:
            raise NotFoundError(f"Record {record_id} not found in '{op.target_collection}'")
        merged = {**items[index], **op.payload.get("record", {}), "id": record_id}
        return items[:index] + [merged] + items[index + 1 :]
    if index is None:
        return items
    return items[:index] + items[index + 1 :]


def _apply_to_map(entries: dict[str, Any], op: OfflineOperation, record_id: str) -> dict[str, Any]:
    entries = dict(entries)
    if op.kind == OperationKind.CREATE:
        entries[record_id] = op.payload.get("record", {})
    elif op.kind == OperationKind.UPDATE:
        if record_id not in entries:
            raise NotFoundError(f"Record {record_id} not found in '{op.target_collection}'")
        existing = entries[record_id]
        update = op.payload.get("record", {})
        if isinstance(existing, dict) and isinstance(update, dict):
            entries[record_id] = {**existing, **update}
        else:
            entries[record_id] = update
    else:
        entries.pop(record_id, None)
    return entries


class ProviderOperationHandler:
    """Applies create/update/delete operations to the data provider.

    After a successful write a fresh snapshot is taken and a version is
    recorded with the target collection in added, updated or removed.
    """

    def __init__(
        self,
        provider: DataProvider,
        snapshot_store: SnapshotStore,
        ledger: VersionLedger | None = None,
    ) -> None:
        self.provider = provider
        self.snapshot_store = snapshot_store
        self.ledger = ledger

    async def __call__(self, op: OfflineOperation) -> None:
        record_id = _record_id(op)
        collections = await self.provider.read_all()
        target = op.target_collection
        if target not in collections:
            raise ValidationFailedError(f"Unknown collection '{target}'", errors=[target])

        value = collections[target]
        if isinstance(value, list):
            collections[target] = _apply_to_list(value, op, record_id)
        elif isinstance(value, dict):
            collections[target] = _apply_to_map(value, op, record_id)
        else:
            raise ValidationFailedError(f"Collection '{target}' has an unsupported shape")

        await self.provider.write_all(collections)
        await self.snapshot_store.create_snapshot()

        if self.ledger is not None:
            if op.kind == OperationKind.CREATE:
                delta = VersionDelta.of(added=[target])
            elif op.kind == OperationKind.UPDATE:
                delta = VersionDelta.of(updated=[target])
            else:
                delta = VersionDelta.of(removed=[target])
            await self.ledger.record_version(delta)

        logger.debug(
            "Applied operation to provider",
            extra={"operation_id": op.id, "record_id": record_id, "collection": target},
        )
