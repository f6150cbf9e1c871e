"""
API routes for the FieldVault console.

Provides REST endpoints over the durability core. User-initiated
operations propagate typed errors, which the app maps to HTTP status
codes (404 not found, 503 provider/transport unavailable, 422 invalid).
"""

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from core.fieldvault.main import FieldVault
from core.fieldvault.models import OperationKind, OperationStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["FieldVault Console"])


# --- Request/Response Models ---


class RestoreRequest(BaseModel):
    """Request to restore the latest snapshot."""

    source: Literal["auto", "remote", "local"] = Field(
        "auto", description="auto tries the remote first, then the local snapshot"
    )


class MutationRequest(BaseModel):
    """Request to apply (or queue) a mutation."""

    kind: OperationKind = Field(..., description="create, update or delete")
    collection: str = Field(..., description="Target collection")
    id: str = Field(..., description="Record ID")
    record: dict[str, Any] | None = Field(None, description="Record fields")


class ScheduleUpdateRequest(BaseModel):
    """User preference changes to the schedule."""

    daily: bool | None = None
    weekly: bool | None = None
    monthly: bool | None = None
    sync_interval_seconds: int | None = Field(None, gt=0)
    validation_interval_seconds: int | None = Field(None, gt=0)
    drain_interval_seconds: int | None = Field(None, gt=0)


class SnapshotSummary(BaseModel):
    """Current snapshot without its payload."""

    timestamp: int
    schema_version: str
    collections: dict[str, int]


# --- Dependencies ---


def get_vault(request: Request) -> FieldVault:
    """Get the FieldVault runtime from app state."""
    return request.app.state.vault


def get_limit(
    request: Request,
    limit: int | None = Query(None, ge=0, description="Maximum items"),
) -> int:
    settings = request.app.state.settings
    if limit is None:
        return settings.default_history_limit
    return min(limit, settings.max_history_limit)


# --- Backup Routes ---


@router.get("/backup", response_model=SnapshotSummary)
async def get_backup(vault: FieldVault = Depends(get_vault)):
    """Describe the current snapshot."""
    snapshot = await vault.snapshot_store.get_snapshot()
    return SnapshotSummary(
        timestamp=snapshot.timestamp,
        schema_version=snapshot.schema_version,
        collections={
            name: len(value) if isinstance(value, (list, dict)) else 0
            for name, value in snapshot.payload.items()
        },
    )


@router.post("/backup", status_code=201)
async def create_backup(vault: FieldVault = Depends(get_vault)):
    """Take a snapshot now and record a version."""
    entry = await vault.scheduler.backup_now()
    return entry.to_dict()


@router.delete("/backup", status_code=204)
async def delete_backup(vault: FieldVault = Depends(get_vault)):
    """Clear the current snapshot and the backup history."""
    await vault.snapshot_store.delete_snapshot()
    return Response(status_code=204)


@router.get("/backup/history")
async def backup_history(
    vault: FieldVault = Depends(get_vault),
    limit: int = Depends(get_limit),
):
    """Backup history, newest first."""
    return [h.to_dict() for h in await vault.snapshot_store.get_history(limit)]


@router.get("/backup/metrics")
async def backup_metrics(vault: FieldVault = Depends(get_vault)):
    return (await vault.snapshot_store.get_metrics()).to_dict()


@router.post("/backup/restore")
async def restore_backup(
    request: RestoreRequest,
    vault: FieldVault = Depends(get_vault),
):
    """Restore the latest snapshot into the application data."""
    if request.source == "remote":
        snapshot = await vault.coordinator.restore_from_remote()
        source = "remote"
    elif request.source == "local":
        snapshot = await vault.snapshot_store.get_snapshot()
        await vault.snapshot_store.restore_snapshot(snapshot)
        source = "local"
    else:
        source, snapshot = await vault.scheduler.restore_latest()
    return {"source": source, "timestamp": snapshot.timestamp}


@router.get("/validation")
async def validate_backup(vault: FieldVault = Depends(get_vault)):
    """Validate the current snapshot and report every defect."""
    result = await vault.scheduler.validate_now()
    return result.to_dict()


# --- Version Routes ---


@router.get("/versions")
async def list_versions(
    vault: FieldVault = Depends(get_vault),
    limit: int = Depends(get_limit),
):
    """Version history, newest first, without stored snapshots."""
    records = await vault.ledger.get_history(limit)
    return [r.to_dict(include_snapshot=False) for r in records]


@router.get("/versions/{version_id}")
async def get_version(version_id: str, vault: FieldVault = Depends(get_vault)):
    record = await vault.ledger.get_version(version_id)
    return record.to_dict(include_snapshot=False)


@router.post("/versions/{version_id}/revert")
async def revert_version(version_id: str, vault: FieldVault = Depends(get_vault)):
    """Restore a version's snapshot; the revert is recorded as a new version."""
    record = await vault.ledger.revert_to(version_id)
    return record.to_dict(include_snapshot=False)


# --- Sync Routes ---


@router.get("/sync")
async def sync_state(vault: FieldVault = Depends(get_vault)):
    return (await vault.coordinator.get_state()).to_dict()


@router.post("/sync")
async def sync_now(vault: FieldVault = Depends(get_vault)):
    """Sync now. Transport failures are reported in the returned state."""
    state = await vault.scheduler.sync_now()
    return state.to_dict()


# --- Offline Queue Routes ---


@router.get("/queue")
async def list_queue(
    status: Literal["pending", "failed"] = Query("pending"),
    vault: FieldVault = Depends(get_vault),
):
    if status == OperationStatus.FAILED.value:
        ops = await vault.queue.get_failed()
    else:
        ops = await vault.queue.get_pending()
    return [op.to_dict() for op in ops]


@router.post("/queue", status_code=202)
async def submit_mutation(
    request: MutationRequest,
    vault: FieldVault = Depends(get_vault),
):
    """Apply a mutation now, or queue it while offline or sync is failed."""
    payload: dict[str, Any] = {"id": request.id}
    if request.record is not None:
        payload["record"] = request.record
    outcome, op = await vault.submit_mutation(request.kind, request.collection, payload)
    return {"outcome": outcome, "operation": op.to_dict()}


@router.post("/queue/drain")
async def drain_queue(vault: FieldVault = Depends(get_vault)):
    return (await vault.queue.drain()).to_dict()


@router.post("/queue/{operation_id}/retry")
async def retry_operation(operation_id: str, vault: FieldVault = Depends(get_vault)):
    """Return a terminally failed operation to the queue."""
    op = await vault.queue.retry_failed(operation_id)
    return op.to_dict()


@router.delete("/queue/failed")
async def clear_failed(
    operation_id: str | None = Query(None, description="Clear only this operation"),
    vault: FieldVault = Depends(get_vault),
):
    removed = await vault.queue.clear_failed(operation_id)
    return {"removed": removed}


# --- Schedule Routes ---


@router.get("/schedule")
async def get_schedule(vault: FieldVault = Depends(get_vault)):
    return vault.scheduler.schedule.to_dict()


@router.patch("/schedule")
async def update_schedule(
    request: ScheduleUpdateRequest,
    vault: FieldVault = Depends(get_vault),
):
    changes = request.model_dump(exclude_none=True)
    try:
        schedule = await vault.scheduler.update_schedule(**changes)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return schedule.to_dict()
