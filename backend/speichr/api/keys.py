"""
Keys API Routes.

REST endpoints for browsing and mutating keys on a connection, and for
rolling keys back to captured snapshots.
"""

from typing import Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from speichr.api.deps import Service
from speichr.core.schemas import KeyListResult, KeyValueRecord, MutationResult, SnapshotRecord

router = APIRouter(prefix="/connections/{connection_id}/keys", tags=["keys"])


# ==========================================================================
# Schemas
# ==========================================================================

class SetValueRequest(BaseModel):
    """Request to write a key."""
    key: str = Field(..., min_length=1)
    value: str
    ttl_seconds: Optional[int] = Field(None, ge=1, description="Expiry; none keeps the key forever")
    namespace_id: Optional[str] = None


class RestoreSnapshotRequest(BaseModel):
    """Request to restore a key from a snapshot."""
    key: str = Field(..., min_length=1)
    snapshot_id: Optional[str] = Field(None, description="Defaults to the newest snapshot")
    guardrail_confirmed: bool = False
    namespace_id: Optional[str] = None


# ==========================================================================
# Endpoints
# ==========================================================================

@router.get("", response_model=KeyListResult)
async def list_keys(
    connection_id: str,
    service: Service,
    pattern: Optional[str] = Query(None, description="Glob pattern; lists every key when omitted"),
    cursor: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    namespace_id: Optional[str] = None,
):
    """List keys, or search them when a pattern is given."""
    if pattern:
        return await service.keys.search_keys(
            connection_id, pattern, cursor=cursor, limit=limit, namespace_id=namespace_id
        )
    return await service.keys.list_keys(
        connection_id, cursor=cursor, limit=limit, namespace_id=namespace_id
    )


@router.get("/value", response_model=KeyValueRecord)
async def get_value(
    connection_id: str,
    service: Service,
    key: str = Query(..., min_length=1),
    namespace_id: Optional[str] = None,
):
    return await service.keys.get_value(connection_id, key, namespace_id=namespace_id)


@router.put("/value", response_model=MutationResult)
async def set_value(connection_id: str, request: SetValueRequest, service: Service):
    """Write a key. The previous value is captured as a snapshot first."""
    await service.keys.set_value(
        connection_id,
        request.key,
        request.value,
        request.ttl_seconds,
        namespace_id=request.namespace_id,
    )
    return MutationResult(success=True)


@router.delete("/value", response_model=MutationResult)
async def delete_key(
    connection_id: str,
    service: Service,
    key: str = Query(..., min_length=1),
    guardrail_confirmed: bool = False,
    namespace_id: Optional[str] = None,
):
    """Delete a key. Prod connections need guardrail_confirmed."""
    await service.keys.delete_key(
        connection_id, key, guardrail_confirmed, namespace_id=namespace_id
    )
    return MutationResult(success=True)


@router.get("/snapshots", response_model=list[SnapshotRecord])
async def list_snapshots(
    connection_id: str,
    service: Service,
    key: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
):
    return await service.keys.list_snapshots(connection_id, key=key, limit=limit)


@router.post("/snapshots/restore", response_model=SnapshotRecord)
async def restore_snapshot(
    connection_id: str,
    request: RestoreSnapshotRequest,
    service: Service,
):
    """Restore a key to a snapshot and return the snapshot that was applied."""
    return await service.keys.restore_snapshot(
        connection_id,
        request.key,
        snapshot_id=request.snapshot_id,
        guardrail_confirmed=request.guardrail_confirmed,
        namespace_id=request.namespace_id,
    )
