"""
Observability API Routes.

REST endpoints for the operation timeline, engine event ingestion and
the dashboard / diagnostics read models.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Query, status
from pydantic import BaseModel

from speichr.api.deps import Service
from speichr.core.schemas import (
    ComparePeriodsResult,
    EngineEventInput,
    FailedOperationDrilldown,
    HistoryEvent,
    KeyspaceActivityView,
    MutationResult,
    ObservabilityDashboard,
)

router = APIRouter(prefix="/observability", tags=["observability"])


class ComparePeriodsRequest(BaseModel):
    baseline_since: datetime
    baseline_until: datetime
    compare_since: datetime
    compare_until: datetime
    connection_id: Optional[str] = None


# ==========================================================================
# Timeline
# ==========================================================================

@router.get("/history", response_model=list[HistoryEvent])
async def list_history(
    service: Service,
    connection_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=5000),
):
    return await service.list_history(
        connection_id=connection_id, since=since, until=until, limit=limit
    )


@router.post(
    "/engine-events",
    response_model=MutationResult,
    status_code=status.HTTP_202_ACCEPTED,
)
async def ingest_engine_event(payload: EngineEventInput, service: Service):
    """Record a backend-reported event. Unknown connections are ignored."""
    event = await service.ingest_engine_event(payload)
    return MutationResult(success=event is not None)


# ==========================================================================
# Read models
# ==========================================================================

@router.get("/dashboard", response_model=ObservabilityDashboard)
async def dashboard(
    service: Service,
    connection_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    interval_minutes: int = Query(5, ge=1, le=1440),
    limit: Optional[int] = None,
):
    return await service.observability.dashboard(
        connection_id=connection_id,
        since=since,
        until=until,
        interval_minutes=interval_minutes,
        limit=limit,
    )


@router.get("/keyspace-activity", response_model=KeyspaceActivityView)
async def keyspace_activity(
    service: Service,
    connection_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    interval_minutes: Optional[int] = None,
    limit: Optional[int] = None,
):
    return await service.observability.keyspace_activity(
        connection_id=connection_id,
        since=since,
        until=until,
        interval_minutes=interval_minutes,
        limit=limit,
    )


@router.get("/failed-operations", response_model=FailedOperationDrilldown)
async def failed_operations(
    service: Service,
    connection_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    event_id: Optional[str] = None,
    limit: Optional[int] = None,
):
    return await service.observability.failed_operation_drilldown(
        connection_id=connection_id,
        since=since,
        until=until,
        event_id=event_id,
        limit=limit,
    )


@router.post("/compare", response_model=ComparePeriodsResult)
async def compare_periods(request: ComparePeriodsRequest, service: Service):
    return await service.observability.compare_periods(
        request.baseline_since,
        request.baseline_until,
        request.compare_since,
        request.compare_until,
        connection_id=request.connection_id,
    )
