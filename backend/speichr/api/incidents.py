"""
Incidents API Routes.

REST endpoints for incident bundle previews, inline exports and
background export jobs.
"""

from fastapi import APIRouter, Query, status

from speichr.api.deps import Service
from speichr.core.schemas import (
    IncidentBundle,
    IncidentBundlePreview,
    IncidentBundleRequest,
    IncidentExportJob,
)

router = APIRouter(prefix="/incidents", tags=["incidents"])


@router.post("/preview", response_model=IncidentBundlePreview)
async def preview_bundle(request: IncidentBundleRequest, service: Service):
    """Counts, size estimate and manifest of what an export would contain."""
    return await service.incidents.preview(request)


@router.get("/bundles", response_model=list[IncidentBundle])
async def list_bundles(service: Service, limit: int = Query(50, ge=1, le=500)):
    return await service.incidents.list_bundles(limit=limit)


@router.post("/export", response_model=IncidentBundle, status_code=status.HTTP_201_CREATED)
async def export_bundle(request: IncidentBundleRequest, service: Service):
    """Export inline and return the stored bundle."""
    return await service.incidents.export(request)


# ==========================================================================
# Background jobs
# ==========================================================================

@router.post("/jobs", response_model=IncidentExportJob, status_code=status.HTTP_202_ACCEPTED)
async def start_export_job(request: IncidentBundleRequest, service: Service):
    return await service.incidents.start(request)


@router.get("/jobs/{job_id}", response_model=IncidentExportJob)
async def get_export_job(job_id: str, service: Service):
    return service.incidents.get(job_id)


@router.post("/jobs/{job_id}/cancel", response_model=IncidentExportJob)
async def cancel_export_job(job_id: str, service: Service):
    """Request cancellation; running jobs stop at their next stage."""
    return await service.incidents.cancel(job_id)


@router.post("/jobs/{job_id}/resume", response_model=IncidentExportJob)
async def resume_export_job(job_id: str, service: Service):
    """Restart a cancelled or failed job from the beginning."""
    return await service.incidents.resume(job_id)
