"""
Retention API Routes.

REST endpoints for retention policies, manual purges and storage usage.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from speichr.api.deps import Service
from speichr.core.models import RetentionDataset
from speichr.core.schemas import RetentionPolicy, RetentionPurgeResult, StorageSummary

router = APIRouter(prefix="/retention", tags=["retention"])


class RetentionPolicyUpdate(BaseModel):
    """New limits for one dataset; values are clamped server-side."""
    retention_days: int = Field(30, description="1..3650")
    storage_budget_mb: int = Field(512, description="1..100000")
    auto_purge_oldest: bool = True


class RetentionPurgeRequest(BaseModel):
    dataset: RetentionDataset
    older_than: Optional[datetime] = Field(
        None, description="Cutoff; defaults to the policy's retention window"
    )
    dry_run: bool = False


@router.get("/policies", response_model=list[RetentionPolicy])
async def list_policies(service: Service):
    return await service.list_retention_policies()


@router.put("/policies/{dataset}", response_model=RetentionPolicy)
async def update_policy(
    dataset: RetentionDataset,
    request: RetentionPolicyUpdate,
    service: Service,
):
    return await service.update_retention_policy(
        RetentionPolicy(dataset=dataset, **request.model_dump())
    )


@router.post("/purge", response_model=RetentionPurgeResult)
async def purge(request: RetentionPurgeRequest, service: Service):
    """Delete rows older than the cutoff (or count them with dry_run)."""
    return await service.purge_retention(
        request.dataset, older_than=request.older_than, dry_run=request.dry_run
    )


@router.get("/storage-summary", response_model=StorageSummary)
async def storage_summary(service: Service):
    """Usage per dataset. Budgets are enforced as a side effect."""
    return await service.get_storage_summary()
