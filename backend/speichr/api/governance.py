"""
Governance API Routes.

REST endpoints for policy packs and their assignment to connections.
"""

from typing import Optional

from fastapi import APIRouter, status
from pydantic import BaseModel

from speichr.api.deps import Service
from speichr.core.schemas import (
    GovernanceAssignment,
    GovernancePolicyPack,
    GovernancePolicyPackDraft,
    MutationResult,
)

router = APIRouter(prefix="/governance", tags=["governance"])


class AssignPolicyPackRequest(BaseModel):
    """Assign a pack to a connection; a null pack id clears the assignment."""
    connection_id: str
    policy_pack_id: Optional[str] = None


@router.get("/policy-packs", response_model=list[GovernancePolicyPack])
async def list_policy_packs(service: Service):
    return await service.governance.list_packs()


@router.post(
    "/policy-packs",
    response_model=GovernancePolicyPack,
    status_code=status.HTTP_201_CREATED,
)
async def create_policy_pack(draft: GovernancePolicyPackDraft, service: Service):
    return await service.governance.create_pack(draft)


@router.put("/policy-packs/{policy_pack_id}", response_model=GovernancePolicyPack)
async def update_policy_pack(
    policy_pack_id: str,
    draft: GovernancePolicyPackDraft,
    service: Service,
):
    return await service.governance.update_pack(policy_pack_id, draft)


@router.delete("/policy-packs/{policy_pack_id}", response_model=MutationResult)
async def delete_policy_pack(policy_pack_id: str, service: Service):
    """Delete a pack and unassign it from every connection."""
    await service.governance.delete_pack(policy_pack_id)
    return MutationResult(success=True)


@router.get("/assignments", response_model=list[GovernanceAssignment])
async def list_assignments(service: Service, connection_id: Optional[str] = None):
    return await service.governance.list_assignments(connection_id)


@router.put("/assignments", response_model=MutationResult)
async def assign_policy_pack(request: AssignPolicyPackRequest, service: Service):
    await service.governance.assign(request.connection_id, request.policy_pack_id)
    return MutationResult(success=True)
