"""
Connections API Routes.

REST endpoints for connection profiles, connectivity tests and
capabilities.
"""

from typing import Optional

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from speichr.api.deps import Service
from speichr.core.schemas import (
    ConnectionDraft,
    ConnectionProfile,
    ConnectionSecret,
    ConnectionTestResult,
    MutationResult,
    ProviderCapabilities,
)

router = APIRouter(prefix="/connections", tags=["connections"])


# ==========================================================================
# Schemas
# ==========================================================================

class ConnectionCreateRequest(BaseModel):
    """Profile attributes plus the credentials to store for it."""
    profile: ConnectionDraft
    secret: ConnectionSecret = Field(default_factory=ConnectionSecret)


class ConnectionUpdateRequest(BaseModel):
    """Profile attributes; credentials are replaced only when given."""
    profile: ConnectionDraft
    secret: Optional[ConnectionSecret] = None


# ==========================================================================
# Endpoints
# ==========================================================================

@router.get("", response_model=list[ConnectionProfile])
async def list_connections(service: Service):
    """List connection profiles ordered by name."""
    return await service.list_connections()


@router.post("", response_model=ConnectionProfile, status_code=status.HTTP_201_CREATED)
async def create_connection(request: ConnectionCreateRequest, service: Service):
    """
    Create a connection profile.

    The secret is stored separately from the profile; if it cannot be
    stored the profile is rolled back.
    """
    return await service.create_connection(request.profile, request.secret)


@router.post("/test", response_model=ConnectionTestResult)
async def test_connection(request: ConnectionCreateRequest, service: Service):
    """Test a connection without saving it (one retry)."""
    return await service.test_connection(request.profile, request.secret)


@router.get("/{connection_id}", response_model=ConnectionProfile)
async def get_connection(connection_id: str, service: Service):
    return await service.get_connection(connection_id)


@router.put("/{connection_id}", response_model=ConnectionProfile)
async def update_connection(
    connection_id: str,
    request: ConnectionUpdateRequest,
    service: Service,
):
    return await service.update_connection(connection_id, request.profile, request.secret)


@router.delete("/{connection_id}", response_model=MutationResult)
async def delete_connection(connection_id: str, service: Service):
    """Delete a connection profile together with its secret."""
    await service.delete_connection(connection_id)
    return MutationResult(success=True)


@router.get("/{connection_id}/capabilities", response_model=ProviderCapabilities)
async def get_capabilities(connection_id: str, service: Service):
    return await service.get_capabilities(connection_id)
