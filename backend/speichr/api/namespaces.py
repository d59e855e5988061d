"""
Namespaces API Routes.

REST endpoints for the named key scopes of a connection.
"""

from typing import Optional

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from speichr.api.deps import Service
from speichr.core.models import NamespaceStrategy
from speichr.core.schemas import MutationResult, NamespaceDraft, NamespaceProfile

router = APIRouter(prefix="/connections/{connection_id}/namespaces", tags=["namespaces"])


# ==========================================================================
# Schemas
# ==========================================================================

class NamespaceCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    strategy: NamespaceStrategy = NamespaceStrategy.KEY_PREFIX
    db_index: Optional[int] = Field(None, description="Logical db for redis_logical_db")
    key_prefix: Optional[str] = Field(None, description="Prefix for key_prefix")


class NamespaceRenameRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)


# ==========================================================================
# Endpoints
# ==========================================================================

@router.get("", response_model=list[NamespaceProfile])
async def list_namespaces(connection_id: str, service: Service):
    return await service.namespaces.list_namespaces(connection_id)


@router.post("", response_model=NamespaceProfile, status_code=status.HTTP_201_CREATED)
async def create_namespace(
    connection_id: str,
    request: NamespaceCreateRequest,
    service: Service,
):
    """Create a namespace. Names are unique per connection, case-insensitive."""
    return await service.namespaces.create_namespace(
        NamespaceDraft(connection_id=connection_id, **request.model_dump())
    )


@router.put("/{namespace_id}", response_model=NamespaceProfile)
async def rename_namespace(
    connection_id: str,
    namespace_id: str,
    request: NamespaceRenameRequest,
    service: Service,
):
    return await service.namespaces.rename_namespace(connection_id, namespace_id, request.name)


@router.delete("/{namespace_id}", response_model=MutationResult)
async def delete_namespace(connection_id: str, namespace_id: str, service: Service):
    await service.namespaces.delete_namespace(connection_id, namespace_id)
    return MutationResult(success=True)
