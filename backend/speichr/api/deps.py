"""
Speichr - API Dependencies
==========================

Shared dependencies for FastAPI endpoints.
"""

from typing import Annotated

from fastapi import Depends, Request

from speichr.core.service import SpeichrService


def get_service(request: Request) -> SpeichrService:
    """Service instance created during application startup."""
    return request.app.state.service


# Use in endpoint signatures
Service = Annotated[SpeichrService, Depends(get_service)]
