"""
Workflows API Routes.

REST endpoints for workflow templates, previews, execution, resume and
rerun.
"""

from typing import Any, Optional

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from speichr.api.deps import Service
from speichr.core.schemas import (
    MutationResult,
    RetryPolicy,
    WorkflowExecutionRecord,
    WorkflowPreview,
    WorkflowTemplate,
    WorkflowTemplateDraft,
)

router = APIRouter(prefix="/workflows", tags=["workflows"])


# ==========================================================================
# Schemas
# ==========================================================================

class WorkflowTarget(BaseModel):
    """Template reference (stored or built-in) or an inline draft."""
    connection_id: str
    namespace_id: Optional[str] = None
    template_id: Optional[str] = None
    template: Optional[WorkflowTemplateDraft] = None
    parameter_overrides: dict[str, Any] = Field(default_factory=dict)


class WorkflowPreviewRequest(WorkflowTarget):
    cursor: Optional[str] = None
    limit: Optional[int] = Field(None, description="Page size, 1..500")


class WorkflowExecuteRequest(WorkflowTarget):
    dry_run: bool = False
    guardrail_confirmed: bool = False
    retry_policy: Optional[RetryPolicy] = None


class WorkflowResumeRequest(BaseModel):
    guardrail_confirmed: bool = False
    retry_policy: Optional[RetryPolicy] = None


class WorkflowRerunRequest(BaseModel):
    parameter_overrides: dict[str, Any] = Field(default_factory=dict)
    dry_run: bool = False
    guardrail_confirmed: bool = False


# ==========================================================================
# Templates
# ==========================================================================

@router.get("/templates", response_model=list[WorkflowTemplate])
async def list_templates(service: Service):
    """Built-in and stored templates ordered by name."""
    return await service.workflows.list_templates()


@router.post(
    "/templates",
    response_model=WorkflowTemplate,
    status_code=status.HTTP_201_CREATED,
)
async def create_template(draft: WorkflowTemplateDraft, service: Service):
    return await service.workflows.create_template(draft)


@router.put("/templates/{template_id}", response_model=WorkflowTemplate)
async def update_template(template_id: str, draft: WorkflowTemplateDraft, service: Service):
    return await service.workflows.update_template(template_id, draft)


@router.delete("/templates/{template_id}", response_model=MutationResult)
async def delete_template(template_id: str, service: Service):
    await service.workflows.delete_template(template_id)
    return MutationResult(success=True)


# ==========================================================================
# Runs
# ==========================================================================

@router.post("/preview", response_model=WorkflowPreview)
async def preview_workflow(request: WorkflowPreviewRequest, service: Service):
    """One page of the items a run would touch. Never mutates."""
    return await service.workflows.preview(
        request.connection_id,
        template_id=request.template_id,
        template=request.template,
        parameter_overrides=request.parameter_overrides,
        cursor=request.cursor,
        limit=request.limit,
        namespace_id=request.namespace_id,
    )


@router.post("/execute", response_model=WorkflowExecutionRecord)
async def execute_workflow(request: WorkflowExecuteRequest, service: Service):
    """
    Execute a workflow.

    Step failures are reported in the returned record; policy denials
    are returned as errors.
    """
    return await service.workflows.execute(
        request.connection_id,
        template_id=request.template_id,
        template=request.template,
        parameter_overrides=request.parameter_overrides,
        dry_run=request.dry_run,
        guardrail_confirmed=request.guardrail_confirmed,
        retry_policy=request.retry_policy,
        namespace_id=request.namespace_id,
    )


@router.get("/executions", response_model=list[WorkflowExecutionRecord])
async def list_executions(
    service: Service,
    connection_id: Optional[str] = None,
    template_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
):
    return await service.workflows.list_executions(
        connection_id=connection_id, template_id=template_id, limit=limit
    )


@router.get("/executions/{execution_id}", response_model=WorkflowExecutionRecord)
async def get_execution(execution_id: str, service: Service):
    return await service.workflows.get_execution(execution_id)


@router.post("/executions/{execution_id}/resume", response_model=WorkflowExecutionRecord)
async def resume_execution(
    execution_id: str,
    request: WorkflowResumeRequest,
    service: Service,
):
    """Continue a failed run from its checkpoint."""
    return await service.workflows.resume(
        execution_id,
        guardrail_confirmed=request.guardrail_confirmed,
        retry_policy=request.retry_policy,
    )


@router.post("/executions/{execution_id}/rerun", response_model=WorkflowExecutionRecord)
async def rerun_execution(
    execution_id: str,
    request: WorkflowRerunRequest,
    service: Service,
):
    return await service.workflows.rerun(
        execution_id,
        parameter_overrides=request.parameter_overrides,
        dry_run=request.dry_run,
        guardrail_confirmed=request.guardrail_confirmed,
    )
