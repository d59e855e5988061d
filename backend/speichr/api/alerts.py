"""
Alerts API Routes.

REST endpoints for the alert inbox and threshold alert rules.
"""

from fastapi import APIRouter, Query, status
from pydantic import BaseModel

from speichr.api.deps import Service
from speichr.core.schemas import AlertEvent, AlertRule, AlertRuleDraft, MutationResult

router = APIRouter(prefix="/alerts", tags=["alerts"])


class UnreadCountResponse(BaseModel):
    count: int


# ==========================================================================
# Inbox
# ==========================================================================

@router.get("", response_model=list[AlertEvent])
async def list_alerts(
    service: Service,
    unread_only: bool = False,
    limit: int = Query(100, ge=1, le=1000),
):
    """Alerts, newest first."""
    return await service.list_alerts(unread_only=unread_only, limit=limit)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(service: Service):
    return UnreadCountResponse(count=await service.count_unread_alerts())


@router.post("/read-all", response_model=MutationResult)
async def mark_all_read(service: Service):
    await service.mark_all_alerts_read()
    return MutationResult(success=True)


@router.post("/{alert_id}/read", response_model=MutationResult)
async def mark_read(alert_id: str, service: Service):
    await service.mark_alert_read(alert_id)
    return MutationResult(success=True)


# ==========================================================================
# Rules
# ==========================================================================

@router.get("/rules", response_model=list[AlertRule])
async def list_rules(service: Service):
    return await service.list_alert_rules()


@router.post("/rules", response_model=AlertRule, status_code=status.HTTP_201_CREATED)
async def create_rule(draft: AlertRuleDraft, service: Service):
    return await service.create_alert_rule(draft)


@router.put("/rules/{rule_id}", response_model=AlertRule)
async def update_rule(rule_id: str, draft: AlertRuleDraft, service: Service):
    return await service.update_alert_rule(rule_id, draft)


@router.delete("/rules/{rule_id}", response_model=MutationResult)
async def delete_rule(rule_id: str, service: Service):
    await service.delete_alert_rule(rule_id)
    return MutationResult(success=True)
