"""
Governance - policy packs, assignments and execution-window resolution.

A connection may have one assigned policy pack. An enabled pack limits
which environments may run governed workflows, caps workflow size and
retry attempts, and optionally restricts execution to weekly windows.
Windows are evaluated in UTC.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog

from speichr.core.errors import ErrorCode, OperationFailure, not_found
from speichr.core.models import Weekday
from speichr.core.ports import (
    ConnectionRepository,
    GovernanceAssignmentRepository,
    GovernancePolicyPackRepository,
)
from speichr.core.schemas import (
    ConnectionProfile,
    ExecutionWindow,
    GovernanceAssignment,
    GovernancePolicyPack,
    GovernancePolicyPackDraft,
)
from speichr.core.utils import Clock, clamp_int, ensure_utc, new_id, utc_now

logger = structlog.get_logger()

WINDOW_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
SUNDAY_FIRST_WEEKDAYS = list(Weekday)

# Hard ceiling for a single workflow preview/execution
MAX_WORKFLOW_ITEMS = 500


@dataclass
class GovernanceContext:
    """Outcome of governance resolution for one execution."""
    policy_pack: Optional[GovernancePolicyPack] = None
    active_window_id: Optional[str] = None

    @property
    def policy_pack_id(self) -> Optional[str]:
        return self.policy_pack.id if self.policy_pack else None

    def item_limit(self) -> int:
        if self.policy_pack is None:
            return MAX_WORKFLOW_ITEMS
        return min(MAX_WORKFLOW_ITEMS, self.policy_pack.max_workflow_items)

    def cap_attempts(self, max_attempts: int) -> int:
        if self.policy_pack is None:
            return max_attempts
        return min(max_attempts, self.policy_pack.max_retry_attempts)


def parse_window_minutes(value: str) -> Optional[int]:
    """Minutes since midnight for "HH:MM", or None when malformed."""
    match = WINDOW_TIME_PATTERN.match(value)
    if not match:
        return None
    return int(match.group(1)) * 60 + int(match.group(2))


def utc_weekday(moment: datetime) -> Weekday:
    return SUNDAY_FIRST_WEEKDAYS[ensure_utc(moment).isoweekday() % 7]


def find_active_window(windows: list[ExecutionWindow], now: datetime) -> Optional[str]:
    """
    Id of the first window containing `now`, if any.

    A window whose end is before its start wraps past midnight. Windows
    with malformed times never match.
    """
    now = ensure_utc(now)
    weekday = utc_weekday(now)
    current = now.hour * 60 + now.minute

    for window in windows:
        if weekday not in window.weekdays:
            continue

        start = parse_window_minutes(window.start_time)
        end = parse_window_minutes(window.end_time)
        if start is None or end is None:
            continue

        if end >= start:
            in_window = start <= current <= end
        else:
            in_window = current >= start or current <= end

        if in_window:
            return window.id

    return None


class GovernanceResolver:
    """Resolves the governance context that applies to an execution."""

    def __init__(
        self,
        packs: GovernancePolicyPackRepository,
        assignments: GovernanceAssignmentRepository,
        clock: Clock = utc_now,
    ):
        self.packs = packs
        self.assignments = assignments
        self._clock = clock

    async def resolve(
        self,
        profile: ConnectionProfile,
        action: str,
        now: Optional[datetime] = None,
    ) -> GovernanceContext:
        """
        Resolve the governance context for a connection and action.

        Args:
            profile: Target connection
            action: Action being governed (for diagnostics)
            now: Evaluation time, defaults to the clock

        Returns:
            GovernanceContext; empty when the connection is unrestricted

        Raises:
            OperationFailure: UNAUTHORIZED for an excluded environment or
                when no execution window is open
        """
        assigned = await self.assignments.list(connection_id=profile.id)
        if not assigned or not assigned[0].policy_pack_id:
            return GovernanceContext()

        pack = await self.packs.find_by_id(assigned[0].policy_pack_id)
        if pack is None or not pack.enabled:
            return GovernanceContext()

        if profile.environment not in pack.environments:
            logger.warning(
                "governance_environment_denied",
                connection_id=profile.id,
                policy_pack_id=pack.id,
                environment=profile.environment.value,
            )
            raise OperationFailure(
                ErrorCode.UNAUTHORIZED,
                "Assigned policy pack does not allow execution for this environment.",
                False,
                {
                    "connectionId": profile.id,
                    "action": action,
                    "policyPackId": pack.id,
                    "environment": profile.environment.value,
                },
            )

        if not pack.scheduling_enabled:
            return GovernanceContext(policy_pack=pack)

        window_id = find_active_window(pack.execution_windows, now or self._clock())
        if window_id is None:
            logger.warning(
                "governance_outside_window",
                connection_id=profile.id,
                policy_pack_id=pack.id,
            )
            raise OperationFailure(
                ErrorCode.UNAUTHORIZED,
                "Execution is outside approved schedule windows for this policy pack.",
                False,
                {
                    "connectionId": profile.id,
                    "action": action,
                    "policyPackId": pack.id,
                },
            )

        return GovernanceContext(policy_pack=pack, active_window_id=window_id)


class GovernanceAdmin:
    """Policy pack CRUD and connection assignment."""

    def __init__(
        self,
        packs: GovernancePolicyPackRepository,
        assignments: GovernanceAssignmentRepository,
        connections: ConnectionRepository,
        clock: Clock = utc_now,
    ):
        self.packs = packs
        self.assignments = assignments
        self.connections = connections
        self._clock = clock

    async def list_packs(self) -> list[GovernancePolicyPack]:
        return await self.packs.list()

    async def create_pack(self, draft: GovernancePolicyPackDraft) -> GovernancePolicyPack:
        now = self._clock()
        pack = GovernancePolicyPack(
            id=new_id(),
            name=draft.name.strip(),
            description=(draft.description or "").strip() or None,
            environments=draft.environments,
            max_workflow_items=clamp_int(draft.max_workflow_items, 1, 10_000, 500),
            max_retry_attempts=clamp_int(draft.max_retry_attempts, 1, 10, 1),
            scheduling_enabled=draft.scheduling_enabled,
            execution_windows=draft.execution_windows,
            enabled=draft.enabled,
            created_at=now,
            updated_at=now,
        )
        await self.packs.save(pack)
        logger.info("policy_pack_created", policy_pack_id=pack.id, name=pack.name)
        return pack

    async def update_pack(self, id: str, draft: GovernancePolicyPackDraft) -> GovernancePolicyPack:
        existing = await self.packs.find_by_id(id)
        if existing is None:
            raise not_found("Governance policy pack", id=id)

        pack = existing.model_copy(
            update={
                "name": draft.name.strip(),
                "description": (draft.description or "").strip() or None,
                "environments": draft.environments,
                "max_workflow_items": clamp_int(
                    draft.max_workflow_items, 1, 10_000, existing.max_workflow_items
                ),
                "max_retry_attempts": clamp_int(
                    draft.max_retry_attempts, 1, 10, existing.max_retry_attempts
                ),
                "scheduling_enabled": draft.scheduling_enabled,
                "execution_windows": draft.execution_windows,
                "enabled": draft.enabled,
                "updated_at": self._clock(),
            }
        )
        await self.packs.save(pack)
        return pack

    async def delete_pack(self, id: str) -> None:
        """Delete a pack and clear every assignment pointing at it."""
        await self.packs.delete(id)
        for assignment in await self.assignments.list():
            if assignment.policy_pack_id == id:
                await self.assignments.assign(assignment.connection_id, None)
        logger.info("policy_pack_deleted", policy_pack_id=id)

    async def assign(self, connection_id: str, policy_pack_id: Optional[str]) -> None:
        if await self.connections.find_by_id(connection_id) is None:
            raise not_found("Connection profile", id=connection_id)
        if policy_pack_id and await self.packs.find_by_id(policy_pack_id) is None:
            raise not_found("Governance policy pack", id=policy_pack_id)

        await self.assignments.assign(connection_id, policy_pack_id)

    async def list_assignments(
        self, connection_id: Optional[str] = None
    ) -> list[GovernanceAssignment]:
        return await self.assignments.list(connection_id=connection_id)
