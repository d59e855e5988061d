"""
Guardrails Engine - connection write and prod-confirmation gates.

Ensures mutations only run where the connection policy allows them.
Every blocked attempt is recorded as a "blocked" history event before
the failure is raised to the caller.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from speichr.core.errors import ErrorCode, OperationFailure
from speichr.core.models import EnvironmentTag, OperationStatus
from speichr.core.orchestration.telemetry import TelemetryRecorder
from speichr.core.schemas import ConnectionProfile

logger = structlog.get_logger()


@dataclass
class ValidationResult:
    """Result of a guardrail check."""
    allowed: bool
    policy: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_failure(self) -> OperationFailure:
        return OperationFailure(ErrorCode.UNAUTHORIZED, self.message, False, self.details)


class GuardrailsEngine:
    """
    Connection-level constraint enforcement.

    Policies:
    - readOnly / forceReadOnly: no mutations at all
    - prodGuardrail: destructive actions on prod need explicit confirmation
    """

    def __init__(self, telemetry: Optional[TelemetryRecorder] = None):
        self.telemetry = telemetry

    # ==========================================================================
    # Checks
    # ==========================================================================

    @staticmethod
    def check_writable(profile: ConnectionProfile) -> ValidationResult:
        if profile.read_only or profile.force_read_only:
            policy = "forceReadOnly" if profile.force_read_only else "readOnly"
            return ValidationResult(
                allowed=False,
                policy=policy,
                message=f'Connection "{profile.name}" is in read-only mode.',
                details={"connectionId": profile.id, "policy": policy},
            )
        return ValidationResult(allowed=True, policy="writable", message="Connection is writable")

    @staticmethod
    def check_prod_confirmation(
        profile: ConnectionProfile,
        action: str,
        guardrail_confirmed: bool,
    ) -> ValidationResult:
        if profile.environment == EnvironmentTag.PROD and not guardrail_confirmed:
            return ValidationResult(
                allowed=False,
                policy="prodGuardrail",
                message=(
                    "This action targets a prod-tagged connection "
                    "and requires explicit confirmation."
                ),
                details={
                    "connectionId": profile.id,
                    "policy": "prodGuardrail",
                    "action": action,
                },
            )
        return ValidationResult(allowed=True, policy="prodGuardrail", message="Confirmed")

    # ==========================================================================
    # Enforcement
    # ==========================================================================

    async def enforce_writable(
        self,
        profile: ConnectionProfile,
        action: str,
        key_or_pattern: str,
    ) -> None:
        """Raise UNAUTHORIZED (after recording it) if the connection is read-only."""
        result = self.check_writable(profile)
        if not result.allowed:
            await self._block(result, profile, action, key_or_pattern)

    async def enforce_prod_guardrail(
        self,
        profile: ConnectionProfile,
        action: str,
        key_or_pattern: str,
        guardrail_confirmed: bool = False,
    ) -> None:
        """Raise UNAUTHORIZED (after recording it) for unconfirmed prod actions."""
        result = self.check_prod_confirmation(profile, action, guardrail_confirmed)
        if not result.allowed:
            await self._block(result, profile, action, key_or_pattern)

    async def _block(
        self,
        result: ValidationResult,
        profile: ConnectionProfile,
        action: str,
        key_or_pattern: str,
    ) -> None:
        failure = result.to_failure()
        logger.warning(
            "guardrail_blocked",
            connection_id=profile.id,
            policy=result.policy,
            action=action,
            key_or_pattern=key_or_pattern,
        )
        if self.telemetry:
            await self.telemetry.record_operation(
                profile,
                action,
                key_or_pattern,
                duration_ms=0,
                status=OperationStatus.BLOCKED,
                attempts=1,
                error=failure,
            )
        raise failure
