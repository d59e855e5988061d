"""
Telemetry Recorder - history, rolling metrics and their side effects.

Every terminal operation outcome (and every policy block) goes through
record_operation, which:
1. appends a history event
2. updates the 60 second per-connection sample window
3. persists an observability snapshot derived from that window
4. enforces retention for the telemetry datasets
5. raises the outcome alert (failure, block, slow operation)
6. evaluates alert rules
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from speichr.core.errors import OperationFailure
from speichr.core.models import (
    AlertSeverity,
    AlertSource,
    EventSource,
    OperationStatus,
    RetentionDataset,
)
from speichr.core.orchestration.alerts import (
    SLOW_OPERATION_THRESHOLD_MS,
    AlertEmitter,
    AlertRuleEvaluator,
)
from speichr.core.orchestration.retention import RetentionEnforcer
from speichr.core.ports import HistoryRepository, ObservabilityRepository
from speichr.core.schemas import ConnectionProfile, HistoryEvent, ObservabilitySnapshot
from speichr.core.utils import Clock, new_id, percentile, utc_now

logger = structlog.get_logger()


@dataclass
class OperationSample:
    timestamp: datetime
    duration_ms: int
    status: OperationStatus


class TelemetryRecorder:
    """Owns the per-connection sample windows."""

    WINDOW = timedelta(seconds=60)
    MAX_SAMPLES = 500

    TELEMETRY_DATASETS = (
        RetentionDataset.TIMELINE_EVENTS,
        RetentionDataset.OBSERVABILITY_SNAPSHOTS,
    )

    def __init__(
        self,
        history: HistoryRepository,
        observability: ObservabilityRepository,
        retention: RetentionEnforcer,
        emitter: AlertEmitter,
        rule_evaluator: AlertRuleEvaluator,
        clock: Clock = utc_now,
    ):
        self.history = history
        self.observability = observability
        self.retention = retention
        self.emitter = emitter
        self.rule_evaluator = rule_evaluator
        self._clock = clock
        self._samples: dict[str, deque[OperationSample]] = {}

    async def record_operation(
        self,
        profile: ConnectionProfile,
        action: str,
        key_or_pattern: str,
        duration_ms: float,
        status: OperationStatus,
        attempts: int,
        error: Optional[OperationFailure] = None,
    ) -> HistoryEvent:
        event = HistoryEvent(
            id=new_id(),
            timestamp=self._clock(),
            source=EventSource.APP,
            connection_id=profile.id,
            environment=profile.environment,
            action=action,
            key_or_pattern=key_or_pattern,
            duration_ms=max(0, round(duration_ms)),
            status=status,
            error_code=error.code.value if error else None,
            retryable=error.retryable if error else None,
            details={**(error.details if error else {}), "attempts": attempts},
        )
        await self.history.append(event)

        snapshot = self._update_window(profile.id, event)
        await self.observability.append(snapshot)
        await self.retention.enforce(self.TELEMETRY_DATASETS)

        if status == OperationStatus.ERROR:
            await self.emitter.emit(
                severity=AlertSeverity.WARNING,
                title="Operation failed",
                message=f"{action} failed on {key_or_pattern}.",
                source=AlertSource.OBSERVABILITY,
                connection_id=profile.id,
                environment=profile.environment,
            )
        elif status == OperationStatus.BLOCKED:
            await self.emitter.emit(
                severity=AlertSeverity.WARNING,
                title="Operation blocked by policy",
                message=f"{action} was blocked by connection policy.",
                source=AlertSource.POLICY,
                connection_id=profile.id,
                environment=profile.environment,
            )
        elif event.duration_ms >= SLOW_OPERATION_THRESHOLD_MS:
            await self.emitter.emit(
                severity=AlertSeverity.INFO,
                title="Slow operation detected",
                message=f"{action} took {event.duration_ms}ms.",
                source=AlertSource.OBSERVABILITY,
                connection_id=profile.id,
                environment=profile.environment,
            )

        await self.rule_evaluator.evaluate(profile, event.timestamp)
        logger.debug(
            "operation_recorded",
            connection_id=profile.id,
            action=action,
            status=status.value,
            duration_ms=event.duration_ms,
            attempts=attempts,
        )
        return event

    def _update_window(self, connection_id: str, event: HistoryEvent) -> ObservabilitySnapshot:
        samples = self._samples.setdefault(connection_id, deque(maxlen=self.MAX_SAMPLES))
        samples.append(OperationSample(event.timestamp, event.duration_ms, event.status))

        now = self._clock()
        recent = [s for s in samples if now - s.timestamp <= self.WINDOW]
        durations = sorted(s.duration_ms for s in recent)
        errors = sum(1 for s in recent if s.status == OperationStatus.ERROR)
        slow = sum(1 for s in recent if s.duration_ms >= SLOW_OPERATION_THRESHOLD_MS)

        return ObservabilitySnapshot(
            id=new_id(),
            connection_id=connection_id,
            timestamp=event.timestamp,
            latency_p50_ms=percentile(durations, 0.5),
            latency_p95_ms=percentile(durations, 0.95),
            error_rate=round(errors / len(recent), 3) if recent else 0,
            reconnect_count=0,
            ops_per_second=round(len(recent) / self.WINDOW.total_seconds(), 3),
            slow_op_count=slow,
        )
