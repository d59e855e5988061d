"""
Observability Views - read models over history and metric snapshots.

- Dashboard: connection health, trend buckets, error heatmap, slow ops
- Keyspace activity: most touched key prefixes and their distribution
- Failed operation drilldown: error events with surrounding context
- Period comparison: four headline metrics across two time ranges
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Optional

from speichr.core.models import CompareDirection, HealthStatus, OperationStatus
from speichr.core.orchestration.alerts import METRIC_SAMPLE_LIMIT, SLOW_OPERATION_THRESHOLD_MS
from speichr.core.ports import ConnectionRepository, HistoryRepository, ObservabilityRepository
from speichr.core.schemas import (
    CompareMetricDelta,
    ComparePeriodsResult,
    ConnectionHealthSummary,
    ErrorHeatmapCell,
    FailedOperationDiagnostic,
    FailedOperationDrilldown,
    HistoryEvent,
    KeyspaceActivityPattern,
    KeyspaceActivityPoint,
    KeyspaceActivityView,
    ObservabilityDashboard,
    ObservabilitySnapshot,
    OperationTrendPoint,
)
from speichr.core.utils import Clock, clamp_int, ensure_utc, percentile, time_bucket, utc_now

DASHBOARD_DEFAULT_LIMIT = 200
DEGRADED_ERROR_RATE = 0.35
RELATED_EVENT_WINDOW = timedelta(minutes=5)
MAX_RELATED_EVENTS = 10


def to_keyspace_pattern(key_or_pattern: str) -> str:
    """Collapse a key to its first segment prefix: "user:42:name" -> "user:*"."""
    if "*" in key_or_pattern:
        return key_or_pattern

    segments = [segment for segment in key_or_pattern.split(":") if segment]
    if len(segments) <= 1:
        return key_or_pattern
    return f"{segments[0]}:*"


def retry_attempts_of(event: HistoryEvent) -> int:
    attempts: Any = (event.details or {}).get("attempts")
    if isinstance(attempts, bool) or not isinstance(attempts, (int, float)):
        return 1
    return max(1, int(attempts))


def related_events_of(event: HistoryEvent, timeline: list[HistoryEvent]) -> list[HistoryEvent]:
    """Events on the same connection and key within five minutes."""
    moment = ensure_utc(event.timestamp)
    related = [
        candidate
        for candidate in timeline
        if candidate.connection_id == event.connection_id
        and candidate.key_or_pattern == event.key_or_pattern
        and abs(ensure_utc(candidate.timestamp) - moment) <= RELATED_EVENT_WINDOW
    ]
    return related[:MAX_RELATED_EVENTS]


def build_compare_metric(
    metric: str,
    baseline: float,
    compare: float,
    lower_is_better: bool,
) -> CompareMetricDelta:
    delta = round(compare - baseline, 3)
    if baseline == 0:
        delta_percent = 0.0 if compare == 0 else None
    else:
        delta_percent = round((compare - baseline) / baseline, 3)

    direction = CompareDirection.UNCHANGED
    if delta != 0:
        improved = delta < 0 if lower_is_better else delta > 0
        direction = CompareDirection.IMPROVED if improved else CompareDirection.REGRESSED

    return CompareMetricDelta(
        metric=metric,
        baseline=round(baseline, 3),
        compare=round(compare, 3),
        delta=delta,
        delta_percent=delta_percent,
        direction=direction,
    )


class ObservabilityViews:
    """Builds the observability read models on demand."""

    def __init__(
        self,
        connections: ConnectionRepository,
        history: HistoryRepository,
        observability: ObservabilityRepository,
        clock: Clock = utc_now,
    ):
        self.connections = connections
        self.history = history
        self.observability = observability
        self._clock = clock

    async def dashboard(
        self,
        connection_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        interval_minutes: int = 5,
        limit: Optional[int] = None,
    ) -> ObservabilityDashboard:
        sample_limit = clamp_int(limit, 1, 2000, DASHBOARD_DEFAULT_LIMIT)

        connections = await self.connections.list()
        timeline_sample = await self.history.query(
            connection_id=connection_id, since=since, until=until, limit=sample_limit + 1
        )
        snapshot_sample = await self.observability.query(
            connection_id=connection_id, since=since, until=until, limit=sample_limit + 1
        )
        timeline = timeline_sample[:sample_limit]
        snapshots = snapshot_sample[:sample_limit]

        latest: dict[str, ObservabilitySnapshot] = {}
        for snapshot in snapshots:
            latest.setdefault(snapshot.connection_id, snapshot)

        health = []
        for connection in connections:
            snapshot = latest.get(connection.id)
            if snapshot is None:
                health.append(
                    ConnectionHealthSummary(
                        connection_id=connection.id,
                        connection_name=connection.name,
                        environment=connection.environment,
                        status=HealthStatus.OFFLINE,
                    )
                )
                continue

            degraded = (
                snapshot.error_rate >= DEGRADED_ERROR_RATE
                or snapshot.latency_p95_ms >= SLOW_OPERATION_THRESHOLD_MS
            )
            health.append(
                ConnectionHealthSummary(
                    connection_id=connection.id,
                    connection_name=connection.name,
                    environment=connection.environment,
                    status=HealthStatus.DEGRADED if degraded else HealthStatus.HEALTHY,
                    latency_p95_ms=snapshot.latency_p95_ms,
                    error_rate=snapshot.error_rate,
                    ops_per_second=snapshot.ops_per_second,
                    slow_op_count=snapshot.slow_op_count,
                )
            )

        buckets: dict[datetime, list[HistoryEvent]] = defaultdict(list)
        for event in timeline:
            buckets[time_bucket(event.timestamp, interval_minutes)].append(event)

        trends = [
            OperationTrendPoint(
                bucket=bucket,
                operation_count=len(events),
                error_count=sum(1 for e in events if e.status == OperationStatus.ERROR),
                avg_duration_ms=round(sum(e.duration_ms for e in events) / len(events)),
            )
            for bucket, events in sorted(buckets.items())
        ]

        heat: dict[tuple[str, str], ErrorHeatmapCell] = {}
        for event in timeline:
            if event.status != OperationStatus.ERROR:
                continue
            cell = heat.setdefault(
                (event.connection_id, event.environment.value),
                ErrorHeatmapCell(
                    connection_id=event.connection_id,
                    environment=event.environment,
                    error_count=0,
                ),
            )
            cell.error_count += 1

        return ObservabilityDashboard(
            generated_at=self._clock(),
            truncated=len(timeline_sample) > sample_limit or len(snapshot_sample) > sample_limit,
            health=health,
            trends=trends,
            heatmap=sorted(heat.values(), key=lambda c: c.error_count, reverse=True),
            timeline=timeline,
            slow_operations=[
                e for e in timeline if e.duration_ms >= SLOW_OPERATION_THRESHOLD_MS
            ],
        )

    async def keyspace_activity(
        self,
        connection_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        interval_minutes: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> KeyspaceActivityView:
        sample_limit = clamp_int(limit, 1, METRIC_SAMPLE_LIMIT, 1000)
        sample = await self.history.query(
            connection_id=connection_id, since=since, until=until, limit=sample_limit + 1
        )
        events = sample[:sample_limit]

        patterns: dict[str, KeyspaceActivityPattern] = {}
        for event in events:
            name = to_keyspace_pattern(event.key_or_pattern)
            entry = patterns.setdefault(
                name, KeyspaceActivityPattern(pattern=name, touch_count=0, error_count=0)
            )
            entry.touch_count += 1
            if event.status == OperationStatus.ERROR:
                entry.error_count += 1
            if entry.last_touched_at is None or event.timestamp > entry.last_touched_at:
                entry.last_touched_at = event.timestamp

        top_patterns = sorted(
            patterns.values(),
            key=lambda p: (-p.touch_count, -p.error_count, p.pattern),
        )[: clamp_int(limit, 1, 500, 50)]

        interval = clamp_int(interval_minutes, 1, 1440, 5)
        distribution: dict[datetime, KeyspaceActivityPoint] = {}
        for event in events:
            bucket = time_bucket(event.timestamp, interval)
            point = distribution.setdefault(
                bucket, KeyspaceActivityPoint(bucket=bucket, touches=0, errors=0)
            )
            point.touches += 1
            if event.status == OperationStatus.ERROR:
                point.errors += 1

        return KeyspaceActivityView(
            generated_at=self._clock(),
            since=since,
            until=until,
            total_events=len(events),
            truncated=len(sample) > sample_limit,
            top_patterns=top_patterns,
            distribution=[distribution[b] for b in sorted(distribution)],
        )

    async def failed_operation_drilldown(
        self,
        connection_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        event_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> FailedOperationDrilldown:
        timeline_limit = clamp_int(limit, 1, METRIC_SAMPLE_LIMIT, 1000)
        sample = await self.history.query(
            connection_id=connection_id, since=since, until=until, limit=timeline_limit + 1
        )
        timeline = sample[:timeline_limit]

        errors = [e for e in timeline if e.status == OperationStatus.ERROR]
        diagnostic_limit = clamp_int(limit, 1, 500, 50)
        if event_id:
            selected = [e for e in errors if e.id == event_id]
        else:
            selected = errors[:diagnostic_limit]

        diagnostics = []
        for event in selected:
            latest = await self.observability.query(
                connection_id=event.connection_id, until=event.timestamp, limit=1
            )
            diagnostics.append(
                FailedOperationDiagnostic(
                    event=event,
                    retry_attempts=retry_attempts_of(event),
                    related_events=related_events_of(event, timeline),
                    latest_snapshot=latest[0] if latest else None,
                )
            )

        return FailedOperationDrilldown(
            generated_at=self._clock(),
            total_error_events=len(errors),
            truncated=(
                len(sample) > timeline_limit
                or (not event_id and len(errors) > diagnostic_limit)
            ),
            diagnostics=diagnostics,
        )

    async def compare_periods(
        self,
        baseline_since: datetime,
        baseline_until: datetime,
        compare_since: datetime,
        compare_until: datetime,
        connection_id: Optional[str] = None,
    ) -> ComparePeriodsResult:
        baseline = await self._period_metrics(connection_id, baseline_since, baseline_until)
        compare = await self._period_metrics(connection_id, compare_since, compare_until)

        return ComparePeriodsResult(
            generated_at=self._clock(),
            baseline_label=f"{baseline_since.isoformat()} -> {baseline_until.isoformat()}",
            compare_label=f"{compare_since.isoformat()} -> {compare_until.isoformat()}",
            baseline_sampled_events=baseline["operation_count"],
            compare_sampled_events=compare["operation_count"],
            truncated=baseline["truncated"] or compare["truncated"],
            metrics=[
                build_compare_metric(
                    "operation_count",
                    baseline["operation_count"],
                    compare["operation_count"],
                    lower_is_better=False,
                ),
                build_compare_metric(
                    "error_rate", baseline["error_rate"], compare["error_rate"], True
                ),
                build_compare_metric(
                    "latency_p95_ms", baseline["latency_p95_ms"], compare["latency_p95_ms"], True
                ),
                build_compare_metric(
                    "slow_op_count", baseline["slow_op_count"], compare["slow_op_count"], True
                ),
            ],
        )

    async def _period_metrics(
        self,
        connection_id: Optional[str],
        since: datetime,
        until: datetime,
    ) -> dict[str, Any]:
        sample = await self.history.query(
            connection_id=connection_id, since=since, until=until,
            limit=METRIC_SAMPLE_LIMIT + 1,
        )
        events = sample[:METRIC_SAMPLE_LIMIT]
        count = len(events)
        errors = sum(1 for e in events if e.status == OperationStatus.ERROR)

        return {
            "operation_count": count,
            "error_rate": round(errors / count, 3) if count else 0,
            "latency_p95_ms": percentile(sorted(e.duration_ms for e in events), 0.95),
            "slow_op_count": sum(
                1 for e in events if e.duration_ms >= SLOW_OPERATION_THRESHOLD_MS
            ),
            "truncated": len(sample) > METRIC_SAMPLE_LIMIT,
        }
