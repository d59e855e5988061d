"""
Observability Tests
===================

Telemetry recording and the dashboard, keyspace, drilldown and compare
read models.
"""

from datetime import timedelta

import pytest

from speichr.core.errors import OperationFailure
from speichr.core.models import (
    CompareDirection,
    EnvironmentTag,
    EventSource,
    HealthStatus,
    OperationStatus,
)
from speichr.core.orchestration.observability import (
    build_compare_metric,
    to_keyspace_pattern,
)
from speichr.core.schemas import EngineEventInput, HistoryEvent
from speichr.core.utils import new_id


def make_event(clock, **overrides) -> HistoryEvent:
    values = {
        "id": new_id(),
        "timestamp": clock(),
        "source": EventSource.APP,
        "connection_id": "conn-1",
        "environment": EnvironmentTag.DEV,
        "action": "key.get",
        "key_or_pattern": "user:1",
        "duration_ms": 10,
        "status": OperationStatus.SUCCESS,
    }
    values.update(overrides)
    return HistoryEvent(**values)


class TestHelpers:
    """Tests for the pure helpers."""

    @pytest.mark.parametrize(
        "key,expected",
        [
            ("user:42:name", "user:*"),
            ("user:*", "user:*"),
            ("plain", "plain"),
            (":leading", ":leading"),
        ],
    )
    def test_keyspace_pattern(self, key, expected):
        """Keys collapse to their first segment."""
        assert to_keyspace_pattern(key) == expected

    def test_compare_direction(self):
        """Direction depends on whether lower is better."""
        latency = build_compare_metric("latency_p95_ms", 100, 80, lower_is_better=True)
        volume = build_compare_metric("operation_count", 100, 80, lower_is_better=False)
        flat = build_compare_metric("error_rate", 0, 0, lower_is_better=True)
        from_zero = build_compare_metric("slow_op_count", 0, 3, lower_is_better=True)

        assert latency.direction == CompareDirection.IMPROVED
        assert latency.delta_percent == -0.2
        assert volume.direction == CompareDirection.REGRESSED
        assert flat.direction == CompareDirection.UNCHANGED
        assert flat.delta_percent == 0.0
        assert from_zero.delta_percent is None
        assert from_zero.direction == CompareDirection.REGRESSED


class TestTelemetryRecorder:
    """Tests for recorded operations and their snapshots."""

    async def test_snapshot_per_operation(self, service, repos, make_connection, gateway):
        """Every operation writes an observability snapshot."""
        profile = await make_connection()
        gateway.seed(profile.id, {"a": "1"})

        await service.keys.get_value(profile.id, "a")
        gateway.set_unreachable(profile.host)
        with pytest.raises(OperationFailure):
            await service.keys.get_value(profile.id, "a")

        snapshots = await repos.observability.query(connection_id=profile.id)
        assert len(snapshots) == 2
        assert snapshots[0].error_rate == 0.5
        assert snapshots[0].ops_per_second == round(2 / 60, 3)

    async def test_window_drops_old_samples(self, service, repos, make_connection, gateway, clock):
        """Samples older than 60 seconds leave the rolling window."""
        profile = await make_connection()
        gateway.set_unreachable(profile.host)
        with pytest.raises(OperationFailure):
            await service.keys.get_value(profile.id, "a")

        clock.advance(seconds=61)
        gateway.set_unreachable(profile.host, False)
        await service.keys.get_value(profile.id, "a")

        latest = (await repos.observability.query(connection_id=profile.id, limit=1))[0]
        assert latest.error_rate == 0


class TestEngineEvents:
    """Tests for backend-reported events."""

    async def test_unknown_connection_dropped(self, service):
        """Events for unknown connections are ignored."""
        event = await service.ingest_engine_event(
            EngineEventInput(connection_id="missing", action="slowlog", key_or_pattern="a")
        )

        assert event is None
        assert await service.list_history() == []

    async def test_error_event_alerts(self, service, make_connection):
        """Engine error events are stored and raise an alert."""
        profile = await make_connection(environment=EnvironmentTag.STAGING)

        event = await service.ingest_engine_event(
            EngineEventInput(
                connection_id=profile.id,
                action="monitor",
                key_or_pattern="user:1",
                status=OperationStatus.ERROR,
                duration_ms=12.6,
            )
        )

        assert event.source == EventSource.ENGINE
        assert event.environment == EnvironmentTag.STAGING
        assert event.duration_ms == 13
        alerts = await service.list_alerts()
        assert [a.title for a in alerts] == ["Engine event error"]


class TestDashboard:
    """Tests for the dashboard read model."""

    async def test_health_and_trends(self, service, repos, make_connection, clock):
        """Health follows the latest snapshot; trends bucket the timeline."""
        healthy = await make_connection(name="Healthy")
        broken = await make_connection(name="Broken")
        idle = await make_connection(name="Idle")

        await service.telemetry.record_operation(
            healthy, "key.get", "user:1", 5, OperationStatus.SUCCESS, 1
        )
        await service.telemetry.record_operation(
            broken, "key.get", "user:2", 5, OperationStatus.ERROR, 1
        )
        clock.advance(minutes=5)
        await service.telemetry.record_operation(
            broken, "key.get", "user:3", 900, OperationStatus.SUCCESS, 1
        )

        dashboard = await service.observability.dashboard()

        status = {h.connection_name: h.status for h in dashboard.health}
        assert status == {
            "Healthy": HealthStatus.HEALTHY,
            "Broken": HealthStatus.DEGRADED,
            "Idle": HealthStatus.OFFLINE,
        }
        assert [t.operation_count for t in dashboard.trends] == [2, 1]
        assert dashboard.trends[0].error_count == 1
        assert [c.connection_id for c in dashboard.heatmap] == [broken.id]
        assert [e.key_or_pattern for e in dashboard.slow_operations] == ["user:3"]
        assert idle.id not in {c.connection_id for c in dashboard.heatmap}
        assert dashboard.truncated is False

    async def test_sample_limit_truncates(self, service, repos, clock):
        """A sample larger than the limit is flagged as truncated."""
        for _ in range(3):
            await repos.history.append(make_event(clock))

        dashboard = await service.observability.dashboard(limit=2)

        assert len(dashboard.timeline) == 2
        assert dashboard.truncated is True


class TestKeyspaceActivity:
    """Tests for keyspace activity."""

    async def test_top_patterns(self, service, repos, clock):
        """Keys group by prefix and sort by touches, then errors."""
        for key in ("user:1", "user:2", "user:3"):
            await repos.history.append(make_event(clock, key_or_pattern=key))
        await repos.history.append(
            make_event(clock, key_or_pattern="order:1", status=OperationStatus.ERROR)
        )
        await repos.history.append(make_event(clock, key_or_pattern="cart:1"))

        view = await service.observability.keyspace_activity()

        assert [p.pattern for p in view.top_patterns] == ["user:*", "order:*", "cart:*"]
        assert view.top_patterns[0].touch_count == 3
        assert view.top_patterns[1].error_count == 1
        assert view.total_events == 5
        assert sum(p.touches for p in view.distribution) == 5


class TestFailedOperations:
    """Tests for the failed operation drilldown."""

    async def test_diagnostics_with_context(self, service, repos, clock):
        """Each error carries its retries and related events."""
        await repos.history.append(make_event(clock, key_or_pattern="user:1"))
        clock.advance(minutes=1)
        failure = make_event(
            clock,
            key_or_pattern="user:1",
            status=OperationStatus.ERROR,
            details={"attempts": 3},
        )
        await repos.history.append(failure)
        clock.advance(minutes=10)
        await repos.history.append(make_event(clock, key_or_pattern="user:1"))

        drilldown = await service.observability.failed_operation_drilldown()

        assert drilldown.total_error_events == 1
        diagnostic = drilldown.diagnostics[0]
        assert diagnostic.event.id == failure.id
        assert diagnostic.retry_attempts == 3
        assert len(diagnostic.related_events) == 2

    async def test_select_single_event(self, service, repos, clock):
        """An event id narrows the diagnostics to that event."""
        first = make_event(clock, status=OperationStatus.ERROR)
        second = make_event(clock, status=OperationStatus.ERROR, key_or_pattern="user:2")
        await repos.history.append(first)
        await repos.history.append(second)

        drilldown = await service.observability.failed_operation_drilldown(event_id=second.id)

        assert drilldown.total_error_events == 2
        assert [d.event.id for d in drilldown.diagnostics] == [second.id]
        assert drilldown.diagnostics[0].retry_attempts == 1


class TestComparePeriods:
    """Tests for period comparison."""

    async def test_compare(self, service, repos, clock):
        """Metrics of two ranges are compared with a direction each."""
        baseline_start = clock() - timedelta(hours=2)
        for minute in range(4):
            await repos.history.append(
                make_event(clock, timestamp=baseline_start + timedelta(minutes=minute))
            )
        compare_start = clock() - timedelta(hours=1)
        await repos.history.append(
            make_event(clock, timestamp=compare_start, status=OperationStatus.ERROR)
        )
        await repos.history.append(
            make_event(clock, timestamp=compare_start + timedelta(minutes=1), duration_ms=800)
        )

        result = await service.observability.compare_periods(
            baseline_start,
            baseline_start + timedelta(minutes=30),
            compare_start,
            compare_start + timedelta(minutes=30),
        )

        metrics = {m.metric: m for m in result.metrics}
        assert result.baseline_sampled_events == 4
        assert result.compare_sampled_events == 2
        assert metrics["operation_count"].direction == CompareDirection.REGRESSED
        assert metrics["error_rate"].compare == 0.5
        assert metrics["error_rate"].direction == CompareDirection.REGRESSED
        assert metrics["slow_op_count"].delta == 1
