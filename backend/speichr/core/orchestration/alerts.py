"""
Alerts - emission and threshold rule evaluation.

AlertEmitter stores an alert and hands it to the notifier.
AlertRuleEvaluator checks user-defined threshold rules after each
recorded operation, throttled per (rule, connection).
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog

from speichr.core.models import (
    AlertMetric,
    AlertSeverity,
    AlertSource,
    EnvironmentTag,
    OperationStatus,
)
from speichr.core.orchestration.notifications import AlertNotifier
from speichr.core.ports import (
    AlertRepository,
    AlertRuleRepository,
    HistoryRepository,
    ObservabilityRepository,
)
from speichr.core.schemas import AlertEvent, AlertRule, ConnectionProfile
from speichr.core.utils import Clock, new_id, utc_now

logger = structlog.get_logger()

SLOW_OPERATION_THRESHOLD_MS = 750
METRIC_SAMPLE_LIMIT = 5000


class AlertEmitter:
    """Persists alerts and forwards them for delivery."""

    def __init__(
        self,
        alerts: AlertRepository,
        notifier: Optional[AlertNotifier] = None,
        clock: Clock = utc_now,
    ):
        self.alerts = alerts
        self.notifier = notifier or AlertNotifier()
        self._clock = clock

    async def emit(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        source: AlertSource,
        connection_id: Optional[str] = None,
        environment: Optional[EnvironmentTag] = None,
    ) -> AlertEvent:
        alert = AlertEvent(
            id=new_id(),
            created_at=self._clock(),
            connection_id=connection_id,
            environment=environment,
            severity=severity,
            title=title,
            message=message,
            source=source,
            read=False,
        )
        await self.alerts.append(alert)
        await self.notifier.notify(alert)
        return alert


def format_metric_value(metric: AlertMetric, value: float) -> str:
    if metric == AlertMetric.ERROR_RATE:
        return f"{value * 100:.1f}%"
    if metric == AlertMetric.LATENCY_P95_MS:
        return f"{round(value)}ms"
    return str(round(value))


class AlertRuleEvaluator:
    """
    Threshold rule evaluation over a rolling lookback window.

    A rule fires when its metric is strictly greater than the threshold,
    then stays quiet for COOLDOWN for that connection.
    """

    COOLDOWN = timedelta(seconds=60)

    def __init__(
        self,
        rules: AlertRuleRepository,
        history: HistoryRepository,
        observability: ObservabilityRepository,
        emitter: AlertEmitter,
    ):
        self.rules = rules
        self.history = history
        self.observability = observability
        self.emitter = emitter
        self._last_fired: dict[tuple[str, str], datetime] = {}

    async def evaluate(self, profile: ConnectionProfile, timestamp: datetime) -> list[AlertEvent]:
        """
        Evaluate every applicable rule for a connection.

        Args:
            profile: Connection the triggering operation ran against
            timestamp: Time of the triggering event, end of the window

        Returns:
            Alerts raised by this evaluation
        """
        raised: list[AlertEvent] = []

        for rule in await self.rules.list():
            if not self._applies(rule, profile):
                continue

            cooldown_key = (rule.id, profile.id)
            last = self._last_fired.get(cooldown_key)
            if last is not None and timestamp - last < self.COOLDOWN:
                continue

            since = timestamp - timedelta(minutes=rule.lookback_minutes)
            value = await self.compute_metric(rule.metric, profile.id, since, timestamp)
            if value <= rule.threshold:
                continue

            raised.append(
                await self.emitter.emit(
                    severity=rule.severity,
                    title=f"Alert rule triggered: {rule.name}",
                    message=(
                        f"{rule.metric.value}={format_metric_value(rule.metric, value)} "
                        f"exceeded {format_metric_value(rule.metric, rule.threshold)}"
                    ),
                    source=AlertSource.OBSERVABILITY,
                    connection_id=profile.id,
                    environment=profile.environment,
                )
            )
            self._last_fired[cooldown_key] = timestamp
            logger.info("alert_rule_triggered", rule_id=rule.id, connection_id=profile.id, value=value)

        return raised

    @staticmethod
    def _applies(rule: AlertRule, profile: ConnectionProfile) -> bool:
        if not rule.enabled:
            return False
        if rule.connection_id and rule.connection_id != profile.id:
            return False
        if rule.environment and rule.environment != profile.environment:
            return False
        return True

    async def compute_metric(
        self,
        metric: AlertMetric,
        connection_id: str,
        since: datetime,
        until: datetime,
    ) -> float:
        if metric == AlertMetric.LATENCY_P95_MS:
            snapshots = await self.observability.query(
                connection_id=connection_id, since=since, until=until, limit=1
            )
            return snapshots[0].latency_p95_ms if snapshots else 0

        events = await self.history.query(
            connection_id=connection_id, since=since, until=until, limit=METRIC_SAMPLE_LIMIT
        )
        if not events:
            return 0

        if metric == AlertMetric.ERROR_RATE:
            errors = sum(1 for e in events if e.status == OperationStatus.ERROR)
            return round(errors / len(events), 3)
        if metric == AlertMetric.SLOW_OPERATION_COUNT:
            return sum(1 for e in events if e.duration_ms >= SLOW_OPERATION_THRESHOLD_MS)
        return sum(1 for e in events if e.status == OperationStatus.ERROR)
