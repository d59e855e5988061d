"""
Speichr - Service Facade
========================

Wires the orchestration components over a repository bundle and a cache
gateway, and exposes every operation the API layer calls.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Optional

import structlog

from speichr.core.config import Settings
from speichr.core.errors import ErrorCode, OperationFailure, not_found
from speichr.core.models import (
    AlertSeverity,
    AlertSource,
    BackoffStrategy,
    EventSource,
    OperationStatus,
    RetentionDataset,
)
from speichr.core.orchestration import (
    AlertEmitter,
    AlertNotifier,
    AlertRuleEvaluator,
    GovernanceAdmin,
    GovernanceResolver,
    GuardrailsEngine,
    IncidentExportManager,
    KeyOperations,
    NamespaceAdmin,
    ObservabilityViews,
    OperationExecutor,
    RetentionEnforcer,
    SnapshotRecorder,
    TelemetryRecorder,
    WorkflowCoordinator,
    WorkflowPreviewBuilder,
)
from speichr.core.orchestration.alerts import SLOW_OPERATION_THRESHOLD_MS
from speichr.core.orchestration.executor import (
    DEFAULT_RETRY_ABORT_ON_ERROR_RATE,
    DEFAULT_RETRY_BACKOFF_MS,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    DEFAULT_TIMEOUT_MS,
    MIN_TIMEOUT_MS,
)
from speichr.core.orchestration.namespaces import require_connection
from speichr.core.ports import CacheGateway
from speichr.core.repositories import Repositories
from speichr.core.schemas import (
    AlertEvent,
    AlertRule,
    AlertRuleDraft,
    ConnectionDraft,
    ConnectionProfile,
    ConnectionSecret,
    ConnectionTestResult,
    EngineEventInput,
    HistoryEvent,
    ProviderCapabilities,
    RetentionPolicy,
    RetentionPurgeResult,
    StorageSummary,
)
from speichr.core.utils import Clock, clamp_float, clamp_int, new_id, utc_now

logger = structlog.get_logger()

CONNECTION_TEST_ATTEMPTS = 2
MAX_TIMEOUT_MS = 120_000


def normalize_tags(tags: list[str]) -> list[str]:
    """Trimmed, non-empty, first occurrence wins."""
    return list(dict.fromkeys(tag.strip() for tag in tags if tag.strip()))


def normalize_draft(draft: ConnectionDraft) -> ConnectionDraft:
    """Clamp timeouts and retry defaults, tidy tags."""
    return draft.model_copy(
        update={
            "name": draft.name.strip(),
            "host": draft.host.strip(),
            "tags": normalize_tags(draft.tags),
            "timeout_ms": clamp_int(
                draft.timeout_ms, MIN_TIMEOUT_MS, MAX_TIMEOUT_MS, DEFAULT_TIMEOUT_MS
            ),
            "retry_max_attempts": clamp_int(
                draft.retry_max_attempts, 1, 10, DEFAULT_RETRY_MAX_ATTEMPTS
            ),
            "retry_backoff_ms": clamp_int(
                draft.retry_backoff_ms, 0, 120_000, DEFAULT_RETRY_BACKOFF_MS
            ),
            "retry_backoff_strategy": draft.retry_backoff_strategy or BackoffStrategy.FIXED,
            "retry_abort_on_error_rate": clamp_float(
                draft.retry_abort_on_error_rate, 0, 1, DEFAULT_RETRY_ABORT_ON_ERROR_RATE
            ),
        }
    )


class SpeichrService:
    """
    Application service for the operations console.

    Component groups are exposed as attributes (namespaces, keys,
    workflows, governance, observability, incidents) and connection, history, alert
    and retention operations are implemented here.

    Args:
        repositories: Persistence ports
        gateway: Cache backend access
        notifier: Alert delivery, defaults to log-only
        export_dir: Default directory for incident artifacts
        clock: Time source shared by every component
        sleep: Backoff sleep used by the executor
    """

    def __init__(
        self,
        repositories: Repositories,
        gateway: CacheGateway,
        notifier: Optional[AlertNotifier] = None,
        export_dir: Optional[str] = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.repositories = repositories
        self.gateway = gateway
        self._clock = clock
        repos = repositories

        self.emitter = AlertEmitter(repos.alerts, notifier, clock)
        self.retention = RetentionEnforcer(repos.retention, self.emitter, clock)
        self.rule_evaluator = AlertRuleEvaluator(
            repos.alert_rules, repos.history, repos.observability, self.emitter
        )
        self.telemetry = TelemetryRecorder(
            repos.history,
            repos.observability,
            self.retention,
            self.emitter,
            self.rule_evaluator,
            clock,
        )
        self.executor = OperationExecutor(self.telemetry, sleep)
        self.guardrails = GuardrailsEngine(self.telemetry)
        self.snapshot_recorder = SnapshotRecorder(gateway, repos.snapshots, clock)

        self.namespaces = NamespaceAdmin(
            repos.namespaces, repos.connections, repos.secrets, clock
        )
        self.keys = KeyOperations(
            self.namespaces,
            gateway,
            repos.snapshots,
            self.executor,
            self.guardrails,
            self.snapshot_recorder,
        )
        self.governance = GovernanceAdmin(
            repos.policy_packs, repos.assignments, repos.connections, clock
        )
        self.workflows = WorkflowCoordinator(
            scopes=self.namespaces,
            gateway=gateway,
            templates=repos.templates,
            executions=repos.executions,
            preview_builder=WorkflowPreviewBuilder(gateway),
            executor=self.executor,
            guardrails=self.guardrails,
            governance=GovernanceResolver(repos.policy_packs, repos.assignments, clock),
            snapshot_recorder=self.snapshot_recorder,
            retention=self.retention,
            emitter=self.emitter,
            clock=clock,
        )
        self.observability = ObservabilityViews(
            repos.connections, repos.history, repos.observability, clock
        )
        self.incidents = IncidentExportManager(
            repos.history,
            repos.observability,
            repos.alerts,
            repos.incident_bundles,
            self.retention,
            export_dir=export_dir,
            clock=clock,
        )

    async def shutdown(self) -> None:
        await self.incidents.shutdown()

    # ==========================================================================
    # Connections
    # ==========================================================================

    async def list_connections(self) -> list[ConnectionProfile]:
        return await self.repositories.connections.list()

    async def get_connection(self, id: str) -> ConnectionProfile:
        return await require_connection(self.repositories.connections, id)

    async def create_connection(
        self, draft: ConnectionDraft, secret: ConnectionSecret
    ) -> ConnectionProfile:
        """
        Store a new connection profile and its secret.

        The profile is removed again if the secret cannot be stored, so a
        profile never exists without credentials.

        Raises:
            OperationFailure: INTERNAL_ERROR when either store fails
        """
        now = self._clock()
        id = new_id()
        profile = ConnectionProfile(
            **normalize_draft(draft).model_dump(),
            id=id,
            secret_ref=id,
            created_at=now,
            updated_at=now,
        )

        profile_saved = False
        try:
            await self.repositories.connections.save(profile)
            profile_saved = True
            await self.repositories.secrets.save_secret(profile.id, secret)
        except Exception as e:
            rollback_succeeded = None
            if profile_saved:
                try:
                    await self.repositories.connections.delete(profile.id)
                    rollback_succeeded = True
                except Exception:
                    logger.exception("connection_rollback_failed", connection_id=profile.id)
                    rollback_succeeded = False

            logger.error(
                "connection_create_failed",
                connection_id=profile.id,
                stage="secret-store" if profile_saved else "metadata-store",
                error=str(e),
            )
            raise OperationFailure(
                ErrorCode.INTERNAL_ERROR,
                "Connection profile could not be saved securely. Please try again.",
                False,
                {
                    "rollbackAttempted": profile_saved,
                    "rollbackSucceeded": rollback_succeeded,
                    "stage": "secret-store" if profile_saved else "metadata-store",
                    "cause": str(e),
                },
            ) from e

        logger.info(
            "connection_created",
            connection_id=profile.id,
            engine=profile.engine.value,
            environment=profile.environment.value,
        )
        return profile

    async def update_connection(
        self,
        id: str,
        draft: ConnectionDraft,
        secret: Optional[ConnectionSecret] = None,
    ) -> ConnectionProfile:
        existing = await self.repositories.connections.find_by_id(id)
        if existing is None:
            raise not_found("Connection profile", id=id)

        profile = existing.model_copy(
            update={**normalize_draft(draft).model_dump(), "updated_at": self._clock()}
        )
        await self.repositories.connections.save(profile)
        if secret is not None:
            await self.repositories.secrets.save_secret(profile.id, secret)
        return profile

    async def delete_connection(self, id: str) -> None:
        await self.repositories.connections.delete(id)
        await self.repositories.secrets.delete_secret(id)
        for namespace in await self.repositories.namespaces.list_by_connection(id):
            await self.repositories.namespaces.delete(namespace.id)
        await self.repositories.assignments.assign(id, None)
        logger.info("connection_deleted", connection_id=id)

    async def test_connection(
        self, draft: ConnectionDraft, secret: ConnectionSecret
    ) -> ConnectionTestResult:
        """Test a (possibly unsaved) connection, retrying once."""
        profile = normalize_draft(draft)
        last_error: Optional[Exception] = None

        for attempt in range(1, CONNECTION_TEST_ATTEMPTS + 1):
            try:
                return await asyncio.wait_for(
                    self.gateway.test_connection(profile, secret),
                    timeout=profile.timeout_ms / 1000,
                )
            except Exception as e:
                last_error = e
                logger.warning(
                    "connection_test_failed",
                    host=profile.host,
                    attempt=attempt,
                    error=str(e) or e.__class__.__name__,
                )

        if isinstance(last_error, OperationFailure):
            raise last_error
        raise OperationFailure(
            ErrorCode.CONNECTION_FAILED,
            "Connection test failed after retry.",
            True,
            {"attempts": CONNECTION_TEST_ATTEMPTS},
        )

    async def get_capabilities(self, connection_id: str) -> ProviderCapabilities:
        profile = await require_connection(self.repositories.connections, connection_id)
        return await self.gateway.get_capabilities(profile)

    # ==========================================================================
    # History
    # ==========================================================================

    async def list_history(
        self,
        connection_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[HistoryEvent]:
        return await self.repositories.history.query(
            connection_id=connection_id, since=since, until=until, limit=limit
        )

    async def ingest_engine_event(self, payload: EngineEventInput) -> Optional[HistoryEvent]:
        """
        Record an event reported by the backend itself.

        Events for unknown connections are dropped.
        """
        profile = await self.repositories.connections.find_by_id(payload.connection_id)
        if profile is None:
            logger.debug("engine_event_dropped", connection_id=payload.connection_id)
            return None

        event = HistoryEvent(
            id=new_id(),
            timestamp=payload.timestamp or self._clock(),
            source=EventSource.ENGINE,
            connection_id=profile.id,
            environment=payload.environment or profile.environment,
            action=payload.action,
            key_or_pattern=payload.key_or_pattern,
            duration_ms=max(0, round(payload.duration_ms or 0)),
            status=payload.status,
            error_code=payload.error_code,
            retryable=payload.retryable,
            details=payload.details,
        )
        await self.repositories.history.append(event)
        await self.retention.enforce([RetentionDataset.TIMELINE_EVENTS])

        if event.status == OperationStatus.ERROR:
            await self.emitter.emit(
                severity=AlertSeverity.WARNING,
                title="Engine event error",
                message=f"{event.action} failed on {event.key_or_pattern}.",
                source=AlertSource.OBSERVABILITY,
                connection_id=event.connection_id,
                environment=event.environment,
            )
        elif event.duration_ms >= SLOW_OPERATION_THRESHOLD_MS:
            await self.emitter.emit(
                severity=AlertSeverity.INFO,
                title="Slow engine event detected",
                message=f"{event.action} took {event.duration_ms}ms.",
                source=AlertSource.OBSERVABILITY,
                connection_id=event.connection_id,
                environment=event.environment,
            )

        await self.rule_evaluator.evaluate(profile, event.timestamp)
        return event

    # ==========================================================================
    # Alerts
    # ==========================================================================

    async def list_alerts(self, unread_only: bool = False, limit: int = 100) -> list[AlertEvent]:
        return await self.repositories.alerts.list(unread_only=unread_only, limit=limit)

    async def count_unread_alerts(self) -> int:
        return await self.repositories.alerts.count_unread()

    async def mark_alert_read(self, id: str) -> None:
        await self.repositories.alerts.mark_read(id)

    async def mark_all_alerts_read(self) -> None:
        await self.repositories.alerts.mark_all_read()

    async def list_alert_rules(self) -> list[AlertRule]:
        return await self.repositories.alert_rules.list()

    async def create_alert_rule(self, draft: AlertRuleDraft) -> AlertRule:
        now = self._clock()
        rule = AlertRule(
            **draft.model_dump(exclude={"name"}),
            name=draft.name.strip(),
            id=new_id(),
            created_at=now,
            updated_at=now,
        )
        await self.repositories.alert_rules.save(rule)
        logger.info("alert_rule_created", rule_id=rule.id, metric=rule.metric.value)
        return rule

    async def update_alert_rule(self, id: str, draft: AlertRuleDraft) -> AlertRule:
        existing = await self.repositories.alert_rules.find_by_id(id)
        if existing is None:
            raise not_found("Alert rule", id=id)

        rule = existing.model_copy(
            update={
                **draft.model_dump(exclude={"name"}),
                "name": draft.name.strip(),
                "updated_at": self._clock(),
            }
        )
        await self.repositories.alert_rules.save(rule)
        return rule

    async def delete_alert_rule(self, id: str) -> None:
        await self.repositories.alert_rules.delete(id)

    # ==========================================================================
    # Retention
    # ==========================================================================

    async def list_retention_policies(self) -> list[RetentionPolicy]:
        return await self.repositories.retention.list_policies()

    async def update_retention_policy(self, policy: RetentionPolicy) -> RetentionPolicy:
        normalized = RetentionPolicy(
            dataset=policy.dataset,
            retention_days=clamp_int(policy.retention_days, 1, 3650, 30),
            storage_budget_mb=clamp_int(policy.storage_budget_mb, 1, 100_000, 512),
            auto_purge_oldest=policy.auto_purge_oldest,
        )
        await self.repositories.retention.save_policy(normalized)
        return normalized

    async def purge_retention(
        self,
        dataset: RetentionDataset,
        older_than: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> RetentionPurgeResult:
        result = await self.repositories.retention.purge(
            dataset, older_than=older_than, dry_run=dry_run
        )
        logger.info(
            "retention_purged",
            dataset=dataset.value,
            dry_run=dry_run,
            deleted_rows=result.deleted_rows,
        )
        return result

    async def get_storage_summary(self) -> StorageSummary:
        """Current usage; also enforces every dataset against it."""
        summary = await self.repositories.retention.get_storage_summary()
        await self.retention.enforce([d.dataset for d in summary.datasets], summary)
        return summary


# ==========================================================================
# Factory
# ==========================================================================

def build_service(
    settings: Settings,
    repositories: Optional[Repositories] = None,
    gateway: Optional[CacheGateway] = None,
) -> SpeichrService:
    """
    Service configured from settings.

    With STORAGE_BACKEND "sql" the repositories use the shared session
    factory; tables must be created first (see init_db).
    """
    from speichr.core.gateway import InMemoryCacheGateway

    if repositories is None:
        if settings.STORAGE_BACKEND == "sql":
            from speichr.core.database import AsyncSessionLocal

            repositories = Repositories.sql(AsyncSessionLocal)
        else:
            repositories = Repositories.in_memory()

    return SpeichrService(
        repositories=repositories,
        gateway=gateway or InMemoryCacheGateway(),
        notifier=AlertNotifier(
            webhook_url=str(settings.ALERT_WEBHOOK_URL) if settings.ALERT_WEBHOOK_URL else None,
            timeout_seconds=settings.ALERT_WEBHOOK_TIMEOUT_SECONDS,
        ),
        export_dir=settings.INCIDENT_EXPORT_DIR,
    )
