"""
Speichr - Repository Bundles
============================

One dataclass carrying an implementation of every persistence port, so
the service can be wired against memory or SQL storage alike.
"""

from dataclasses import dataclass

from speichr.core.models import RetentionDataset
from speichr.core.ports import (
    AlertRepository,
    AlertRuleRepository,
    ConnectionRepository,
    GovernanceAssignmentRepository,
    GovernancePolicyPackRepository,
    HistoryRepository,
    IncidentBundleRepository,
    NamespaceRepository,
    ObservabilityRepository,
    RetentionRepository,
    SecretStore,
    SnapshotRepository,
    WorkflowExecutionRepository,
    WorkflowTemplateRepository,
)
from speichr.core.repositories import memory
from speichr.core.repositories import sql as sql_store
from speichr.core.utils import Clock, utc_now


@dataclass
class Repositories:
    connections: ConnectionRepository
    secrets: SecretStore
    namespaces: NamespaceRepository
    snapshots: SnapshotRepository
    templates: WorkflowTemplateRepository
    executions: WorkflowExecutionRepository
    history: HistoryRepository
    observability: ObservabilityRepository
    alerts: AlertRepository
    alert_rules: AlertRuleRepository
    policy_packs: GovernancePolicyPackRepository
    assignments: GovernanceAssignmentRepository
    retention: RetentionRepository
    incident_bundles: IncidentBundleRepository

    @classmethod
    def in_memory(cls, clock: Clock = utc_now) -> "Repositories":
        history = memory.InMemoryHistoryRepository()
        observability = memory.InMemoryObservabilityRepository()
        executions = memory.InMemoryWorkflowExecutionRepository()
        bundles = memory.InMemoryIncidentBundleRepository()

        return cls(
            connections=memory.InMemoryConnectionRepository(),
            secrets=memory.InMemorySecretStore(),
            namespaces=memory.InMemoryNamespaceRepository(),
            snapshots=memory.InMemorySnapshotRepository(),
            templates=memory.InMemoryWorkflowTemplateRepository(),
            executions=executions,
            history=history,
            observability=observability,
            alerts=memory.InMemoryAlertRepository(),
            alert_rules=memory.InMemoryAlertRuleRepository(),
            policy_packs=memory.InMemoryGovernancePolicyPackRepository(),
            assignments=memory.InMemoryGovernanceAssignmentRepository(clock),
            retention=memory.InMemoryRetentionRepository(
                stores={
                    RetentionDataset.TIMELINE_EVENTS: history,
                    RetentionDataset.OBSERVABILITY_SNAPSHOTS: observability,
                    RetentionDataset.WORKFLOW_HISTORY: executions,
                    RetentionDataset.INCIDENT_ARTIFACTS: bundles,
                },
                clock=clock,
            ),
            incident_bundles=bundles,
        )

    @classmethod
    def sql(cls, session_factory: sql_store.SessionFactory, clock: Clock = utc_now) -> "Repositories":
        """
        SQL-backed bundle.

        Secrets stay in process memory; they are never written to the
        database.
        """
        return cls(
            connections=sql_store.SqlConnectionRepository(session_factory),
            secrets=memory.InMemorySecretStore(),
            namespaces=sql_store.SqlNamespaceRepository(session_factory),
            snapshots=sql_store.SqlSnapshotRepository(session_factory),
            templates=sql_store.SqlWorkflowTemplateRepository(session_factory),
            executions=sql_store.SqlWorkflowExecutionRepository(session_factory),
            history=sql_store.SqlHistoryRepository(session_factory),
            observability=sql_store.SqlObservabilityRepository(session_factory),
            alerts=sql_store.SqlAlertRepository(session_factory),
            alert_rules=sql_store.SqlAlertRuleRepository(session_factory),
            policy_packs=sql_store.SqlGovernancePolicyPackRepository(session_factory),
            assignments=sql_store.SqlGovernanceAssignmentRepository(session_factory, clock),
            retention=sql_store.SqlRetentionRepository(session_factory, clock),
            incident_bundles=sql_store.SqlIncidentBundleRepository(session_factory),
        )
