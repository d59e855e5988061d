"""
Speichr Orchestration Core
==========================

Runs cache operations and bulk workflows against connection profiles with
retries, policy gates, telemetry and retention side effects.

Components:
- OperationExecutor: Timeout and retry policy around one unit of work
- TelemetryRecorder: History events, rolling metrics and their alerts
- GuardrailsEngine: Read-only and prod confirmation gates
- GovernanceResolver: Policy packs and execution windows
- WorkflowPreviewBuilder: Read-only expansion of a template into items
- WorkflowCoordinator: Dry runs, execution, checkpoints and resume
- NamespaceAdmin: Namespace CRUD and per-call key scoping
- KeyOperations: Key browsing, mutation and snapshot rollback
- RetentionEnforcer: Storage budgets per dataset
- AlertEmitter / AlertRuleEvaluator: Alert storage and threshold rules
- ObservabilityViews: Dashboard and diagnostics read models
- IncidentExportManager: Incident bundles and background export jobs
"""

from speichr.core.orchestration.alerts import AlertEmitter, AlertRuleEvaluator
from speichr.core.orchestration.executor import OperationExecutor, resolve_retry_policy
from speichr.core.orchestration.governance import GovernanceAdmin, GovernanceResolver
from speichr.core.orchestration.guardrails import GuardrailsEngine
from speichr.core.orchestration.incidents import IncidentExportManager
from speichr.core.orchestration.keys import KeyOperations, SnapshotRecorder
from speichr.core.orchestration.namespaces import NamespaceAdmin
from speichr.core.orchestration.notifications import AlertNotifier
from speichr.core.orchestration.observability import ObservabilityViews
from speichr.core.orchestration.preview import WorkflowPreviewBuilder
from speichr.core.orchestration.retention import RetentionEnforcer
from speichr.core.orchestration.telemetry import TelemetryRecorder
from speichr.core.orchestration.workflows import WorkflowCoordinator

__all__ = [
    "AlertEmitter",
    "AlertNotifier",
    "AlertRuleEvaluator",
    "GovernanceAdmin",
    "GovernanceResolver",
    "GuardrailsEngine",
    "IncidentExportManager",
    "KeyOperations",
    "NamespaceAdmin",
    "ObservabilityViews",
    "OperationExecutor",
    "RetentionEnforcer",
    "SnapshotRecorder",
    "TelemetryRecorder",
    "WorkflowCoordinator",
    "WorkflowPreviewBuilder",
    "resolve_retry_policy",
]
