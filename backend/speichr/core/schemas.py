"""
Speichr - Pydantic Schemas
==========================

Domain entities passed between the orchestration core, the persistence
ports and the API layer.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from speichr.core.models import (
    AlertMetric,
    AlertSeverity,
    AlertSource,
    BackoffStrategy,
    CacheEngine,
    CompareDirection,
    EnvironmentTag,
    EventSource,
    HealthStatus,
    IncidentExportStage,
    IncidentExportStatus,
    IncidentSection,
    NamespaceStrategy,
    OperationStatus,
    PreviewAction,
    RedactionProfile,
    RetentionDataset,
    SnapshotReason,
    Weekday,
    WorkflowExecutionStatus,
    WorkflowKind,
    WorkflowStepStatus,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Connections
# ==========================================================================

class RetryPolicy(BaseSchema):
    """Per-call retry behaviour. Values are clamped when resolved."""

    max_attempts: int = 1
    backoff_ms: int = 250
    backoff_strategy: BackoffStrategy = BackoffStrategy.FIXED
    abort_on_error_rate: float = 1.0


class ConnectionSecret(BaseSchema):
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None


class ConnectionDraft(BaseSchema):
    """Connection attributes as supplied by a caller."""

    name: str = Field(min_length=1, max_length=255)
    engine: CacheEngine = CacheEngine.REDIS
    host: str = Field(min_length=1, max_length=255)
    port: int = Field(ge=1, le=65535)
    db_index: Optional[int] = None
    tls_enabled: bool = False
    environment: EnvironmentTag = EnvironmentTag.DEV
    tags: list[str] = Field(default_factory=list)
    read_only: bool = False
    force_read_only: bool = False
    timeout_ms: int = 5000
    retry_max_attempts: Optional[int] = None
    retry_backoff_ms: Optional[int] = None
    retry_backoff_strategy: Optional[BackoffStrategy] = None
    retry_abort_on_error_rate: Optional[float] = None

    @field_validator("name", "host")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class ConnectionProfile(ConnectionDraft, TimestampSchema):
    """Stored connection profile."""

    id: str
    secret_ref: str


class ProviderCapabilities(BaseSchema):
    supports_ttl: bool = True
    supports_monitor_stream: bool = False
    supports_slow_log: bool = False
    supports_bulk_delete_preview: bool = True
    supports_snapshot_restore: bool = True
    supports_pattern_scan: bool = True


class ConnectionTestResult(BaseSchema):
    latency_ms: int
    capabilities: ProviderCapabilities


# ==========================================================================
# Namespaces
# ==========================================================================

class NamespaceDraft(BaseSchema):
    """
    Namespace attributes as supplied by a caller.

    key_prefix is only used by the key_prefix strategy and db_index only by
    redis_logical_db; the other field is dropped on create.
    """

    connection_id: str
    name: str = Field(min_length=1, max_length=64)
    strategy: NamespaceStrategy = NamespaceStrategy.KEY_PREFIX
    db_index: Optional[int] = None
    key_prefix: Optional[str] = None


class NamespaceProfile(TimestampSchema):
    id: str
    connection_id: str
    name: str
    engine: CacheEngine
    strategy: NamespaceStrategy
    db_index: Optional[int] = None
    key_prefix: Optional[str] = None


# ==========================================================================
# Keys & Snapshots
# ==========================================================================

class KeyListResult(BaseSchema):
    keys: list[str] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class KeyValueRecord(BaseSchema):
    key: str
    value: Optional[str] = None
    ttl_seconds: Optional[int] = None
    supports_ttl: bool = True


class SnapshotRecord(BaseSchema):
    """Value captured before a mutation so it can be restored later."""

    id: str
    connection_id: str
    key: str
    captured_at: datetime
    redacted_value_hash: str
    value: Optional[str] = None
    ttl_seconds: Optional[int] = None
    reason: SnapshotReason


class MutationResult(BaseSchema):
    success: bool = True


# ==========================================================================
# Workflows
# ==========================================================================

class WorkflowTemplateDraft(BaseSchema):
    name: str = Field(min_length=1, max_length=255)
    kind: WorkflowKind
    parameters: dict[str, Any] = Field(default_factory=dict)
    requires_approval_on_prod: bool = True
    supports_dry_run: bool = True


class WorkflowTemplate(WorkflowTemplateDraft, TimestampSchema):
    id: str


class WorkflowPreviewItem(BaseSchema):
    key: str
    action: PreviewAction
    current_ttl_seconds: Optional[int] = None
    next_ttl_seconds: Optional[int] = None
    value_preview: Optional[str] = None


class WorkflowPreview(BaseSchema):
    kind: WorkflowKind
    estimated_count: int
    truncated: bool
    next_cursor: Optional[str] = None
    items: list[WorkflowPreviewItem] = Field(default_factory=list)


class WorkflowStepResult(BaseSchema):
    step: str
    status: WorkflowStepStatus
    attempts: int
    duration_ms: int
    message: Optional[str] = None


class WorkflowExecutionRecord(BaseSchema):
    """
    One workflow run.

    checkpoint_token is the index of the first unprocessed item and is only
    set on a failed run that still had items left. pending_items holds the
    items this run never reached, frozen at the time of the run; resume
    replays exactly those.
    """

    id: str
    workflow_template_id: Optional[str] = None
    workflow_name: str
    workflow_kind: WorkflowKind
    connection_id: str
    namespace_id: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: WorkflowExecutionStatus = WorkflowExecutionStatus.PENDING
    retry_count: int = 0
    dry_run: bool = False
    parameters: dict[str, Any] = Field(default_factory=dict)
    step_results: list[WorkflowStepResult] = Field(default_factory=list)
    error_message: Optional[str] = None
    checkpoint_token: Optional[str] = None
    pending_items: list[WorkflowPreviewItem] = Field(default_factory=list)
    policy_pack_id: Optional[str] = None
    schedule_window_id: Optional[str] = None
    resumed_from_execution_id: Optional[str] = None


# ==========================================================================
# History & Observability
# ==========================================================================

class HistoryEvent(BaseSchema):
    id: str
    timestamp: datetime
    source: EventSource
    connection_id: str
    environment: EnvironmentTag
    action: str
    key_or_pattern: str
    duration_ms: int = 0
    status: OperationStatus
    redacted_diff: Optional[str] = None
    error_code: Optional[str] = None
    retryable: Optional[bool] = None
    details: Optional[dict[str, Any]] = None


class EngineEventInput(BaseSchema):
    """Event reported by a backend (slow log, monitor stream)."""

    connection_id: str
    action: str
    key_or_pattern: str
    status: OperationStatus = OperationStatus.SUCCESS
    timestamp: Optional[datetime] = None
    environment: Optional[EnvironmentTag] = None
    duration_ms: Optional[float] = None
    error_code: Optional[str] = None
    retryable: Optional[bool] = None
    details: Optional[dict[str, Any]] = None


class ObservabilitySnapshot(BaseSchema):
    id: str
    connection_id: str
    timestamp: datetime
    latency_p50_ms: float
    latency_p95_ms: float
    error_rate: float
    reconnect_count: int = 0
    ops_per_second: float
    slow_op_count: int


class ConnectionHealthSummary(BaseSchema):
    connection_id: str
    connection_name: str
    environment: EnvironmentTag
    status: HealthStatus
    latency_p95_ms: float = 0
    error_rate: float = 0
    ops_per_second: float = 0
    slow_op_count: int = 0


class OperationTrendPoint(BaseSchema):
    bucket: datetime
    operation_count: int
    error_count: int
    avg_duration_ms: int


class ErrorHeatmapCell(BaseSchema):
    connection_id: str
    environment: EnvironmentTag
    error_count: int


class ObservabilityDashboard(BaseSchema):
    generated_at: datetime
    truncated: bool
    health: list[ConnectionHealthSummary]
    trends: list[OperationTrendPoint]
    heatmap: list[ErrorHeatmapCell]
    timeline: list[HistoryEvent]
    slow_operations: list[HistoryEvent]


class KeyspaceActivityPattern(BaseSchema):
    pattern: str
    touch_count: int
    error_count: int
    last_touched_at: Optional[datetime] = None


class KeyspaceActivityPoint(BaseSchema):
    bucket: datetime
    touches: int
    errors: int


class KeyspaceActivityView(BaseSchema):
    generated_at: datetime
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    total_events: int
    truncated: bool
    top_patterns: list[KeyspaceActivityPattern]
    distribution: list[KeyspaceActivityPoint]


class FailedOperationDiagnostic(BaseSchema):
    event: HistoryEvent
    retry_attempts: int
    related_events: list[HistoryEvent] = Field(default_factory=list)
    latest_snapshot: Optional[ObservabilitySnapshot] = None


class FailedOperationDrilldown(BaseSchema):
    generated_at: datetime
    total_error_events: int
    truncated: bool
    diagnostics: list[FailedOperationDiagnostic]


class CompareMetricDelta(BaseSchema):
    metric: str
    baseline: float
    compare: float
    delta: float
    delta_percent: Optional[float] = None
    direction: CompareDirection


class ComparePeriodsResult(BaseSchema):
    generated_at: datetime
    baseline_label: str
    compare_label: str
    baseline_sampled_events: int
    compare_sampled_events: int
    truncated: bool
    metrics: list[CompareMetricDelta]


# ==========================================================================
# Alerts
# ==========================================================================

class AlertEvent(BaseSchema):
    id: str
    created_at: datetime
    connection_id: Optional[str] = None
    environment: Optional[EnvironmentTag] = None
    severity: AlertSeverity
    title: str
    message: str
    source: AlertSource
    read: bool = False


class AlertRuleDraft(BaseSchema):
    name: str = Field(min_length=1, max_length=255)
    metric: AlertMetric
    threshold: float = Field(ge=0)
    lookback_minutes: int = Field(5, ge=1, le=1440)
    severity: AlertSeverity = AlertSeverity.WARNING
    connection_id: Optional[str] = None
    environment: Optional[EnvironmentTag] = None
    enabled: bool = True


class AlertRule(AlertRuleDraft, TimestampSchema):
    id: str


# ==========================================================================
# Governance
# ==========================================================================

class ExecutionWindow(BaseSchema):
    """Recurring weekday and HH:MM range; end before start wraps midnight."""

    id: str
    weekdays: list[Weekday] = Field(default_factory=list)
    start_time: str
    end_time: str
    timezone: str = "UTC"


class GovernancePolicyPackDraft(BaseSchema):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    environments: list[EnvironmentTag] = Field(default_factory=list)
    max_workflow_items: Optional[int] = None
    max_retry_attempts: Optional[int] = None
    scheduling_enabled: bool = False
    execution_windows: list[ExecutionWindow] = Field(default_factory=list)
    enabled: bool = True


class GovernancePolicyPack(TimestampSchema):
    id: str
    name: str
    description: Optional[str] = None
    environments: list[EnvironmentTag] = Field(default_factory=list)
    max_workflow_items: int = 500
    max_retry_attempts: int = 1
    scheduling_enabled: bool = False
    execution_windows: list[ExecutionWindow] = Field(default_factory=list)
    enabled: bool = True


class GovernanceAssignment(BaseSchema):
    connection_id: str
    policy_pack_id: str
    assigned_at: Optional[datetime] = None


# ==========================================================================
# Retention
# ==========================================================================

class RetentionPolicy(BaseSchema):
    dataset: RetentionDataset
    retention_days: int = 30
    storage_budget_mb: int = 512
    auto_purge_oldest: bool = True


class RetentionPurgeResult(BaseSchema):
    dataset: RetentionDataset
    cutoff: datetime
    dry_run: bool
    deleted_rows: int
    freed_bytes: int


class StorageDatasetSummary(BaseSchema):
    dataset: RetentionDataset
    row_count: int
    total_bytes: int
    budget_bytes: int
    usage_ratio: float
    over_budget: bool


class StorageSummary(BaseSchema):
    generated_at: datetime
    datasets: list[StorageDatasetSummary]
    total_bytes: int


# ==========================================================================
# Incident Bundles
# ==========================================================================

ALL_INCIDENT_SECTIONS = [
    IncidentSection.TIMELINE,
    IncidentSection.LOGS,
    IncidentSection.DIAGNOSTICS,
    IncidentSection.METRICS,
]


class IncidentBundleRequest(BaseSchema):
    since: datetime
    until: datetime
    connection_ids: list[str] = Field(default_factory=list)
    includes: list[IncidentSection] = Field(
        default_factory=lambda: list(ALL_INCIDENT_SECTIONS)
    )
    redaction_profile: RedactionProfile = RedactionProfile.DEFAULT
    destination_path: Optional[str] = None


class IncidentManifest(BaseSchema):
    """Record ids included per artifact section."""

    timeline_event_ids: list[str] = Field(default_factory=list)
    log_alert_ids: list[str] = Field(default_factory=list)
    diagnostic_event_ids: list[str] = Field(default_factory=list)
    metric_snapshot_ids: list[str] = Field(default_factory=list)


class IncidentBundlePreview(BaseSchema):
    since: datetime
    until: datetime
    connection_ids: list[str]
    includes: list[IncidentSection]
    redaction_profile: RedactionProfile
    timeline_count: int
    log_count: int
    diagnostic_count: int
    metric_count: int
    estimated_size_bytes: int
    truncated: bool
    manifest: IncidentManifest
    checksum_preview: str


class IncidentBundle(BaseSchema):
    id: str
    created_at: datetime
    since: datetime
    until: datetime
    connection_ids: list[str]
    includes: list[IncidentSection]
    redaction_profile: RedactionProfile
    destination_path: str
    artifact_path: str
    checksum: str
    checksum_preview: str
    truncated: bool
    manifest: IncidentManifest
    timeline_count: int
    log_count: int
    diagnostic_count: int
    metric_count: int
    size_bytes: int = 0


class IncidentExportJob(BaseSchema):
    id: str
    status: IncidentExportStatus
    stage: IncidentExportStage
    progress_percent: int
    created_at: datetime
    updated_at: datetime
    request: IncidentBundleRequest
    destination_path: str
    checksum_preview: Optional[str] = None
    manifest: Optional[IncidentManifest] = None
    truncated: Optional[bool] = None
    bundle: Optional[IncidentBundle] = None
    error_message: Optional[str] = None
