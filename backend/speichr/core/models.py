"""
Speichr - Database Models
=========================

Closed variants used throughout the core, and the SQLAlchemy tables
backing the SQL persistence adapters.
"""

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from speichr.core.database import Base


# ==========================================================================
# Connection Enums
# ==========================================================================

class CacheEngine(str, enum.Enum):
    """Supported cache backend engines."""
    REDIS = "redis"
    MEMCACHED = "memcached"


class EnvironmentTag(str, enum.Enum):
    """Environment a connection is tagged with."""
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class BackoffStrategy(str, enum.Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class NamespaceStrategy(str, enum.Enum):
    """How a namespace isolates its keys on a connection."""
    KEY_PREFIX = "key_prefix"
    REDIS_LOGICAL_DB = "redis_logical_db"


# ==========================================================================
# History / Telemetry Enums
# ==========================================================================

class EventSource(str, enum.Enum):
    """Where a history event originated."""
    APP = "app"          # Operation run by this service
    ENGINE = "engine"    # Event ingested from the backend itself


class OperationStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    BLOCKED = "blocked"  # Rejected by a policy before reaching the backend


class SnapshotReason(str, enum.Enum):
    SET = "set"
    DELETE = "delete"
    WORKFLOW = "workflow"


# ==========================================================================
# Workflow Enums
# ==========================================================================

class WorkflowKind(str, enum.Enum):
    """Bulk mutation kinds a workflow template can describe."""
    DELETE_BY_PATTERN = "delete_by_pattern"
    TTL_NORMALIZE = "ttl_normalize"
    WARMUP_SET = "warmup_set"


class WorkflowExecutionStatus(str, enum.Enum):
    """Execution state machine: pending -> running -> terminal."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    ABORTED = "aborted"


class WorkflowStepStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class PreviewAction(str, enum.Enum):
    """Mutation applied to a single preview item."""
    DELETE = "delete"
    SET_TTL = "set_ttl"
    SET_VALUE = "set_value"


# ==========================================================================
# Alert Enums
# ==========================================================================

class AlertSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertSource(str, enum.Enum):
    APP = "app"
    POLICY = "policy"
    WORKFLOW = "workflow"
    OBSERVABILITY = "observability"


class AlertMetric(str, enum.Enum):
    """Metrics an alert rule can threshold on."""
    ERROR_RATE = "error_rate"
    LATENCY_P95_MS = "latency_p95_ms"
    SLOW_OPERATION_COUNT = "slow_operation_count"
    FAILED_OPERATION_COUNT = "failed_operation_count"


# ==========================================================================
# Governance / Retention Enums
# ==========================================================================

class Weekday(str, enum.Enum):
    """Weekdays in execution windows, Sunday first."""
    SUN = "sun"
    MON = "mon"
    TUE = "tue"
    WED = "wed"
    THU = "thu"
    FRI = "fri"
    SAT = "sat"


class RetentionDataset(str, enum.Enum):
    """Datasets with their own retention policy and storage budget."""
    TIMELINE_EVENTS = "timeline_events"
    OBSERVABILITY_SNAPSHOTS = "observability_snapshots"
    WORKFLOW_HISTORY = "workflow_history"
    INCIDENT_ARTIFACTS = "incident_artifacts"


# ==========================================================================
# Incident Export Enums
# ==========================================================================

class IncidentExportStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    FAILED = "failed"
    SUCCESS = "success"


class IncidentExportStage(str, enum.Enum):
    """Export stages in execution order."""
    QUEUED = "queued"
    COLLECTING = "collecting"
    SERIALIZING = "serializing"
    WRITING = "writing"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class IncidentSection(str, enum.Enum):
    TIMELINE = "timeline"
    LOGS = "logs"
    DIAGNOSTICS = "diagnostics"
    METRICS = "metrics"


class RedactionProfile(str, enum.Enum):
    DEFAULT = "default"
    STRICT = "strict"


# ==========================================================================
# Observability Enums
# ==========================================================================

class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    OFFLINE = "offline"


class CompareDirection(str, enum.Enum):
    IMPROVED = "improved"
    REGRESSED = "regressed"
    UNCHANGED = "unchanged"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )


# ==========================================================================
# Connections
# ==========================================================================

class ConnectionProfileRow(Base, TimestampMixin):
    """Stored connection profile (secrets live in the secret store)."""

    __tablename__ = "connection_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    engine: Mapped[CacheEngine] = mapped_column(Enum(CacheEngine), nullable=False)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False)
    db_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tls_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    environment: Mapped[EnvironmentTag] = mapped_column(
        Enum(EnvironmentTag),
        nullable=False,
        index=True,
    )
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    secret_ref: Mapped[str] = mapped_column(String(36), nullable=False)
    read_only: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    force_read_only: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    timeout_ms: Mapped[int] = mapped_column(Integer, nullable=False)

    # Stored retry defaults
    retry_max_attempts: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    retry_backoff_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    retry_backoff_strategy: Mapped[Optional[BackoffStrategy]] = mapped_column(
        Enum(BackoffStrategy),
        nullable=True,
    )
    retry_abort_on_error_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


class NamespaceRow(Base, TimestampMixin):
    """Named key scope on one connection."""

    __tablename__ = "namespaces"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    connection_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    engine: Mapped[CacheEngine] = mapped_column(Enum(CacheEngine), nullable=False)
    strategy: Mapped[NamespaceStrategy] = mapped_column(Enum(NamespaceStrategy), nullable=False)
    db_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    key_prefix: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class SnapshotRow(Base):
    """Key value captured before a mutation, used for rollback."""

    __tablename__ = "key_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    connection_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    key: Mapped[str] = mapped_column(String(1024), nullable=False, index=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    redacted_value_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ttl_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reason: Mapped[SnapshotReason] = mapped_column(Enum(SnapshotReason), nullable=False)


# ==========================================================================
# Workflows
# ==========================================================================

class WorkflowTemplateRow(Base, TimestampMixin):
    """User-defined workflow template. Built-ins are never stored."""

    __tablename__ = "workflow_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[WorkflowKind] = mapped_column(Enum(WorkflowKind), nullable=False)
    parameters: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    requires_approval_on_prod: Mapped[bool] = mapped_column(Boolean, nullable=False)
    supports_dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False)


class WorkflowExecutionRow(Base):
    """One workflow run, including its step results and checkpoint."""

    __tablename__ = "workflow_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    workflow_template_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    workflow_name: Mapped[str] = mapped_column(String(255), nullable=False)
    workflow_kind: Mapped[WorkflowKind] = mapped_column(Enum(WorkflowKind), nullable=False)
    connection_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    namespace_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    status: Mapped[WorkflowExecutionStatus] = mapped_column(
        Enum(WorkflowExecutionStatus),
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    parameters: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    step_results: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Resume bookkeeping
    checkpoint_token: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    pending_items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    policy_pack_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    schedule_window_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resumed_from_execution_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)


# ==========================================================================
# History & Observability
# ==========================================================================

class HistoryEventRow(Base):
    """Timeline event for one operation."""

    __tablename__ = "history_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    source: Mapped[EventSource] = mapped_column(Enum(EventSource), nullable=False)
    connection_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    environment: Mapped[EnvironmentTag] = mapped_column(Enum(EnvironmentTag), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    key_or_pattern: Mapped[str] = mapped_column(String(1024), nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[OperationStatus] = mapped_column(Enum(OperationStatus), nullable=False)
    redacted_diff: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    retryable: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)


class ObservabilitySnapshotRow(Base):
    """Rolling-window metrics persisted after each operation."""

    __tablename__ = "observability_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    connection_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    latency_p50_ms: Mapped[float] = mapped_column(Float, nullable=False)
    latency_p95_ms: Mapped[float] = mapped_column(Float, nullable=False)
    error_rate: Mapped[float] = mapped_column(Float, nullable=False)
    reconnect_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ops_per_second: Mapped[float] = mapped_column(Float, nullable=False)
    slow_op_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


# ==========================================================================
# Alerts
# ==========================================================================

class AlertEventRow(Base):
    __tablename__ = "alert_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    connection_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    environment: Mapped[Optional[EnvironmentTag]] = mapped_column(
        Enum(EnvironmentTag),
        nullable=True,
    )
    severity: Mapped[AlertSeverity] = mapped_column(Enum(AlertSeverity), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[AlertSource] = mapped_column(Enum(AlertSource), nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)


class AlertRuleRow(Base, TimestampMixin):
    __tablename__ = "alert_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    metric: Mapped[AlertMetric] = mapped_column(Enum(AlertMetric), nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    lookback_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(Enum(AlertSeverity), nullable=False)
    connection_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    environment: Mapped[Optional[EnvironmentTag]] = mapped_column(
        Enum(EnvironmentTag),
        nullable=True,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ==========================================================================
# Governance
# ==========================================================================

class GovernancePolicyPackRow(Base, TimestampMixin):
    """Named bundle of governance limits assignable to connections."""

    __tablename__ = "governance_policy_packs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    environments: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    max_workflow_items: Mapped[int] = mapped_column(Integer, nullable=False)
    max_retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduling_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    execution_windows: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class GovernanceAssignmentRow(Base):
    """At most one policy pack per connection."""

    __tablename__ = "governance_assignments"

    connection_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    policy_pack_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ==========================================================================
# Retention & Incident Bundles
# ==========================================================================

class RetentionPolicyRow(Base):
    __tablename__ = "retention_policies"

    dataset: Mapped[RetentionDataset] = mapped_column(
        Enum(RetentionDataset),
        primary_key=True,
    )
    retention_days: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_budget_mb: Mapped[int] = mapped_column(Integer, nullable=False)
    auto_purge_oldest: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class IncidentBundleRow(Base):
    """Metadata of a persisted incident export artifact."""

    __tablename__ = "incident_bundles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    since: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    connection_ids: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    includes: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    redaction_profile: Mapped[RedactionProfile] = mapped_column(
        Enum(RedactionProfile),
        nullable=False,
    )
    destination_path: Mapped[str] = mapped_column(Text, nullable=False)
    artifact_path: Mapped[str] = mapped_column(Text, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    checksum_preview: Mapped[str] = mapped_column(String(64), nullable=False)
    truncated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    manifest: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    timeline_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    log_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    diagnostic_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    metric_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
