"""
Speichr - Ports
===============

Narrow contracts the orchestration core consumes. In-memory and SQL
implementations live in speichr.core.repositories; the cache gateway in
speichr.core.gateway.

Every query returns newest records first.
"""

from datetime import datetime
from typing import Optional, Protocol

from speichr.core.models import RetentionDataset
from speichr.core.schemas import (
    AlertEvent,
    AlertRule,
    ConnectionDraft,
    ConnectionProfile,
    ConnectionSecret,
    ConnectionTestResult,
    GovernanceAssignment,
    GovernancePolicyPack,
    HistoryEvent,
    IncidentBundle,
    KeyListResult,
    KeyValueRecord,
    NamespaceProfile,
    ObservabilitySnapshot,
    ProviderCapabilities,
    RetentionPolicy,
    RetentionPurgeResult,
    SnapshotRecord,
    StorageSummary,
    WorkflowExecutionRecord,
    WorkflowTemplate,
)


class ConnectionRepository(Protocol):
    async def list(self) -> list[ConnectionProfile]: ...

    async def find_by_id(self, id: str) -> Optional[ConnectionProfile]: ...

    async def save(self, profile: ConnectionProfile) -> None: ...

    async def delete(self, id: str) -> None: ...


class NamespaceRepository(Protocol):
    async def list_by_connection(self, connection_id: str) -> list[NamespaceProfile]: ...

    async def find_by_id(self, id: str) -> Optional[NamespaceProfile]: ...

    async def save(self, namespace: NamespaceProfile) -> None: ...

    async def delete(self, id: str) -> None: ...


class SecretStore(Protocol):
    """get_secret raises when nothing is stored for the connection."""

    async def save_secret(self, connection_id: str, secret: ConnectionSecret) -> None: ...

    async def get_secret(self, connection_id: str) -> ConnectionSecret: ...

    async def delete_secret(self, connection_id: str) -> None: ...


class CacheGateway(Protocol):
    """Backend access. Transport errors raise retryable CONNECTION_FAILED."""

    async def test_connection(
        self, profile: ConnectionDraft, secret: ConnectionSecret
    ) -> ConnectionTestResult: ...

    async def get_capabilities(self, profile: ConnectionDraft) -> ProviderCapabilities: ...

    async def list_keys(
        self,
        profile: ConnectionProfile,
        secret: ConnectionSecret,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> KeyListResult: ...

    async def search_keys(
        self,
        profile: ConnectionProfile,
        secret: ConnectionSecret,
        pattern: str,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> KeyListResult: ...

    async def get_value(
        self, profile: ConnectionProfile, secret: ConnectionSecret, key: str
    ) -> KeyValueRecord: ...

    async def set_value(
        self,
        profile: ConnectionProfile,
        secret: ConnectionSecret,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
    ) -> None: ...

    async def delete_key(
        self, profile: ConnectionProfile, secret: ConnectionSecret, key: str
    ) -> None: ...


class SnapshotRepository(Protocol):
    async def save(self, record: SnapshotRecord) -> None: ...

    async def list(
        self, connection_id: str, key: Optional[str] = None, limit: int = 50
    ) -> list[SnapshotRecord]: ...

    async def find_latest(self, connection_id: str, key: str) -> Optional[SnapshotRecord]: ...

    async def find_by_id(self, id: str) -> Optional[SnapshotRecord]: ...


class WorkflowTemplateRepository(Protocol):
    async def save(self, template: WorkflowTemplate) -> None: ...

    async def list(self) -> list[WorkflowTemplate]: ...

    async def find_by_id(self, id: str) -> Optional[WorkflowTemplate]: ...

    async def delete(self, id: str) -> None: ...


class WorkflowExecutionRepository(Protocol):
    async def save(self, record: WorkflowExecutionRecord) -> None: ...

    async def list(
        self,
        connection_id: Optional[str] = None,
        template_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[WorkflowExecutionRecord]: ...

    async def find_by_id(self, id: str) -> Optional[WorkflowExecutionRecord]: ...


class HistoryRepository(Protocol):
    async def append(self, event: HistoryEvent) -> None: ...

    async def query(
        self,
        connection_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[HistoryEvent]: ...


class ObservabilityRepository(Protocol):
    async def append(self, snapshot: ObservabilitySnapshot) -> None: ...

    async def query(
        self,
        connection_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[ObservabilitySnapshot]: ...


class AlertRepository(Protocol):
    async def append(self, event: AlertEvent) -> None: ...

    async def list(self, unread_only: bool = False, limit: int = 100) -> list[AlertEvent]: ...

    async def count_unread(self) -> int: ...

    async def mark_read(self, id: str) -> None: ...

    async def mark_all_read(self) -> None: ...


class AlertRuleRepository(Protocol):
    async def list(self) -> list[AlertRule]: ...

    async def find_by_id(self, id: str) -> Optional[AlertRule]: ...

    async def save(self, rule: AlertRule) -> None: ...

    async def delete(self, id: str) -> None: ...


class GovernancePolicyPackRepository(Protocol):
    async def list(self) -> list[GovernancePolicyPack]: ...

    async def find_by_id(self, id: str) -> Optional[GovernancePolicyPack]: ...

    async def save(self, policy_pack: GovernancePolicyPack) -> None: ...

    async def delete(self, id: str) -> None: ...


class GovernanceAssignmentRepository(Protocol):
    async def list(self, connection_id: Optional[str] = None) -> list[GovernanceAssignment]: ...

    async def assign(self, connection_id: str, policy_pack_id: Optional[str]) -> None:
        """Assign a pack; None removes the assignment."""
        ...


class RetentionRepository(Protocol):
    async def list_policies(self) -> list[RetentionPolicy]: ...

    async def save_policy(self, policy: RetentionPolicy) -> None: ...

    async def purge(
        self,
        dataset: RetentionDataset,
        older_than: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> RetentionPurgeResult: ...

    async def get_storage_summary(self) -> StorageSummary: ...


class IncidentBundleRepository(Protocol):
    async def save(self, bundle: IncidentBundle) -> None: ...

    async def list(self, limit: int = 50) -> list[IncidentBundle]: ...
