"""
Speichr - In-Memory Repositories
================================

Dict/list backed implementations of every persistence port. Used by the
default "memory" storage backend and throughout the test suite.

Records are copied on the way in and out so callers never share state
with the store.
"""

from datetime import datetime, timedelta
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

from speichr.core.errors import ErrorCode, OperationFailure
from speichr.core.models import RetentionDataset
from speichr.core.repositories.common import (
    ESTIMATED_ROW_BYTES,
    default_retention_policy,
    rows_over_budget,
    sort_policies,
    summarize_dataset,
)
from speichr.core.schemas import (
    AlertEvent,
    AlertRule,
    ConnectionProfile,
    ConnectionSecret,
    GovernanceAssignment,
    GovernancePolicyPack,
    HistoryEvent,
    IncidentBundle,
    NamespaceProfile,
    ObservabilitySnapshot,
    RetentionPolicy,
    RetentionPurgeResult,
    SnapshotRecord,
    StorageSummary,
    WorkflowExecutionRecord,
    WorkflowTemplate,
)
from speichr.core.utils import Clock, ensure_utc, utc_now

ModelT = TypeVar("ModelT", bound=BaseModel)


def _copy(model: ModelT) -> ModelT:
    return model.model_copy(deep=True)


# ==========================================================================
# Keyed stores
# ==========================================================================

class _KeyedStore(Generic[ModelT]):
    """Dict of models keyed by id."""

    def __init__(self) -> None:
        self._items: dict[str, ModelT] = {}

    async def save(self, item: ModelT) -> None:
        self._items[item.id] = _copy(item)  # type: ignore[attr-defined]

    async def find_by_id(self, id: str) -> Optional[ModelT]:
        item = self._items.get(id)
        return _copy(item) if item else None

    async def delete(self, id: str) -> None:
        self._items.pop(id, None)


class InMemoryConnectionRepository(_KeyedStore[ConnectionProfile]):
    async def list(self) -> list[ConnectionProfile]:
        profiles = sorted(self._items.values(), key=lambda p: p.name.lower())
        return [_copy(p) for p in profiles]


class InMemoryNamespaceRepository(_KeyedStore[NamespaceProfile]):
    async def list_by_connection(self, connection_id: str) -> list[NamespaceProfile]:
        namespaces = sorted(
            (ns for ns in self._items.values() if ns.connection_id == connection_id),
            key=lambda ns: ns.name.lower(),
        )
        return [_copy(ns) for ns in namespaces]


class InMemoryWorkflowTemplateRepository(_KeyedStore[WorkflowTemplate]):
    async def list(self) -> list[WorkflowTemplate]:
        templates = sorted(self._items.values(), key=lambda t: t.updated_at, reverse=True)
        return [_copy(t) for t in templates]


class InMemoryAlertRuleRepository(_KeyedStore[AlertRule]):
    async def list(self) -> list[AlertRule]:
        rules = sorted(self._items.values(), key=lambda r: r.created_at)
        return [_copy(r) for r in rules]


class InMemoryGovernancePolicyPackRepository(_KeyedStore[GovernancePolicyPack]):
    async def list(self) -> list[GovernancePolicyPack]:
        packs = sorted(self._items.values(), key=lambda p: p.name.lower())
        return [_copy(p) for p in packs]


class InMemorySnapshotRepository(_KeyedStore[SnapshotRecord]):
    async def list(
        self, connection_id: str, key: Optional[str] = None, limit: int = 50
    ) -> list[SnapshotRecord]:
        records = [
            r
            for r in self._items.values()
            if r.connection_id == connection_id and (key is None or r.key == key)
        ]
        records.sort(key=lambda r: r.captured_at, reverse=True)
        return [_copy(r) for r in records[:limit]]

    async def find_latest(self, connection_id: str, key: str) -> Optional[SnapshotRecord]:
        records = await self.list(connection_id, key, limit=1)
        return records[0] if records else None


class InMemorySecretStore:
    """Process-local credential store."""

    def __init__(self) -> None:
        self._secrets: dict[str, ConnectionSecret] = {}

    async def save_secret(self, connection_id: str, secret: ConnectionSecret) -> None:
        self._secrets[connection_id] = _copy(secret)

    async def get_secret(self, connection_id: str) -> ConnectionSecret:
        secret = self._secrets.get(connection_id)
        if secret is None:
            raise OperationFailure(
                ErrorCode.VALIDATION_ERROR,
                "No secret is stored for this connection.",
                False,
                {"connectionId": connection_id},
            )
        return _copy(secret)

    async def delete_secret(self, connection_id: str) -> None:
        self._secrets.pop(connection_id, None)


# ==========================================================================
# Time-ordered stores (retention datasets)
# ==========================================================================

class _TimelineStore(Generic[ModelT]):
    """
    Newest-first list of records with a timestamp attribute.

    Implements the row accounting the in-memory retention repository uses.
    """

    timestamp_field = "timestamp"

    def __init__(self) -> None:
        self._items: list[ModelT] = []

    def _timestamp(self, item: ModelT) -> datetime:
        return getattr(item, self.timestamp_field)

    def _insert(self, item: ModelT) -> None:
        self._items.insert(0, _copy(item))
        self._items.sort(key=self._timestamp, reverse=True)

    def _filter(
        self,
        connection_id: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime],
        limit: int,
    ) -> list[ModelT]:
        since = ensure_utc(since) if since else None
        until = ensure_utc(until) if until else None
        matched = []
        for item in self._items:
            if connection_id and getattr(item, "connection_id", None) != connection_id:
                continue
            ts = ensure_utc(self._timestamp(item))
            if since and ts < since:
                continue
            if until and ts > until:
                continue
            matched.append(_copy(item))
            if len(matched) >= limit:
                break
        return matched

    def row_count(self) -> int:
        return len(self._items)

    def recorded_bytes(self) -> Optional[int]:
        """Stored payload size when the records carry one."""
        return None

    def purge(self, cutoff: datetime, trim_oldest: int, dry_run: bool) -> int:
        """Drop rows older than cutoff, then the oldest rows still over budget."""
        keep = [item for item in self._items if self._timestamp(item) >= cutoff]
        expired = len(self._items) - len(keep)
        extra = max(0, min(len(keep), trim_oldest - expired))
        if extra:
            keep = keep[: len(keep) - extra]
        deleted = len(self._items) - len(keep)
        if not dry_run:
            self._items = keep
        return deleted


class InMemoryHistoryRepository(_TimelineStore[HistoryEvent]):
    async def append(self, event: HistoryEvent) -> None:
        self._insert(event)

    async def query(
        self,
        connection_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[HistoryEvent]:
        return self._filter(connection_id, since, until, limit)


class InMemoryObservabilityRepository(_TimelineStore[ObservabilitySnapshot]):
    async def append(self, snapshot: ObservabilitySnapshot) -> None:
        self._insert(snapshot)

    async def query(
        self,
        connection_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[ObservabilitySnapshot]:
        return self._filter(connection_id, since, until, limit)


class InMemoryWorkflowExecutionRepository(_TimelineStore[WorkflowExecutionRecord]):
    timestamp_field = "started_at"

    async def save(self, record: WorkflowExecutionRecord) -> None:
        self._items = [item for item in self._items if item.id != record.id]
        self._insert(record)

    async def list(
        self,
        connection_id: Optional[str] = None,
        template_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[WorkflowExecutionRecord]:
        records = self._filter(connection_id, None, None, len(self._items) or 1)
        if template_id:
            records = [r for r in records if r.workflow_template_id == template_id]
        return records[:limit]

    async def find_by_id(self, id: str) -> Optional[WorkflowExecutionRecord]:
        for item in self._items:
            if item.id == id:
                return _copy(item)
        return None


class InMemoryIncidentBundleRepository(_TimelineStore[IncidentBundle]):
    timestamp_field = "created_at"

    async def save(self, bundle: IncidentBundle) -> None:
        self._items = [item for item in self._items if item.id != bundle.id]
        self._insert(bundle)

    async def list(self, limit: int = 50) -> list[IncidentBundle]:
        return [_copy(item) for item in self._items[:limit]]

    def recorded_bytes(self) -> Optional[int]:
        return sum(item.size_bytes for item in self._items)


class InMemoryAlertRepository:
    def __init__(self) -> None:
        self._events: dict[str, AlertEvent] = {}

    async def append(self, event: AlertEvent) -> None:
        self._events[event.id] = _copy(event)

    async def list(self, unread_only: bool = False, limit: int = 100) -> list[AlertEvent]:
        events = [e for e in self._events.values() if not unread_only or not e.read]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return [_copy(e) for e in events[:limit]]

    async def count_unread(self) -> int:
        return sum(1 for e in self._events.values() if not e.read)

    async def mark_read(self, id: str) -> None:
        event = self._events.get(id)
        if event:
            event.read = True

    async def mark_all_read(self) -> None:
        for event in self._events.values():
            event.read = True


class InMemoryGovernanceAssignmentRepository:
    def __init__(self, clock: Clock = utc_now) -> None:
        self._assignments: dict[str, GovernanceAssignment] = {}
        self._clock = clock

    async def list(self, connection_id: Optional[str] = None) -> list[GovernanceAssignment]:
        if connection_id:
            assignment = self._assignments.get(connection_id)
            return [_copy(assignment)] if assignment else []
        return [_copy(a) for a in self._assignments.values()]

    async def assign(self, connection_id: str, policy_pack_id: Optional[str]) -> None:
        if not policy_pack_id:
            self._assignments.pop(connection_id, None)
            return
        self._assignments[connection_id] = GovernanceAssignment(
            connection_id=connection_id,
            policy_pack_id=policy_pack_id,
            assigned_at=self._clock(),
        )


# ==========================================================================
# Retention
# ==========================================================================

class InMemoryRetentionRepository:
    """
    Retention policies plus row accounting over the in-memory stores.

    Datasets without a registered store report zero usage.
    """

    def __init__(
        self,
        stores: Optional[dict[RetentionDataset, _TimelineStore]] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._stores = dict(stores or {})
        self._clock = clock
        self._policies = {ds: default_retention_policy(ds) for ds in RetentionDataset}

    async def list_policies(self) -> list[RetentionPolicy]:
        return [_copy(p) for p in sort_policies(list(self._policies.values()))]

    async def save_policy(self, policy: RetentionPolicy) -> None:
        self._policies[policy.dataset] = _copy(policy)

    async def purge(
        self,
        dataset: RetentionDataset,
        older_than: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> RetentionPurgeResult:
        policy = self._policies[dataset]
        cutoff = older_than or self._clock() - timedelta(days=policy.retention_days)
        store = self._stores.get(dataset)

        deleted = 0
        if store is not None:
            # Explicit cutoffs purge by age only
            trim = 0 if older_than else rows_over_budget(policy, store.row_count())
            deleted = store.purge(cutoff, trim, dry_run)

        return RetentionPurgeResult(
            dataset=dataset,
            cutoff=cutoff,
            dry_run=dry_run,
            deleted_rows=deleted,
            freed_bytes=deleted * ESTIMATED_ROW_BYTES[dataset],
        )

    async def get_storage_summary(self) -> StorageSummary:
        datasets = []
        for policy in sort_policies(list(self._policies.values())):
            store = self._stores.get(policy.dataset)
            if store is None:
                datasets.append(summarize_dataset(policy, 0))
                continue
            datasets.append(
                summarize_dataset(policy, store.row_count(), store.recorded_bytes())
            )

        return StorageSummary(
            generated_at=self._clock(),
            datasets=datasets,
            total_bytes=sum(d.total_bytes for d in datasets),
        )
