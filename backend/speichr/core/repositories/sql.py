"""
Speichr - SQL Repositories
==========================

SQLAlchemy implementations of the persistence ports. Each call opens its
own session from the injected factory and commits before returning.

Timestamps are normalized to UTC on write; SQLite hands them back naive,
so every datetime is re-tagged as UTC on read.
"""

from datetime import datetime, timedelta
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from speichr.core.database import Base
from speichr.core.models import (
    AlertEventRow,
    AlertRuleRow,
    ConnectionProfileRow,
    GovernanceAssignmentRow,
    GovernancePolicyPackRow,
    HistoryEventRow,
    IncidentBundleRow,
    NamespaceRow,
    ObservabilitySnapshotRow,
    RetentionDataset,
    RetentionPolicyRow,
    SnapshotRow,
    WorkflowExecutionRow,
    WorkflowTemplateRow,
)
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
SessionFactory = async_sessionmaker[AsyncSession]


def _to_row(row_cls: type[Base], model: BaseModel, json_fields: tuple[str, ...] = ()) -> Base:
    """ORM row for a schema; JSON columns get their JSON-mode dump."""
    data = model.model_dump()
    if json_fields:
        as_json = model.model_dump(mode="json", include=set(json_fields))
        data.update(as_json)
    for name, value in data.items():
        if isinstance(value, datetime):
            data[name] = ensure_utc(value)
    return row_cls(**data)


def _from_row(schema_cls: type[ModelT], row: Base) -> ModelT:
    model = schema_cls.model_validate(row)
    for name in schema_cls.model_fields:
        value = getattr(model, name)
        if isinstance(value, datetime):
            setattr(model, name, ensure_utc(value))
    return model


class _SqlStore(Generic[ModelT]):
    """Shared save/find/delete over one table keyed by id."""

    row_cls: type[Base]
    schema_cls: type[ModelT]
    json_fields: tuple[str, ...] = ()

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def save(self, item: ModelT) -> None:
        async with self._session_factory() as session:
            await session.merge(_to_row(self.row_cls, item, self.json_fields))
            await session.commit()

    async def find_by_id(self, id: str) -> Optional[ModelT]:
        async with self._session_factory() as session:
            row = await session.get(self.row_cls, id)
            return _from_row(self.schema_cls, row) if row else None

    async def delete(self, id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(self.row_cls).where(self.row_cls.id == id))
            await session.commit()

    async def _select(self, statement: Any) -> list[ModelT]:
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [_from_row(self.schema_cls, row) for row in result.scalars().all()]


def _time_window(statement: Any, column: Any, since: Optional[datetime], until: Optional[datetime]) -> Any:
    if since:
        statement = statement.where(column >= ensure_utc(since))
    if until:
        statement = statement.where(column <= ensure_utc(until))
    return statement


# ==========================================================================
# Keyed stores
# ==========================================================================

class SqlConnectionRepository(_SqlStore[ConnectionProfile]):
    row_cls = ConnectionProfileRow
    schema_cls = ConnectionProfile
    json_fields = ("tags",)

    async def list(self) -> list[ConnectionProfile]:
        return await self._select(select(ConnectionProfileRow).order_by(ConnectionProfileRow.name))


class SqlNamespaceRepository(_SqlStore[NamespaceProfile]):
    row_cls = NamespaceRow
    schema_cls = NamespaceProfile

    async def list_by_connection(self, connection_id: str) -> list[NamespaceProfile]:
        return await self._select(
            select(NamespaceRow)
            .where(NamespaceRow.connection_id == connection_id)
            .order_by(NamespaceRow.name)
        )


class SqlWorkflowTemplateRepository(_SqlStore[WorkflowTemplate]):
    row_cls = WorkflowTemplateRow
    schema_cls = WorkflowTemplate
    json_fields = ("parameters",)

    async def list(self) -> list[WorkflowTemplate]:
        return await self._select(select(WorkflowTemplateRow).order_by(WorkflowTemplateRow.name))


class SqlAlertRuleRepository(_SqlStore[AlertRule]):
    row_cls = AlertRuleRow
    schema_cls = AlertRule

    async def list(self) -> list[AlertRule]:
        return await self._select(select(AlertRuleRow).order_by(AlertRuleRow.name))


class SqlGovernancePolicyPackRepository(_SqlStore[GovernancePolicyPack]):
    row_cls = GovernancePolicyPackRow
    schema_cls = GovernancePolicyPack
    json_fields = ("environments", "execution_windows")

    async def list(self) -> list[GovernancePolicyPack]:
        return await self._select(
            select(GovernancePolicyPackRow).order_by(GovernancePolicyPackRow.name)
        )


class SqlSnapshotRepository(_SqlStore[SnapshotRecord]):
    row_cls = SnapshotRow
    schema_cls = SnapshotRecord

    async def list(
        self, connection_id: str, key: Optional[str] = None, limit: int = 50
    ) -> list[SnapshotRecord]:
        statement = select(SnapshotRow).where(SnapshotRow.connection_id == connection_id)
        if key:
            statement = statement.where(SnapshotRow.key == key)
        return await self._select(statement.order_by(SnapshotRow.captured_at.desc()).limit(limit))

    async def find_latest(self, connection_id: str, key: str) -> Optional[SnapshotRecord]:
        found = await self.list(connection_id, key=key, limit=1)
        return found[0] if found else None


# ==========================================================================
# Timelines
# ==========================================================================

class SqlHistoryRepository(_SqlStore[HistoryEvent]):
    row_cls = HistoryEventRow
    schema_cls = HistoryEvent
    json_fields = ("details",)

    async def append(self, event: HistoryEvent) -> None:
        await self.save(event)

    async def query(
        self,
        connection_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[HistoryEvent]:
        statement = select(HistoryEventRow)
        if connection_id:
            statement = statement.where(HistoryEventRow.connection_id == connection_id)
        statement = _time_window(statement, HistoryEventRow.timestamp, since, until)
        return await self._select(statement.order_by(HistoryEventRow.timestamp.desc()).limit(limit))


class SqlObservabilityRepository(_SqlStore[ObservabilitySnapshot]):
    row_cls = ObservabilitySnapshotRow
    schema_cls = ObservabilitySnapshot

    async def append(self, snapshot: ObservabilitySnapshot) -> None:
        await self.save(snapshot)

    async def query(
        self,
        connection_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[ObservabilitySnapshot]:
        statement = select(ObservabilitySnapshotRow)
        if connection_id:
            statement = statement.where(ObservabilitySnapshotRow.connection_id == connection_id)
        statement = _time_window(statement, ObservabilitySnapshotRow.timestamp, since, until)
        return await self._select(
            statement.order_by(ObservabilitySnapshotRow.timestamp.desc()).limit(limit)
        )


class SqlWorkflowExecutionRepository(_SqlStore[WorkflowExecutionRecord]):
    row_cls = WorkflowExecutionRow
    schema_cls = WorkflowExecutionRecord
    json_fields = ("parameters", "step_results", "pending_items")

    async def list(
        self,
        connection_id: Optional[str] = None,
        template_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[WorkflowExecutionRecord]:
        statement = select(WorkflowExecutionRow)
        if connection_id:
            statement = statement.where(WorkflowExecutionRow.connection_id == connection_id)
        if template_id:
            statement = statement.where(WorkflowExecutionRow.workflow_template_id == template_id)
        return await self._select(
            statement.order_by(WorkflowExecutionRow.started_at.desc()).limit(limit)
        )


class SqlIncidentBundleRepository(_SqlStore[IncidentBundle]):
    row_cls = IncidentBundleRow
    schema_cls = IncidentBundle
    json_fields = ("connection_ids", "includes", "manifest")

    async def list(self, limit: int = 50) -> list[IncidentBundle]:
        return await self._select(
            select(IncidentBundleRow).order_by(IncidentBundleRow.created_at.desc()).limit(limit)
        )


class SqlAlertRepository(_SqlStore[AlertEvent]):
    row_cls = AlertEventRow
    schema_cls = AlertEvent

    async def append(self, event: AlertEvent) -> None:
        await self.save(event)

    async def list(self, unread_only: bool = False, limit: int = 100) -> list[AlertEvent]:
        statement = select(AlertEventRow)
        if unread_only:
            statement = statement.where(AlertEventRow.read.is_(False))
        return await self._select(statement.order_by(AlertEventRow.created_at.desc()).limit(limit))

    async def count_unread(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(AlertEventRow).where(AlertEventRow.read.is_(False))
            )
            return result.scalar_one()

    async def mark_read(self, id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(update(AlertEventRow).where(AlertEventRow.id == id).values(read=True))
            await session.commit()

    async def mark_all_read(self) -> None:
        async with self._session_factory() as session:
            await session.execute(update(AlertEventRow).values(read=True))
            await session.commit()


class SqlGovernanceAssignmentRepository:
    def __init__(self, session_factory: SessionFactory, clock: Clock = utc_now):
        self._session_factory = session_factory
        self._clock = clock

    async def list(self, connection_id: Optional[str] = None) -> list[GovernanceAssignment]:
        statement = select(GovernanceAssignmentRow)
        if connection_id:
            statement = statement.where(GovernanceAssignmentRow.connection_id == connection_id)
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [_from_row(GovernanceAssignment, row) for row in result.scalars().all()]

    async def assign(self, connection_id: str, policy_pack_id: Optional[str]) -> None:
        async with self._session_factory() as session:
            if policy_pack_id:
                await session.merge(
                    GovernanceAssignmentRow(
                        connection_id=connection_id,
                        policy_pack_id=policy_pack_id,
                        assigned_at=ensure_utc(self._clock()),
                    )
                )
            else:
                await session.execute(
                    delete(GovernanceAssignmentRow).where(
                        GovernanceAssignmentRow.connection_id == connection_id
                    )
                )
            await session.commit()


# ==========================================================================
# Retention
# ==========================================================================

# Table and age column behind each retention dataset
DATASET_TABLES = {
    RetentionDataset.TIMELINE_EVENTS: (HistoryEventRow, HistoryEventRow.timestamp),
    RetentionDataset.OBSERVABILITY_SNAPSHOTS: (
        ObservabilitySnapshotRow,
        ObservabilitySnapshotRow.timestamp,
    ),
    RetentionDataset.WORKFLOW_HISTORY: (WorkflowExecutionRow, WorkflowExecutionRow.started_at),
    RetentionDataset.INCIDENT_ARTIFACTS: (IncidentBundleRow, IncidentBundleRow.created_at),
}

# Datasets whose rows record their own payload size
DATASET_SIZE_COLUMNS = {
    RetentionDataset.INCIDENT_ARTIFACTS: IncidentBundleRow.size_bytes,
}


class SqlRetentionRepository:
    """Retention policies and purges over the dataset tables."""

    def __init__(self, session_factory: SessionFactory, clock: Clock = utc_now):
        self._session_factory = session_factory
        self._clock = clock

    async def list_policies(self) -> list[RetentionPolicy]:
        async with self._session_factory() as session:
            result = await session.execute(select(RetentionPolicyRow))
            stored = {row.dataset: _from_row(RetentionPolicy, row) for row in result.scalars()}
        policies = [stored.get(ds) or default_retention_policy(ds) for ds in RetentionDataset]
        return sort_policies(policies)

    async def save_policy(self, policy: RetentionPolicy) -> None:
        async with self._session_factory() as session:
            await session.merge(RetentionPolicyRow(**policy.model_dump()))
            await session.commit()

    async def purge(
        self,
        dataset: RetentionDataset,
        older_than: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> RetentionPurgeResult:
        policy = await self._policy(dataset)
        cutoff = ensure_utc(older_than or self._clock() - timedelta(days=policy.retention_days))
        row_cls, age = DATASET_TABLES[dataset]

        async with self._session_factory() as session:
            expired_ids = list(
                (await session.execute(select(row_cls.id).where(age < cutoff))).scalars()
            )

            trim_ids: list[str] = []
            if older_than is None:
                total = (
                    await session.execute(select(func.count()).select_from(row_cls))
                ).scalar_one()
                trim = rows_over_budget(policy, total) - len(expired_ids)
                if trim > 0:
                    trim_ids = list(
                        (
                            await session.execute(
                                select(row_cls.id)
                                .where(age >= cutoff)
                                .order_by(age.asc())
                                .limit(trim)
                            )
                        ).scalars()
                    )

            doomed = expired_ids + trim_ids
            if doomed and not dry_run:
                await session.execute(delete(row_cls).where(row_cls.id.in_(doomed)))
                await session.commit()

        return RetentionPurgeResult(
            dataset=dataset,
            cutoff=cutoff,
            dry_run=dry_run,
            deleted_rows=len(doomed),
            freed_bytes=len(doomed) * ESTIMATED_ROW_BYTES[dataset],
        )

    async def get_storage_summary(self) -> StorageSummary:
        datasets = []
        async with self._session_factory() as session:
            for policy in await self.list_policies():
                row_cls, _ = DATASET_TABLES[policy.dataset]
                count = (
                    await session.execute(select(func.count()).select_from(row_cls))
                ).scalar_one()
                recorded = None
                size_column = DATASET_SIZE_COLUMNS.get(policy.dataset)
                if size_column is not None:
                    recorded = (
                        await session.execute(select(func.coalesce(func.sum(size_column), 0)))
                    ).scalar_one()
                datasets.append(summarize_dataset(policy, count, recorded))

        return StorageSummary(
            generated_at=self._clock(),
            datasets=datasets,
            total_bytes=sum(d.total_bytes for d in datasets),
        )

    async def _policy(self, dataset: RetentionDataset) -> RetentionPolicy:
        async with self._session_factory() as session:
            row = await session.get(RetentionPolicyRow, dataset)
            return _from_row(RetentionPolicy, row) if row else default_retention_policy(dataset)
