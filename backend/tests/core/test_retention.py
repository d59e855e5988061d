"""
Retention Enforcer Tests
========================

Budget enforcement, alert cooldowns and dataset purges.
"""

from datetime import timedelta

import pytest

from speichr.core.models import (
    AlertSeverity,
    AlertSource,
    EnvironmentTag,
    EventSource,
    OperationStatus,
    RedactionProfile,
    RetentionDataset,
)
from speichr.core.orchestration.alerts import AlertEmitter
from speichr.core.orchestration.retention import RetentionEnforcer
from speichr.core.repositories.common import summarize_dataset
from speichr.core.schemas import (
    ALL_INCIDENT_SECTIONS,
    HistoryEvent,
    IncidentBundle,
    IncidentManifest,
    RetentionPolicy,
    RetentionPurgeResult,
    StorageSummary,
)
from speichr.core.utils import new_id

MB = 1024 * 1024


class FakeRetentionRepository:
    """Retention repository with fixed usage that counts purges."""

    def __init__(self, clock, row_counts, auto_purge=True, deleted_rows=10):
        self._clock = clock
        self.row_counts = row_counts
        self.auto_purge = auto_purge
        self.deleted_rows = deleted_rows
        self.purges: list[RetentionDataset] = []

    def _policy(self, dataset):
        return RetentionPolicy(
            dataset=dataset,
            retention_days=30,
            storage_budget_mb=1,
            auto_purge_oldest=self.auto_purge,
        )

    async def list_policies(self):
        return [self._policy(ds) for ds in RetentionDataset]

    async def save_policy(self, policy):
        raise NotImplementedError

    async def purge(self, dataset, older_than=None, dry_run=False):
        self.purges.append(dataset)
        return RetentionPurgeResult(
            dataset=dataset,
            cutoff=self._clock(),
            dry_run=dry_run,
            deleted_rows=self.deleted_rows,
            freed_bytes=self.deleted_rows * 512,
        )

    async def get_storage_summary(self):
        datasets = [
            summarize_dataset(self._policy(ds), self.row_counts.get(ds, 0))
            for ds in RetentionDataset
        ]
        return StorageSummary(
            generated_at=self._clock(),
            datasets=datasets,
            total_bytes=sum(d.total_bytes for d in datasets),
        )


class BrokenRetentionRepository(FakeRetentionRepository):
    async def get_storage_summary(self):
        raise RuntimeError("database is locked")


# 512 bytes per timeline row against a 1 MB budget
OVER_BUDGET_ROWS = {RetentionDataset.TIMELINE_EVENTS: 3000}
NEAR_BUDGET_ROWS = {RetentionDataset.TIMELINE_EVENTS: 1900}


@pytest.fixture
def emitter(repos, clock) -> AlertEmitter:
    return AlertEmitter(repos.alerts, clock=clock)


def make_event(clock, **overrides) -> HistoryEvent:
    values = {
        "id": new_id(),
        "timestamp": clock(),
        "source": EventSource.APP,
        "connection_id": "conn-1",
        "environment": EnvironmentTag.DEV,
        "action": "key.get",
        "key_or_pattern": "a",
        "status": OperationStatus.SUCCESS,
    }
    values.update(overrides)
    return HistoryEvent(**values)


def make_bundle(clock, size_bytes) -> IncidentBundle:
    return IncidentBundle(
        id=new_id(),
        created_at=clock(),
        since=clock() - timedelta(hours=1),
        until=clock(),
        connection_ids=[],
        includes=list(ALL_INCIDENT_SECTIONS),
        redaction_profile=RedactionProfile.DEFAULT,
        destination_path="/tmp",
        artifact_path=f"/tmp/incident-{size_bytes}.json",
        checksum="0" * 64,
        checksum_preview="0" * 12,
        truncated=False,
        manifest=IncidentManifest(),
        timeline_count=0,
        log_count=0,
        diagnostic_count=0,
        metric_count=0,
        size_bytes=size_bytes,
    )


class TestRetentionEnforcer:
    """Tests for RetentionEnforcer.enforce."""

    async def test_auto_purge_over_budget(self, repos, emitter, clock):
        """Over-budget datasets are purged and the purge is alerted."""
        fake = FakeRetentionRepository(clock, OVER_BUDGET_ROWS)
        enforcer = RetentionEnforcer(fake, emitter, clock)

        await enforcer.enforce([RetentionDataset.TIMELINE_EVENTS])

        assert fake.purges == [RetentionDataset.TIMELINE_EVENTS]
        alerts = await repos.alerts.list()
        assert [a.title for a in alerts] == ["Retention auto-purge executed (timeline_events)"]
        assert alerts[0].source == AlertSource.POLICY

    async def test_empty_purge_is_silent(self, repos, emitter, clock):
        """A purge that deletes nothing raises no alert."""
        fake = FakeRetentionRepository(clock, OVER_BUDGET_ROWS, deleted_rows=0)
        enforcer = RetentionEnforcer(fake, emitter, clock)

        await enforcer.enforce([RetentionDataset.TIMELINE_EVENTS])

        assert len(fake.purges) == 1
        assert await repos.alerts.list() == []

    async def test_over_budget_without_auto_purge(self, repos, emitter, clock):
        """Without auto-purge nothing is deleted and one alert is raised."""
        fake = FakeRetentionRepository(clock, OVER_BUDGET_ROWS, auto_purge=False)
        enforcer = RetentionEnforcer(fake, emitter, clock)

        await enforcer.enforce([RetentionDataset.TIMELINE_EVENTS])

        assert fake.purges == []
        alerts = await repos.alerts.list()
        assert len(alerts) == 1
        assert alerts[0].title == "Storage budget exceeded (timeline_events)"
        assert alerts[0].severity == AlertSeverity.WARNING

    async def test_warning_near_budget(self, repos, emitter, clock):
        """Usage at 90% of the budget raises an info alert."""
        fake = FakeRetentionRepository(clock, NEAR_BUDGET_ROWS)
        enforcer = RetentionEnforcer(fake, emitter, clock)

        await enforcer.enforce([RetentionDataset.TIMELINE_EVENTS])

        alerts = await repos.alerts.list()
        assert [a.title for a in alerts] == ["Storage budget warning (timeline_events)"]
        assert alerts[0].severity == AlertSeverity.INFO
        assert fake.purges == []

    async def test_alert_cooldown(self, repos, emitter, clock):
        """Alerts for a dataset are throttled for five minutes."""
        fake = FakeRetentionRepository(clock, OVER_BUDGET_ROWS, auto_purge=False)
        enforcer = RetentionEnforcer(fake, emitter, clock)

        await enforcer.enforce([RetentionDataset.TIMELINE_EVENTS])
        clock.advance(minutes=4)
        await enforcer.enforce([RetentionDataset.TIMELINE_EVENTS])
        assert len(await repos.alerts.list()) == 1

        clock.advance(minutes=1)
        await enforcer.enforce([RetentionDataset.TIMELINE_EVENTS])
        assert len(await repos.alerts.list()) == 2

    async def test_only_requested_datasets(self, repos, emitter, clock):
        """Datasets that were not requested are left alone."""
        fake = FakeRetentionRepository(clock, OVER_BUDGET_ROWS)
        enforcer = RetentionEnforcer(fake, emitter, clock)

        await enforcer.enforce([RetentionDataset.WORKFLOW_HISTORY])

        assert fake.purges == []

    async def test_failures_are_swallowed(self, repos, emitter, clock):
        """Enforcement errors never reach the caller."""
        enforcer = RetentionEnforcer(BrokenRetentionRepository(clock, {}), emitter, clock)

        await enforcer.enforce([RetentionDataset.TIMELINE_EVENTS])

        assert await repos.alerts.list() == []


class TestRetentionPurge:
    """Tests for purges against the in-memory datasets."""

    async def test_purge_by_age(self, service, repos, clock):
        """Rows older than the retention period are removed."""
        await repos.history.append(make_event(clock, timestamp=clock() - timedelta(days=40)))
        await repos.history.append(make_event(clock))

        result = await service.purge_retention(RetentionDataset.TIMELINE_EVENTS)

        assert result.deleted_rows == 1
        assert result.freed_bytes == 512
        assert len(await repos.history.query()) == 1

    async def test_dry_run_keeps_rows(self, service, repos, clock):
        """A dry run reports what would be deleted."""
        await repos.history.append(make_event(clock, timestamp=clock() - timedelta(days=40)))

        result = await service.purge_retention(RetentionDataset.TIMELINE_EVENTS, dry_run=True)

        assert result.dry_run is True
        assert result.deleted_rows == 1
        assert len(await repos.history.query()) == 1

    async def test_explicit_cutoff(self, service, repos, clock):
        """An explicit cutoff replaces the policy's age."""
        await repos.history.append(make_event(clock, timestamp=clock() - timedelta(days=2)))
        await repos.history.append(make_event(clock))

        result = await service.purge_retention(
            RetentionDataset.TIMELINE_EVENTS, older_than=clock() - timedelta(days=1)
        )

        assert result.deleted_rows == 1
        assert result.cutoff == clock() - timedelta(days=1)

    async def test_update_policy_clamps(self, service):
        """Retention days and budget are clamped to their ranges."""
        policy = await service.update_retention_policy(
            RetentionPolicy(
                dataset=RetentionDataset.WORKFLOW_HISTORY,
                retention_days=0,
                storage_budget_mb=1_000_000,
                auto_purge_oldest=False,
            )
        )

        assert policy.retention_days == 1
        assert policy.storage_budget_mb == 100_000
        policies = {p.dataset: p for p in await service.list_retention_policies()}
        assert policies[RetentionDataset.WORKFLOW_HISTORY].auto_purge_oldest is False

    async def test_storage_summary_counts_rows(self, service, repos, clock):
        """The summary reports rows and bytes per dataset."""
        for _ in range(3):
            await repos.history.append(make_event(clock))

        summary = await service.get_storage_summary()

        by_dataset = {d.dataset: d for d in summary.datasets}
        timeline = by_dataset[RetentionDataset.TIMELINE_EVENTS]
        assert timeline.row_count == 3
        assert timeline.total_bytes == 3 * 512
        assert timeline.budget_bytes == 512 * MB
        assert timeline.over_budget is False
        assert summary.total_bytes == 3 * 512

    async def test_storage_summary_uses_bundle_sizes(self, service, repos, clock):
        """Incident artifacts report the recorded size of each bundle."""
        await repos.incident_bundles.save(make_bundle(clock, 1500))
        await repos.incident_bundles.save(make_bundle(clock, 700))

        summary = await service.get_storage_summary()

        by_dataset = {d.dataset: d for d in summary.datasets}
        artifacts = by_dataset[RetentionDataset.INCIDENT_ARTIFACTS]
        assert artifacts.row_count == 2
        assert artifacts.total_bytes == 2200
        assert summary.total_bytes == 2200
