"""
Retention Enforcer - keeps stored datasets inside their storage budgets.

Runs as a side effect after telemetry, workflow history and incident
artifacts are written. Over-budget datasets are purged (auto-purge) or
alerted on; alerts share one cooldown per dataset.
"""

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Optional

import structlog

from speichr.core.models import AlertSeverity, AlertSource, RetentionDataset
from speichr.core.orchestration.alerts import AlertEmitter
from speichr.core.ports import RetentionRepository
from speichr.core.schemas import StorageSummary
from speichr.core.utils import Clock, utc_now

logger = structlog.get_logger()


class RetentionEnforcer:
    """Compares dataset usage to budget and purges or alerts."""

    COOLDOWN = timedelta(minutes=5)
    WARN_RATIO = 0.9

    def __init__(
        self,
        retention: RetentionRepository,
        emitter: AlertEmitter,
        clock: Clock = utc_now,
    ):
        self.retention = retention
        self.emitter = emitter
        self._clock = clock
        self._last_alert: dict[str, datetime] = {}

    async def enforce(
        self,
        datasets: Iterable[RetentionDataset],
        summary: Optional[StorageSummary] = None,
    ) -> None:
        """
        Enforce budgets for the given datasets.

        Never raises: a failure here must not fail the operation that
        triggered it.
        """
        wanted = list(dict.fromkeys(datasets))
        if not wanted:
            return

        try:
            await self._enforce(wanted, summary)
        except Exception:
            logger.exception("retention_enforcement_failed", datasets=[d.value for d in wanted])

    async def _enforce(
        self,
        datasets: list[RetentionDataset],
        summary: Optional[StorageSummary],
    ) -> None:
        summary = summary or await self.retention.get_storage_summary()
        summaries = {item.dataset: item for item in summary.datasets}
        policies = {policy.dataset: policy for policy in await self.retention.list_policies()}

        for dataset in datasets:
            usage = summaries.get(dataset)
            policy = policies.get(dataset)
            if usage is None or policy is None:
                continue

            if usage.over_budget and policy.auto_purge_oldest:
                result = await self.retention.purge(dataset, dry_run=False)
                logger.info(
                    "retention_auto_purge",
                    dataset=dataset.value,
                    deleted_rows=result.deleted_rows,
                    freed_bytes=result.freed_bytes,
                )
                if result.deleted_rows > 0:
                    await self._alert(
                        dataset,
                        AlertSeverity.WARNING,
                        f"Retention auto-purge executed ({dataset.value})",
                        f"Freed {result.freed_bytes} bytes by deleting "
                        f"{result.deleted_rows} rows.",
                    )
                continue

            if usage.over_budget:
                await self._alert(
                    dataset,
                    AlertSeverity.WARNING,
                    f"Storage budget exceeded ({dataset.value})",
                    f"Usage is {round(usage.usage_ratio * 100)}% of configured budget.",
                )
                continue

            if usage.usage_ratio >= self.WARN_RATIO:
                await self._alert(
                    dataset,
                    AlertSeverity.INFO,
                    f"Storage budget warning ({dataset.value})",
                    f"Usage reached {round(usage.usage_ratio * 100)}% of configured budget.",
                )

    async def _alert(
        self,
        dataset: RetentionDataset,
        severity: AlertSeverity,
        title: str,
        message: str,
    ) -> None:
        key = f"{dataset.value}:retention-budget"
        now = self._clock()
        last = self._last_alert.get(key)
        if last is not None and now - last < self.COOLDOWN:
            return

        self._last_alert[key] = now
        await self.emitter.emit(
            severity=severity,
            title=title,
            message=message,
            source=AlertSource.POLICY,
        )
