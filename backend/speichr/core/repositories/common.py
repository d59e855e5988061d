"""
Retention helpers shared by the in-memory and SQL adapters.
"""

from typing import Optional

from speichr.core.models import RetentionDataset
from speichr.core.schemas import RetentionPolicy, StorageDatasetSummary

# Average stored size of one row per dataset, used for budget accounting
# where a dataset does not record its own size
ESTIMATED_ROW_BYTES: dict[RetentionDataset, int] = {
    RetentionDataset.TIMELINE_EVENTS: 512,
    RetentionDataset.OBSERVABILITY_SNAPSHOTS: 256,
    RetentionDataset.WORKFLOW_HISTORY: 2048,
    RetentionDataset.INCIDENT_ARTIFACTS: 4096,
}

BYTES_PER_MB = 1024 * 1024


def default_retention_policy(dataset: RetentionDataset) -> RetentionPolicy:
    return RetentionPolicy(
        dataset=dataset,
        retention_days=30,
        storage_budget_mb=512,
        auto_purge_oldest=True,
    )


def summarize_dataset(
    policy: RetentionPolicy, row_count: int, recorded_bytes: Optional[int] = None
) -> StorageDatasetSummary:
    """Usage from recorded payload sizes when known, else the per-row estimate."""
    if recorded_bytes is None:
        total_bytes = row_count * ESTIMATED_ROW_BYTES[policy.dataset]
    else:
        total_bytes = recorded_bytes
    budget_bytes = policy.storage_budget_mb * BYTES_PER_MB
    usage_ratio = 0.0 if budget_bytes <= 0 else round(total_bytes / budget_bytes, 4)
    return StorageDatasetSummary(
        dataset=policy.dataset,
        row_count=row_count,
        total_bytes=total_bytes,
        budget_bytes=budget_bytes,
        usage_ratio=usage_ratio,
        over_budget=total_bytes > budget_bytes,
    )


def rows_over_budget(policy: RetentionPolicy, row_count: int) -> int:
    """How many of the oldest rows must go to get back under budget."""
    allowed = (policy.storage_budget_mb * BYTES_PER_MB) // ESTIMATED_ROW_BYTES[policy.dataset]
    return max(0, row_count - allowed)


def sort_policies(policies: list[RetentionPolicy]) -> list[RetentionPolicy]:
    return sorted(policies, key=lambda p: p.dataset.value)
