"""
Workflow Preview Builder - read-only expansion of a template into items.

A preview is what a workflow would touch: one item per key, in backend
order, with the mutation that would be applied to it.
"""

from typing import Any, Optional

from speichr.core.models import PreviewAction, WorkflowKind
from speichr.core.ports import CacheGateway
from speichr.core.schemas import (
    ConnectionProfile,
    ConnectionSecret,
    WorkflowPreview,
    WorkflowPreviewItem,
)
from speichr.core.utils import clamp_int

MAX_PREVIEW_LIMIT = 500
DEFAULT_PREVIEW_LIMIT = 100
DEFAULT_TTL_SECONDS = 3600
MAX_TTL_SECONDS = 31_536_000


def parse_warmup_entries(parameters: dict[str, Any]) -> list[dict[str, Any]]:
    """
    Literal entries of a warmup_set template.

    Entries without a string key are skipped, a missing value becomes "",
    and a TTL is kept only when it is a positive number.
    """
    raw_entries = parameters.get("entries")
    if not isinstance(raw_entries, list):
        return []

    entries = []
    for raw in raw_entries:
        if not isinstance(raw, dict) or not isinstance(raw.get("key"), str):
            continue

        ttl = raw.get("ttl_seconds")
        if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl <= 0:
            ttl = None

        value = raw.get("value")
        entries.append({
            "key": raw["key"],
            "value": value if isinstance(value, str) else "",
            "ttl_seconds": int(ttl) if ttl is not None else None,
        })

    return entries


def _pattern_parameter(parameters: dict[str, Any]) -> str:
    pattern = parameters.get("pattern")
    if isinstance(pattern, str) and pattern.strip():
        return pattern.strip()
    return "*"


def _cursor_offset(cursor: Optional[str]) -> int:
    try:
        return int(cursor) if cursor else 0
    except ValueError:
        return 0


class WorkflowPreviewBuilder:
    """Builds workflow previews against a cache gateway."""

    def __init__(self, gateway: CacheGateway):
        self.gateway = gateway

    async def build(
        self,
        profile: ConnectionProfile,
        secret: ConnectionSecret,
        kind: WorkflowKind,
        parameters: dict[str, Any],
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> WorkflowPreview:
        """
        Build one preview page.

        Args:
            profile: Target connection
            secret: Its credentials
            kind: Workflow kind to expand
            parameters: Merged template parameters
            cursor: Continuation from a previous page
            limit: Page size (1..500, default 100)

        Returns:
            WorkflowPreview; truncated whenever a continuation exists
        """
        if kind == WorkflowKind.WARMUP_SET:
            return self._build_warmup(parameters, cursor, limit)

        # The template's own limit only applies when the caller gives none
        template_limit = clamp_int(
            parameters.get("limit"), 1, MAX_PREVIEW_LIMIT, DEFAULT_PREVIEW_LIMIT
        )
        search_limit = clamp_int(limit, 1, MAX_PREVIEW_LIMIT, template_limit)

        found = await self.gateway.search_keys(
            profile,
            secret,
            _pattern_parameter(parameters),
            cursor=cursor,
            limit=search_limit,
        )

        items: list[WorkflowPreviewItem] = []
        if kind == WorkflowKind.DELETE_BY_PATTERN:
            items = [WorkflowPreviewItem(key=key, action=PreviewAction.DELETE) for key in found.keys]
        elif kind == WorkflowKind.TTL_NORMALIZE:
            ttl_seconds = clamp_int(
                parameters.get("ttl_seconds"), 1, MAX_TTL_SECONDS, DEFAULT_TTL_SECONDS
            )
            for key in found.keys:
                record = await self.gateway.get_value(profile, secret, key)
                items.append(
                    WorkflowPreviewItem(
                        key=key,
                        action=PreviewAction.SET_TTL,
                        current_ttl_seconds=record.ttl_seconds,
                        next_ttl_seconds=ttl_seconds,
                    )
                )

        return WorkflowPreview(
            kind=kind,
            estimated_count=len(items),
            truncated=found.next_cursor is not None,
            next_cursor=found.next_cursor,
            items=items,
        )

    @staticmethod
    def _build_warmup(
        parameters: dict[str, Any],
        cursor: Optional[str],
        limit: Optional[int],
    ) -> WorkflowPreview:
        page_limit = clamp_int(limit, 1, MAX_PREVIEW_LIMIT, DEFAULT_PREVIEW_LIMIT)
        entries = parse_warmup_entries(parameters)
        start = min(len(entries), max(0, _cursor_offset(cursor)))
        end = start + page_limit
        next_cursor = str(end) if end < len(entries) else None

        return WorkflowPreview(
            kind=WorkflowKind.WARMUP_SET,
            estimated_count=len(entries),
            truncated=next_cursor is not None,
            next_cursor=next_cursor,
            items=[
                WorkflowPreviewItem(
                    key=entry["key"],
                    action=PreviewAction.SET_VALUE,
                    value_preview=entry["value"],
                    next_ttl_seconds=entry["ttl_seconds"],
                )
                for entry in entries[start:end]
            ],
        )
