"""
Workflow Preview Builder Tests
==============================
"""

import pytest

from speichr.core.errors import ErrorCode, OperationFailure
from speichr.core.models import CacheEngine, PreviewAction, WorkflowKind
from speichr.core.orchestration.preview import WorkflowPreviewBuilder, parse_warmup_entries
from speichr.core.schemas import ConnectionSecret


@pytest.fixture
def builder(gateway) -> WorkflowPreviewBuilder:
    return WorkflowPreviewBuilder(gateway)


class TestParseWarmupEntries:
    """Tests for warmup entry parsing."""

    def test_skips_invalid_entries(self):
        """Entries without a string key are dropped."""
        entries = parse_warmup_entries({
            "entries": [
                {"key": "a", "value": "1", "ttl_seconds": 30},
                {"value": "orphan"},
                "not-a-dict",
                {"key": 42},
                {"key": "b"},
                {"key": "c", "value": 7, "ttl_seconds": -5},
            ]
        })

        assert entries == [
            {"key": "a", "value": "1", "ttl_seconds": 30},
            {"key": "b", "value": "", "ttl_seconds": None},
            {"key": "c", "value": "", "ttl_seconds": None},
        ]

    def test_missing_entries(self):
        """A template without an entries list previews nothing."""
        assert parse_warmup_entries({}) == []
        assert parse_warmup_entries({"entries": "nope"}) == []


class TestWorkflowPreviewBuilder:
    """Tests for WorkflowPreviewBuilder.build."""

    async def test_delete_by_pattern(self, builder, make_connection, gateway):
        """Matching keys become delete items in backend order."""
        profile = await make_connection()
        gateway.seed(profile.id, {"user:2": "b", "user:1": "a", "order:1": "c"})

        preview = await builder.build(
            profile, ConnectionSecret(), WorkflowKind.DELETE_BY_PATTERN, {"pattern": "user:*"}
        )

        assert [i.key for i in preview.items] == ["user:1", "user:2"]
        assert all(i.action == PreviewAction.DELETE for i in preview.items)
        assert preview.estimated_count == 2
        assert preview.truncated is False
        assert preview.next_cursor is None

    async def test_paging_sets_truncated(self, builder, make_connection, gateway):
        """A page with a continuation is truncated and carries the cursor."""
        profile = await make_connection()
        gateway.seed(profile.id, {f"k:{i}": "v" for i in range(5)})

        first = await builder.build(
            profile, ConnectionSecret(), WorkflowKind.DELETE_BY_PATTERN, {"pattern": "k:*"}, limit=2
        )
        assert first.truncated is True
        assert first.next_cursor is not None

        rest = await builder.build(
            profile,
            ConnectionSecret(),
            WorkflowKind.DELETE_BY_PATTERN,
            {"pattern": "k:*"},
            cursor=first.next_cursor,
            limit=10,
        )
        assert [i.key for i in rest.items] == ["k:2", "k:3", "k:4"]
        assert rest.truncated is False

    async def test_template_limit_is_fallback(self, builder, make_connection, gateway):
        """The template's limit applies only when the caller gives none."""
        profile = await make_connection()
        gateway.seed(profile.id, {f"k:{i}": "v" for i in range(5)})
        parameters = {"pattern": "k:*", "limit": 1}

        fallback = await builder.build(
            profile, ConnectionSecret(), WorkflowKind.DELETE_BY_PATTERN, parameters
        )
        explicit = await builder.build(
            profile, ConnectionSecret(), WorkflowKind.DELETE_BY_PATTERN, parameters, limit=3
        )

        assert len(fallback.items) == 1
        assert len(explicit.items) == 3

    async def test_blank_pattern_matches_everything(self, builder, make_connection, gateway):
        """A missing or blank pattern falls back to "*"."""
        profile = await make_connection()
        gateway.seed(profile.id, {"a": "1", "b": "2"})

        preview = await builder.build(
            profile, ConnectionSecret(), WorkflowKind.DELETE_BY_PATTERN, {"pattern": "  "}
        )

        assert preview.estimated_count == 2

    async def test_ttl_normalize_reads_current_ttl(self, builder, make_connection, gateway):
        """TTL items report the current TTL and the clamped target TTL."""
        profile = await make_connection()
        secret = ConnectionSecret()
        await gateway.set_value(profile, secret, "feed:1", "x", 30)
        await gateway.set_value(profile, secret, "feed:2", "y")

        preview = await builder.build(
            profile,
            secret,
            WorkflowKind.TTL_NORMALIZE,
            {"pattern": "feed:*", "ttl_seconds": 10**9},
        )

        assert [(i.key, i.current_ttl_seconds) for i in preview.items] == [
            ("feed:1", 30),
            ("feed:2", None),
        ]
        assert {i.next_ttl_seconds for i in preview.items} == {31_536_000}
        assert all(i.action == PreviewAction.SET_TTL for i in preview.items)

    async def test_warmup_pages_entries(self, builder, make_connection):
        """Warmup previews page over the literal entries."""
        profile = await make_connection()
        parameters = {"entries": [{"key": f"w:{i}", "value": str(i)} for i in range(3)]}

        preview = await builder.build(
            profile, ConnectionSecret(), WorkflowKind.WARMUP_SET, parameters, limit=2
        )

        assert [i.key for i in preview.items] == ["w:0", "w:1"]
        assert preview.items[1].value_preview == "1"
        assert preview.estimated_count == 3
        assert preview.next_cursor == "2"
        assert preview.truncated is True

    async def test_memcached_pattern_preview_not_supported(self, builder, make_connection):
        """Memcached has no pattern scan, so pattern previews fail."""
        profile = await make_connection(engine=CacheEngine.MEMCACHED, port=11211)

        with pytest.raises(OperationFailure) as exc_info:
            await builder.build(
                profile, ConnectionSecret(), WorkflowKind.DELETE_BY_PATTERN, {"pattern": "*"}
            )

        assert exc_info.value.code == ErrorCode.NOT_SUPPORTED

    async def test_preview_through_coordinator(self, service, make_connection, gateway):
        """The coordinator resolves the template before building."""
        profile = await make_connection()
        gateway.seed(profile.id, {"cache:1": "a", "cache:2": "b"})

        preview = await service.workflows.preview(
            profile.id,
            template_id="builtin-delete-by-pattern",
            parameter_overrides={"pattern": "cache:*"},
        )

        assert preview.kind == WorkflowKind.DELETE_BY_PATTERN
        assert preview.estimated_count == 2
