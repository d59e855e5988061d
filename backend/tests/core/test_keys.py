"""
Key Operations Tests
====================

Browsing, guarded mutations and snapshot rollback.
"""

import pytest

from speichr.core.errors import ErrorCode, OperationFailure
from speichr.core.models import (
    AlertSource,
    CacheEngine,
    EnvironmentTag,
    OperationStatus,
    SnapshotReason,
)


class TestKeyReads:
    """Tests for listing, searching and reading keys."""

    async def test_list_keys_pages(self, service, make_connection, gateway):
        """Keys are listed in pages with a continuation cursor."""
        profile = await make_connection()
        gateway.seed(profile.id, {"a": "1", "b": "2", "c": "3"})

        first = await service.keys.list_keys(profile.id, limit=2)
        second = await service.keys.list_keys(profile.id, cursor=first.next_cursor, limit=2)

        assert first.keys == ["a", "b"]
        assert second.keys == ["c"]
        assert second.next_cursor is None

    async def test_search_keys(self, service, make_connection, gateway):
        """Glob patterns filter keys."""
        profile = await make_connection()
        gateway.seed(profile.id, {"user:1": "a", "user:2": "b", "order:1": "c"})

        result = await service.keys.search_keys(profile.id, "user:*")

        assert result.keys == ["user:1", "user:2"]

    async def test_search_memcached_not_supported(self, service, make_connection):
        """Memcached connections reject pattern search."""
        profile = await make_connection(engine=CacheEngine.MEMCACHED, port=11211)

        with pytest.raises(OperationFailure) as exc_info:
            await service.keys.search_keys(profile.id, "*")

        assert exc_info.value.code == ErrorCode.NOT_SUPPORTED

    async def test_reads_are_recorded(self, service, make_connection, gateway):
        """Each read appends a success event to the history."""
        profile = await make_connection()
        gateway.seed(profile.id, {"a": "1"})

        value = await service.keys.get_value(profile.id, "a")
        history = await service.list_history(connection_id=profile.id)

        assert value.value == "1"
        assert len(history) == 1
        assert history[0].action == "key.get"
        assert history[0].status == OperationStatus.SUCCESS
        assert history[0].details["attempts"] == 1

    async def test_unreachable_host_fails(self, service, make_connection, gateway):
        """Transport failures surface as CONNECTION_FAILED and raise an alert."""
        profile = await make_connection()
        gateway.set_unreachable(profile.host)

        with pytest.raises(OperationFailure) as exc_info:
            await service.keys.get_value(profile.id, "a")

        assert exc_info.value.code == ErrorCode.CONNECTION_FAILED
        alerts = await service.list_alerts()
        assert [a.title for a in alerts] == ["Operation failed"]


class TestKeyMutations:
    """Tests for set and delete under connection policy."""

    async def test_set_captures_snapshot(self, service, make_connection, gateway):
        """Overwriting a key snapshots its previous value."""
        profile = await make_connection()
        gateway.seed(profile.id, {"config": "old"})

        await service.keys.set_value(profile.id, "config", "new", ttl_seconds=60)

        value = await service.keys.get_value(profile.id, "config")
        assert value.value == "new"
        assert value.ttl_seconds == 60
        snapshots = await service.keys.list_snapshots(profile.id, key="config")
        assert len(snapshots) == 1
        assert snapshots[0].value == "old"
        assert snapshots[0].reason == SnapshotReason.SET

    async def test_new_key_has_no_snapshot(self, service, make_connection):
        """Creating a key that did not exist captures nothing."""
        profile = await make_connection()

        await service.keys.set_value(profile.id, "fresh", "1")

        assert await service.keys.list_snapshots(profile.id) == []

    async def test_force_read_only_blocks_set(self, service, make_connection):
        """A blocked mutation records one blocked event and one policy alert."""
        profile = await make_connection(force_read_only=True)

        with pytest.raises(OperationFailure) as exc_info:
            await service.keys.set_value(profile.id, "config", "new")

        assert exc_info.value.code == ErrorCode.UNAUTHORIZED
        assert exc_info.value.details["policy"] == "forceReadOnly"

        history = await service.list_history(connection_id=profile.id)
        assert [e.status for e in history] == [OperationStatus.BLOCKED]
        assert history[0].error_code == "UNAUTHORIZED"

        alerts = await service.list_alerts()
        assert len(alerts) == 1
        assert alerts[0].source == AlertSource.POLICY
        assert alerts[0].title == "Operation blocked by policy"

    async def test_read_only_blocks_delete(self, service, make_connection, gateway):
        """Read-only connections never reach the backend."""
        profile = await make_connection(read_only=True)
        gateway.seed(profile.id, {"a": "1"})

        with pytest.raises(OperationFailure) as exc_info:
            await service.keys.delete_key(profile.id, "a", guardrail_confirmed=True)

        assert exc_info.value.details["policy"] == "readOnly"
        assert (await service.keys.get_value(profile.id, "a")).value == "1"

    async def test_prod_delete_needs_confirmation(self, service, make_connection, gateway):
        """Deletes on prod need explicit confirmation."""
        profile = await make_connection(environment=EnvironmentTag.PROD)
        gateway.seed(profile.id, {"a": "1"})

        with pytest.raises(OperationFailure) as exc_info:
            await service.keys.delete_key(profile.id, "a")
        assert exc_info.value.code == ErrorCode.UNAUTHORIZED
        assert exc_info.value.details["policy"] == "prodGuardrail"

        await service.keys.delete_key(profile.id, "a", guardrail_confirmed=True)
        assert (await service.keys.get_value(profile.id, "a")).value is None

    async def test_prod_set_needs_no_confirmation(self, service, make_connection):
        """Only destructive actions need the prod confirmation."""
        profile = await make_connection(environment=EnvironmentTag.PROD)

        await service.keys.set_value(profile.id, "a", "1")

        assert (await service.keys.get_value(profile.id, "a")).value == "1"


class TestSnapshotRestore:
    """Tests for rollback from snapshots."""

    async def test_restore_latest_after_delete(self, service, make_connection, gateway):
        """The newest snapshot for a key is restored by default."""
        profile = await make_connection()
        gateway.seed(profile.id, {"a": "1"})
        await service.keys.delete_key(profile.id, "a")

        snapshot = await service.keys.restore_snapshot(profile.id, "a")

        assert snapshot.reason == SnapshotReason.DELETE
        assert (await service.keys.get_value(profile.id, "a")).value == "1"

    async def test_restore_specific_snapshot(self, service, make_connection, gateway, clock):
        """A snapshot id selects an older captured value."""
        profile = await make_connection()
        gateway.seed(profile.id, {"a": "v1"})
        await service.keys.set_value(profile.id, "a", "v2")
        clock.advance(seconds=5)
        await service.keys.set_value(profile.id, "a", "v3")

        snapshots = await service.keys.list_snapshots(profile.id, key="a")
        assert [s.value for s in snapshots] == ["v2", "v1"]

        await service.keys.restore_snapshot(profile.id, "a", snapshot_id=snapshots[1].id)

        assert (await service.keys.get_value(profile.id, "a")).value == "v1"

    async def test_restore_without_snapshot(self, service, make_connection):
        """Restoring a key with no snapshot is a validation error."""
        profile = await make_connection()

        with pytest.raises(OperationFailure) as exc_info:
            await service.keys.restore_snapshot(profile.id, "missing")

        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR

    async def test_snapshot_for_other_key_rejected(self, service, make_connection, gateway):
        """A snapshot id must belong to the requested key."""
        profile = await make_connection()
        gateway.seed(profile.id, {"a": "1"})
        await service.keys.set_value(profile.id, "a", "2")
        snapshot = (await service.keys.list_snapshots(profile.id, key="a"))[0]

        with pytest.raises(OperationFailure) as exc_info:
            await service.keys.restore_snapshot(profile.id, "b", snapshot_id=snapshot.id)

        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR

    async def test_prod_restore_needs_confirmation(self, service, make_connection, gateway):
        """Rollback on prod is guarded like a delete."""
        profile = await make_connection(environment=EnvironmentTag.PROD)
        gateway.seed(profile.id, {"a": "1"})
        await service.keys.set_value(profile.id, "a", "2")

        with pytest.raises(OperationFailure) as exc_info:
            await service.keys.restore_snapshot(profile.id, "a")

        assert exc_info.value.code == ErrorCode.UNAUTHORIZED
