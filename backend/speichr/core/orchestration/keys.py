"""
Key Operations - browsing and mutating keys on a connection.

Reads go straight through the executor. Mutations are gated by the
connection's write policy (and the prod guardrail for deletes) and
capture a rollback snapshot of the previous value first.
"""

import hashlib
from typing import Optional

import structlog

from speichr.core.errors import ErrorCode, OperationFailure
from speichr.core.models import CacheEngine, SnapshotReason
from speichr.core.orchestration.executor import OperationExecutor
from speichr.core.orchestration.guardrails import GuardrailsEngine
from speichr.core.orchestration.namespaces import NamespaceAdmin
from speichr.core.ports import CacheGateway, SnapshotRepository
from speichr.core.schemas import (
    ConnectionProfile,
    ConnectionSecret,
    KeyListResult,
    KeyValueRecord,
    SnapshotRecord,
)
from speichr.core.utils import Clock, new_id, utc_now

logger = structlog.get_logger()


class SnapshotRecorder:
    """Captures the current value of a key before it is mutated."""

    def __init__(
        self,
        gateway: CacheGateway,
        snapshots: SnapshotRepository,
        clock: Clock = utc_now,
    ):
        self.gateway = gateway
        self.snapshots = snapshots
        self._clock = clock

    async def capture(
        self,
        profile: ConnectionProfile,
        secret: ConnectionSecret,
        key: str,
        reason: SnapshotReason,
    ) -> Optional[SnapshotRecord]:
        """
        Best-effort snapshot; a failure to read or store never blocks the
        mutation. Keys with neither value nor TTL are not captured.
        """
        try:
            current = await self.gateway.get_value(profile, secret, key)
            if current.value is None and current.ttl_seconds is None:
                return None

            record = SnapshotRecord(
                id=new_id(),
                connection_id=profile.id,
                key=key,
                captured_at=self._clock(),
                redacted_value_hash=hashlib.sha256(
                    (current.value or "").encode("utf-8")
                ).hexdigest(),
                value=current.value,
                ttl_seconds=current.ttl_seconds,
                reason=reason,
            )
            await self.snapshots.save(record)
            return record
        except Exception as e:
            logger.warning(
                "snapshot_capture_failed",
                connection_id=profile.id,
                key=key,
                error=str(e),
            )
            return None


class KeyOperations:
    """
    Key browsing, mutation and rollback for one service instance.

    Every call takes an optional namespace id. Keys and patterns are given
    relative to the namespace and mapped onto stored keys before they reach
    the gateway; listed keys are mapped back.
    """

    def __init__(
        self,
        scopes: NamespaceAdmin,
        gateway: CacheGateway,
        snapshots: SnapshotRepository,
        executor: OperationExecutor,
        guardrails: GuardrailsEngine,
        recorder: SnapshotRecorder,
    ):
        self.scopes = scopes
        self.gateway = gateway
        self.snapshots = snapshots
        self.executor = executor
        self.guardrails = guardrails
        self.recorder = recorder

    # ==========================================================================
    # Reads
    # ==========================================================================

    async def list_keys(
        self,
        connection_id: str,
        cursor: Optional[str] = None,
        limit: int = 100,
        namespace_id: Optional[str] = None,
    ) -> KeyListResult:
        profile, secret, scope = await self.scopes.resolve(connection_id, namespace_id)
        if scope.prefix and profile.engine == CacheEngine.REDIS:
            # Page over the prefix only
            scoped_pattern = scope.pattern("*")
            outcome = await self.executor.run(
                profile,
                "key.list",
                scoped_pattern,
                lambda: self.gateway.search_keys(
                    profile, secret, scoped_pattern, cursor=cursor, limit=limit
                ),
            )
        else:
            outcome = await self.executor.run(
                profile,
                "key.list",
                "*",
                lambda: self.gateway.list_keys(profile, secret, cursor=cursor, limit=limit),
            )
        return outcome.result.model_copy(update={"keys": scope.outgoing(outcome.result.keys)})

    async def search_keys(
        self,
        connection_id: str,
        pattern: str,
        cursor: Optional[str] = None,
        limit: int = 100,
        namespace_id: Optional[str] = None,
    ) -> KeyListResult:
        profile, secret, scope = await self.scopes.resolve(connection_id, namespace_id)
        scoped_pattern = scope.pattern(pattern)
        outcome = await self.executor.run(
            profile,
            "key.search",
            pattern,
            lambda: self.gateway.search_keys(
                profile, secret, scoped_pattern, cursor=cursor, limit=limit
            ),
        )
        return outcome.result.model_copy(update={"keys": scope.outgoing(outcome.result.keys)})

    async def get_value(
        self, connection_id: str, key: str, namespace_id: Optional[str] = None
    ) -> KeyValueRecord:
        profile, secret, scope = await self.scopes.resolve(connection_id, namespace_id)
        outcome = await self.executor.run(
            profile,
            "key.get",
            key,
            lambda: self.gateway.get_value(profile, secret, scope.key(key)),
        )
        return outcome.result.model_copy(update={"key": key})

    # ==========================================================================
    # Mutations
    # ==========================================================================

    async def set_value(
        self,
        connection_id: str,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        namespace_id: Optional[str] = None,
    ) -> None:
        profile, secret, scope = await self.scopes.resolve(connection_id, namespace_id)
        stored_key = scope.key(key)
        await self.guardrails.enforce_writable(profile, "key.set", key)
        await self.recorder.capture(profile, secret, stored_key, SnapshotReason.SET)

        await self.executor.run(
            profile,
            "key.set",
            key,
            lambda: self.gateway.set_value(profile, secret, stored_key, value, ttl_seconds),
        )
        logger.info("key_set", connection_id=connection_id, key=stored_key)

    async def delete_key(
        self,
        connection_id: str,
        key: str,
        guardrail_confirmed: bool = False,
        namespace_id: Optional[str] = None,
    ) -> None:
        profile, secret, scope = await self.scopes.resolve(connection_id, namespace_id)
        stored_key = scope.key(key)
        await self.guardrails.enforce_writable(profile, "key.delete", key)
        await self.guardrails.enforce_prod_guardrail(
            profile, "key.delete", key, guardrail_confirmed
        )
        await self.recorder.capture(profile, secret, stored_key, SnapshotReason.DELETE)

        await self.executor.run(
            profile,
            "key.delete",
            key,
            lambda: self.gateway.delete_key(profile, secret, stored_key),
        )
        logger.info("key_deleted", connection_id=connection_id, key=stored_key)

    # ==========================================================================
    # Snapshots
    # ==========================================================================

    async def list_snapshots(
        self,
        connection_id: str,
        key: Optional[str] = None,
        limit: int = 50,
    ) -> list[SnapshotRecord]:
        """Snapshots are keyed by the stored key, prefix included."""
        return await self.snapshots.list(connection_id, key=key, limit=limit)

    async def restore_snapshot(
        self,
        connection_id: str,
        key: str,
        snapshot_id: Optional[str] = None,
        guardrail_confirmed: bool = False,
        namespace_id: Optional[str] = None,
    ) -> SnapshotRecord:
        """
        Put a key back to a captured value.

        Uses the given snapshot or the newest one for the key. A snapshot
        without a value restores by deleting the key.
        """
        profile, secret, scope = await self.scopes.resolve(connection_id, namespace_id)
        stored_key = scope.key(key)
        await self.guardrails.enforce_writable(profile, "rollback.restore", key)
        await self.guardrails.enforce_prod_guardrail(
            profile, "rollback.restore", key, guardrail_confirmed
        )

        if snapshot_id:
            snapshot = await self.snapshots.find_by_id(snapshot_id)
        else:
            snapshot = await self.snapshots.find_latest(connection_id, stored_key)

        if (
            snapshot is None
            or snapshot.connection_id != connection_id
            or snapshot.key != stored_key
        ):
            raise OperationFailure(
                ErrorCode.VALIDATION_ERROR,
                "No rollback snapshot was found for this key.",
                False,
                {"connectionId": connection_id, "key": key, "snapshotId": snapshot_id},
            )

        async def restore() -> None:
            if snapshot.value is None:
                await self.gateway.delete_key(profile, secret, stored_key)
            else:
                await self.gateway.set_value(
                    profile, secret, stored_key, snapshot.value, snapshot.ttl_seconds
                )

        await self.executor.run(profile, "rollback.restore", key, restore)
        logger.info(
            "snapshot_restored",
            connection_id=connection_id,
            key=stored_key,
            snapshot_id=snapshot.id,
        )
        return snapshot
