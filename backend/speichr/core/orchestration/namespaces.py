"""
Namespaces - named key scopes on a connection.

A namespace either prefixes every key (key_prefix, any engine) or selects a
redis logical database (redis_logical_db). Key operations and workflows
accept an optional namespace id and run inside that scope.
"""

import re
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from speichr.core.errors import ErrorCode, OperationFailure, not_found
from speichr.core.models import CacheEngine, NamespaceStrategy, WorkflowKind
from speichr.core.ports import ConnectionRepository, NamespaceRepository, SecretStore
from speichr.core.schemas import (
    ConnectionProfile,
    ConnectionSecret,
    NamespaceDraft,
    NamespaceProfile,
)
from speichr.core.utils import Clock, new_id, utc_now

logger = structlog.get_logger()

NAMESPACE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")
MAX_REDIS_DB_INDEX = 15


async def require_connection(
    connections: ConnectionRepository, connection_id: str
) -> ConnectionProfile:
    profile = await connections.find_by_id(connection_id)
    if profile is None:
        raise not_found("Connection profile", id=connection_id)
    return profile


async def require_scope(
    connections: ConnectionRepository,
    secrets: SecretStore,
    connection_id: str,
) -> tuple[ConnectionProfile, ConnectionSecret]:
    """Profile and secret for a connection, or VALIDATION_ERROR."""
    profile = await require_connection(connections, connection_id)
    secret = await secrets.get_secret(connection_id)
    return profile, secret


@dataclass
class NamespaceScope:
    """Maps caller keys to stored keys for one (optional) namespace."""
    namespace: Optional[NamespaceProfile] = None

    @property
    def prefix(self) -> str:
        if self.namespace and self.namespace.strategy == NamespaceStrategy.KEY_PREFIX:
            return self.namespace.key_prefix or ""
        return ""

    def key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def pattern(self, pattern: str) -> str:
        return f"{self.prefix}{pattern}"

    def outgoing(self, keys: list[str]) -> list[str]:
        """Stored keys back to caller keys; keys outside the prefix are dropped."""
        prefix = self.prefix
        if not prefix:
            return keys
        return [k[len(prefix):] for k in keys if k.startswith(prefix)]


def scope_profile(profile: ConnectionProfile, namespace: NamespaceProfile) -> ConnectionProfile:
    """Logical-db namespaces override the connection's db index."""
    if (
        profile.engine != CacheEngine.REDIS
        or namespace.strategy != NamespaceStrategy.REDIS_LOGICAL_DB
    ):
        return profile
    return profile.model_copy(update={"db_index": namespace.db_index or 0})


def apply_namespace(
    kind: WorkflowKind,
    parameters: dict[str, Any],
    namespace: Optional[NamespaceProfile],
) -> dict[str, Any]:
    """
    Workflow parameters rewritten into a key_prefix namespace.

    Pattern workflows get the prefix in front of their pattern (default
    "*"); warm-up entries get it in front of each key. Logical-db
    namespaces need no rewrite.
    """
    prefix = NamespaceScope(namespace).prefix
    if not prefix:
        return parameters

    if kind in (WorkflowKind.DELETE_BY_PATTERN, WorkflowKind.TTL_NORMALIZE):
        pattern = parameters.get("pattern")
        if not isinstance(pattern, str):
            pattern = "*"
        return {**parameters, "pattern": f"{prefix}{pattern}"}

    entries = parameters.get("entries")
    if kind == WorkflowKind.WARMUP_SET and isinstance(entries, list):
        scoped = []
        for entry in entries:
            if isinstance(entry, dict) and isinstance(entry.get("key"), str):
                entry = {**entry, "key": f"{prefix}{entry['key']}"}
            scoped.append(entry)
        return {**parameters, "entries": scoped}

    return parameters


def validate_namespace_draft(draft: NamespaceDraft, engine: CacheEngine) -> None:
    """
    Raises:
        OperationFailure: VALIDATION_ERROR for a non-slug name, a strategy
            the engine cannot use, a db index outside 0-15 or a blank prefix
    """
    if not NAMESPACE_NAME_PATTERN.match(draft.name.strip()):
        raise OperationFailure(
            ErrorCode.VALIDATION_ERROR,
            "Namespace name must be slug-like and 1-64 characters.",
        )

    if draft.strategy == NamespaceStrategy.REDIS_LOGICAL_DB:
        if engine != CacheEngine.REDIS:
            raise OperationFailure(
                ErrorCode.VALIDATION_ERROR,
                "Memcached namespaces only support the key_prefix strategy.",
                False,
                {"engine": engine.value},
            )
        if draft.db_index is None or not 0 <= draft.db_index <= MAX_REDIS_DB_INDEX:
            raise OperationFailure(
                ErrorCode.VALIDATION_ERROR,
                "Redis logical-db namespaces require db_index in range 0-15.",
                False,
                {"dbIndex": draft.db_index},
            )
        return

    if not (draft.key_prefix or "").strip():
        raise OperationFailure(
            ErrorCode.VALIDATION_ERROR,
            "Prefix namespaces require a key prefix value.",
        )


def ensure_unique_name(siblings: list[NamespaceProfile], name: str) -> None:
    needle = name.strip().lower()
    if any(ns.name.strip().lower() == needle for ns in siblings):
        raise OperationFailure(
            ErrorCode.CONFLICT,
            "A namespace with this name already exists for the connection.",
            False,
            {"name": name.strip()},
        )


class NamespaceAdmin:
    """Namespace CRUD plus scope resolution for key and workflow calls."""

    def __init__(
        self,
        namespaces: NamespaceRepository,
        connections: ConnectionRepository,
        secrets: SecretStore,
        clock: Clock = utc_now,
    ):
        self.namespaces = namespaces
        self.connections = connections
        self.secrets = secrets
        self._clock = clock

    async def list_namespaces(self, connection_id: str) -> list[NamespaceProfile]:
        await require_connection(self.connections, connection_id)
        return await self.namespaces.list_by_connection(connection_id)

    async def create_namespace(self, draft: NamespaceDraft) -> NamespaceProfile:
        connection = await require_connection(self.connections, draft.connection_id)
        validate_namespace_draft(draft, connection.engine)
        ensure_unique_name(await self.namespaces.list_by_connection(connection.id), draft.name)

        logical_db = draft.strategy == NamespaceStrategy.REDIS_LOGICAL_DB
        now = self._clock()
        namespace = NamespaceProfile(
            id=new_id(),
            connection_id=connection.id,
            name=draft.name.strip(),
            engine=connection.engine,
            strategy=draft.strategy,
            db_index=draft.db_index if logical_db else None,
            key_prefix=None if logical_db else (draft.key_prefix or "").strip(),
            created_at=now,
            updated_at=now,
        )
        await self.namespaces.save(namespace)
        logger.info(
            "namespace_created",
            namespace_id=namespace.id,
            connection_id=connection.id,
            strategy=namespace.strategy.value,
        )
        return namespace

    async def rename_namespace(self, connection_id: str, id: str, name: str) -> NamespaceProfile:
        """Only the name of a namespace can change after creation."""
        existing = await self.namespaces.find_by_id(id)
        if existing is None or existing.connection_id != connection_id:
            raise not_found("Namespace", id=id, connectionId=connection_id)

        if not NAMESPACE_NAME_PATTERN.match(name.strip()):
            raise OperationFailure(
                ErrorCode.VALIDATION_ERROR,
                "Namespace name must be slug-like and 1-64 characters.",
            )
        siblings = await self.namespaces.list_by_connection(existing.connection_id)
        ensure_unique_name([ns for ns in siblings if ns.id != existing.id], name)

        updated = existing.model_copy(
            update={"name": name.strip(), "updated_at": self._clock()}
        )
        await self.namespaces.save(updated)
        return updated

    async def delete_namespace(self, connection_id: str, id: str) -> None:
        """Deleting an unknown namespace is a no-op."""
        existing = await self.namespaces.find_by_id(id)
        if existing is None or existing.connection_id != connection_id:
            return
        await self.namespaces.delete(id)
        logger.info("namespace_deleted", namespace_id=id, connection_id=connection_id)

    async def resolve(
        self, connection_id: str, namespace_id: Optional[str] = None
    ) -> tuple[ConnectionProfile, ConnectionSecret, NamespaceScope]:
        """
        Profile, secret and key scope for a call.

        Raises:
            OperationFailure: VALIDATION_ERROR when the connection is unknown
                or the namespace does not belong to it
        """
        profile, secret = await require_scope(self.connections, self.secrets, connection_id)
        if not namespace_id:
            return profile, secret, NamespaceScope()

        namespace = await self.namespaces.find_by_id(namespace_id)
        if namespace is None or namespace.connection_id != connection_id:
            raise OperationFailure(
                ErrorCode.VALIDATION_ERROR,
                "Namespace was not found for the selected connection.",
                False,
                {"connectionId": connection_id, "namespaceId": namespace_id},
            )
        return scope_profile(profile, namespace), secret, NamespaceScope(namespace)
