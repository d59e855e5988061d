"""
Speichr - In-Memory Cache Gateway
=================================

Dict-backed stand-in for the redis/memcached protocol clients. Keys are
stored per connection id and redis logical db; TTLs are tracked against
the injected clock.
"""

import fnmatch
import time
from datetime import datetime, timedelta
from typing import Optional

import structlog

from speichr.core.errors import ErrorCode, OperationFailure
from speichr.core.models import CacheEngine
from speichr.core.schemas import (
    ConnectionDraft,
    ConnectionProfile,
    ConnectionSecret,
    ConnectionTestResult,
    KeyListResult,
    KeyValueRecord,
    ProviderCapabilities,
)
from speichr.core.utils import Clock, utc_now

logger = structlog.get_logger()


class InMemoryCacheGateway:
    """
    Cache gateway backed by process memory.

    Cursors are stringified offsets into the sorted key list, which keeps
    paging deterministic for previews and tests.
    """

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._data: dict[str, dict[str, tuple[str, Optional[datetime]]]] = {}
        self._unreachable: set[str] = set()

    # ==========================================================================
    # Test hooks
    # ==========================================================================

    def seed(self, connection_id: str, values: dict[str, str], db_index: int = 0) -> None:
        store = self._data.setdefault(self._store_id(connection_id, db_index), {})
        for key, value in values.items():
            store[key] = (value, None)

    def set_unreachable(self, host: str, unreachable: bool = True) -> None:
        """Make every call against a host fail like a dropped transport."""
        if unreachable:
            self._unreachable.add(host)
        else:
            self._unreachable.discard(host)

    # ==========================================================================
    # Gateway contract
    # ==========================================================================

    async def test_connection(
        self, profile: ConnectionDraft, secret: ConnectionSecret
    ) -> ConnectionTestResult:
        started = time.perf_counter()
        self._check_reachable(profile)
        latency_ms = int((time.perf_counter() - started) * 1000)
        return ConnectionTestResult(
            latency_ms=latency_ms,
            capabilities=await self.get_capabilities(profile),
        )

    async def get_capabilities(self, profile: ConnectionDraft) -> ProviderCapabilities:
        if profile.engine == CacheEngine.MEMCACHED:
            return ProviderCapabilities(
                supports_ttl=True,
                supports_monitor_stream=False,
                supports_slow_log=False,
                supports_bulk_delete_preview=False,
                supports_snapshot_restore=True,
                supports_pattern_scan=False,
            )
        return ProviderCapabilities(
            supports_ttl=True,
            supports_monitor_stream=True,
            supports_slow_log=True,
            supports_bulk_delete_preview=True,
            supports_snapshot_restore=True,
            supports_pattern_scan=True,
        )

    async def list_keys(
        self,
        profile: ConnectionProfile,
        secret: ConnectionSecret,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> KeyListResult:
        self._check_reachable(profile)
        return self._page(sorted(self._live(profile)), cursor, limit)

    async def search_keys(
        self,
        profile: ConnectionProfile,
        secret: ConnectionSecret,
        pattern: str,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> KeyListResult:
        self._check_reachable(profile)
        if profile.engine == CacheEngine.MEMCACHED:
            raise OperationFailure(
                ErrorCode.NOT_SUPPORTED,
                "Pattern search is not supported for memcached connections.",
                False,
                {"connectionId": profile.id},
            )
        keys = sorted(k for k in self._live(profile) if fnmatch.fnmatchcase(k, pattern))
        return self._page(keys, cursor, limit)

    async def get_value(
        self, profile: ConnectionProfile, secret: ConnectionSecret, key: str
    ) -> KeyValueRecord:
        self._check_reachable(profile)
        entry = self._live(profile).get(key)
        if entry is None:
            return KeyValueRecord(key=key, value=None, ttl_seconds=None)

        value, expires_at = entry
        ttl_seconds = None
        if expires_at is not None:
            ttl_seconds = max(0, int((expires_at - self._clock()).total_seconds()))
        return KeyValueRecord(key=key, value=value, ttl_seconds=ttl_seconds)

    async def set_value(
        self,
        profile: ConnectionProfile,
        secret: ConnectionSecret,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self._check_reachable(profile)
        expires_at = None
        if ttl_seconds:
            expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        self._store(profile)[key] = (value, expires_at)

    async def delete_key(
        self, profile: ConnectionProfile, secret: ConnectionSecret, key: str
    ) -> None:
        self._check_reachable(profile)
        self._store(profile).pop(key, None)

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _check_reachable(self, profile: ConnectionDraft) -> None:
        if profile.host in self._unreachable:
            logger.debug("cache_gateway_unreachable", host=profile.host, port=profile.port)
            raise OperationFailure(
                ErrorCode.CONNECTION_FAILED,
                f"Could not reach {profile.host}:{profile.port}.",
                True,
                {"host": profile.host, "port": profile.port},
            )

    @staticmethod
    def _store_id(connection_id: str, db_index: Optional[int]) -> str:
        return f"{connection_id}/db{db_index}" if db_index else connection_id

    def _store(self, profile: ConnectionProfile) -> dict[str, tuple[str, Optional[datetime]]]:
        return self._data.setdefault(self._store_id(profile.id, profile.db_index), {})

    def _live(self, profile: ConnectionProfile) -> dict[str, tuple[str, Optional[datetime]]]:
        store = self._store(profile)
        now = self._clock()
        for key in [k for k, (_, exp) in store.items() if exp is not None and exp <= now]:
            del store[key]
        return store

    @staticmethod
    def _page(keys: list[str], cursor: Optional[str], limit: int) -> KeyListResult:
        start = int(cursor) if cursor and cursor.isdigit() else 0
        end = start + max(1, limit)
        page = keys[start:end]
        return KeyListResult(
            keys=page,
            next_cursor=str(end) if end < len(keys) else None,
        )
