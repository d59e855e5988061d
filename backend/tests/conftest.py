"""
Speichr - Test Fixtures
=======================

Shared pytest fixtures for all tests.
"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from speichr.api.main import create_app
from speichr.core.database import Base, create_session_factory
from speichr.core.gateway import InMemoryCacheGateway
from speichr.core.models import CacheEngine, EnvironmentTag
from speichr.core.repositories import Repositories
from speichr.core.schemas import ConnectionDraft, ConnectionProfile, ConnectionSecret
from speichr.core.service import SpeichrService

# Wednesday
START_TIME = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# ==========================================================================
# Core Fixtures
# ==========================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def repos(clock: FakeClock) -> Repositories:
    return Repositories.in_memory(clock)


@pytest.fixture
def gateway(clock: FakeClock) -> InMemoryCacheGateway:
    return InMemoryCacheGateway(clock)


@pytest.fixture
def service(
    repos: Repositories,
    gateway: InMemoryCacheGateway,
    clock: FakeClock,
    sleeper: RecordingSleep,
    tmp_path,
) -> SpeichrService:
    """Service over in-memory repositories and gateway."""
    return SpeichrService(
        repositories=repos,
        gateway=gateway,
        export_dir=str(tmp_path),
        clock=clock,
        sleep=sleeper,
    )


def connection_draft(**overrides: Any) -> ConnectionDraft:
    values: dict[str, Any] = {
        "name": "Local Redis",
        "engine": CacheEngine.REDIS,
        "host": "127.0.0.1",
        "port": 6379,
        "environment": EnvironmentTag.DEV,
    }
    values.update(overrides)
    return ConnectionDraft(**values)


@pytest.fixture
def make_connection(
    service: SpeichrService,
) -> Callable[..., Awaitable[ConnectionProfile]]:
    """
    Factory creating a stored connection with a password secret.

    Keyword arguments override ConnectionDraft fields.
    """
    async def factory(**overrides: Any) -> ConnectionProfile:
        return await service.create_connection(
            connection_draft(**overrides),
            ConnectionSecret(password="secret"),
        )

    return factory


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def sql_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with every table created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(sql_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(sql_engine)


# ==========================================================================
# HTTP Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def client(service: SpeichrService) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app serving the test service."""
    app = create_app(service)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await service.shutdown()
