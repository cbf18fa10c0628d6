"""
Shared test fixtures for Trackcore tests.

Provides database setup, core components wired to a test clock, and test clients.
"""

import secrets
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from trackcore.config import FileStoreConfig, IdempotencyConfig, QuotaConfig, settings
from trackcore.database import Base, get_session_factory
from trackcore.dependencies import get_blob_storage
from trackcore.main import app
from trackcore.middleware.rate_limit import reset_limiter
from trackcore.services.blob_storage import InMemoryBlobStorage
from trackcore.services.dedup_store import FileDedupStore
from trackcore.services.idempotency import IdempotencyGate
from trackcore.services.quota_ledger import QuotaLedger

# Import models so they're registered with Base.metadata before table creation
from trackcore import models  # noqa: F401

# Test database URL (SQLite file by default, PostgreSQL when configured)
TEST_DATABASE_URL = settings.test_database_url

# Create test engine with NullPool so each session gets its own connection
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    poolclass=NullPool,
    echo=False,
)

TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

UPLOAD_SCOPE = "POST /api/v1/files"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# --- Rate Limiter Reset Fixture ---


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Reset rate limiter before each test to ensure test isolation."""
    reset_limiter()
    yield


# --- Database Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Create tables before each test function, drop after.
    Provides isolated database state per test.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield TestSessionLocal

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# --- Component Fixtures ---


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def blobs() -> InMemoryBlobStorage:
    return InMemoryBlobStorage()


@pytest.fixture
def file_store(session_factory, blobs, clock) -> FileDedupStore:
    return FileDedupStore(
        session_factory,
        blobs,
        FileStoreConfig(path_prefix="files", max_upload_bytes=1024),
        clock=clock,
    )


@pytest.fixture
def quota_config() -> QuotaConfig:
    return QuotaConfig.from_limits(
        {"llm": {"daily_limit": 100, "rate_limit": 10}},
        ["llm.daily_limit", "llm.rate_limit"],
    )


@pytest.fixture
def ledger(session_factory, quota_config, clock) -> QuotaLedger:
    return QuotaLedger(session_factory, quota_config, clock=clock)


@pytest.fixture
def idempotency_config() -> IdempotencyConfig:
    return IdempotencyConfig(
        required_scopes=frozenset({UPLOAD_SCOPE}),
        ttl=timedelta(hours=24),
        max_execution_time=timedelta(minutes=5),
    )


@pytest.fixture
def gate(session_factory, idempotency_config, clock) -> IdempotencyGate:
    return IdempotencyGate(session_factory, idempotency_config, clock=clock)


# --- HTTP Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def async_client(session_factory, blobs) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client configured for testing.
    Overrides the session factory and blob storage dependencies.
    """
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_blob_storage] = lambda: blobs

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        follow_redirects=True,
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def user_headers():
    """Factory fixture for caller identity and request id headers."""

    def _user_headers(user_id: uuid.UUID, request_id: str | None = None) -> dict[str, str]:
        headers = {"X-User-ID": str(user_id)}
        if request_id is not None:
            headers["X-Request-ID"] = request_id
        return headers

    return _user_headers


# --- Utility Fixtures ---


@pytest.fixture
def idempotency_key():
    """Generate a unique idempotency key for testing."""

    def _idempotency_key(prefix: str = "test") -> str:
        return f"{prefix}-{secrets.token_hex(16)}"

    return _idempotency_key


@pytest.fixture
def frozen_time():
    """
    Fixture for time-based testing using freezegun.

    Usage:
        with frozen_time("2026-02-01 12:00:00"):
            # time is frozen
    """
    from freezegun import freeze_time

    return freeze_time
