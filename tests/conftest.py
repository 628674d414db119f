"""Shared fixtures: in-memory database, fixture catalog and a controllable clock."""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from stocksync.config import Settings
from stocksync.context import SyncContext
from stocksync.db.models import Base
from stocksync.ingest.fixture_source import FixtureSource
from stocksync.ingest.rate_limiter import RateLimitedGateway
from stocksync.ingest.tokens import CredentialStore
from stocksync.services import AppServices


class FakeClock:
    """Naive UTC clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 12, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class RecordingNotifier:
    """Collects alerts instead of posting them."""

    def __init__(self):
        self.sent = []

    async def send_stock_alert(self, delivery):
        self.sent.append(delivery)
        return None

    async def close(self):
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    # Phase 2 runs one at a time: the in-memory database is a single shared connection
    return Settings(
        _env_file=None,
        gateway_backoff_base_seconds=0,
        gateway_queue_timeout_seconds=5,
        webhook_processing_concurrency=1,
        scan_lock_enabled=False,
        discord_webhook_url="",
        admin_api_key="",
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return RateLimitedGateway(
        max_requests_per_minute=100_000,
        window_seconds=60,
        queue_timeout=5,
        max_attempts=3,
        backoff_base=0,
    )


@pytest.fixture
def fixture_source(gateway, clock, test_settings):
    return FixtureSource(
        gateway,
        size=test_settings.fixture_catalog_size,
        cursor_ttl_seconds=test_settings.scan_cursor_ttl_seconds,
        clock=clock,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ctx(session_factory, fixture_source, gateway, test_settings, clock, notifier):
    return SyncContext(
        session_factory=session_factory,
        source=fixture_source,
        gateway=gateway,
        settings=test_settings,
        clock=clock,
        notifier=notifier,
    )


@pytest.fixture
def services(session_factory, fixture_source, gateway, test_settings, clock, notifier):
    return AppServices(
        settings=test_settings,
        session_factory=session_factory,
        gateway=gateway,
        source=fixture_source,
        credentials=CredentialStore(session_factory, clock=clock),
        notifier=notifier,
        clock=clock,
    )


@pytest_asyncio.fixture
async def capped_services(tmp_path, fixture_source, gateway, test_settings, clock, notifier):
    """Services over a file database, allowing two phase 2 runs at once.

    Each session opens its own connection, so concurrent runs do not share
    one transaction the way they would on the in-memory engine.
    """
    file_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'stocksync.db'}",
        poolclass=NullPool,
    )
    async with file_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)

    yield AppServices(
        settings=test_settings.model_copy(update={"webhook_processing_concurrency": 2}),
        session_factory=factory,
        gateway=gateway,
        source=fixture_source,
        credentials=CredentialStore(factory, clock=clock),
        notifier=notifier,
        clock=clock,
    )
    await file_engine.dispose()
