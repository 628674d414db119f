"""Process-wide collaborators built once at startup."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stocksync.config import Settings
from stocksync.context import Clock, SyncContext, utcnow
from stocksync.ingest.base import CatalogSource
from stocksync.ingest.fixture_source import FixtureSource
from stocksync.ingest.marketplace import MarketplaceSource
from stocksync.ingest.rate_limiter import RateLimitedGateway
from stocksync.ingest.tokens import CredentialStore
from stocksync.notify.discord import DiscordNotifier
from stocksync.worker.scan_lock import ScanLockManager

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """
    Long-lived pieces shared by every request and scheduled job.

    The gateway window is process-local, so one gateway instance must front
    every outbound call this process makes. Per-invocation state goes in the
    SyncContext returned by context().
    """

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    gateway: RateLimitedGateway
    source: CatalogSource
    credentials: CredentialStore
    notifier: Optional[DiscordNotifier] = None
    lock_manager: Optional[ScanLockManager] = None
    clock: Clock = utcnow
    webhook_slots: asyncio.Semaphore = field(init=False, repr=False)

    def __post_init__(self):
        # Shared by background phase 2 runs and the replay sweep
        self.webhook_slots = asyncio.Semaphore(
            max(1, self.settings.webhook_processing_concurrency)
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> "AppServices":
        gateway = RateLimitedGateway(
            max_requests_per_minute=settings.api_max_requests_per_minute,
            window_seconds=settings.rate_window_seconds,
            high_water_ratio=settings.rate_high_water_ratio,
            soft_water_ratio=settings.rate_soft_water_ratio,
            queue_timeout=settings.gateway_queue_timeout_seconds,
            max_attempts=settings.gateway_max_attempts,
            backoff_base=settings.gateway_backoff_base_seconds,
        )
        credentials = CredentialStore(
            session_factory, refresh_margin_seconds=settings.token_refresh_margin_seconds
        )

        if settings.catalog_source == "fixture":
            source: CatalogSource = FixtureSource(
                gateway,
                size=settings.fixture_catalog_size,
                page_duplicates=settings.fixture_page_duplicates,
                cursor_ttl_seconds=settings.scan_cursor_ttl_seconds,
            )
            logger.info(f"Using fixture catalog with {settings.fixture_catalog_size} items")
        else:
            source = MarketplaceSource(
                gateway,
                credentials,
                base_url=settings.api_base_url,
                batch_size=settings.detail_batch_size,
                concurrency=settings.detail_fetch_concurrency,
            )
            logger.info(f"Using marketplace API at {settings.api_base_url}")

        notifier = DiscordNotifier(settings.discord_webhook_url) if settings.discord_webhook_url else None
        lock_manager = ScanLockManager(settings.redis_url) if settings.scan_lock_enabled else None

        return cls(
            settings=settings,
            session_factory=session_factory,
            gateway=gateway,
            source=source,
            credentials=credentials,
            notifier=notifier,
            lock_manager=lock_manager,
        )

    def context(self) -> SyncContext:
        return SyncContext(
            session_factory=self.session_factory,
            source=self.source,
            gateway=self.gateway,
            settings=self.settings,
            clock=self.clock,
            notifier=self.notifier,
            lock_manager=self.lock_manager,
            webhook_slots=self.webhook_slots,
        )

    async def close(self) -> None:
        await self.source.close()
        if self.notifier:
            await self.notifier.close()
        if self.lock_manager:
            await self.lock_manager.close()
