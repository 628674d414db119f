"""Per-invocation service wiring.

Services receive everything they touch (session factory, catalog source,
gateway, settings, clock) through a SyncContext built for the request
instead of reaching for module-level instances.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stocksync.config import Settings

if TYPE_CHECKING:
    from stocksync.ingest.base import CatalogSource
    from stocksync.ingest.rate_limiter import RateLimitedGateway
    from stocksync.notify.discord import DiscordNotifier
    from stocksync.worker.scan_lock import ScanLockManager

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.utcnow()


@dataclass
class SyncContext:
    """Collaborators shared by one scan step or webhook run."""

    session_factory: async_sessionmaker[AsyncSession]
    source: "CatalogSource"
    gateway: "RateLimitedGateway"
    settings: Settings
    clock: Clock = field(default=utcnow)
    notifier: Optional["DiscordNotifier"] = None
    lock_manager: Optional["ScanLockManager"] = None
    # Process-wide cap on concurrent webhook phase 2 runs
    webhook_slots: Optional[asyncio.Semaphore] = None

    def now(self) -> datetime:
        return self.clock()
