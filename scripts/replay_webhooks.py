#!/usr/bin/env python3
"""
Replay pending webhooks and apply the retention policy once.

Usage: python scripts/replay_webhooks.py [--limit N] [--cleanup-days N]
"""

import argparse
import asyncio
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from stocksync.config import settings
from stocksync.db.session import AsyncSessionLocal
from stocksync.logging_config import setup_logging
from stocksync.services import AppServices
from stocksync.worker.tasks import TaskRunner


async def run(limit: int, cleanup_days: int | None) -> None:
    runner = TaskRunner(AppServices.from_settings(settings, AsyncSessionLocal))
    await runner.initialize()
    try:
        summary = await runner.replay_pending_webhooks(limit)
        print(f"Replay: {summary}")
        if cleanup_days is not None:
            deleted = await runner.cleanup_webhooks(cleanup_days)
            print(f"Cleanup: deleted {deleted} events")
    finally:
        await runner.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--limit", type=int, default=settings.webhook_sweep_batch_size)
    parser.add_argument("--cleanup-days", type=int, default=None)
    args = parser.parse_args()
    setup_logging()
    asyncio.run(run(args.limit, args.cleanup_days))
