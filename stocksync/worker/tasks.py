"""Scheduled maintenance jobs."""

import logging
from typing import Optional

from stocksync import metrics
from stocksync.services import AppServices
from stocksync.webhooks.pipeline import WebhookPipeline

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Runner for background tasks.

    - Replays webhooks whose phase 2 failed or never ran
    - Deletes old webhook events past the retention window
    """

    def __init__(self, services: AppServices):
        self.services = services

    async def initialize(self):
        """Initialize task runner."""
        logger.info("Task runner initialized")

    async def close(self):
        """Clean up resources."""
        await self.services.close()

    def _pipeline(self) -> WebhookPipeline:
        return WebhookPipeline(self.services.context())

    async def replay_pending_webhooks(self, limit: Optional[int] = None) -> dict[str, int]:
        """Sweep pending and failed webhooks (scheduled trigger)."""
        try:
            summary = await self._pipeline().replay_pending(limit)
        except Exception as e:
            logger.error(f"Webhook replay failed: {e}", exc_info=True)
            metrics.record_scheduler_run("webhook_replay", False)
            raise

        metrics.record_scheduler_run("webhook_replay", True)
        return summary

    async def cleanup_webhooks(self, days: Optional[int] = None) -> int:
        """Apply the webhook retention policy (scheduled trigger)."""
        try:
            deleted = await self._pipeline().cleanup_processed(days)
        except Exception as e:
            logger.error(f"Webhook cleanup failed: {e}", exc_info=True)
            metrics.record_scheduler_run("webhook_cleanup", False)
            raise

        metrics.record_scheduler_run("webhook_cleanup", True)
        return deleted
