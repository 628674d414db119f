"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from stocksync.config import settings
from stocksync.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)


def setup_scheduler(task_runner: TaskRunner) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Pending webhook replay every settings.webhook_sweep_interval_minutes
    - Webhook retention cleanup daily at settings.webhook_cleanup_hour

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    sweep_interval = max(1, int(settings.webhook_sweep_interval_minutes))

    scheduler.add_job(
        task_runner.replay_pending_webhooks,
        IntervalTrigger(minutes=sweep_interval),
        id="webhook_replay",
        name="Replay pending webhooks",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=300,
        replace_existing=True,
    )

    scheduler.add_job(
        task_runner.cleanup_webhooks,
        CronTrigger(hour=settings.webhook_cleanup_hour, minute=0),
        id="webhook_cleanup",
        name="Delete old webhook events",
        max_instances=1,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: webhook replay every %d minutes, "
        "webhook cleanup daily at %02d:00 (retention %d days)",
        sweep_interval,
        settings.webhook_cleanup_hour,
        settings.webhook_retention_days,
    )

    return scheduler
