"""Tests for the scheduled webhook maintenance jobs."""

import pytest

from stocksync.config import settings
from stocksync.webhooks.pipeline import WebhookPipeline
from stocksync.worker.scheduler import setup_scheduler
from stocksync.worker.tasks import TaskRunner

USER_ID = 123456789


def _notification(event_id: str, item_id: str) -> dict:
    return {
        "_id": event_id,
        "resource": f"/items/{item_id}",
        "user_id": USER_ID,
        "topic": "items_prices",
        "attempts": 1,
        "sent": "2026-03-02T11:59:58Z",
    }


@pytest.mark.asyncio
async def test_replay_job_processes_stored_events(services, fixture_source):
    pipeline = WebhookPipeline(services.context())
    for n, item_id in enumerate(["MLM100000010", "MLM100000011", "MLM100000010"]):
        await pipeline.receive(_notification(f"evt-{n}", item_id))

    runner = TaskRunner(services)
    await runner.initialize()
    summary = await runner.replay_pending_webhooks()

    assert summary == {"total": 3, "completed": 3}
    assert fixture_source.detail_calls == 3
    assert (await runner.replay_pending_webhooks()) == {"total": 0}


@pytest.mark.asyncio
async def test_cleanup_job_applies_retention(services, clock):
    pipeline = WebhookPipeline(services.context())
    received = await pipeline.receive(_notification("evt-old", "MLM100000012"))
    await pipeline.process_event(received.event_id)

    runner = TaskRunner(services)
    assert await runner.cleanup_webhooks() == 0

    clock.advance(days=services.settings.webhook_retention_days + 1)
    assert await runner.cleanup_webhooks() == 1


@pytest.mark.asyncio
async def test_job_failures_propagate(services):
    class BrokenPipeline:
        async def replay_pending(self, limit=None):
            raise RuntimeError("database unavailable")

    class BrokenRunner(TaskRunner):
        def _pipeline(self):
            return BrokenPipeline()

    with pytest.raises(RuntimeError):
        await BrokenRunner(services).replay_pending_webhooks()


def test_scheduler_registers_jobs(services):
    scheduler = setup_scheduler(TaskRunner(services))

    jobs = {job.id: job for job in scheduler.get_jobs()}
    assert set(jobs) == {"webhook_replay", "webhook_cleanup"}
    assert jobs["webhook_replay"].max_instances == 1
    assert str(settings.webhook_cleanup_hour) in str(jobs["webhook_cleanup"].trigger)
