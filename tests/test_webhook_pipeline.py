"""Tests for webhook intake and asynchronous processing."""

import asyncio

import pytest
from sqlalchemy import func, select

from stocksync.db.cursor_store import CursorStore
from stocksync.db.models import Product, ProcessingStatus, WebhookEvent
from stocksync.ingest.reconciler import Reconciler
from stocksync.ingest.scanner import Scanner
from stocksync.webhooks.pipeline import WebhookPipeline, _Outcome
from stocksync.webhooks.schemas import WebhookPayload, classify_topic, extract_resource_id

USER_ID = 123456789


def _payload(**overrides) -> dict:
    data = {
        "_id": "f9f08571-1f65-4c46-9e0a-c0f43faas1557",
        "resource": "/items/MLM100000001",
        "user_id": USER_ID,
        "topic": "items",
        "application_id": 2069392825111111,
        "attempts": 1,
        "sent": "2026-03-02T11:59:58.000Z",
        "received": "2026-03-02T11:59:58.000Z",
    }
    data.update(overrides)
    return data


async def _event(session_factory, event_id) -> WebhookEvent:
    async with session_factory() as db:
        return (await db.execute(
            select(WebhookEvent).where(WebhookEvent.event_id == event_id)
        )).scalar_one()


def test_resource_id_extraction():
    assert extract_resource_id("/items/MLA123456789") == "MLA123456789"
    assert extract_resource_id("/user-products/MLAU123/stock") == "MLAU123"
    assert extract_resource_id("/orders/1234") is None


def test_topic_classification():
    assert classify_topic("stock-locations") == "supported"
    assert classify_topic("orders_v2") == "ignored"
    assert classify_topic("payments") == "unsupported"


def test_event_id_falls_back_to_digest():
    payload = _payload()
    del payload["_id"]
    first = WebhookPayload.model_validate(payload)
    second = WebhookPayload.model_validate(dict(payload, extra_field="ignored"))

    assert len(first.event_id) == 64
    assert first.event_id == second.event_id


@pytest.mark.asyncio
async def test_receive_stores_and_queues(ctx, session_factory, fixture_source):
    pipeline = WebhookPipeline(ctx)
    result = await pipeline.receive(_payload(), client_ip="54.88.218.97")

    assert result.status_code == 200
    assert result.queued is True
    assert result.body["success"] is True
    assert result.body["webhook_id"] == _payload()["_id"]
    assert "processingTime" in result.body
    # Phase 1 never calls the marketplace
    assert fixture_source.detail_calls == 0

    event = await _event(session_factory, result.event_id)
    assert event.resource_id == "MLM100000001"
    assert event.processed is False
    assert event.processing_status == ProcessingStatus.PENDING
    assert event.application_id == "2069392825111111"


@pytest.mark.asyncio
async def test_duplicate_delivery_is_absorbed(ctx, session_factory, fixture_source):
    pipeline = WebhookPipeline(ctx)

    first = await pipeline.receive(_payload())
    second = await pipeline.receive(_payload(attempts=2))
    assert first.queued is True
    assert second.queued is False
    assert second.status_code == 200
    assert second.body["duplicate"] is True

    assert await pipeline.process_event(first.event_id) == ProcessingStatus.COMPLETED
    assert await pipeline.process_event(first.event_id) is None
    assert fixture_source.detail_calls == 1

    async with session_factory() as db:
        count = (await db.execute(select(func.count()).select_from(WebhookEvent))).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_invalid_payloads_are_rejected(ctx):
    pipeline = WebhookPipeline(ctx)

    empty = await pipeline.receive({})
    assert empty.status_code == 400

    missing = _payload()
    del missing["sent"]
    result = await pipeline.receive(missing)
    assert result.status_code == 400
    assert "sent" in result.body["message"]

    unsupported = await pipeline.receive(_payload(topic="payments"))
    assert unsupported.status_code == 400
    assert unsupported.queued is False


@pytest.mark.asyncio
async def test_ignored_topic_is_acknowledged_not_stored(ctx, session_factory):
    result = await WebhookPipeline(ctx).receive(_payload(topic="orders_v2", resource="/orders/99"))

    assert result.status_code == 200
    assert result.body["ignored"] is True
    assert result.queued is False
    async with session_factory() as db:
        count = (await db.execute(select(func.count()).select_from(WebhookEvent))).scalar_one()
    assert count == 0


@pytest.mark.asyncio
async def test_process_event_reconciles_item(ctx, session_factory, fixture_source, notifier):
    fixture_source.set_quantity("MLM100000001", 0)
    pipeline = WebhookPipeline(ctx)
    received = await pipeline.receive(_payload())

    status = await pipeline.process_event(received.event_id)

    assert status == ProcessingStatus.COMPLETED
    event = await _event(session_factory, received.event_id)
    assert event.processed is True
    assert event.result["productId"] == "MLM100000001"
    assert event.result["finalStock"] == 0
    async with session_factory() as db:
        product = await db.get(Product, {"id": "MLM100000001", "user_id": USER_ID})
    assert product.available_quantity == 0
    assert [d.product_id for d in notifier.sent] == ["MLM100000001"]


@pytest.mark.asyncio
async def test_webhook_before_full_sync_is_skipped(ctx, session_factory, clock, fixture_source):
    pipeline = WebhookPipeline(ctx)
    received = await pipeline.receive(_payload())

    clock.advance(minutes=2)
    async with session_factory() as db:
        await CursorStore(db).mark_full_sync(USER_ID, clock(), 1230)
        await db.commit()

    status = await pipeline.process_event(received.event_id)

    assert status == ProcessingStatus.SKIPPED
    assert fixture_source.detail_calls == 0
    event = await _event(session_factory, received.event_id)
    assert event.processed is True
    assert event.result["reason"] == "stale"


@pytest.mark.asyncio
async def test_webhook_after_full_sync_is_processed(ctx, session_factory, clock):
    async with session_factory() as db:
        await CursorStore(db).mark_full_sync(USER_ID, clock(), 1230)
        await db.commit()
    clock.advance(minutes=2)

    pipeline = WebhookPipeline(ctx)
    received = await pipeline.receive(_payload())
    assert await pipeline.process_event(received.event_id) == ProcessingStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_processing_is_replayed(ctx, session_factory, fixture_source):
    fixture_source.failing_items = {"MLM100000001"}
    pipeline = WebhookPipeline(ctx)
    received = await pipeline.receive(_payload())

    assert await pipeline.process_event(received.event_id) == ProcessingStatus.FAILED
    event = await _event(session_factory, received.event_id)
    assert event.processed is False
    assert event.processing_attempts == 1
    assert event.result["retryable"] is True
    assert "HTTP 500" in event.last_error

    pending = await pipeline.get_pending_webhooks()
    assert [e.event_id for e in pending] == [received.event_id]

    fixture_source.failing_items = set()
    summary = await pipeline.replay_pending()
    assert summary == {"total": 1, ProcessingStatus.COMPLETED: 1}
    assert await pipeline.get_pending_webhooks() == []


@pytest.mark.asyncio
async def test_missing_item_completes_with_note(ctx, session_factory):
    pipeline = WebhookPipeline(ctx)
    received = await pipeline.receive(_payload(_id="gone-1", resource="/items/MLM999999999"))

    assert await pipeline.process_event(received.event_id) == ProcessingStatus.COMPLETED
    event = await _event(session_factory, received.event_id)
    assert event.result["action"] == "not_found"


@pytest.mark.asyncio
async def test_stuck_claims_are_released(ctx, session_factory, clock):
    pipeline = WebhookPipeline(ctx)
    received = await pipeline.receive(_payload())
    async with session_factory() as db:
        event = (await db.execute(
            select(WebhookEvent).where(WebhookEvent.event_id == received.event_id)
        )).scalar_one()
        event.processing_status = ProcessingStatus.PROCESSING
        event.processing_started_at = clock()
        event.processing_attempts = 1
        await db.commit()

    assert await pipeline.get_pending_webhooks() == []

    clock.advance(minutes=ctx.settings.webhook_claim_timeout_minutes + 1)
    pending = await pipeline.get_pending_webhooks()
    assert [e.event_id for e in pending] == [received.event_id]


@pytest.mark.asyncio
async def test_cleanup_and_stats(ctx, session_factory, clock):
    pipeline = WebhookPipeline(ctx)
    old = await pipeline.receive(_payload(_id="old-1"))
    await pipeline.process_event(old.event_id)
    pending_old = await pipeline.receive(_payload(_id="old-2", resource="/items/MLM100000002"))

    clock.advance(days=8)
    fresh = await pipeline.receive(_payload(_id="new-1", resource="/items/MLM100000003"))
    await pipeline.process_event(fresh.event_id)

    stats = await pipeline.get_stats()
    assert stats["totalWebhooks"] == 3
    assert stats["completedWebhooks"] == 2
    assert stats["pendingWebhooks"] == 1

    deleted = await pipeline.cleanup_processed()
    assert deleted == 1

    async with session_factory() as db:
        remaining = set((await db.execute(select(WebhookEvent.event_id))).scalars().all())
    assert remaining == {pending_old.event_id, fresh.event_id}


@pytest.mark.asyncio
async def test_write_failure_leaves_event_replayable(ctx, session_factory, monkeypatch):
    pipeline = WebhookPipeline(ctx)
    received = await pipeline.receive(_payload())

    async def disk_full(self, records):
        raise RuntimeError("disk full")

    with monkeypatch.context() as patched:
        patched.setattr(Reconciler, "_insert_new", disk_full)
        assert await pipeline.process_event(received.event_id) == ProcessingStatus.FAILED

    event = await _event(session_factory, received.event_id)
    assert event.processed is False
    assert event.processing_status == ProcessingStatus.FAILED
    assert event.last_error == "disk full"
    assert event.result["errorType"] == "RuntimeError"
    async with session_factory() as db:
        assert await db.get(Product, {"id": "MLM100000001", "user_id": USER_ID}) is None

    assert await pipeline.replay_pending() == {"total": 1, ProcessingStatus.COMPLETED: 1}
    async with session_factory() as db:
        assert await db.get(Product, {"id": "MLM100000001", "user_id": USER_ID}) is not None


@pytest.mark.asyncio
async def test_event_received_mid_scan_is_skipped_after_completion(ctx, clock, fixture_source):
    scanner = Scanner(ctx)
    await scanner.run_step(USER_ID)

    clock.advance(seconds=1)
    pipeline = WebhookPipeline(ctx)
    received = await pipeline.receive(_payload(resource="/items/MLM100000001"))

    clock.advance(seconds=1)
    while (await scanner.run_step(USER_ID)).has_more:
        pass

    calls_before = fixture_source.detail_calls
    assert await pipeline.process_event(received.event_id) == ProcessingStatus.SKIPPED
    assert fixture_source.detail_calls == calls_before


@pytest.mark.asyncio
async def test_phase_two_runs_respect_concurrency_cap(capped_services, monkeypatch):
    in_flight = {"now": 0, "peak": 0, "runs": 0}

    async def slow_process(self, event):
        in_flight["now"] += 1
        in_flight["runs"] += 1
        in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
        await asyncio.sleep(0.05)
        in_flight["now"] -= 1
        return _Outcome(ProcessingStatus.COMPLETED)

    monkeypatch.setattr(WebhookPipeline, "_process", slow_process)

    event_ids = []
    for n in range(6):
        received = await WebhookPipeline(capped_services.context()).receive(
            _payload(_id=f"burst-{n}", resource=f"/items/MLM10000002{n}")
        )
        event_ids.append(received.event_id)

    # One pipeline per request, as the route builds them
    statuses = await asyncio.gather(*(
        WebhookPipeline(capped_services.context()).process_event(event_id)
        for event_id in event_ids
    ))

    assert statuses == [ProcessingStatus.COMPLETED] * 6
    assert in_flight["runs"] == 6
    assert in_flight["peak"] <= 2
