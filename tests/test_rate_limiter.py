"""Tests for the rate-limited gateway."""

import asyncio

import pytest

from stocksync.ingest.errors import (
    GatewayQueueTimeout,
    ItemNotFoundError,
    RateLimitedError,
    TransientUpstreamError,
)
from stocksync.ingest.rate_limiter import RateLimitedGateway


class ManualTime:
    """Monotonic clock and sleep that advance together."""

    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def _gateway(time_source: ManualTime, max_requests: int = 10, **kwargs) -> RateLimitedGateway:
    params = dict(
        max_requests_per_minute=max_requests,
        window_seconds=60,
        high_water_ratio=0.9,
        soft_water_ratio=0.5,
        queue_timeout=5,
        max_attempts=3,
        backoff_base=0,
        clock=time_source.clock,
        sleep=time_source.sleep,
    )
    params.update(kwargs)
    return RateLimitedGateway(**params)


async def _ok():
    return "ok"


@pytest.mark.asyncio
async def test_utilization_bounded_and_decays():
    t = ManualTime()
    gateway = _gateway(t, max_requests=10)

    for _ in range(9):
        await gateway.execute_call(_ok)
        assert gateway.utilization_percent() <= 100

    assert gateway.utilization_percent() == 90.0
    assert gateway.is_near_limit() is True

    readings = []
    for _ in range(7):
        t.now += 10
        readings.append(gateway.utilization_percent())

    assert readings == sorted(readings, reverse=True)
    assert readings[-1] == 0.0
    assert gateway.is_near_limit() is False


@pytest.mark.asyncio
async def test_calls_above_high_water_are_queued_not_dropped():
    t = ManualTime()
    gateway = _gateway(t, max_requests=10)  # slot limit 9

    results = [await gateway.execute_call(_ok) for _ in range(12)]

    assert results == ["ok"] * 12
    assert gateway.queued_requests >= 1
    assert gateway.total_requests == 12
    # Queued calls waited for the window to slide
    assert sum(t.sleeps) >= 59


@pytest.mark.asyncio
async def test_queue_wait_is_bounded():
    t = ManualTime()

    async def stuck_sleep(seconds):
        # Time never moves, so the window never frees a slot
        await asyncio.sleep(0.01)

    gateway = _gateway(t, max_requests=2, high_water_ratio=0.5, queue_timeout=0.1, sleep=stuck_sleep)
    await gateway.execute_call(_ok)

    with pytest.raises(GatewayQueueTimeout) as exc_info:
        await gateway.execute_call(_ok)
    assert exc_info.value.retryable is True
    assert gateway.get_stats()["queueLength"] == 0


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    t = ManualTime()
    gateway = _gateway(t)
    calls = {"n": 0}

    async def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise TransientUpstreamError("HTTP 503")
        return {"id": "MLA1"}

    assert await gateway.execute_call(flaky) == {"id": "MLA1"}
    assert calls["n"] == 3
    assert gateway.retried_requests == 2


@pytest.mark.asyncio
async def test_retries_exhausted_propagate_retryable_error():
    t = ManualTime()
    gateway = _gateway(t, max_attempts=2)

    async def always_down():
        raise TransientUpstreamError("HTTP 500")

    with pytest.raises(TransientUpstreamError) as exc_info:
        await gateway.execute_call(always_down)
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_rate_limited_honours_retry_after():
    t = ManualTime()
    gateway = _gateway(t, queue_timeout=10)
    calls = {"n": 0}

    async def throttled():
        calls["n"] += 1
        if calls["n"] == 1:
            raise RateLimitedError(retry_after=7)
        return "done"

    assert await gateway.execute_call(throttled) == "done"
    assert 7 in t.sleeps


@pytest.mark.asyncio
async def test_retry_after_beyond_wait_budget_is_raised():
    t = ManualTime()
    gateway = _gateway(t, queue_timeout=5)
    calls = {"n": 0}

    async def throttled():
        calls["n"] += 1
        raise RateLimitedError(retry_after=3600)

    with pytest.raises(RateLimitedError) as exc_info:
        await gateway.execute_call(throttled)
    assert exc_info.value.retryable is True
    assert exc_info.value.retry_after == 3600
    assert calls["n"] == 1
    assert 3600 not in t.sleeps


@pytest.mark.asyncio
async def test_permanent_errors_are_not_retried():
    t = ManualTime()
    gateway = _gateway(t)
    calls = {"n": 0}

    async def missing():
        calls["n"] += 1
        raise ItemNotFoundError("item MLA1: not found")

    with pytest.raises(ItemNotFoundError):
        await gateway.execute_call(missing)
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_smart_pause_scales_with_utilization():
    t = ManualTime()
    gateway = _gateway(t, max_requests=10)

    assert await gateway.smart_pause() == 0.0

    for _ in range(9):
        await gateway.execute_call(_ok)
    paused = await gateway.smart_pause()
    assert paused > 0


def test_stats_shape():
    t = ManualTime()
    gateway = _gateway(t, max_requests=1400)
    stats = gateway.get_stats()

    assert stats["maxRequests"] == 1400
    assert stats["currentRequests"] == 0
    assert stats["utilizationPercent"] == 0.0
    assert stats["queueLength"] == 0
    assert stats["isNearLimit"] is False
