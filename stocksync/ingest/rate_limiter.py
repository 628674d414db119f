"""Sliding-window rate limiting for every marketplace API call."""

import asyncio
import logging
import random
import time
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from stocksync import metrics
from stocksync.config import settings
from stocksync.ingest.errors import (
    GatewayQueueTimeout,
    RateLimitedError,
    TransientUpstreamError,
)

logger = logging.getLogger(__name__)


class RateLimitedGateway:
    """
    Meter outbound calls against a per-minute ceiling.

    The window lives in this process only, so the ceiling is configured
    below the documented marketplace quota to leave room for concurrent
    invocations. Calls above the high-water mark wait for the window to
    slide (FIFO, bounded by the queue timeout); nothing is dropped.
    """

    def __init__(
        self,
        max_requests_per_minute: Optional[int] = None,
        window_seconds: Optional[float] = None,
        high_water_ratio: Optional[float] = None,
        soft_water_ratio: Optional[float] = None,
        queue_timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_requests = max_requests_per_minute or settings.api_max_requests_per_minute
        self.window_seconds = window_seconds or settings.rate_window_seconds
        self.high_water_ratio = high_water_ratio or settings.rate_high_water_ratio
        self.soft_water_ratio = soft_water_ratio or settings.rate_soft_water_ratio
        self.queue_timeout = (
            queue_timeout if queue_timeout is not None else settings.gateway_queue_timeout_seconds
        )
        self.max_attempts = max_attempts or settings.gateway_max_attempts
        self.backoff_base = (
            backoff_base if backoff_base is not None else settings.gateway_backoff_base_seconds
        )
        self._clock = clock
        self._sleep = sleep

        self._slot_limit = max(1, int(self.max_requests * self.high_water_ratio))
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()
        self._waiting = 0

        self.total_requests = 0
        self.queued_requests = 0
        self.retried_requests = 0

        logger.info(
            f"Gateway ready: {self.max_requests} req/{self.window_seconds:.0f}s, "
            f"queueing above {self._slot_limit}"
        )

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def current_requests(self) -> int:
        self._evict(self._clock())
        return len(self._timestamps)

    def utilization_percent(self) -> float:
        """Share of the ceiling used in the trailing window, 0-100."""
        used = self.current_requests()
        return min(100.0, round(used / self.max_requests * 100, 1))

    def is_near_limit(self) -> bool:
        return self.utilization_percent() >= self.soft_water_ratio * 100

    def get_stats(self) -> dict:
        """Snapshot of the window for status endpoints and logs."""
        current = self.current_requests()
        utilization = min(100.0, round(current / self.max_requests * 100, 1))
        return {
            "currentRequests": current,
            "maxRequests": self.max_requests,
            "utilizationPercent": utilization,
            "queueLength": self._waiting,
            "isNearLimit": utilization >= self.soft_water_ratio * 100,
            "totalRequests": self.total_requests,
            "queuedRequests": self.queued_requests,
            "retriedRequests": self.retried_requests,
            "windowSeconds": self.window_seconds,
        }

    async def _take_slot(self) -> None:
        queued = False
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._timestamps) < self._slot_limit:
                    self._timestamps.append(now)
                    self.total_requests += 1
                    return
                if not queued:
                    queued = True
                    self.queued_requests += 1
                    logger.info(
                        f"Rate window full ({len(self._timestamps)}/{self.max_requests}), "
                        f"queueing call"
                    )
                wait_for = self._timestamps[0] + self.window_seconds - now
                await self._sleep(max(wait_for, 0.01))

    async def acquire(self) -> None:
        """
        Reserve one slot in the window.

        Raises:
            GatewayQueueTimeout: If no slot frees up within the queue timeout
        """
        started = time.monotonic()
        self._waiting += 1
        try:
            await asyncio.wait_for(self._take_slot(), timeout=self.queue_timeout)
        except asyncio.TimeoutError:
            raise GatewayQueueTimeout(
                f"Queued for more than {self.queue_timeout:.1f}s waiting for the rate window"
            )
        finally:
            self._waiting -= 1

        waited = time.monotonic() - started
        if waited > 0.01:
            metrics.record_queue_wait(waited, self.utilization_percent())

    def _backoff(self, attempt: int) -> float:
        if self.backoff_base <= 0:
            return 0.0
        return self.backoff_base * (2 ** (attempt - 1)) + random.random() * self.backoff_base

    async def execute_call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Run one API call through the window, retrying transient failures.

        Args:
            fn: Coroutine function performing a single HTTP request
            *args, **kwargs: Passed to fn

        Returns:
            Whatever fn returns

        Raises:
            GatewayQueueTimeout: If a slot could not be obtained in time
            TransientUpstreamError: If 5xx/transport errors outlast the retries
            RateLimitedError: If the API keeps answering 429
        """
        for attempt in range(1, self.max_attempts + 1):
            await self.acquire()
            try:
                result = await fn(*args, **kwargs)
            except RateLimitedError as e:
                if attempt >= self.max_attempts:
                    metrics.record_gateway_call("error")
                    raise
                sleep_s = e.retry_after if e.retry_after is not None else self._backoff(attempt)
                if sleep_s > self.queue_timeout:
                    # Waiting that long would outlive the caller's invocation
                    metrics.record_gateway_call("error")
                    logger.warning(
                        f"Rate limited (429) with Retry-After {sleep_s:.1f}s, "
                        f"above the {self.queue_timeout:.1f}s wait budget"
                    )
                    raise
                logger.warning(
                    f"Rate limited (429), retrying in {sleep_s:.1f}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
            except TransientUpstreamError as e:
                if attempt >= self.max_attempts:
                    metrics.record_gateway_call("error")
                    logger.error(f"Giving up after {self.max_attempts} attempts: {e}")
                    raise
                sleep_s = self._backoff(attempt)
                logger.warning(
                    f"Transient upstream error, retrying in {sleep_s:.1f}s "
                    f"(attempt {attempt}/{self.max_attempts}): {e}"
                )
            except Exception:
                metrics.record_gateway_call("error")
                raise
            else:
                metrics.record_gateway_call("ok")
                return result

            metrics.record_gateway_call("retry")
            self.retried_requests += 1
            if sleep_s > 0:
                await self._sleep(sleep_s)

        # Unreachable: the last attempt either returns or raises
        raise TransientUpstreamError("Gateway retries exhausted")

    async def smart_pause(self) -> float:
        """
        Back off voluntarily before bulk work when the window is busy.

        Returns:
            Seconds slept (0 when utilization is below the soft mark)
        """
        utilization = self.utilization_percent()
        soft = self.soft_water_ratio * 100
        if utilization < soft:
            return 0.0

        high = self.high_water_ratio * 100
        max_pause = settings.smart_pause_max_seconds
        if utilization >= high or high <= soft:
            pause = max_pause
        else:
            pause = max_pause * (utilization - soft) / (high - soft)

        logger.info(f"Gateway at {utilization:.1f}% utilization, pausing {pause:.1f}s")
        await self._sleep(pause)
        return pause
