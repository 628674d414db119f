"""Tests for scan lock behavior."""

import pytest
import redis.asyncio as redis

from stocksync.config import settings
from stocksync.ingest.errors import ScanInProgressError
from stocksync.ingest.scanner import Scanner
from stocksync.worker.scan_lock import ScanLockManager, lock_key

USER_ID = 123456789


async def _redis_available() -> bool:
    try:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.aclose()
        return True
    except Exception:
        return False


def test_lock_key_is_per_user():
    assert lock_key(1) != lock_key(2)
    assert str(USER_ID) in lock_key(USER_ID)


@pytest.mark.asyncio
async def test_lock_acquire_release():
    if not await _redis_available():
        pytest.skip("Redis not available")

    manager = ScanLockManager(redis_url=settings.redis_url)
    await manager.force_unlock(USER_ID)

    token = await manager.acquire_lock(USER_ID, "test_run_lock", ttl_seconds=30)
    assert token is not None
    assert await manager.acquire_lock(USER_ID, "second_run", ttl_seconds=30) is None

    info = await manager.get_lock_info(USER_ID)
    assert info["run_id"] == "test_run_lock"
    assert info["token"] == token
    assert 0 < info["ttl_seconds"] <= 30

    assert await manager.release_lock(USER_ID, "test_run_lock", token) is True
    assert await manager.get_lock_info(USER_ID) is None
    await manager.close()


@pytest.mark.asyncio
async def test_lock_token_mismatch():
    if not await _redis_available():
        pytest.skip("Redis not available")

    manager = ScanLockManager(redis_url=settings.redis_url)
    await manager.force_unlock(USER_ID)

    token = await manager.acquire_lock(USER_ID, "test_run_token", ttl_seconds=30)
    assert token is not None

    assert await manager.release_lock(USER_ID, "test_run_token", "bad_token") is False
    assert await manager.get_lock_info(USER_ID) is not None

    await manager.force_unlock(USER_ID)
    await manager.close()


class HeldLock:
    """Lock manager whose lock is always taken by someone else."""

    async def acquire_lock(self, user_id, run_id, ttl_seconds=None):
        return None

    async def release_lock(self, user_id, run_id, token):
        raise AssertionError("released a lock that was never acquired")


class RecordingLock:
    def __init__(self):
        self.released = []

    async def acquire_lock(self, user_id, run_id, ttl_seconds=None):
        return "token-1"

    async def release_lock(self, user_id, run_id, token):
        self.released.append((user_id, token))
        return True


@pytest.mark.asyncio
async def test_scan_step_refuses_when_lock_held(ctx, fixture_source):
    ctx.settings = ctx.settings.model_copy(update={"scan_lock_enabled": True})
    ctx.lock_manager = HeldLock()

    with pytest.raises(ScanInProgressError) as exc_info:
        await Scanner(ctx).run_step(USER_ID)
    assert exc_info.value.retryable is True
    assert fixture_source.scan_calls == 0


@pytest.mark.asyncio
async def test_scan_step_releases_lock_on_failure(ctx, fixture_source):
    ctx.settings = ctx.settings.model_copy(update={"scan_lock_enabled": True})
    ctx.lock_manager = RecordingLock()

    async def broken(user_id, cursor, limit):
        raise RuntimeError("boom")

    fixture_source.scan_page = broken
    with pytest.raises(RuntimeError):
        await Scanner(ctx).run_step(USER_ID)
    assert ctx.lock_manager.released == [(USER_ID, "token-1")]
