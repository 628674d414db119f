"""Redis lock that keeps two scan steps for the same seller from overlapping."""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from stocksync.config import settings

logger = logging.getLogger(__name__)

LOCK_KEY_TEMPLATE = "scan:user:{user_id}:lock"

# Returns: 0 = not found/already released, 1 = deleted, 2 = mismatch
RELEASE_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end

local cjson = require('cjson')
local success, data = pcall(cjson.decode, lock_value)
if not success then
    return 2
end

if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('DEL', KEYS[1])
    return 1
else
    return 2
end
"""


def lock_key(user_id: int) -> str:
    return LOCK_KEY_TEMPLATE.format(user_id=user_id)


class ScanLockManager:
    """
    Per-seller scan lock in Redis.

    - SET NX EX acquisition with a TTL so a killed invocation cannot
      wedge the seller's scan
    - Token-verified release through a Lua script
    """

    def __init__(self, redis_url: Optional[str] = None):
        """
        Initialize lock manager.

        Args:
            redis_url: Redis connection URL (defaults to settings)
        """
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def acquire_lock(
        self,
        user_id: int,
        run_id: str,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[str]:
        """
        Acquire the scan lock for a seller.

        Args:
            user_id: Seller account id
            run_id: Identifier of the invocation taking the lock
            ttl_seconds: Expiry (defaults to settings.scan_lock_ttl_seconds)

        Returns:
            Token string if lock acquired, None if already held
        """
        redis_client = await self._get_redis()
        token = uuid4().hex
        lock_value = json.dumps({
            "run_id": run_id,
            "token": token,
            "started_at": datetime.utcnow().isoformat(),
        })

        acquired = await redis_client.set(
            lock_key(user_id),
            lock_value,
            nx=True,
            ex=ttl_seconds or settings.scan_lock_ttl_seconds,
        )
        if acquired:
            logger.debug(f"Acquired scan lock for user {user_id} (run {run_id[:12]})")
            return token

        logger.info(f"Scan lock for user {user_id} already held")
        return None

    async def release_lock(self, user_id: int, run_id: str, token: str) -> bool:
        """
        Release the lock only if run_id and token still match.

        Returns:
            True if released or already gone, False on ownership mismatch
        """
        redis_client = await self._get_redis()
        result = await redis_client.eval(RELEASE_SCRIPT, 1, lock_key(user_id), run_id, token)

        if result in (0, 1):
            return True
        logger.warning(f"Refused to release scan lock for user {user_id}: ownership mismatch")
        return False

    async def get_lock_info(self, user_id: int) -> Optional[Dict[str, Any]]:
        redis_client = await self._get_redis()
        value = await redis_client.get(lock_key(user_id))
        if not value:
            return None
        try:
            info = json.loads(value)
        except json.JSONDecodeError:
            logger.warning(f"Scan lock for user {user_id} holds invalid JSON")
            return None
        info["ttl_seconds"] = await redis_client.ttl(lock_key(user_id))
        return info

    async def force_unlock(self, user_id: int) -> bool:
        """Delete the lock without ownership checks (admin recovery)."""
        redis_client = await self._get_redis()
        deleted = await redis_client.delete(lock_key(user_id))
        logger.warning(f"Force-cleared scan lock for user {user_id}")
        return bool(deleted)
