from __future__ import annotations

import hashlib
import math
from datetime import datetime, timedelta
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from storefront_auth.logging import get_logger
from storefront_auth.storage.errors import StoreUnavailable


class RedisCache:
    """Redis-backed fixed-window counters shared by every app instance."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic check + INCR + PEXPIRE: a rejected hit does not extend or bump the window
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')
local ttl = redis.call('PTTL', key)
if current > 0 and ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end

if current >= limit then
  return {0, current, ttl}
end

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {1, count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the caller key so client-supplied parts cannot collide on delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling shared counters."""

        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def hit(
        self, key: str, window_seconds: int, limit: int, now: datetime
    ) -> Tuple[bool, int, datetime]:
        """Record one attempt against ``key``.

        Returns ``(allowed, count, reset_at)``. Window expiry is driven by the
        Redis server clock; ``now`` only anchors the returned reset time.
        """

        safe_key = self._normalize_rate_key(key)
        try:
            allowed, count, ttl_ms = await self._fixed_window(
                keys=[safe_key],
                args=[int(window_seconds * 1000), limit],
            )
        except RedisError as exc:
            self.logger.warning("redis_rate_limit_failed", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc
        ttl_seconds = max(1, math.ceil(int(ttl_ms) / 1000))
        return bool(int(allowed)), int(count), now + timedelta(seconds=ttl_seconds)

    async def reset(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def purge(self, now: datetime) -> int:
        # keys carry their own TTL
        return 0

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
