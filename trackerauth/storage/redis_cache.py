from __future__ import annotations

import hashlib
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisAttemptTracker:
    """Failed-login counter shared by every API process through Redis.

    Implements the ``AttemptTracker`` protocol. Each failure runs ``INCR`` and
    ``EXPIRE`` in one MULTI/EXEC pipeline, so the key's TTL is the sliding
    window and concurrent increments are never lost.
    """

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        window_seconds: int = 15 * 60,
        socket_timeout: float = 5.0,
        client=None,
    ):
        self.redis_url = redis_url
        self.window_seconds = window_seconds
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _normalize_key(key: str) -> str:
        """Hash the caller's key so arbitrary IP strings cannot collide with other namespaces."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"auth:attempts:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the shared tracker."""
        # A short-lived sync client keeps the async client off the startup event loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_attempts(self, key: str) -> int:
        value: Optional[str] = await self.client.get(self._normalize_key(key))
        if value is None:
            return 0
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0

    async def track_failed_attempt(self, key: str) -> int:
        redis_key = self._normalize_key(key)
        pipe = self.client.pipeline(transaction=True)
        pipe.incr(redis_key)
        pipe.expire(redis_key, self.window_seconds)
        count, _ = await pipe.execute()
        return int(count)

    async def reset(self, key: str) -> None:
        await self.client.delete(self._normalize_key(key))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
