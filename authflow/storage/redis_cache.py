from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis

_PREFIX = "authflow"


class RedisCache:
    """Shared state that must agree across workers: request counters and revoked access tokens."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        # A throwaway sync client keeps the async pool off the caller's loop
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    @staticmethod
    def _window_key(key: str, window_index: int) -> str:
        # Identifiers are hashed so phone numbers never appear in key names
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{_PREFIX}:rate:{digest}:{window_index}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Fixed-window counter returning ``(allowed, remaining, reset_seconds)``."""
        now = time.time()
        window_index = int(now // window_seconds)
        redis_key = self._window_key(key, window_index)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incrby(redis_key, max(1, cost))
            pipe.expire(redis_key, window_seconds + 1)
            count, _ = await pipe.execute()
        reset_seconds = max(1, int((window_index + 1) * window_seconds - now))
        return int(count) <= limit, max(0, limit - int(count)), reset_seconds

    @staticmethod
    def _denylist_key(jti: str) -> str:
        return f"{_PREFIX}:access:denylist:{jti}"

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(self._denylist_key(jti), "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(self._denylist_key(jti)))

    async def close(self) -> None:
        await self.client.aclose()
