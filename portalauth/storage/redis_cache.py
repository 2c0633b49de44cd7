from __future__ import annotations

import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate-limit counters and short-lived login challenges.

    Nothing stored here is a source of truth for identity; losing the cache only
    forces the rate limiter to fail closed and drops in-flight 2FA challenges.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so startup checks do not bind the async client to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def incr_window(self, key: str, ttl_seconds: int) -> int:
        """Atomically bump a fixed-window counter and return the new count."""
        pipe = self.client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, max(1, ttl_seconds))
        count, _ = await pipe.execute()
        return int(count)

    async def set_login_challenge(
        self, challenge_hash: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            f"auth:2fa:{challenge_hash}", json.dumps(payload), ex=max(1, ttl_seconds)
        )

    async def pop_login_challenge(self, challenge_hash: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete a challenge so it can be redeemed only once."""
        cached = await self.client.getdel(f"auth:2fa:{challenge_hash}")
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues under pytest,
    but exposes the same awaitable methods as :class:`RedisCache`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def ping(self) -> bool:
        return bool(self.client.ping())

    async def incr_window(self, key: str, ttl_seconds: int) -> int:
        pipe = self.client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, max(1, ttl_seconds))
        count, _ = pipe.execute()
        return int(count)

    async def set_login_challenge(
        self, challenge_hash: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self.client.set(f"auth:2fa:{challenge_hash}", json.dumps(payload), ex=max(1, ttl_seconds))

    async def pop_login_challenge(self, challenge_hash: str) -> Optional[Dict[str, Any]]:
        cached = self.client.getdel(f"auth:2fa:{challenge_hash}")
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def close(self) -> None:
        self.client.close()
