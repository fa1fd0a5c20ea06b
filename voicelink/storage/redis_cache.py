from __future__ import annotations

import json
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis

_EVENT_PREFIX = "billing:event:"


def _event_record(event_type: str) -> str:
    return json.dumps(
        {"type": event_type, "claimed_at": datetime.now(timezone.utc).isoformat()}
    )


class RedisCache:
    """Thin Redis wrapper for webhook event de-duplication."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling de-duplication."""
        # A short-lived sync client keeps the async pool off the startup event loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def claim_event(self, event_id: str, event_type: str, ttl_seconds: int) -> bool:
        """Atomically claim a webhook event id (SET NX); False when already claimed."""
        acquired = await self.client.set(
            f"{_EVENT_PREFIX}{event_id}", _event_record(event_type), ex=ttl_seconds, nx=True
        )
        return bool(acquired)

    async def release_event(self, event_id: str) -> None:
        """Drop a claim so a redelivery of a failed event is processed again."""
        await self.client.delete(f"{_EVENT_PREFIX}{event_id}")

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes the same awaitable methods as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def claim_event(self, event_id: str, event_type: str, ttl_seconds: int) -> bool:
        acquired = self.client.set(
            f"{_EVENT_PREFIX}{event_id}", _event_record(event_type), ex=ttl_seconds, nx=True
        )
        return bool(acquired)

    async def release_event(self, event_id: str) -> None:
        self.client.delete(f"{_EVENT_PREFIX}{event_id}")

    async def close(self) -> None:
        self.client.close()
