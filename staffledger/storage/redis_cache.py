from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

_KEY_PREFIX = "auth:revoked:"


def revocation_key(token: str) -> str:
    """Redis key for a revoked token.

    The token is digested so keys stay short and bearer strings never show up
    in ``KEYS``/``MONITOR`` output. Equality on the digest is equality on the
    token.
    """

    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    return f"{_KEY_PREFIX}{digest}"


def _ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
    """Seconds until ``expires_at``, clamped to at least one.

    Naive timestamps are treated as UTC. Redis rejects zero or negative TTLs.
    """

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(1, int((expires_at - current).total_seconds()))


class RedisRevocationStore:
    """Revoked bearer tokens held in Redis until they would have expired."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async one is not bound to a throwaway loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def exists(self, token: str) -> bool:
        return bool(await self.client.exists(revocation_key(token)))

    async def insert(self, token: str, expires_at: datetime) -> bool:
        # NX keeps the first writer's record; a second logout is a no-op.
        created = await self.client.set(
            revocation_key(token),
            expires_at.isoformat(),
            ex=_ttl_seconds(expires_at),
            nx=True,
        )
        return bool(created)

    async def prune_expired(self, now: Optional[datetime] = None) -> int:
        # Keys carry their own TTL; Redis evicts them.
        return 0

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisRevocationStore:
    """Synchronous Redis revocation store for use in tests.

    Wraps a blocking client so pytest does not bind connections to an event
    loop, but keeps the async method signatures of RedisRevocationStore.
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

    async def exists(self, token: str) -> bool:
        return bool(self.client.exists(revocation_key(token)))

    async def insert(self, token: str, expires_at: datetime) -> bool:
        created = self.client.set(
            revocation_key(token),
            expires_at.isoformat(),
            ex=_ttl_seconds(expires_at),
            nx=True,
        )
        return bool(created)

    async def prune_expired(self, now: Optional[datetime] = None) -> int:
        return 0

    async def close(self) -> None:
        self.client.close()
