from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from teamgate.storage.errors import CacheUnavailable


class RedisCache:
    """Thin Redis wrapper for short-lived auth state such as revocation marks."""

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
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(
        self, key: str, value: str, ttl_seconds: int, *, only_if_absent: bool = False
    ) -> bool:
        """SET with expiry; with ``only_if_absent`` the write is SET NX.

        Returns True when the value was written.
        """
        try:
            result = await self.client.set(
                key, value, ex=max(1, int(ttl_seconds)), nx=only_if_absent
            )
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc
        return bool(result)

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(key))
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes async methods so callers await it uniformly like
    RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def set(
        self, key: str, value: str, ttl_seconds: int, *, only_if_absent: bool = False
    ) -> bool:
        try:
            result = self._sync_client.set(
                key, value, ex=max(1, int(ttl_seconds)), nx=only_if_absent
            )
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc
        return bool(result)

    async def exists(self, key: str) -> bool:
        try:
            return bool(self._sync_client.exists(key))
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc

    async def close(self) -> None:
        self._sync_client.close()


__all__ = ["RedisCache", "SyncRedisCache"]
