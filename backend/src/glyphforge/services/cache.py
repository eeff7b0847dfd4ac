"""Redis-backed JSON cache for public results.

Readers degrade to a cache miss when Redis is unavailable. Deletion raises
CacheUnavailableError instead, so callers that invalidate can log the failure.
"""

import json
from typing import Any, Awaitable, Callable, TypeVar

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from glyphforge.services.exceptions import CacheUnavailableError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ResultsCache:
    """JSON cache with a key prefix and default TTL.

    Example:
        cache = ResultsCache(redis_client, prefix="glyphforge:", default_ttl_seconds=60)
        key = cache.public_first_page_key(page_size=10)
        await cache.delete(key)
    """

    def __init__(self, client: redis.Redis, prefix: str = "cache:", default_ttl_seconds: int = 60):
        self.client = client
        self.prefix = prefix
        self.default_ttl_seconds = default_ttl_seconds

    @staticmethod
    def build_key(*parts: str | int | bool | None) -> str:
        """Join non-None parts with ':' (e.g. build_key("public", "page", 1))."""
        return ":".join(str(part) for part in parts if part is not None)

    def public_first_page_key(self, page_size: int) -> str:
        """Key of the cached first page of public results."""
        return self.build_key("public", "page", 1, "limit", page_size)

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get_json(self, key: str) -> tuple[bool, Any]:
        """Read a cached JSON value.

        Returns:
            (hit, value) - (False, None) on miss or when Redis is unavailable
        """
        redis_key = self._full_key(key)
        try:
            raw = await self.client.get(redis_key)
        except RedisError as e:
            logger.debug("cache.get_failed", key=redis_key, error=str(e))
            return False, None
        if raw is None:
            return False, None
        try:
            return True, json.loads(raw)
        except ValueError:
            logger.debug("cache.decode_failed", key=redis_key)
            return False, None

    async def set_json(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store a JSON value; failures are logged and ignored."""
        redis_key = self._full_key(key)
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        try:
            raw = json.dumps(value, default=str)
            if ttl and ttl > 0:
                await self.client.set(redis_key, raw, ex=ttl)
            else:
                await self.client.set(redis_key, raw)
        except RedisError as e:
            logger.debug("cache.set_failed", key=redis_key, error=str(e))

    async def get_or_set_json(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        ttl_seconds: int | None = None,
    ) -> T:
        """Return the cached value, or fetch, cache and return it."""
        hit, cached = await self.get_json(key)
        if hit:
            return cached

        value = await fetcher()
        if value is not None:
            await self.set_json(key, value, ttl_seconds)
        return value

    async def delete(self, *keys: str) -> int:
        """Delete keys.

        Returns:
            Number of keys removed

        Raises:
            CacheUnavailableError: If Redis could not be reached
        """
        if not keys:
            return 0
        full_keys = [self._full_key(key) for key in keys]
        try:
            return await self.client.delete(*full_keys)
        except RedisError as e:
            raise CacheUnavailableError(f"Cache unavailable: {e}") from e
