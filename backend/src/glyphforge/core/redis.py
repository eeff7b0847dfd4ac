"""Redis client construction.

Each process builds its own client and passes it to the queue, the cache and
the workers. There is no module-level connection.
"""

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)


def create_redis_client(redis_url: str, context: str) -> redis.Redis:
    """Create an asyncio Redis client for one component of the process.

    Args:
        redis_url: Redis connection URL (redis://host:port/db)
        context: Component name used in log events (e.g. "generation-worker")

    Returns:
        Redis client with string decoding enabled
    """
    client = redis.Redis.from_url(
        redis_url,
        decode_responses=True,
        health_check_interval=30,
    )
    logger.info("redis.client_created", context=context, url=redis_url.split("@")[-1])
    return client


async def ping_redis(client: redis.Redis, context: str) -> None:
    """Verify the Redis connection, raising on failure.

    Args:
        client: Redis client to check
        context: Component name used in log events
    """
    try:
        await client.ping()
    except RedisError as e:
        logger.error("redis.connection_failed", context=context, error=str(e))
        raise
    logger.info("redis.connected", context=context)
