"""
Redis connection factory shared by the history store, embedding cache and rate limiter.
"""

import redis
from redis.connection import ConnectionPool

from .config import RedisConfig
from .logging_config import get_logger

logger = get_logger(__name__)


def create_redis_client(config: RedisConfig) -> redis.Redis:
    """
    Create a pooled Redis client and verify the connection.

    Args:
        config: RedisConfig instance with connection parameters

    Returns:
        Redis client decoding responses to str

    Raises:
        redis.ConnectionError: If the server cannot be reached
    """
    pool = ConnectionPool.from_url(config.url,
                                   max_connections=config.max_connections,
                                   socket_timeout=config.socket_timeout,
                                   decode_responses=True)
    client = redis.Redis(connection_pool=pool)

    try:
        client.ping()
        logger.info('Redis connection established')
    except redis.ConnectionError as e:
        logger.error(f'Redis connection failed: {e}')
        raise

    return client
