"""Core utility functions and classes"""

import logging
from typing import Optional
import redis.asyncio as aioredis

from .config import cfg

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis client wrapper for the application"""

    _instance: Optional[aioredis.Redis] = None

    @classmethod
    def get_client(cls, host: Optional[str] = None, port: Optional[int] = None,
                   db: Optional[int] = None) -> aioredis.Redis:
        """Get or create the shared Redis client.

        Args:
            host: Redis host (default: cfg.REDIS_HOST)
            port: Redis port (default: cfg.REDIS_PORT)
            db: Redis database number (default: cfg.REDIS_DB)

        Returns:
            Redis client instance. Connections are opened lazily on first command,
            so an unreachable server surfaces as redis.ConnectionError at call time.
        """
        if cls._instance is not None:
            return cls._instance

        host = host or cfg.REDIS_HOST
        port = port or cfg.REDIS_PORT
        db = cfg.REDIS_DB if db is None else db

        cls._instance = aioredis.Redis(
            host=host,
            port=port,
            db=db,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        logger.info(f"Redis client configured for {host}:{port}/{db}")
        return cls._instance

    @classmethod
    async def close(cls):
        if cls._instance is not None:
            try:
                await cls._instance.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis client: {e}")
            cls._instance = None
