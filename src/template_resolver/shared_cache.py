"""
Redis-backed shared template cache.

Entries are written without an expiry and live until a newer origin fetch
overwrites them or the store is cleared out of band. Every failure talking
to Redis is logged and reported as a miss (get) or as False (set).
"""

from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..shared.config import RedisSettings
from ..shared.logging_config import get_logger
from .exceptions import ConfigurationError


DEFAULT_KEY_PREFIX = "rlt:"


class SharedTemplateCache:
    """Thin client over a Redis store shared by every resolver process."""

    def __init__(
        self,
        settings: Optional[RedisSettings] = None,
        redis_client: Optional[Redis] = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ):
        self.settings = settings or RedisSettings()
        self.redis_client = redis_client
        self.key_prefix = key_prefix
        self.logger = get_logger(__name__, 'shared_cache')

        self.stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'errors': 0
        }

    def key_for(self, identifier: str) -> str:
        """Namespaced Redis key for a template identifier."""
        return f"{self.key_prefix}{identifier}"

    async def connect(self) -> None:
        """Connect to Redis."""
        try:
            client = redis.from_url(
                self.settings.redis_url,
                db=self.settings.redis_db,
                socket_timeout=self.settings.redis_timeout,
                decode_responses=True
            )
        except ValueError as e:
            self.logger.error(f"Invalid Redis URL: {e}", operation="connect")
            self.stats['errors'] += 1
            raise ConfigurationError(f"Invalid Redis URL: {e}") from e

        try:
            await client.ping()
        except RedisError as e:
            self.logger.error(f"Failed to connect to Redis: {e}", operation="connect")
            self.stats['errors'] += 1
            await client.aclose()
            raise

        self.redis_client = client
        self.logger.info("Connected to Redis successfully", operation="connect")

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            self.logger.info("Disconnected from Redis", operation="disconnect")

    async def get(self, key: str) -> Optional[str]:
        """Get a template body from Redis; None on miss or error."""
        try:
            if not self.redis_client:
                await self.connect()

            data = await self.redis_client.get(key)

        except (RedisError, ConfigurationError) as e:
            self.logger.error(f"Redis get error for key {key}: {e}", operation="get", key=key)
            self.stats['errors'] += 1
            return None

        if data is None or data == "":
            self.stats['misses'] += 1
            return None

        if isinstance(data, bytes):
            data = data.decode('utf-8')

        self.stats['hits'] += 1
        self.logger.debug("Found template in Redis", operation="get", key=key)
        return data

    async def set(self, key: str, template: str) -> bool:
        """Store a template body in Redis without an expiry."""
        try:
            if not self.redis_client:
                await self.connect()

            await self.redis_client.set(key, template)

        except (RedisError, ConfigurationError) as e:
            self.logger.warning(f"Redis set error for key {key}: {e}", operation="set", key=key)
            self.stats['errors'] += 1
            return False

        self.stats['sets'] += 1
        self.logger.debug("Stored template in Redis", operation="set", key=key)
        return True

    def get_stats(self) -> Dict[str, Any]:
        """Get Redis cache statistics."""
        total_requests = self.stats['hits'] + self.stats['misses']
        hit_rate = self.stats['hits'] / total_requests if total_requests > 0 else 0

        return {
            **self.stats,
            'hit_rate': hit_rate,
            'total_requests': total_requests
        }
