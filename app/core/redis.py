import redis.asyncio as redis
from typing import Optional
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)


class RedisClient:
    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self.redis: Optional[redis.Redis] = None

    async def connect(self):
        """Connect to Redis"""
        self.redis = await redis.from_url(
            self.url,
            encoding="utf-8",
            decode_responses=True
        )
        logger.info("Connected to Redis")

    async def disconnect(self):
        """Disconnect from Redis"""
        if self.redis:
            await self.redis.close()
            self.redis = None

    @property
    def connected(self) -> bool:
        return self.redis is not None

    async def ping(self) -> bool:
        if not self.redis:
            return False
        return bool(await self.redis.ping())

    async def set(self, key: str, value: str, expire_ms: int = 3600000) -> bool:
        """Set value in Redis with a millisecond expiration"""
        if not self.redis:
            return False
        return bool(await self.redis.set(key, value, px=expire_ms))

    async def set_if_absent(self, key: str, value: str, expire_ms: int) -> bool:
        """Atomically set key only when it does not exist yet"""
        if not self.redis:
            return False
        return bool(await self.redis.set(key, value, px=expire_ms, nx=True))

    async def delete(self, key: str) -> bool:
        """Delete key from Redis"""
        if not self.redis:
            return False
        return await self.redis.delete(key) > 0

    async def exists(self, key: str) -> bool:
        """Check if key exists in Redis"""
        if not self.redis:
            return False
        return await self.redis.exists(key) > 0


# Global Redis client instance
redis_client = RedisClient()
