"""
Кеш сессий курьеров (Redis, при недоступности — память процесса).

Кешируется CachedRider (dataclass), а НЕ ORM-объект Rider, чтобы избежать
DetachedInstanceError при обращении к нему вне сессии. Через кеш middleware
на каждое нажатие узнаёт токен курьера без запроса в БД.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional
import json
import logging
from datetime import datetime, timedelta

from config import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CachedRider:
    """Легковесный снимок курьера для кеша (не ORM-объект)."""
    id: int
    telegram_id: int
    full_name: str
    access_token: Optional[str]

    @property
    def is_logged_in(self) -> bool:
        return bool(self.access_token)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "telegram_id": self.telegram_id,
            "full_name": self.full_name,
            "access_token": self.access_token,
        }

    @classmethod
    def from_dict(cls, d: dict) -> CachedRider:
        return cls(
            id=d["id"],
            telegram_id=d["telegram_id"],
            full_name=d["full_name"],
            access_token=d.get("access_token"),
        )

    @classmethod
    def from_orm(cls, rider) -> CachedRider:
        """Создать из SQLAlchemy Rider."""
        return cls(
            id=rider.id,
            telegram_id=rider.telegram_id,
            full_name=rider.full_name,
            access_token=rider.access_token,
        )


class RedisRiderCache:
    """Кеш курьеров на Redis с TTL."""

    def __init__(self, redis_client, ttl_seconds: int = 300):
        self.redis = redis_client
        self.ttl = ttl_seconds
        self._prefix = "rider_cache:"

    def _key(self, telegram_id: int) -> str:
        return f"{self._prefix}{telegram_id}"

    async def get(self, telegram_id: int) -> Optional[CachedRider]:
        try:
            data = await self.redis.get(self._key(telegram_id))
            if data:
                return CachedRider.from_dict(json.loads(data))
        except Exception as e:
            logger.debug("Cache get error for rider %s: %s", telegram_id, e)
        return None

    async def set(self, telegram_id: int, rider) -> None:
        """Сохранить курьера в кеш (принимает ORM Rider или CachedRider)."""
        try:
            cached = rider if isinstance(rider, CachedRider) else CachedRider.from_orm(rider)
            await self.redis.setex(self._key(telegram_id), self.ttl, json.dumps(cached.to_dict()))
        except Exception as e:
            logger.warning("Cache set error for rider %s: %s", telegram_id, e)

    async def invalidate(self, telegram_id: int) -> None:
        try:
            await self.redis.delete(self._key(telegram_id))
        except Exception as e:
            logger.debug("Cache invalidate error for rider %s: %s", telegram_id, e)


class MemoryRiderCache:
    """In-memory кеш курьеров (fallback если Redis недоступен)."""

    def __init__(self, ttl_seconds: int = 300):
        self._cache: dict[int, tuple[CachedRider, datetime]] = {}
        self._ttl = timedelta(seconds=ttl_seconds)
        self._lock = asyncio.Lock()

    async def get(self, telegram_id: int) -> Optional[CachedRider]:
        async with self._lock:
            if telegram_id in self._cache:
                cached, expiry = self._cache[telegram_id]
                if datetime.now() < expiry:
                    return cached
                del self._cache[telegram_id]
        return None

    async def set(self, telegram_id: int, rider) -> None:
        async with self._lock:
            cached = rider if isinstance(rider, CachedRider) else CachedRider.from_orm(rider)
            self._cache[telegram_id] = (cached, datetime.now() + self._ttl)

    async def invalidate(self, telegram_id: int) -> None:
        async with self._lock:
            self._cache.pop(telegram_id, None)


# Глобальный экземпляр кеша (инициализируется в main.py)
rider_cache: Optional[RedisRiderCache | MemoryRiderCache] = None


async def init_cache(redis_client=None) -> RedisRiderCache | MemoryRiderCache:
    """Инициализировать кеш курьеров."""
    global rider_cache
    if redis_client:
        try:
            await redis_client.ping()
            rider_cache = RedisRiderCache(redis_client, ttl_seconds=config.REDIS_CACHE_TTL)
            logger.info("Using Redis cache for riders")
            return rider_cache
        except Exception as e:
            logger.warning("Redis not available for cache, using memory: %s", e)

    rider_cache = MemoryRiderCache(ttl_seconds=config.REDIS_CACHE_TTL)
    logger.info("Using memory cache for riders")
    return rider_cache
