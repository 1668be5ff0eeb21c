"""
Rate limiting middleware с поддержкой Redis для multi-instance окружений.

Геолокация в лимит не входит: live location шлёт точки сама, без участия курьера.
"""
from collections import defaultdict
from typing import Callable, Dict, Any, Awaitable, Optional
from aiogram import BaseMiddleware
from aiogram.types import TelegramObject, Message, CallbackQuery
import time
import logging

logger = logging.getLogger(__name__)

LIMIT_MESSAGE = "⚠️ Слишком много запросов. Подождите немного."


def _limited_user(event: TelegramObject) -> Optional[int]:
    """Курьер, которому засчитывается событие (None — событие без лимита)."""
    if isinstance(event, Message):
        if event.location is not None:
            return None
        return event.from_user.id if event.from_user else None
    if isinstance(event, CallbackQuery):
        return event.from_user.id if event.from_user else None
    return None


async def _reject(event: TelegramObject) -> None:
    if isinstance(event, CallbackQuery):
        await event.answer(LIMIT_MESSAGE, show_alert=True)
    elif isinstance(event, Message):
        await event.answer(LIMIT_MESSAGE)


class RedisRateLimitMiddleware(BaseMiddleware):
    """Ограничение количества запросов через Redis."""

    def __init__(
        self,
        redis_client,
        max_calls: int = 10,
        period: float = 60.0,
        key_prefix: str = "rate_limit:"
    ):
        """
        Args:
            redis_client: Клиент Redis (async)
            max_calls: Максимальное количество запросов за период
            period: Период в секундах
            key_prefix: Префикс для ключей Redis (у сообщений и кнопок свой)
        """
        self.redis = redis_client
        self.max_calls = max_calls
        self.period = int(period)
        self.key_prefix = key_prefix

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any]
    ) -> Any:
        user_id = _limited_user(event)
        if not user_id:
            return await handler(event, data)

        key = f"{self.key_prefix}{user_id}"
        try:
            # INCR + EXPIRE: окно начинается с первого запроса
            current = await self.redis.incr(key)
            if current == 1:
                await self.redis.expire(key, self.period)
        except Exception as e:
            logger.warning("Rate limit error for user %s: %s", user_id, e)
            return await handler(event, data)

        if current > self.max_calls:
            logger.info("Rate limit hit: user=%s key=%s", user_id, self.key_prefix)
            await _reject(event)
            return None
        return await handler(event, data)


class MemoryRateLimitMiddleware(BaseMiddleware):
    """In-memory rate limiting (fallback)."""

    def __init__(self, max_calls: int = 10, period: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.max_calls = max_calls
        self.period = period
        self.calls = defaultdict(list)
        self._clock = clock

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any]
    ) -> Any:
        user_id = _limited_user(event)
        if not user_id:
            return await handler(event, data)

        now = self._clock()
        user_calls = self.calls[user_id]
        # Удаляем старые записи
        user_calls[:] = [t for t in user_calls if now - t < self.period]

        if len(user_calls) >= self.max_calls:
            logger.info("Rate limit hit: user=%s", user_id)
            await _reject(event)
            return None

        user_calls.append(now)
        return await handler(event, data)


async def create_rate_limit_middleware(
    redis_client=None,
    max_calls: int = 10,
    period: float = 60.0,
    key_prefix: str = "rate_limit:",
) -> RedisRateLimitMiddleware | MemoryRateLimitMiddleware:
    """
    Создать middleware для rate limiting.

    Returns:
        Экземпляр middleware (Redis, если он отвечает, иначе Memory)
    """
    if redis_client:
        try:
            await redis_client.ping()
            return RedisRateLimitMiddleware(redis_client, max_calls, period, key_prefix=key_prefix)
        except Exception as e:
            logger.warning("Redis not available for rate limiting, using memory: %s", e)

    return MemoryRateLimitMiddleware(max_calls, period)
