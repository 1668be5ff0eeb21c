"""
Авторизация курьера и выдача его координатора хендлерам.
"""
import logging
from typing import Callable, Dict, Any, Awaitable
from aiogram import BaseMiddleware
from aiogram.exceptions import TelegramAPIError
from aiogram.types import TelegramObject, Message, CallbackQuery
from sqlalchemy.ext.asyncio import AsyncSession
from services.db_ops import get_cached_rider, logout_rider
from services.errors import AuthenticationError

logger = logging.getLogger(__name__)

LOGIN_REQUIRED = "🔐 Сначала войдите: /login"
SESSION_EXPIRED = "🔐 Сессия истекла. Войдите заново: /login"


async def end_rider_session(session: AsyncSession, registry, telegram_id: int) -> None:
    """Выход или протухший токен: остановить трекинг и опрос, забыть токены."""
    await registry.drop(telegram_id)
    await logout_rider(session, telegram_id)


async def _notify(event: TelegramObject, text: str) -> None:
    try:
        if isinstance(event, CallbackQuery):
            await event.answer(text, show_alert=True)
        elif isinstance(event, Message) and not event.edit_date:
            await event.answer(text)
    except TelegramAPIError as e:
        logger.debug("Failed to notify rider: %s", e)


class RiderSessionMiddleware(BaseMiddleware):
    """
    Кладёт в data курьера (data['rider']) и его координатор (data['coordinator']).
    Курьера без backend-токена дальше не пускает; если backend ответил 401,
    сессия курьера закрывается.

    Координаторы берутся из CoordinatorRegistry (data['registry'], передаётся
    в Dispatcher при старте).
    """

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any]
    ) -> Any:
        user_id = None
        if isinstance(event, (Message, CallbackQuery)):
            user_id = event.from_user.id if event.from_user else None
        if not user_id:
            logger.warning("No user ID found in event")
            return None

        session: AsyncSession = data.get('session')
        registry = data.get('registry')
        if session is None or registry is None:
            logger.error("Session or registry not found in data. DatabaseMiddleware and Dispatcher(registry=...) are required.")
            return None

        rider = await get_cached_rider(session, user_id)
        if rider is None or not rider.is_logged_in:
            logger.info("Rider %s is not logged in", user_id)
            await _notify(event, LOGIN_REQUIRED)
            return None

        data['rider'] = rider
        data['coordinator'] = registry.get_or_create(user_id, rider.access_token)
        try:
            return await handler(event, data)
        except AuthenticationError as e:
            logger.warning("Backend rejected token of rider %s: %s", user_id, e.message)
            await end_rider_session(session, registry, user_id)
            await _notify(event, SESSION_EXPIRED)
            return None
