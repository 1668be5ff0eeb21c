"""
Middleware для dependency injection сессий БД.
"""
import logging
from typing import Callable, Dict, Any, Awaitable
from aiogram import BaseMiddleware
from aiogram.exceptions import TelegramAPIError
from aiogram.types import TelegramObject, Message, CallbackQuery
from sqlalchemy.exc import OperationalError
from database.core import session_maker

logger = logging.getLogger(__name__)

DB_ERROR_MESSAGE = "❌ Ошибка подключения к базе данных. Попробуйте позже."


class DatabaseMiddleware(BaseMiddleware):
    """Открывает сессию БД на время обработки апдейта (data['session'])."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or session_maker

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any]
    ) -> Any:
        try:
            async with self.session_factory() as session:
                data['session'] = session
                return await handler(event, data)
        except (OperationalError, ConnectionRefusedError) as e:
            logger.error("Database connection error: %s", e, exc_info=True)
            try:
                if isinstance(event, CallbackQuery):
                    await event.answer(DB_ERROR_MESSAGE, show_alert=True)
                elif isinstance(event, Message):
                    await event.answer(DB_ERROR_MESSAGE)
            except TelegramAPIError as notify_error:
                logger.debug("Failed to notify about DB error: %s", notify_error)
            return None
