"""
Middleware для логирования входящих событий и исключений.

- каждый апдейт (message / edited_message / callback) с отправителем
- для геолокации вместо текста пишется точка и live_period
- у callback заказов и возвратов в лог попадает id объекта
- полный traceback и контекст, если упало в любом месте обработчика
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Any, Awaitable, Optional

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject, Message, CallbackQuery


logger = logging.getLogger(__name__)

# префикс callback_data -> вид объекта в логе
_CALLBACK_TARGETS = {"order": "order", "ret": "return"}


@dataclass
class EventInfo:
    kind: str
    user_id: Optional[int] = None
    chat_id: Optional[int] = None
    payload: Optional[str] = None
    target: Optional[str] = None


def _truncate(text: Optional[str], limit: int = 200) -> Optional[str]:
    if text is None:
        return None
    text = text.replace("\n", "\\n")
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _message_payload(message: Message) -> Optional[str]:
    if message.location is not None:
        loc = message.location
        return f"location({loc.latitude:.5f},{loc.longitude:.5f} live={loc.live_period})"
    # Пароль при входе в лог не пишем
    if message.text and not message.text.startswith("/"):
        return f"text(len={len(message.text)})"
    return _truncate(message.text or message.caption)


def _callback_target(data: Optional[str]) -> Optional[str]:
    """order:do:42:accept -> order#42, ret:picked:7 -> return#7"""
    parts = (data or "").split(":")
    kind = _CALLBACK_TARGETS.get(parts[0])
    if kind is None or len(parts) < 3:
        return None
    return f"{kind}#{parts[2]}"


def describe_event(event: TelegramObject) -> EventInfo:
    if isinstance(event, Message):
        return EventInfo(
            kind="EditedMessage" if event.edit_date else "Message",
            user_id=event.from_user.id if event.from_user else None,
            chat_id=event.chat.id if event.chat else None,
            payload=_message_payload(event),
        )
    if isinstance(event, CallbackQuery):
        message = event.message
        return EventInfo(
            kind="CallbackQuery",
            user_id=event.from_user.id if event.from_user else None,
            chat_id=message.chat.id if message and message.chat else None,
            payload=_truncate(event.data),
            target=_callback_target(event.data),
        )
    return EventInfo(kind=type(event).__name__)


class LoggingMiddleware(BaseMiddleware):
    """Логирует старт/финиш обработки события + исключения с контекстом."""

    def __init__(self, log_success: bool = True):
        self.log_success = log_success

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        started = time.monotonic()
        info = describe_event(event)

        # Корреляционный ID на время обработки одного события
        trace_id = f"{int(time.time() * 1000)}:{info.user_id or 'na'}"
        data["trace_id"] = trace_id
        context = f"trace={trace_id} type={info.kind} rider={info.user_id} chat={info.chat_id}"
        if info.target:
            context += f" target={info.target}"

        logger.info("IN  %s payload=%s", context, info.payload)
        try:
            result = await handler(event, data)
        except Exception as e:
            logger.error(
                "ERR %s time_ms=%.1f err=%r",
                context, (time.monotonic() - started) * 1000, e,
                exc_info=True,
            )
            raise

        if self.log_success:
            logger.info("OUT %s time_ms=%.1f", context, (time.monotonic() - started) * 1000)
        return result
