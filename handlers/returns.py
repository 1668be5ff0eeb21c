"""
Возвраты: список ожидающих, карточка и действия курьера
(принять → забрал у клиента → сдал в магазин).
"""
import logging

from aiogram import Router, types, F
from aiogram.exceptions import TelegramBadRequest
from aiogram.filters import Command

from middlewares.auth_middleware import RiderSessionMiddleware
from services.coordinator import DeliveryCoordinator
from services.errors import ApiError, AuthenticationError, LifecycleError, NotFound, TransitionInProgress
from services.telegram_utils import error_feedback, escape_markdown, format_return_card, safe_edit_text
from keyboards.rider_kbs import get_return_kb, get_returns_list_kb

logger = logging.getLogger(__name__)
router = Router()
router.message.middleware(RiderSessionMiddleware())
router.callback_query.middleware(RiderSessionMiddleware())

_ACTION_DONE = {
    "accept": "✅ Возврат принят",
    "picked": "📥 Отмечено: забран у клиента",
    "returned": "🏪 Отмечено: сдан в магазин",
}


async def send_return_card(message: types.Message, coordinator: DeliveryCoordinator, return_id: str) -> None:
    try:
        ret = await coordinator.load_return(return_id)
    except NotFound:
        await message.answer(f"🔍 Возврат #{escape_markdown(return_id)} не найден.")
        return
    except AuthenticationError:
        raise
    except ApiError as e:
        await message.answer(error_feedback(e)[0])
        return
    await message.answer(format_return_card(ret), reply_markup=get_return_kb(ret), parse_mode="Markdown")


async def _returns_text_and_kb(coordinator: DeliveryCoordinator):
    returns = await coordinator.pending_returns()
    text = "↩️ *Возвраты к забору*" if returns else "📭 Возвратов нет"
    return text, get_returns_list_kb(returns)


@router.callback_query(F.data == "rider:returns")
async def returns_list(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    try:
        text, kb = await _returns_text_and_kb(coordinator)
    except AuthenticationError:
        raise
    except ApiError as e:
        await callback.answer(*error_feedback(e))
        return
    await safe_edit_text(callback.message, text, reply_markup=kb)
    await callback.answer()


@router.message(Command("returns"))
async def cmd_returns(message: types.Message, coordinator: DeliveryCoordinator):
    text, kb = await _returns_text_and_kb(coordinator)
    await message.answer(text, reply_markup=kb, parse_mode="Markdown")


@router.callback_query(F.data.startswith("ret:open:"))
async def return_open(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    return_id = callback.data.split(":", 2)[2]
    try:
        ret = await coordinator.load_return(return_id)
    except AuthenticationError:
        raise
    except LifecycleError as e:
        await callback.answer(*error_feedback(e))
        return
    await safe_edit_text(callback.message, format_return_card(ret), reply_markup=get_return_kb(ret))
    await callback.answer()


@router.callback_query(F.data.regexp(r"^ret:(accept|picked|returned):"))
async def return_action(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    _, action, return_id = callback.data.split(":", 2)
    actions = {
        "accept": coordinator.accept_return,
        "picked": coordinator.mark_picked_up,
        "returned": coordinator.mark_returned,
    }
    try:
        await callback.message.edit_reply_markup(reply_markup=None)
    except TelegramBadRequest as e:
        logger.debug("edit_reply_markup: %s", e)

    if coordinator.get_return(return_id) is None:
        try:
            await coordinator.load_return(return_id)
        except AuthenticationError:
            raise
        except LifecycleError as e:
            await callback.answer(*error_feedback(e))
            return

    try:
        ret = await actions[action](return_id)
    except TransitionInProgress as e:
        await callback.answer(e.message)
        return
    except AuthenticationError:
        raise
    except LifecycleError as e:
        ret = coordinator.get_return(return_id)
        if ret is not None:
            await safe_edit_text(callback.message, format_return_card(ret), reply_markup=get_return_kb(ret))
        await callback.answer(*error_feedback(e))
        return

    await safe_edit_text(callback.message, format_return_card(ret), reply_markup=get_return_kb(ret))
    await callback.answer(_ACTION_DONE[action])
