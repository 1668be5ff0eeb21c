"""
Кошелёк курьера: баланс по неоплаченным заказам, запрос выплаты и история выплат.
"""
import logging

from aiogram import Router, types, F
from aiogram.filters import Command

from middlewares.auth_middleware import RiderSessionMiddleware
from services.coordinator import DeliveryCoordinator
from services.errors import ApiError, AuthenticationError
from services.telegram_utils import error_feedback, format_payout_history, format_wallet, safe_edit_text
from keyboards.rider_kbs import get_back_to_wallet_kb, get_payout_confirm_kb, get_wallet_kb

logger = logging.getLogger(__name__)
router = Router()
router.message.middleware(RiderSessionMiddleware())
router.callback_query.middleware(RiderSessionMiddleware())


async def _wallet_text_and_kb(coordinator: DeliveryCoordinator):
    wallet = await coordinator.api.fetch_wallet()
    return format_wallet(wallet), get_wallet_kb(wallet)


@router.callback_query(F.data == "rider:wallet")
async def rider_wallet(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    try:
        text, kb = await _wallet_text_and_kb(coordinator)
    except AuthenticationError:
        raise
    except ApiError as e:
        await callback.answer(*error_feedback(e))
        return
    await safe_edit_text(callback.message, text, reply_markup=kb)
    await callback.answer()


@router.message(Command("wallet"))
async def cmd_wallet(message: types.Message, coordinator: DeliveryCoordinator):
    try:
        text, kb = await _wallet_text_and_kb(coordinator)
    except AuthenticationError:
        raise
    except ApiError as e:
        await message.answer(error_feedback(e)[0])
        return
    await message.answer(text, reply_markup=kb, parse_mode="Markdown")


@router.callback_query(F.data == "wallet:payout")
async def payout_confirm(callback: types.CallbackQuery):
    await safe_edit_text(
        callback.message,
        "💳 Запросить выплату за самые старые неоплаченные заказы?",
        reply_markup=get_payout_confirm_kb(),
    )
    await callback.answer()


@router.callback_query(F.data == "wallet:payout_confirm")
async def payout_request(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    # Кнопки убираем сразу, чтобы не было второй заявки
    await safe_edit_text(callback.message, "⏳ Отправляем заявку на выплату...", reply_markup=None)
    try:
        await coordinator.api.request_payout()
    except AuthenticationError:
        raise
    except ApiError as e:
        logger.warning("Payout request failed: rider=%s err=%s", callback.from_user.id, e)
        text, alert = error_feedback(e)
        await safe_edit_text(callback.message, text, reply_markup=get_back_to_wallet_kb())
        await callback.answer(text, show_alert=alert)
        return

    logger.info("Payout requested: rider=%s", callback.from_user.id)
    await safe_edit_text(
        callback.message,
        "✅ Заявка на выплату отправлена. Статус смотрите в истории выплат.",
        reply_markup=get_back_to_wallet_kb(),
    )
    await callback.answer()


@router.callback_query(F.data == "wallet:history")
async def payout_history(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    try:
        payouts = await coordinator.api.fetch_payout_history()
    except AuthenticationError:
        raise
    except ApiError as e:
        await callback.answer(*error_feedback(e))
        return
    await safe_edit_text(callback.message, format_payout_history(payouts), reply_markup=get_back_to_wallet_kb())
    await callback.answer()
