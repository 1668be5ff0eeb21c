"""
Заказы курьера: список, карточка, смена статуса, причина/ETA, live-карта
и приём геолокации для трекинга.

Роутер закрыт RiderSessionMiddleware: в хендлеры приходят rider и coordinator.
"""
import logging
from typing import Awaitable, Callable, Optional

from aiogram import Router, types, F
from aiogram.exceptions import TelegramAPIError, TelegramBadRequest
from aiogram.filters import Command
from aiogram.fsm.context import FSMContext

from config import config
from middlewares.auth_middleware import RiderSessionMiddleware
from services.coordinator import DeliveryCoordinator
from services.errors import (
    ApiError, AuthenticationError, InvalidEta, InvalidTransition,
    MissingReason, NotFound, OrderTerminal, PermissionDenied, TransitionInProgress,
)
from services.orders import CancelledBanner, DeliveryOrder, OrderEvent, SideEffect, TransitionRequest
from services.polling import LiveLocation
from services.telegram_utils import (
    LIVE_LOCATION_PROMPT, error_feedback, escape_markdown, format_live_location,
    format_order_card, safe_edit_text,
)
from services.validation import EtaInput, ReasonInput, validate_input
from keyboards.rider_kbs import (
    PRESET_REASONS, get_back_to_orders_kb, get_eta_kb, get_order_kb,
    get_orders_list_kb, get_reason_kb, get_share_location_kb,
)
from states.rider_states import RiderState

logger = logging.getLogger(__name__)
router = Router()
router.message.middleware(RiderSessionMiddleware())
router.edited_message.middleware(RiderSessionMiddleware())
router.callback_query.middleware(RiderSessionMiddleware())

Render = Callable[..., Awaitable]
Notify = Callable[[str, bool], Awaitable[None]]


async def _toast(callback: types.CallbackQuery, text: Optional[str] = None, alert: bool = False) -> None:
    try:
        await callback.answer(text, show_alert=alert)
    except TelegramBadRequest as e:
        # query is too old, курьер уже ушёл с кнопки
        logger.debug("callback.answer failed: %s", e)


def _order_view(coordinator: DeliveryCoordinator, order: DeliveryOrder, banner: Optional[CancelledBanner] = None):
    polling = coordinator.polling.order_id == order.id
    return format_order_card(order, banner), get_order_kb(order, polling=polling)


async def send_order_card(message: types.Message, coordinator: DeliveryCoordinator, order_id: str) -> None:
    """Новое сообщение с карточкой заказа (переход по уведомлению, ввод причины/ETA)."""
    try:
        change = await coordinator.load_order(order_id)
    except NotFound:
        await message.answer(f"🔍 Заказ #{escape_markdown(order_id)} не найден.", reply_markup=get_back_to_orders_kb())
        return
    except AuthenticationError:
        raise
    except ApiError as e:
        await message.answer(error_feedback(e)[0], reply_markup=get_back_to_orders_kb())
        return
    text, kb = _order_view(coordinator, change.order, change.cancelled_banner)
    await message.answer(text, reply_markup=kb, parse_mode="Markdown")


async def _show_order(callback: types.CallbackQuery, coordinator: DeliveryCoordinator, order_id: str) -> None:
    try:
        change = await coordinator.load_order(order_id)
    except NotFound:
        await safe_edit_text(callback.message, f"🔍 Заказ #{escape_markdown(order_id)} не найден.", reply_markup=get_back_to_orders_kb())
        await _toast(callback)
        return
    except AuthenticationError:
        raise
    except ApiError as e:
        cached = coordinator.get_order(order_id)
        if cached is None:
            await _toast(callback, *error_feedback(e))
            return
        # Показываем последний известный снимок
        text, kb = _order_view(coordinator, cached)
        await safe_edit_text(callback.message, text + "\n\n⚠️ _Нет связи, данные могут быть устаревшими_", reply_markup=kb)
        await _toast(callback)
        return
    text, kb = _order_view(coordinator, change.order, change.cancelled_banner)
    await safe_edit_text(callback.message, text, reply_markup=kb)
    await _toast(callback)


async def _perform_transition(
    coordinator: DeliveryCoordinator,
    order_id: str,
    request: TransitionRequest,
    render: Render,
    notify: Notify,
) -> None:
    """
    Отправить переход и отрисовать результат.
    При любой ошибке карточка перерисовывается по локальному статусу,
    так что кнопки всегда соответствуют тому, что можно сделать.
    """
    try:
        result = await coordinator.request_transition(order_id, request)
    except TransitionInProgress as e:
        await notify(e.message, False)
        return
    except MissingReason:
        await render("✍️ Укажите причину:", reply_markup=get_reason_kb(order_id, request.event))
        await notify("Нужна причина", False)
        return
    except NotFound as e:
        await render(f"🔍 Заказ #{escape_markdown(order_id)} не найден.", reply_markup=get_back_to_orders_kb())
        await notify(*error_feedback(e))
        return
    except AuthenticationError:
        raise
    except (OrderTerminal, InvalidTransition, InvalidEta, ApiError) as e:
        order = coordinator.get_order(order_id)
        if order is not None:
            text, kb = _order_view(coordinator, order)
            await render(text, reply_markup=kb)
        if isinstance(e, InvalidTransition):
            logger.info("Stale control pressed: order=%s %s", order_id, e.message)
        await notify(*error_feedback(e))
        return

    order = result.order
    text, kb = _order_view(coordinator, order)
    if SideEffect.LEAVE_ORDER in result.effects:
        text += "\n\n✅ Заказ закрыт"
        kb = get_back_to_orders_kb()
    await render(text, reply_markup=kb)

    if result.tracking_error is not None:
        await notify(LIVE_LOCATION_PROMPT, True)
    elif request.event is OrderEvent.SET_ETA:
        await notify(f"⏱ ETA {order.eta_minutes} мин отправлено", False)
    else:
        await notify("✅ Статус обновлён", False)


async def _transition_from_callback(
    callback: types.CallbackQuery,
    coordinator: DeliveryCoordinator,
    order_id: str,
    request: TransitionRequest,
) -> None:
    # Кнопки убираем сразу, чтобы не было повторного нажатия
    try:
        await callback.message.edit_reply_markup(reply_markup=None)
    except TelegramBadRequest as e:
        logger.debug("edit_reply_markup: %s", e)

    async def render(text: str, reply_markup=None) -> None:
        await safe_edit_text(callback.message, text, reply_markup=reply_markup)

    async def notify(text: str, alert: bool) -> None:
        await _toast(callback, text, alert)
        if text == LIVE_LOCATION_PROMPT:
            await callback.message.answer(text, reply_markup=get_share_location_kb())

    await _perform_transition(coordinator, order_id, request, render, notify)


async def _transition_from_message(
    message: types.Message,
    coordinator: DeliveryCoordinator,
    order_id: str,
    request: TransitionRequest,
) -> None:
    async def render(text: str, reply_markup=None) -> None:
        await message.answer(text, reply_markup=reply_markup, parse_mode="Markdown")

    async def notify(text: str, alert: bool) -> None:
        await message.answer(text, reply_markup=get_share_location_kb() if text == LIVE_LOCATION_PROMPT else None)

    await _perform_transition(coordinator, order_id, request, render, notify)


def _parse_event(raw: str) -> Optional[OrderEvent]:
    try:
        return OrderEvent(raw)
    except ValueError:
        return None

# --- Lists ---


@router.callback_query(F.data == "rider:orders")
async def orders_list(callback: types.CallbackQuery, state: FSMContext, coordinator: DeliveryCoordinator):
    await state.clear()
    try:
        orders = await coordinator.active_orders()
    except AuthenticationError:
        raise
    except ApiError as e:
        await _toast(callback, *error_feedback(e))
        return
    text = "📋 *Активные заказы*" if orders else "📭 Активных заказов нет"
    await safe_edit_text(callback.message, text, reply_markup=get_orders_list_kb(orders))
    await _toast(callback)


@router.message(Command("orders"))
async def cmd_orders(message: types.Message, coordinator: DeliveryCoordinator):
    try:
        orders = await coordinator.active_orders()
    except AuthenticationError:
        raise
    except ApiError as e:
        await message.answer(error_feedback(e)[0])
        return
    text = "📋 *Активные заказы*" if orders else "📭 Активных заказов нет"
    await message.answer(text, reply_markup=get_orders_list_kb(orders), parse_mode="Markdown")


def _history_lines(title: str, orders) -> list:
    lines = [title]
    if not orders:
        lines.append("—")
    for order in orders[:15]:
        line = f"• #{escape_markdown(order.id)}"
        if order.reason:
            line += f" — {escape_markdown(order.reason)}"
        lines.append(line)
    return lines


@router.callback_query(F.data == "rider:history")
async def orders_history(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    try:
        history = await coordinator.order_history()
    except AuthenticationError:
        raise
    except ApiError as e:
        await _toast(callback, *error_feedback(e))
        return
    lines = _history_lines("📦 *Доставленные*", history["delivered"])
    lines.append("")
    lines.extend(_history_lines("⚠️ *Не доставленные*", history["failed"]))
    await safe_edit_text(callback.message, "\n".join(lines), reply_markup=get_back_to_orders_kb())
    await _toast(callback)


async def _stats_text(coordinator: DeliveryCoordinator) -> str:
    stats = await coordinator.api.fetch_rider_stats()
    return (
        "📊 *Статистика за сегодня*\n\n"
        f"📦 Доставлено: {stats.delivered}\n"
        f"🚫 Отклонено: {stats.rejected}\n"
        f"⚠️ Не доставлено: {stats.failed}\n"
        f"💵 Наличными: {stats.cod_total:.2f}"
    )


@router.callback_query(F.data == "rider:stats")
async def rider_stats(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    try:
        text = await _stats_text(coordinator)
    except AuthenticationError:
        raise
    except ApiError as e:
        await _toast(callback, *error_feedback(e))
        return
    await safe_edit_text(callback.message, text, reply_markup=get_back_to_orders_kb())
    await _toast(callback)


@router.message(Command("stats"))
async def cmd_stats(message: types.Message, coordinator: DeliveryCoordinator):
    try:
        text = await _stats_text(coordinator)
    except AuthenticationError:
        raise
    except ApiError as e:
        await message.answer(error_feedback(e)[0])
        return
    await message.answer(text, parse_mode="Markdown")

# --- Order card & transitions ---


@router.callback_query(F.data.startswith("order:open:") | F.data.startswith("order:refresh:"))
async def order_open(callback: types.CallbackQuery, state: FSMContext, coordinator: DeliveryCoordinator):
    await state.clear()
    order_id = callback.data.split(":", 2)[2]
    await _show_order(callback, coordinator, order_id)


@router.callback_query(F.data.startswith("order:do:"))
async def order_do(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    """accept / onway / delivered — переходы без ввода."""
    try:
        _, _, order_id, raw_event = callback.data.split(":")
    except ValueError:
        await _toast(callback, "Ошибка", True)
        return
    event = _parse_event(raw_event)
    if event is None:
        await _toast(callback, "Действие устарело", True)
        return
    await _transition_from_callback(callback, coordinator, order_id, TransitionRequest(event))


@router.callback_query(F.data.startswith("order:reason:"))
async def order_reason_picker(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    _, _, order_id, raw_event = callback.data.split(":")
    event = _parse_event(raw_event)
    order = coordinator.get_order(order_id)
    if event not in PRESET_REASONS or order is None:
        await _toast(callback, "Действие устарело", True)
        return
    if event not in coordinator.orders.allowed_events(order):
        text, kb = _order_view(coordinator, order)
        await safe_edit_text(callback.message, text, reply_markup=kb)
        await _toast(callback, "Действие недоступно")
        return
    title = "🚫 Почему отклоняете заказ?" if event is OrderEvent.REJECT else "⚠️ Почему заказ не доставлен?"
    await safe_edit_text(callback.message, f"{title} (#{escape_markdown(order_id)})", reply_markup=get_reason_kb(order_id, event))
    await _toast(callback)


@router.callback_query(F.data.startswith("order:rs:"))
async def order_reason_preset(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    _, _, order_id, raw_event, code = callback.data.split(":")
    event = _parse_event(raw_event)
    reason = PRESET_REASONS.get(event, {}).get(code)
    if reason is None:
        await _toast(callback, "Действие устарело", True)
        return
    await _transition_from_callback(callback, coordinator, order_id, TransitionRequest(event, reason=reason))


@router.callback_query(F.data.startswith("order:rs_custom:"))
async def order_reason_custom(callback: types.CallbackQuery, state: FSMContext):
    _, _, order_id, raw_event = callback.data.split(":")
    if _parse_event(raw_event) not in PRESET_REASONS:
        await _toast(callback, "Действие устарело", True)
        return
    await state.set_state(RiderState.waiting_reason)
    await state.update_data(order_id=order_id, event=raw_event)
    await callback.message.answer(f"✍️ Напишите причину для заказа #{order_id} (или /cancel):")
    await _toast(callback)


@router.message(RiderState.waiting_reason, F.text, ~F.text.startswith("/"))
async def order_reason_text(message: types.Message, state: FSMContext, coordinator: DeliveryCoordinator):
    try:
        reason = validate_input(ReasonInput, message.text).text
    except ValueError as e:
        await message.answer(f"❌ {e}")
        return
    data = await state.get_data()
    await state.clear()
    event = _parse_event(data.get("event", ""))
    if event is None or not data.get("order_id"):
        await message.answer("Действие устарело.", reply_markup=get_back_to_orders_kb())
        return
    await _transition_from_message(message, coordinator, data["order_id"], TransitionRequest(event, reason=reason))


@router.callback_query(F.data.startswith("order:eta:"))
async def order_eta_picker(callback: types.CallbackQuery):
    order_id = callback.data.split(":", 2)[2]
    await safe_edit_text(
        callback.message,
        f"⏱ Через сколько будете у клиента? (#{escape_markdown(order_id)})",
        reply_markup=get_eta_kb(order_id, config.ETA_CHOICES_LIST),
    )
    await _toast(callback)


@router.callback_query(F.data.startswith("order:eta_set:"))
async def order_eta_set(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    _, _, order_id, raw_minutes = callback.data.split(":")
    try:
        minutes = int(raw_minutes)
    except ValueError:
        await _toast(callback, "Ошибка", True)
        return
    await _transition_from_callback(callback, coordinator, order_id, TransitionRequest(OrderEvent.SET_ETA, eta_minutes=minutes))


@router.callback_query(F.data.startswith("order:eta_custom:"))
async def order_eta_custom(callback: types.CallbackQuery, state: FSMContext):
    order_id = callback.data.split(":", 2)[2]
    await state.set_state(RiderState.waiting_eta)
    await state.update_data(order_id=order_id)
    await callback.message.answer("⏱ Введите ETA в минутах (или /cancel):")
    await _toast(callback)


@router.message(RiderState.waiting_eta, F.text, ~F.text.startswith("/"))
async def order_eta_text(message: types.Message, state: FSMContext, coordinator: DeliveryCoordinator):
    try:
        minutes = validate_input(EtaInput, message.text).minutes
    except ValueError as e:
        await message.answer(f"❌ {e}")
        return
    order_id = (await state.get_data()).get("order_id")
    await state.clear()
    if not order_id:
        await message.answer("Действие устарело.", reply_markup=get_back_to_orders_kb())
        return
    await _transition_from_message(message, coordinator, order_id, TransitionRequest(OrderEvent.SET_ETA, eta_minutes=minutes))

# --- Live map ---


def _live_listener(coordinator: DeliveryCoordinator, live_message: types.Message):
    async def on_snapshot(snapshot: LiveLocation) -> None:
        order = coordinator.get_order(snapshot.order_id)
        if order is not None and order.is_terminal:
            text = format_order_card(order) + "\n\n📡 Live-карта остановлена"
        else:
            text = format_live_location(snapshot, coordinator.polling.last_error)
        try:
            await safe_edit_text(live_message, text, disable_web_page_preview=True)
        except TelegramAPIError as e:
            logger.warning("Live message update failed: order=%s err=%s", snapshot.order_id, e)

    return on_snapshot


@router.callback_query(F.data.startswith("order:live:"))
async def order_live_start(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    order_id = callback.data.split(":", 2)[2]
    order = coordinator.get_order(order_id)
    if order is None or order.is_terminal:
        await _toast(callback, "Заказ завершён, live-карта недоступна")
        return
    live_message = await callback.message.answer(f"📡 Live: заказ #{escape_markdown(order_id)}\nЗагружаю…")
    coordinator.start_live_polling(order_id, listener=_live_listener(coordinator, live_message))
    text, kb = _order_view(coordinator, order)
    await safe_edit_text(callback.message, text, reply_markup=kb)
    await _toast(callback, f"Обновление каждые {config.LIVE_POLL_INTERVAL_MS // 1000} с")


@router.callback_query(F.data.startswith("order:live_stop:"))
async def order_live_stop(callback: types.CallbackQuery, coordinator: DeliveryCoordinator):
    order_id = callback.data.split(":", 2)[2]
    await coordinator.stop_live_polling()
    order = coordinator.get_order(order_id)
    if order is not None:
        text, kb = _order_view(coordinator, order)
        await safe_edit_text(callback.message, text, reply_markup=kb)
    await _toast(callback, "Live-карта остановлена")

# --- Location ---


@router.message(F.location)
@router.edited_message(F.location)
async def on_location(message: types.Message, coordinator: DeliveryCoordinator):
    """
    Геопозиция курьера. Новое сообщение — курьер поделился точкой или live
    location; правка — очередная точка live location.
    """
    location = message.location
    is_edit = message.edit_date is not None
    permissions = coordinator.permissions

    if location.live_period:
        permissions.update(location.live_period, started_at=message.date.timestamp())
    elif is_edit:
        # Правка без live_period: курьер остановил трансляцию
        permissions.revoke()
    else:
        permissions.update(None)

    resumed = None
    if coordinator.tracking_wanted and not coordinator.tracking.active:
        try:
            resumed = await coordinator.resume_tracking()
        except PermissionDenied:
            if not is_edit:
                await message.answer(LIVE_LOCATION_PROMPT, reply_markup=get_share_location_kb())
                return

    await coordinator.push_location(location.latitude, location.longitude)

    if is_edit:
        return
    if resumed:
        await message.answer(f"📡 Трекинг заказа #{resumed} включён", reply_markup=types.ReplyKeyboardRemove())
    elif location.live_period:
        await message.answer("📡 Трансляция геопозиции получена", reply_markup=types.ReplyKeyboardRemove())
    else:
        await message.answer("📍 Геопозиция получена", reply_markup=types.ReplyKeyboardRemove())

