from typing import Iterable, List, Optional

from aiogram.types import (
    InlineKeyboardMarkup, InlineKeyboardButton, ReplyKeyboardMarkup, KeyboardButton,
)

from services.orders import DeliveryOrder, DeliverySpeed, OrderEvent, OrderStateMachine
from services.returns import ReturnRequest, ReturnStateMachine
from services.telegram_utils import navigator_link
from services.wallet import PAYOUT_BATCH_ORDERS, Wallet

# code -> текст причины, который уходит на backend
REJECT_REASONS = {
    "busy": "Занят другим заказом",
    "vehicle": "Проблема с транспортом",
    "far": "Слишком далеко от точки забора",
    "oor": "Вне моей зоны доставки",
    "safety": "Небезопасно",
    "pay": "Слишком низкая оплата",
    "personal": "Личные причины",
}

FAIL_REASONS = {
    "addr_bad": "Неверный / неполный адрес",
    "no_one": "Некому принять заказ",
    "no_contact": "Не удалось связаться с клиентом",
    "closed": "Закрыто",
    "restricted": "Закрытая / недоступная территория",
    "reschedule": "Клиент попросил перенести",
    "cod_money": "Клиент не подготовил оплату",
    "weather": "Плохая погода / небезопасно",
    "logistics": "Проблема с транспортом / логистикой",
    "damage": "Посылка повреждена",
}

PRESET_REASONS = {
    OrderEvent.REJECT: REJECT_REASONS,
    OrderEvent.FAIL: FAIL_REASONS,
}

_EVENT_BUTTONS = {
    OrderEvent.ACCEPT: "✅ Принять",
    OrderEvent.REJECT: "🚫 Отклонить",
    OrderEvent.SET_ETA: "⏱ Указать ETA",
    OrderEvent.ONWAY: "🛵 Выехал",
    OrderEvent.FAIL: "⚠️ Не доставлен",
    OrderEvent.DELIVER: "📦 Доставлен",
}


def get_rider_menu_kb() -> InlineKeyboardMarkup:
    """Главное меню курьера"""
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="📋 Активные заказы", callback_data="rider:orders")],
        [InlineKeyboardButton(text="↩️ Возвраты", callback_data="rider:returns")],
        [
            InlineKeyboardButton(text="🗂 История", callback_data="rider:history"),
            InlineKeyboardButton(text="📊 Статистика", callback_data="rider:stats"),
        ],
        [InlineKeyboardButton(text="💰 Кошелёк", callback_data="rider:wallet")],
    ])


def get_share_location_kb() -> ReplyKeyboardMarkup:
    # Кнопка шлёт только разовую точку; live location включается через 📎 → Геопозиция
    return ReplyKeyboardMarkup(
        keyboard=[[KeyboardButton(text="📍 Отправить геопозицию", request_location=True)]],
        resize_keyboard=True,
        one_time_keyboard=True,
    )


def get_orders_list_kb(orders: Iterable[DeliveryOrder]) -> InlineKeyboardMarkup:
    rows = []
    for order in orders:
        icon = "⚡" if order.delivery_speed is DeliverySpeed.FAST else "🟢"
        rows.append([InlineKeyboardButton(
            text=f"{icon} Заказ #{order.id} · {order.status.value}",
            callback_data=f"order:open:{order.id}",
        )])
    rows.append([InlineKeyboardButton(text="🔄 Обновить", callback_data="rider:orders")])
    rows.append([InlineKeyboardButton(text="⬅️ Меню", callback_data="rider:menu")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def get_order_kb(order: DeliveryOrder, polling: bool = False) -> InlineKeyboardMarkup:
    """
    Кнопки карточки заказа: только допустимые из текущего статуса события.
    У финального заказа кнопок перехода нет.
    """
    rows: List[List[InlineKeyboardButton]] = []
    for event in OrderStateMachine.allowed_events(order):
        if event in PRESET_REASONS:
            data = f"order:reason:{order.id}:{event.value}"
        elif event is OrderEvent.SET_ETA:
            data = f"order:eta:{order.id}"
        else:
            data = f"order:do:{order.id}:{event.value}"
        rows.append([InlineKeyboardButton(text=_EVENT_BUTTONS[event], callback_data=data)])

    nav = navigator_link(order.customer_location)
    if nav and not order.is_terminal:
        rows.append([InlineKeyboardButton(text="🗺 Клиент в навигаторе", url=nav)])
    if not order.is_terminal:
        if polling:
            rows.append([InlineKeyboardButton(text="⏹ Остановить live", callback_data=f"order:live_stop:{order.id}")])
        else:
            rows.append([InlineKeyboardButton(text="📡 Live-карта", callback_data=f"order:live:{order.id}")])
    rows.append([
        InlineKeyboardButton(text="🔄", callback_data=f"order:refresh:{order.id}"),
        InlineKeyboardButton(text="⬅️ К списку", callback_data="rider:orders"),
    ])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def get_reason_kb(order_id: str, event: OrderEvent) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton(text=text, callback_data=f"order:rs:{order_id}:{event.value}:{code}")]
        for code, text in PRESET_REASONS[event].items()
    ]
    rows.append([InlineKeyboardButton(text="✍️ Своя причина", callback_data=f"order:rs_custom:{order_id}:{event.value}")])
    rows.append([InlineKeyboardButton(text="⬅️ Назад", callback_data=f"order:open:{order_id}")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def get_eta_kb(order_id: str, choices: Iterable[int]) -> InlineKeyboardMarkup:
    row = [
        InlineKeyboardButton(text=f"{minutes} мин", callback_data=f"order:eta_set:{order_id}:{minutes}")
        for minutes in choices
    ]
    return InlineKeyboardMarkup(inline_keyboard=[
        row,
        [InlineKeyboardButton(text="✍️ Другое", callback_data=f"order:eta_custom:{order_id}")],
        [InlineKeyboardButton(text="⬅️ Назад", callback_data=f"order:open:{order_id}")],
    ])


def get_back_to_orders_kb() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="⬅️ К списку заказов", callback_data="rider:orders")],
    ])


def get_returns_list_kb(returns: Iterable[ReturnRequest]) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton(text=f"↩️ Возврат #{ret.id} · {ret.status.value}", callback_data=f"ret:open:{ret.id}")]
        for ret in returns
    ]
    rows.append([InlineKeyboardButton(text="🔄 Обновить", callback_data="rider:returns")])
    rows.append([InlineKeyboardButton(text="⬅️ Меню", callback_data="rider:menu")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


_RETURN_BUTTONS = {
    "accept": ("✅ Принять возврат", "ret:accept"),
    "picked_up": ("📥 Забрал у клиента", "ret:picked"),
    "returned": ("🏪 Сдал в магазин", "ret:returned"),
}


def get_return_kb(ret: ReturnRequest) -> InlineKeyboardMarkup:
    rows = []
    for action in ReturnStateMachine.allowed_actions(ret):
        text, prefix = _RETURN_BUTTONS[action]
        rows.append([InlineKeyboardButton(text=text, callback_data=f"{prefix}:{ret.id}")])
    rows.append([InlineKeyboardButton(text="⬅️ К возвратам", callback_data="rider:returns")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def get_back_to_menu_kb(deep_link: Optional[str] = None) -> InlineKeyboardMarkup:
    rows = []
    if deep_link and deep_link.startswith(("http://", "https://")):
        rows.append([InlineKeyboardButton(text="🔗 Открыть", url=deep_link)])
    rows.append([InlineKeyboardButton(text="⬅️ Меню", callback_data="rider:menu")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def get_wallet_kb(wallet: Wallet) -> InlineKeyboardMarkup:
    rows = []
    if wallet.can_request_payout:
        rows.append([InlineKeyboardButton(
            text=f"💳 Запросить выплату ({PAYOUT_BATCH_ORDERS} заказов)", callback_data="wallet:payout",
        )])
    rows.append([InlineKeyboardButton(text="🧾 История выплат", callback_data="wallet:history")])
    rows.append([
        InlineKeyboardButton(text="🔄", callback_data="rider:wallet"),
        InlineKeyboardButton(text="⬅️ Меню", callback_data="rider:menu"),
    ])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def get_payout_confirm_kb() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [
            InlineKeyboardButton(text="✅ Запросить", callback_data="wallet:payout_confirm"),
            InlineKeyboardButton(text="❌ Отмена", callback_data="rider:wallet"),
        ],
    ])


def get_back_to_wallet_kb() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="⬅️ Кошелёк", callback_data="rider:wallet")],
    ])
