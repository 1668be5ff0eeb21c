"""
Утилиты для Telegram: экранирование Markdown, безопасный edit_text и тексты
карточек заказа, возврата, live-локации и кошелька.
"""
import asyncio
import logging
from typing import List, Optional, Tuple

from aiogram.types import Message
from aiogram.exceptions import TelegramBadRequest, TelegramNetworkError, TelegramRetryAfter

from services.errors import (
    AuthenticationError, BackendRejected, LifecycleError, NetworkError, NotFound, PermissionDenied,
)
from services.geo import Coordinates
from services.orders import CancelledBanner, DeliveryOrder, DeliverySpeed, OrderStatus
from services.polling import LiveLocation
from services.returns import ReturnRequest, ReturnStatus
from services.wallet import PAYOUT_BATCH_ORDERS, Payout, PayoutStatus, Wallet

logger = logging.getLogger(__name__)

RETRYABLE_EXC = (TelegramNetworkError, TelegramRetryAfter)
MAX_EDIT_RETRIES = 3
RETRY_DELAY = 1.0

LIVE_LOCATION_PROMPT = (
    "📍 Для трекинга включите трансляцию геопозиции: "
    "📎 → Геопозиция → «Транслировать геопозицию» (на 8 часов)"
)

ORDER_STATUS_LABELS = {
    OrderStatus.NEW: "🆕 Новый",
    OrderStatus.ACCEPTED: "✅ Принят",
    OrderStatus.ONWAY: "🛵 В пути",
    OrderStatus.DELIVERED: "📦 Доставлен",
    OrderStatus.FAILED: "⚠️ Не доставлен",
    OrderStatus.REJECTED: "🚫 Отклонён",
    OrderStatus.CANCELLED: "❌ Отменён",
}

RETURN_STATUS_LABELS = {
    ReturnStatus.PENDING: "🆕 Ожидает",
    ReturnStatus.ACCEPTED: "✅ Принят",
    ReturnStatus.PICKED_UP: "📥 Забран у клиента",
    ReturnStatus.DELIVERED_BACK: "🏪 Возвращён в магазин",
    ReturnStatus.COMPLETED: "🏁 Завершён",
    ReturnStatus.REFUNDED: "💸 Деньги возвращены",
}


def escape_markdown(s: str) -> str:
    """
    Экранирует спецсимволы Markdown в пользовательском тексте.
    Использовать для всех полей с backend (имена, адреса, товары, причины).
    """
    if not s or not isinstance(s, str):
        return str(s) if s is not None else ""
    # Сначала \, иначе двойное экранирование сломается
    s = s.replace("\\", "\\\\")
    for ch in "_*[]()`":
        s = s.replace(ch, f"\\{ch}")
    return s


def navigator_link(point: Optional[Coordinates]) -> Optional[str]:
    if point is None:
        return None
    return f"https://www.google.com/maps/search/?api=1&query={point.lat},{point.lon}"


def format_order_card(order: DeliveryOrder, banner: Optional[CancelledBanner] = None) -> str:
    lines = [f"*Заказ #{escape_markdown(order.id)}*  {ORDER_STATUS_LABELS[order.status]}"]
    if order.delivery_speed is DeliverySpeed.FAST:
        lines.append("⚡ Срочная доставка")
    if order.shop_name:
        lines.append(f"🏪 {escape_markdown(order.shop_name)}")
    if order.customer_name:
        lines.append(f"👤 {escape_markdown(order.customer_name)}")
    if order.address:
        lines.append(f"📍 {escape_markdown(order.address)}")
    if order.distance_km is not None:
        lines.append(f"📏 {order.distance_km:.1f} км")
    if order.eta_minutes is not None and not order.is_terminal:
        lines.append(f"⏱ ETA: {order.eta_minutes} мин")
    if order.payment_method:
        payment = escape_markdown(order.payment_method)
        if order.payment_status:
            payment += f" ({escape_markdown(order.payment_status)})"
        lines.append(f"💳 {payment}")

    if order.items:
        lines.append("")
        for item in order.items:
            name = escape_markdown(item.name)
            if item.variant:
                name += f" ({escape_markdown(item.variant)})"
            lines.append(f"• {name} × {item.quantity}")

    if order.reason and order.status in (OrderStatus.FAILED, OrderStatus.REJECTED):
        lines.append("")
        lines.append(f"Причина: {escape_markdown(order.reason)}")

    if banner is not None:
        lines.append("")
        lines.append(f"❌ *Заказ отменён*: {escape_markdown(banner.reason)}")
        if banner.cancelled_at:
            lines.append(f"🕒 {escape_markdown(banner.cancelled_at)}")
    return "\n".join(lines)


def format_return_card(ret: ReturnRequest) -> str:
    lines = [f"*Возврат #{escape_markdown(ret.id)}*  {RETURN_STATUS_LABELS[ret.status]}"]
    if ret.order_id:
        lines.append(f"Заказ #{escape_markdown(ret.order_id)}")
    if ret.product_name:
        lines.append(f"📦 {escape_markdown(ret.product_name)}")
    if ret.customer_name:
        lines.append(f"👤 {escape_markdown(ret.customer_name)}")
    if ret.address:
        lines.append(f"📍 {escape_markdown(ret.address)}")
    if ret.reason:
        lines.append(f"Причина возврата: {escape_markdown(ret.reason)}")
    return "\n".join(lines)


PAYOUT_STATUS_LABELS = {
    PayoutStatus.PENDING: "⏳ в обработке",
    PayoutStatus.PAID: "✅ выплачено",
    PayoutStatus.REJECTED: "❌ отклонено",
}


def format_wallet(wallet: Wallet) -> str:
    lines = [
        "💰 *Кошелёк*",
        "",
        f"Доступно: *{wallet.available_balance:.2f}*",
        f"Неоплаченных заказов: {wallet.unpaid_orders}",
    ]
    if wallet.can_request_payout:
        lines.append(f"Можно запросить выплату за {PAYOUT_BATCH_ORDERS} заказов")
    else:
        lines.append(f"До выплаты осталось заказов: {wallet.orders_to_unlock}")
    if wallet.transactions:
        lines.append("")
        lines.append("*Последние операции*")
        for txn in wallet.transactions[:10]:
            sign = "−" if txn.is_debit else "+"
            line = f"{sign}{abs(txn.amount):.2f} {escape_markdown(txn.description)}"
            if txn.created_at:
                line += f" ({escape_markdown(txn.created_at[:10])})"
            lines.append(line)
    return "\n".join(lines)


def format_payout_history(payouts: List[Payout]) -> str:
    if not payouts:
        return "🧾 Заявок на выплату пока нет"
    lines = ["🧾 *История выплат*"]
    for payout in payouts[:15]:
        line = f"• {payout.amount:.2f} · {PAYOUT_STATUS_LABELS[payout.status]} · заказов: {payout.orders_count}"
        if payout.created_at:
            line += f" · {escape_markdown(payout.created_at[:10])}"
        lines.append(line)
        if payout.admin_note:
            lines.append(f"   _{escape_markdown(payout.admin_note)}_")
    return "\n".join(lines)


def format_live_location(snapshot: LiveLocation, error: Optional[Exception] = None) -> str:
    lines = [f"📡 *Live: заказ #{escape_markdown(snapshot.order_id)}*"]
    to_customer = snapshot.rider_to_customer_km
    to_shop = snapshot.rider_to_shop_km
    if snapshot.rider is None:
        lines.append("Позиция курьера ещё не получена")
    if to_shop is not None:
        lines.append(f"🏪 До магазина: {to_shop:.2f} км")
    if to_customer is not None:
        lines.append(f"👤 До клиента: {to_customer:.2f} км")
    for title, point in (("Магазин", snapshot.shop), ("Клиент", snapshot.customer)):
        link = navigator_link(point)
        if link:
            lines.append(f"[{title} на карте]({link})")
    if error is not None:
        lines.append("⚠️ Нет связи с сервером, показаны последние данные")
    return "\n".join(lines)


async def safe_edit_text(
    message: Message,
    text: str,
    *,
    reply_markup=None,
    parse_mode: Optional[str] = "Markdown",
    **kwargs
) -> bool:
    """
    Безопасный edit_text: ловит TelegramBadRequest (message not modified, not found, parse error),
    при сетевых ошибках (RetryAfter, обрыв соединения) повторяет до MAX_EDIT_RETRIES раз.
    Возвращает True при успехе, False при ожидаемых ошибках.
    """
    for attempt in range(MAX_EDIT_RETRIES):
        try:
            await message.edit_text(text, reply_markup=reply_markup, parse_mode=parse_mode, **kwargs)
            return True
        except RETRYABLE_EXC as e:
            if attempt == MAX_EDIT_RETRIES - 1:
                logger.error("safe_edit_text: failed after %s attempts: %s", MAX_EDIT_RETRIES, e)
                raise
            wait = getattr(e, "retry_after", None) or RETRY_DELAY
            logger.warning("safe_edit_text: %s, retry in %.1fs (attempt %s/%s)", e, wait, attempt + 1, MAX_EDIT_RETRIES)
            await asyncio.sleep(wait)
        except TelegramBadRequest as e:
            msg = str(e).lower()
            if "message is not modified" in msg or "message to edit not found" in msg:
                logger.debug("safe_edit_text: %s", e)
                return False
            if "can't parse entities" in msg:
                logger.warning("safe_edit_text: Markdown parse error, retrying without parse_mode: %s", e)
                try:
                    await message.edit_text(text, reply_markup=reply_markup, **kwargs)
                    return True
                except TelegramBadRequest as e2:
                    logger.warning("safe_edit_text: fallback failed: %s", e2)
                    return False
            raise
    return False


def error_feedback(error: Exception) -> Tuple[str, bool]:
    """
    Текст для курьера по ошибке жизненного цикла и нужен ли alert (True)
    или достаточно всплывающей подсказки (False).
    """
    if isinstance(error, NetworkError):
        return "📶 Нет связи с сервером. Попробуйте ещё раз.", True
    if isinstance(error, AuthenticationError):
        return "🔐 Сессия истекла. Войдите заново: /login", True
    if isinstance(error, BackendRejected):
        return f"❌ {error.detail}", True
    if isinstance(error, PermissionDenied):
        return LIVE_LOCATION_PROMPT, True
    if isinstance(error, NotFound):
        return "🔍 Не найдено. Вернитесь к списку.", True
    if isinstance(error, LifecycleError):
        return error.message, False
    return "⚠️ Ошибка. Попробуйте ещё раз.", True
