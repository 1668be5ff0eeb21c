"""
Жизненный цикл возврата товара (курьер забирает товар у клиента и везёт в магазин).

    pending   --accept-->     accepted
    pending/accepted --picked_up--> picked_up   (из pending сначала пробуем accept)
    picked_up --returned-->   delivered_back    (на backend может называться delivered_to_shop)

Отклонения возврата со стороны курьера нет — это решает backend.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from services.errors import BackendRejected, InvalidTransition, NetworkError

logger = logging.getLogger(__name__)

# Статусы, которые backend принимает для «возвращено в магазин» (в порядке попыток)
RETURNED_BACKEND_STATUSES = ("delivered_back", "delivered_to_shop")


class ReturnStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    DELIVERED_BACK = "delivered_back"
    COMPLETED = "completed"
    REFUNDED = "refunded"

    @classmethod
    def parse(cls, raw: Any) -> "ReturnStatus":
        value = str(raw or "").strip().lower()
        value = _RETURN_STATUS_ALIASES.get(value, value)
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Неизвестный статус возврата: {raw!r}") from None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RETURN_STATUSES


_RETURN_STATUS_ALIASES = {
    "pickup_scheduled": "accepted",
    "picked": "picked_up",
    "pickup": "picked_up",
    "delivered_to_shop": "delivered_back",
    "delivered": "delivered_back",
}

TERMINAL_RETURN_STATUSES = frozenset({
    ReturnStatus.DELIVERED_BACK,
    ReturnStatus.COMPLETED,
    ReturnStatus.REFUNDED,
})

_RETURN_RANK = {
    ReturnStatus.PENDING: 0,
    ReturnStatus.ACCEPTED: 1,
    ReturnStatus.PICKED_UP: 2,
}


@dataclass
class ReturnRequest:
    """Заявка на возврат. order_id — ссылка на исходный заказ, не владение им."""
    id: str
    status: ReturnStatus
    order_id: Optional[str] = None
    reason: Optional[str] = None
    customer_name: Optional[str] = None
    address: Optional[str] = None
    product_name: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "ReturnRequest":
        order_id = raw.get("order_id") or raw.get("order")
        if isinstance(order_id, dict):
            order_id = order_id.get("id")
        return cls(
            id=str(raw.get("id", raw.get("return_id"))),
            status=ReturnStatus.parse(raw.get("status")),
            order_id=str(order_id) if order_id is not None else None,
            reason=raw.get("reason"),
            customer_name=raw.get("customer_name") or raw.get("user_name"),
            address=raw.get("address") or raw.get("pickup_address"),
            product_name=raw.get("product_name") or raw.get("item_name"),
            created_at=raw.get("created_at"),
        )


class ReturnStateMachine:
    """Переходы возврата. Побочных эффектов (трекинг, опрос) у возврата нет."""

    def __init__(self, api):
        self.api = api

    @staticmethod
    def allowed_actions(ret: ReturnRequest) -> list[str]:
        if ret.status is ReturnStatus.PENDING:
            return ["accept", "picked_up"]
        if ret.status is ReturnStatus.ACCEPTED:
            return ["picked_up"]
        if ret.status is ReturnStatus.PICKED_UP:
            return ["returned"]
        return []

    async def accept(self, ret: ReturnRequest) -> ReturnRequest:
        """pending → accepted."""
        if ret.status is not ReturnStatus.PENDING:
            raise InvalidTransition(ret.status.value, "accept", details={"return_id": ret.id})
        await self.api.accept_return(ret.id)
        ret.status = ReturnStatus.ACCEPTED
        logger.info("Return accepted: id=%s", ret.id)
        return ret

    async def mark_picked_up(self, ret: ReturnRequest) -> ReturnRequest:
        """
        pending/accepted → picked_up.
        Из pending сначала пробуем accept; ошибку accept (обычно «уже принят»)
        игнорируем и сразу ставим picked_up.
        """
        if ret.status not in (ReturnStatus.PENDING, ReturnStatus.ACCEPTED):
            raise InvalidTransition(ret.status.value, "picked_up", details={"return_id": ret.id})

        if ret.status is ReturnStatus.PENDING:
            try:
                await self.api.accept_return(ret.id)
                ret.status = ReturnStatus.ACCEPTED
            except (BackendRejected, NetworkError) as e:
                logger.info("Implicit accept of return %s ignored: %s", ret.id, e)

        previous = ret.status
        await self.api.update_return_status(ret.id, ReturnStatus.PICKED_UP.value)
        ret.status = ReturnStatus.PICKED_UP
        logger.info("Return status updated: id=%s, %s -> %s", ret.id, previous.value, ret.status.value)
        return ret

    async def mark_returned(self, ret: ReturnRequest) -> ReturnRequest:
        """picked_up → delivered_back (с запасным статусом delivered_to_shop)."""
        if ret.status is not ReturnStatus.PICKED_UP:
            raise InvalidTransition(ret.status.value, "returned", details={"return_id": ret.id})

        primary, fallback = RETURNED_BACKEND_STATUSES
        try:
            await self.api.update_return_status(ret.id, primary)
        except BackendRejected as e:
            logger.warning("Backend rejected %s for return %s (%s), trying %s", primary, ret.id, e.detail, fallback)
            await self.api.update_return_status(ret.id, fallback)

        ret.status = ReturnStatus.DELIVERED_BACK
        logger.info("Return delivered back to shop: id=%s", ret.id)
        return ret

    @staticmethod
    def observe(ret: ReturnRequest, remote: ReturnRequest) -> bool:
        """Принять статус с backend (кроме отката из финального). True если статус изменился."""
        if ret.is_terminal or remote.status is ret.status:
            return False
        if not remote.is_terminal and _RETURN_RANK[remote.status] < _RETURN_RANK[ret.status]:
            return False
        ret.status = remote.status
        ret.reason = remote.reason or ret.reason
        return True
