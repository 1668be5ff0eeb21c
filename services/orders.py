"""
Жизненный цикл заказа доставки со стороны курьера.

Статусы и допустимые переходы:

    new       --accept-->  accepted
    new       --reject-->  rejected   (нужна причина, финальный)
    accepted  --eta----->  accepted   (меняется только ETA)
    accepted  --onway--->  onway
    accepted  --failed-->  failed     (нужна причина, финальный)
    onway     --delivered--> delivered (финальный)
    любой не финальный  ~~backend~~>  cancelled (финальный, только с сервера)

OrderStateMachine не трогает геолокацию и таймеры сам: результат перехода
содержит набор SideEffect, который выполняет координатор.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from services.errors import InvalidEta, InvalidTransition, MissingReason, OrderTerminal
from services.geo import Coordinates

logger = logging.getLogger(__name__)

ETA_MIN_MINUTES = 1
ETA_MAX_MINUTES = 240


class OrderStatus(str, enum.Enum):
    NEW = "new"
    ACCEPTED = "accepted"
    ONWAY = "onway"
    DELIVERED = "delivered"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, raw: Any) -> "OrderStatus":
        """Статус из ответа backend с учётом синонимов (enroute, canceled)."""
        value = str(raw or "").strip().lower()
        value = _ORDER_STATUS_ALIASES.get(value, value)
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Неизвестный статус заказа: {raw!r}") from None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES


_ORDER_STATUS_ALIASES = {
    "enroute": "onway",
    "on_way": "onway",
    "canceled": "cancelled",
}

TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.FAILED,
    OrderStatus.REJECTED,
    OrderStatus.CANCELLED,
})

# Порядок продвижения заказа; снимок с сервера не может откатить статус назад
_STATUS_RANK = {
    OrderStatus.NEW: 0,
    OrderStatus.ACCEPTED: 1,
    OrderStatus.ONWAY: 2,
}


class DeliverySpeed(str, enum.Enum):
    NORMAL = "normal"
    FAST = "fast"

    @classmethod
    def parse(cls, raw: Any) -> "DeliverySpeed":
        value = str(raw or "").strip().lower()
        if value in ("fast", "express", "priority"):
            return cls.FAST
        return cls.NORMAL


class OrderEvent(str, enum.Enum):
    """События курьера. Значение — команда, которую понимает backend."""
    ACCEPT = "accept"
    REJECT = "reject"
    SET_ETA = "eta"
    ONWAY = "onway"
    FAIL = "failed"
    DELIVER = "delivered"


class SideEffect(str, enum.Enum):
    START_TRACKING = "start_tracking"
    ENSURE_TRACKING = "ensure_tracking"
    STOP_TRACKING = "stop_tracking"
    STOP_POLLING = "stop_polling"
    DISABLE_CONTROLS = "disable_controls"
    LEAVE_ORDER = "leave_order"


TRANSITIONS: Dict[Tuple[OrderStatus, OrderEvent], OrderStatus] = {
    (OrderStatus.NEW, OrderEvent.ACCEPT): OrderStatus.ACCEPTED,
    (OrderStatus.NEW, OrderEvent.REJECT): OrderStatus.REJECTED,
    (OrderStatus.ACCEPTED, OrderEvent.SET_ETA): OrderStatus.ACCEPTED,
    (OrderStatus.ACCEPTED, OrderEvent.ONWAY): OrderStatus.ONWAY,
    (OrderStatus.ACCEPTED, OrderEvent.FAIL): OrderStatus.FAILED,
    (OrderStatus.ONWAY, OrderEvent.DELIVER): OrderStatus.DELIVERED,
}

EVENT_EFFECTS: Dict[OrderEvent, FrozenSet[SideEffect]] = {
    OrderEvent.ACCEPT: frozenset({SideEffect.START_TRACKING}),
    OrderEvent.SET_ETA: frozenset(),
    OrderEvent.ONWAY: frozenset({SideEffect.ENSURE_TRACKING}),
    OrderEvent.DELIVER: frozenset({SideEffect.STOP_TRACKING, SideEffect.STOP_POLLING, SideEffect.LEAVE_ORDER}),
    OrderEvent.FAIL: frozenset({SideEffect.STOP_TRACKING, SideEffect.LEAVE_ORDER}),
    OrderEvent.REJECT: frozenset({SideEffect.STOP_TRACKING, SideEffect.LEAVE_ORDER}),
}

REASON_REQUIRED = frozenset({OrderEvent.REJECT, OrderEvent.FAIL})

_REMOTE_TERMINAL_EFFECTS = frozenset({
    SideEffect.STOP_TRACKING,
    SideEffect.STOP_POLLING,
    SideEffect.DISABLE_CONTROLS,
})


@dataclass(frozen=True, slots=True)
class OrderItem:
    """Позиция заказа — снимок с backend, координатор её не меняет."""
    name: str
    quantity: int = 1
    price: Optional[float] = None
    variant: Optional[str] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any], index: int = 0) -> "OrderItem":
        product = raw.get("product") if isinstance(raw.get("product"), dict) else {}
        name = raw.get("product_name") or raw.get("name") or product.get("name") or f"Товар {index + 1}"
        try:
            quantity = int(raw.get("quantity", raw.get("qty", 1)) or 1)
        except (TypeError, ValueError):
            quantity = 1
        price = raw.get("price")
        variation = raw.get("variation") if isinstance(raw.get("variation"), dict) else {}
        variant = raw.get("display_attributes") or variation.get("value") or raw.get("color_name")
        return cls(
            name=str(name),
            quantity=max(quantity, 1),
            price=float(price) if isinstance(price, (int, float)) else None,
            variant=str(variant) if variant else None,
        )


@dataclass
class DeliveryOrder:
    """Снимок заказа курьера. Статус меняется только через OrderStateMachine."""
    id: str
    status: OrderStatus
    reason: Optional[str] = None
    eta_minutes: Optional[int] = None
    delivery_speed: DeliverySpeed = DeliverySpeed.NORMAL
    items: Tuple[OrderItem, ...] = ()
    customer_location: Optional[Coordinates] = None
    shop_location: Optional[Coordinates] = None
    rider_location: Optional[Coordinates] = None
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[str] = None
    shop_name: Optional[str] = None
    customer_name: Optional[str] = None
    address: Optional[str] = None
    payment_method: Optional[str] = None
    payment_status: Optional[str] = None
    distance_km: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_cancelled(self) -> bool:
        return self.status is OrderStatus.CANCELLED

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "DeliveryOrder":
        """Собрать заказ из ответа backend (active/delivered/failed-orders)."""
        status_raw = raw.get("delivery_status") or raw.get("deliveryStatus") or raw.get("status")
        shop = raw.get("shop") if isinstance(raw.get("shop"), dict) else {}
        items = raw.get("items") or []
        eta = raw.get("eta") if raw.get("eta") is not None else raw.get("eta_minutes")
        distance = raw.get("distance_km")
        return cls(
            id=str(raw["id"]),
            status=OrderStatus.parse(status_raw),
            reason=raw.get("reason") or raw.get("failure_reason") or raw.get("rejection_reason"),
            eta_minutes=int(eta) if isinstance(eta, (int, float)) or (isinstance(eta, str) and eta.isdigit()) else None,
            delivery_speed=DeliverySpeed.parse(raw.get("delivery_speed") or raw.get("delivery_type")),
            items=tuple(OrderItem.from_api(it, idx) for idx, it in enumerate(items) if isinstance(it, dict)),
            customer_location=Coordinates.from_api(raw.get("customer_location")),
            shop_location=Coordinates.from_api(shop),
            rider_location=Coordinates.from_api(raw.get("delivery_partner") or raw.get("rider")),
            cancel_reason=(raw.get("cancel_reason") or raw.get("cancelReason") or "").strip() or None,
            cancelled_at=raw.get("cancelled_at") or raw.get("cancelledAt"),
            shop_name=shop.get("name"),
            customer_name=raw.get("customer_name"),
            address=raw.get("address") or raw.get("delivery_address"),
            payment_method=raw.get("payment_method"),
            payment_status=raw.get("payment_status"),
            distance_km=float(distance) if isinstance(distance, (int, float)) else None,
        )

    def apply_remote(self, remote: "DeliveryOrder") -> None:
        """
        Принять свежий снимок с backend.
        id и delivery_speed неизменны; статус не откатывается назад.
        """
        if remote.status.is_terminal or _STATUS_RANK.get(remote.status, 0) >= _STATUS_RANK.get(self.status, 0):
            self.status = remote.status
        self.reason = remote.reason or self.reason
        self.eta_minutes = remote.eta_minutes if remote.eta_minutes is not None else self.eta_minutes
        self.items = remote.items or self.items
        self.customer_location = remote.customer_location or self.customer_location
        self.shop_location = remote.shop_location or self.shop_location
        self.cancel_reason = remote.cancel_reason
        self.cancelled_at = remote.cancelled_at
        self.shop_name = remote.shop_name or self.shop_name
        self.customer_name = remote.customer_name or self.customer_name
        self.address = remote.address or self.address
        self.payment_method = remote.payment_method or self.payment_method
        self.payment_status = remote.payment_status or self.payment_status
        self.distance_km = remote.distance_km if remote.distance_km is not None else self.distance_km


@dataclass(frozen=True, slots=True)
class TransitionRequest:
    event: OrderEvent
    reason: Optional[str] = None
    eta_minutes: Optional[int] = None


@dataclass(frozen=True, slots=True)
class TransitionPlan:
    """Проверенный переход: что отправить на backend и что сделать после."""
    order_id: str
    event: OrderEvent
    source: OrderStatus
    target: OrderStatus
    payload: Dict[str, Any]
    effects: FrozenSet[SideEffect]


@dataclass
class TransitionResult:
    order: DeliveryOrder
    event: OrderEvent
    previous: OrderStatus
    effects: FrozenSet[SideEffect]
    # Переход на сервере прошёл, но трекинг не запустился (нет разрешения)
    tracking_error: Optional[Exception] = None

    @property
    def status_changed(self) -> bool:
        return self.previous is not self.order.status


@dataclass(frozen=True, slots=True)
class CancelledBanner:
    reason: str
    cancelled_at: Optional[str] = None


@dataclass
class ObservedChange:
    """Результат сверки локального заказа со снимком backend."""
    order: DeliveryOrder
    previous: OrderStatus
    effects: FrozenSet[SideEffect] = field(default_factory=frozenset)
    cancelled_banner: Optional[CancelledBanner] = None

    @property
    def status_changed(self) -> bool:
        return self.previous is not self.order.status


class OrderStateMachine:
    """Проверяет переходы заказа и отправляет команды смены статуса на backend."""

    def __init__(self, api):
        self.api = api

    @staticmethod
    def allowed_events(order: DeliveryOrder) -> List[OrderEvent]:
        """События, которые курьер может вызвать сейчас (для кнопок)."""
        if order.is_terminal:
            return []
        return [event for (status, event) in TRANSITIONS if status is order.status]

    @staticmethod
    def plan(order: DeliveryOrder, request: TransitionRequest) -> TransitionPlan:
        """
        Проверить переход без обращения к backend.

        Raises:
            OrderTerminal: заказ уже в финальном статусе
            InvalidTransition: событие недопустимо из текущего статуса
            MissingReason: reject/failed без причины
            InvalidEta: ETA не целое или вне диапазона
        """
        if order.is_terminal:
            raise OrderTerminal(order.id, order.status.value)

        target = TRANSITIONS.get((order.status, request.event))
        if target is None:
            raise InvalidTransition(order.status.value, request.event.value, details={"order_id": order.id})

        payload: Dict[str, Any] = {"order_id": order.id, "status": request.event.value}

        if request.event in REASON_REQUIRED:
            reason = (request.reason or "").strip()
            if not reason:
                raise MissingReason(request.event.value)
            payload["reason"] = reason

        if request.event is OrderEvent.SET_ETA:
            eta = request.eta_minutes
            if isinstance(eta, bool) or not isinstance(eta, int) or not ETA_MIN_MINUTES <= eta <= ETA_MAX_MINUTES:
                raise InvalidEta(eta)
            payload["eta"] = eta

        return TransitionPlan(
            order_id=order.id,
            event=request.event,
            source=order.status,
            target=target,
            payload=payload,
            effects=EVENT_EFFECTS[request.event],
        )

    async def request_transition(self, order: DeliveryOrder, request: TransitionRequest) -> TransitionResult:
        """
        Проверить переход, отправить его на backend и применить локально.
        Локальный статус меняется только после успешного ответа backend.

        Raises:
            OrderTerminal: пока запрос был в пути, заказ стал финальным
                (например, пришла отмена с сервера); статус не перезаписывается
        """
        plan = self.plan(order, request)

        await self.api.update_order_status(
            order.id,
            plan.event.value,
            reason=plan.payload.get("reason"),
            eta=plan.payload.get("eta"),
        )

        if order.is_terminal:
            logger.warning(
                "Order %s became %s while '%s' was in flight; response ignored",
                order.id, order.status.value, plan.event.value
            )
            raise OrderTerminal(order.id, order.status.value)

        previous = order.status
        order.status = plan.target
        if "reason" in plan.payload:
            order.reason = plan.payload["reason"]
        if "eta" in plan.payload:
            order.eta_minutes = plan.payload["eta"]

        logger.info(
            "Order status updated: id=%s, %s -> %s, event=%s",
            order.id, previous.value, order.status.value, plan.event.value
        )
        return TransitionResult(order=order, event=plan.event, previous=previous, effects=plan.effects)

    @staticmethod
    def observe(order: DeliveryOrder, remote: DeliveryOrder) -> ObservedChange:
        """
        Сверить локальный заказ со снимком backend.
        Отмена (или любой финальный статус), пришедшая с сервера, сразу
        останавливает трекинг и опрос и блокирует кнопки.
        """
        if remote.id != order.id:
            raise ValueError(f"Снимок заказа #{remote.id} не относится к заказу #{order.id}")

        previous = order.status
        if order.is_terminal:
            return ObservedChange(order=order, previous=previous)

        order.apply_remote(remote)
        return OrderStateMachine._terminal_change(order, previous)

    @staticmethod
    def adopt(order: DeliveryOrder) -> ObservedChange:
        """Заказ загружен впервые: если он уже финальный — те же эффекты, что и при отмене."""
        return OrderStateMachine._terminal_change(order, order.status)

    @staticmethod
    def _terminal_change(order: DeliveryOrder, previous: OrderStatus) -> ObservedChange:
        if not order.is_terminal:
            return ObservedChange(order=order, previous=previous)

        banner = None
        if order.is_cancelled:
            banner = CancelledBanner(
                reason=order.cancel_reason or "Отменён клиентом",
                cancelled_at=order.cancelled_at,
            )
        logger.info(
            "Order reached terminal status on backend: id=%s, %s -> %s",
            order.id, previous.value, order.status.value
        )
        return ObservedChange(
            order=order,
            previous=previous,
            effects=_REMOTE_TERMINAL_EFFECTS,
            cancelled_banner=banner,
        )
