"""
Маршрутизация push-событий.

Сами уведомления доставляет внешний сервис; здесь только схема события
{type: order|return|broadcast, order_id?, deep_link?} и решение, что открыть.
В боте событие приходит через deep link: /start order_42, /start return_7,
/start broadcast или /start broadcast_<ссылка>.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ValidationError, field_validator

logger = logging.getLogger(__name__)


class RouteKind(str, enum.Enum):
    ORDER = "order"
    RETURN = "return"
    DEEP_LINK = "deep_link"
    HOME = "home"


@dataclass(frozen=True, slots=True)
class Route:
    kind: RouteKind
    target: Optional[str] = None


HOME = Route(RouteKind.HOME)


class NotificationEvent(BaseModel):
    """Полезная нагрузка push-уведомления."""

    type: Literal["order", "return", "broadcast"]
    order_id: Optional[str] = None
    deep_link: Optional[str] = None

    @field_validator("order_id", mode="before")
    @classmethod
    def normalize_order_id(cls, v: Any) -> Optional[str]:
        """order_id приходит и числом, и строкой."""
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("deep_link")
    @classmethod
    def normalize_deep_link(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def route(self) -> Route:
        if self.type == "order" and self.order_id:
            return Route(RouteKind.ORDER, self.order_id)
        if self.type == "return" and self.order_id:
            return Route(RouteKind.RETURN, self.order_id)
        if self.type == "broadcast" and self.deep_link:
            return Route(RouteKind.DEEP_LINK, self.deep_link)
        return HOME

    @classmethod
    def from_start_payload(cls, payload: Optional[str]) -> Optional["NotificationEvent"]:
        """Разобрать аргумент /start (order_42, return_7, broadcast, broadcast_<link>)."""
        if not payload:
            return None
        kind, _, rest = payload.strip().partition("_")
        if kind not in ("order", "return", "broadcast"):
            return None
        if kind == "broadcast":
            return cls(type="broadcast", deep_link=rest or None)
        return cls(type=kind, order_id=rest or None)


def route_notification(data: Dict[str, Any]) -> Route:
    """
    Куда вести курьера по данным уведомления.
    Любое нераспознанное событие ведёт на главный экран.
    """
    if not data:
        return HOME
    try:
        event = NotificationEvent.model_validate(data or {})
    except ValidationError as e:
        logger.warning("Unrecognized notification payload %r: %s", data, e.errors()[0].get("msg"))
        return HOME
    route = event.route()
    logger.info("Notification routed: type=%s order_id=%s -> %s", event.type, event.order_id, route.kind.value)
    return route


def start_payload_data(payload: Optional[str]) -> Dict[str, Any]:
    """Данные уведомления из аргумента /start; {} если это не переход по уведомлению."""
    event = NotificationEvent.from_start_payload(payload)
    return event.model_dump(exclude_none=True) if event else {}
