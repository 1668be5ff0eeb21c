"""
Периодический опрос live-локации заказа (магазин / курьер / клиент).

Опрос не падает от ошибок backend: ошибка сохраняется в last_error, следующий
тик идёт с тем же интервалом. Финальный статус заказа проверяется на каждом
тике — после него не уходит ни одного запроса, даже если stop() не вызывали.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from services.errors import ApiError
from services.geo import Coordinates, haversine_distance

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LiveLocation:
    """Снимок координат по заказу."""
    order_id: str
    shop: Optional[Coordinates] = None
    rider: Optional[Coordinates] = None
    customer: Optional[Coordinates] = None
    status: Optional[str] = None
    fetched_at: float = 0.0

    @classmethod
    def from_api(cls, order_id: str, raw: Dict[str, Any]) -> "LiveLocation":
        status = raw.get("delivery_status") or raw.get("status")
        return cls(
            order_id=order_id,
            shop=Coordinates.from_api(raw.get("shop")),
            rider=Coordinates.from_api(raw.get("delivery_partner") or raw.get("rider")),
            customer=Coordinates.from_api(raw.get("customer_location") or raw.get("customer")),
            status=str(status).lower() if status else None,
            fetched_at=time.time(),
        )

    @property
    def rider_to_customer_km(self) -> Optional[float]:
        if self.rider is None or self.customer is None:
            return None
        return haversine_distance(self.rider.lat, self.rider.lon, self.customer.lat, self.customer.lon)

    @property
    def rider_to_shop_km(self) -> Optional[float]:
        if self.rider is None or self.shop is None:
            return None
        return haversine_distance(self.rider.lat, self.rider.lon, self.shop.lat, self.shop.lon)


class LivePollingSession:
    """Таймер опроса live-локации одного заказа."""

    def __init__(
        self,
        fetch: Callable[[str], Awaitable[LiveLocation]],
        is_terminal: Callable[[str], bool],
        on_snapshot: Optional[Callable[[LiveLocation], Awaitable[None]]] = None,
    ):
        self.fetch = fetch
        self.is_terminal = is_terminal
        self.on_snapshot = on_snapshot
        self._task: Optional[asyncio.Task] = None
        self._order_id: Optional[str] = None
        self.snapshot: Optional[LiveLocation] = None
        self.last_error: Optional[Exception] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def order_id(self) -> Optional[str]:
        return self._order_id if self.running else None

    def start(self, order_id: str, interval_ms: int) -> bool:
        """
        Запустить опрос. Для финального заказа — no-op.

        Returns:
            True если запущен новый опрос
        """
        if interval_ms <= 0:
            raise ValueError(f"Интервал опроса должен быть положительным: {interval_ms}")
        if self.is_terminal(order_id):
            logger.debug("Live polling not started: order %s is terminal", order_id)
            return False
        if self.running:
            if self._order_id == order_id:
                return False
            self._task.cancel()

        self._order_id = order_id
        self.snapshot = None
        self.last_error = None
        self.ticks = 0
        self._task = asyncio.get_running_loop().create_task(
            self._run(order_id, interval_ms / 1000),
            name=f"live-poll-{order_id}",
        )
        logger.info("Live polling started: order=%s interval_ms=%s", order_id, interval_ms)
        return True

    async def stop(self) -> bool:
        """Отменить таймер. Повторный вызов ничего не делает."""
        task = self._task
        self._task = None
        if task is None or task.done():
            return False
        task.cancel()
        if task is not asyncio.current_task():
            with suppress(asyncio.CancelledError):
                await task
        logger.info("Live polling stopped: order=%s ticks=%s", self._order_id, self.ticks)
        return True

    @asynccontextmanager
    async def running_for(self, order_id: str, interval_ms: int) -> AsyncIterator["LivePollingSession"]:
        """Опрос на время блока; таймер гарантированно отменяется на выходе."""
        self.start(order_id, interval_ms)
        try:
            yield self
        finally:
            await self.stop()

    async def _run(self, order_id: str, interval: float) -> None:
        while True:
            if self.is_terminal(order_id):
                logger.info("Live polling self-stopped: order %s is terminal", order_id)
                return
            self.ticks += 1
            try:
                snapshot = await self.fetch(order_id)
            except ApiError as e:
                self.last_error = e
                logger.warning("Live location fetch failed: order=%s err=%s", order_id, e)
            else:
                if self.is_terminal(order_id):
                    logger.info("Live polling self-stopped: order %s is terminal", order_id)
                    return
                self.snapshot = snapshot
                self.last_error = None
                if self.on_snapshot is not None:
                    try:
                        await self.on_snapshot(snapshot)
                    except Exception as e:
                        logger.error("Live snapshot handler failed: order=%s err=%r", order_id, e, exc_info=True)
            await asyncio.sleep(interval)
