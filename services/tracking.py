"""
Фоновая отправка координат курьера на backend.

На устройство (курьера) одновременно активна максимум одна сессия трекинга:
старт для другого заказа сначала останавливает текущую сессию. Backend сам
связывает координаты с активным заказом курьера, поэтому в отчёт уходят только
lat/lon.

Координаты приходят из Telegram live location. «Разрешения» трактуются так:
foreground — курьер недавно делился геолокацией; background — поделился
именно live location и её срок ещё не истёк.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from services.errors import ApiError, PermissionDenied
from services.geo import Coordinates, distance_m

logger = logging.getLogger(__name__)


class LiveLocationPermissions:
    """Разрешения на геолокацию по последней live location курьера."""

    def __init__(self, grace_seconds: float = 120.0, clock: Callable[[], float] = time.time):
        self.grace_seconds = grace_seconds
        self._clock = clock
        self._last_seen: Optional[float] = None
        self._live_until: Optional[float] = None

    def update(self, live_period: Optional[int], started_at: Optional[float] = None) -> None:
        """
        Отметить полученную геолокацию.

        Args:
            live_period: срок live location в секундах (None — разовая точка)
            started_at: когда курьер начал делиться (дата исходного сообщения)
        """
        now = self._clock()
        self._last_seen = now
        if live_period:
            self._live_until = (started_at if started_at is not None else now) + live_period

    def revoke(self) -> None:
        """Курьер перестал делиться live location."""
        self._live_until = None

    @property
    def live_active(self) -> bool:
        return self._live_until is not None and self._clock() < self._live_until

    async def request_foreground(self) -> bool:
        if self.live_active:
            return True
        return self._last_seen is not None and self._clock() - self._last_seen <= self.grace_seconds

    async def request_background(self) -> bool:
        return self.live_active


class LocationTrackingSession:
    """Единственная на курьера сессия отправки координат."""

    def __init__(
        self,
        reporter: Callable[[float, float], Awaitable[None]],
        permissions,
        min_distance_m: float = 5.0,
        heartbeat_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        on_report: Optional[Callable[[str, Coordinates], None]] = None,
    ):
        """
        Args:
            reporter: отправка (lat, lon) на backend
            permissions: объект с async request_foreground()/request_background()
            min_distance_m: смещение, которое считается значимым
            heartbeat_seconds: отправлять точку не реже чем раз в N секунд
            on_report: вызывается после успешной отправки (order_id, точка)
        """
        self.reporter = reporter
        self.permissions = permissions
        self.min_distance_m = min_distance_m
        self.heartbeat_seconds = heartbeat_seconds
        self.on_report = on_report
        self._clock = clock
        self._lock = asyncio.Lock()
        self._order_id: Optional[str] = None
        self._last_point: Optional[Coordinates] = None
        self._last_report_at: Optional[float] = None
        self.last_error: Optional[Exception] = None
        self.reports_sent = 0

    @property
    def active(self) -> bool:
        return self._order_id is not None

    @property
    def order_id(self) -> Optional[str]:
        return self._order_id

    async def start(self, order_id: str) -> bool:
        """
        Начать трекинг заказа.

        Returns:
            True если сессия запущена, False если уже была активна для этого заказа

        Raises:
            PermissionDenied: нет foreground или background разрешения
        """
        async with self._lock:
            if self._order_id == order_id:
                return False
            if not await self.permissions.request_foreground():
                raise PermissionDenied("foreground")
            if not await self.permissions.request_background():
                raise PermissionDenied("background")
            if self._order_id is not None:
                logger.info("Tracking switched: order %s -> %s", self._order_id, order_id)
                self._reset()
            self._order_id = order_id
            logger.info("Tracking started: order=%s", order_id)
            return True

    async def stop(self, order_id: Optional[str] = None) -> bool:
        """
        Остановить трекинг. Без активной сессии — ничего не делает.
        Если передан order_id, останавливает только сессию этого заказа.
        """
        async with self._lock:
            if self._order_id is None:
                return False
            if order_id is not None and order_id != self._order_id:
                return False
            logger.info("Tracking stopped: order=%s, reports=%s", self._order_id, self.reports_sent)
            self._reset()
            return True

    def _reset(self) -> None:
        self._order_id = None
        self._last_point = None
        self._last_report_at = None
        self.last_error = None
        self.reports_sent = 0

    def _is_meaningful(self, point: Coordinates, now: float) -> bool:
        if self._last_point is None or self._last_report_at is None:
            return True
        if now - self._last_report_at >= self.heartbeat_seconds:
            return True
        return distance_m(self._last_point, point) >= self.min_distance_m

    async def push_reading(self, lat: float, lon: float) -> bool:
        """
        Обработать новую точку курьера. Отправляет её, если сессия активна и
        смещение значимое (или пора отправить heartbeat).
        Ошибка отправки не останавливает сессию: точка уйдёт со следующим чтением.

        Returns:
            True если точка отправлена на backend
        """
        order_id = self._order_id
        if order_id is None:
            return False

        point = Coordinates(lat=lat, lon=lon)
        now = self._clock()
        if not self._is_meaningful(point, now):
            return False

        try:
            await self.reporter(lat, lon)
        except ApiError as e:
            self.last_error = e
            logger.warning("Location report failed: order=%s err=%s", order_id, e)
            return False

        if self._order_id != order_id:
            # Сессию остановили, пока отчёт был в пути
            return True
        self._last_point = point
        self._last_report_at = now
        self.last_error = None
        self.reports_sent += 1
        if self.on_report is not None:
            self.on_report(order_id, point)
        return True
