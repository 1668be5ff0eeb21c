"""
Координатор жизненного цикла доставки одного курьера.

Связывает OrderStateMachine / ReturnStateMachine с трекингом геолокации и
опросом live-локации:

    кнопка курьера → request_transition → проверка → команда на backend
    → локальный статус → побочные эффекты (старт/стоп трекинга, стоп опроса)

Запрос смены статуса выполняется в отдельной задаче под asyncio.shield: если
обработчик, который его вызвал, отменён, запрос всё равно завершится и
побочные эффекты выполнятся (иначе может остаться «висящий» трекинг).
Повторное нажатие, пока запрос в пути, получает TransitionInProgress.
"""
import asyncio
import logging
from dataclasses import dataclass, replace
from functools import partial
from typing import Awaitable, Callable, Dict, FrozenSet, List, Optional, Set

import aiohttp

from services.delivery_api import DeliveryApi
from services.errors import NotFound, PermissionDenied, TransitionInProgress
from services.geo import Coordinates
from services.orders import (
    DeliveryOrder, ObservedChange, OrderStateMachine, OrderStatus,
    SideEffect, TransitionRequest, TransitionResult,
)
from services.polling import LiveLocation, LivePollingSession
from services.returns import ReturnRequest, ReturnStateMachine
from services.tracking import LiveLocationPermissions, LocationTrackingSession

logger = logging.getLogger(__name__)

_TRACKING_START_EFFECTS = frozenset({SideEffect.START_TRACKING, SideEffect.ENSURE_TRACKING})


@dataclass(frozen=True, slots=True)
class TransitionRecord:
    """Запись журнала переходов."""
    kind: str
    entity_id: str
    event: str
    from_status: str
    to_status: str
    reason: Optional[str] = None


class DeliveryCoordinator:
    """Активные заказы и возвраты одного курьера."""

    def __init__(
        self,
        api,
        tracking: LocationTrackingSession,
        poll_interval_ms: int = 10000,
        journal: Optional[Callable[[TransitionRecord], Awaitable[None]]] = None,
    ):
        self.api = api
        self.orders = OrderStateMachine(api)
        self.returns = ReturnStateMachine(api)
        self.tracking = tracking
        self.tracking.on_report = self._on_location_reported
        self.polling = LivePollingSession(
            fetch=self._fetch_live,
            is_terminal=self._order_is_terminal,
            on_snapshot=self._on_snapshot,
        )
        self.poll_interval_ms = poll_interval_ms
        self.journal = journal
        self._orders: Dict[str, DeliveryOrder] = {}
        self._returns: Dict[str, ReturnRequest] = {}
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._snapshot_listener: Optional[Callable[[LiveLocation], Awaitable[None]]] = None
        # Заказ, для которого нужен трекинг, но он не стартовал (нет разрешения)
        self._tracking_wanted: Optional[str] = None
        self._closed = False

    @property
    def permissions(self):
        return self.tracking.permissions

    @property
    def tracking_wanted(self) -> Optional[str]:
        return self._tracking_wanted

    def get_order(self, order_id: str) -> Optional[DeliveryOrder]:
        return self._orders.get(str(order_id))

    def get_return(self, return_id: str) -> Optional[ReturnRequest]:
        return self._returns.get(str(return_id))

    # --- Orders ---

    async def load_order(self, order_id: str) -> ObservedChange:
        """
        Загрузить (или обновить) заказ с backend и выполнить эффекты,
        если заказ оказался отменён или завершён.
        """
        remote = await self.api.find_order(str(order_id))
        local = self._orders.get(remote.id)
        if local is None:
            self._orders[remote.id] = remote
            change = OrderStateMachine.adopt(remote)
        else:
            change = OrderStateMachine.observe(local, remote)
        if change.effects:
            await self._apply_effects(change.order, change.effects)
        return change

    async def active_orders(self) -> List[DeliveryOrder]:
        """Активные заказы курьера; известные заказы сверяются со снимком."""
        result = []
        for remote in await self.api.fetch_active_orders():
            local = self._orders.get(remote.id)
            if local is None:
                self._orders[remote.id] = remote
                result.append(remote)
                continue
            change = OrderStateMachine.observe(local, remote)
            if change.effects:
                await self._apply_effects(local, change.effects)
            result.append(local)
        return result

    async def order_history(self) -> Dict[str, List[DeliveryOrder]]:
        return {
            "delivered": await self.api.fetch_delivered_orders(),
            "failed": await self.api.fetch_failed_orders(),
        }

    async def request_transition(self, order_id: str, request: TransitionRequest) -> TransitionResult:
        """
        Сменить статус заказа.

        Raises:
            NotFound: заказ не загружен (сначала load_order)
            TransitionInProgress: по заказу уже идёт запрос
            OrderTerminal, InvalidTransition, MissingReason, InvalidEta: ошибки state machine
            ApiError: ошибка backend (локальный статус не меняется)
        """
        order = self._orders.get(str(order_id))
        if order is None:
            raise NotFound("Order", order_id)
        return await self._exclusive(order.id, partial(self._run_order_transition, order, request))

    async def _run_order_transition(self, order: DeliveryOrder, request: TransitionRequest) -> TransitionResult:
        result = await self.orders.request_transition(order, request)
        result.tracking_error = await self._apply_effects(order, result.effects)
        await self._record(TransitionRecord(
            kind="order",
            entity_id=order.id,
            event=result.event.value,
            from_status=result.previous.value,
            to_status=order.status.value,
            reason=request.reason,
        ))
        return result

    # --- Returns ---

    async def pending_returns(self) -> List[ReturnRequest]:
        result = []
        for remote in await self.api.fetch_pending_returns():
            local = self._returns.get(remote.id)
            if local is None:
                self._returns[remote.id] = remote
                result.append(remote)
            else:
                ReturnStateMachine.observe(local, remote)
                result.append(local)
        return result

    async def completed_returns(self) -> List[ReturnRequest]:
        return await self.api.fetch_completed_returns()

    async def load_return(self, return_id: str) -> ReturnRequest:
        remote = await self.api.find_return(str(return_id))
        local = self._returns.get(remote.id)
        if local is None:
            self._returns[remote.id] = remote
            return remote
        ReturnStateMachine.observe(local, remote)
        return local

    async def accept_return(self, return_id: str) -> ReturnRequest:
        return await self._return_action(return_id, "accept", self.returns.accept)

    async def mark_picked_up(self, return_id: str) -> ReturnRequest:
        return await self._return_action(return_id, "picked_up", self.returns.mark_picked_up)

    async def mark_returned(self, return_id: str) -> ReturnRequest:
        return await self._return_action(return_id, "returned", self.returns.mark_returned)

    async def _return_action(self, return_id: str, event: str, action) -> ReturnRequest:
        ret = self._returns.get(str(return_id))
        if ret is None:
            raise NotFound("Return", return_id)

        async def run() -> ReturnRequest:
            previous = ret.status
            await action(ret)
            await self._record(TransitionRecord(
                kind="return",
                entity_id=ret.id,
                event=event,
                from_status=previous.value,
                to_status=ret.status.value,
            ))
            return ret

        return await self._exclusive(f"return:{ret.id}", run)

    # --- Location ---

    async def push_location(self, lat: float, lon: float) -> bool:
        """Новая точка курьера из Telegram live location."""
        return await self.tracking.push_reading(lat, lon)

    async def resume_tracking(self) -> Optional[str]:
        """
        Запустить трекинг, который не стартовал из-за отсутствия разрешения.

        Returns:
            id заказа, для которого запущен трекинг, или None

        Raises:
            PermissionDenied: разрешения всё ещё нет
        """
        order_id = self._tracking_wanted
        if order_id is None or self._closed:
            return None
        order = self._orders.get(order_id)
        if order is None or order.is_terminal:
            self._tracking_wanted = None
            return None
        if self.tracking.order_id == order_id:
            return None
        await self.tracking.start(order_id)
        return order_id

    def _on_location_reported(self, order_id: str, point: Coordinates) -> None:
        order = self._orders.get(order_id)
        if order is not None:
            order.rider_location = point

    # --- Live polling ---

    def start_live_polling(
        self,
        order_id: str,
        listener: Optional[Callable[[LiveLocation], Awaitable[None]]] = None,
        interval_ms: Optional[int] = None,
    ) -> bool:
        """Начать опрос live-локации заказа. Для финального заказа — no-op."""
        self._snapshot_listener = listener
        return self.polling.start(str(order_id), interval_ms or self.poll_interval_ms)

    async def stop_live_polling(self) -> bool:
        self._snapshot_listener = None
        return await self.polling.stop()

    async def _fetch_live(self, order_id: str) -> LiveLocation:
        return await self.api.fetch_live_location(order_id)

    def _order_is_terminal(self, order_id: str) -> bool:
        order = self._orders.get(order_id)
        return order is not None and order.is_terminal

    async def _on_snapshot(self, snapshot: LiveLocation) -> None:
        """
        Снимок live-локации. Если в нём финальный статус, заказ переводится
        в него до вызова слушателя, а опрос и трекинг останавливаются после.
        """
        effects = frozenset()
        order = self._orders.get(snapshot.order_id)
        if order is not None and not order.is_terminal and snapshot.status:
            try:
                status = OrderStatus.parse(snapshot.status)
            except ValueError:
                status = None
            if status is not None and status.is_terminal:
                effects = OrderStateMachine.observe(order, replace(order, status=status)).effects

        listener = self._snapshot_listener
        if listener is not None:
            await listener(snapshot)
        if effects:
            await self._apply_effects(order, effects)

    # --- Internals ---

    async def _exclusive(self, key: str, factory: Callable[[], Awaitable]):
        """
        Выполнить запрос смены статуса в отдельной задаче.
        Пока задача не завершилась, повторный запрос с тем же ключом отклоняется.
        """
        if key in self._in_flight:
            raise TransitionInProgress(key)
        self._in_flight.add(key)
        task = asyncio.get_running_loop().create_task(factory(), name=f"transition-{key}")
        self._tasks.add(task)
        task.add_done_callback(partial(self._task_done, key))
        return await asyncio.shield(task)

    def _task_done(self, key: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._in_flight.discard(key)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Transition %s finished with %r", key, task.exception())

    async def _apply_effects(self, order: DeliveryOrder, effects: FrozenSet[SideEffect]) -> Optional[PermissionDenied]:
        tracking_error = None
        if effects & _TRACKING_START_EFFECTS and not self._closed and not order.is_terminal:
            self._tracking_wanted = order.id
            try:
                await self.tracking.start(order.id)
            except PermissionDenied as e:
                tracking_error = e
                logger.warning("Tracking not started for order %s: %s", order.id, e.message)
        if SideEffect.STOP_TRACKING in effects:
            if self._tracking_wanted == order.id:
                self._tracking_wanted = None
            await self.tracking.stop(order.id)
        if SideEffect.STOP_POLLING in effects and self.polling.order_id == order.id:
            self._snapshot_listener = None
            await self.polling.stop()
        return tracking_error

    async def _record(self, record: TransitionRecord) -> None:
        if self.journal is None:
            return
        try:
            await self.journal(record)
        except Exception as e:
            logger.error("Failed to journal transition %s: %r", record, e, exc_info=True)

    async def wait_idle(self) -> None:
        """Дождаться завершения всех запросов смены статуса."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Выход курьера: остановить опрос и трекинг, новые сессии не стартуют."""
        self._closed = True
        self._tracking_wanted = None
        await self.stop_live_polling()
        await self.tracking.stop()
        logger.info("Coordinator shut down")


class CoordinatorRegistry:
    """
    Координаторы курьеров в памяти процесса.
    В Redis их не положить: у координатора живые таймеры и сессия трекинга.
    """

    def __init__(
        self,
        http: aiohttp.ClientSession,
        base_url: str,
        timeout: float = 15.0,
        retry_attempts: int = 3,
        poll_interval_ms: int = 10000,
        min_distance_m: float = 5.0,
        heartbeat_seconds: float = 30.0,
        grace_seconds: float = 120.0,
        journal: Optional[Callable[[int, TransitionRecord], Awaitable[None]]] = None,
    ):
        self.http = http
        self.base_url = base_url
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.poll_interval_ms = poll_interval_ms
        self.min_distance_m = min_distance_m
        self.heartbeat_seconds = heartbeat_seconds
        self.grace_seconds = grace_seconds
        self.journal = journal
        self._coordinators: Dict[int, DeliveryCoordinator] = {}

    def api_for(self, token: Optional[str] = None) -> DeliveryApi:
        return DeliveryApi(
            self.http,
            self.base_url,
            token=token,
            timeout=self.timeout,
            retry_attempts=self.retry_attempts,
        )

    def get(self, telegram_id: int) -> Optional[DeliveryCoordinator]:
        return self._coordinators.get(telegram_id)

    def get_or_create(self, telegram_id: int, token: str) -> DeliveryCoordinator:
        coordinator = self._coordinators.get(telegram_id)
        if coordinator is not None:
            if coordinator.api.token != token:
                coordinator.api.token = token
            return coordinator

        api = self.api_for(token)
        tracking = LocationTrackingSession(
            reporter=api.report_location,
            permissions=LiveLocationPermissions(grace_seconds=self.grace_seconds),
            min_distance_m=self.min_distance_m,
            heartbeat_seconds=self.heartbeat_seconds,
        )
        coordinator = DeliveryCoordinator(
            api,
            tracking,
            poll_interval_ms=self.poll_interval_ms,
            journal=partial(self.journal, telegram_id) if self.journal else None,
        )
        self._coordinators[telegram_id] = coordinator
        logger.info("Coordinator created for rider %s", telegram_id)
        return coordinator

    async def drop(self, telegram_id: int) -> None:
        coordinator = self._coordinators.pop(telegram_id, None)
        if coordinator is not None:
            await coordinator.shutdown()

    async def shutdown_all(self) -> None:
        for telegram_id in list(self._coordinators):
            await self.drop(telegram_id)
