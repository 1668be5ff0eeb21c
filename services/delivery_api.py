"""
HTTP-клиент backend API доставки (aiohttp).

Ошибки транспорта и 5xx → NetworkError, 401 → AuthenticationError,
404 → EndpointNotFound, прочие 4xx → BackendRejected с detail из ответа.
Запросы только на чтение повторяются при NetworkError; команды смены
статуса не повторяются автоматически, чтобы не задвоить побочные эффекты.
"""
import asyncio
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Dict, List, Optional

import aiohttp

from services.errors import (
    AuthenticationError, BackendRejected, EndpointNotFound, NetworkError, NotFound,
)
from services.orders import DeliveryOrder
from services.polling import LiveLocation
from services.returns import ReturnRequest
from services.wallet import Payout, Wallet

logger = logging.getLogger(__name__)


def retry(delay: float = 1.0):
    """Декоратор повторов для запросов на чтение (число попыток — api.retry_attempts)."""
    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            attempts = max(1, self.retry_attempts)
            for attempt in range(attempts):
                try:
                    return await func(self, *args, **kwargs)
                except NetworkError as e:
                    if attempt < attempts - 1:
                        logger.warning(
                            "%s failed (attempt %s/%s), retry: %s",
                            func.__name__, attempt + 1, attempts, e
                        )
                        await asyncio.sleep(delay * self.retry_delay_factor * (attempt + 1))
                    else:
                        raise
        return wrapper
    return decorator


@dataclass(frozen=True, slots=True)
class LoginResult:
    token: str
    refresh: Optional[str] = None
    rider_id: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True, slots=True)
class RiderStats:
    delivered: int = 0
    rejected: int = 0
    failed: int = 0
    cod_total: float = 0.0

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "RiderStats":
        stats = raw.get("stats") if isinstance(raw.get("stats"), dict) else raw
        cod = raw.get("cod") if isinstance(raw.get("cod"), dict) else {}
        cod_total = cod.get("total", raw.get("cod_total", 0))
        return cls(
            delivered=int(stats.get("delivered", 0) or 0),
            rejected=int(stats.get("rejected", 0) or 0),
            failed=int(stats.get("failed", 0) or 0),
            cod_total=float(cod_total or 0),
        )


def _wire_id(value: str) -> Any:
    """Числовые id backend ждёт числом."""
    return int(value) if str(value).isdigit() else value


def _detail(body: Any, default: str) -> str:
    if isinstance(body, dict):
        for key in ("detail", "message", "error"):
            if body.get(key):
                return str(body[key])
    if isinstance(body, str) and body.strip():
        return body.strip()[:200]
    return default


def _as_list(body: Any) -> List[Dict[str, Any]]:
    if isinstance(body, dict):
        body = body.get("results", body.get("data", []))
    if not isinstance(body, list):
        return []
    return [item for item in body if isinstance(item, dict)]


class DeliveryApi:
    """Клиент backend от имени одного курьера (Bearer-токен)."""

    def __init__(
        self,
        http: aiohttp.ClientSession,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 15.0,
        retry_attempts: int = 3,
        retry_delay_factor: float = 1.0,
    ):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_delay_factor = retry_delay_factor

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        auth: bool = True,
    ) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {}
        if auth and self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            async with self.http.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                status = resp.status
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = await resp.text()
        except asyncio.TimeoutError as e:
            raise NetworkError("timeout", details={"path": path}) from e
        except aiohttp.ClientError as e:
            raise NetworkError(repr(e), details={"path": path}) from e

        if status >= 500:
            raise NetworkError(f"HTTP {status}", details={"path": path, "status": status})
        if status == 401:
            raise AuthenticationError(_detail(body, "Требуется повторный вход"), details={"path": path})
        if status == 404:
            raise EndpointNotFound(path, _detail(body, "Ресурс не найден"))
        if status >= 400:
            raise BackendRejected(status, _detail(body, f"HTTP {status}"), details={"path": path})
        return body

    # --- Auth ---

    async def login(self, email: str, password: str) -> LoginResult:
        """Вход курьера; токен ищется под разными ключами, как их отдаёт backend."""
        try:
            data = await self._request(
                "POST", "/api/delivery/login/",
                json={"email": email, "password": password},
                auth=False,
            )
        except BackendRejected as e:
            raise AuthenticationError(e.detail) from e
        data = data if isinstance(data, dict) else {}
        token = data.get("access") or data.get("token") or data.get("accessToken") or data.get("access_token")
        if not token:
            raise AuthenticationError(_detail(data, "Неверный email или пароль"))
        return LoginResult(
            token=str(token),
            refresh=str(data["refresh"]) if data.get("refresh") else None,
            rider_id=str(data["rider_id"]) if data.get("rider_id") is not None else None,
            name=data.get("name"),
        )

    async def register_push_token(self, push_token: str) -> None:
        await self._request("POST", "/api/users/register-push-token/", json={"expo_push_token": push_token})

    # --- Orders ---

    def _parse_orders(self, body: Any) -> List[DeliveryOrder]:
        orders = []
        for raw in _as_list(body):
            try:
                orders.append(DeliveryOrder.from_api(raw))
            except (KeyError, ValueError) as e:
                logger.warning("Skipping malformed order %r: %s", raw.get("id"), e)
        return orders

    @retry()
    async def fetch_active_orders(self) -> List[DeliveryOrder]:
        return self._parse_orders(await self._request("GET", "/api/delivery/active-orders/"))

    @retry()
    async def fetch_delivered_orders(self) -> List[DeliveryOrder]:
        return self._parse_orders(await self._request("GET", "/api/delivery/delivered-orders/"))

    @retry()
    async def fetch_failed_orders(self) -> List[DeliveryOrder]:
        return self._parse_orders(await self._request("GET", "/api/delivery/failed-orders/"))

    async def find_order(self, order_id: str) -> DeliveryOrder:
        """
        Найти заказ: активные → доставленные → неудачные.

        Raises:
            NotFound: заказа нет ни в одном списке
            NetworkError: заказ не найден, но часть списков не загрузилась
        """
        order_id = str(order_id)
        network_error = None
        for fetch in (self.fetch_active_orders, self.fetch_delivered_orders, self.fetch_failed_orders):
            try:
                orders = await fetch()
            except NetworkError as e:
                logger.warning("Order lookup: %s failed: %s", fetch.__name__, e)
                network_error = e
                continue
            for order in orders:
                if order.id == order_id:
                    return order
        if network_error is not None:
            raise network_error
        raise NotFound("Order", order_id)

    async def update_order_status(
        self,
        order_id: str,
        status: str,
        reason: Optional[str] = None,
        eta: Optional[int] = None,
    ) -> None:
        payload: Dict[str, Any] = {"order_id": _wire_id(order_id), "status": status}
        if reason is not None:
            payload["reason"] = reason
        if eta is not None:
            payload["eta"] = eta
        await self._request("POST", "/api/delivery/update-status/", json=payload)

    async def fetch_live_location(self, order_id: str) -> LiveLocation:
        body = await self._request("GET", f"/api/delivery/order/{order_id}/live-location/")
        return LiveLocation.from_api(str(order_id), body if isinstance(body, dict) else {})

    async def report_location(self, lat: float, lon: float) -> None:
        await self._request("POST", "/api/delivery/update-location/", json={"latitude": lat, "longitude": lon})

    @retry()
    async def fetch_rider_stats(self, date: Optional[str] = None) -> RiderStats:
        params = {"date": date} if date else None
        body = await self._request("GET", "/api/delivery/rider-stats/", params=params)
        return RiderStats.from_api(body if isinstance(body, dict) else {})

    # --- Returns ---

    def _parse_returns(self, body: Any) -> List[ReturnRequest]:
        returns = []
        for raw in _as_list(body):
            try:
                returns.append(ReturnRequest.from_api(raw))
            except ValueError as e:
                logger.warning("Skipping malformed return %r: %s", raw.get("id"), e)
        return returns

    @retry()
    async def fetch_pending_returns(self) -> List[ReturnRequest]:
        return self._parse_returns(await self._request("GET", "/api/returns/pending/"))

    @retry()
    async def fetch_completed_returns(self) -> List[ReturnRequest]:
        return self._parse_returns(await self._request("GET", "/api/delivery/completed-returns/"))

    async def find_return(self, return_id: str) -> ReturnRequest:
        return_id = str(return_id)
        for ret in await self.fetch_pending_returns():
            if ret.id == return_id:
                return ret
        for ret in await self.fetch_completed_returns():
            if ret.id == return_id:
                return ret
        raise NotFound("Return", return_id)

    async def accept_return(self, return_id: str) -> None:
        await self._request("POST", f"/api/returns/{return_id}/accept/")

    async def update_return_status(self, return_id: str, status: str) -> None:
        await self._request("POST", f"/api/returns/{return_id}/status/", json={"status": status})

    # --- Wallet ---

    @retry()
    async def fetch_wallet(self) -> Wallet:
        body = await self._request("GET", "/api/rider/wallet/")
        return Wallet.from_api(body if isinstance(body, dict) else {})

    async def request_payout(self) -> None:
        """Запросить выплату за самые старые неоплаченные заказы. Не повторяется автоматически."""
        await self._request("POST", "/api/rider/payout/")

    @retry()
    async def fetch_payout_history(self) -> List[Payout]:
        payouts = []
        for raw in _as_list(await self._request("GET", "/api/rider/payout-history/")):
            try:
                payouts.append(Payout.from_api(raw))
            except KeyError:
                logger.warning("Skipping payout without id: %r", raw)
        return payouts
