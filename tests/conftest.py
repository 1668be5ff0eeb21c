"""
Общие фикстуры: фейковый backend курьера и координатор поверх него.

Переменные окружения выставляются до импорта config (он валидируется при импорте).
"""
import os
import tempfile
from pathlib import Path

os.environ.setdefault("BOT_TOKEN", "123456:TEST")
os.environ.setdefault("DB_DIALECT", "sqlite")
os.environ.setdefault("SQLITE_PATH", str(Path(tempfile.gettempdir()) / "rider_bot_test.sqlite3"))

from typing import Any, Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402

from services.coordinator import DeliveryCoordinator  # noqa: E402
from services.errors import NotFound  # noqa: E402
from services.orders import DeliveryOrder  # noqa: E402
from services.polling import LiveLocation  # noqa: E402
from services.returns import ReturnRequest  # noqa: E402
from services.tracking import LocationTrackingSession  # noqa: E402


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePermissions:
    def __init__(self, foreground: bool = True, background: bool = True):
        self.foreground = foreground
        self.background = background

    async def request_foreground(self) -> bool:
        return self.foreground

    async def request_background(self) -> bool:
        return self.background


class FakeApi:
    """Backend в памяти: записывает вызовы, ошибки задаются через fail_next."""

    def __init__(self):
        self.token = "token"
        self.active: List[Dict[str, Any]] = []
        self.delivered: List[Dict[str, Any]] = []
        self.failed: List[Dict[str, Any]] = []
        self.pending_returns: List[Dict[str, Any]] = []
        self.completed_returns: List[Dict[str, Any]] = []
        self.live: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.fail_next: Dict[str, Exception] = {}
        self.gate = None

    def _maybe_fail(self, name: str) -> None:
        error = self.fail_next.pop(name, None)
        if error is not None:
            raise error

    async def fetch_active_orders(self) -> List[DeliveryOrder]:
        self._maybe_fail("fetch_active_orders")
        return [DeliveryOrder.from_api(raw) for raw in self.active]

    async def fetch_delivered_orders(self) -> List[DeliveryOrder]:
        return [DeliveryOrder.from_api(raw) for raw in self.delivered]

    async def fetch_failed_orders(self) -> List[DeliveryOrder]:
        return [DeliveryOrder.from_api(raw) for raw in self.failed]

    async def find_order(self, order_id: str) -> DeliveryOrder:
        self._maybe_fail("find_order")
        for raw in self.active + self.delivered + self.failed:
            if str(raw["id"]) == str(order_id):
                return DeliveryOrder.from_api(raw)
        raise NotFound("Order", order_id)

    async def update_order_status(self, order_id: str, status: str, reason: Optional[str] = None, eta: Optional[int] = None) -> None:
        self.calls.append(("update_order_status", order_id, status, reason, eta))
        if self.gate is not None:
            await self.gate.wait()
        self._maybe_fail("update_order_status")

    async def fetch_live_location(self, order_id: str) -> LiveLocation:
        self.calls.append(("fetch_live_location", order_id))
        self._maybe_fail("fetch_live_location")
        return LiveLocation.from_api(order_id, self.live.get(order_id, {}))

    async def report_location(self, lat: float, lon: float) -> None:
        self.calls.append(("report_location", lat, lon))
        self._maybe_fail("report_location")

    async def fetch_pending_returns(self) -> List[ReturnRequest]:
        return [ReturnRequest.from_api(raw) for raw in self.pending_returns]

    async def fetch_completed_returns(self) -> List[ReturnRequest]:
        return [ReturnRequest.from_api(raw) for raw in self.completed_returns]

    async def find_return(self, return_id: str) -> ReturnRequest:
        for raw in self.pending_returns + self.completed_returns:
            if str(raw["id"]) == str(return_id):
                return ReturnRequest.from_api(raw)
        raise NotFound("Return", return_id)

    async def accept_return(self, return_id: str) -> None:
        self.calls.append(("accept_return", return_id))
        self._maybe_fail("accept_return")

    async def update_return_status(self, return_id: str, status: str) -> None:
        self.calls.append(("update_return_status", return_id, status))
        self._maybe_fail(f"update_return_status:{status}")

    def called(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]


def order_payload(order_id: str = "42", status: str = "new", **extra) -> Dict[str, Any]:
    payload = {
        "id": order_id,
        "delivery_status": status,
        "shop": {"name": "Test shop", "lat": 41.31, "lon": 69.24},
        "customer_location": {"latitude": 41.32, "longitude": 69.28},
        "items": [{"product_name": "Milk", "quantity": 2}],
    }
    payload.update(extra)
    return payload


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def permissions():
    return FakePermissions()


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def tracking(api, permissions, clock):
    return LocationTrackingSession(
        reporter=api.report_location,
        permissions=permissions,
        min_distance_m=5.0,
        heartbeat_seconds=30.0,
        clock=clock,
    )


@pytest.fixture
def journal_records():
    return []


@pytest.fixture
async def coordinator(api, tracking, journal_records):
    async def journal(record):
        journal_records.append(record)

    coord = DeliveryCoordinator(api, tracking, poll_interval_ms=1000, journal=journal)
    yield coord
    await coord.shutdown()
