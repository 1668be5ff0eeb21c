"""HTTP-клиент backend на тестовом aiohttp-сервере."""
import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from services.delivery_api import DeliveryApi, RiderStats
from services.errors import AuthenticationError, BackendRejected, EndpointNotFound, NetworkError, NotFound
from services.orders import OrderStatus
from services.returns import ReturnStatus
from services.wallet import PayoutStatus
from tests.conftest import order_payload


class Backend:
    def __init__(self):
        self.requests = []
        self.active_failures = 0
        self.returned_status_ok = {"delivered_back"}
        self.unpaid_orders = 23
        self.wallet_failures = 0
        self.payouts = []

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/delivery/login/", self.login)
        app.router.add_get("/api/delivery/active-orders/", self.active_orders)
        app.router.add_get("/api/delivery/delivered-orders/", self.delivered_orders)
        app.router.add_get("/api/delivery/failed-orders/", self.failed_orders)
        app.router.add_post("/api/delivery/update-status/", self.update_status)
        app.router.add_get("/api/delivery/order/{order_id}/live-location/", self.live_location)
        app.router.add_post("/api/delivery/update-location/", self.update_location)
        app.router.add_get("/api/delivery/rider-stats/", self.rider_stats)
        app.router.add_get("/api/returns/pending/", self.pending_returns)
        app.router.add_get("/api/rider/wallet/", self.wallet)
        app.router.add_post("/api/rider/payout/", self.payout)
        app.router.add_get("/api/rider/payout-history/", self.payout_history)
        return app

    async def _record(self, request: web.Request):
        body = await request.json() if request.can_read_body else None
        self.requests.append((request.method, request.path, request.headers.get("Authorization"), body))
        return body

    async def login(self, request):
        body = await self._record(request)
        if body["password"] != "secret":
            return web.json_response({"detail": "Неверный email или пароль"}, status=400)
        return web.json_response({"access": "tok-1", "refresh": "ref-1", "rider_id": 5, "name": "Ali"})

    async def active_orders(self, request):
        await self._record(request)
        if request.headers.get("Authorization") != "Bearer tok-1":
            return web.json_response({"detail": "Token expired"}, status=401)
        if self.active_failures:
            self.active_failures -= 1
            return web.json_response({}, status=503)
        return web.json_response([order_payload("42", "accepted"), {"id": "bad", "status": "teleported"}])

    async def delivered_orders(self, request):
        await self._record(request)
        return web.json_response({"results": [order_payload("43", "delivered")]})

    async def failed_orders(self, request):
        await self._record(request)
        return web.json_response([])

    async def update_status(self, request):
        body = await self._record(request)
        if body["status"] == "delivered":
            return web.json_response({"detail": "Order is not on the way"}, status=400)
        return web.json_response({"ok": True})

    async def live_location(self, request):
        await self._record(request)
        return web.json_response({
            "delivery_status": "onway",
            "delivery_partner": {"latitude": 41.3, "longitude": 69.2},
        })

    async def update_location(self, request):
        await self._record(request)
        return web.json_response({"ok": True})

    async def rider_stats(self, request):
        await self._record(request)
        return web.json_response({"stats": {"delivered": 12, "failed": 1}, "cod": {"total": "150.5"}})

    async def pending_returns(self, request):
        await self._record(request)
        return web.json_response([{"id": 7, "status": "pending"}])

    async def wallet(self, request):
        await self._record(request)
        if self.wallet_failures:
            self.wallet_failures -= 1
            return web.json_response({}, status=502)
        return web.json_response({
            "available_balance": "1840.00",
            "unpaid_orders_count": self.unpaid_orders,
            "recent_transactions": [
                {"amount": 80, "description": "Order #42", "created_at": "2024-05-01T10:00:00Z"},
                {"amount": -1600, "description": "Payout", "created_at": "2024-04-30T09:00:00Z"},
            ],
        })

    async def payout(self, request):
        await self._record(request)
        if self.unpaid_orders < 20:
            return web.json_response({"detail": "Нужно минимум 20 неоплаченных заказов"}, status=400)
        self.unpaid_orders -= 20
        self.payouts.append({"id": len(self.payouts) + 1, "amount": "1600.00", "status": "pending", "orders_count": 20})
        return web.json_response({"ok": True}, status=201)

    async def payout_history(self, request):
        await self._record(request)
        return web.json_response(self.payouts + [{"amount": 5}])


@pytest.fixture
async def backend():
    backend = Backend()
    server = TestServer(backend.app())
    await server.start_server()
    backend.base_url = str(server.make_url(""))
    yield backend
    await server.close()


@pytest.fixture
async def http():
    async with aiohttp.ClientSession() as session:
        yield session


@pytest.fixture
def api(backend, http):
    return DeliveryApi(http, backend.base_url, token="tok-1", timeout=5, retry_attempts=3, retry_delay_factor=0)


class TestLogin:
    async def test_login(self, backend, http):
        result = await DeliveryApi(http, backend.base_url).login("ali@example.com", "secret")
        assert result.token == "tok-1"
        assert result.rider_id == "5"
        assert backend.requests[0][2] is None

    async def test_wrong_password(self, backend, http):
        with pytest.raises(AuthenticationError) as exc_info:
            await DeliveryApi(http, backend.base_url).login("ali@example.com", "nope")
        assert exc_info.value.message == "Неверный email или пароль"


class TestOrders:
    async def test_active_orders_skip_malformed(self, api, backend):
        orders = await api.fetch_active_orders()
        assert [o.id for o in orders] == ["42"]
        assert orders[0].status is OrderStatus.ACCEPTED
        assert backend.requests[0][2] == "Bearer tok-1"

    async def test_read_requests_are_retried(self, api, backend):
        backend.active_failures = 2
        orders = await api.fetch_active_orders()
        assert len(orders) == 1
        assert len(backend.requests) == 3

    async def test_retries_exhausted(self, api, backend):
        backend.active_failures = 5
        with pytest.raises(NetworkError):
            await api.fetch_active_orders()
        assert len(backend.requests) == 3

    async def test_expired_token(self, api):
        api.token = "stale"
        with pytest.raises(AuthenticationError):
            await api.fetch_active_orders()

    async def test_find_order_searches_history(self, api):
        order = await api.find_order("43")
        assert order.status is OrderStatus.DELIVERED

    async def test_find_order_missing(self, api):
        with pytest.raises(NotFound):
            await api.find_order("99")

    async def test_update_status_payload(self, api, backend):
        await api.update_order_status("42", "failed", reason="Клиент не отвечает")
        assert backend.requests[-1][3] == {"order_id": 42, "status": "failed", "reason": "Клиент не отвечает"}

    async def test_update_status_rejected(self, api, backend):
        with pytest.raises(BackendRejected) as exc_info:
            await api.update_order_status("42", "delivered")
        assert exc_info.value.detail == "Order is not on the way"
        # команды смены статуса не повторяются
        assert len(backend.requests) == 1

    async def test_live_location(self, api):
        snapshot = await api.fetch_live_location("42")
        assert snapshot.order_id == "42"
        assert snapshot.rider.lat == pytest.approx(41.3)
        assert snapshot.status == "onway"

    async def test_report_location(self, api, backend):
        await api.report_location(41.3, 69.2)
        assert backend.requests[-1][3] == {"latitude": 41.3, "longitude": 69.2}

    async def test_rider_stats(self, api):
        stats = await api.fetch_rider_stats()
        assert stats == RiderStats(delivered=12, rejected=0, failed=1, cod_total=150.5)


class TestReturns:
    async def test_pending_returns(self, api):
        [ret] = await api.fetch_pending_returns()
        assert ret.id == "7"
        assert ret.status is ReturnStatus.PENDING

    async def test_unknown_endpoint(self, api):
        with pytest.raises(EndpointNotFound) as exc_info:
            await api.accept_return("7")
        # 404 транспорта не путается с «заказа нет в списках»
        assert isinstance(exc_info.value, BackendRejected)
        assert not isinstance(exc_info.value, NotFound)
        assert exc_info.value.status_code == 404


class TestWallet:
    async def test_wallet(self, api):
        wallet = await api.fetch_wallet()
        assert wallet.available_balance == pytest.approx(1840.0)
        assert wallet.unpaid_orders == 23
        assert wallet.can_request_payout
        assert [txn.is_debit for txn in wallet.transactions] == [False, True]

    async def test_wallet_read_is_retried(self, api, backend):
        backend.wallet_failures = 1
        wallet = await api.fetch_wallet()
        assert wallet.unpaid_orders == 23
        assert len(backend.requests) == 2

    async def test_payout_then_history(self, api, backend):
        await api.request_payout()
        assert backend.requests[-1][:2] == ("POST", "/api/rider/payout/")

        [payout] = await api.fetch_payout_history()
        assert payout.id == "1"
        assert payout.status is PayoutStatus.PENDING
        assert payout.orders_count == 20

        wallet = await api.fetch_wallet()
        assert not wallet.can_request_payout
        assert wallet.orders_to_unlock == 17

    async def test_payout_rejected_is_not_retried(self, api, backend):
        backend.unpaid_orders = 5
        with pytest.raises(BackendRejected) as exc_info:
            await api.request_payout()
        assert exc_info.value.detail == "Нужно минимум 20 неоплаченных заказов"
        assert len(backend.requests) == 1


class TestNetwork:
    async def test_connection_refused(self, http):
        api = DeliveryApi(http, "http://127.0.0.1:9", retry_attempts=1, retry_delay_factor=0)
        with pytest.raises(NetworkError):
            await api.fetch_active_orders()
