"""Переходы возврата: принять, забрать у клиента, сдать в магазин."""
import pytest

from services.errors import BackendRejected, InvalidTransition, NetworkError
from services.returns import ReturnRequest, ReturnStateMachine, ReturnStatus
from tests.conftest import FakeApi


def make_return(status: str = "pending") -> ReturnRequest:
    return ReturnRequest.from_api({"id": 7, "status": status, "order": {"id": 42}, "reason": "Брак"})


class TestReturnParsing:
    def test_from_api(self):
        ret = make_return("pickup_scheduled")
        assert ret.id == "7"
        assert ret.order_id == "42"
        assert ret.status is ReturnStatus.ACCEPTED

    def test_delivered_to_shop_alias(self):
        assert make_return("delivered_to_shop").status is ReturnStatus.DELIVERED_BACK

    @pytest.mark.parametrize("status,actions", [
        ("pending", ["accept", "picked_up"]),
        ("accepted", ["picked_up"]),
        ("picked_up", ["returned"]),
        ("completed", []),
    ])
    def test_allowed_actions(self, status, actions):
        assert ReturnStateMachine.allowed_actions(make_return(status)) == actions


class TestReturnActions:
    async def test_accept(self):
        api = FakeApi()
        ret = await ReturnStateMachine(api).accept(make_return())
        assert ret.status is ReturnStatus.ACCEPTED
        assert api.calls == [("accept_return", "7")]

    async def test_accept_twice(self):
        with pytest.raises(InvalidTransition):
            await ReturnStateMachine(FakeApi()).accept(make_return("accepted"))

    async def test_pickup_from_pending_accepts_first(self):
        api = FakeApi()
        ret = await ReturnStateMachine(api).mark_picked_up(make_return())
        assert ret.status is ReturnStatus.PICKED_UP
        assert api.calls == [("accept_return", "7"), ("update_return_status", "7", "picked_up")]

    @pytest.mark.parametrize("error", [BackendRejected(400, "Already accepted"), NetworkError("timeout")])
    async def test_pickup_ignores_failed_implicit_accept(self, error):
        api = FakeApi()
        api.fail_next["accept_return"] = error
        ret = await ReturnStateMachine(api).mark_picked_up(make_return())
        assert ret.status is ReturnStatus.PICKED_UP

    async def test_pickup_failure_keeps_status(self):
        api = FakeApi()
        api.fail_next["update_return_status:picked_up"] = NetworkError("timeout")
        ret = make_return("accepted")
        with pytest.raises(NetworkError):
            await ReturnStateMachine(api).mark_picked_up(ret)
        assert ret.status is ReturnStatus.ACCEPTED

    async def test_returned_falls_back_to_alternative_status(self):
        api = FakeApi()
        api.fail_next["update_return_status:delivered_back"] = BackendRejected(400, "Invalid status")
        ret = await ReturnStateMachine(api).mark_returned(make_return("picked_up"))
        assert ret.status is ReturnStatus.DELIVERED_BACK
        assert api.called("update_return_status")[-1] == ("update_return_status", "7", "delivered_to_shop")

    async def test_returned_requires_pickup(self):
        with pytest.raises(InvalidTransition):
            await ReturnStateMachine(FakeApi()).mark_returned(make_return("accepted"))


class TestReturnObserve:
    def test_progress_is_accepted(self):
        ret = make_return("accepted")
        assert ReturnStateMachine.observe(ret, make_return("picked_up"))
        assert ret.status is ReturnStatus.PICKED_UP

    def test_no_rollback(self):
        ret = make_return("picked_up")
        assert not ReturnStateMachine.observe(ret, make_return("pending"))
        assert ret.status is ReturnStatus.PICKED_UP

    def test_terminal_is_frozen(self):
        ret = make_return("delivered_back")
        assert not ReturnStateMachine.observe(ret, make_return("pending"))
