"""Переходы заказа: таблица переходов, проверки и сверка со снимком backend."""
import itertools

import pytest

from services.errors import BackendRejected, InvalidEta, InvalidTransition, MissingReason, OrderTerminal
from services.orders import (
    DeliveryOrder, DeliverySpeed, OrderEvent, OrderStateMachine, OrderStatus,
    TRANSITIONS, SideEffect, TransitionRequest,
)
from tests.conftest import FakeApi, order_payload


def make_order(status: str = "new", **extra) -> DeliveryOrder:
    return DeliveryOrder.from_api(order_payload(status=status, **extra))


class TestOrderParsing:
    def test_status_aliases(self):
        assert OrderStatus.parse("enroute") is OrderStatus.ONWAY
        assert OrderStatus.parse("Canceled") is OrderStatus.CANCELLED

    def test_unknown_status_rejected(self):
        with pytest.raises(ValueError):
            OrderStatus.parse("lost")

    def test_from_api(self):
        order = make_order("accepted", eta=15, delivery_speed="express")
        assert order.id == "42"
        assert order.status is OrderStatus.ACCEPTED
        assert order.eta_minutes == 15
        assert order.delivery_speed is DeliverySpeed.FAST
        assert order.shop_location.lat == pytest.approx(41.31)
        assert order.customer_location.lon == pytest.approx(69.28)
        assert order.items[0].name == "Milk"
        assert order.items[0].quantity == 2


class TestAllowedEvents:
    @pytest.mark.parametrize("status,expected", [
        ("new", {OrderEvent.ACCEPT, OrderEvent.REJECT}),
        ("accepted", {OrderEvent.SET_ETA, OrderEvent.ONWAY, OrderEvent.FAIL}),
        ("onway", {OrderEvent.DELIVER}),
        ("delivered", set()),
        ("cancelled", set()),
    ])
    def test_allowed_events(self, status, expected):
        assert set(OrderStateMachine.allowed_events(make_order(status))) == expected


class TestPlan:
    def test_accept_starts_tracking(self):
        plan = OrderStateMachine.plan(make_order("new"), TransitionRequest(OrderEvent.ACCEPT))
        assert plan.target is OrderStatus.ACCEPTED
        assert plan.effects == {SideEffect.START_TRACKING}
        assert plan.payload == {"order_id": "42", "status": "accept"}

    def test_deliver_stops_everything(self):
        plan = OrderStateMachine.plan(make_order("onway"), TransitionRequest(OrderEvent.DELIVER))
        assert {SideEffect.STOP_TRACKING, SideEffect.STOP_POLLING} <= plan.effects

    @pytest.mark.parametrize("status,event", [
        (status, event)
        for status, event in itertools.product(OrderStatus, OrderEvent)
        if not status.is_terminal and (status, event) not in TRANSITIONS
    ])
    def test_invalid_transition(self, status, event):
        request = TransitionRequest(event, reason="Причина", eta_minutes=10)
        with pytest.raises(InvalidTransition):
            OrderStateMachine.plan(make_order(status.value), request)

    @pytest.mark.parametrize("status,event", [
        (status, event)
        for status, event in itertools.product(OrderStatus, OrderEvent)
        if status.is_terminal
    ])
    def test_terminal_order(self, status, event):
        request = TransitionRequest(event, reason="Причина", eta_minutes=10)
        with pytest.raises(OrderTerminal):
            OrderStateMachine.plan(make_order(status.value), request)

    @pytest.mark.parametrize("status,event", list(TRANSITIONS))
    def test_every_listed_transition_is_planned(self, status, event):
        request = TransitionRequest(event, reason="Причина", eta_minutes=10)
        plan = OrderStateMachine.plan(make_order(status.value), request)
        assert plan.target is TRANSITIONS[(status, event)]

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_reject_requires_reason(self, reason):
        with pytest.raises(MissingReason):
            OrderStateMachine.plan(make_order("new"), TransitionRequest(OrderEvent.REJECT, reason=reason))

    def test_fail_reason_is_trimmed(self):
        plan = OrderStateMachine.plan(
            make_order("accepted"), TransitionRequest(OrderEvent.FAIL, reason="  Клиент не отвечает ")
        )
        assert plan.payload["reason"] == "Клиент не отвечает"

    @pytest.mark.parametrize("eta", [None, 0, 241, True, "10"])
    def test_invalid_eta(self, eta):
        with pytest.raises(InvalidEta):
            OrderStateMachine.plan(make_order("accepted"), TransitionRequest(OrderEvent.SET_ETA, eta_minutes=eta))


class TestRequestTransition:
    async def test_status_changes_after_backend(self):
        api = FakeApi()
        order = make_order("accepted")
        result = await OrderStateMachine(api).request_transition(
            order, TransitionRequest(OrderEvent.SET_ETA, eta_minutes=20)
        )
        assert api.called("update_order_status") == [("update_order_status", "42", "eta", None, 20)]
        assert order.status is OrderStatus.ACCEPTED
        assert order.eta_minutes == 20
        assert not result.status_changed

    async def test_backend_failure_keeps_status(self):
        api = FakeApi()
        api.fail_next["update_order_status"] = BackendRejected(400, "Order already taken")
        order = make_order("new")
        with pytest.raises(BackendRejected):
            await OrderStateMachine(api).request_transition(order, TransitionRequest(OrderEvent.ACCEPT))
        assert order.status is OrderStatus.NEW

    async def test_validation_happens_before_backend(self):
        api = FakeApi()
        with pytest.raises(MissingReason):
            await OrderStateMachine(api).request_transition(make_order("new"), TransitionRequest(OrderEvent.REJECT))
        assert api.calls == []


class TestObserve:
    def test_remote_cancellation(self):
        order = make_order("onway")
        remote = make_order("cancelled", cancel_reason="Клиент передумал", cancelled_at="2024-05-01T10:00:00Z")
        change = OrderStateMachine.observe(order, remote)
        assert order.status is OrderStatus.CANCELLED
        assert change.status_changed
        assert change.effects == {SideEffect.STOP_TRACKING, SideEffect.STOP_POLLING, SideEffect.DISABLE_CONTROLS}
        assert change.cancelled_banner.reason == "Клиент передумал"

    def test_cancellation_default_banner(self):
        change = OrderStateMachine.observe(make_order("new"), make_order("cancelled"))
        assert change.cancelled_banner.reason == "Отменён клиентом"

    def test_stale_snapshot_does_not_roll_back(self):
        order = make_order("onway")
        change = OrderStateMachine.observe(order, make_order("accepted", eta=7))
        assert order.status is OrderStatus.ONWAY
        assert order.eta_minutes == 7
        assert not change.effects

    def test_terminal_order_is_frozen(self):
        order = make_order("delivered")
        change = OrderStateMachine.observe(order, make_order("cancelled"))
        assert order.status is OrderStatus.DELIVERED
        assert not change.effects

    def test_delivery_speed_is_immutable(self):
        order = make_order("accepted", delivery_speed="fast")
        OrderStateMachine.observe(order, make_order("onway", delivery_speed="normal"))
        assert order.delivery_speed is DeliverySpeed.FAST

    def test_foreign_snapshot(self):
        with pytest.raises(ValueError):
            OrderStateMachine.observe(make_order("new"), DeliveryOrder.from_api(order_payload("7")))

    def test_adopt_terminal(self):
        change = OrderStateMachine.adopt(make_order("cancelled"))
        assert SideEffect.STOP_TRACKING in change.effects
        assert change.cancelled_banner is not None
