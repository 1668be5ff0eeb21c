"""Маршрутизация push-событий и deep link /start."""
import pytest

from services.notifications import NotificationEvent, Route, RouteKind, route_notification, start_payload_data


class TestRouteNotification:
    @pytest.mark.parametrize("data,expected", [
        ({"type": "order", "order_id": 42}, Route(RouteKind.ORDER, "42")),
        ({"type": "return", "order_id": "7"}, Route(RouteKind.RETURN, "7")),
        ({"type": "broadcast", "deep_link": " https://t.me/promo "}, Route(RouteKind.DEEP_LINK, "https://t.me/promo")),
        ({"type": "broadcast"}, Route(RouteKind.HOME)),
        ({"type": "order"}, Route(RouteKind.HOME)),
        ({"type": "order", "order_id": "  "}, Route(RouteKind.HOME)),
    ])
    def test_routes(self, data, expected):
        assert route_notification(data) == expected

    @pytest.mark.parametrize("data", [None, {}, {"type": "promo"}, {"order_id": 42}])
    def test_unknown_payload_goes_home(self, data):
        assert route_notification(data).kind is RouteKind.HOME


class TestStartPayload:
    @pytest.mark.parametrize("payload,expected", [
        ("order_42", Route(RouteKind.ORDER, "42")),
        ("return_7", Route(RouteKind.RETURN, "7")),
        ("broadcast", Route(RouteKind.HOME)),
    ])
    def test_payloads(self, payload, expected):
        assert NotificationEvent.from_start_payload(payload).route() == expected

    @pytest.mark.parametrize("payload", [None, "", "ref_abc"])
    def test_not_a_notification(self, payload):
        assert NotificationEvent.from_start_payload(payload) is None

    @pytest.mark.parametrize("payload,expected", [
        ("order_42", Route(RouteKind.ORDER, "42")),
        ("broadcast_https://t.me/promo", Route(RouteKind.DEEP_LINK, "https://t.me/promo")),
        ("ref_abc", Route(RouteKind.HOME)),
        (None, Route(RouteKind.HOME)),
    ])
    def test_start_routes_like_push(self, payload, expected):
        assert route_notification(start_payload_data(payload)) == expected

    def test_payload_data(self):
        assert start_payload_data("return_7") == {"type": "return", "order_id": "7"}
        assert start_payload_data("ref_abc") == {}
