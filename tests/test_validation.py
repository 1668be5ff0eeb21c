"""Ввод курьера в чате и тексты карточек."""
import pytest

from services.errors import BackendRejected, EndpointNotFound, InvalidTransition, NetworkError, NotFound, PermissionDenied
from services.orders import CancelledBanner, DeliveryOrder
from services.telegram_utils import (
    LIVE_LOCATION_PROMPT, error_feedback, escape_markdown, format_order_card,
)
from services.validation import EmailInput, EtaInput, ReasonInput, validate_input
from tests.conftest import order_payload


class TestValidateInput:
    def test_email_normalized(self):
        assert validate_input(EmailInput, "  Ali@Example.COM ").email == "ali@example.com"

    def test_bad_email(self):
        with pytest.raises(ValueError, match="Некорректный email"):
            validate_input(EmailInput, "ali@")

    def test_reason_whitespace_collapsed(self):
        assert validate_input(ReasonInput, "  Клиент   не\nотвечает ").text == "Клиент не отвечает"

    def test_reason_too_short(self):
        with pytest.raises(ValueError, match="парой слов"):
            validate_input(ReasonInput, "a")

    @pytest.mark.parametrize("text,minutes", [("15", 15), ("15 мин", 15), (" 7 min ", 7)])
    def test_eta(self, text, minutes):
        assert validate_input(EtaInput, text).minutes == minutes

    @pytest.mark.parametrize("text", ["0", "999", "скоро", ""])
    def test_bad_eta(self, text):
        with pytest.raises(ValueError):
            validate_input(EtaInput, text)

    def test_custom_error_message(self):
        with pytest.raises(ValueError, match="^Введите число$"):
            validate_input(EtaInput, "скоро", error_message="Введите число")


class TestCards:
    def test_escape_markdown(self):
        assert escape_markdown("a_b*c") == "a\\_b\\*c"
        assert escape_markdown(None) == ""

    def test_cancelled_banner(self):
        order = DeliveryOrder.from_api(order_payload(status="cancelled", customer_name="Ivan_Petrov"))
        text = format_order_card(order, CancelledBanner(reason="Нет товара", cancelled_at="10:30"))
        assert "Заказ отменён" in text
        assert "Нет товара" in text
        assert "Ivan\\_Petrov" in text

    def test_eta_hidden_for_terminal_order(self):
        order = DeliveryOrder.from_api(order_payload(status="delivered", eta=10))
        assert "ETA" not in format_order_card(order)


class TestErrorFeedback:
    def test_backend_detail_shown(self):
        assert error_feedback(BackendRejected(400, "Заказ уже взят")) == ("❌ Заказ уже взят", True)

    def test_permission_prompt(self):
        assert error_feedback(PermissionDenied("background")) == (LIVE_LOCATION_PROMPT, True)

    def test_network_is_alert(self):
        assert error_feedback(NetworkError("timeout"))[1]

    def test_state_machine_errors_are_toasts(self):
        text, alert = error_feedback(InvalidTransition("new", "delivered"))
        assert not alert
        assert "delivered" in text

    def test_not_found_messages_are_russian(self):
        assert NotFound("Order", "42").message == "Заказ #42 не найден"
        assert NotFound("Return", 7).message == "Возврат #7 не найден"

    def test_missing_endpoint_is_backend_rejection(self):
        error = EndpointNotFound("/api/rider/wallet/")
        assert error_feedback(error) == ("❌ Ресурс не найден", True)
