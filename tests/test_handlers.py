"""Команды и кнопки курьера при ошибках backend."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from handlers import orders as order_handlers
from handlers import wallet as wallet_handlers
from services.errors import AuthenticationError, BackendRejected, NetworkError
from services.telegram_utils import error_feedback
from services.wallet import Wallet


def make_callback(user_id: int = 1) -> AsyncMock:
    callback = AsyncMock()
    callback.from_user.id = user_id
    callback.message = AsyncMock()
    return callback


class TestOrderCommands:
    async def test_orders_offline(self):
        message = AsyncMock()
        coordinator = MagicMock()
        coordinator.active_orders = AsyncMock(side_effect=NetworkError("timeout"))

        await order_handlers.cmd_orders(message, coordinator)

        message.answer.assert_awaited_once_with(error_feedback(NetworkError("timeout"))[0])

    async def test_stats_offline(self):
        message = AsyncMock()
        coordinator = MagicMock()
        coordinator.api.fetch_rider_stats = AsyncMock(side_effect=NetworkError("HTTP 502"))

        await order_handlers.cmd_stats(message, coordinator)

        message.answer.assert_awaited_once_with(error_feedback(NetworkError("HTTP 502"))[0])

    async def test_expired_session_is_left_to_middleware(self):
        coordinator = MagicMock()
        coordinator.active_orders = AsyncMock(side_effect=AuthenticationError())
        with pytest.raises(AuthenticationError):
            await order_handlers.cmd_orders(AsyncMock(), coordinator)


class TestWallet:
    async def test_wallet_screen(self):
        callback = make_callback()
        coordinator = MagicMock()
        coordinator.api.fetch_wallet = AsyncMock(return_value=Wallet(available_balance=320.5, unpaid_orders=4))

        await wallet_handlers.rider_wallet(callback, coordinator)

        text = callback.message.edit_text.await_args.args[0]
        assert "320.50" in text
        assert "До выплаты осталось заказов: 16" in text
        callback.answer.assert_awaited_once_with()

    async def test_wallet_command_offline(self):
        message = AsyncMock()
        coordinator = MagicMock()
        coordinator.api.fetch_wallet = AsyncMock(side_effect=NetworkError("timeout"))

        await wallet_handlers.cmd_wallet(message, coordinator)

        message.answer.assert_awaited_once_with(error_feedback(NetworkError("timeout"))[0])

    async def test_payout_rejected_by_backend(self):
        callback = make_callback()
        coordinator = MagicMock()
        coordinator.api.request_payout = AsyncMock(side_effect=BackendRejected(400, "Нужно минимум 20 заказов"))

        await wallet_handlers.payout_request(callback, coordinator)

        callback.answer.assert_awaited_once_with("❌ Нужно минимум 20 заказов", show_alert=True)

    async def test_payout_sent(self):
        callback = make_callback()
        coordinator = MagicMock()
        coordinator.api.request_payout = AsyncMock()

        await wallet_handlers.payout_request(callback, coordinator)

        coordinator.api.request_payout.assert_awaited_once()
        assert "отправлена" in callback.message.edit_text.await_args.args[0]
