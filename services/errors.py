"""
Иерархия ошибок жизненного цикла доставки.

Ошибки state machine (InvalidTransition, MissingReason, OrderTerminal, ...)
нужны, чтобы держать кнопки курьера в согласованном состоянии — пользователю
они не показываются как «сбой». Ошибки backend делятся на временные
(NetworkError — можно повторить вручную) и окончательные (BackendRejected,
AuthenticationError, EndpointNotFound). NotFound означает, что заказа или
возврата нет ни в одном списке курьера.
"""
from typing import Any, Dict, Optional


class LifecycleError(Exception):
    """Базовая ошибка координатора доставки."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class InvalidTransition(LifecycleError):
    """Событие недопустимо из текущего статуса."""

    def __init__(self, status: str, event: str, details: Optional[Dict[str, Any]] = None):
        self.status = status
        self.event = event
        super().__init__(
            message=f"Переход '{event}' недопустим из статуса '{status}'",
            details=details,
        )


class MissingReason(LifecycleError):
    """Отказ или неудачная доставка без причины."""

    def __init__(self, event: str):
        self.event = event
        super().__init__(message=f"Для '{event}' нужно указать причину", details={"event": event})


class InvalidEta(LifecycleError):
    """ETA вне допустимого диапазона."""

    def __init__(self, eta_minutes: Any):
        super().__init__(
            message=f"Некорректное ETA: {eta_minutes}",
            details={"eta_minutes": eta_minutes},
        )


class OrderTerminal(LifecycleError):
    """Заказ уже в финальном статусе — переходы запрещены."""

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(
            message=f"Заказ #{order_id} завершён ({status}), действия недоступны",
            details={"order_id": order_id, "status": status},
        )


class TransitionInProgress(LifecycleError):
    """По заказу или возврату уже выполняется запрос смены статуса."""

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(
            message=f"Статус #{entity_id} уже обновляется, дождитесь ответа",
            details={"entity_id": entity_id},
        )


class PermissionDenied(LifecycleError):
    """Нет разрешения на геолокацию (foreground или background)."""

    def __init__(self, scope: str):
        self.scope = scope
        super().__init__(
            message=f"Нет разрешения на геолокацию ({scope})",
            details={"scope": scope},
        )


_RESOURCE_NAMES = {"Order": "Заказ", "Return": "Возврат"}


class NotFound(LifecycleError):
    """Заказ или возврат не найден ни в одном из списков."""

    def __init__(self, resource: str, identifier: Any, details: Optional[Dict[str, Any]] = None):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            message=f"{_RESOURCE_NAMES.get(resource, resource)} #{identifier} не найден",
            details=details,
        )


class ApiError(LifecycleError):
    """Базовая ошибка обращения к backend."""


class NetworkError(ApiError):
    """Временная ошибка: нет связи, таймаут или 5xx."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=f"Backend недоступен: {message}", details=details)


class BackendRejected(ApiError):
    """Backend отклонил запрос (4xx) — detail берётся из ответа."""

    def __init__(self, status_code: int, detail: str, details: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        self.detail = detail
        super().__init__(message=detail, details=details)


class EndpointNotFound(BackendRejected):
    """HTTP 404 от backend: адрес API неизвестен или объект удалён."""

    def __init__(self, path: str, detail: str = "Ресурс не найден"):
        self.path = path
        super().__init__(404, detail, details={"path": path})


class AuthenticationError(ApiError):
    """Неверные учётные данные или истёкший токен."""

    def __init__(self, message: str = "Ошибка авторизации", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details)
