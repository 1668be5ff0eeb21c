"""
Валидация ввода курьера в чате (вход, причина отказа, ETA).
"""
from typing import Optional
from pydantic import BaseModel, Field, ValidationError, field_validator
import re

from services.orders import ETA_MAX_MINUTES, ETA_MIN_MINUTES

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class EmailInput(BaseModel):
    """Валидация email курьера."""

    email: str = Field(..., max_length=254, description="Email курьера")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not _EMAIL_RE.match(v):
            raise ValueError("Некорректный email")
        return v

    @classmethod
    def from_string(cls, text: str) -> "EmailInput":
        return cls(email=text)


class PasswordInput(BaseModel):
    password: str = Field(..., min_length=1, max_length=128, description="Пароль")

    @classmethod
    def from_string(cls, text: str) -> "PasswordInput":
        return cls(password=text.strip())


class ReasonInput(BaseModel):
    """Причина отказа или неудачной доставки, введённая вручную."""

    text: str = Field(..., description="Причина")

    @field_validator("text")
    @classmethod
    def validate_text(cls, v: str) -> str:
        """Валидация текста."""
        v = " ".join(v.split())
        if len(v) < 3:
            raise ValueError("Опишите причину хотя бы парой слов")
        if len(v) > 300:
            raise ValueError("Причина не может превышать 300 символов")
        return v

    @classmethod
    def from_string(cls, text: str) -> "ReasonInput":
        return cls(text=text)


class EtaInput(BaseModel):
    """ETA в минутах."""

    minutes: int = Field(..., description="ETA, мин")

    @field_validator("minutes")
    @classmethod
    def validate_minutes(cls, v: int) -> int:
        if not ETA_MIN_MINUTES <= v <= ETA_MAX_MINUTES:
            raise ValueError(f"ETA должно быть от {ETA_MIN_MINUTES} до {ETA_MAX_MINUTES} минут")
        return v

    @classmethod
    def from_string(cls, text: str) -> "EtaInput":
        """Создать из строки ("15", "15 мин")."""
        digits = re.match(r"^\s*(\d{1,4})\s*(мин\w*|min\w*)?\s*$", text or "", re.IGNORECASE)
        if not digits:
            raise ValueError("ETA должно быть числом минут")
        return cls(minutes=int(digits.group(1)))


def validate_input(model_class: type[BaseModel], text: str, error_message: Optional[str] = None) -> BaseModel:
    """
    Валидировать входные данные.

    Args:
        model_class: Класс модели Pydantic с from_string
        text: Текст для валидации
        error_message: Кастомное сообщение об ошибке

    Returns:
        Валидированный объект

    Raises:
        ValueError: При ошибке валидации (текст ошибки годится для ответа курьеру)
    """
    try:
        return model_class.from_string(text)
    except ValidationError as e:
        if error_message:
            raise ValueError(error_message) from e
        first = e.errors()[0]
        raise ValueError(str(first.get("ctx", {}).get("error") or first.get("msg"))) from e
    except ValueError as e:
        if error_message:
            raise ValueError(error_message) from e
        raise
