"""
Конфигурация приложения с валидацией через Pydantic.
"""
from typing import List, Optional
from pathlib import Path
from pydantic import Field, field_validator, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Config(BaseSettings):
    """Конфигурация бота курьеров с валидацией."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Backend API
    API_BASE_URL: str = Field(default="http://localhost:8000", description="Базовый URL backend API доставки")
    API_TIMEOUT: float = Field(default=15.0, description="Таймаут запросов к backend в секундах")
    API_RETRY_ATTEMPTS: int = Field(default=3, description="Попыток для запросов только на чтение")

    @field_validator("API_BASE_URL")
    @classmethod
    def validate_api_base_url(cls, v: str) -> str:
        """Валидация URL backend."""
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"API_BASE_URL должен начинаться с http:// или https://: {v}")
        return v

    # Lifecycle tuning
    LIVE_POLL_INTERVAL_MS: int = Field(default=10000, description="Интервал опроса live-локации заказа, мс")
    TRACKING_MIN_DISTANCE_M: float = Field(default=5.0, description="Минимальное смещение для отправки координат, м")
    TRACKING_HEARTBEAT_SECONDS: float = Field(default=30.0, description="Отправлять координаты не реже чем раз в N секунд")
    LIVE_LOCATION_GRACE_SECONDS: float = Field(default=120.0, description="Сколько секунд разовая геолокация считается свежей")
    ETA_CHOICES: str = Field(default="5,10,20", description="Быстрые варианты ETA в минутах через запятую")

    @field_validator("LIVE_POLL_INTERVAL_MS")
    @classmethod
    def validate_poll_interval(cls, v: int) -> int:
        """Опрос чаще раза в секунду только нагружает backend."""
        if v < 1000:
            raise ValueError(f"LIVE_POLL_INTERVAL_MS слишком мал: {v}. Минимум 1000")
        return v

    @computed_field
    @property
    def ETA_CHOICES_LIST(self) -> List[int]:
        """Список быстрых вариантов ETA."""
        return [int(m.strip()) for m in self.ETA_CHOICES.split(",") if m.strip()]

    # Database
    DB_DIALECT: str = Field(default="sqlite", description="Тип БД: postgres или sqlite")
    DB_POOL_SIZE: int = Field(default=10, description="Размер пула соединений PostgreSQL")
    DB_MAX_OVERFLOW: int = Field(default=10, description="Доп. соединений поверх pool_size")
    DB_USER: str = Field(default="postgres", description="Пользователь БД")
    DB_PASS: str = Field(default="postgres", description="Пароль БД")
    DB_HOST: str = Field(default="localhost", description="Хост БД")
    DB_PORT: str = Field(default="5432", description="Порт БД")
    DB_NAME: str = Field(default="rider_bot", description="Имя БД")
    SQLITE_PATH: str = Field(default="rider_bot.sqlite3", description="Путь к SQLite файлу")
    # Railway и др. платформы передают один DATABASE_URL; если задан, используем его
    DATABASE_URL_OVERRIDE: Optional[str] = Field(default=None, description="URL БД", validation_alias="DATABASE_URL")

    @field_validator("DB_DIALECT")
    @classmethod
    def validate_db_dialect(cls, v: str) -> str:
        """Валидация типа БД."""
        v = v.lower()
        if v not in ("postgres", "postgresql", "sqlite", "sqlite3"):
            raise ValueError(f"Неподдерживаемый тип БД: {v}")
        return v

    @computed_field
    @property
    def DATABASE_URL(self) -> str:
        """URL подключения к БД. Если задан DATABASE_URL — используем его."""
        raw = self.DATABASE_URL_OVERRIDE
        if raw:
            raw = raw.strip()
            # postgresql://... → для asyncpg нужен postgresql+asyncpg://
            if raw.startswith("postgresql://") and "+asyncpg" not in raw:
                return raw.replace("postgresql://", "postgresql+asyncpg://", 1)
            return raw
        if self.DB_DIALECT in ("sqlite", "sqlite3"):
            base_dir = Path(__file__).resolve().parent
            db_path = Path(self.SQLITE_PATH)
            if not db_path.is_absolute():
                db_path = base_dir / db_path
            return f"sqlite+aiosqlite:///{db_path.resolve().as_posix()}"
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Bot
    BOT_TOKEN: str = Field(default="", description="Токен Telegram бота")

    @field_validator("BOT_TOKEN")
    @classmethod
    def validate_bot_token(cls, v: str) -> str:
        """Валидация токена бота."""
        if not v:
            raise ValueError("BOT_TOKEN обязателен для работы бота")
        return v

    # Redis
    REDIS_HOST: str = Field(default="localhost", description="Хост Redis")
    REDIS_PORT: int = Field(default=6379, description="Порт Redis")
    REDIS_DB: int = Field(default=0, description="Номер БД Redis")
    REDIS_PASSWORD: Optional[str] = Field(default=None, description="Пароль Redis")
    REDIS_CACHE_TTL: int = Field(default=300, description="TTL кеша сессий курьеров в секундах")

    # Rate Limiting (лимит на одного курьера за период)
    RATE_LIMIT_MESSAGE_MAX: int = Field(default=60, description="Максимум сообщений за период")
    RATE_LIMIT_CALLBACK_MAX: int = Field(default=120, description="Максимум нажатий кнопок за период")
    RATE_LIMIT_PERIOD: float = Field(default=60.0, description="Период rate limit в секундах")

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Уровень логирования")
    DEBUG: bool = Field(default=False, description="Режим отладки")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Валидация уровня логирования."""
        v = v.upper()
        valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        if v not in valid_levels:
            raise ValueError(f"Неподдерживаемый уровень логирования: {v}. Допустимые: {valid_levels}")
        return v


# Создаем экземпляр конфигурации с валидацией
try:
    config = Config()
except Exception as e:
    import sys
    print(f"❌ Ошибка загрузки конфигурации: {e}", file=sys.stderr)
    sys.exit(1)
