import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Integer, String, Boolean, DateTime, Enum as PgEnum, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from database.core import Base
from config import config


# В SQLite автоинкремент корректно работает только для PRIMARY KEY типа INTEGER (rowid).
# Поэтому в dev/test режиме на SQLite используем Integer для PK, а в Postgres оставляем BigInteger.
PK_INT = Integer if config.DB_DIALECT in ("sqlite", "sqlite3") else BigInteger

# --- Enums ---
class TransitionKind(str, enum.Enum):
    ORDER = "order"
    RETURN = "return"

# --- Models ---

class Rider(Base):
    __tablename__ = "riders"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Сессия backend (Bearer-токен курьера); при выходе обнуляется
    access_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    refresh_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    backend_rider_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    push_registered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_logged_in(self) -> bool:
        return bool(self.access_token)

    __table_args__ = (
        {"comment": "Курьеры бота"},
    )


class TransitionLog(Base):
    """Журнал успешных смен статуса заказов и возвратов."""
    __tablename__ = "transition_log"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    rider_telegram_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, index=True)
    kind: Mapped[TransitionKind] = mapped_column(PgEnum(TransitionKind, name="transition_kind_enum"), nullable=False)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    event: Mapped[str] = mapped_column(String, nullable=False)
    from_status: Mapped[str] = mapped_column(String, nullable=False)
    to_status: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index("ix_transition_entity", "kind", "entity_id"),
        {"comment": "Журнал переходов"},
    )
