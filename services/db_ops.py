import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import Rider, TransitionKind, TransitionLog
from services import cache
from services.cache import CachedRider

logger = logging.getLogger(__name__)

# --- Rider Services ---


async def get_rider(session: AsyncSession, telegram_id: int) -> Rider | None:
    """
    Получить ORM-курьера по telegram_id.
    Всегда возвращает SQLAlchemy Rider (не CachedRider), безопасно для ORM-операций.
    """
    stmt = select(Rider).where(Rider.telegram_id == telegram_id)
    result = await session.execute(stmt)
    rider = result.scalar_one_or_none()

    if rider and cache.rider_cache is not None:
        await cache.rider_cache.set(telegram_id, rider)
    return rider


async def get_cached_rider(session: AsyncSession, telegram_id: int) -> CachedRider | None:
    """Курьер для middleware: сначала кеш, потом БД."""
    if cache.rider_cache is not None:
        cached = await cache.rider_cache.get(telegram_id)
        if cached is not None:
            return cached
    rider = await get_rider(session, telegram_id)
    return CachedRider.from_orm(rider) if rider else None


async def save_login(
    session: AsyncSession,
    telegram_id: int,
    full_name: str,
    email: str,
    access_token: str,
    refresh_token: Optional[str] = None,
    backend_rider_id: Optional[str] = None,
) -> Rider:
    """Создать курьера при первом входе или обновить токены. Инвалидирует кеш."""
    stmt = select(Rider).where(Rider.telegram_id == telegram_id)
    rider = (await session.execute(stmt)).scalar_one_or_none()
    if rider is None:
        rider = Rider(telegram_id=telegram_id, full_name=full_name)
        session.add(rider)

    rider.full_name = full_name or rider.full_name
    rider.email = email
    rider.access_token = access_token
    rider.refresh_token = refresh_token
    rider.backend_rider_id = backend_rider_id
    rider.push_registered = False
    rider.last_login_at = datetime.now(timezone.utc)
    await session.commit()
    await session.refresh(rider)

    if cache.rider_cache is not None:
        await cache.rider_cache.invalidate(telegram_id)
    logger.info("Rider logged in: telegram_id=%s, backend_id=%s", telegram_id, backend_rider_id)
    return rider


async def mark_push_registered(session: AsyncSession, telegram_id: int) -> None:
    rider = (await session.execute(select(Rider).where(Rider.telegram_id == telegram_id))).scalar_one_or_none()
    if rider:
        rider.push_registered = True
        await session.commit()


async def logout_rider(session: AsyncSession, telegram_id: int) -> bool:
    """Обнулить токены курьера. False если курьер не найден."""
    rider = (await session.execute(select(Rider).where(Rider.telegram_id == telegram_id))).scalar_one_or_none()
    if rider is None:
        return False
    rider.access_token = None
    rider.refresh_token = None
    rider.push_registered = False
    await session.commit()

    if cache.rider_cache is not None:
        await cache.rider_cache.invalidate(telegram_id)
    logger.info("Rider logged out: telegram_id=%s", telegram_id)
    return True

# --- Transition journal ---


async def record_transition(session: AsyncSession, record, rider_telegram_id: Optional[int] = None) -> TransitionLog:
    """Записать успешную смену статуса (record — coordinator.TransitionRecord)."""
    entry = TransitionLog(
        rider_telegram_id=rider_telegram_id,
        kind=TransitionKind(record.kind),
        entity_id=record.entity_id,
        event=record.event,
        from_status=record.from_status,
        to_status=record.to_status,
        reason=record.reason,
    )
    session.add(entry)
    await session.commit()
    return entry


async def get_transitions(session: AsyncSession, kind: TransitionKind, entity_id: str) -> list[TransitionLog]:
    stmt = (
        select(TransitionLog)
        .where(TransitionLog.kind == kind, TransitionLog.entity_id == str(entity_id))
        .order_by(TransitionLog.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


def make_journal(session_factory: async_sessionmaker):
    """
    Журнал для CoordinatorRegistry: каждая запись пишется в своей сессии,
    т.к. переход может завершиться уже после того, как сессия хендлера закрыта.
    """
    async def journal(telegram_id: int, record) -> None:
        async with session_factory() as session:
            await record_transition(session, record, rider_telegram_id=telegram_id)

    return journal
