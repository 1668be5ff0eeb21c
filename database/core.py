from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from config import config

class Base(DeclarativeBase):
    pass


def engine_options(url: str, debug: bool = False) -> dict:
    """Параметры движка: SQLite без пула, PostgreSQL — с пулом из конфига."""
    options = {"echo": debug, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        options.update(poolclass=NullPool, connect_args={"check_same_thread": False})
    else:
        options.update(
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
            pool_recycle=3600,
        )
    return options


def make_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    # expire_on_commit=False: курьер и записи журнала читаются после commit
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def create_tables(bind: AsyncEngine) -> None:
    """Создать таблицы курьеров и журнала переходов (без миграций)."""
    import database.models  # noqa: F401  регистрирует таблицы в Base.metadata

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


engine = create_async_engine(config.DATABASE_URL, **engine_options(config.DATABASE_URL, config.DEBUG))
session_maker = make_session_maker(engine)
