import asyncio
import logging
import sys
import os
import time
from pathlib import Path
from logging.handlers import RotatingFileHandler

import aiohttp
from aiogram import Bot, Dispatcher
from aiogram.types import ErrorEvent
from aiogram.exceptions import TelegramAPIError, TelegramNetworkError, TelegramServerError, TelegramRetryAfter
from config import config
from middlewares.db_middleware import DatabaseMiddleware
from middlewares.logging_middleware import LoggingMiddleware

# Configure logging with rotating file handler
log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format=log_format,
    handlers=[
        logging.StreamHandler(sys.stdout),
        RotatingFileHandler(
            'bot.log',
            maxBytes=10*1024*1024,  # 10 MB
            backupCount=5,
            encoding='utf-8'
        )
    ]
)

logger = logging.getLogger(__name__)


_lock_handle = None


def acquire_single_instance_lock() -> None:
    """
    Локальная защита от запуска двух экземпляров бота на одной машине.
    Два экземпляра — это TelegramConflictError и два трекинга на одного курьера.
    """
    global _lock_handle
    lock_path = Path(__file__).resolve().parent / ".bot.lock"
    f = open(lock_path, "a+", encoding="utf-8")
    try:
        if os.name == "nt":
            import msvcrt  # type: ignore
            msvcrt.locking(f.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            import fcntl  # type: ignore
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        f.close()
        raise RuntimeError(
            "Похоже, бот уже запущен на этой машине (занят .bot.lock). "
            "Остановите другие экземпляры, иначе будет TelegramConflictError."
        )
    _lock_handle = f


def setup_asyncio_exception_logging() -> None:
    """
    Ловит исключения из "фоновых" задач asyncio (опрос live-локации, запросы
    смены статуса), которые не проходят через aiogram handlers/errors.
    """
    loop = asyncio.get_running_loop()

    def _handler(loop: asyncio.AbstractEventLoop, context: dict):
        msg = context.get("message", "asyncio exception")
        exc = context.get("exception")
        logger.error("ASYNCIO %s", msg, exc_info=exc)

    loop.set_exception_handler(_handler)


async def wait_for_db() -> None:
    """
    Ждём БД при старте (чтобы бот не падал из‑за того, что PostgreSQL ещё поднимается).

    Управляется env:
    - DB_WAIT_SECONDS (по умолчанию 60)
    - DB_RETRY_MAX_DELAY (по умолчанию 10)
    """
    max_wait = int(os.getenv("DB_WAIT_SECONDS", "60"))
    max_delay = float(os.getenv("DB_RETRY_MAX_DELAY", "10"))

    from database.core import engine
    from sqlalchemy.exc import SQLAlchemyError
    from sqlalchemy import text

    deadline = time.monotonic() + max_wait
    attempt = 0

    while True:
        attempt += 1
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("✅ Database connection successful")
            return
        except Exception as e:
            # retry только для ошибок подключения/движка, а не для логических ошибок в коде
            retryable = isinstance(e, (SQLAlchemyError, ConnectionRefusedError, OSError)) or (
                e.__class__.__module__.startswith("asyncpg.")
            )
            if not retryable:
                raise
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.error("❌ Database is not reachable: %s", e, exc_info=True)
                logger.error(
                    "Connection settings: dialect=%s host=%s port=%s db=%s user=%s. "
                    "Check .env and run: python init_db.py",
                    config.DB_DIALECT, config.DB_HOST, config.DB_PORT, config.DB_NAME, config.DB_USER,
                )
                raise

            delay = min(max_delay, 1.0 * (2 ** min(attempt - 1, 6)))
            delay = min(delay, max(1.0, remaining))
            logger.warning(
                "DB not ready (attempt=%s). Retry in %.1fs (remaining=%.1fs). err=%s",
                attempt,
                delay,
                remaining,
                repr(e),
            )
            await asyncio.sleep(delay)


async def create_storage():
    """FSM storage: Redis, если доступен, иначе MemoryStorage. Возвращает (storage, redis_client)."""
    try:
        import redis.asyncio as redis
        redis_client = redis.Redis(
            host=config.REDIS_HOST,
            port=config.REDIS_PORT,
            db=config.REDIS_DB,
            password=config.REDIS_PASSWORD,
            decode_responses=False
        )
        await redis_client.ping()
        from aiogram.fsm.storage.redis import RedisStorage
        logger.info("Using Redis storage for FSM")
        return RedisStorage(redis=redis_client), redis_client
    except Exception as e:
        logger.warning("Redis not available, using MemoryStorage: %s", e)
        from aiogram.fsm.storage.memory import MemoryStorage
        return MemoryStorage(), None


async def main():
    logger.info("Starting rider bot...")
    setup_asyncio_exception_logging()
    # Локально предотвращаем запуск двух копий
    acquire_single_instance_lock()
    logger.info("DB_DIALECT=%s API_BASE_URL=%s", config.DB_DIALECT, config.API_BASE_URL)

    bot = Bot(token=config.BOT_TOKEN)

    # Ждём БД с ретраями (чтобы не падать на старте)
    await wait_for_db()

    # В режиме SQLite всегда поднимаем таблицы автоматически (чтобы проект был "рабочим из коробки")
    if config.DB_DIALECT in ("sqlite", "sqlite3"):
        from database.core import create_tables, engine
        logger.info("SQLite mode: ensuring tables exist (create_all)...")
        await create_tables(engine)
        logger.info("SQLite mode: tables are ready")

    storage, redis_client = await create_storage()

    # Инициализируем кеш курьеров
    from services.cache import init_cache
    await init_cache(redis_client)

    from database.core import session_maker
    from services.coordinator import CoordinatorRegistry
    from services.db_ops import make_journal

    http = aiohttp.ClientSession()
    registry = CoordinatorRegistry(
        http,
        config.API_BASE_URL,
        timeout=config.API_TIMEOUT,
        retry_attempts=config.API_RETRY_ATTEMPTS,
        poll_interval_ms=config.LIVE_POLL_INTERVAL_MS,
        min_distance_m=config.TRACKING_MIN_DISTANCE_M,
        heartbeat_seconds=config.TRACKING_HEARTBEAT_SECONDS,
        grace_seconds=config.LIVE_LOCATION_GRACE_SECONDS,
        journal=make_journal(session_maker),
    )

    # registry попадает в data каждого апдейта
    dp = Dispatcher(storage=storage, registry=registry)

    # Логирование всех входящих событий + исключений с контекстом
    for observer in (dp.message, dp.edited_message, dp.callback_query):
        observer.middleware(LoggingMiddleware(log_success=True))

    # Глобальный обработчик ошибок aiogram (ловит необработанные исключения в хендлерах)
    @dp.errors()
    async def global_error_handler(event: ErrorEvent):
        exc = event.exception
        # update_id помогает искать конкретный апдейт в логах Telegram
        trace = f"update_id={getattr(event.update, 'update_id', None)}"
        logger.error(
            "UNHANDLED %s err=%s",
            trace,
            repr(exc),
            exc_info=(type(exc), exc, exc.__traceback__),
        )

        # Пытаемся мягко сообщить курьеру, не раскрывая деталей
        try:
            if event.update and event.update.message:
                await event.update.message.answer("⚠️ Произошла внутренняя ошибка. Мы уже записали её в лог.")
            elif event.update and event.update.callback_query:
                await event.update.callback_query.answer("⚠️ Ошибка. Попробуйте ещё раз.", show_alert=True)
        except TelegramAPIError as notify_error:
            logger.debug("Failed to notify about error: %s", notify_error)

    for observer in (dp.message, dp.edited_message, dp.callback_query):
        observer.middleware(DatabaseMiddleware())

    # Rate limiting через Redis или Memory (live location в лимит не входит)
    from middlewares.rate_limit import create_rate_limit_middleware
    message_rate_limit = await create_rate_limit_middleware(
        redis_client=redis_client,
        max_calls=config.RATE_LIMIT_MESSAGE_MAX,
        period=config.RATE_LIMIT_PERIOD,
        key_prefix="rate_limit:msg:",
    )
    callback_rate_limit = await create_rate_limit_middleware(
        redis_client=redis_client,
        max_calls=config.RATE_LIMIT_CALLBACK_MAX,
        period=config.RATE_LIMIT_PERIOD,
        key_prefix="rate_limit:cb:",
    )
    dp.message.middleware(message_rate_limit)
    dp.callback_query.middleware(callback_rate_limit)

    # Include routers (fallback последним: ловит необработанные обновления)
    from handlers import start, orders, returns, wallet, fallback
    dp.include_router(start.router)
    dp.include_router(orders.router)
    dp.include_router(returns.router)
    dp.include_router(wallet.router)
    dp.include_router(fallback.router)

    try:
        try:
            await bot.delete_webhook(drop_pending_updates=True)
            logger.info("Webhook deleted successfully")
        except TelegramAPIError as webhook_error:
            logger.warning("Error deleting webhook (may not exist): %s", webhook_error)

        logger.info("Bot started successfully")

        # Автоперезапуск polling при временных сетевых сбоях
        restart_delay = float(os.getenv("POLL_RESTART_SECONDS", "5"))
        while True:
            try:
                # edited_message: очередные точки live location курьера
                await dp.start_polling(
                    bot,
                    allowed_updates=["message", "edited_message", "callback_query"],
                    drop_pending_updates=True,
                    handle_signals=True,
                )
                break  # нормальная остановка polling
            except TelegramRetryAfter as e:
                wait_s = float(getattr(e, "retry_after", restart_delay))
                logger.warning("TelegramRetryAfter: wait %.1fs then continue", wait_s, exc_info=True)
                await asyncio.sleep(wait_s)
            except (TelegramNetworkError, TelegramServerError, asyncio.TimeoutError, OSError):
                logger.error("Polling crashed (network/server). Restart in %.1fs", restart_delay, exc_info=True)
                await asyncio.sleep(restart_delay)
    finally:
        # Трекинг и опрос всех курьеров останавливаем до закрытия HTTP-сессии
        await registry.shutdown_all()
        await http.close()
        await bot.session.close()
        if redis_client is not None:
            await redis_client.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Bot stopped by user")
    except Exception as e:
        logger.error("Fatal error: %s", e, exc_info=True)
        sys.exit(1)
