"""Создание таблиц бота (riders, transition_log) в БД из .env."""
import asyncio
import logging

from database.core import create_tables, engine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def init_db():
    logger.info("Creating tables...")
    try:
        await create_tables(engine)
    finally:
        await engine.dispose()
    logger.info("Tables created successfully.")

if __name__ == "__main__":
    asyncio.run(init_db())
