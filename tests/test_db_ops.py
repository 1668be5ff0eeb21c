"""Курьеры и журнал переходов в SQLite."""
import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from database.core import create_tables, engine_options, make_session_maker
from database.models import TransitionKind
from services import cache
from services.cache import CachedRider, MemoryRiderCache
from services.coordinator import TransitionRecord
from services.db_ops import (
    get_cached_rider, get_rider, get_transitions, logout_rider, make_journal,
    mark_push_registered, save_login,
)


@pytest.fixture
async def session_factory(tmp_path):
    url = f"sqlite+aiosqlite:///{(tmp_path / 'test.sqlite3').as_posix()}"
    engine = create_async_engine(url, **engine_options(url))
    await create_tables(engine)
    yield make_session_maker(engine)
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def memory_cache(monkeypatch):
    rider_cache = MemoryRiderCache(ttl_seconds=60)
    monkeypatch.setattr(cache, "rider_cache", rider_cache)
    return rider_cache


class TestRiders:
    async def test_first_login_creates_rider(self, session):
        rider = await save_login(session, 100, "Ali", "ali@example.com", "tok-1", backend_rider_id="5")
        assert rider.id is not None
        assert rider.is_logged_in
        assert rider.last_login_at is not None
        assert not rider.push_registered

    async def test_relogin_updates_tokens(self, session):
        await save_login(session, 100, "Ali", "ali@example.com", "tok-1")
        await mark_push_registered(session, 100)
        rider = await save_login(session, 100, "Ali V.", "ali@example.com", "tok-2")
        assert rider.access_token == "tok-2"
        assert rider.full_name == "Ali V."
        assert not rider.push_registered

    async def test_cached_rider(self, session, memory_cache):
        await save_login(session, 100, "Ali", "ali@example.com", "tok-1")
        cached = await get_cached_rider(session, 100)
        assert cached == CachedRider(id=cached.id, telegram_id=100, full_name="Ali", access_token="tok-1")
        assert await memory_cache.get(100) == cached

    async def test_login_invalidates_cache(self, session):
        await save_login(session, 100, "Ali", "ali@example.com", "tok-1")
        await get_cached_rider(session, 100)
        await save_login(session, 100, "Ali", "ali@example.com", "tok-2")
        cached = await get_cached_rider(session, 100)
        assert cached.access_token == "tok-2"

    async def test_logout(self, session):
        await save_login(session, 100, "Ali", "ali@example.com", "tok-1")
        assert await logout_rider(session, 100)
        cached = await get_cached_rider(session, 100)
        assert not cached.is_logged_in
        assert not await logout_rider(session, 200)

    async def test_unknown_rider(self, session):
        assert await get_rider(session, 1) is None
        assert await get_cached_rider(session, 1) is None


class TestJournal:
    async def test_journal_writes_in_own_session(self, session_factory, session):
        journal = make_journal(session_factory)
        await journal(100, TransitionRecord("order", "42", "accept", "new", "accepted"))
        await journal(100, TransitionRecord("order", "42", "failed", "accepted", "failed", reason="Нет дома"))
        await journal(100, TransitionRecord("return", "42", "accept", "pending", "accepted"))

        entries = await get_transitions(session, TransitionKind.ORDER, "42")

        assert [(e.from_status, e.to_status) for e in entries] == [("new", "accepted"), ("accepted", "failed")]
        assert entries[1].reason == "Нет дома"
        assert entries[0].rider_telegram_id == 100
        assert entries[0].created_at is not None
