"""
Tests for connection helpers in careslot.database.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from careslot import database
from careslot.config import BookingSettings


@pytest.fixture(autouse=True)
def clean_state(monkeypatch):
    monkeypatch.setattr(database, "_db_pool", None)
    database.clear_supabase_clients()
    yield
    database.clear_supabase_clients()


def bare_settings(**overrides):
    values = dict(SUPABASE_URL=None, SUPABASE_SERVICE_ROLE_KEY=None, SUPABASE_ANON_KEY=None, DATABASE_URL=None)
    values.update(overrides)
    return BookingSettings(_env_file=None, **values)


def test_supabase_client_requires_credentials():
    with pytest.raises(ValueError):
        database.create_supabase_client(settings=bare_settings())


def test_supabase_clients_are_cached_per_schema(monkeypatch):
    created = []

    def fake_create_client(url, key, options=None):
        client = MagicMock()
        created.append((url, key, options.schema))
        return client

    monkeypatch.setattr(database, "create_client", fake_create_client)
    settings = bare_settings(SUPABASE_URL="https://example.supabase.co", SUPABASE_ANON_KEY="anon")

    first = database.create_supabase_client("public", settings=settings)
    again = database.create_supabase_client("public", settings=settings)

    assert first is again
    assert created == [("https://example.supabase.co", "anon", "public")]


@pytest.mark.asyncio
async def test_db_pool_requires_database_url():
    with pytest.raises(ValueError):
        await database.init_db_pool(bare_settings())


@pytest.mark.asyncio
async def test_db_pool_created_once_and_closed(monkeypatch):
    pool = MagicMock()
    pool.close = AsyncMock()
    create_pool = AsyncMock(return_value=pool)
    monkeypatch.setattr(database.asyncpg, "create_pool", create_pool)
    settings = bare_settings(DATABASE_URL="postgresql://localhost/careslot")

    assert await database.init_db_pool(settings) is pool
    assert await database.init_db_pool(settings) is pool
    create_pool.assert_awaited_once()
    assert create_pool.await_args.kwargs["init"] is database._init_connection

    await database.close_db_pool()
    pool.close.assert_awaited_once()
    assert database._db_pool is None


@pytest.mark.asyncio
async def test_init_connection_registers_json_codecs():
    conn = MagicMock()
    conn.set_type_codec = AsyncMock()

    await database._init_connection(conn)

    assert [c.args[0] for c in conn.set_type_codec.await_args_list] == ["json", "jsonb"]
